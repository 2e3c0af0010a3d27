from __future__ import annotations

"""HTTP API for the check-in backend; every body is a `{success, data, message}` envelope."""

from typing import Any
from uuid import uuid4

from fastapi import Cookie, Depends, FastAPI, Header, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from welldify_client.telemetry import sanitize_actor_id

from .service import MAX_FEEDBACK_CHARS, MAX_PAGE_SIZE, MAX_TREND_PERIOD_DAYS, CheckInService, CheckInServiceError


API_PREFIX = "/api"
REFRESH_COOKIE = "refreshToken"
REFRESH_COOKIE_PATH = f"{API_PREFIX}/auth"
FIELD_MESSAGES = {
    "mood": "Mood must be an integer between 1 and 5",
    "feedback": f"Feedback must be less than {MAX_FEEDBACK_CHARS} characters",
    "email": "Please provide a valid email",
    "password": "Password is required",
    "name": "Name is required",
}


class RegisterRequest(BaseModel):
    """Payload for `/auth/register`; content rules live in the service."""

    email: str = Field(max_length=254)
    password: str = Field(max_length=256)
    name: str = Field(max_length=200)


class LoginRequest(BaseModel):
    email: str = Field(max_length=254)
    password: str = Field(max_length=256)


class CheckInRequest(BaseModel):
    """Payload for `POST /checkins`."""

    mood: int = Field(ge=1, le=5)
    feedback: str | None = Field(default=None, max_length=MAX_FEEDBACK_CHARS)
    source: str = Field(default="web", min_length=1, max_length=32)


def envelope(data: Any = None, message: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"success": True, "data": data}
    if message:
        payload["message"] = message
    return payload


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _field_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    errors: list[dict[str, str]] = []
    for item in exc.errors():
        location = item.get("loc") or ()
        param = str(location[-1]) if location else "body"
        errors.append({"msg": FIELD_MESSAGES.get(param, str(item.get("msg", "Invalid value"))), "param": param})
    return errors


def create_app(service: CheckInService) -> FastAPI:
    """Create API routes backed by `CheckInService`."""

    app = FastAPI(title="Welldify Check-in API", version="0.1")
    refresh_max_age = service.settings.refresh_ttl_days * 86400

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = (request.headers.get("x-request-id") or "").strip()
        trace_id = sanitize_actor_id(incoming) if incoming else f"api:{uuid4()}"
        if not trace_id or trace_id == "unknown":
            trace_id = f"api:{uuid4()}"
        request.state.trace_id = trace_id
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            service.telemetry.log_event(
                "risk.flagged",
                actor_id="api:unknown",
                data={
                    "reason": "api_internal_error",
                    "endpoint": request.url.path,
                    "error_type": exc.__class__.__name__,
                    "trace_id": trace_id,
                },
            )
            response = JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})
        response.headers["X-Request-Id"] = trace_id
        return response

    @app.exception_handler(CheckInServiceError)
    async def service_error_handler(request: Request, exc: CheckInServiceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Validation failed", "errors": _field_errors(exc)},
        )

    def set_refresh_cookie(response: Response, token: str) -> None:
        response.set_cookie(
            REFRESH_COOKIE,
            token,
            max_age=refresh_max_age,
            path=REFRESH_COOKIE_PATH,
            httponly=True,
            secure=service.settings.secure_cookies,
            samesite="strict",
        )

    def current_user(authorization: str | None = Header(default=None)) -> dict[str, Any]:
        return service.authenticate(_bearer(authorization))

    @app.get(f"{API_PREFIX}/health")
    def health() -> dict[str, Any]:
        return envelope({"status": "ok", "version": "0.1", "timezone": service.settings.timezone})

    @app.post(f"{API_PREFIX}/auth/register", status_code=201)
    def register(request: RegisterRequest) -> dict[str, Any]:
        user = service.register(request.email, request.password, request.name)
        return envelope({"user": user}, "User registered successfully")

    @app.post(f"{API_PREFIX}/auth/login")
    def login(request: LoginRequest, response: Response) -> dict[str, Any]:
        data, refresh_token = service.login(request.email, request.password)
        set_refresh_cookie(response, refresh_token)
        return envelope(data, "Login successful")

    @app.post(f"{API_PREFIX}/auth/refresh")
    def refresh(
        response: Response,
        refresh_token: str | None = Cookie(default=None, alias=REFRESH_COOKIE),
    ) -> dict[str, Any]:
        access_token, rotated = service.refresh(refresh_token)
        set_refresh_cookie(response, rotated)
        return envelope({"accessToken": access_token})

    @app.post(f"{API_PREFIX}/auth/logout")
    def logout(
        response: Response,
        authorization: str | None = Header(default=None),
        refresh_token: str | None = Cookie(default=None, alias=REFRESH_COOKIE),
    ) -> dict[str, Any]:
        service.logout(_bearer(authorization), refresh_token)
        response.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
        return envelope(None, "Logged out successfully")

    @app.get(f"{API_PREFIX}/auth/profile")
    def profile(user: dict[str, Any] = Depends(current_user)) -> dict[str, Any]:
        return envelope({"user": service.profile(user["id"])})

    @app.get(f"{API_PREFIX}/checkins/today")
    def today(user: dict[str, Any] = Depends(current_user)) -> dict[str, Any]:
        return envelope(service.today_status(user["id"]))

    @app.get(f"{API_PREFIX}/checkins/trend")
    def trend(
        period: int = Query(30, ge=1, le=MAX_TREND_PERIOD_DAYS),
        user: dict[str, Any] = Depends(current_user),
    ) -> dict[str, Any]:
        return envelope({"trendAnalysis": service.trend(user["id"], period=period)})

    @app.get(f"{API_PREFIX}/checkins")
    def history(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
        user: dict[str, Any] = Depends(current_user),
    ) -> dict[str, Any]:
        return envelope(service.history(user["id"], page=page, limit=limit))

    @app.post(f"{API_PREFIX}/checkins", status_code=201)
    def create_checkin(request: CheckInRequest, user: dict[str, Any] = Depends(current_user)) -> dict[str, Any]:
        data = service.create_checkin(user["id"], request.mood, request.feedback, request.source)
        return envelope(data, "Check-in completed successfully")

    return app
