from __future__ import annotations

from typing import Any

from .auth import extract_access_token
from .credentials import CredentialStore
from .errors import AuthenticationExpired, HttpError, NetworkError, ProtocolError
from .models import unwrap_envelope
from .pipeline import RequestPipeline
from .telemetry import TelemetryLogger
from .transport import ApiRequest


class AuthSession:
    """Login, logout and profile calls around the shared credential store."""

    def __init__(
        self,
        pipeline: RequestPipeline,
        credentials: CredentialStore,
        *,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.credentials = credentials
        self.telemetry = telemetry

    def _log(self, event_type: str, data: dict[str, Any]) -> None:
        if self.telemetry is not None:
            self.telemetry.log_event(event_type, actor="human", data=data)

    def register(self, email: str, password: str, name: str) -> dict[str, Any]:
        payload = self.pipeline.send(
            ApiRequest(
                "POST",
                "/auth/register",
                body={"email": email, "password": password, "name": name},
                authenticated=False,
            )
        )
        data = unwrap_envelope(payload)
        return data if isinstance(data, dict) else {}

    def login(self, email: str, password: str) -> dict[str, Any]:
        payload = self.pipeline.send(
            ApiRequest("POST", "/auth/login", body={"email": email, "password": password}, authenticated=False)
        )
        token = extract_access_token(payload)
        if token is None:
            raise ProtocolError("Login response carried no access token")
        self.credentials.save(token)
        data = unwrap_envelope(payload)
        user = data.get("user") if isinstance(data, dict) else None
        self._log("auth.login", {"user_id": (user or {}).get("id")})
        return data

    def logout(self) -> None:
        """Tell the server, then always forget local credentials."""

        try:
            self.pipeline.send(ApiRequest("POST", "/auth/logout"))
        except (AuthenticationExpired, HttpError, NetworkError) as exc:
            self._log("auth.logout_failed", {"reason": exc.message})
        finally:
            self.credentials.clear(include_session=True)
        self._log("auth.logout", {})

    def profile(self) -> dict[str, Any]:
        data = unwrap_envelope(self.pipeline.send(ApiRequest("GET", "/auth/profile")))
        if not isinstance(data, dict):
            raise ProtocolError("Profile response must be an object")
        return data

    def is_authenticated(self) -> bool:
        return self.credentials.read() is not None
