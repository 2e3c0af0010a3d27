from __future__ import annotations

"""Single HTTP exchanges against the check-in API over urllib."""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .credentials import CredentialStore
from .errors import DEFAULT_ERROR_MESSAGE, NetworkError, error_from_response
from .telemetry import TelemetryLogger


@dataclass(frozen=True)
class ApiRequest:
    """One logical call; immutable so retries can resend it unchanged."""

    method: str
    path: str
    params: dict[str, Any] | None = None
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    authenticated: bool = True


def new_trace_id() -> str:
    return f"client:{uuid.uuid4()}"


def _decode_body(raw: bytes) -> Any:
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class Transport:
    """Builds the urllib request, carries cookies, and maps failures to client errors."""

    def __init__(
        self,
        api_base: str,
        credentials: CredentialStore,
        *,
        timeout: float = 10.0,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.credentials = credentials
        self.timeout = timeout
        self.telemetry = telemetry

    def _build(self, request: ApiRequest, token: str | None, trace_id: str) -> Request:
        url = f"{self.api_base}{request.path}"
        if request.params:
            query = {key: value for key, value in request.params.items() if value is not None}
            if query:
                url = f"{url}?{urlencode(query)}"
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Request-Id": trace_id,
            **request.headers,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        data = None
        if request.body is not None:
            data = json.dumps(request.body).encode("utf-8")
        elif request.method.upper() in {"POST", "PUT", "PATCH"}:
            data = b""
        prepared = Request(url=url, method=request.method.upper(), headers=headers, data=data)
        self.credentials.reload_cookies()
        self.credentials.cookie_jar.add_cookie_header(prepared)
        return prepared

    def _store_cookies(self, response: Any, prepared: Request) -> None:
        headers = response.info()
        if headers is None or not headers.get_all("Set-Cookie"):
            return
        self.credentials.reload_cookies()
        self.credentials.cookie_jar.extract_cookies(response, prepared)
        self.credentials.persist_cookies()

    def dispatch(self, request: ApiRequest, *, token: str | None = None, trace_id: str | None = None) -> Any:
        """Send one attempt and return the decoded body of a 2xx response."""

        prepared = self._build(request, token, trace_id or new_trace_id())
        try:
            with urlopen(prepared, timeout=self.timeout) as response:  # nosec B310
                self._store_cookies(response, prepared)
                return _decode_body(response.read())
        except HTTPError as exc:
            self._store_cookies(exc, prepared)
            body = _decode_body(exc.read())
            error = error_from_response(exc.code, body)
            self._log_failure(request, status=exc.code, message=error.message)
            raise error from exc
        except URLError as exc:
            message = str(exc.reason) or DEFAULT_ERROR_MESSAGE
            self._log_failure(request, status=None, message=message)
            raise NetworkError(message) from exc
        except (TimeoutError, ConnectionError) as exc:
            message = str(exc) or "Request timed out"
            self._log_failure(request, status=None, message=message)
            raise NetworkError(message) from exc

    def _log_failure(self, request: ApiRequest, *, status: int | None, message: str) -> None:
        if self.telemetry is None:
            return
        self.telemetry.log_event(
            "request.failed",
            data={"method": request.method.upper(), "path": request.path, "status": status, "message": message},
        )
