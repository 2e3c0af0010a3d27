from __future__ import annotations

"""Access-token refresh against the server-held refresh session."""

from typing import Any

from .credentials import CredentialStore
from .errors import HttpError, NetworkError, ProtocolError, RefreshFailed
from .models import Credential, unwrap_envelope
from .telemetry import TelemetryLogger
from .transport import ApiRequest, Transport


REFRESH_PATH = "/auth/refresh"
UNAUTHORIZED = 401


def extract_access_token(payload: Any) -> str | None:
    """Pull `accessToken` out of `{success, data: {accessToken}}` or a bare body."""

    data = unwrap_envelope(payload)
    if not isinstance(data, dict):
        return None
    token = data.get("accessToken")
    if isinstance(token, str) and token:
        return token
    return None


class TokenRefresher:
    """Exchanges the refresh cookie for a new access token; fails closed."""

    def __init__(self, transport: Transport, credentials: CredentialStore, *, telemetry: TelemetryLogger | None = None) -> None:
        self.transport = transport
        self.credentials = credentials
        self.telemetry = telemetry

    def refresh(self) -> Credential:
        # No bearer token and no retry: the refresh cookie is the only proof sent.
        request = ApiRequest("POST", REFRESH_PATH, authenticated=False)
        sent = self.credentials.session_cookies()
        try:
            token = extract_access_token(self.transport.dispatch(request))
        except HttpError as exc:
            adopted = self._adopt_rotated_session(sent) if exc.status == UNAUTHORIZED else None
            if adopted is not None:
                return adopted
            self._fail(exc.message, status=exc.status)
            raise RefreshFailed(f"Token refresh failed: {exc.message}") from exc
        except (NetworkError, ProtocolError) as exc:
            self._fail(exc.message, status=None)
            raise RefreshFailed(f"Token refresh failed: {exc.message}") from exc
        if token is None:
            self._fail("missing accessToken", status=None)
            raise RefreshFailed("Token refresh failed: response carried no access token")
        credential = self.credentials.save(token)
        if self.telemetry is not None:
            self.telemetry.log_event("auth.refreshed", data={"obtained_at": credential.obtained_at.isoformat()})
        return credential

    def _adopt_rotated_session(self, sent: tuple[tuple[str, str], ...]) -> Credential | None:
        """Another process refreshed first when the session cookie on disk moved on; reuse its token."""

        current = self.credentials.session_cookies()
        if not current or current == sent:
            return None
        credential = self.credentials.read()
        if credential is None:
            return None
        if self.telemetry is not None:
            self.telemetry.log_event("auth.refresh_superseded", data={"obtained_at": credential.obtained_at.isoformat()})
        return credential

    def _fail(self, reason: str, *, status: int | None) -> None:
        self.credentials.clear(include_session=True)
        if self.telemetry is not None:
            self.telemetry.log_event("auth.refresh_failed", data={"reason": reason, "status": status})
