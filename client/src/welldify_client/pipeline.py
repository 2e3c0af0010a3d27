from __future__ import annotations

"""Authenticated request pipeline with a single silent refresh-and-retry on 401."""

from dataclasses import dataclass
from typing import Any

from .auth import TokenRefresher
from .credentials import CredentialStore
from .errors import AuthenticationExpired, HttpError, RefreshFailed
from .telemetry import TelemetryLogger
from .transport import ApiRequest, Transport, new_trace_id


UNAUTHORIZED = 401


@dataclass
class CallContext:
    """Bookkeeping for one logical call; never shared between calls."""

    trace_id: str
    retried: bool = False
    attempts: int = 0


class RequestPipeline:
    def __init__(
        self,
        transport: Transport,
        credentials: CredentialStore,
        refresher: TokenRefresher,
        *,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        self.transport = transport
        self.credentials = credentials
        self.refresher = refresher
        self.telemetry = telemetry

    def send(self, request: ApiRequest) -> Any:
        """Send `request`, refreshing the access token at most once on 401."""

        context = CallContext(trace_id=new_trace_id())
        while True:
            token = None
            if request.authenticated:
                credential = self.credentials.read()
                token = credential.access_token if credential else None
            context.attempts += 1
            try:
                return self.transport.dispatch(request, token=token, trace_id=context.trace_id)
            except HttpError as exc:
                if exc.status != UNAUTHORIZED or not request.authenticated or context.retried:
                    raise
                context.retried = True
            try:
                self.refresher.refresh()
            except RefreshFailed as exc:
                self.credentials.clear(include_session=True)
                if self.telemetry is not None:
                    self.telemetry.log_event(
                        "auth.expired",
                        data={"method": request.method.upper(), "path": request.path, "reason": exc.message},
                    )
                raise AuthenticationExpired("Session expired. Please log in again.") from exc

    def get(self, path: str, **params: Any) -> Any:
        return self.send(ApiRequest("GET", path, params=params or None))

    def post(self, path: str, body: Any = None) -> Any:
        return self.send(ApiRequest("POST", path, body=body))
