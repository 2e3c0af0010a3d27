from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .auth import TokenRefresher
from .config import ClientConfig, load_config, resolve_timezone
from .credentials import CredentialStore
from .gate import DailyActionGate
from .paths import ensure_home_dirs
from .pipeline import RequestPipeline
from .session import AuthSession
from .store import ActionStore
from .telemetry import TelemetryLogger
from .transport import Transport


@dataclass
class WelldifyClient:
    """Composition root: every component is built once here and passed by reference."""

    config: ClientConfig
    telemetry: TelemetryLogger
    credentials: CredentialStore
    transport: Transport
    refresher: TokenRefresher
    pipeline: RequestPipeline
    session: AuthSession
    gate: DailyActionGate
    store: ActionStore

    @classmethod
    def create(
        cls,
        config: ClientConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> "WelldifyClient":
        config = config or load_config()
        paths = ensure_home_dirs(config.home)
        telemetry = TelemetryLogger(paths["events"], source="client")
        credentials = CredentialStore(
            paths["credentials"],
            paths["cookies"],
            api_base=config.api_base,
            cookie_days=config.cookie_days,
        )
        transport = Transport(config.api_base, credentials, timeout=config.timeout_seconds, telemetry=telemetry)
        refresher = TokenRefresher(transport, credentials, telemetry=telemetry)
        pipeline = RequestPipeline(transport, credentials, refresher, telemetry=telemetry)
        tz = resolve_timezone(config.timezone)
        if clock is None:
            gate = DailyActionGate(pipeline, tz=tz, telemetry=telemetry)
        else:
            gate = DailyActionGate(pipeline, clock=clock, tz=tz, telemetry=telemetry)
        return cls(
            config=config,
            telemetry=telemetry,
            credentials=credentials,
            transport=transport,
            refresher=refresher,
            pipeline=pipeline,
            session=AuthSession(pipeline, credentials, telemetry=telemetry),
            gate=gate,
            store=ActionStore(gate, pipeline),
        )
