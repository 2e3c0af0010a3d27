from __future__ import annotations

import os
from pathlib import Path


def server_home() -> Path:
    configured = os.environ.get("WELLDIFY_SERVER_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".welldify-server"


def ensure_home_dirs(base: Path) -> dict[str, Path]:
    state = base / "state"
    telemetry = base / "telemetry"
    for path in (base, state, telemetry):
        path.mkdir(parents=True, exist_ok=True)
    return {
        "base": base,
        "state": state,
        "telemetry": telemetry,
        "store": state / "server_state.json",
        "events": telemetry / "events.jsonl",
    }
