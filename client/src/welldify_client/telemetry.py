from __future__ import annotations

"""Telemetry event sanitization and append-only JSONL persistence."""

import json
import platform
import re
import sys
import unicodedata
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Any

from .security import is_secret_key, payload_contains_pii, payload_contains_secrets


SCHEMA_VERSION = "0.1"
VALID_EVENT_TYPES = {
    "request.failed",
    "auth.login",
    "auth.logout",
    "auth.logout_failed",
    "auth.refreshed",
    "auth.refresh_failed",
    "auth.refresh_superseded",
    "auth.expired",
    "gate.transition",
    "checkin.submitted",
    "checkin.reconciled",
    "countdown.elapsed",
    "server.started",
    "checkin.created",
    "checkin.rejected",
    "risk.flagged",
}
VALID_ACTOR_KINDS = {"human", "agent", "system"}
VALID_SOURCES = {"cli", "client", "server"}
MAX_STRING_LENGTH = 200
RANGE_PATTERN = re.compile(r"^(\d+)([dh])$")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _utc_now_rfc3339() -> str:
    return _utc_now().replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    normalized = value.replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _safe_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def _strip_control_chars(value: str) -> str:
    return "".join(ch for ch in value if not unicodedata.category(ch).startswith("C"))


@dataclass(frozen=True)
class BuildInfo:
    """Static build/runtime metadata attached to every telemetry event."""

    client_version: str
    python_version: str
    platform: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_version": self.client_version,
            "python_version": self.python_version,
            "platform": self.platform,
        }


@dataclass(frozen=True)
class SanitizeStats:
    """Counts for redactions and truncations emitted during sanitization."""

    redacted_fields: int = 0
    truncated_fields: int = 0


def _combine_stats(a: SanitizeStats, b: SanitizeStats) -> SanitizeStats:
    return SanitizeStats(
        redacted_fields=a.redacted_fields + b.redacted_fields,
        truncated_fields=a.truncated_fields + b.truncated_fields,
    )


def _sanitize_text(value: str, *, empty_fallback: str | None = None) -> tuple[str, SanitizeStats]:
    cleaned = _strip_control_chars(value).strip()
    if not cleaned and empty_fallback is not None:
        cleaned = empty_fallback
    if payload_contains_secrets(cleaned) or payload_contains_pii(cleaned):
        return "[redacted]", SanitizeStats(redacted_fields=1)
    if len(cleaned) > MAX_STRING_LENGTH:
        return f"{cleaned[:MAX_STRING_LENGTH]}...[truncated]", SanitizeStats(truncated_fields=1)
    return cleaned, SanitizeStats()


def sanitize_actor_id(value: Any) -> str:
    """Normalize actor identity to a safe string and redact risky payloads."""

    text = "unknown" if value is None else str(value)
    sanitized, _ = _sanitize_text(text, empty_fallback="unknown")
    if not sanitized:
        return "unknown"
    return sanitized


def normalize_actor_model(actor: Any, *, actor_id: Any | None = None, default_kind: str = "system") -> dict[str, str]:
    """Return canonical actor model `{kind, id}` for events."""

    kind = str(actor).strip().lower() if isinstance(actor, str) else default_kind
    if kind not in VALID_ACTOR_KINDS:
        kind = default_kind if default_kind in VALID_ACTOR_KINDS else "system"
    return {"kind": kind, "id": sanitize_actor_id(actor_id)}


def _sanitize_scalar(value: Any) -> tuple[Any, SanitizeStats]:
    if value is None or isinstance(value, (int, float, bool)):
        return value, SanitizeStats()
    if isinstance(value, str):
        return _sanitize_text(value, empty_fallback="")
    return _sanitize_text(str(value), empty_fallback="")


def sanitize_event_data(data: Any) -> tuple[Any, SanitizeStats]:
    """Recursively sanitize telemetry payloads for secrets, PII, and controls."""

    if isinstance(data, dict):
        sanitized: dict[str, Any] = {}
        stats = SanitizeStats()
        for key, value in data.items():
            key_text, key_stats = _sanitize_scalar(key)
            stats = _combine_stats(stats, key_stats)
            if is_secret_key(key) and value is not None:
                sanitized[str(key_text)] = "[redacted]"
                stats = _combine_stats(stats, SanitizeStats(redacted_fields=1))
                continue
            value_sanitized, value_stats = sanitize_event_data(value)
            sanitized[str(key_text)] = value_sanitized
            stats = _combine_stats(stats, value_stats)
        return sanitized, stats
    if isinstance(data, list):
        sanitized_items: list[Any] = []
        stats = SanitizeStats()
        for item in data:
            item_sanitized, item_stats = sanitize_event_data(item)
            sanitized_items.append(item_sanitized)
            stats = _combine_stats(stats, item_stats)
        return sanitized_items, stats
    return _sanitize_scalar(data)


def parse_range(range_value: str) -> timedelta:
    """Parse compact duration windows such as `7d` or `24h`."""

    match = RANGE_PATTERN.match(range_value.strip().lower())
    if not match:
        raise ValueError("range must be like 7d or 24h")
    amount = int(match.group(1))
    unit = match.group(2)
    if amount <= 0:
        raise ValueError("range amount must be > 0")
    if unit == "d":
        return timedelta(days=amount)
    return timedelta(hours=amount)


def detect_client_version() -> str:
    """Resolve installed package version with local fallback."""

    try:
        return package_version("welldify")
    except PackageNotFoundError:
        return "0.1.0"


class TelemetryLogger:
    """Append-only telemetry logger shared by the client and the local backend."""

    def __init__(self, events_path: Path, *, source: str = "client") -> None:
        self.events_path = events_path
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        self.source = source if source in VALID_SOURCES else "client"
        self.build = BuildInfo(
            client_version=detect_client_version(),
            python_version=sys.version.split()[0],
            platform=platform.platform(),
        )

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        with self.events_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(_safe_json(payload))
            handle.write("\n")

    def _base_event(
        self,
        *,
        event_type: str,
        actor: str,
        actor_id: str | None,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        if event_type not in VALID_EVENT_TYPES:
            data = {"reason": "invalid_event_type", "invalid_event_type": sanitize_actor_id(event_type)}
            event_type = "risk.flagged"
        return {
            "schema_version": SCHEMA_VERSION,
            "event_id": str(uuid.uuid4()),
            "ts": _utc_now_rfc3339(),
            "event_type": event_type,
            "actor": normalize_actor_model(actor, actor_id=actor_id, default_kind="system"),
            "source": self.source,
            "build": self.build.to_dict(),
            "data": data,
        }

    def log_event(
        self,
        event_type: str,
        *,
        data: dict[str, Any] | None = None,
        actor: str = "system",
        actor_id: str | None = None,
        _emit_sanitize_flag: bool = True,
    ) -> None:
        """Write one sanitized event and optional sanitization risk flag."""

        try:
            sanitized_data, stats = sanitize_event_data(data or {})
            event_payload = self._base_event(
                event_type=event_type,
                actor=actor,
                actor_id=actor_id,
                data=sanitized_data if isinstance(sanitized_data, dict) else {"value": sanitized_data},
            )
            self._append_jsonl(event_payload)
            if _emit_sanitize_flag and (stats.redacted_fields or stats.truncated_fields):
                self.log_event(
                    "risk.flagged",
                    actor="system",
                    actor_id=actor_id,
                    data={
                        "reason": "telemetry_sanitized",
                        "trigger_event_type": event_type,
                        "fields_redacted_count": stats.redacted_fields,
                        "fields_truncated_count": stats.truncated_fields,
                    },
                    _emit_sanitize_flag=False,
                )
        except Exception as exc:  # noqa: BLE001
            print(f"[telemetry] failed to append event: {exc}", file=sys.stderr)

    def iter_events(self) -> list[dict[str, Any]]:
        if not self.events_path.exists():
            return []
        events: list[dict[str, Any]] = []
        with self.events_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict):
                    events.append(payload)
        return events

    def recent_events(self, range_value: str, *, event_type: str | None = None) -> list[dict[str, Any]]:
        """Events inside a `7d`/`24h` style window, oldest first."""

        end = _utc_now()
        start = end - parse_range(range_value)
        selected: list[dict[str, Any]] = []
        for event in self.iter_events():
            parsed_ts = _parse_ts(event.get("ts"))
            if parsed_ts is None or not (start <= parsed_ts <= end):
                continue
            if event_type is not None and event.get("event_type") != event_type:
                continue
            selected.append(event)
        return selected

    def purge(self) -> bool:
        if not self.events_path.exists():
            return False
        self.events_path.unlink()
        return True
