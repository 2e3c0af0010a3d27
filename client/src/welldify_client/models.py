from __future__ import annotations

"""Value types exchanged between the credential store, the pipeline and the check-in gate."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Any

from jsonschema import Draft202012Validator

from .errors import ProtocolError


RECORD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "date"],
    "properties": {
        "id": {"type": ["string", "integer"]},
        "date": {"type": "string", "minLength": 1},
        "mood": {"type": ["integer", "null"]},
        "feedback": {"type": ["string", "null"]},
        "happyCoinsEarned": {"type": ["integer", "null"]},
    },
}

STATUS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["checkedInToday"],
    "properties": {
        "checkedInToday": {"type": "boolean"},
        "canCheckIn": {"type": "boolean"},
        "nextCheckIn": {"type": ["string", "null"]},
        "checkIn": {"anyOf": [{"type": "null"}, RECORD_SCHEMA]},
    },
}

SUBMIT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["checkIn"],
    "properties": {
        "checkIn": RECORD_SCHEMA,
        "happyCoinsEarned": {"type": ["integer", "null"]},
        "user": {"type": ["object", "null"]},
    },
}

_VALIDATORS = {
    "record": Draft202012Validator(RECORD_SCHEMA),
    "status": Draft202012Validator(STATUS_SCHEMA),
    "submit": Draft202012Validator(SUBMIT_SCHEMA),
}


def validate_shape(kind: str, payload: Any) -> dict[str, Any]:
    """Check a response `data` block against its schema and return it."""

    errors = sorted(_VALIDATORS[kind].iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ProtocolError(f"Malformed {kind} response at {where}: {first.message}")
    return payload


def unwrap_envelope(payload: Any) -> Any:
    """Return the `data` block of a `{success, data}` envelope, or the body itself."""

    if isinstance(payload, dict) and "data" in payload:
        if payload.get("success") is False:
            raise ProtocolError(str(payload.get("message") or "Server reported failure"))
        return payload["data"]
    return payload


def parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ProtocolError(f"Invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Credential:
    access_token: str
    obtained_at: datetime


@dataclass(frozen=True)
class ActionRecord:
    """One check-in as the server stored it. The local copy is advisory."""

    id: str
    performed_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    reward_summary: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, raw: dict[str, Any], *, reward: dict[str, Any] | None = None) -> "ActionRecord":
        validate_shape("record", raw)
        payload = {key: value for key, value in raw.items() if key not in {"id", "date", "happyCoinsEarned"}}
        reward_summary: dict[str, Any] = {}
        if raw.get("happyCoinsEarned") is not None:
            reward_summary["happyCoinsEarned"] = raw["happyCoinsEarned"]
        if reward:
            reward_summary.update({key: value for key, value in reward.items() if value is not None})
        return cls(
            id=str(raw["id"]),
            performed_at=parse_timestamp(raw["date"]),
            payload=payload,
            reward_summary=reward_summary,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": format_timestamp(self.performed_at),
            **self.payload,
            "rewardSummary": dict(self.reward_summary),
        }


class GateStatus(str, Enum):
    UNKNOWN = "unknown"
    ELIGIBLE = "eligible"
    COMPLETED = "completed"
    SUBMITTING = "submitting"
    ERROR = "error"


@dataclass(frozen=True)
class GateState:
    status: GateStatus
    record: ActionRecord | None = None
    error: str | None = None
    confirmed_at: datetime | None = None

    @classmethod
    def unknown(cls) -> "GateState":
        return cls(GateStatus.UNKNOWN)

    @classmethod
    def eligible(cls, error: str | None = None) -> "GateState":
        return cls(GateStatus.ELIGIBLE, error=error)

    @classmethod
    def completed(cls, record: ActionRecord | None, confirmed_at: datetime) -> "GateState":
        return cls(GateStatus.COMPLETED, record=record, confirmed_at=confirmed_at)

    @classmethod
    def submitting(cls) -> "GateState":
        return cls(GateStatus.SUBMITTING)

    @classmethod
    def failed(cls, reason: str) -> "GateState":
        return cls(GateStatus.ERROR, error=reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "record": self.record.to_dict() if self.record else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class Countdown:
    remaining: timedelta
    deadline: datetime

    @property
    def total_ms(self) -> int:
        return int(self.remaining.total_seconds() * 1000)

    @property
    def elapsed(self) -> bool:
        return self.remaining <= timedelta(0)

    @property
    def hours(self) -> int:
        return int(self.remaining.total_seconds()) // 3600

    @property
    def minutes(self) -> int:
        return (int(self.remaining.total_seconds()) % 3600) // 60

    @property
    def seconds(self) -> int:
        return int(self.remaining.total_seconds()) % 60

    def format(self) -> str:
        return f"{self.hours:02d}:{self.minutes:02d}:{self.seconds:02d}"


def next_local_midnight(moment: datetime, tz: tzinfo | None = None) -> datetime:
    """First local midnight strictly after `moment`."""

    local = moment.astimezone(tz)
    zone = tz if tz is not None else local.tzinfo
    return datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=zone)


def countdown_until_reset(anchor: datetime, now: datetime, tz: tzinfo | None = None) -> Countdown:
    """Time left until the local midnight that follows `anchor`, never negative."""

    deadline = next_local_midnight(anchor, tz)
    remaining = deadline.astimezone(UTC) - now.astimezone(UTC)
    if remaining < timedelta(0):
        remaining = timedelta(0)
    return Countdown(remaining=remaining, deadline=deadline)


@dataclass(frozen=True)
class WellnessStats:
    """Display-only profile counters copied from a check-in response."""

    happy_coins: int | None = None
    current_streak: int | None = None
    longest_streak: int | None = None

    @classmethod
    def from_user(cls, user: dict[str, Any] | None) -> "WellnessStats | None":
        if not isinstance(user, dict):
            return None
        return cls(
            happy_coins=user.get("totalHappyCoins"),
            current_streak=user.get("currentStreak"),
            longest_streak=user.get("longestStreak"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "happyCoins": self.happy_coins,
            "currentStreak": self.current_streak,
            "longestStreak": self.longest_streak,
        }
