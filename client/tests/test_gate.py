from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from welldify_client.errors import (
    ActionNotAllowed,
    DuplicateAction,
    HttpError,
    NetworkError,
    ProtocolError,
    ValidationError,
)
from welldify_client.gate import DailyActionGate, SubmitOutcome
from welldify_client.models import GateStatus, countdown_until_reset, next_local_midnight
from welldify_client.telemetry import TelemetryLogger


LOCAL = timezone(timedelta(hours=-5))


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _StubPipeline:
    def __init__(self, replies: list[Any]) -> None:
        self.replies = list(replies)
        self.requests: list[Any] = []

    def send(self, request):  # noqa: ANN001, ANN201
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def count(self, method: str, path: str) -> int:
        return sum(1 for request in self.requests if request.method == method and request.path == path)


def _record(record_id: str = "rec-1", date: str = "2026-03-10T04:59:00Z") -> dict[str, Any]:
    return {
        "id": record_id,
        "mood": 4,
        "moodLabel": "Good",
        "feedback": None,
        "source": "cli",
        "date": date,
        "happyCoinsEarned": 75,
    }


def _status(done: bool, record: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "success": True,
        "data": {
            "checkedInToday": done,
            "canCheckIn": not done,
            "nextCheckIn": "2026-03-11T00:00:00Z" if done else None,
            "checkIn": record,
        },
    }


def _created(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "success": True,
        "message": "Check-in completed successfully",
        "data": {
            "checkIn": record,
            "happyCoinsEarned": 75,
            "user": {"totalHappyCoins": 150, "currentStreak": 2, "longestStreak": 2},
        },
    }


def _gate(replies: list[Any], now: datetime, tmp_path: Path | None = None) -> tuple[DailyActionGate, _StubPipeline, _Clock]:
    pipeline = _StubPipeline(replies)
    clock = _Clock(now)
    telemetry = TelemetryLogger(tmp_path / "events.jsonl") if tmp_path is not None else None
    gate = DailyActionGate(pipeline, clock=clock, tz=LOCAL, telemetry=telemetry)  # type: ignore[arg-type]
    return gate, pipeline, clock


def _local(year: int, month: int, day: int, hour: int, minute: int, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=LOCAL)


def test_query_completed_holds_server_record() -> None:
    gate, _, _ = _gate([_status(True, _record())], _local(2026, 3, 9, 23, 59, 30))
    state = gate.query_status()
    assert state.status is GateStatus.COMPLETED
    assert state.record is not None
    assert state.record.id == "rec-1"
    assert state.record.payload["mood"] == 4
    assert gate.next_eligible_hint == "2026-03-11T00:00:00Z"


def test_query_not_done_is_eligible() -> None:
    gate, _, _ = _gate([_status(False)], _local(2026, 3, 9, 12, 0))
    assert gate.query_status().status is GateStatus.ELIGIBLE


def test_query_failure_is_error_not_eligible() -> None:
    gate, _, _ = _gate([NetworkError("connection refused")], _local(2026, 3, 9, 12, 0))
    with pytest.raises(NetworkError):
        gate.query_status()
    assert gate.state.status is GateStatus.ERROR
    assert gate.state.error == "connection refused"


def test_query_with_malformed_body_is_error() -> None:
    gate, _, _ = _gate([{"success": True, "data": {"canCheckIn": True}}], _local(2026, 3, 9, 12, 0))
    with pytest.raises(ProtocolError):
        gate.query_status()
    assert gate.state.status is GateStatus.ERROR


def test_submit_records_reward_summary() -> None:
    gate, pipeline, _ = _gate([_status(False), _created(_record())], _local(2026, 3, 9, 23, 59))
    gate.query_status()

    record = gate.submit({"mood": 4, "feedback": None, "source": "cli"})

    assert gate.state.status is GateStatus.COMPLETED
    assert gate.state.record == record
    assert gate.last_outcome is SubmitOutcome.CREATED
    assert record.reward_summary["happyCoinsEarned"] == 75
    assert record.reward_summary["user"]["currentStreak"] == 2
    assert pipeline.requests[-1].body == {"mood": 4, "feedback": None, "source": "cli"}


def test_submit_outside_eligible_sends_nothing() -> None:
    gate, pipeline, _ = _gate([_status(True, _record())], _local(2026, 3, 9, 12, 0))
    with pytest.raises(ActionNotAllowed):
        gate.submit({"mood": 3})
    gate.query_status()
    with pytest.raises(ActionNotAllowed):
        gate.submit({"mood": 3})
    assert pipeline.count("POST", "/checkins") == 0


def test_duplicate_reconciles_to_server_record() -> None:
    conflict = HttpError(409, "You have already checked in today")
    gate, pipeline, _ = _gate(
        [_status(False), conflict, _status(True, _record("rec-other"))],
        _local(2026, 3, 9, 9, 0),
    )
    gate.query_status()

    record = gate.submit({"mood": 5})

    assert record.id == "rec-other"
    assert gate.state.status is GateStatus.COMPLETED
    assert gate.state.record.id == "rec-other"
    assert gate.last_outcome is SubmitOutcome.RECONCILED
    assert pipeline.count("GET", "/checkins/today") == 2


def test_duplicate_without_server_record_raises() -> None:
    conflict = HttpError(409, "You have already checked in today")
    gate, _, _ = _gate([_status(False), conflict, _status(False)], _local(2026, 3, 9, 9, 0))
    gate.query_status()
    with pytest.raises(DuplicateAction):
        gate.submit({"mood": 5})


def test_rejected_submit_returns_to_eligible_with_error() -> None:
    invalid = ValidationError(400, "Mood must be an integer between 1 and 5", field_errors=[])
    gate, _, _ = _gate([_status(False), invalid], _local(2026, 3, 9, 9, 0))
    gate.query_status()

    with pytest.raises(ValidationError):
        gate.submit({"mood": 9})

    assert gate.state.status is GateStatus.ELIGIBLE
    assert gate.state.error == "Mood must be an integer between 1 and 5"


def test_network_failure_on_submit_returns_to_eligible() -> None:
    gate, _, _ = _gate([_status(False), NetworkError("timed out")], _local(2026, 3, 9, 9, 0))
    gate.query_status()
    with pytest.raises(NetworkError):
        gate.submit({"mood": 2})
    assert gate.state.status is GateStatus.ELIGIBLE
    assert gate.state.error == "timed out"


def test_unexpected_submit_error_does_not_strand_gate() -> None:
    gate, _, _ = _gate(
        [_status(False), PermissionError("credentials.json locked"), _created(_record())],
        _local(2026, 3, 9, 9, 0),
    )
    gate.query_status()

    with pytest.raises(PermissionError):
        gate.submit({"mood": 3})

    assert gate.state.status is GateStatus.ELIGIBLE
    assert gate.state.error == "credentials.json locked"
    assert gate.submit({"mood": 3}).id == "rec-1"
    assert gate.state.status is GateStatus.COMPLETED


def test_late_evening_submit_rearms_at_local_midnight() -> None:
    gate, pipeline, clock = _gate(
        [_status(False), _created(_record()), _status(False)],
        _local(2026, 3, 9, 23, 59),
    )
    gate.query_status()
    gate.submit({"mood": 4})

    countdown = gate.tick_countdown()
    assert countdown is not None
    assert countdown.format() == "00:01:00"
    assert countdown.total_ms == 60_000
    assert pipeline.count("GET", "/checkins/today") == 1

    clock.now = _local(2026, 3, 10, 0, 0)
    elapsed = gate.tick_countdown()

    assert elapsed is not None
    assert elapsed.elapsed
    assert pipeline.count("GET", "/checkins/today") == 2
    assert gate.state.status is GateStatus.ELIGIBLE
    assert gate.tick_countdown() is None


def test_countdown_requeries_exactly_once_when_server_still_completed() -> None:
    gate, pipeline, clock = _gate(
        [_status(True, _record()), _status(True, _record())],
        _local(2026, 3, 9, 23, 59),
    )
    gate.query_status()

    clock.now = _local(2026, 3, 10, 0, 0, 5)
    first = gate.tick_countdown()
    second = gate.tick_countdown()
    third = gate.tick_countdown(clock.now + timedelta(minutes=1))

    assert first is not None and first.elapsed
    assert second is not None and not second.elapsed
    assert third is not None and third.remaining > timedelta(0)
    assert pipeline.count("GET", "/checkins/today") == 2
    assert gate.state.status is GateStatus.COMPLETED


def test_stale_record_is_trusted_without_requery_loop() -> None:
    stale = _record("rec-yesterday", date="2026-03-08T15:00:00Z")
    gate, pipeline, _ = _gate([_status(True, stale)], _local(2026, 3, 9, 10, 0))

    state = gate.query_status()
    countdown = gate.tick_countdown()

    assert state.status is GateStatus.COMPLETED
    assert countdown is not None
    assert countdown.format() == "14:00:00"
    assert pipeline.count("GET", "/checkins/today") == 1


def test_countdown_failure_on_requery_is_error() -> None:
    gate, _, clock = _gate([_status(True, _record()), NetworkError("offline")], _local(2026, 3, 9, 23, 0))
    gate.query_status()
    clock.now = _local(2026, 3, 10, 0, 0, 1)
    with pytest.raises(NetworkError):
        gate.tick_countdown()
    assert gate.state.status is GateStatus.ERROR


def test_countdown_is_clamped_and_formatted() -> None:
    anchor = _local(2026, 3, 9, 21, 30)
    countdown = countdown_until_reset(anchor, _local(2026, 3, 9, 21, 30), LOCAL)
    assert (countdown.hours, countdown.minutes, countdown.seconds) == (2, 30, 0)
    assert countdown.format() == "02:30:00"

    late = countdown_until_reset(anchor, _local(2026, 3, 12, 8, 0), LOCAL)
    assert late.remaining == timedelta(0)
    assert late.total_ms == 0
    assert late.elapsed


def test_next_local_midnight_uses_local_day() -> None:
    moment = datetime(2026, 3, 10, 4, 59, tzinfo=UTC)
    deadline = next_local_midnight(moment, LOCAL)
    assert deadline == _local(2026, 3, 10, 0, 0)
    assert deadline.astimezone(UTC) == datetime(2026, 3, 10, 5, 0, tzinfo=UTC)


def test_reset_forgets_cached_state() -> None:
    gate, _, _ = _gate([_status(True, _record())], _local(2026, 3, 9, 12, 0))
    gate.query_status()
    gate.reset()
    assert gate.state.status is GateStatus.UNKNOWN
    assert gate.next_eligible_hint is None
    assert gate.tick_countdown() is None


def test_transitions_are_logged(tmp_path: Path) -> None:
    gate, _, _ = _gate([_status(False), _created(_record())], _local(2026, 3, 9, 12, 0), tmp_path)
    gate.query_status()
    gate.submit({"mood": 4})

    rows = [json.loads(line) for line in (tmp_path / "events.jsonl").read_text(encoding="utf-8").splitlines()]
    transitions = [(row["data"]["from"], row["data"]["to"]) for row in rows if row["event_type"] == "gate.transition"]
    assert transitions == [("unknown", "eligible"), ("eligible", "submitting"), ("submitting", "completed")]
    assert any(row["event_type"] == "checkin.submitted" for row in rows)
