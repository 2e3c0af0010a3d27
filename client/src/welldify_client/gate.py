from __future__ import annotations

"""Once-per-day check-in gate.

The gate never decides on its own that a new check-in is allowed. Local time
only drives the countdown; when the countdown reaches the next local midnight
the cached state is dropped and the server is asked again.
"""

from datetime import datetime, tzinfo
from enum import Enum
from typing import Any, Callable

from .errors import ActionNotAllowed, DuplicateAction, HttpError, WelldifyError
from .models import (
    ActionRecord,
    Countdown,
    GateState,
    GateStatus,
    countdown_until_reset,
    unwrap_envelope,
    validate_shape,
)
from .pipeline import RequestPipeline
from .telemetry import TelemetryLogger
from .transport import ApiRequest


STATUS_PATH = "/checkins/today"
SUBMIT_PATH = "/checkins"
CONFLICT = 409


class SubmitOutcome(str, Enum):
    CREATED = "created"
    RECONCILED = "reconciled"


def _system_now() -> datetime:
    return datetime.now().astimezone()


class DailyActionGate:
    def __init__(
        self,
        pipeline: RequestPipeline,
        *,
        clock: Callable[[], datetime] = _system_now,
        tz: tzinfo | None = None,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.clock = clock
        self.tz = tz
        self.telemetry = telemetry
        self.state = GateState.unknown()
        self.next_eligible_hint: str | None = None
        self.last_outcome: SubmitOutcome | None = None

    def _transition(self, new_state: GateState, *, cause: str) -> GateState:
        previous = self.state
        self.state = new_state
        if self.telemetry is not None and previous.status != new_state.status:
            self.telemetry.log_event(
                "gate.transition",
                data={
                    "from": previous.status.value,
                    "to": new_state.status.value,
                    "cause": cause,
                    "record_id": new_state.record.id if new_state.record else None,
                    "error": new_state.error,
                },
            )
        return new_state

    def query_status(self) -> GateState:
        """Ask the server whether today's check-in already happened."""

        try:
            data = validate_shape("status", unwrap_envelope(self.pipeline.send(ApiRequest("GET", STATUS_PATH))))
            record = ActionRecord.from_wire(data["checkIn"]) if data.get("checkIn") else None
        except WelldifyError as exc:
            self._transition(GateState.failed(exc.message), cause="query_failed")
            raise
        self.next_eligible_hint = data.get("nextCheckIn")
        # The server's boolean wins even when the record date looks stale locally.
        if data["checkedInToday"]:
            return self._transition(GateState.completed(record, self.clock()), cause="query")
        return self._transition(GateState.eligible(), cause="query")

    def submit(self, payload: dict[str, Any]) -> ActionRecord:
        """Submit today's check-in; only legal while the gate is eligible."""

        if self.state.status is not GateStatus.ELIGIBLE:
            raise ActionNotAllowed(f"Check-in cannot be submitted while {self.state.status.value}.")
        self._transition(GateState.submitting(), cause="submit")
        try:
            response = self.pipeline.send(ApiRequest("POST", SUBMIT_PATH, body=payload))
            data = validate_shape("submit", unwrap_envelope(response))
            record = ActionRecord.from_wire(
                data["checkIn"],
                reward={"happyCoinsEarned": data.get("happyCoinsEarned"), "user": data.get("user")},
            )
        except HttpError as exc:
            if exc.status == CONFLICT:
                return self._reconcile(exc)
            self._transition(GateState.eligible(error=exc.message), cause="submit_failed")
            raise
        except WelldifyError as exc:
            self._transition(GateState.eligible(error=exc.message), cause="submit_failed")
            raise
        except Exception as exc:  # noqa: BLE001
            self._transition(GateState.eligible(error=str(exc) or exc.__class__.__name__), cause="submit_failed")
            raise
        self.last_outcome = SubmitOutcome.CREATED
        self._transition(GateState.completed(record, self.clock()), cause="submit")
        if self.telemetry is not None:
            self.telemetry.log_event("checkin.submitted", data={"record_id": record.id})
        return record

    def _reconcile(self, conflict: HttpError) -> ActionRecord:
        # Another tab or device won the race; adopt the server's record instead of inventing one.
        self._transition(GateState.completed(None, self.clock()), cause="duplicate")
        if self.telemetry is not None:
            self.telemetry.log_event("checkin.reconciled", data={"message": conflict.message})
        state = self.query_status()
        if state.status is GateStatus.COMPLETED and state.record is not None:
            self.last_outcome = SubmitOutcome.RECONCILED
            return state.record
        raise DuplicateAction(conflict.message) from conflict

    def tick_countdown(self, now: datetime | None = None) -> Countdown | None:
        """Time until the next local midnight; re-queries the server once it hits zero."""

        if self.state.status is not GateStatus.COMPLETED:
            return None
        current = now or self.clock()
        countdown = countdown_until_reset(self._anchor(), current, self.tz)
        if not countdown.elapsed:
            return countdown
        if self.telemetry is not None:
            self.telemetry.log_event("countdown.elapsed", data={"deadline": countdown.deadline.isoformat()})
        self._transition(GateState.unknown(), cause="countdown_elapsed")
        self.next_eligible_hint = None
        self.query_status()
        return countdown

    def _anchor(self) -> datetime:
        # Later of the record time and the last server confirmation, so a stale record cannot loop re-queries.
        anchor = self.state.confirmed_at or self.clock()
        record = self.state.record
        if record is not None and record.performed_at > anchor:
            return record.performed_at
        return anchor

    def reset(self) -> None:
        """Forget cached state, as a fresh page load would."""

        self._transition(GateState.unknown(), cause="reset")
        self.next_eligible_hint = None
        self.last_outcome = None
