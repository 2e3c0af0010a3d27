from __future__ import annotations

"""User-facing check-in state: today's record, history, trend and displayed rewards."""

from dataclasses import dataclass
from typing import Any

from .errors import ProtocolError, WelldifyError
from .gate import DailyActionGate, SubmitOutcome
from .models import ActionRecord, GateState, GateStatus, WellnessStats, unwrap_envelope
from .pipeline import RequestPipeline


DEFAULT_COINS_EARNED = 75


@dataclass(frozen=True)
class CheckInResult:
    record: ActionRecord
    coins_earned: int
    stats: WellnessStats | None
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkIn": self.record.to_dict(),
            "happyCoinsEarned": self.coins_earned,
            "stats": self.stats.to_dict() if self.stats else None,
            "duplicate": self.duplicate,
        }


def build_checkin_payload(mood: int, feedback: str | None = None, source: str = "cli") -> dict[str, Any]:
    text = (feedback or "").strip()
    return {"mood": mood, "feedback": text or None, "source": source}


class ActionStore:
    """Only caller of the gate; everything else here is display state."""

    def __init__(self, gate: DailyActionGate, pipeline: RequestPipeline) -> None:
        self.gate = gate
        self.pipeline = pipeline
        self.today: ActionRecord | None = None
        self.history: list[ActionRecord] = []
        self.pagination: dict[str, Any] = {}
        self.trend: dict[str, Any] | None = None
        self.stats: WellnessStats | None = None
        self.error: str | None = None

    def load_today(self) -> GateState:
        self.error = None
        try:
            state = self.gate.query_status()
        except WelldifyError as exc:
            self.error = exc.message
            raise
        self.today = state.record if state.status is GateStatus.COMPLETED else None
        return state

    def submit_checkin(self, mood: int, feedback: str | None = None, *, source: str = "cli") -> CheckInResult:
        self.error = None
        try:
            record = self.gate.submit(build_checkin_payload(mood, feedback, source))
        except WelldifyError as exc:
            self.error = exc.message
            raise
        self.today = record
        duplicate = self.gate.last_outcome is SubmitOutcome.RECONCILED
        if self.history and not duplicate:
            self.history = [record, *self.history]
        stats = WellnessStats.from_user(record.reward_summary.get("user"))
        if stats is not None:
            self.stats = stats
        coins = record.reward_summary.get("happyCoinsEarned")
        if coins is None:
            coins = DEFAULT_COINS_EARNED
        return CheckInResult(record=record, coins_earned=int(coins), stats=stats, duplicate=duplicate)

    def load_history(self, page: int = 1, limit: int = 10) -> list[ActionRecord]:
        data = self._get("/checkins", page=page, limit=limit)
        rows = data.get("checkIns")
        if not isinstance(rows, list):
            raise ProtocolError("History response must carry a checkIns list")
        self.history = [ActionRecord.from_wire(row) for row in rows if isinstance(row, dict)]
        pagination = data.get("pagination")
        self.pagination = pagination if isinstance(pagination, dict) else {}
        return self.history

    def load_trend(self, period: int = 30) -> dict[str, Any]:
        data = self._get("/checkins/trend", period=period)
        trend = data.get("trendAnalysis")
        if not isinstance(trend, dict):
            raise ProtocolError("Trend response must carry trendAnalysis")
        self.trend = trend
        return trend

    def _get(self, path: str, **params: Any) -> dict[str, Any]:
        self.error = None
        try:
            data = unwrap_envelope(self.pipeline.get(path, **params))
        except WelldifyError as exc:
            self.error = exc.message
            raise
        if not isinstance(data, dict):
            raise ProtocolError(f"Unexpected response for {path}")
        return data
