from __future__ import annotations

"""Local check-in backend: accounts, token sessions, and one check-in per user per server day."""

import hashlib
import hmac
import json
import os
import re
import secrets
import threading
import time
import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time as dtime, timedelta
from pathlib import Path
from typing import Any, Callable
from zoneinfo import ZoneInfo

from welldify_client.telemetry import TelemetryLogger

from .paths import ensure_home_dirs, server_home


STATE_SCHEMA_VERSION = "0.1"
HAPPY_COINS_PER_CHECKIN = 75
PASSWORD_ITERATIONS = 120_000
MIN_PASSWORD_CHARS = 6
MAX_NAME_CHARS = 80
MAX_FEEDBACK_CHARS = 500
MAX_SOURCE_CHARS = 32
MAX_PAGE_SIZE = 100
MAX_TREND_PERIOD_DAYS = 365
TREND_DELTA = 0.2
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MOOD_LABELS = {1: "Very Poor", 2: "Poor", 3: "Fair", 4: "Good", 5: "Excellent"}
DUPLICATE_CHECKIN_MESSAGE = "You have already checked in today"


class CheckInServiceError(ValueError):
    """Failure with an HTTP status and the envelope body the API returns for it."""

    def __init__(self, status: int, message: str, *, errors: list[dict[str, str]] | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": False, "message": self.message}
        if self.errors:
            payload["errors"] = self.errors
        return payload


def _field_error(param: str, msg: str) -> dict[str, str]:
    return {"msg": msg, "param": param}


def _env_int(name: str, fallback: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return fallback
    try:
        value = int(raw)
    except ValueError:
        return fallback
    if value <= 0:
        return fallback
    return value


@dataclass(frozen=True)
class ServerSettings:
    home: Path = field(default_factory=server_home)
    access_ttl_seconds: int = 900
    refresh_ttl_days: int = 7
    timezone: str = "UTC"
    secure_cookies: bool = False
    persist: bool = True

    @classmethod
    def from_env(cls) -> "ServerSettings":
        return cls(
            access_ttl_seconds=_env_int("WELLDIFY_ACCESS_TTL_SECONDS", 900),
            refresh_ttl_days=_env_int("WELLDIFY_REFRESH_TTL_DAYS", 7),
            timezone=os.environ.get("WELLDIFY_SERVER_TIMEZONE", "").strip() or "UTC",
            secure_cookies=os.environ.get("WELLDIFY_SECURE_COOKIES", "").strip().lower() in {"1", "true", "yes"},
        )


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _hash_password(password: str, salt: str) -> str:
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), PASSWORD_ITERATIONS)
    return derived.hex()


def _strip_controls(value: str) -> str:
    return "".join(ch for ch in value if not unicodedata.category(ch).startswith("C") or ch == "\n")


def _load_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))


def _save_json(path: Path, value: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.parent / f".{path.name}.tmp"
    payload = json.dumps(value, indent=2)
    for attempt in range(5):
        temp_path.write_text(payload, encoding="utf-8")
        try:
            temp_path.replace(path)
            return
        except PermissionError:
            if attempt == 4:
                raise
            # On Windows, AV/indexers can briefly lock newly-written temp files.
            time.sleep(0.02 * (attempt + 1))


def _empty_state() -> dict[str, Any]:
    return {
        "state_schema_version": STATE_SCHEMA_VERSION,
        "users": {},
        "checkins": [],
        "access_tokens": {},
        "refresh_sessions": {},
    }


def _public_user(user: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user["name"],
        "totalHappyCoins": user["totalHappyCoins"],
        "currentStreak": user["currentStreak"],
        "longestStreak": user["longestStreak"],
        "createdAt": user["createdAt"],
    }


def _wire_checkin(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": record["id"],
        "mood": record["mood"],
        "moodLabel": MOOD_LABELS.get(record["mood"], "Unknown"),
        "feedback": record["feedback"],
        "source": record["source"],
        "date": record["date"],
        "happyCoinsEarned": record["happyCoinsEarned"],
    }


def _mean(values: list[int]) -> float:
    return sum(values) / len(values)


class CheckInService:
    """Stateful backend; every mutation is persisted as one JSON document."""

    def __init__(
        self,
        settings: ServerSettings,
        *,
        telemetry: TelemetryLogger,
        clock: Callable[[], datetime] = _utc_now,
        store_path: Path | None = None,
    ) -> None:
        self.settings = settings
        self.telemetry = telemetry
        self.clock = clock
        self.tz = ZoneInfo(settings.timezone)
        self.store_path = store_path
        self._state_lock = threading.RLock()
        self._day_locks: dict[tuple[str, str], threading.Lock] = {}
        self._day_locks_guard = threading.Lock()
        self.state = self._load_state()

    @classmethod
    def create(
        cls,
        settings: ServerSettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> "CheckInService":
        """Instantiate a service with its home directories and startup telemetry."""

        settings = settings or ServerSettings.from_env()
        dirs = ensure_home_dirs(settings.home)
        telemetry = TelemetryLogger(dirs["events"], source="server")
        service = cls(
            settings,
            telemetry=telemetry,
            clock=clock or _utc_now,
            store_path=dirs["store"] if settings.persist else None,
        )
        service.telemetry.log_event(
            "server.started",
            actor_id="system:server",
            data={"timezone": settings.timezone, "persist": settings.persist},
        )
        return service

    def _load_state(self) -> dict[str, Any]:
        if self.store_path is None:
            return _empty_state()
        state = _load_json(self.store_path, None)
        if not isinstance(state, dict) or state.get("state_schema_version") != STATE_SCHEMA_VERSION:
            return _empty_state()
        for key, value in _empty_state().items():
            state.setdefault(key, value)
        return state

    def _persist(self) -> None:
        if self.store_path is not None:
            _save_json(self.store_path, self.state)

    def _day_lock(self, user_id: str, day: str) -> threading.Lock:
        # Keep yesterday's locks; a request that read the clock just before midnight may still hold one.
        oldest = (date.fromisoformat(day) - timedelta(days=1)).isoformat()
        with self._day_locks_guard:
            for key in [key for key in self._day_locks if key[1] < oldest]:
                del self._day_locks[key]
            return self._day_locks.setdefault((user_id, day), threading.Lock())

    # Time

    def server_day(self, moment: datetime) -> date:
        return moment.astimezone(self.tz).date()

    def next_reset(self, moment: datetime) -> datetime:
        """Server midnight following `moment`."""

        return datetime.combine(self.server_day(moment) + timedelta(days=1), dtime.min, tzinfo=self.tz)

    # Accounts and sessions

    def _find_user(self, email: str) -> dict[str, Any] | None:
        for user in self.state["users"].values():
            if user["email"] == email:
                return user
        return None

    def _prune_expired(self, now: datetime) -> None:
        for key in ("access_tokens", "refresh_sessions"):
            table = self.state[key]
            for digest in [d for d, entry in table.items() if _parse_iso(entry["expires_at"]) <= now]:
                del table[digest]

    def _issue(self, table: str, user_id: str, ttl: timedelta) -> str:
        now = self.clock()
        self._prune_expired(now)
        token = secrets.token_urlsafe(32)
        self.state[table][_token_digest(token)] = {"user_id": user_id, "expires_at": _iso(now + ttl)}
        return token

    def _issue_pair(self, user_id: str) -> tuple[str, str]:
        access = self._issue("access_tokens", user_id, timedelta(seconds=self.settings.access_ttl_seconds))
        refresh = self._issue("refresh_sessions", user_id, timedelta(days=self.settings.refresh_ttl_days))
        return access, refresh

    def register(self, email: str, password: str, name: str) -> dict[str, Any]:
        email_value = (email or "").strip().lower()
        name_value = _strip_controls(name or "").strip()
        errors: list[dict[str, str]] = []
        if not EMAIL_PATTERN.match(email_value):
            errors.append(_field_error("email", "Please provide a valid email"))
        if len(password or "") < MIN_PASSWORD_CHARS:
            errors.append(_field_error("password", f"Password must be at least {MIN_PASSWORD_CHARS} characters long"))
        if not name_value or len(name_value) > MAX_NAME_CHARS:
            errors.append(_field_error("name", f"Name is required and must be at most {MAX_NAME_CHARS} characters"))
        if errors:
            raise CheckInServiceError(400, "Validation failed", errors=errors)

        with self._state_lock:
            if self._find_user(email_value) is not None:
                raise CheckInServiceError(400, "User already exists with this email")
            salt = secrets.token_hex(16)
            user = {
                "id": str(uuid.uuid4()),
                "email": email_value,
                "name": name_value,
                "salt": salt,
                "password_hash": _hash_password(password, salt),
                "createdAt": _iso(self.clock()),
                "totalHappyCoins": 0,
                "currentStreak": 0,
                "longestStreak": 0,
                "lastCheckInDay": None,
            }
            self.state["users"][user["id"]] = user
            self._persist()
        return _public_user(user)

    def login(self, email: str, password: str) -> tuple[dict[str, Any], str]:
        """Return the login `data` block and a new refresh token."""

        with self._state_lock:
            user = self._find_user((email or "").strip().lower())
            if user is None or not hmac.compare_digest(
                _hash_password(password or "", user["salt"]),
                user["password_hash"],
            ):
                raise CheckInServiceError(401, "Invalid credentials")
            access, refresh = self._issue_pair(user["id"])
            self._persist()
            public = _public_user(user)
        self.telemetry.log_event("auth.login", actor="human", actor_id=f"user:{user['id']}", data={"user_id": user["id"]})
        return {"accessToken": access, "user": public}, refresh

    def refresh(self, refresh_token: str | None) -> tuple[str, str]:
        """Rotate a refresh session; returns `(access_token, refresh_token)`."""

        if not refresh_token:
            raise CheckInServiceError(401, "Refresh token required")
        with self._state_lock:
            session = self.state["refresh_sessions"].pop(_token_digest(refresh_token), None)
            if session is None:
                raise CheckInServiceError(401, "Invalid refresh token")
            if _parse_iso(session["expires_at"]) <= self.clock() or session["user_id"] not in self.state["users"]:
                self._persist()
                raise CheckInServiceError(401, "Refresh token expired")
            user_id = session["user_id"]
            pair = self._issue_pair(user_id)
            self._persist()
        self.telemetry.log_event("auth.refreshed", actor_id=f"user:{user_id}", data={"user_id": user_id})
        return pair

    def logout(self, access_token: str | None, refresh_token: str | None) -> None:
        with self._state_lock:
            if access_token:
                self.state["access_tokens"].pop(_token_digest(access_token), None)
            if refresh_token:
                self.state["refresh_sessions"].pop(_token_digest(refresh_token), None)
            self._persist()

    def authenticate(self, access_token: str | None) -> dict[str, Any]:
        """Resolve a bearer token to its user, or fail with 401."""

        if not access_token:
            raise CheckInServiceError(401, "Access token required")
        with self._state_lock:
            digest = _token_digest(access_token)
            entry = self.state["access_tokens"].get(digest)
            if entry is None:
                raise CheckInServiceError(401, "Invalid token")
            if _parse_iso(entry["expires_at"]) <= self.clock():
                del self.state["access_tokens"][digest]
                raise CheckInServiceError(401, "Token expired")
            user = self.state["users"].get(entry["user_id"])
            if user is None:
                raise CheckInServiceError(401, "Invalid token")
            return dict(user)

    def profile(self, user_id: str) -> dict[str, Any]:
        with self._state_lock:
            return _public_user(self.state["users"][user_id])

    # Check-ins

    def _find_checkin(self, user_id: str, day: str) -> dict[str, Any] | None:
        for record in self.state["checkins"]:
            if record["userId"] == user_id and record["day"] == day:
                return record
        return None

    def _user_checkins(self, user_id: str) -> list[dict[str, Any]]:
        return [record for record in self.state["checkins"] if record["userId"] == user_id]

    def today_status(self, user_id: str) -> dict[str, Any]:
        now = self.clock()
        with self._state_lock:
            record = self._find_checkin(user_id, self.server_day(now).isoformat())
        return {
            "checkedInToday": record is not None,
            "canCheckIn": record is None,
            "nextCheckIn": _iso(self.next_reset(now)) if record is not None else None,
            "checkIn": _wire_checkin(record) if record is not None else None,
        }

    def _validate_checkin(self, mood: Any, feedback: str | None, source: str) -> None:
        errors: list[dict[str, str]] = []
        if isinstance(mood, bool) or not isinstance(mood, int) or mood not in MOOD_LABELS:
            errors.append(_field_error("mood", "Mood must be an integer between 1 and 5"))
        if feedback is not None and len(feedback) > MAX_FEEDBACK_CHARS:
            errors.append(_field_error("feedback", f"Feedback must be less than {MAX_FEEDBACK_CHARS} characters"))
        if not source or len(source) > MAX_SOURCE_CHARS:
            errors.append(_field_error("source", "Source is invalid"))
        if errors:
            raise CheckInServiceError(400, "Validation failed", errors=errors)

    def _apply_streak(self, user: dict[str, Any], day: date) -> None:
        previous = user.get("lastCheckInDay")
        if previous == (day - timedelta(days=1)).isoformat():
            user["currentStreak"] += 1
        else:
            user["currentStreak"] = 1
        user["longestStreak"] = max(user["longestStreak"], user["currentStreak"])
        user["lastCheckInDay"] = day.isoformat()

    def create_checkin(self, user_id: str, mood: int, feedback: str | None = None, source: str = "web") -> dict[str, Any]:
        """Insert today's check-in; a second one for the same server day is a 409."""

        text = _strip_controls(feedback).strip() if feedback else ""
        self._validate_checkin(mood, text or None, source)
        now = self.clock()
        day = self.server_day(now)
        with self._day_lock(user_id, day.isoformat()):
            with self._state_lock:
                existing = self._find_checkin(user_id, day.isoformat())
            if existing is not None:
                self.telemetry.log_event(
                    "checkin.rejected",
                    actor_id=f"user:{user_id}",
                    data={"reason": "duplicate", "day": day.isoformat(), "existing_id": existing["id"]},
                )
                raise CheckInServiceError(409, DUPLICATE_CHECKIN_MESSAGE)
            with self._state_lock:
                user = self.state["users"][user_id]
                record = {
                    "id": str(uuid.uuid4()),
                    "userId": user_id,
                    "day": day.isoformat(),
                    "mood": mood,
                    "feedback": text or None,
                    "source": source,
                    "date": _iso(now),
                    "happyCoinsEarned": HAPPY_COINS_PER_CHECKIN,
                }
                self.state["checkins"].append(record)
                self._apply_streak(user, day)
                user["totalHappyCoins"] += HAPPY_COINS_PER_CHECKIN
                self._persist()
                totals = {
                    "totalHappyCoins": user["totalHappyCoins"],
                    "currentStreak": user["currentStreak"],
                    "longestStreak": user["longestStreak"],
                }
        self.telemetry.log_event(
            "checkin.created",
            actor="human",
            actor_id=f"user:{user_id}",
            data={"checkin_id": record["id"], "day": day.isoformat(), "source": source},
        )
        return {"checkIn": _wire_checkin(record), "happyCoinsEarned": HAPPY_COINS_PER_CHECKIN, "user": totals}

    def history(self, user_id: str, *, page: int = 1, limit: int = 10) -> dict[str, Any]:
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise CheckInServiceError(
                400,
                "Validation failed",
                errors=[_field_error("limit", f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")],
            )
        with self._state_lock:
            rows = sorted(self._user_checkins(user_id), key=lambda record: record["date"], reverse=True)
        total = len(rows)
        start = (page - 1) * limit
        return {
            "checkIns": [_wire_checkin(record) for record in rows[start : start + limit]],
            "pagination": {
                "currentPage": page,
                "totalPages": (total + limit - 1) // limit,
                "totalItems": total,
                "itemsPerPage": limit,
            },
        }

    def trend(self, user_id: str, *, period: int = 30) -> dict[str, Any]:
        """Average mood over the last `period` days and whether it is moving up or down."""

        if not 1 <= period <= MAX_TREND_PERIOD_DAYS:
            raise CheckInServiceError(
                400,
                "Validation failed",
                errors=[_field_error("period", f"period must be between 1 and {MAX_TREND_PERIOD_DAYS}")],
            )
        since = self.clock() - timedelta(days=period)
        with self._state_lock:
            rows = [record for record in self._user_checkins(user_id) if _parse_iso(record["date"]) >= since]
        rows.sort(key=lambda record: record["date"])
        moods = [record["mood"] for record in rows]
        if len(moods) < 2:
            direction = "insufficient_data"
        else:
            half = len(moods) // 2
            delta = _mean(moods[half:]) - _mean(moods[:half])
            if delta > TREND_DELTA:
                direction = "improving"
            elif delta < -TREND_DELTA:
                direction = "declining"
            else:
                direction = "stable"
        return {
            "period": period,
            "averageMood": round(_mean(moods), 2) if moods else None,
            "totalCheckIns": len(moods),
            "trend": direction,
        }
