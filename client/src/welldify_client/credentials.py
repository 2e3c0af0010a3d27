from __future__ import annotations

"""Bearer token persistence mirrored across a JSON state file and an expiring cookie."""

import json
import time
from datetime import UTC, datetime, timedelta
from http.cookiejar import Cookie, LoadError, MozillaCookieJar
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from .errors import ProtocolError
from .models import Credential, format_timestamp, parse_timestamp


ACCESS_TOKEN_KEY = "accessToken"


def _load_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return default


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


def _access_cookie(domain: str, token: str, expires: int) -> Cookie:
    return Cookie(
        version=0,
        name=ACCESS_TOKEN_KEY,
        value=token,
        port=None,
        port_specified=False,
        domain=domain,
        domain_specified=False,
        domain_initial_dot=False,
        path="/",
        path_specified=True,
        secure=False,
        expires=expires,
        discard=False,
        comment=None,
        comment_url=None,
        rest={},
    )


class CredentialStore:
    """Dumb mirror of the current access token; never validates expiry.

    The cookie jar also carries cookies the server sets (the httpOnly refresh
    cookie), so the transport shares it for every exchange.
    """

    def __init__(self, credentials_path: Path, cookies_path: Path, *, api_base: str, cookie_days: int = 7) -> None:
        self.credentials_path = credentials_path
        self.cookie_days = cookie_days
        self.domain = urlsplit(api_base).hostname or "localhost"
        self.cookie_jar = MozillaCookieJar(str(cookies_path))
        self.reload_cookies()

    def reload_cookies(self) -> None:
        """Replace the in-memory jar with `cookies.txt`; another process may have rotated the session."""

        self.cookie_jar.clear()
        if not Path(self.cookie_jar.filename).exists():
            return
        try:
            self.cookie_jar.load(ignore_discard=True)
        except (LoadError, OSError):
            self.cookie_jar.clear()

    def session_cookies(self) -> tuple[tuple[str, str], ...]:
        """Server-set cookies currently on disk, as sorted `(name, value)` pairs."""

        self.reload_cookies()
        return tuple(
            sorted((cookie.name, cookie.value or "") for cookie in self.cookie_jar if cookie.name != ACCESS_TOKEN_KEY)
        )

    def save(self, token: str) -> Credential:
        credential = Credential(access_token=token, obtained_at=datetime.now(tz=UTC))
        _save_json(
            self.credentials_path,
            {ACCESS_TOKEN_KEY: token, "obtainedAt": format_timestamp(credential.obtained_at)},
        )
        expires = int(time.time()) + self.cookie_days * 86400
        self.reload_cookies()
        self.cookie_jar.set_cookie(_access_cookie(self.domain, token, expires))
        self.persist_cookies()
        return credential

    def read(self) -> Credential | None:
        stored = _load_json(self.credentials_path, {})
        if isinstance(stored, dict):
            token = stored.get(ACCESS_TOKEN_KEY)
            if isinstance(token, str) and token:
                obtained_raw = stored.get("obtainedAt")
                try:
                    obtained_at = parse_timestamp(obtained_raw) if isinstance(obtained_raw, str) else None
                except ProtocolError:
                    obtained_at = None
                return Credential(access_token=token, obtained_at=obtained_at or datetime.now(tz=UTC))
        return self._read_cookie()

    def clear(self, *, include_session: bool = False) -> None:
        """Drop the access token from both locations; `include_session` also drops server cookies."""

        if self.credentials_path.exists():
            self.credentials_path.unlink()
        self.reload_cookies()
        for cookie in list(self.cookie_jar):
            if include_session or cookie.name == ACCESS_TOKEN_KEY:
                self.cookie_jar.clear(cookie.domain, cookie.path, cookie.name)
        self.persist_cookies()

    def persist_cookies(self) -> None:
        Path(self.cookie_jar.filename).parent.mkdir(parents=True, exist_ok=True)
        self.cookie_jar.save(ignore_discard=True)

    def _read_cookie(self) -> Credential | None:
        self.reload_cookies()
        now = time.time()
        for cookie in self.cookie_jar:
            if cookie.name != ACCESS_TOKEN_KEY or not cookie.value:
                continue
            if cookie.is_expired(now):
                continue
            obtained_at = datetime.now(tz=UTC)
            if cookie.expires:
                obtained_at = datetime.fromtimestamp(cookie.expires, tz=UTC) - timedelta(days=self.cookie_days)
            return Credential(access_token=cookie.value, obtained_at=obtained_at)
        return None
