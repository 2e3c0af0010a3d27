from __future__ import annotations

import json
import time
from http.cookiejar import Cookie
from pathlib import Path

from welldify_client.credentials import ACCESS_TOKEN_KEY, CredentialStore, _access_cookie


API_BASE = "http://127.0.0.1:8005/api"


def _store(tmp_path: Path) -> CredentialStore:
    state = tmp_path / "home" / "state"
    return CredentialStore(state / "credentials.json", state / "cookies.txt", api_base=API_BASE)


def test_save_then_read_returns_token(tmp_path: Path) -> None:
    store = _store(tmp_path)
    saved = store.save("token-one")
    credential = store.read()
    assert credential is not None
    assert credential.access_token == "token-one"
    assert saved.access_token == "token-one"


def test_token_survives_new_process(tmp_path: Path) -> None:
    _store(tmp_path).save("token-one")
    reloaded = _store(tmp_path)
    credential = reloaded.read()
    assert credential is not None
    assert credential.access_token == "token-one"


def test_durable_file_holds_token_and_timestamp(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save("token-one")
    payload = json.loads(store.credentials_path.read_text(encoding="utf-8"))
    assert payload[ACCESS_TOKEN_KEY] == "token-one"
    assert payload["obtainedAt"].endswith("Z")


def test_read_falls_back_to_cookie_when_file_missing(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save("token-one")
    store.credentials_path.unlink()
    credential = _store(tmp_path).read()
    assert credential is not None
    assert credential.access_token == "token-one"


def test_read_falls_back_to_cookie_when_file_corrupt(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save("token-one")
    store.credentials_path.write_text("{not json", encoding="utf-8")
    credential = store.read()
    assert credential is not None
    assert credential.access_token == "token-one"


def test_expired_cookie_is_ignored(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.cookie_jar.set_cookie(_access_cookie("127.0.0.1", "stale", int(time.time()) - 10))
    assert store.read() is None


def test_clear_removes_both_locations(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save("token-one")
    store.clear()
    assert store.read() is None
    assert not store.credentials_path.exists()
    assert _store(tmp_path).read() is None


def test_clear_keeps_server_cookies_unless_asked(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save("token-one")
    refresh_cookie = _access_cookie("127.0.0.1", "refresh-value", int(time.time()) + 3600)
    refresh_cookie.name = "refreshToken"
    refresh_cookie.path = "/api/auth"
    store.cookie_jar.set_cookie(refresh_cookie)
    store.persist_cookies()

    store.clear()
    assert [cookie.name for cookie in store.cookie_jar] == ["refreshToken"]

    store.clear(include_session=True)
    assert list(store.cookie_jar) == []


def test_read_without_anything_saved(tmp_path: Path) -> None:
    assert _store(tmp_path).read() is None


def _refresh_cookie(value: str) -> Cookie:
    cookie = _access_cookie("127.0.0.1", value, int(time.time()) + 3600)
    cookie.name = "refreshToken"
    cookie.path = "/api/auth"
    return cookie


def test_stores_sharing_a_home_see_each_others_cookies(tmp_path: Path) -> None:
    first = _store(tmp_path)
    second = _store(tmp_path)
    first.cookie_jar.set_cookie(_refresh_cookie("refresh-one"))
    first.persist_cookies()

    assert second.session_cookies() == (("refreshToken", "refresh-one"),)

    first.cookie_jar.set_cookie(_refresh_cookie("refresh-two"))
    first.persist_cookies()
    second.save("token-two")

    assert first.session_cookies() == (("refreshToken", "refresh-two"),)
    assert sorted(cookie.value for cookie in _store(tmp_path).cookie_jar) == ["refresh-two", "token-two"]


def test_read_uses_cookie_written_by_another_store(tmp_path: Path) -> None:
    first = _store(tmp_path)
    second = _store(tmp_path)
    first.save("token-one")
    first.credentials_path.unlink()

    credential = second.read()

    assert credential is not None
    assert credential.access_token == "token-one"
