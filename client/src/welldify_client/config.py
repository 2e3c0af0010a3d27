from __future__ import annotations

"""Client configuration loading: defaults, optional YAML file, environment overrides."""

import ipaddress
import os
from dataclasses import dataclass, field, replace
from datetime import tzinfo
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from jsonschema import Draft202012Validator

from .errors import ConfigError
from .paths import client_home


DEFAULT_API_BASE = "http://127.0.0.1:8005/api"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_COOKIE_DAYS = 7

CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "api_base": {"type": "string", "minLength": 1},
        "timeout_seconds": {"type": "number", "exclusiveMinimum": 0, "maximum": 300},
        "cookie_days": {"type": "integer", "minimum": 1, "maximum": 365},
        "timezone": {"type": ["string", "null"]},
        "tick_seconds": {"type": "number", "exclusiveMinimum": 0, "maximum": 60},
        "allow_insecure": {"type": "boolean"},
    },
}


@dataclass(frozen=True)
class ClientConfig:
    home: Path = field(default_factory=client_home)
    api_base: str = DEFAULT_API_BASE
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    cookie_days: int = DEFAULT_COOKIE_DAYS
    timezone: str | None = None
    tick_seconds: float = 1.0
    allow_insecure: bool = False


def is_local_host(hostname: str) -> bool:
    normalized = hostname.strip().lower().rstrip(".")
    if normalized == "localhost":
        return True
    try:
        return ipaddress.ip_address(normalized).is_loopback
    except ValueError:
        return False


def validate_api_base(api_base: str, *, allow_insecure: bool = False) -> str:
    """Validate the API base URL; bearer tokens only travel in clear text to loopback hosts."""

    parsed = urlsplit(api_base)
    if parsed.scheme not in {"http", "https"}:
        raise ConfigError("api_base must use http or https scheme.")
    if parsed.username or parsed.password:
        raise ConfigError("api_base must not include userinfo.")
    if not parsed.hostname:
        raise ConfigError("api_base must include a host.")
    if parsed.scheme == "http" and not allow_insecure and not is_local_host(parsed.hostname):
        raise ConfigError("api_base must use https for non-local hosts. Set allow_insecure to override.")
    return api_base.rstrip("/")


def resolve_timezone(name: str | None) -> tzinfo | None:
    """IANA zone for countdown math; `None` means the system local zone."""

    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown timezone: {name}") from exc


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number.") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be > 0.")
    return value


def _load_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file is not valid YAML: {path}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    errors = sorted(Draft202012Validator(CONFIG_SCHEMA).iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ConfigError(f"Config validation failed for {path} at {where}: {first.message}")
    return payload


def load_config(home: Path | None = None, **overrides: Any) -> ClientConfig:
    """Build a `ClientConfig` from `<home>/config.yaml`, env vars and explicit overrides."""

    base = home or client_home()
    config = ClientConfig(home=base)
    file_values = _load_file(base / "config.yaml")
    config = replace(config, **file_values)

    env_values: dict[str, Any] = {}
    api_url = os.environ.get("WELLDIFY_API_URL", "").strip()
    if api_url:
        env_values["api_base"] = api_url
    timeout = _env_float("WELLDIFY_TIMEOUT_SECONDS")
    if timeout is not None:
        env_values["timeout_seconds"] = timeout
    tz_name = os.environ.get("WELLDIFY_TIMEZONE", "").strip()
    if tz_name:
        env_values["timezone"] = tz_name
    config = replace(config, **env_values)

    explicit = {key: value for key, value in overrides.items() if value is not None}
    config = replace(config, **explicit)
    resolve_timezone(config.timezone)
    return replace(config, api_base=validate_api_base(config.api_base, allow_insecure=config.allow_insecure))
