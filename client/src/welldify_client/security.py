from __future__ import annotations

import re
from typing import Any


SECRET_VALUE_PATTERNS = [
    re.compile(r"\b[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\b"),  # JWT-like
    re.compile(r"\b(?:Bearer|Token)\s+[A-Za-z0-9\-_\.~+/]{8,}=*", re.IGNORECASE),
    re.compile(r"\b(?:access|refresh)Token=[^;\s]+", re.IGNORECASE),
    re.compile(
        r"\b(?=[A-Za-z0-9+/=_-]{40,}\b)(?=[A-Za-z0-9+/=_-]*[A-Z])(?=[A-Za-z0-9+/=_-]*[a-z])(?=[A-Za-z0-9+/=_-]*\d)[A-Za-z0-9+/=_-]{40,}\b"
    ),  # high-entropy token/base64-like
]

SECRET_KEYS = {
    "accesstoken",
    "access_token",
    "refreshtoken",
    "refresh_token",
    "authorization",
    "password",
    "cookie",
    "set-cookie",
}

PII_PATTERNS = [
    re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w{2,}\b"),  # email
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),  # SSN-like
]


def is_secret_like_text(text: str) -> bool:
    for pattern in SECRET_VALUE_PATTERNS:
        if pattern.search(text):
            return True
    return False


def is_secret_key(key: Any) -> bool:
    return isinstance(key, str) and key.strip().lower() in SECRET_KEYS


def payload_contains_secrets(payload: Any) -> bool:
    if isinstance(payload, str):
        return is_secret_like_text(payload)
    if isinstance(payload, list):
        return any(payload_contains_secrets(item) for item in payload)
    if isinstance(payload, dict):
        return any(is_secret_key(key) or payload_contains_secrets(value) for key, value in payload.items())
    return False


def payload_contains_pii(payload: Any) -> bool:
    if isinstance(payload, str):
        for pattern in PII_PATTERNS:
            if pattern.search(payload):
                return True
        return False
    if isinstance(payload, list):
        return any(payload_contains_pii(item) for item in payload)
    if isinstance(payload, dict):
        return any(payload_contains_pii(value) for value in payload.values())
    return False


def token_preview(token: str | None) -> str:
    """Short non-reversible hint for a token, safe for console output."""

    if not token:
        return "<none>"
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-2:]}"
