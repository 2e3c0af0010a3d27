from __future__ import annotations

"""Error taxonomy shared by the pipeline, the refresher and the check-in gate."""

from typing import Any


DEFAULT_ERROR_MESSAGE = "API request failed"


class WelldifyError(Exception):
    """Base class for every client-side failure."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.__class__.__name__, "message": self.message}


class ConfigError(WelldifyError, ValueError):
    """Client configuration could not be loaded or failed validation."""


class NetworkError(WelldifyError):
    """No response reached the client (DNS, refused connection, timeout)."""


class HttpError(WelldifyError):
    """The server answered with a non-2xx status."""

    def __init__(self, status: int, message: str, *, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["status"] = self.status
        return payload


class ValidationError(HttpError):
    """400 carrying field-level messages, flattened into one message."""

    def __init__(self, status: int, message: str, *, field_errors: list[dict[str, Any]], body: Any = None) -> None:
        super().__init__(status, message, body=body)
        self.field_errors = field_errors


class RefreshFailed(WelldifyError):
    """The refresh endpoint did not hand out a new access token."""


class AuthenticationExpired(WelldifyError):
    """Refresh failed after a 401; the session is over and the user must log in again."""


class DuplicateAction(WelldifyError):
    """The server rejected a check-in because one already exists for its day."""


class ActionNotAllowed(WelldifyError):
    """Submit was attempted while the gate was not eligible."""


class ProtocolError(WelldifyError):
    """A response body did not have the expected shape."""


def _flatten_field_errors(errors: list[Any]) -> tuple[str, list[dict[str, Any]]]:
    messages: list[str] = []
    normalized: list[dict[str, Any]] = []
    for item in errors:
        if isinstance(item, dict):
            text = item.get("msg") or item.get("message")
            normalized.append(item)
        else:
            text = str(item)
            normalized.append({"msg": text})
        if text:
            messages.append(str(text))
    return ", ".join(messages), normalized


def error_from_response(status: int, body: Any) -> HttpError:
    """Map a failed response body to `HttpError` or `ValidationError`."""

    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            message, field_errors = _flatten_field_errors(errors)
            return ValidationError(status, message or DEFAULT_ERROR_MESSAGE, field_errors=field_errors, body=body)
        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            detail = body.get("detail")
            message = detail if isinstance(detail, str) and detail.strip() else DEFAULT_ERROR_MESSAGE
        return HttpError(status, message, body=body)
    return HttpError(status, DEFAULT_ERROR_MESSAGE, body=body)
