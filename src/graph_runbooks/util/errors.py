from __future__ import annotations

from enum import IntEnum
from typing import Any, Optional, Type


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    AUTH_ERROR = 3
    FETCH_ERROR = 4
    DELIVERY_ERROR = 5
    RUNTIME_ERROR = 6


class RunbookError(Exception):
    """Base error for runbook execution."""


class ConfigError(RunbookError):
    """Raised for configuration or argument issues."""


class AuthResolutionError(RunbookError):
    """Raised when a token cannot be obtained."""


class ApiError(RunbookError):
    """Raised when an upstream API call fails."""

    def __init__(self, message: str, *, status: Optional[int] = None, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class FetchError(ApiError):
    """A collection or detail query failed."""


class MutationError(ApiError):
    """A single add/remove/patch call failed."""


class DeliveryError(ApiError):
    """The mail API rejected a send request."""


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, AuthResolutionError):
        return int(ExitCode.AUTH_ERROR)
    if isinstance(exc, DeliveryError):
        return int(ExitCode.DELIVERY_ERROR)
    if isinstance(exc, (FetchError, MutationError)):
        return int(ExitCode.FETCH_ERROR)
    if isinstance(exc, RunbookError):
        return int(ExitCode.RUNTIME_ERROR)
    return 1


def _error_detail(response: Any) -> str:
    """
    Pull the error message out of a Graph/ARM error body:
      {"error": {"code": "...", "message": "..."}}
    Falls back to the (truncated) raw text.
    """
    try:
        body = response.json()
    except Exception:
        body = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            code = err.get("code") or ""
            message = err.get("message") or ""
            detail = f"{code}: {message}".strip(": ")
            if detail:
                return detail
    text = str(getattr(response, "text", "") or "").strip()
    return text[:300]


def map_http_error(
    response: Any,
    context: str,
    error_cls: Type[ApiError] = FetchError,
) -> ApiError | None:
    """
    Wrap a non-success HTTP response with the given ApiError subclass.
    Returns None for 2xx responses.
    """
    status = int(getattr(response, "status_code", 0) or 0)
    if 200 <= status < 300:
        return None
    url = getattr(response, "url", None)
    detail = _error_detail(response)
    message = f"{context}: HTTP {status}"
    if detail:
        message = f"{message} ({detail})"
    return error_cls(message, status=status, url=url)
