"""Classification of execution errors and user-facing explanations."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Broad category of a failed model or tool execution."""

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    AUTH = "auth"
    BILLING = "billing"
    FORMAT = "format"
    UNKNOWN = "unknown"


_PATTERNS = (
    (ErrorKind.RATE_LIMIT, ("429", "rate limit", "too many requests", "quota", "throttl", "resource has been exhausted")),
    (ErrorKind.TIMEOUT, ("context deadline exceeded", "deadline exceeded", "timed out", "timeout", "i/o timeout")),
    (ErrorKind.BILLING, ("402", "payment required", "insufficient credits", "insufficient balance", "billing", "credit balance")),
    (ErrorKind.AUTH, ("401", "unauthorized", "invalid api key", "authentication", "api key revoked", "forbidden")),
    (ErrorKind.FORMAT, ("parse tool call", "tool call parse", "invalid character", "invalid request format", "malformed")),
)

_MESSAGES = {
    ErrorKind.RATE_LIMIT: "The model provider is rate-limited right now. Please retry in a minute.",
    ErrorKind.TIMEOUT: "The model request timed out. Please retry in a moment.",
    ErrorKind.AUTH: "Agent authentication failed. Please check API key and provider configuration.",
    ErrorKind.BILLING: "Agent billing or credit limit was reached. Please top up credits or switch API key.",
    ErrorKind.FORMAT: "The model returned an invalid response format. Please retry.",
}

_DEFAULT_MESSAGE = "This request could not be completed right now. Please retry shortly."


def classify_execution_error(err: Optional[BaseException | str]) -> ErrorKind:
    """Guess the kind of an error from its message."""
    if err is None:
        return ErrorKind.UNKNOWN
    raw = str(err).strip().lower()
    if not raw:
        return ErrorKind.UNKNOWN
    for kind, patterns in _PATTERNS:
        if any(pattern in raw for pattern in patterns):
            return kind
    return ErrorKind.UNKNOWN


def format_user_facing_execution_error(kind: ErrorKind) -> str:
    """Return a short explanation of the error kind for the end user."""
    return _MESSAGES.get(kind, _DEFAULT_MESSAGE)