"""
Failure classification for provider calls.

classify() is the single source of truth consulted by the retry executor
and the sync engine. It is pure (no side effects) and total: every
exception maps to exactly one ErrorKind.

    transient     network error, timeout, 408, 5xx
    rate_limited  429 or a provider throttling signal
    auth_failure  401/403 or an expired/invalid token signal
    config_error  malformed configuration, detected before any network call
    permanent     other 4xx: the request will never succeed as sent
    unknown       anything else
"""

import asyncio
from enum import Enum
from typing import Optional

import httpx

from .exceptions import (
    ConfigurationError,
    CredentialVaultError,
    OAuthExchangeFailed,
    ProviderError,
    ProviderNotConfigured,
    TokenRefreshRejected,
)


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILURE = "auth_failure"
    CONFIG_ERROR = "config_error"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_KINDS


RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED, ErrorKind.UNKNOWN})

TRANSIENT_STATUS_CODES = frozenset({408, 500, 502, 503, 504})

RATE_LIMIT_CODES = frozenset({"429", "rate_limit", "rate_limited", "too_many_requests", "throttled"})
AUTH_CODES = frozenset({"401", "403", "unauthorized", "forbidden", "invalid_token",
                        "token_expired", "invalid_grant"})
CONFIG_CODES = frozenset({"invalid_config", "missing_config", "config_error"})
PERMANENT_CODES = frozenset({"400", "404", "410", "422", "not_found", "gone"})
TRANSIENT_CODES = frozenset({"408", "500", "502", "503", "504", "timeout", "connection",
                             "unavailable"})

RATE_LIMIT_PHRASES = ("rate limit", "too many requests", "quota exceeded", "throttl")
AUTH_PHRASES = ("unauthorized", "forbidden", "invalid token", "token expired",
                "expired token", "bad credentials", "authentication")
CONFIG_PHRASES = ("invalid config", "missing required", "misconfigured")
PERMANENT_PHRASES = ("not found", "does not exist", "no longer exists")
TRANSIENT_PHRASES = ("timeout", "timed out", "connection", "network", "temporar",
                     "server error", "unavailable")


def classify_status(status_code: int) -> ErrorKind:
    """Classify an HTTP status code."""
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in (401, 403):
        return ErrorKind.AUTH_FAILURE
    if status_code in TRANSIENT_STATUS_CODES or 500 <= status_code <= 599:
        return ErrorKind.TRANSIENT
    if 400 <= status_code <= 499:
        return ErrorKind.PERMANENT
    return ErrorKind.UNKNOWN


def classify_code(code: Optional[str], message: Optional[str] = None) -> ErrorKind:
    """
    Classify a provider-reported error code and message.

    Codes are checked before message keywords; within each, rate limiting
    wins over auth, auth over config, config over permanent, permanent over
    transient.
    """
    code_lower = (code or "").strip().lower()
    msg_lower = (message or "").lower()

    if code_lower.isdigit():
        kind = classify_status(int(code_lower))
        if kind != ErrorKind.UNKNOWN:
            return kind

    if code_lower in RATE_LIMIT_CODES:
        return ErrorKind.RATE_LIMITED
    if code_lower in AUTH_CODES:
        return ErrorKind.AUTH_FAILURE
    if code_lower in CONFIG_CODES:
        return ErrorKind.CONFIG_ERROR
    if code_lower in PERMANENT_CODES:
        return ErrorKind.PERMANENT
    if code_lower in TRANSIENT_CODES:
        return ErrorKind.TRANSIENT

    if any(p in msg_lower for p in RATE_LIMIT_PHRASES):
        return ErrorKind.RATE_LIMITED
    if any(p in msg_lower for p in AUTH_PHRASES):
        return ErrorKind.AUTH_FAILURE
    if any(p in msg_lower for p in CONFIG_PHRASES):
        return ErrorKind.CONFIG_ERROR
    if any(p in msg_lower for p in PERMANENT_PHRASES):
        return ErrorKind.PERMANENT
    if any(p in msg_lower for p in TRANSIENT_PHRASES):
        return ErrorKind.TRANSIENT

    return ErrorKind.UNKNOWN


def classify(error: BaseException) -> ErrorKind:
    """
    Map any failure from a provider call to exactly one ErrorKind.

    Args:
        error: The raised exception

    Returns:
        ErrorKind
    """
    # Detected locally, before any network call
    if isinstance(error, (ConfigurationError, CredentialVaultError, ProviderNotConfigured)):
        return ErrorKind.CONFIG_ERROR

    if isinstance(error, TokenRefreshRejected):
        return ErrorKind.AUTH_FAILURE

    if isinstance(error, ProviderError):
        if error.status_code is not None:
            kind = classify_status(error.status_code)
            if kind != ErrorKind.UNKNOWN:
                return kind
        return classify_code(error.code, error.message)

    if isinstance(error, OAuthExchangeFailed):
        if error.status_code is not None:
            return classify_status(error.status_code)
        return ErrorKind.TRANSIENT

    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(error.response.status_code)

    # httpx.TimeoutException is a TransportError; both are transient
    if isinstance(error, httpx.TransportError):
        return ErrorKind.TRANSIENT

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT

    return ErrorKind.UNKNOWN
