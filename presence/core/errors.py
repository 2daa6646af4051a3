"""
Exception types shared by the fetch pipeline and the API layer.
Remote and configuration errors propagate to the service; cache errors never do.
"""
from typing import Optional


class PresenceError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(PresenceError):
    """Sheet id or API key missing, or the config file is invalid."""


class SheetsError(PresenceError):
    """Failure talking to the spreadsheet API."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SheetsClientError(SheetsError):
    """Request rejected by the API (bad range, permissions, wrong id). Never retried."""


class SheetsTransientError(SheetsError):
    """Timeout, connection failure, throttling or 5xx. Safe to retry."""


class RetryExhaustedError(SheetsError):
    """A transient failure persisted through every attempt."""

    def __init__(self, message: str, last_error: Optional[Exception] = None, attempts: int = 0):
        status = getattr(last_error, "status", None)
        super().__init__(message, status=status)
        self.last_error = last_error
        self.attempts = attempts


class RequestTimeoutError(PresenceError):
    """The request deadline passed before the response was ready."""


class CacheBackendError(PresenceError):
    """Cache storage failed. Callers treat it as a miss."""


class InvalidQueryError(PresenceError):
    """Request parameters the pipeline cannot serve (e.g. a blank search term)."""
