"""Shared exception types for the tick engine."""

from typing import Optional


class TickEngineError(Exception):
    """Base class for errors that end a tick with a specific status."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TickConfigError(TickEngineError):
    """Strategy or session configuration cannot be used (no markets, bad cadence, bad mode)."""

    status_code = 400


class SessionNotFound(TickEngineError):
    status_code = 404


class SessionNotRunning(TickEngineError):
    status_code = 400


class Unauthorized(TickEngineError):
    status_code = 401


class AccountNotFound(TickEngineError):
    status_code = 404


class VenueSyncError(TickEngineError):
    """Live positions/equity could not be synced from the venue."""

    status_code = 500


class InsufficientBalance(TickEngineError):
    """Raised by a billing port when the user cannot pay for the model call."""

    status_code = 402


class BillingError(TickEngineError):
    status_code = 500


class AIProviderError(TickEngineError):
    """Model API answered with a non-2xx status (after retries) or was unreachable."""

    def __init__(self, status: Optional[int], provider: str, body: str = ""):
        self.status = status
        self.provider = provider
        self.body = body
        super().__init__(f"{provider} API call failed ({status}): {body[:300]}")


class IntentParseError(ValueError):
    """Model text did not contain a usable intent object."""


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class CriticalRecordingFailure(RuntimeError):
    """A live fill went through but could not be written to the store."""

    def __init__(self, message: str, venue: str, order_id: Optional[str] = None,
                 original: Optional[Exception] = None):
        super().__init__(message)
        self.venue = venue
        self.order_id = order_id
        self.original = original
