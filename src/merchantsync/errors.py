from __future__ import annotations

from datetime import datetime

from merchantsync.util import humanize_seconds


class SyncError(RuntimeError):
    """Base for every failure the engine distinguishes."""

    kind = "sync_error"
    retryable = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "retryable": self.retryable}


class TransportError(SyncError):
    kind = "transport_error"


class ApiError(SyncError):
    kind = "api_error"

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class DecodeError(SyncError):
    kind = "decode_error"


class QuotaExceededError(SyncError):
    kind = "quota_exceeded"
    retryable = False

    def __init__(self, *, used: int, limit: int, reset_at: datetime, now: datetime):
        self.used = used
        self.limit = limit
        self.reset_at = reset_at
        self.seconds_until_reset = max(0.0, (reset_at - now).total_seconds())
        super().__init__(
            f"Daily API quota exceeded ({used}/{limit} calls). "
            f"Resets in {humanize_seconds(self.seconds_until_reset)}."
        )


class ValidationError(SyncError):
    kind = "validation_error"
    retryable = False


class MappingError(SyncError):
    kind = "mapping_error"
    retryable = False
