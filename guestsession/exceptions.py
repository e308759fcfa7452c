"""Guest session exception hierarchy."""

from __future__ import annotations


class GuestSessionError(Exception):
    """Base class for guest session domain errors."""

    code = "guest_session_error"

    def __init__(self, detail: str, code: str | None = None) -> None:
        """Initialize with user-facing detail and machine-readable code."""
        super().__init__(detail)
        self.detail = detail
        if code is not None:
            self.code = code


class InvalidInputError(GuestSessionError):
    """Raised when a request carries a malformed or missing field."""

    code = "invalid_input"


class InvalidSessionError(GuestSessionError):
    """Raised when a mutation targets a missing or expired session."""

    code = "invalid_session"


class CapacityExceededError(GuestSessionError):
    """Raised when a per-device or per-table session ceiling is reached."""

    code = "capacity_exceeded"


class BlockedError(GuestSessionError):
    """Raised when the rate limiter or anomaly detector vetoes a request."""

    code = "blocked"

    def __init__(self, detail: str, retry_after: int | None = None) -> None:
        """Initialize with optional retry hint in seconds."""
        super().__init__(detail)
        self.retry_after = retry_after


class StorageError(GuestSessionError):
    """Raised by persistence backends when the durable medium fails."""

    code = "storage_failure"


class StorageCapacityError(StorageError):
    """Raised when the durable medium rejects a write for lack of space."""
