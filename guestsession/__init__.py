"""Anonymous guest sessions with rate limiting and device fingerprinting."""

from guestsession.core.fingerprint import FingerprintGenerator
from guestsession.core.rate_limit import RateLimiter
from guestsession.core.session_store import SessionStore
from guestsession.exceptions import (
    BlockedError,
    CapacityExceededError,
    GuestSessionError,
    InvalidInputError,
    InvalidSessionError,
    StorageError,
)
from guestsession.services.session_service import SessionService

__all__ = [
    "BlockedError",
    "CapacityExceededError",
    "FingerprintGenerator",
    "GuestSessionError",
    "InvalidInputError",
    "InvalidSessionError",
    "RateLimiter",
    "SessionService",
    "SessionStore",
    "StorageError",
]
