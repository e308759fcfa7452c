"""Schema exports."""

from guestsession.schemas.fingerprint import (
    ActivityPattern,
    DeviceFingerprint,
    DeviceSignals,
    FingerprintChangeDetection,
    FingerprintRecord,
    FingerprintValidationResult,
    SecurityReport,
)
from guestsession.schemas.rate_limit import (
    BlockedIdentifier,
    RateLimitAttempt,
    RateLimitPolicy,
    RateLimitResult,
    RateLimitStatistics,
)
from guestsession.schemas.session import (
    Session,
    SessionContext,
    SessionEvent,
    SessionEventType,
    SessionStats,
    SessionStoreDocument,
    SessionValidationResult,
    StoreMetadata,
    StoreStats,
)

__all__ = [
    "ActivityPattern",
    "BlockedIdentifier",
    "DeviceFingerprint",
    "DeviceSignals",
    "FingerprintChangeDetection",
    "FingerprintRecord",
    "FingerprintValidationResult",
    "RateLimitAttempt",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimitStatistics",
    "SecurityReport",
    "Session",
    "SessionContext",
    "SessionEvent",
    "SessionEventType",
    "SessionStats",
    "SessionStoreDocument",
    "SessionValidationResult",
    "StoreMetadata",
    "StoreStats",
]
