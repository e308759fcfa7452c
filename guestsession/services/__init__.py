"""Service package exports."""

from guestsession.services.audit_service import AuditService
from guestsession.services.fingerprint_detection import (
    FingerprintDetectionService,
    FingerprintValidator,
)
from guestsession.services.session_events import SessionEventBus
from guestsession.services.session_service import SessionService

__all__ = [
    "AuditService",
    "FingerprintDetectionService",
    "FingerprintValidator",
    "SessionEventBus",
    "SessionService",
]
