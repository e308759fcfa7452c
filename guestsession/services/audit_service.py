"""Audit trail of session lifecycle events written to structured logs."""

from __future__ import annotations

import re
from collections.abc import Callable
from decimal import Decimal
from typing import Any

import structlog

from guestsession.schemas.session import SessionEvent
from guestsession.services.session_events import SessionEventBus

logger = structlog.get_logger(__name__)

_REDACTED = "***REDACTED***"
_SENSITIVE_KEY_PARTS = (
    "authorization",
    "customer",
    "email",
    "otp",
    "password",
    "phone",
    "secret",
    "token",
)
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _is_sensitive_key(key: str) -> bool:
    """Return True when metadata key likely contains personal data."""
    normalized = key.strip().lower().replace("-", "_")
    return any(part in normalized for part in _SENSITIVE_KEY_PARTS)


def _is_email_like(value: str) -> bool:
    return bool(_EMAIL_PATTERN.match(value.strip()))


def _sanitize_metadata_value(value: Any) -> Any:
    """Coerce metadata values to JSON-safe primitives with PII redaction."""
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, str):
        return _REDACTED if _is_email_like(value) else value
    if isinstance(value, dict):
        return _sanitize_metadata(value)
    if isinstance(value, list | tuple):
        return [_sanitize_metadata_value(item) for item in value]
    return str(value)


def _sanitize_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Redact sensitive fields of event metadata."""
    sanitized: dict[str, Any] = {}
    for key, value in metadata.items():
        if _is_sensitive_key(key):
            sanitized[key] = _REDACTED
            continue
        sanitized[key] = _sanitize_metadata_value(value)
    return sanitized


class AuditService:
    """Write one audit record per session event without affecting callers."""

    def __init__(self, audit_logger: Any | None = None) -> None:
        self._logger = audit_logger or structlog.get_logger("guestsession.audit")

    def attach(self, event_bus: SessionEventBus) -> Callable[[], None]:
        """Subscribe to every event type; returns the unsubscribe callable."""
        return event_bus.subscribe(None, self.record)

    def record(self, event: SessionEvent) -> None:
        """Log a redacted audit entry and swallow write failures."""
        try:
            self._logger.info(
                "session_audit",
                event_type=event.type.value,
                session_id=event.session_id,
                store_id=event.store_id,
                occurred_at=event.timestamp.isoformat(),
                metadata=_sanitize_metadata(event.metadata),
            )
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                event_type=event.type.value,
                session_id=event.session_id,
                error=str(exc),
            )
