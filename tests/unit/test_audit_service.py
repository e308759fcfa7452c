"""Unit tests for the session audit listener."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pytest

from guestsession.schemas.session import SessionEvent, SessionEventType
from guestsession.services import audit_service as audit_module
from guestsession.services.audit_service import AuditService
from guestsession.services.session_events import SessionEventBus


class _CaptureLogger:
    """Structlog-like sink capturing info and error payloads."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def info(self, event: str, **kwargs: Any) -> None:
        """Capture or fail an info event."""
        if self.fail:
            raise RuntimeError("log sink down")
        self.calls.append(("info", event, kwargs))

    def error(self, event: str, **kwargs: Any) -> None:
        """Capture an error event."""
        self.calls.append(("error", event, kwargs))


def _event(**metadata: Any) -> SessionEvent:
    return SessionEvent(
        type=SessionEventType.CUSTOMER_ASSOCIATED,
        session_id="session_1",
        store_id="store-1",
        timestamp=datetime(2026, 3, 14, 12, 0, tzinfo=UTC),
        metadata=metadata,
    )


def test_record_redacts_sensitive_metadata() -> None:
    """Customer identifiers, contact data and email-like values are redacted."""
    sink = _CaptureLogger()
    service = AuditService(audit_logger=sink)

    service.record(
        _event(
            customer_id="cust-42",
            phone_number="+5511999999999",
            note="guest@example.com",
            amount=Decimal("10.50"),
            nested={"otp_code": "123456", "table_id": "T1"},
            is_delivery=False,
        )
    )

    [(level, event, payload)] = sink.calls
    assert (level, event) == ("info", "session_audit")
    assert payload["event_type"] == "customer_associated"
    assert payload["occurred_at"] == "2026-03-14T12:00:00+00:00"
    assert payload["metadata"] == {
        "customer_id": "***REDACTED***",
        "phone_number": "***REDACTED***",
        "note": "***REDACTED***",
        "amount": "10.50",
        "nested": {"otp_code": "***REDACTED***", "table_id": "T1"},
        "is_delivery": False,
    }


def test_record_swallows_log_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing audit sink is reported and never raised."""
    errors = _CaptureLogger()
    monkeypatch.setattr(audit_module, "logger", errors)
    service = AuditService(audit_logger=_CaptureLogger(fail=True))

    service.record(_event())

    [(level, event, payload)] = errors.calls
    assert (level, event) == ("error", "audit_write_failed")
    assert payload["error"] == "log sink down"


async def test_attach_receives_every_event_type() -> None:
    """An attached audit service sees all emitted events until detached."""
    sink = _CaptureLogger()
    bus = SessionEventBus()
    detach = AuditService(audit_logger=sink).attach(bus)

    await bus.emit(_event())
    detach()
    await bus.emit(_event())

    assert len(sink.calls) == 1
