"""Session lifecycle service for anonymous restaurant visitors."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import uuid4

import structlog

from guestsession.config import SessionSettings
from guestsession.core.fingerprint import FingerprintGenerator
from guestsession.core.rate_limit import RateLimiter
from guestsession.core.session_store import SessionStore
from guestsession.exceptions import (
    BlockedError,
    CapacityExceededError,
    InvalidInputError,
    InvalidSessionError,
)
from guestsession.schemas.session import (
    Session,
    SessionContext,
    SessionEvent,
    SessionEventType,
    SessionStats,
    SessionValidationResult,
)
from guestsession.services.fingerprint_detection import (
    FingerprintDetectionService,
    FingerprintValidator,
)
from guestsession.services.session_events import SessionEventBus, SessionEventListener

logger = structlog.get_logger(__name__)

SESSION_CREATION_CLASS = "session_creation"
_SYSTEM_ID = "system"
_CENTS = Decimal("0.01")


def _new_session_id() -> str:
    """Return an unguessable session id."""
    return f"session_{uuid4().hex}"


class SessionService:
    """Create, validate, extend and expire guest sessions."""

    def __init__(
        self,
        store: SessionStore,
        settings: SessionSettings | None = None,
        fingerprint_generator: FingerprintGenerator | None = None,
        fingerprint_validator: FingerprintValidator | None = None,
        rate_limiter: RateLimiter | None = None,
        event_bus: SessionEventBus | None = None,
        now: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] = _new_session_id,
    ) -> None:
        self._store = store
        self._settings = settings or SessionSettings()
        self._fingerprints = fingerprint_generator or FingerprintGenerator()
        self._now = now or (lambda: datetime.now(UTC))
        self._validator = fingerprint_validator or FingerprintDetectionService(
            generator=self._fingerprints, now=self._now
        )
        self._rate_limiter = rate_limiter
        self._events = event_bus or SessionEventBus()
        self._id_factory = id_factory
        self._creation_lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None

    @property
    def settings(self) -> SessionSettings:
        """Current session policy."""
        return self._settings

    async def start(self) -> None:
        """Load persisted sessions, then start cleanup and change watching."""
        await self._store.initialize()
        if self._settings.enable_auto_cleanup and self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._run_cleanup_loop())
        if self._watch_task is None:
            self._watch_task = asyncio.create_task(self._watch_store_changes())
        logger.info("session_service_started", auto_cleanup=self._settings.enable_auto_cleanup)

    async def shutdown(self) -> None:
        """Stop background tasks and drop event listeners."""
        await self._stop_cleanup_task()
        watch_task, self._watch_task = self._watch_task, None
        await _cancel(watch_task)
        self._events.clear()
        logger.info("session_service_stopped")

    def configure(self, **overrides: Any) -> SessionSettings:
        """Apply validated policy overrides and restart cleanup if needed."""
        self._settings = SessionSettings.model_validate(
            {**self._settings.model_dump(), **overrides}
        )
        restart = {"enable_auto_cleanup", "cleanup_interval_minutes"} & set(overrides)
        if restart and self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
            if self._settings.enable_auto_cleanup:
                self._cleanup_task = asyncio.create_task(self._run_cleanup_loop())
        logger.info("session_service_configured", overrides=sorted(overrides))
        return self._settings

    def subscribe(
        self,
        event_type: SessionEventType | None,
        listener: SessionEventListener,
    ) -> Callable[[], None]:
        """Register a lifecycle listener; returns its unsubscribe callable."""
        return self._events.subscribe(event_type, listener)

    def unsubscribe(
        self,
        event_type: SessionEventType | None,
        listener: SessionEventListener,
    ) -> None:
        """Remove a lifecycle listener."""
        self._events.unsubscribe(event_type, listener)

    async def create_session(self, context: SessionContext) -> Session:
        """Return the device's live session in the store, or create one."""
        self._validate_context(context)

        judgment = await self._validator.validate_fingerprint(context.fingerprint)
        if judgment.is_blocked:
            logger.warning(
                "session_creation_blocked_fingerprint",
                store_id=context.store_id,
                fingerprint=context.fingerprint,
            )
            raise BlockedError("This device has been blocked due to suspicious activity.")
        if not judgment.is_valid:
            raise InvalidInputError("The device could not be identified.")

        await self._validator.record_usage(context.fingerprint)

        # Lookup, capacity checks and insert must not interleave with another create.
        async with self._creation_lock:
            existing = await self._store.get_by_fingerprint(context.fingerprint, context.store_id)
            if existing is None:
                await self._enforce_rate_limit(context)
                try:
                    await self._enforce_capacity(context)
                except CapacityExceededError:
                    await self._record_attempt(context, succeeded=False)
                    raise
                session = self._build_session(context)
                await self._store.set(session)
                await self._record_attempt(context, succeeded=True)

        if existing is not None:
            refreshed = await self._touch(existing)
            logger.info("session_reused", session_id=existing.id, store_id=context.store_id)
            return refreshed or existing

        logger.info(
            "session_created",
            session_id=session.id,
            store_id=session.store_id,
            table_id=session.table_id,
            is_delivery=session.is_delivery,
        )
        await self._emit(
            SessionEventType.CREATED,
            session,
            fingerprint=session.fingerprint,
            is_delivery=session.is_delivery,
            table_id=session.table_id,
            suspicious=judgment.is_suspicious,
        )
        return session

    async def validate_session(self, session_id: str) -> SessionValidationResult:
        """Report whether a session may still be used."""
        session = await self._store.peek(session_id)
        if session is None:
            return SessionValidationResult(is_valid=False, reason="Session not found.")

        if session.is_expired(self._now()):
            await self.expire_session(session_id)
            return SessionValidationResult(
                is_valid=False,
                is_expired=True,
                session=session,
                reason="Session has expired.",
            )

        judgment = await self._validator.validate_fingerprint(session.fingerprint)
        if judgment.is_blocked:
            await self.expire_session(session_id)
            return SessionValidationResult(
                is_valid=False,
                session=session,
                reason="This device has been blocked due to suspicious activity.",
            )

        is_active = self.is_active(session)
        if is_active:
            session = await self._touch(session) or session

        await self._emit(
            SessionEventType.VALIDATED,
            session,
            is_active=is_active,
            suspicious=judgment.is_suspicious,
        )
        return SessionValidationResult(is_valid=True, is_active=is_active, session=session)

    def is_active(self, session: Session) -> bool:
        """True when unexpired and used within the inactivity window."""
        now = self._now()
        idle_limit = timedelta(minutes=self._settings.activity_timeout_minutes)
        return not session.is_expired(now) and now - session.last_activity < idle_limit

    async def update_activity(self, session_id: str) -> None:
        """Refresh last activity; ignore missing or expired sessions."""
        session = await self._store.get(session_id)
        if session is None:
            return
        await self._touch(session)

    async def associate_customer(self, session_id: str, customer_id: str) -> Session:
        """Attach an authenticated customer to a guest session."""
        if not customer_id or not customer_id.strip():
            raise InvalidInputError("A customer id is required.")
        session = await self._require_live(session_id)

        updated = await self._update(
            session_id,
            customer_id=customer_id.strip(),
            is_authenticated=True,
            last_activity=self._now(),
        )
        logger.info("session_customer_associated", session_id=session_id)
        await self._emit(
            SessionEventType.CUSTOMER_ASSOCIATED,
            updated,
            customer_id=updated.customer_id,
            previously_authenticated=session.is_authenticated,
        )
        return updated

    async def increment_order_count(
        self,
        session_id: str,
        amount: Decimal | int | float | str,
    ) -> Session:
        """Count one order and add its amount to the session total."""
        try:
            value = Decimal(str(amount)).quantize(_CENTS)
        except InvalidOperation as exc:
            raise InvalidInputError("Order amount must be a number.") from exc
        if not value.is_finite() or value < 0:
            raise InvalidInputError("Order amount cannot be negative.")

        session = await self._require_live(session_id)
        updated = await self._update(
            session_id,
            order_count=session.order_count + 1,
            total_spent=(session.total_spent + value).quantize(_CENTS),
            last_activity=self._now(),
        )
        await self._emit(
            SessionEventType.ORDER_RECORDED,
            updated,
            amount=str(value),
            order_count=updated.order_count,
            total_spent=str(updated.total_spent),
        )
        return updated

    async def extend_session(self, session_id: str, additional_minutes: int) -> Session:
        """Push the expiry out, never past the maximum session duration."""
        if additional_minutes <= 0:
            raise InvalidInputError("Extension must be a positive number of minutes.")
        session = await self._require_live(session_id)

        duration = min(
            session.duration_minutes + additional_minutes,
            self._settings.max_session_duration_minutes,
        )
        expires_at = max(session.created_at + timedelta(minutes=duration), session.expires_at)
        updated = await self._update(session_id, expires_at=expires_at, last_activity=self._now())

        logger.info(
            "session_extended",
            session_id=session_id,
            expires_at=expires_at.isoformat(),
        )
        await self._emit(
            SessionEventType.EXTENDED,
            updated,
            previous_expires_at=session.expires_at.isoformat(),
            expires_at=expires_at.isoformat(),
        )
        return updated

    async def expire_session(self, session_id: str) -> None:
        """Delete a session immediately."""
        session = await self._store.peek(session_id)
        if session is None:
            return
        await self._store.delete(session_id)
        lived = (self._now() - session.created_at).total_seconds() / 60
        logger.info("session_expired", session_id=session_id, store_id=session.store_id)
        await self._emit(
            SessionEventType.EXPIRED,
            session,
            duration_minutes=round(lived, 2),
            order_count=session.order_count,
            total_spent=str(session.total_spent),
        )

    async def get_active_sessions(self, store_id: str) -> list[Session]:
        """Return the live sessions of one store."""
        return await self._store.get_active_by_store(store_id)

    async def clean_expired_sessions(self) -> int:
        """Sweep sessions that expired before the grace period."""
        cutoff = self._now() - timedelta(minutes=self._settings.cleanup_grace_minutes)
        removed = await self._store.cleanup(cutoff)
        if removed:
            await self._events.emit(
                SessionEvent(
                    type=SessionEventType.CLEANUP,
                    session_id=_SYSTEM_ID,
                    store_id=_SYSTEM_ID,
                    timestamp=self._now(),
                    metadata={"cleaned_count": removed},
                )
            )
        return removed

    async def get_session_stats(self, store_id: str | None = None) -> SessionStats:
        """Aggregate counters over retained sessions."""
        sessions = await self._store.list_sessions(store_id)
        if not sessions:
            return SessionStats()

        now = self._now()
        expired = sum(1 for session in sessions if session.is_expired(now))
        authenticated = sum(1 for session in sessions if session.is_authenticated)
        total_minutes = sum((now - session.created_at).total_seconds() / 60 for session in sessions)
        return SessionStats(
            total=len(sessions),
            active=sum(1 for session in sessions if self.is_active(session)),
            expired=expired,
            authenticated=authenticated,
            guest=len(sessions) - authenticated,
            average_duration_minutes=round(total_minutes / len(sessions), 2),
        )

    async def clear_all_sessions(self) -> None:
        """Drop every session; intended for tests and operator resets."""
        await self._store.clear()
        logger.warning("session_store_cleared")

    def _build_session(self, context: SessionContext) -> Session:
        """Construct a fresh session record for a validated context."""
        now = self._now()
        duration = (
            self._settings.delivery_duration_minutes
            if context.is_delivery
            else self._settings.table_duration_minutes
        )
        customer_id = context.customer_id or None
        return Session(
            id=self._id_factory(),
            store_id=context.store_id,
            table_id=context.table_id or None,
            is_delivery=context.is_delivery,
            fingerprint=context.fingerprint,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            created_at=now,
            expires_at=now + timedelta(minutes=duration),
            last_activity=now,
            is_authenticated=customer_id is not None,
            customer_id=customer_id,
        )

    def _validate_context(self, context: SessionContext) -> None:
        """Reject contexts missing required fields."""
        if not context.store_id.strip():
            raise InvalidInputError("A store id is required.")
        if not context.ip_address.strip():
            raise InvalidInputError("A client address is required.")
        if not self._fingerprints.validate_format(context.fingerprint):
            raise InvalidInputError("The device could not be identified.")

    async def _enforce_rate_limit(self, context: SessionContext) -> None:
        """Raise BlockedError when the client address is over budget."""
        if self._rate_limiter is None:
            return
        result = await self._rate_limiter.check(context.ip_address, SESSION_CREATION_CLASS)
        if not result.allowed:
            logger.warning(
                "session_creation_rate_limited",
                store_id=context.store_id,
                retry_after=result.retry_after,
            )
            raise BlockedError(
                "Too many session requests. Please try again later.",
                retry_after=result.retry_after,
            )

    async def _enforce_capacity(self, context: SessionContext) -> None:
        """Raise CapacityExceededError when a device or table is full."""
        device_sessions = await self._store.get_active_by_fingerprint(context.fingerprint)
        if len(device_sessions) >= self._settings.max_sessions_per_fingerprint:
            raise CapacityExceededError("Too many active sessions on this device.")

        if context.table_id:
            table_sessions = await self._store.get_active_by_table(context.table_id)
            if len(table_sessions) >= self._settings.max_sessions_per_table:
                raise CapacityExceededError("This table has reached its session limit.")

    async def _record_attempt(self, context: SessionContext, succeeded: bool) -> None:
        if self._rate_limiter is None:
            return
        await self._rate_limiter.record(
            context.ip_address,
            SESSION_CREATION_CLASS,
            succeeded=succeeded,
            metadata={"store_id": context.store_id, "table_id": context.table_id},
        )

    async def _require_live(self, session_id: str) -> Session:
        """Return a live session or raise InvalidSessionError."""
        session = await self._store.get(session_id)
        if session is None:
            raise InvalidSessionError("Session is invalid or has expired.")
        return session

    async def _update(self, session_id: str, **fields: Any) -> Session:
        updated = await self._store.update(session_id, **fields)
        if updated is None:
            raise InvalidSessionError("Session is invalid or has expired.")
        return updated

    async def _touch(self, session: Session) -> Session | None:
        """Refresh last activity and announce it."""
        updated = await self._store.update(session.id, last_activity=self._now())
        if updated is not None:
            await self._emit(SessionEventType.ACTIVITY_UPDATED, updated)
        return updated

    async def _emit(self, event_type: SessionEventType, session: Session, **metadata: Any) -> None:
        await self._events.emit(
            SessionEvent(
                type=event_type,
                session_id=session.id,
                store_id=session.store_id,
                timestamp=self._now(),
                metadata=metadata,
            )
        )

    async def _run_cleanup_loop(self) -> None:
        """Sweep expired sessions and stale fingerprints on the configured interval."""
        while True:
            await asyncio.sleep(self._settings.cleanup_interval_minutes * 60)
            try:
                removed, forgotten = await self._cleanup_once()
            except Exception:
                logger.exception("session_cleanup_failed")
                continue
            logger.info(
                "session_cleanup_completed",
                removed=removed,
                fingerprints_removed=forgotten,
            )

    async def _cleanup_once(self) -> tuple[int, int]:
        """Run one sweep; returns removed session and fingerprint counts."""
        removed = await self.clean_expired_sessions()
        cutoff = self._now() - timedelta(hours=self._settings.fingerprint_retention_hours)
        forgotten = await self._validator.cleanup(cutoff)
        return removed, forgotten

    async def _watch_store_changes(self) -> None:
        """Resync the store whenever another process rewrites it."""
        try:
            await self._store.watch_external_changes()
        except Exception:
            logger.exception("session_store_watch_failed")

    async def _stop_cleanup_task(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        await _cancel(task)


async def _cancel(task: asyncio.Task[None] | None) -> None:
    """Cancel a background task and wait for it to finish."""
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
