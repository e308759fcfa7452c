"""Publish/subscribe hook for session lifecycle events."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable

import structlog

from guestsession.schemas.session import SessionEvent, SessionEventType

logger = structlog.get_logger(__name__)

SessionEventListener = Callable[[SessionEvent], Awaitable[None] | None]


class SessionEventBus:
    """Callback registry that isolates listener failures from emitters."""

    def __init__(self) -> None:
        self._listeners: dict[SessionEventType | None, list[SessionEventListener]] = {}

    def subscribe(
        self,
        event_type: SessionEventType | None,
        listener: SessionEventListener,
    ) -> Callable[[], None]:
        """Register a listener for one event type, or every type when None."""
        self._listeners.setdefault(event_type, []).append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(event_type, listener)

        return _unsubscribe

    def unsubscribe(
        self,
        event_type: SessionEventType | None,
        listener: SessionEventListener,
    ) -> None:
        """Remove a listener if it is registered."""
        listeners = self._listeners.get(event_type)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def clear(self) -> None:
        """Remove every listener."""
        self._listeners.clear()

    async def emit(self, event: SessionEvent) -> None:
        """Deliver an event to its listeners; log and skip failing ones."""
        listeners = [*self._listeners.get(event.type, []), *self._listeners.get(None, [])]
        for listener in listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "session_event_listener_failed",
                    event_type=event.type.value,
                    session_id=event.session_id,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                )
