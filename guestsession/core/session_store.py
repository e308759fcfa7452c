"""In-process TTL session store with secondary indices and durable snapshots."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from guestsession.core.persistence import SessionPersistence
from guestsession.exceptions import InvalidInputError, StorageCapacityError, StorageError
from guestsession.schemas.session import (
    STORE_DOCUMENT_VERSION,
    IndexSizes,
    Session,
    SessionStoreDocument,
    StoreMetadata,
    StoreStats,
)

logger = structlog.get_logger(__name__)

MigrationHook = Callable[[dict[str, Any]], dict[str, Any] | None]

_STARTUP_CLEANUP_AGE = timedelta(hours=1)
_MUTABLE_FIELDS = frozenset(Session.model_fields) - {"id"}


def discard_incompatible(_: dict[str, Any]) -> dict[str, Any] | None:
    """Default migration: drop documents written by another schema version."""
    return None


class SessionStore:
    """Primary session map plus fingerprint, store and table indices."""

    def __init__(
        self,
        persistence: SessionPersistence,
        now: Callable[[], datetime] | None = None,
        migrate: MigrationHook = discard_incompatible,
    ) -> None:
        self._persistence = persistence
        self._now = now or (lambda: datetime.now(UTC))
        self._migrate = migrate
        self._lock = asyncio.Lock()
        self._sessions: dict[str, Session] = {}
        self._fingerprint_index: dict[str, set[str]] = {}
        self._store_index: dict[str, set[str]] = {}
        self._table_index: dict[str, set[str]] = {}
        self._initialized = False
        self._memory_only = False
        self._total_created = 0
        self._last_cleanup = self._now()

    @property
    def memory_only(self) -> bool:
        """True once durable writes were abandoned for this process."""
        return self._memory_only

    async def initialize(self) -> None:
        """Rehydrate from the durable medium and rebuild indices once."""
        async with self._lock:
            if self._initialized:
                return
            await self._load_locked()
            now = self._now()
            if now - self._last_cleanup >= _STARTUP_CLEANUP_AGE:
                self._cleanup_locked(now - _STARTUP_CLEANUP_AGE)
                await self._persist_locked()
            self._initialized = True

    async def get(self, session_id: str) -> Session | None:
        """Return a live session, lazily deleting it once expired."""
        await self._ensure_initialized()
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_expired(self._now()):
                self._remove(session_id)
                await self._persist_locked()
                logger.info("session_store_expired_on_read", session_id=session_id)
                return None
            return session

    async def peek(self, session_id: str) -> Session | None:
        """Return a session record without applying lazy expiry."""
        await self._ensure_initialized()
        return self._sessions.get(session_id)

    async def set(self, session: Session) -> None:
        """Insert or replace a session record."""
        await self._ensure_initialized()
        async with self._lock:
            if session.id not in self._sessions:
                self._total_created += 1
            self._put(session)
            await self._persist_locked()

    async def update(self, session_id: str, **fields: Any) -> Session | None:
        """Apply field changes to a session; return the new record or None."""
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise InvalidInputError(f"Unsupported session fields: {', '.join(sorted(unknown))}.")

        await self._ensure_initialized()
        async with self._lock:
            existing = self._sessions.get(session_id)
            if existing is None:
                return None
            updated = Session.model_validate({**existing.model_dump(), **fields})
            self._put(updated)
            await self._persist_locked()
            return updated

    async def delete(self, session_id: str) -> bool:
        """Remove a session and its index entries."""
        await self._ensure_initialized()
        async with self._lock:
            removed = self._remove(session_id)
            if removed is None:
                return False
            await self._persist_locked()
            return True

    async def get_by_fingerprint(self, fingerprint: str, store_id: str) -> Session | None:
        """Return the newest live session of a device in one store."""
        await self._ensure_initialized()
        matches = [
            session
            for session in self._live(self._fingerprint_index.get(fingerprint, ()))
            if session.store_id == store_id
        ]
        return matches[-1] if matches else None

    async def get_active_by_fingerprint(self, fingerprint: str) -> list[Session]:
        """Return live sessions of a device across stores."""
        await self._ensure_initialized()
        return self._live(self._fingerprint_index.get(fingerprint, ()))

    async def get_active_by_store(self, store_id: str) -> list[Session]:
        """Return live sessions of a store."""
        await self._ensure_initialized()
        return self._live(self._store_index.get(store_id, ()))

    async def get_active_by_table(self, table_id: str) -> list[Session]:
        """Return live sessions seated at a table."""
        await self._ensure_initialized()
        return self._live(self._table_index.get(table_id, ()))

    async def get_active(self) -> list[Session]:
        """Return every live session."""
        await self._ensure_initialized()
        return self._live(self._sessions)

    async def list_sessions(self, store_id: str | None = None) -> list[Session]:
        """Return every retained record, including expired ones not yet swept."""
        await self._ensure_initialized()
        session_ids = self._sessions if store_id is None else self._store_index.get(store_id, ())
        return sorted(
            (self._sessions[session_id] for session_id in session_ids),
            key=lambda session: session.created_at,
        )

    async def cleanup(self, older_than: datetime) -> int:
        """Delete sessions that expired before a cutoff; persist once."""
        await self._ensure_initialized()
        async with self._lock:
            removed = self._cleanup_locked(older_than)
            if removed:
                await self._persist_locked()
        if removed:
            logger.info("session_store_cleanup", removed=removed, cutoff=older_than.isoformat())
        return removed

    async def clear(self) -> None:
        """Drop every session and the durable document."""
        async with self._lock:
            self._reset_state()
            try:
                await self._persistence.clear()
            except StorageError as exc:
                logger.error("session_store_clear_failed", error=str(exc))
            self._initialized = True

    async def stats(self) -> StoreStats:
        """Return counts, serialized size and index sizes."""
        await self._ensure_initialized()
        now = self._now()
        active = sum(1 for session in self._sessions.values() if not session.is_expired(now))
        return StoreStats(
            total_sessions=len(self._sessions),
            active_sessions=active,
            expired_sessions=len(self._sessions) - active,
            storage_size=len(self._serialize().encode("utf-8")),
            index_sizes=IndexSizes(
                fingerprint=len(self._fingerprint_index),
                store=len(self._store_index),
                table=len(self._table_index),
            ),
            memory_only=self._memory_only,
        )

    async def export_document(self) -> SessionStoreDocument:
        """Return a backup of the current contents."""
        await self._ensure_initialized()
        return self._document()

    async def import_document(self, document: SessionStoreDocument) -> None:
        """Replace all contents with a backup and persist it."""
        async with self._lock:
            self._apply_document(document)
            self._initialized = True
            await self._persist_locked()

    async def resync(self) -> None:
        """Reload from the durable medium after another writer changed it."""
        async with self._lock:
            if self._memory_only:
                logger.warning("session_store_resync_skipped", sessions=len(self._sessions))
                return
            await self._load_locked()
            self._initialized = True
        logger.info("session_store_resynced", sessions=len(self._sessions))

    async def watch_external_changes(self) -> None:
        """Resynchronize whenever another writer announces a change."""
        async for origin in self._persistence.changes():
            logger.info("session_store_external_change", origin=origin)
            await self.resync()

    def index_snapshot(self) -> dict[str, dict[str, set[str]]]:
        """Return copies of the secondary indices for consistency checks."""
        return {
            "fingerprint": {key: set(ids) for key, ids in self._fingerprint_index.items()},
            "store": {key: set(ids) for key, ids in self._store_index.items()},
            "table": {key: set(ids) for key, ids in self._table_index.items()},
        }

    async def _ensure_initialized(self) -> None:
        """Lazily initialize on first use."""
        if not self._initialized:
            await self.initialize()

    async def _load_locked(self) -> None:
        """Replace in-memory state with the decoded durable document."""
        try:
            raw = await self._persistence.load()
        except StorageError as exc:
            logger.warning("session_store_load_failed", error=str(exc))
            raw = None
        self._apply_document(self._decode(raw))

    def _decode(self, raw: str | None) -> SessionStoreDocument:
        """Parse a stored document, migrating or discarding unusable data."""
        if raw is None:
            return self._empty_document()
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("session document must be a JSON object")
            metadata = data.get("metadata")
            version = metadata.get("version") if isinstance(metadata, dict) else None
            if version != STORE_DOCUMENT_VERSION:
                logger.info(
                    "session_store_migrating",
                    from_version=version,
                    to_version=STORE_DOCUMENT_VERSION,
                )
                migrated = self._migrate(data)
                if migrated is None:
                    return self._empty_document()
                data = migrated
            return SessionStoreDocument.model_validate(data)
        except ValueError as exc:
            logger.warning("session_store_document_corrupt", error=str(exc))
            return self._empty_document()

    def _apply_document(self, document: SessionStoreDocument) -> None:
        """Load records into the primary map and derive indices."""
        self._reset_state()
        for session_id, session in document.sessions.items():
            if session.id != session_id:
                session = session.model_copy(update={"id": session_id})
            self._put(session)
        self._total_created = max(document.metadata.total_created, len(self._sessions))
        self._last_cleanup = document.metadata.last_cleanup

    def _reset_state(self) -> None:
        """Forget all records and index buckets."""
        self._sessions.clear()
        self._fingerprint_index.clear()
        self._store_index.clear()
        self._table_index.clear()

    def _empty_document(self) -> SessionStoreDocument:
        """Build a document with no sessions."""
        return SessionStoreDocument(metadata=StoreMetadata(last_cleanup=self._now()))

    def _document(self) -> SessionStoreDocument:
        """Snapshot the primary map into a persistable document."""
        return SessionStoreDocument(
            sessions=dict(self._sessions),
            metadata=StoreMetadata(
                last_cleanup=self._last_cleanup,
                total_created=self._total_created,
                version=STORE_DOCUMENT_VERSION,
            ),
        )

    def _serialize(self) -> str:
        """Render the persisted JSON layout."""
        return self._document().model_dump_json(by_alias=True)

    async def _persist_locked(self) -> None:
        """Write the document, evicting half the records once on quota errors."""
        if self._memory_only:
            return
        try:
            await self._persistence.save(self._serialize())
        except StorageCapacityError as exc:
            logger.warning(
                "session_store_capacity_exceeded",
                sessions=len(self._sessions),
                error=str(exc),
            )
            evicted = self._evict_oldest_half()
            try:
                await self._persistence.save(self._serialize())
            except StorageError as retry_exc:
                self._memory_only = True
                logger.error(
                    "session_store_memory_only",
                    evicted=evicted,
                    error=str(retry_exc),
                )
        except StorageError as exc:
            logger.error("session_store_persist_failed", error=str(exc))

    def _evict_oldest_half(self) -> int:
        """Emergency eviction of the oldest 50% of records by creation time."""
        oldest = sorted(self._sessions.values(), key=lambda session: session.created_at)
        victims = oldest[: len(oldest) // 2]
        for session in victims:
            self._remove(session.id)
        logger.warning("session_store_emergency_eviction", evicted=len(victims))
        return len(victims)

    def _cleanup_locked(self, older_than: datetime) -> int:
        """Remove records that expired before the cutoff."""
        expired_ids = [
            session_id
            for session_id, session in self._sessions.items()
            if session.expires_at < older_than
        ]
        for session_id in expired_ids:
            self._remove(session_id)
        self._last_cleanup = self._now()
        return len(expired_ids)

    def _live(self, session_ids: Any) -> list[Session]:
        """Resolve ids to unexpired sessions ordered by creation time."""
        now = self._now()
        sessions = [
            session
            for session_id in list(session_ids)
            if (session := self._sessions.get(session_id)) is not None
            and not session.is_expired(now)
        ]
        return sorted(sessions, key=lambda session: session.created_at)

    def _put(self, session: Session) -> None:
        """Store a record and move its index entries in one step."""
        previous = self._sessions.get(session.id)
        if previous is not None:
            self._unindex(previous)
        self._sessions[session.id] = session
        self._index(session)

    def _remove(self, session_id: str) -> Session | None:
        """Drop a record together with its index entries."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            self._unindex(session)
        return session

    def _index(self, session: Session) -> None:
        """Add a session id to every bucket matching its fields."""
        self._fingerprint_index.setdefault(session.fingerprint, set()).add(session.id)
        self._store_index.setdefault(session.store_id, set()).add(session.id)
        if session.table_id:
            self._table_index.setdefault(session.table_id, set()).add(session.id)

    def _unindex(self, session: Session) -> None:
        """Remove a session id from its buckets, dropping empty buckets."""
        for index, value in (
            (self._fingerprint_index, session.fingerprint),
            (self._store_index, session.store_id),
            (self._table_index, session.table_id),
        ):
            if value is None:
                continue
            bucket = index.get(value)
            if bucket is None:
                continue
            bucket.discard(session.id)
            if not bucket:
                del index[value]
