"""Session records, request contexts and persisted document schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

STORE_DOCUMENT_VERSION = "1.0.0"


class _CamelModel(BaseModel):
    """Base model persisted with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Session(_CamelModel):
    """Ephemeral record binding an anonymous device to a store context."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    store_id: str = Field(min_length=1)
    table_id: str | None = None
    is_delivery: bool
    fingerprint: str = Field(min_length=1)
    ip_address: str
    user_agent: str = ""
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    order_count: int = Field(default=0, ge=0)
    total_spent: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)
    is_authenticated: bool = False
    customer_id: str | None = None

    @model_validator(mode="after")
    def validate_expiry_after_creation(self) -> Session:
        """Enforce that a session always expires after it was created."""
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at.")
        return self

    def is_expired(self, now: datetime) -> bool:
        """Return True once the session TTL has elapsed."""
        return self.expires_at <= now

    @property
    def duration_minutes(self) -> float:
        """Total lifetime granted to the session in minutes."""
        return (self.expires_at - self.created_at).total_seconds() / 60


class SessionContext(BaseModel):
    """Visitor context supplied when a session is requested."""

    store_id: str
    table_id: str | None = None
    is_delivery: bool = False
    fingerprint: str
    ip_address: str
    user_agent: str = ""
    customer_id: str | None = None


class SessionValidationResult(BaseModel):
    """Outcome of validating a session id."""

    is_valid: bool
    is_expired: bool = False
    is_active: bool = False
    session: Session | None = None
    reason: str | None = None


class SessionStats(BaseModel):
    """Aggregated counters over live sessions."""

    total: int = 0
    active: int = 0
    expired: int = 0
    authenticated: int = 0
    guest: int = 0
    average_duration_minutes: float = 0.0


class IndexSizes(BaseModel):
    """Bucket counts of each secondary index."""

    fingerprint: int = 0
    store: int = 0
    table: int = 0


class StoreStats(BaseModel):
    """Snapshot of store contents and storage footprint."""

    total_sessions: int = 0
    active_sessions: int = 0
    expired_sessions: int = 0
    storage_size: int = 0
    index_sizes: IndexSizes = Field(default_factory=IndexSizes)
    memory_only: bool = False


class StoreMetadata(_CamelModel):
    """Metadata block of the persisted session document."""

    last_cleanup: datetime
    total_created: int = Field(default=0, ge=0)
    version: str = STORE_DOCUMENT_VERSION


class SessionStoreDocument(_CamelModel):
    """Durable representation of the whole session store."""

    sessions: dict[str, Session] = Field(default_factory=dict)
    metadata: StoreMetadata


class SessionEventType(str, Enum):
    """Named session lifecycle events."""

    CREATED = "session_created"
    VALIDATED = "session_validated"
    ACTIVITY_UPDATED = "activity_updated"
    CUSTOMER_ASSOCIATED = "customer_associated"
    ORDER_RECORDED = "order_recorded"
    EXPIRED = "session_expired"
    EXTENDED = "session_extended"
    CLEANUP = "session_cleanup"


class SessionEvent(BaseModel):
    """Payload delivered to session event listeners."""

    model_config = ConfigDict(frozen=True)

    type: SessionEventType
    session_id: str
    store_id: str
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
