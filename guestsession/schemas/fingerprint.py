"""Device fingerprint schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class DeviceSignals(BaseModel):
    """Raw environment signals combined into a fingerprint hash."""

    user_agent: str
    screen_resolution: str
    time_zone: str
    language: str
    canvas_hash: str
    webgl_hash: str
    device_memory: float | None = None
    hardware_concurrency: int | None = None
    color_depth: int | None = None
    pixel_ratio: float | None = None


class DeviceFingerprint(BaseModel):
    """Derived best-effort device identity."""

    model_config = ConfigDict(frozen=True)

    hash: str
    confidence: float = Field(ge=0.0, le=1.0)
    signals: DeviceSignals


class FingerprintValidationResult(BaseModel):
    """Anomaly detector judgment for one fingerprint."""

    is_valid: bool
    is_suspicious: bool = False
    is_blocked: bool = False
    similarity: float | None = None
    reason: str | None = None


class FingerprintRecord(BaseModel):
    """Usage history tracked for a fingerprint by the anomaly detector."""

    hash: str
    created_at: datetime
    last_seen: datetime
    usage_count: int = Field(default=0, ge=0)
    suspicious_activity: int = Field(default=0, ge=0)
    is_blocked: bool = False
    blocked_reason: str | None = None


class ActivityPattern(BaseModel):
    """Suspicious activity pattern detected for a fingerprint."""

    type: str
    severity: str
    description: str


class FingerprintChangeDetection(BaseModel):
    """Assessment of a device moving from one fingerprint to another."""

    has_changed: bool
    similarity: float
    suspicious_changes: list[str] = Field(default_factory=list)
    risk_level: Literal["low", "medium", "high"] = "low"


class SecurityReport(BaseModel):
    """Operator summary of the risk carried by one fingerprint."""

    fingerprint: str
    risk_score: float = Field(ge=0.0, le=1.0)
    risk_level: Literal["low", "medium", "high"]
    patterns: list[ActivityPattern] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    is_blocked: bool = False
