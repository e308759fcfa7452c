"""Fingerprint anomaly detection backing session creation and validation."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import structlog

from guestsession.core.fingerprint import SUSPICIOUS_SIMILARITY_THRESHOLD, FingerprintGenerator
from guestsession.schemas.fingerprint import (
    ActivityPattern,
    FingerprintChangeDetection,
    FingerprintRecord,
    FingerprintValidationResult,
    SecurityReport,
)

logger = structlog.get_logger(__name__)

_MAX_HASH_LENGTH = 64
_BLOCK_THRESHOLD = 10
_USAGE_SPIKE = 100
_EARLY_WINDOW = timedelta(hours=1)
_EARLY_BURST = 10
_EARLY_BLOCK_USAGE = 50
_DRASTIC_CHANGE_SIMILARITY = 0.1
_MODERATE_CHANGE_SIMILARITY = 0.7


class FingerprintValidator(Protocol):
    """Opaque judgment on whether a fingerprint may hold a session."""

    async def validate_fingerprint(self, fingerprint: str) -> FingerprintValidationResult:
        """Return validity, suspicion and block flags for a fingerprint."""

    async def record_usage(self, fingerprint: str) -> Any:
        """Count one session request made by a fingerprint."""

    async def cleanup(self, older_than: datetime) -> int:
        """Forget fingerprints idle since before a cutoff."""


class FingerprintDetectionService:
    """Track fingerprint usage and flag or block abusive devices."""

    def __init__(
        self,
        generator: FingerprintGenerator | None = None,
        now: Callable[[], datetime] | None = None,
        block_threshold: int = _BLOCK_THRESHOLD,
    ) -> None:
        self._generator = generator or FingerprintGenerator()
        self._now = now or (lambda: datetime.now(UTC))
        self._block_threshold = block_threshold
        self._records: dict[str, FingerprintRecord] = {}

    def get(self, fingerprint: str) -> FingerprintRecord | None:
        """Return the tracked record of a fingerprint."""
        return self._records.get(fingerprint)

    async def validate_fingerprint(
        self,
        fingerprint: str,
        previous_fingerprint: str | None = None,
    ) -> FingerprintValidationResult:
        """Judge a fingerprint; sightings are counted by ``record_usage``."""
        if not self._is_valid_format(fingerprint):
            return FingerprintValidationResult(
                is_valid=False,
                is_suspicious=True,
                reason="Invalid fingerprint format.",
            )

        record = self._records.get(fingerprint)
        if record is not None and record.is_blocked:
            return FingerprintValidationResult(
                is_valid=False,
                is_suspicious=True,
                is_blocked=True,
                reason="Fingerprint blocked for suspicious activity.",
            )

        similarity = 1.0
        changed_suspiciously = False
        if previous_fingerprint and previous_fingerprint != fingerprint:
            similarity = self._generator.similarity(previous_fingerprint, fingerprint)
            changed_suspiciously = similarity < SUSPICIOUS_SIMILARITY_THRESHOLD

        patterns = await self.analyze_activity_pattern(fingerprint)
        high_risk = any(pattern.severity == "high" for pattern in patterns)

        return FingerprintValidationResult(
            is_valid=True,
            is_suspicious=changed_suspiciously or high_risk,
            similarity=similarity,
            reason="Suspicious fingerprint change detected." if changed_suspiciously else None,
        )

    async def detect_suspicious_changes(
        self,
        old_fingerprint: str,
        new_fingerprint: str,
    ) -> FingerprintChangeDetection:
        """Grade how far a device drifted from its previous fingerprint."""
        has_changed = old_fingerprint != new_fingerprint
        similarity = self._generator.similarity(old_fingerprint, new_fingerprint)
        if not has_changed:
            return FingerprintChangeDetection(has_changed=False, similarity=similarity)

        if similarity < _DRASTIC_CHANGE_SIMILARITY:
            change, risk_level = "Drastic fingerprint change.", "high"
        elif similarity < SUSPICIOUS_SIMILARITY_THRESHOLD:
            change, risk_level = "Significant fingerprint change.", "medium"
        elif similarity < _MODERATE_CHANGE_SIMILARITY:
            change, risk_level = "Moderate fingerprint change.", "low"
        else:
            return FingerprintChangeDetection(has_changed=True, similarity=similarity)
        return FingerprintChangeDetection(
            has_changed=True,
            similarity=similarity,
            suspicious_changes=[change],
            risk_level=risk_level,
        )

    async def record_usage(self, fingerprint: str) -> FingerprintRecord:
        """Count one session request made by a fingerprint."""
        now = self._now()
        record = self._records.get(fingerprint) or FingerprintRecord(
            hash=fingerprint, created_at=now, last_seen=now
        )
        updated = record.model_copy(
            update={"usage_count": record.usage_count + 1, "last_seen": now}
        )
        self._records[fingerprint] = updated
        return updated

    async def record_suspicious_activity(
        self,
        fingerprint: str,
        activity_type: str,
        metadata: dict[str, Any] | None = None,
    ) -> FingerprintRecord:
        """Count a suspicious event and block the fingerprint when warranted."""
        now = self._now()
        record = self._records.get(fingerprint) or FingerprintRecord(
            hash=fingerprint, created_at=now, last_seen=now
        )
        self._records[fingerprint] = record.model_copy(
            update={"suspicious_activity": record.suspicious_activity + 1, "last_seen": now}
        )
        logger.warning(
            "fingerprint_suspicious_activity",
            fingerprint=fingerprint,
            activity_type=activity_type,
            metadata=metadata or {},
        )
        if await self.should_block(fingerprint):
            return await self.block(fingerprint, reason=f"Blocked for: {activity_type}")
        return self._records[fingerprint]

    async def block(self, fingerprint: str, reason: str) -> FingerprintRecord:
        """Block a fingerprint until explicitly unblocked."""
        now = self._now()
        record = self._records.get(fingerprint) or FingerprintRecord(
            hash=fingerprint, created_at=now, last_seen=now
        )
        blocked = record.model_copy(update={"is_blocked": True, "blocked_reason": reason})
        self._records[fingerprint] = blocked
        logger.warning("fingerprint_blocked", fingerprint=fingerprint, reason=reason)
        return blocked

    async def unblock(self, fingerprint: str) -> None:
        """Lift a fingerprint block and reset its suspicion counter."""
        record = self._records.get(fingerprint)
        if record is None:
            return
        self._records[fingerprint] = record.model_copy(
            update={"is_blocked": False, "blocked_reason": None, "suspicious_activity": 0}
        )
        logger.info("fingerprint_unblocked", fingerprint=fingerprint)

    async def analyze_activity_pattern(self, fingerprint: str) -> list[ActivityPattern]:
        """List suspicious usage patterns of a fingerprint."""
        record = self._records.get(fingerprint)
        if record is None:
            return []

        patterns: list[ActivityPattern] = []
        if record.usage_count > _USAGE_SPIKE:
            patterns.append(
                ActivityPattern(
                    type="usage_spike",
                    severity="medium",
                    description=f"Excessive usage: {record.usage_count} sightings.",
                )
            )
        if record.suspicious_activity > 3:
            patterns.append(
                ActivityPattern(
                    type="rapid_changes",
                    severity="high" if record.suspicious_activity > 7 else "medium",
                    description=f"Repeated suspicious activity: {record.suspicious_activity}.",
                )
            )
        if record.is_blocked:
            patterns.append(
                ActivityPattern(
                    type="blocked_fingerprint",
                    severity="high",
                    description="Fingerprint was blocked for suspicious activity.",
                )
            )
        if self._is_early(record) and record.usage_count > _EARLY_BURST:
            patterns.append(
                ActivityPattern(
                    type="rapid_changes",
                    severity="high",
                    description="Many sightings shortly after first contact.",
                )
            )
        return patterns

    async def should_block(self, fingerprint: str) -> bool:
        """Decide whether accumulated evidence warrants a block."""
        record = self._records.get(fingerprint)
        if record is None:
            return False
        if record.is_blocked or record.suspicious_activity >= self._block_threshold:
            return True
        if self._is_early(record) and record.usage_count > _EARLY_BLOCK_USAGE:
            return True
        patterns = await self.analyze_activity_pattern(fingerprint)
        return any(pattern.severity == "high" for pattern in patterns)

    async def calculate_risk_score(self, fingerprint: str) -> float:
        """Return a 0..1 risk score."""
        record = self._records.get(fingerprint)
        if record is None:
            return 0.1

        score = min(record.suspicious_activity / self._block_threshold, 1.0) * 0.4
        score += min(record.usage_count / (2 * _USAGE_SPIKE), 1.0) * 0.2
        if record.is_blocked:
            score += 0.5
        patterns = await self.analyze_activity_pattern(fingerprint)
        high_risk = sum(1 for pattern in patterns if pattern.severity == "high")
        score += min(high_risk / 3, 1.0) * 0.1
        return min(round(score, 4), 1.0)

    async def generate_security_report(self, fingerprint: str) -> SecurityReport:
        """Summarize risk, patterns and suggested actions for one fingerprint."""
        risk_score = await self.calculate_risk_score(fingerprint)
        patterns = await self.analyze_activity_pattern(fingerprint)
        record = self._records.get(fingerprint)

        risk_level = "low"
        if risk_score > 0.7:
            risk_level = "high"
        elif risk_score > 0.4:
            risk_level = "medium"

        pattern_types = {pattern.type for pattern in patterns}
        recommendations: list[str] = []
        if risk_score > 0.5:
            recommendations.append("Consider a temporary block.")
        if "usage_spike" in pattern_types:
            recommendations.append("Monitor access frequency.")
        if "rapid_changes" in pattern_types:
            recommendations.append("Require additional verification.")

        return SecurityReport(
            fingerprint=fingerprint,
            risk_score=risk_score,
            risk_level=risk_level,
            patterns=patterns,
            recommendations=recommendations,
            is_blocked=record is not None and record.is_blocked,
        )

    async def cleanup(self, older_than: datetime) -> int:
        """Forget unblocked fingerprints last seen before a cutoff."""
        stale = [
            fingerprint
            for fingerprint, record in self._records.items()
            if record.last_seen < older_than and not record.is_blocked
        ]
        for fingerprint in stale:
            del self._records[fingerprint]
        if stale:
            logger.info(
                "fingerprint_records_cleaned",
                removed=len(stale),
                cutoff=older_than.isoformat(),
            )
        return len(stale)

    def _is_valid_format(self, fingerprint: str) -> bool:
        """Apply the generator format rule plus a maximum length."""
        return self._generator.validate_format(fingerprint) and len(fingerprint) <= _MAX_HASH_LENGTH

    def _is_early(self, record: FingerprintRecord) -> bool:
        """True while a fingerprint is within its first hour."""
        return self._now() - record.created_at < _EARLY_WINDOW
