"""Best-effort device fingerprint generation and comparison."""

from __future__ import annotations

import json
import locale
import os
import platform
import re
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from hashlib import sha256
from typing import Any, Protocol

import structlog

from guestsession.schemas.fingerprint import DeviceFingerprint, DeviceSignals

logger = structlog.get_logger(__name__)

_HEX_PATTERN = re.compile(r"^[0-9a-f]+$")
_MIN_HASH_LENGTH = 8
_BASE_CONFIDENCE = 0.5
_FALLBACK_CONFIDENCE = 0.3
_RENDERING_BONUS = 0.2
_GPU_BONUS = 0.2
_MEMORY_BONUS = 0.05
_CORES_BONUS = 0.05
SUSPICIOUS_SIMILARITY_THRESHOLD = 0.3


class EnvironmentProbes(Protocol):
    """Sources of device signals; any method may raise."""

    def user_agent(self) -> str: ...

    def screen_resolution(self) -> str: ...

    def time_zone(self) -> str: ...

    def language(self) -> str: ...

    def rendering_surface(self) -> str | None:
        """Return the rendering probe payload, or None when unsupported."""

    def gpu_info(self) -> Mapping[str, Any] | None:
        """Return GPU parameters, or None when unsupported."""

    def hardware_concurrency(self) -> int | None: ...

    def device_memory(self) -> float | None: ...

    def color_depth(self) -> int | None: ...

    def pixel_ratio(self) -> float | None: ...


@dataclass(frozen=True)
class ProbeOutcome:
    """Capability probe result and whether it contributes confidence."""

    value: str
    succeeded: bool


class ReportedSignalProbes:
    """Probes backed by signals a client device reported about itself."""

    def __init__(self, signals: Mapping[str, Any]) -> None:
        self._signals = signals

    def user_agent(self) -> str:
        return str(self._signals["userAgent"])

    def screen_resolution(self) -> str:
        return str(self._signals["screenResolution"])

    def time_zone(self) -> str:
        return str(self._signals["timeZone"])

    def language(self) -> str:
        return str(self._signals["language"])

    def rendering_surface(self) -> str | None:
        value = self._signals.get("canvas")
        return None if value is None else str(value)

    def gpu_info(self) -> Mapping[str, Any] | None:
        value = self._signals.get("webgl")
        if value is None:
            return None
        if not isinstance(value, Mapping):
            raise TypeError("webgl signal must be a mapping")
        return value

    def hardware_concurrency(self) -> int | None:
        value = self._signals.get("hardwareConcurrency")
        return None if value is None else int(value)

    def device_memory(self) -> float | None:
        value = self._signals.get("deviceMemory")
        return None if value is None else float(value)

    def color_depth(self) -> int | None:
        value = self._signals.get("colorDepth")
        return None if value is None else int(value)

    def pixel_ratio(self) -> float | None:
        value = self._signals.get("pixelRatio")
        return None if value is None else float(value)


class HostProbes:
    """Probes describing the machine the process runs on."""

    def user_agent(self) -> str:
        return (
            f"python/{platform.python_version()} "
            f"({platform.system()} {platform.release()}; {platform.machine()})"
        )

    def screen_resolution(self) -> str:
        size = shutil.get_terminal_size()
        return f"{size.columns}x{size.lines}"

    def time_zone(self) -> str:
        return datetime.now().astimezone().tzname() or "unknown"

    def language(self) -> str:
        language, _ = locale.getlocale()
        return language or "unknown"

    def rendering_surface(self) -> str | None:
        return None

    def gpu_info(self) -> Mapping[str, Any] | None:
        return None

    def hardware_concurrency(self) -> int | None:
        return os.cpu_count()

    def device_memory(self) -> float | None:
        try:
            total_bytes = os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
        except (AttributeError, OSError, ValueError):
            return None
        return round(total_bytes / 2**30)

    def color_depth(self) -> int | None:
        return None

    def pixel_ratio(self) -> float | None:
        return None


def _digest(data: str) -> str:
    """Return SHA-256 hex digest of UTF-8 text."""
    return sha256(data.encode("utf-8")).hexdigest()


class FingerprintGenerator:
    """Generate, validate and compare device fingerprints."""

    def __init__(self, probes: EnvironmentProbes | None = None) -> None:
        self._probes = probes or HostProbes()

    def generate(self) -> DeviceFingerprint:
        """Build a fingerprint, falling back to basic signals on probe failure."""
        rendering = self._probe_rendering()
        gpu = self._probe_gpu()
        try:
            signals = self._collect_signals(rendering, gpu)
        except Exception as exc:
            logger.warning("fingerprint_probe_failed", error=str(exc))
            return self._generate_fallback()

        return DeviceFingerprint(
            hash=self._hash_signals(signals),
            confidence=self._confidence(signals, rendering, gpu),
            signals=signals,
        )

    def validate_format(self, fingerprint: str) -> bool:
        """Accept lowercase hexadecimal strings of at least 8 characters."""
        if not isinstance(fingerprint, str) or len(fingerprint) < _MIN_HASH_LENGTH:
            return False
        return bool(_HEX_PATTERN.match(fingerprint))

    @staticmethod
    def similarity(first: str, second: str) -> float:
        """Positional character match ratio over the longer string."""
        if first == second:
            return 1.0
        if not first or not second:
            return 0.0
        matches = sum(1 for left, right in zip(first, second) if left == right)
        return matches / max(len(first), len(second))

    def is_suspicious_change(self, old_fingerprint: str, new_fingerprint: str) -> bool:
        """Flag malformed fingerprints and drastic changes between two hashes."""
        if not self.validate_format(old_fingerprint) or not self.validate_format(new_fingerprint):
            return True
        if old_fingerprint == new_fingerprint:
            return False
        return self.similarity(old_fingerprint, new_fingerprint) < SUSPICIOUS_SIMILARITY_THRESHOLD

    def _collect_signals(self, rendering: ProbeOutcome, gpu: ProbeOutcome) -> DeviceSignals:
        """Collect the remaining signals around the capability probe results."""
        return DeviceSignals(
            user_agent=self._probes.user_agent(),
            screen_resolution=self._probes.screen_resolution(),
            time_zone=self._probes.time_zone(),
            language=self._probes.language(),
            canvas_hash=rendering.value,
            webgl_hash=gpu.value,
            device_memory=self._probes.device_memory(),
            hardware_concurrency=self._probes.hardware_concurrency(),
            color_depth=self._probes.color_depth(),
            pixel_ratio=self._probes.pixel_ratio(),
        )

    def _probe_rendering(self) -> ProbeOutcome:
        """Hash the rendering-surface probe output."""
        try:
            payload = self._probes.rendering_surface()
        except Exception as exc:
            logger.warning("fingerprint_rendering_probe_failed", error=str(exc))
            return ProbeOutcome(value="canvas-error", succeeded=False)
        if payload is None:
            return ProbeOutcome(value="canvas-not-supported", succeeded=False)
        return ProbeOutcome(value=_digest(payload), succeeded=True)

    def _probe_gpu(self) -> ProbeOutcome:
        """Hash the GPU-info probe output."""
        try:
            info = self._probes.gpu_info()
            if info is None:
                return ProbeOutcome(value="webgl-not-supported", succeeded=False)
            payload = json.dumps(dict(info), sort_keys=True, default=str)
        except Exception as exc:
            logger.warning("fingerprint_gpu_probe_failed", error=str(exc))
            return ProbeOutcome(value="webgl-error", succeeded=False)
        return ProbeOutcome(value=_digest(payload), succeeded=True)

    @staticmethod
    def _confidence(signals: DeviceSignals, rendering: ProbeOutcome, gpu: ProbeOutcome) -> float:
        """Score how distinctive the collected signals are."""
        confidence = _BASE_CONFIDENCE
        if rendering.succeeded:
            confidence += _RENDERING_BONUS
        if gpu.succeeded:
            confidence += _GPU_BONUS
        if signals.device_memory:
            confidence += _MEMORY_BONUS
        if signals.hardware_concurrency:
            confidence += _CORES_BONUS
        return min(round(confidence, 2), 1.0)

    def _generate_fallback(self) -> DeviceFingerprint:
        """Hash only universally available signals at low confidence."""
        signals = DeviceSignals(
            user_agent=self._safe_signal(self._probes.user_agent),
            screen_resolution=self._safe_signal(self._probes.screen_resolution),
            time_zone="unknown",
            language=self._safe_signal(self._probes.language),
            canvas_hash="fallback",
            webgl_hash="fallback",
        )
        return DeviceFingerprint(
            hash=self._hash_signals(signals),
            confidence=_FALLBACK_CONFIDENCE,
            signals=signals,
        )

    @staticmethod
    def _safe_signal(probe: Any) -> str:
        """Read a string signal, substituting a placeholder on failure."""
        try:
            return str(probe())
        except Exception:
            return "unknown"

    @staticmethod
    def _hash_signals(signals: DeviceSignals) -> str:
        """Combine signals into a single content hash."""
        data = {
            "ua": signals.user_agent,
            "sr": signals.screen_resolution,
            "tz": signals.time_zone,
            "lang": signals.language,
            "canvas": signals.canvas_hash,
            "webgl": signals.webgl_hash,
            "mem": signals.device_memory or 0,
            "cores": signals.hardware_concurrency or 0,
            "color": signals.color_depth,
            "pixel": signals.pixel_ratio,
        }
        return _digest(json.dumps(data, separators=(",", ":")))
