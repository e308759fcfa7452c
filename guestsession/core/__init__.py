"""Core component exports."""

from guestsession.core.fingerprint import FingerprintGenerator, HostProbes, ReportedSignalProbes
from guestsession.core.persistence import MemorySessionPersistence, RedisSessionPersistence
from guestsession.core.rate_limit import RateLimiter
from guestsession.core.session_store import SessionStore

__all__ = [
    "FingerprintGenerator",
    "HostProbes",
    "MemorySessionPersistence",
    "RateLimiter",
    "RedisSessionPersistence",
    "ReportedSignalProbes",
    "SessionStore",
]
