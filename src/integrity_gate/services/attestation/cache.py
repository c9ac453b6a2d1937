"""
In-process persistence backend for single-instance deployments.
"""

import math
import threading
import time
from typing import Callable, NamedTuple, Optional, Dict, Any
import logging

from cachetools import TLRUCache

from .persistence import PersistenceBackend, PersistenceError

logger = logging.getLogger(__name__)


class _Entry(NamedTuple):
    value: str
    ttl: float


def _time_to_use(key: str, entry: _Entry, now: float) -> float:
    return now + entry.ttl


class MemoryBackend(PersistenceBackend):
    """
    Thread-safe per-entry TTL map backing the stores when no durable
    backend is configured.

    Entries stored with a TTL live in a cachetools.TLRUCache that never
    evicts by size; they leave only by expiry or delete. At most maxsize
    of them may be live, and a new key beyond that is refused with
    PersistenceError. Entries stored without a TTL (enrolled device keys)
    live in a plain dict and are never expired or evicted.

    State lives for the lifetime of the process and is not shared between
    instances.
    """

    name = "memory"
    durable = False

    def __init__(self, maxsize: int = 100000, timer: Callable[[], float] = time.monotonic):
        """
        Initialize the memory backend.

        Args:
            maxsize: Maximum number of live entries stored with a TTL
            timer: Clock used for expiry, in seconds
        """
        self.maxsize = maxsize
        self._expiring = TLRUCache(maxsize=math.inf, ttu=_time_to_use, timer=timer)
        self._persistent: Dict[str, str] = {}
        self._lock = threading.RLock()
        self._stats = {
            "gets": 0,
            "sets": 0,
            "deletes": 0,
            "expired": 0,
            "refused": 0,
        }

        logger.info(f"Memory store initialized - Max expiring entries: {maxsize}")

    def _expire(self) -> int:
        removed = len(self._expiring.expire())
        self._stats["expired"] += removed
        return removed

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._stats["gets"] += 1
            self._expire()
            if key in self._persistent:
                return self._persistent[key]
            entry = self._expiring.get(key)
            return entry.value if entry is not None else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        with self._lock:
            if ttl_seconds is None:
                self._expiring.pop(key, None)
                self._persistent[key] = value
            else:
                self._expire()
                if key not in self._expiring:
                    if len(self._expiring) >= self.maxsize:
                        self._stats["refused"] += 1
                        logger.error(f"Memory store full ({self.maxsize} live expiring entries) - "
                                     f"refusing new key")
                        raise PersistenceError(self.name, "SET", key)
                self._persistent.pop(key, None)
                self._expiring[key] = _Entry(value, ttl_seconds)
            self._stats["sets"] += 1

    async def delete(self, key: str) -> None:
        with self._lock:
            self._expiring.pop(key, None)
            self._persistent.pop(key, None)
            self._stats["deletes"] += 1

    async def sweep_expired(self) -> int:
        """Drop every entry whose TTL has elapsed."""
        with self._lock:
            removed = self._expire()
            if removed:
                logger.debug(f"Swept {removed} expired entries")
            return removed

    async def ping(self) -> bool:
        return True

    def get_stats(self) -> Dict[str, Any]:
        """
        Get store statistics.

        Returns:
            Dictionary with store statistics
        """
        with self._lock:
            self._expire()
            return {
                "size": len(self._expiring) + len(self._persistent),
                "expiring": len(self._expiring),
                "persistent": len(self._persistent),
                "maxsize": self.maxsize,
                **self._stats,
            }
