"""
Challenge store and iOS device key registry.

Both sit on the same PersistenceBackend. Expired challenges are swept
opportunistically before every store access; callers still recheck
freshness with ChallengeStore.is_fresh() because the sweep is best effort.
"""

import logging
import time
from typing import Callable, Optional

from pydantic import ValidationError

from .persistence import PersistenceBackend
from .records import ChallengeRecord, DeviceKeyRecord, parse_challenge

logger = logging.getLogger(__name__)

CHALLENGE_PREFIX = "integrity:challenge:"
IOS_KEY_PREFIX = "integrity:ioskey:"


def challenge_key(request_id: str) -> str:
    return f"{CHALLENGE_PREFIX}{request_id}"


def ios_key_key(key_id: str) -> str:
    return f"{IOS_KEY_PREFIX}{key_id}"


class ChallengeStore:
    """Single-use challenges keyed by request id, bounded by a TTL."""

    def __init__(self, backend: PersistenceBackend, ttl_ms: int,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            backend: Shared persistence backend
            ttl_ms: Maximum challenge age in milliseconds
            clock: Wall clock in seconds
        """
        self.backend = backend
        self.ttl_ms = ttl_ms
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def is_fresh(self, record: ChallengeRecord) -> bool:
        return not record.is_expired(self.now_ms(), self.ttl_ms)

    async def sweep_expired(self) -> int:
        return await self.backend.sweep_expired()

    async def create(self, request_id: str, record: ChallengeRecord) -> None:
        await self.sweep_expired()
        await self.backend.set(challenge_key(request_id), record.to_json(),
                               ttl_seconds=self.ttl_ms / 1000)

    async def load(self, request_id: str) -> Optional[ChallengeRecord]:
        """
        Load a challenge.

        Returns:
            The record, or None when absent or unreadable. A returned
            record may still be stale.
        """
        await self.sweep_expired()
        raw = await self.backend.get(challenge_key(request_id))
        if raw is None:
            return None
        try:
            return parse_challenge(raw)
        except ValidationError:
            logger.warning(f"Discarding unreadable challenge record for request {request_id}")
            return None

    async def delete(self, request_id: str) -> None:
        await self.sweep_expired()
        await self.backend.delete(challenge_key(request_id))


class DeviceKeyRegistry:
    """
    Enrolled App Attest keys.

    save() is last-write-wins; concurrent assertions for the same key can
    race on the counter.
    """

    def __init__(self, backend: PersistenceBackend):
        self.backend = backend

    async def load(self, key_id: str) -> Optional[DeviceKeyRecord]:
        raw = await self.backend.get(ios_key_key(key_id))
        if raw is None:
            return None
        try:
            return DeviceKeyRecord.from_json(raw)
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.warning(f"Discarding unreadable device key record for key {key_id}")
            return None

    async def save(self, key_id: str, record: DeviceKeyRecord) -> None:
        await self.backend.set(ios_key_key(key_id), record.to_json())

    async def contains(self, key_id: str) -> bool:
        return await self.load(key_id) is not None
