"""
Challenge issuance for both platforms.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Dict, Any

from .base import Platform, Reason
from .encoding import random_material
from .records import AndroidChallenge, IosChallenge
from .store import ChallengeStore, DeviceKeyRegistry

logger = logging.getLogger(__name__)

MODE_ATTEST = "attest"
MODE_ASSERT = "assert"


class ChallengeRequestError(ValueError):
    """The challenge request itself is malformed."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


@dataclass(frozen=True)
class IssuedChallenge:
    """What the client needs to run its platform attestation call."""

    request_id: str
    platform: Platform
    material: str
    key_id: Optional[str] = None
    mode: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        if self.platform == Platform.ANDROID:
            return {
                "ok": True,
                "provider": "android_play_integrity",
                "requestId": self.request_id,
                "nonce": self.material,
            }
        return {
            "ok": True,
            "provider": "ios_app_attest",
            "requestId": self.request_id,
            "mode": self.mode,
            "challenge": self.material,
            "keyId": self.key_id,
        }


class ChallengeIssuer:
    """Mints request ids and stores fresh challenge material."""

    def __init__(self, challenges: ChallengeStore, keys: DeviceKeyRegistry):
        self.challenges = challenges
        self.keys = keys

    async def issue(self, platform: Optional[str], key_id: Optional[str] = None) -> IssuedChallenge:
        """
        Issue a challenge.

        Args:
            platform: "android" or "ios", case-insensitive
            key_id: App Attest key identifier, required for iOS

        Raises:
            ChallengeRequestError: bad_platform or missing_keyId
            PersistenceError: the backend failed
        """
        normalized = (platform or "").strip().lower()
        request_id = str(uuid.uuid4())

        if normalized == Platform.ANDROID.value:
            nonce = random_material()
            await self.challenges.create(
                request_id,
                AndroidChallenge(nonce=nonce, created_at=self.challenges.now_ms()),
            )
            logger.info(f"Issued android challenge - Request: {request_id}")
            return IssuedChallenge(request_id=request_id, platform=Platform.ANDROID, material=nonce)

        if normalized == Platform.IOS.value:
            if not key_id:
                raise ChallengeRequestError(Reason.MISSING_KEY_ID)

            challenge = random_material()
            mode = MODE_ASSERT if await self.keys.contains(key_id) else MODE_ATTEST
            await self.challenges.create(
                request_id,
                IosChallenge(key_id=key_id, challenge=challenge, created_at=self.challenges.now_ms()),
            )
            logger.info(f"Issued ios challenge - Request: {request_id}, Mode: {mode}")
            return IssuedChallenge(
                request_id=request_id,
                platform=Platform.IOS,
                material=challenge,
                key_id=key_id,
                mode=mode,
            )

        raise ChallengeRequestError(Reason.BAD_PLATFORM)
