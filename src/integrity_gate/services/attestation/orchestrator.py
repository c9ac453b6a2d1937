"""
Platform verification orchestrators.

Each flow loads the challenge named by the request id, checks it is
fresh and belongs to the platform (and, on iOS, to the key), delegates
cryptographic verification to the platform collaborator, then deletes
the challenge once a terminal decision is reached. Client input errors
and structural lookup failures leave the challenge in place so the client
can retry against it.

PersistenceError is never caught here: a store that cannot be reached is
reported by the caller as its own failure, not as a missing challenge.
"""

import logging
import time
from collections import defaultdict
from typing import Optional, Dict, Any, Callable

from .android_playintegrity import PlayIntegrityClient
from .base import AttestationResult, Platform, Reason, ResultFactory
from .config import AttestationConfig
from .encoding import challenges_match, decode_base64_any, decode_base64_strict, nonces_match
from .ios_appattest import AppAttestVerifier
from .issuer import ChallengeIssuer, IssuedChallenge
from .persistence import PersistenceBackend, PersistenceError
from .policy import IntegrityClaims, VerdictPolicy
from .records import AndroidChallenge, DeviceKeyRecord, IosChallenge
from .store import ChallengeStore, DeviceKeyRegistry

logger = logging.getLogger(__name__)

_android = ResultFactory(Platform.ANDROID)
_ios = ResultFactory(Platform.IOS)


class IntegrityOrchestrator:
    """
    Owns the challenge store, key registry and platform collaborators
    for the lifetime of the process.
    """

    def __init__(self, config: AttestationConfig, challenges: ChallengeStore,
                 keys: DeviceKeyRegistry, play_integrity: PlayIntegrityClient,
                 app_attest: AppAttestVerifier):
        self.config = config
        self.challenges = challenges
        self.keys = keys
        self.play_integrity = play_integrity
        self.app_attest = app_attest
        self.issuer = ChallengeIssuer(challenges, keys)

        self._metrics = {
            "challenges_issued": 0,
            "accepted": 0,
            "rejected": 0,
            "errors": 0,
            "reason_breakdown": defaultdict(int),
            "platform_breakdown": defaultdict(int),
        }

    @classmethod
    def build(cls, config: AttestationConfig, backend: PersistenceBackend,
              clock: Callable[[], float] = time.time) -> "IntegrityOrchestrator":
        """Wire the default collaborators around one persistence backend."""
        return cls(
            config=config,
            challenges=ChallengeStore(backend, config.challenge_ttl_ms, clock=clock),
            keys=DeviceKeyRegistry(backend),
            play_integrity=PlayIntegrityClient(config),
            app_attest=AppAttestVerifier(config),
        )

    async def issue_challenge(self, platform: Optional[str],
                              key_id: Optional[str] = None) -> IssuedChallenge:
        """
        Issue a challenge for a platform.

        Raises:
            ChallengeRequestError: bad platform or missing key id
            PersistenceError: the backend failed
        """
        issued = await self.issuer.issue(platform, key_id)
        self._metrics["challenges_issued"] += 1
        self._metrics["platform_breakdown"][issued.platform.value] += 1
        return issued

    async def verify_android(self, request_id: Optional[str], nonce: Optional[str],
                             token: Optional[str]) -> AttestationResult:
        """
        Verify a Play Integrity token against an issued nonce.

        Returns:
            AttestationResult; policy rejects carry consumed=True

        Raises:
            PersistenceError: the backend failed
        """
        if not request_id or not nonce or not token:
            return self._record(_android.invalid(Reason.MISSING_FIELDS, request_id))

        record = await self.challenges.load(request_id)
        if (not isinstance(record, AndroidChallenge)
                or not self.challenges.is_fresh(record)):
            return self._record(_android.invalid(Reason.INVALID_REQUEST_ID, request_id))

        if not nonces_match(nonce, record.nonce):
            return self._record(_android.invalid(Reason.NONCE_MISMATCH, request_id))

        try:
            policy = VerdictPolicy.from_config(self.config)
            payload = await self.play_integrity.decode_token(token, policy.expected_package)
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"Android verification failed - Request: {request_id}, "
                         f"Error: {type(e).__name__}", exc_info=True)
            return self._record(_android.error(e, request_id))

        if payload is None:
            return self._record(_android.invalid(Reason.NO_PAYLOAD, request_id))

        verdict = policy.evaluate(IntegrityClaims.from_payload(payload), record.nonce)
        await self.challenges.delete(request_id)

        if not verdict.accepted:
            logger.warning(f"Android verdict rejected - Request: {request_id}, "
                           f"Reason: {verdict.reason_code}")
            return self._record(_android.invalid(verdict.reason_code, request_id, consumed=True))

        logger.info(f"Android verdict accepted - Request: {request_id}")
        return self._record(_android.valid(request_id))

    async def attest_ios(self, request_id: Optional[str], key_id: Optional[str],
                         challenge: Optional[str], attestation: Optional[str]) -> AttestationResult:
        """
        Enroll an App Attest key.

        Raises:
            PersistenceError: the backend failed
        """
        if not request_id or not key_id or not challenge or not attestation:
            return self._record(_ios.invalid(Reason.MISSING_FIELDS, request_id))

        record = await self._load_ios_challenge(request_id, key_id, challenge)
        if record is None:
            return self._record(_ios.invalid(Reason.UNAUTHORIZED, request_id))

        attestation_bytes = decode_base64_strict(attestation)
        if attestation_bytes is None:
            return self._record(_ios.invalid(Reason.UNAUTHORIZED, request_id))

        if await self.keys.contains(key_id):
            logger.info(f"Re-attesting enrolled key - Request: {request_id}")

        try:
            attested = self.app_attest.verify_attestation(
                attestation_bytes, decode_base64_any(record.challenge), key_id
            )
        except Exception as e:
            logger.warning(f"iOS attestation rejected - Request: {request_id}, "
                           f"Error: {type(e).__name__}")
            return self._record(_ios.error(e, request_id, reason=Reason.UNAUTHORIZED))

        await self.keys.save(key_id, DeviceKeyRecord(public_key=attested.public_key, sign_count=0))
        await self.challenges.delete(request_id)
        logger.info(f"iOS key enrolled - Request: {request_id}")
        return self._record(_ios.valid(request_id))

    async def assert_ios(self, request_id: Optional[str], key_id: Optional[str],
                         challenge: Optional[str], assertion: Optional[str]) -> AttestationResult:
        """
        Verify an assertion from an enrolled App Attest key.

        Raises:
            PersistenceError: the backend failed
        """
        if not request_id or not key_id or not challenge or not assertion:
            return self._record(_ios.invalid(Reason.MISSING_FIELDS, request_id))

        record = await self._load_ios_challenge(request_id, key_id, challenge)
        if record is None:
            return self._record(_ios.invalid(Reason.UNAUTHORIZED, request_id))

        assertion_bytes = decode_base64_strict(assertion)
        if assertion_bytes is None:
            return self._record(_ios.invalid(Reason.UNAUTHORIZED, request_id))

        stored = await self.keys.load(key_id)
        if stored is None:
            return self._record(_ios.invalid(Reason.UNAUTHORIZED, request_id))

        try:
            sign_count = self.app_attest.verify_assertion(
                assertion_bytes, decode_base64_any(record.challenge),
                stored.public_key, stored.sign_count,
            )
        except Exception as e:
            logger.warning(f"iOS assertion rejected - Request: {request_id}, "
                           f"Error: {type(e).__name__}")
            return self._record(_ios.error(e, request_id, reason=Reason.UNAUTHORIZED))

        # last write wins; the verifier owns counter monotonicity
        await self.keys.save(key_id, DeviceKeyRecord(public_key=stored.public_key,
                                                     sign_count=sign_count))
        await self.challenges.delete(request_id)
        logger.info(f"iOS assertion accepted - Request: {request_id}")
        return self._record(_ios.valid(request_id, metadata={"sign_count": sign_count}))

    async def _load_ios_challenge(self, request_id: str, key_id: str,
                                  challenge: str) -> Optional[IosChallenge]:
        record = await self.challenges.load(request_id)
        if not isinstance(record, IosChallenge) or not self.challenges.is_fresh(record):
            return None
        if not challenges_match(key_id, record.key_id):
            return None
        if not challenges_match(challenge, record.challenge):
            return None
        return record

    def _record(self, result: AttestationResult) -> AttestationResult:
        if result.is_valid:
            self._metrics["accepted"] += 1
        elif result.is_error:
            self._metrics["errors"] += 1
        else:
            self._metrics["rejected"] += 1
        if result.reason:
            self._metrics["reason_breakdown"][result.reason.split(":", 1)[0]] += 1
        return result

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get verification counters.

        Returns:
            Dictionary of counters since process start
        """
        metrics = dict(self._metrics)
        metrics["reason_breakdown"] = dict(self._metrics["reason_breakdown"])
        metrics["platform_breakdown"] = dict(self._metrics["platform_breakdown"])
        return metrics
