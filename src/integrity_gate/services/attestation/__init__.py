"""
Device Integrity Service Package

Issues single-use challenges and verifies the platform attestations
that embed them.

Supported platforms:
- Android: Play Integrity API (decodeIntegrityToken)
- iOS: App Attest (attestation enrollment and assertions)

Features:
- Pluggable persistence: in-process TTL cache, Redis, or Upstash REST
- Verdict policy with package, nonce, certificate and device checks
- Audit logging that never records raw artifacts
"""

from .base import AttestationResult, AttestationResultStatus, Platform, Reason
from .config import AttestationConfig, ConfigurationError
from .issuer import ChallengeRequestError, IssuedChallenge
from .orchestrator import IntegrityOrchestrator
from .persistence import PersistenceBackend, PersistenceError, create_backend

# Platform collaborators
from .android_playintegrity import PlayIntegrityClient, PlayIntegrityError
from .ios_appattest import AppAttestVerifier, AppAttestError

__all__ = [
    # Core interfaces
    "AttestationResult",
    "AttestationResultStatus",
    "AttestationConfig",
    "ConfigurationError",
    "ChallengeRequestError",
    "IssuedChallenge",
    "IntegrityOrchestrator",
    "PersistenceBackend",
    "PersistenceError",
    "Platform",
    "Reason",
    "create_backend",

    # Platform collaborators
    "PlayIntegrityClient",
    "PlayIntegrityError",
    "AppAttestVerifier",
    "AppAttestError",
]
