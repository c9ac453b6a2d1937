"""
Pytest configuration and fixtures for Device Integrity Gate tests.

This module provides common test fixtures and configuration for the test suite.
"""

import pytest
from unittest.mock import AsyncMock, Mock

from integrity_gate.services.attestation.cache import MemoryBackend
from integrity_gate.services.attestation.config import AttestationConfig
from integrity_gate.services.attestation.orchestrator import IntegrityOrchestrator
from integrity_gate.services.attestation.store import ChallengeStore, DeviceKeyRegistry

PACKAGE_NAME = "com.example.app"
TEAM_ID = "ABCDE12345"
BUNDLE_ID = "com.example.app"
TTL_MS = 300000

# Environment variables that would leak host configuration into tests
_INTEGRITY_ENV = [
    "ENVIRONMENT",
    "HTTPS_ENABLED",
    "LOG_LEVEL",
    "INTEGRITY_DEBUG",
    "ANDROID_PACKAGE_NAME",
    "ANDROID_REQUIRED_DEVICE_VERDICT",
    "ANDROID_ALLOWED_CERT_SHA256",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "GOOGLE_APPLICATION_CREDENTIALS_JSON",
    "GOOGLE_SERVICE_ACCOUNT_JSON",
    "GOOGLE_APPLICATION_CREDENTIALS_B64",
    "IOS_BUNDLE_ID",
    "IOS_TEAM_ID",
    "IOS_ALLOW_DEVELOPMENT_ENV",
    "INTEGRITY_CHALLENGE_TTL_MS",
    "UPSTASH_REDIS_REST_URL",
    "UPSTASH_REDIS_REST_TOKEN",
    "KV_REST_API_URL",
    "KV_REST_API_TOKEN",
    "REDIS_URL",
    "INTEGRITY_STORE_TIMEOUT_SECONDS",
    "INTEGRITY_MEMORY_STORE_SIZE",
    "ATTESTATION_API_TIMEOUT",
]


class FakeClock:
    """Settable wall clock in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def clean_integrity_env(monkeypatch):
    """Run every test with integrity settings unset."""
    for name in _INTEGRITY_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    """Fake clock shared by the store and the memory backend."""
    return FakeClock()


@pytest.fixture
def config():
    """Fully configured attestation settings."""
    return AttestationConfig(
        android_package_name=PACKAGE_NAME,
        google_credentials_json='{"client_email": "svc@example.iam.gserviceaccount.com"}',
        ios_team_id=TEAM_ID,
        ios_bundle_id=BUNDLE_ID,
        challenge_ttl_ms=TTL_MS,
    )


@pytest.fixture
def memory_backend(clock):
    """Memory backend expiring entries on the fake clock."""
    return MemoryBackend(maxsize=1000, timer=clock)


@pytest.fixture
def challenge_store(memory_backend, clock):
    return ChallengeStore(memory_backend, TTL_MS, clock=clock)


@pytest.fixture
def key_registry(memory_backend):
    return DeviceKeyRegistry(memory_backend)


@pytest.fixture
def play_integrity():
    """Mock Play Integrity decode client."""
    client = Mock()
    client.decode_token = AsyncMock(return_value=None)
    client.get_configuration_status.return_value = {"validator_type": "playintegrity", "configured": True}
    return client


@pytest.fixture
def app_attest():
    """Mock App Attest verifier."""
    verifier = Mock()
    verifier.get_configuration_status.return_value = {"validator_type": "appattest", "configured": True}
    return verifier


@pytest.fixture
def orchestrator(config, challenge_store, key_registry, play_integrity, app_attest):
    """Orchestrator over the memory backend with mocked collaborators."""
    return IntegrityOrchestrator(
        config=config,
        challenges=challenge_store,
        keys=key_registry,
        play_integrity=play_integrity,
        app_attest=app_attest,
    )


def integrity_payload(nonce, package=PACKAGE_NAME, app_verdict="PLAY_RECOGNIZED",
                      digests=("cert-digest-1",), device=("MEETS_DEVICE_INTEGRITY",)):
    """Decoded tokenPayloadExternal as returned by decodeIntegrityToken."""
    return {
        "requestDetails": {
            "requestPackageName": package,
            "nonce": nonce,
            "timestampMillis": "1700000000000",
        },
        "appIntegrity": {
            "appRecognitionVerdict": app_verdict,
            "packageName": package,
            "certificateSha256Digest": list(digests),
            "versionCode": "42",
        },
        "deviceIntegrity": {
            "deviceRecognitionVerdict": list(device),
        },
        "accountDetails": {
            "appLicensingVerdict": "LICENSED",
        },
    }
