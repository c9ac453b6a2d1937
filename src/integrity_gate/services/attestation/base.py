"""
Base classes and common functionality for device integrity verification.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, Union

logger = logging.getLogger(__name__)


class Platform(str, Enum):
    """Platforms a challenge can be issued for."""
    ANDROID = "android"
    IOS = "ios"


class AttestationResultStatus(Enum):
    """Verification outcome category."""
    VALID = "valid"
    INVALID = "invalid"
    ERROR = "error"


class Reason:
    """Reason codes reported to clients."""
    # client input
    MISSING_FIELDS = "missing_fields"
    MISSING_KEY_ID = "missing_keyId"
    BAD_PLATFORM = "bad_platform"
    # authentication state
    INVALID_REQUEST_ID = "invalid_requestId"
    NONCE_MISMATCH = "nonce_mismatch"
    NO_PAYLOAD = "no_payload"
    UNAUTHORIZED = "unauthorized"
    # policy
    PACKAGE_MISMATCH = "package_mismatch"
    APP_NOT_RECOGNIZED = "app_not_recognized"
    SIGNING_CERT_MISMATCH = "signing_cert_mismatch"
    DEVICE_INTEGRITY_FAILED = "device_integrity_failed"
    # infrastructure
    SERVER_ERROR = "server_error"


@dataclass
class AttestationResult:
    """Result of a challenge verification."""

    status: AttestationResultStatus
    platform: Optional[str] = None
    request_id: Optional[str] = None
    reason: Optional[str] = None
    consumed: bool = False
    correlation_id: Optional[str] = None
    detail: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    validated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.validated_at is None:
            self.validated_at = datetime.now(timezone.utc)

    @property
    def is_valid(self) -> bool:
        """Check if the challenge was accepted."""
        return self.status == AttestationResultStatus.VALID

    @property
    def is_invalid(self) -> bool:
        """Check if the challenge was rejected."""
        return self.status == AttestationResultStatus.INVALID

    @property
    def is_error(self) -> bool:
        """Check if verification failed for infrastructure reasons."""
        return self.status == AttestationResultStatus.ERROR


def calculate_token_hash(token: Union[str, bytes]) -> str:
    """SHA-256 of an artifact, used whenever it has to appear in logs."""
    if isinstance(token, str):
        token = token.encode("utf-8")
    return hashlib.sha256(token).hexdigest()


class AttestationCollaborator:
    """
    Common plumbing for the external verification collaborators.

    Subclasses wrap one remote provider or verification library and
    report the platform and validator type they serve.
    """

    validator_type = "unknown"
    platform = "unknown"

    def __init__(self, config: 'AttestationConfig'):
        self.config = config
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def get_validator_type(self) -> str:
        return self.validator_type

    def get_platform(self) -> str:
        return self.platform

    def _log_validation_attempt(self, token_hash: str, subject: Optional[str] = None):
        """Log verification attempt for audit purposes."""
        self.logger.info(
            f"Validation attempt - Validator: {self.get_validator_type()}, "
            f"Platform: {self.get_platform()}, "
            f"Token hash: {token_hash[:8]}..., "
            f"Subject: {subject or 'unknown'}"
        )


class ResultFactory:
    """Builds AttestationResult objects for one platform."""

    def __init__(self, platform: Platform):
        self.platform = platform.value

    def valid(self, request_id: str, metadata: Optional[Dict[str, Any]] = None) -> AttestationResult:
        return AttestationResult(
            status=AttestationResultStatus.VALID,
            platform=self.platform,
            request_id=request_id,
            consumed=True,
            metadata=metadata or {},
        )

    def invalid(self, reason: str, request_id: Optional[str] = None,
                consumed: bool = False,
                metadata: Optional[Dict[str, Any]] = None) -> AttestationResult:
        return AttestationResult(
            status=AttestationResultStatus.INVALID,
            platform=self.platform,
            request_id=request_id,
            reason=reason,
            consumed=consumed,
            metadata=metadata or {},
        )

    def error(self, exc: BaseException, request_id: Optional[str] = None,
              reason: str = Reason.SERVER_ERROR) -> AttestationResult:
        """
        Create an error result.

        Only the exception class name is kept; messages can carry
        provider responses and are left to the logs.
        """
        return AttestationResult(
            status=AttestationResultStatus.ERROR,
            platform=self.platform,
            request_id=request_id,
            reason=reason,
            correlation_id=uuid.uuid4().hex,
            detail=type(exc).__name__,
        )
