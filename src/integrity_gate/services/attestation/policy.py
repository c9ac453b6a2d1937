"""
Acceptance policy for decoded Play Integrity verdicts.

Checks run in a fixed order and the first failure wins:

1. requestPackageName equals the configured package
2. the payload nonce decodes to the issued nonce bytes
3. appRecognitionVerdict is PLAY_RECOGNIZED
4. a pinned signing certificate digest is present (when pinning is on)
5. the required device recognition verdict is present (when required)
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from .base import Reason
from .config import AttestationConfig
from .encoding import nonces_match

logger = logging.getLogger(__name__)

ACCEPTED_APP_VERDICT = "PLAY_RECOGNIZED"


def _string_tuple(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(item for item in value if isinstance(item, str))


def _section(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = payload.get(name)
    return section if isinstance(section, dict) else {}


@dataclass(frozen=True)
class IntegrityClaims:
    """The fields of tokenPayloadExternal the policy looks at."""

    package_name: Optional[str]
    nonce: Optional[str]
    app_recognition_verdict: Optional[str]
    certificate_digests: Tuple[str, ...] = ()
    device_verdicts: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "IntegrityClaims":
        """
        Extract claims from a decoded payload.

        Missing sections or wrongly typed lists become empty values so
        the policy rejects them rather than skipping the check.
        """
        request_details = _section(payload, "requestDetails")
        app_integrity = _section(payload, "appIntegrity")
        device_integrity = _section(payload, "deviceIntegrity")
        return cls(
            package_name=request_details.get("requestPackageName"),
            nonce=request_details.get("nonce"),
            app_recognition_verdict=app_integrity.get("appRecognitionVerdict"),
            certificate_digests=_string_tuple(app_integrity.get("certificateSha256Digest")),
            device_verdicts=_string_tuple(device_integrity.get("deviceRecognitionVerdict")),
        )


@dataclass(frozen=True)
class PolicyVerdict:
    """Accept, or reject with a reason and optional observed value."""

    accepted: bool
    reason: Optional[str] = None
    detail: Optional[str] = None

    @property
    def reason_code(self) -> Optional[str]:
        if self.reason and self.detail is not None:
            return f"{self.reason}:{self.detail}"
        return self.reason


ACCEPT = PolicyVerdict(accepted=True)


class VerdictPolicy:
    """Turns Play Integrity claims into an accept/reject decision."""

    def __init__(self, expected_package: str, required_device_verdict: Optional[str] = None,
                 allowed_cert_digests: Iterable[str] = ()):
        """
        Args:
            expected_package: Android application id the token must name
            required_device_verdict: Verdict that must be present, or
                empty/None to skip the device check
            allowed_cert_digests: Pinned signing certificate digests;
                empty disables pinning
        """
        self.expected_package = expected_package
        self.required_device_verdict = (required_device_verdict or "").strip()
        self.allowed_cert_digests = tuple(allowed_cert_digests)

    @classmethod
    def from_config(cls, config: AttestationConfig) -> "VerdictPolicy":
        return cls(
            expected_package=config.require("android_package_name"),
            required_device_verdict=config.android_required_device_verdict,
            allowed_cert_digests=config.allowed_cert_digests,
        )

    def evaluate(self, claims: IntegrityClaims, issued_nonce: str) -> PolicyVerdict:
        if claims.package_name != self.expected_package:
            return PolicyVerdict(False, Reason.PACKAGE_MISMATCH)

        if not nonces_match(claims.nonce, issued_nonce):
            return PolicyVerdict(False, Reason.NONCE_MISMATCH)

        if claims.app_recognition_verdict != ACCEPTED_APP_VERDICT:
            return PolicyVerdict(False, Reason.APP_NOT_RECOGNIZED,
                                 str(claims.app_recognition_verdict))

        if self.allowed_cert_digests and not any(
            digest in claims.certificate_digests for digest in self.allowed_cert_digests
        ):
            return PolicyVerdict(False, Reason.SIGNING_CERT_MISMATCH)

        if self.required_device_verdict and self.required_device_verdict not in claims.device_verdicts:
            return PolicyVerdict(False, Reason.DEVICE_INTEGRITY_FAILED,
                                 ",".join(claims.device_verdicts))

        return ACCEPT
