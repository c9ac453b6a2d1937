"""
iOS App Attest verifier.

Verifies the one-time attestation object produced by
DCAppAttestService.attestKey and the assertions produced afterwards by
generateAssertion, following Apple's server-side validation steps.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import cbor2
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .base import AttestationCollaborator, calculate_token_hash
from .config import AttestationConfig
from .encoding import decode_base64_any

logger = logging.getLogger(__name__)

# Apple App Attestation Root CA
# https://www.apple.com/certificateauthority/Apple_App_Attestation_Root_CA.pem
APPLE_APP_ATTEST_ROOT_CA_PEM = b"""-----BEGIN CERTIFICATE-----
MIICITCCAaegAwIBAgIQC/O+DvHN0uD7jG5yH2IXmDAKBggqhkjOPQQDAzBSMSYw
JAYDVQQDDB1BcHBsZSBBcHAgQXR0ZXN0YXRpb24gUm9vdCBDQTETMBEGA1UECgwK
QXBwbGUgSW5jLjETMBEGA1UECAwKQ2FsaWZvcm5pYTAeFw0yMDAzMTgxODMyNTNa
Fw00NTAzMTUwMDAwMDBaMFIxJjAkBgNVBAMMHUFwcGxlIEFwcCBBdHRlc3RhdGlv
biBSb290IENBMRMwEQYDVQQKDApBcHBsZSBJbmMuMRMwEQYDVQQIDApDYWxpZm9y
bmlhMHYwEAYHKoZIzj0CAQYFK4EEACIDYgAERTHhmLW07ATaFQIEVwTtT4dyctdh
NbJhFs/Ii2FdCgAHGbpphY3+d8qjuDngIN3WVhQUBHAoMeQ/cLiP1sOUtgjqK9au
Yen1mMEvRq9Sk3Jm5X8U62H+xTD3FE9TgS41o0IwQDAPBgNVHRMBAf8EBTADAQH/
MB0GA1UdDgQWBBSskRBTM72+aEH/pwyp5frq5eWKoTAOBgNVHQ8BAf8EBAMCAQYw
CgYIKoZIzj0EAwMDaAAwZQIwQgFGnByvsiVbpTKwSga0kP0e8EeDS4+sQmTvb7vn
53O5+FRXgeLhpJ06ysC5PrOyAjEAp5U4xDgEgllF7En3VcE3iexZZtKeYnpqtijV
oyFraWVIyd/dganmrduC1bmTBGwD
-----END CERTIFICATE-----
"""

APPLE_NONCE_OID = x509.ObjectIdentifier("1.2.840.113635.100.8.2")
# SEQUENCE { [1] { OCTET STRING (32 bytes) } }
NONCE_EXTENSION_PREFIX = bytes.fromhex("3024a1220420")

AAGUID_PRODUCTION = b"appattest" + b"\x00" * 7
AAGUID_DEVELOPMENT = b"appattestdevelop"

ATTESTED_CREDENTIAL_FLAG = 0x40


class AppAttestError(Exception):
    """An attestation or assertion failed verification."""


@dataclass(frozen=True)
class AttestedKey:
    """Credential extracted from a verified attestation."""

    public_key: bytes  # DER SubjectPublicKeyInfo


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _decode_cbor(raw: bytes, what: str) -> Dict[str, Any]:
    try:
        decoded = cbor2.loads(raw)
    except (cbor2.CBORError, ValueError, TypeError, EOFError) as e:
        raise AppAttestError(f"{what} is not valid CBOR") from e
    if not isinstance(decoded, dict):
        raise AppAttestError(f"{what} is not a CBOR map")
    return decoded


class AppAttestVerifier(AttestationCollaborator):
    """
    Verifier for App Attest attestation objects and assertions.

    Attestations are checked against the pinned Apple App Attestation
    root; assertions against the public key stored at enrollment.
    """

    validator_type = "appattest"
    platform = "ios"

    def __init__(self, config: AttestationConfig,
                 root_certificate_pem: bytes = APPLE_APP_ATTEST_ROOT_CA_PEM,
                 clock=None):
        super().__init__(config)
        self._root = x509.load_pem_x509_certificate(root_certificate_pem)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _app_id_hash(self) -> bytes:
        team_id = self.config.require("ios_team_id")
        bundle_id = self.config.require("ios_bundle_id")
        return _sha256(f"{team_id}.{bundle_id}".encode("utf-8"))

    def _accepted_aaguids(self) -> tuple:
        if self.config.ios_allow_development_env:
            return (AAGUID_PRODUCTION, AAGUID_DEVELOPMENT)
        return (AAGUID_PRODUCTION,)

    def verify_attestation(self, attestation: bytes, challenge: bytes, key_id: str) -> AttestedKey:
        """
        Verify an attestation object.

        Args:
            attestation: Raw CBOR attestation object
            challenge: Raw challenge bytes the client hashed into clientDataHash
            key_id: Base64 key identifier reported by the device

        Returns:
            AttestedKey with the credential public key

        Raises:
            AppAttestError: any validation step failed
            ConfigurationError: team or bundle id not configured
        """
        self._log_validation_attempt(calculate_token_hash(attestation), key_id)
        app_id_hash = self._app_id_hash()

        decoded = _decode_cbor(attestation, "Attestation")
        if decoded.get("fmt") != "apple-appattest":
            raise AppAttestError("Unexpected attestation format")

        statement = decoded.get("attStmt")
        auth_data = decoded.get("authData")
        if not isinstance(statement, dict) or not isinstance(auth_data, bytes) or len(auth_data) < 55:
            raise AppAttestError("Attestation is missing attStmt or authData")

        x5c = statement.get("x5c")
        if not isinstance(x5c, list) or len(x5c) < 2:
            raise AppAttestError("Attestation certificate chain is incomplete")

        try:
            leaf = x509.load_der_x509_certificate(x5c[0])
            intermediate = x509.load_der_x509_certificate(x5c[1])
        except (ValueError, TypeError) as e:
            raise AppAttestError("Attestation certificate is malformed") from e

        self._verify_chain(leaf, intermediate)

        # nonce = SHA256(authData || SHA256(challenge)) must be embedded in the leaf
        expected_nonce = _sha256(auth_data + _sha256(challenge))
        if not hmac.compare_digest(self._extract_nonce(leaf), expected_nonce):
            raise AppAttestError("Attestation nonce does not match challenge")

        leaf_key = leaf.public_key()
        if not isinstance(leaf_key, ec.EllipticCurvePublicKey):
            raise AppAttestError("Credential key is not an EC key")
        uncompressed = leaf_key.public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
        )
        key_hash = _sha256(uncompressed)

        claimed_key_id = decode_base64_any(key_id)
        if claimed_key_id is None or not hmac.compare_digest(claimed_key_id, key_hash):
            raise AppAttestError("Key identifier does not match credential key")

        rp_id_hash = auth_data[:32]
        flags = auth_data[32]
        sign_count = int.from_bytes(auth_data[33:37], "big")
        aaguid = auth_data[37:53]
        credential_id_length = int.from_bytes(auth_data[53:55], "big")
        credential_id = auth_data[55:55 + credential_id_length]

        if not hmac.compare_digest(rp_id_hash, app_id_hash):
            raise AppAttestError("App identifier hash mismatch")
        if not flags & ATTESTED_CREDENTIAL_FLAG:
            raise AppAttestError("Attested credential data flag not set")
        if sign_count != 0:
            raise AppAttestError("Attestation counter must be zero")
        if aaguid not in self._accepted_aaguids():
            raise AppAttestError("Attestation environment not accepted")
        if not hmac.compare_digest(credential_id, key_hash):
            raise AppAttestError("Credential id does not match credential key")

        return AttestedKey(
            public_key=leaf_key.public_bytes(
                serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
            ),
        )

    def verify_assertion(self, assertion: bytes, payload: bytes, public_key: bytes,
                         sign_count: int) -> int:
        """
        Verify an assertion from an enrolled key.

        Args:
            assertion: Raw CBOR assertion
            payload: Client data the assertion signs (the raw challenge bytes)
            public_key: DER public key stored at enrollment
            sign_count: Last counter accepted for this key

        Returns:
            The counter reported by the assertion

        Raises:
            AppAttestError: signature, app id or counter check failed
            ConfigurationError: team or bundle id not configured
        """
        self._log_validation_attempt(calculate_token_hash(assertion))
        app_id_hash = self._app_id_hash()

        decoded = _decode_cbor(assertion, "Assertion")
        signature = decoded.get("signature")
        auth_data = decoded.get("authenticatorData")
        if not isinstance(signature, bytes) or not isinstance(auth_data, bytes) or len(auth_data) < 37:
            raise AppAttestError("Assertion is missing signature or authenticatorData")

        nonce = _sha256(auth_data + _sha256(payload))
        try:
            key = serialization.load_der_public_key(public_key)
            key.verify(signature, nonce, ec.ECDSA(hashes.SHA256()))
        except InvalidSignature as e:
            raise AppAttestError("Assertion signature is invalid") from e
        except (ValueError, TypeError, AttributeError) as e:
            raise AppAttestError("Stored public key is unusable") from e

        if not hmac.compare_digest(auth_data[:32], app_id_hash):
            raise AppAttestError("App identifier hash mismatch")

        counter = int.from_bytes(auth_data[33:37], "big")
        if counter <= sign_count:
            raise AppAttestError("Assertion counter did not increase")
        return counter

    def _verify_chain(self, leaf: x509.Certificate, intermediate: x509.Certificate) -> None:
        now = self._clock()
        for child, parent in ((leaf, intermediate), (intermediate, self._root)):
            if not child.not_valid_before_utc <= now <= child.not_valid_after_utc:
                raise AppAttestError("Attestation certificate is outside its validity period")
            try:
                child.verify_directly_issued_by(parent)
            except (InvalidSignature, ValueError, TypeError) as e:
                raise AppAttestError("Attestation certificate chain does not verify") from e

    @staticmethod
    def _extract_nonce(leaf: x509.Certificate) -> bytes:
        try:
            extension = leaf.extensions.get_extension_for_oid(APPLE_NONCE_OID)
        except x509.ExtensionNotFound as e:
            raise AppAttestError("Attestation nonce extension missing") from e
        value = getattr(extension.value, "value", b"")
        if len(value) != len(NONCE_EXTENSION_PREFIX) + 32 or not value.startswith(NONCE_EXTENSION_PREFIX):
            raise AppAttestError("Attestation nonce extension is malformed")
        return value[len(NONCE_EXTENSION_PREFIX):]

    def is_configured(self) -> bool:
        """
        Check if verifier is properly configured for production use.

        Returns:
            True if team and bundle identifiers are present
        """
        ios = self.config.get_ios_config()
        return bool(ios["team_id"] and ios["bundle_id"])

    def get_configuration_status(self) -> Dict[str, Any]:
        """
        Get detailed configuration status.

        Returns:
            Dictionary with configuration status details
        """
        ios = self.config.get_ios_config()
        return {
            "validator_type": self.get_validator_type(),
            "platform": self.get_platform(),
            "configured": self.is_configured(),
            "has_team_id": bool(ios["team_id"]),
            "has_bundle_id": bool(ios["bundle_id"]),
            "allow_development_env": ios["allow_development_env"],
        }
