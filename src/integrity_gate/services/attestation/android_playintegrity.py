"""
Android Play Integrity decode client.

Exchanges an integrity token for its decoded verdict payload through
Google's decodeIntegrityToken endpoint. Signature and payload decryption
happen on Google's side; this module only authenticates and relays.
"""

import logging
import time
from typing import Optional, Dict, Any

import httpx
import jwt

from .base import AttestationCollaborator, calculate_token_hash
from .config import AttestationConfig

logger = logging.getLogger(__name__)

PLAY_INTEGRITY_SCOPE = "https://www.googleapis.com/auth/playintegrity"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


class PlayIntegrityError(Exception):
    """The decode call could not be completed."""


class PlayIntegrityClient(AttestationCollaborator):
    """
    Client for the Play Integrity decodeIntegrityToken API.

    Authenticates as a Google service account with the OAuth2 JWT bearer
    grant. Each decode is a single round trip with no retry.
    """

    PLAY_INTEGRITY_API_URL = "https://playintegrity.googleapis.com/v1/{package_name}:decodeIntegrityToken"

    validator_type = "playintegrity"
    platform = "android"

    def __init__(self, config: AttestationConfig,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock=time.time):
        super().__init__(config)
        self._transport = transport
        self._clock = clock
        self._access_token: Optional[str] = None
        self._access_token_expiry = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.api_timeout, transport=self._transport)

    async def decode_token(self, token: str, package_name: str) -> Optional[Dict[str, Any]]:
        """
        Decode a Play Integrity token.

        Args:
            token: The integrity token produced on the device
            package_name: Android application id the token was requested for

        Returns:
            tokenPayloadExternal, or None when the response carries no payload

        Raises:
            PlayIntegrityError: credentials, transport or HTTP failure
        """
        token_hash = calculate_token_hash(token)
        self._log_validation_attempt(token_hash, package_name)

        access_token = await self._get_google_access_token()
        url = self.PLAY_INTEGRITY_API_URL.format(package_name=package_name)

        try:
            async with self._client() as client:
                response = await client.post(
                    url,
                    json={"integrityToken": token},
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as e:
            raise PlayIntegrityError(f"Play Integrity API request failed: {type(e).__name__}") from e

        if response.status_code != 200:
            logger.error(f"Play Integrity API error: {response.status_code} (token hash {token_hash[:8]}...)")
            raise PlayIntegrityError(f"Play Integrity API returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise PlayIntegrityError("Play Integrity API returned a non-JSON body") from e

        payload = body.get("tokenPayloadExternal") if isinstance(body, dict) else None
        if not isinstance(payload, dict) or not payload:
            return None
        return payload

    async def _get_google_access_token(self) -> str:
        """
        Get a Google access token for the Play Integrity scope.

        Tokens are cached until a minute before they expire.
        """
        now = self._clock()
        if self._access_token and now < self._access_token_expiry - 60:
            return self._access_token

        try:
            info = self.config.load_service_account_info()
        except (OSError, ValueError) as e:
            raise PlayIntegrityError("Google service account credentials are unreadable") from e
        if not info:
            raise PlayIntegrityError("Google service account credentials are not configured")

        token_uri = info.get("token_uri") or DEFAULT_TOKEN_URI
        assertion = self._build_assertion(info, token_uri, int(now))

        try:
            async with self._client() as client:
                response = await client.post(
                    token_uri,
                    data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                )
        except httpx.HTTPError as e:
            raise PlayIntegrityError(f"Google token request failed: {type(e).__name__}") from e

        if response.status_code != 200:
            raise PlayIntegrityError(f"Google token endpoint returned HTTP {response.status_code}")

        try:
            body = response.json()
            self._access_token = body["access_token"]
            self._access_token_expiry = now + int(body.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            raise PlayIntegrityError("Google token endpoint returned an unexpected body") from e
        return self._access_token

    @staticmethod
    def _build_assertion(info: Dict[str, Any], token_uri: str, issued_at: int) -> str:
        try:
            claims = {
                "iss": info["client_email"],
                "scope": PLAY_INTEGRITY_SCOPE,
                "aud": token_uri,
                "iat": issued_at,
                "exp": issued_at + 3600,
            }
            headers = {"kid": info["private_key_id"]} if info.get("private_key_id") else None
            return jwt.encode(claims, info["private_key"], algorithm="RS256", headers=headers)
        except (KeyError, ValueError, jwt.PyJWTError) as e:
            raise PlayIntegrityError("Google service account credentials are invalid") from e

    def is_configured(self) -> bool:
        """
        Check if the client has what it needs for production use.

        Returns:
            True if package name and credentials are present
        """
        android = self.config.get_android_config()
        return bool(android["package_name"] and android["has_credentials"])

    def get_configuration_status(self) -> Dict[str, Any]:
        """
        Get detailed configuration status.

        Returns:
            Dictionary with configuration status details
        """
        android = self.config.get_android_config()
        return {
            "validator_type": self.get_validator_type(),
            "platform": self.get_platform(),
            "configured": self.is_configured(),
            "has_package_name": bool(android["package_name"]),
            "has_credentials": android["has_credentials"],
            "pinned_certificates": len(android["allowed_cert_digests"]),
        }
