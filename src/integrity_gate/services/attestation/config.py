"""
Configuration management for the device integrity service.
"""

import base64
import json
import logging
import os
from typing import Optional, List, Dict, Any

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_CHALLENGE_TTL_MS = 5 * 60 * 1000
DEFAULT_DEVICE_VERDICT = "MEETS_DEVICE_INTEGRITY"


class ConfigurationError(RuntimeError):
    """A setting required by the requested operation is not configured."""


def _env(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class AttestationConfig(BaseSettings):
    """
    Configuration for device integrity verification.

    Loads from environment variables. Every field can also be passed by
    its attribute name, which is how the tests build configurations.
    """

    model_config = SettingsConfigDict(
        env_file=None,  # Don't use .env files in production
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Android Play Integrity
    android_package_name: Optional[str] = Field(
        default=None, validation_alias=_env("android_package_name", "ANDROID_PACKAGE_NAME"))
    android_required_device_verdict: str = Field(
        default=DEFAULT_DEVICE_VERDICT,
        validation_alias=_env("android_required_device_verdict", "ANDROID_REQUIRED_DEVICE_VERDICT"))
    android_allowed_cert_sha256: Optional[str] = Field(
        default=None, validation_alias=_env("android_allowed_cert_sha256", "ANDROID_ALLOWED_CERT_SHA256"))

    # Google service account used to call decodeIntegrityToken
    google_application_credentials: Optional[str] = Field(
        default=None,
        validation_alias=_env("google_application_credentials", "GOOGLE_APPLICATION_CREDENTIALS"))
    google_credentials_json: Optional[str] = Field(
        default=None,
        validation_alias=_env("google_credentials_json", "GOOGLE_APPLICATION_CREDENTIALS_JSON",
                              "GOOGLE_SERVICE_ACCOUNT_JSON"))
    google_credentials_b64: Optional[str] = Field(
        default=None,
        validation_alias=_env("google_credentials_b64", "GOOGLE_APPLICATION_CREDENTIALS_B64"))

    # iOS App Attest
    ios_bundle_id: Optional[str] = Field(default=None, validation_alias=_env("ios_bundle_id", "IOS_BUNDLE_ID"))
    ios_team_id: Optional[str] = Field(default=None, validation_alias=_env("ios_team_id", "IOS_TEAM_ID"))
    ios_allow_development_env: bool = Field(
        default=False, validation_alias=_env("ios_allow_development_env", "IOS_ALLOW_DEVELOPMENT_ENV"))

    # Challenge lifecycle
    challenge_ttl_ms: int = Field(
        default=DEFAULT_CHALLENGE_TTL_MS,
        validation_alias=_env("challenge_ttl_ms", "INTEGRITY_CHALLENGE_TTL_MS"))

    # Durable backend (absence selects the in-process store)
    upstash_rest_url: Optional[str] = Field(
        default=None, validation_alias=_env("upstash_rest_url", "UPSTASH_REDIS_REST_URL", "KV_REST_API_URL"))
    upstash_rest_token: Optional[str] = Field(
        default=None, validation_alias=_env("upstash_rest_token", "UPSTASH_REDIS_REST_TOKEN", "KV_REST_API_TOKEN"))
    redis_url: Optional[str] = Field(default=None, validation_alias=_env("redis_url", "REDIS_URL"))
    store_timeout: float = Field(
        default=3.0, validation_alias=_env("store_timeout", "INTEGRITY_STORE_TIMEOUT_SECONDS"))
    memory_store_size: int = Field(
        default=100000, validation_alias=_env("memory_store_size", "INTEGRITY_MEMORY_STORE_SIZE"))

    # API timeout configuration
    api_timeout: int = Field(default=30, validation_alias=_env("api_timeout", "ATTESTATION_API_TIMEOUT"))

    @field_validator("challenge_ttl_ms", mode="before")
    @classmethod
    def default_invalid_ttl(cls, v: Any) -> int:
        """Non-numeric or non-positive TTLs fall back to five minutes."""
        try:
            parsed = int(float(v))
        except (TypeError, ValueError):
            return DEFAULT_CHALLENGE_TTL_MS
        return parsed if parsed > 0 else DEFAULT_CHALLENGE_TTL_MS

    @field_validator("android_required_device_verdict", mode="before")
    @classmethod
    def strip_verdict(cls, v: Any) -> str:
        """An empty verdict disables the device integrity requirement."""
        if v is None:
            return ""
        return v.strip() if isinstance(v, str) else v

    @property
    def allowed_cert_digests(self) -> List[str]:
        """Signing certificate allow-list; empty disables pinning."""
        raw = self.android_allowed_cert_sha256 or ""
        return [item.strip() for item in raw.split(",") if item.strip()]

    @property
    def challenge_ttl_seconds(self) -> float:
        return self.challenge_ttl_ms / 1000

    def durable_backend(self) -> Optional[str]:
        """
        Name of the durable backend the connection parameters select.

        Returns:
            "upstash", "redis" or None for the in-process store
        """
        if self.upstash_rest_url and self.upstash_rest_token:
            return "upstash"
        if self.redis_url:
            return "redis"
        return None

    def require(self, name: str) -> str:
        """Return a string setting or raise ConfigurationError if unset."""
        value = getattr(self, name)
        if not value:
            raise ConfigurationError(f"Missing configuration: {name}")
        return value

    def load_service_account_info(self) -> Optional[Dict[str, Any]]:
        """
        Load Google service account credentials.

        Inline JSON wins over base64, which wins over a file path. Relative
        paths are resolved against the working directory.
        """
        raw = self.google_credentials_json
        if not raw and self.google_credentials_b64:
            raw = base64.b64decode(self.google_credentials_b64).decode("utf-8")
        if raw:
            return json.loads(raw)

        path = self.google_application_credentials
        if not path:
            return None
        if not os.path.isabs(path):
            path = os.path.abspath(path)
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)

    def get_ios_config(self) -> dict:
        """Get iOS-specific configuration."""
        return {
            "bundle_id": self.ios_bundle_id,
            "team_id": self.ios_team_id,
            "allow_development_env": self.ios_allow_development_env,
        }

    def get_android_config(self) -> dict:
        """Get Android-specific configuration."""
        return {
            "package_name": self.android_package_name,
            "required_device_verdict": self.android_required_device_verdict,
            "allowed_cert_digests": self.allowed_cert_digests,
            "has_credentials": bool(
                self.google_credentials_json
                or self.google_credentials_b64
                or self.google_application_credentials
            ),
        }

    def validate_config(self) -> list[str]:
        """
        Validate configuration and return list of issues.

        Returns:
            List of configuration issues (empty if valid)
        """
        issues = []

        if not self.android_package_name:
            issues.append("ANDROID_PACKAGE_NAME is required for Android verification")
        if not self.get_android_config()["has_credentials"]:
            issues.append("Google service account credentials are required for Play Integrity")
        if not self.ios_bundle_id:
            issues.append("IOS_BUNDLE_ID is required for App Attest")
        if not self.ios_team_id:
            issues.append("IOS_TEAM_ID is required for App Attest")

        if bool(self.upstash_rest_url) != bool(self.upstash_rest_token):
            issues.append("Upstash REST URL and token must be configured together")

        return issues

    def log_config_summary(self):
        """Log configuration summary for debugging. Secrets are never logged."""
        logger.info(f"Integrity config - Challenge TTL: {self.challenge_ttl_ms}ms, "
                    f"Backend: {self.durable_backend() or 'memory'}, "
                    f"Store timeout: {self.store_timeout}s")
        logger.info(f"Android config - Package: {self.android_package_name}, "
                    f"Required verdict: {self.android_required_device_verdict or 'none'}, "
                    f"Pinned certs: {len(self.allowed_cert_digests)}")
        logger.info(f"iOS config - Team ID: {self.ios_team_id}, "
                    f"Bundle ID: {self.ios_bundle_id}, "
                    f"Development env: {self.ios_allow_development_env}")
