"""
Application settings for the Device Integrity Gate
"""

import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Do NOT use .env file in production
        env_file=None,
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = "development"
    log_level: str = "INFO"

    # Diagnostic mode: correlation ids and exception class names in responses
    integrity_debug: bool = False

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = (v or "INFO").strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"log_level must be a standard logging level (got {v!r})")
        return level

    @field_validator('integrity_debug')
    @classmethod
    def block_debug_in_production(cls, v: bool) -> bool:
        """Diagnostic responses are never allowed in production"""
        environment = os.getenv('ENVIRONMENT', 'development')
        if environment == 'production' and v:
            raise ValueError(
                "integrity_debug=True is FORBIDDEN in production. "
                "Diagnostic detail must not reach clients. "
                "Set INTEGRITY_DEBUG=false in environment."
            )
        return v


def get_settings() -> Settings:
    """Load settings from the environment"""
    return Settings()
