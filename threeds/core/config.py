"""Configuration management using Pydantic Settings."""

from enum import Enum
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


# Timeout constants (in milliseconds)
FINGERPRINT_TIMEOUT_DEFAULT = 6000  # Wait for 3DS Method completion before falling back
FRAME_NAVIGATION_TIMEOUT_DEFAULT = 30000


class FrameBackend(str, Enum):
    """Where monitoring and challenge frames are hosted."""
    RELAY = "relay"
    PLAYWRIGHT = "playwright"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="THREEDS_",
        env_file=".env.local",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # 3DS Server
    api_endpoint: Optional[str] = Field(default=None, description="3DS Server API endpoint")
    allow_insecure_endpoint: bool = Field(default=False, description="Permit http:// endpoints (local development only)")
    request_timeout: float = Field(default=30.0, description="RPC timeout in seconds")
    sdk_version: str = Field(default="1.0.0", description="Version tag sent with every RPC")
    challenge_completed_status: str = Field(default="01", description="Status code sent by updateChallengeStatus")

    # Protocol timing
    fingerprint_timeout_ms: int = Field(default=FINGERPRINT_TIMEOUT_DEFAULT, description="Fallback timer for the fingerprint phase in milliseconds")

    # Frame hosting
    frame_backend: FrameBackend = Field(default=FrameBackend.RELAY, description="Frame host implementation")
    headless: bool = Field(default=True, description="Run browser in headless mode")
    browser_launch_timeout: int = Field(default=300000, description="Browser launch timeout in milliseconds")
    frame_navigation_timeout: int = Field(default=FRAME_NAVIGATION_TIMEOUT_DEFAULT, description="Frame navigation timeout in milliseconds")

    # Relay service
    relay_shared_secret: Optional[str] = Field(default=None, description="HMAC secret for relayed frame messages")
    relay_timestamp_tolerance: int = Field(default=300, description="Relay timestamp tolerance in seconds")
    attempt_retention_minutes: int = Field(default=30, description="How long finished attempts stay queryable")
    attempt_max_age_minutes: int = Field(default=120, description="Age after which attempts are disposed even when still in flight")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=True, description="Use JSON logging format")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    @field_validator("frame_backend", mode="before")
    @classmethod
    def validate_frame_backend(cls, v):
        """Normalize frame backend name."""
        if isinstance(v, str):
            return v.lower()
        return v

    @field_validator("fingerprint_timeout_ms")
    @classmethod
    def validate_fingerprint_timeout(cls, v):
        """Fallback timer must be positive."""
        if v <= 0:
            raise ValueError("fingerprint_timeout_ms must be positive")
        return v

    def validate_endpoint(self) -> str:
        """Validate the 3DS Server endpoint and return it."""
        if not self.api_endpoint:
            raise ConfigurationError("THREEDS_API_ENDPOINT is required")

        # Card data travels in the request body
        if not self.allow_insecure_endpoint and not self.api_endpoint.startswith("https://"):
            raise ConfigurationError(
                "THREEDS_API_ENDPOINT must use HTTPS. "
                f"Got: {self.api_endpoint}. Set THREEDS_ALLOW_INSECURE_ENDPOINT=true for local development."
            )
        return self.api_endpoint

    @property
    def fingerprint_timeout(self) -> float:
        """Fallback timer in seconds."""
        return self.fingerprint_timeout_ms / 1000.0

    def __repr__(self):
        """Redact sensitive fields in repr."""
        safe_dict = {}
        for key, value in self.model_dump().items():
            if any(sensitive in key.lower() for sensitive in ["secret", "token", "password"]):
                safe_dict[key] = "***REDACTED***"
            else:
                safe_dict[key] = value
        return f"Settings({safe_dict})"


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings (useful for testing)."""
    global _settings
    _settings = None
    return get_settings()
