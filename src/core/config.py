"""
NPHIES Exchange Configuration
Settings for the NPHIES transport, bundle composition and auto-polling.
Source: https://docs.pydantic.dev/latest/concepts/pydantic_settings/
Verified: 2026-10-16
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.core.enums import NphiesEndpoint


class NphiesSettings(BaseSettings):
    """
    NPHIES exchange configuration settings.

    All values can be overridden with NPHIES_-prefixed environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="NPHIES_",
    )

    # =========================================================================
    # Endpoints
    # =========================================================================
    BASE_URL: str = Field(
        default="http://176.105.150.83",
        description="NPHIES test (OBA) environment base URL",
    )
    PRODUCTION_URL: str = Field(
        default="https://hsb.nphies.sa",
        description="NPHIES production base URL",
    )
    DEFAULT_ENDPOINT: NphiesEndpoint = Field(
        default=NphiesEndpoint.TEST,
        description="Endpoint used when a caller does not select one",
    )
    ACCESS_TOKEN: Optional[str] = Field(
        default=None,
        description="Bearer token sent with $process-message calls",
    )

    # =========================================================================
    # Provider identity used while composing bundles
    # =========================================================================
    PROVIDER_ENDPOINT: str = Field(
        default="http://provider.com",
        description="MessageHeader.source.endpoint for outbound bundles",
    )
    PROVIDER_DOMAIN: str = Field(
        default="provider.com",
        description="Domain used to build identifier systems and fullUrls",
    )

    # =========================================================================
    # Transport
    # =========================================================================
    TIMEOUT_SECONDS: float = Field(
        default=60.0,
        gt=0,
        description="HTTP timeout for $process-message calls",
    )
    RATE_LIMIT_RETRY_DELAY_SECONDS: float = Field(
        default=2.0,
        ge=0,
        description="Delay before the single retry after HTTP 429",
    )

    # =========================================================================
    # Polling
    # =========================================================================
    AUTO_POLL_AFTER_ACKNOWLEDGMENT: bool = Field(
        default=True,
        description="Schedule a deferred poll after an unsolicited Communication is acknowledged",
    )
    AUTO_POLL_DELAY_SECONDS: float = Field(
        default=3.0,
        ge=0,
        description="Delay before the deferred poll fires",
    )
    POLL_MESSAGE_COUNT: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Maximum number of messages requested per poll",
    )

    @field_validator("BASE_URL", "PRODUCTION_URL", "PROVIDER_ENDPOINT")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize URLs so '$process-message' can be appended."""
        return v.rstrip("/")

    def endpoint_url(self, endpoint: Optional[NphiesEndpoint] = None) -> str:
        """Resolve the base URL for an endpoint selection."""
        selected = endpoint or self.DEFAULT_ENDPOINT
        if selected == NphiesEndpoint.PRODUCTION:
            return self.PRODUCTION_URL
        return self.BASE_URL


# Singleton instance
_nphies_settings: Optional[NphiesSettings] = None


def get_nphies_settings() -> NphiesSettings:
    """
    Get cached NPHIES settings instance.

    Returns:
        NphiesSettings instance
    """
    global _nphies_settings
    if _nphies_settings is None:
        _nphies_settings = NphiesSettings()
    return _nphies_settings
