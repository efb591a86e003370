"""
Configuration management using Pydantic Settings.

A single Settings instance is built once at process start and passed to
every service. Services read fields from it and never consult the
environment themselves.
"""

from enum import Enum
from functools import lru_cache
from typing import List

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.errors import ConfigurationError


class ExternalFailurePolicy(str, Enum):
    """What a service does when a practice endpoint call fails."""

    PROPAGATE = "propagate"
    FALLBACK_TO_MOCK = "fallback_to_mock"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Use .env file for local development.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==============================================================================
    # APPLICATION SETTINGS
    # ==============================================================================
    app_name: str = Field(default="NHS GP Booking Service")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # ==============================================================================
    # SERVER CONFIGURATION
    # ==============================================================================
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=9847)
    cors_origins: str = Field(default="http://localhost:3000")
    rate_limit: str = Field(default="100/15minutes")

    # ==============================================================================
    # LOCAL SYSTEM IDENTITY (sender of every GP Connect call)
    # ==============================================================================
    nhs_asid: str = Field(default="")
    nhs_organization_code: str = Field(default="")
    nhs_user_id: str = Field(default="")

    # ==============================================================================
    # GP CONNECT INTEGRATION
    # ==============================================================================
    gp_connect_jwt_key: SecretStr = Field(default=SecretStr(""))
    gp_connect_timeout_seconds: float = Field(default=30.0)

    # ==============================================================================
    # PERSISTENCE
    # ==============================================================================
    redis_url: str = Field(default="")

    # ==============================================================================
    # FAILURE POLICIES
    # ==============================================================================
    availability_failure_policy: ExternalFailurePolicy = Field(
        default=ExternalFailurePolicy.FALLBACK_TO_MOCK
    )
    practice_lookup_fallback: bool = Field(default=True)
    simulate_success_on_failure: bool = Field(default=False)
    pending_booking_max_age_minutes: int = Field(default=15)

    # ==============================================================================
    # AUDIT & COMPLIANCE
    # ==============================================================================
    enable_audit_logging: bool = Field(default=True)
    audit_log_file: str = Field(default="audit.log")
    audit_log_rotation_mb: int = Field(default=10)

    # ==============================================================================
    # SECURITY & AUTHENTICATION
    # ==============================================================================
    admin_username: str = Field(default="")
    admin_password: SecretStr = Field(default=SecretStr(""))

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Restrict environment to the known deployment modes."""
        allowed = {"development", "demo", "test", "production"}
        value = v.strip().lower()
        if value not in allowed:
            raise ValueError(
                f"environment must be one of {sorted(allowed)}, got {v!r}"
            )
        return value

    @field_validator("pending_booking_max_age_minutes")
    @classmethod
    def validate_pending_age(cls, v):
        if v <= 0:
            raise ValueError("pending_booking_max_age_minutes must be positive")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def signing_key_configured(self) -> bool:
        return bool(self.gp_connect_jwt_key.get_secret_value().strip())

    @property
    def use_mock_availability(self) -> bool:
        """Demo mode: serve fixed slots without calling any practice."""
        if self.environment == "demo":
            return True
        return not self.signing_key_configured and not self.is_production

    @property
    def redis_configured(self) -> bool:
        return bool(self.redis_url.strip())

    def booking_failure_policy(self) -> ExternalFailurePolicy:
        """Simulated success is only ever allowed outside production."""
        if self.simulate_success_on_failure and not self.is_production:
            return ExternalFailurePolicy.FALLBACK_TO_MOCK
        return ExternalFailurePolicy.PROPAGATE

    def get_cors_origins_list(self) -> List[str]:
        """Get CORS origins as a list."""
        return [
            origin.strip() for origin in self.cors_origins.split(",") if origin.strip()
        ]

    def get_sanitized_dict(self) -> dict:
        """
        Get settings as dictionary with sensitive values masked.
        Useful for logging and debugging.
        """
        data = self.model_dump()

        for field in ["gp_connect_jwt_key", "admin_password"]:
            value = getattr(self, field).get_secret_value()
            data[field] = "***" if value else ""

        if self.redis_url and "@" in self.redis_url:
            scheme, _, rest = self.redis_url.partition("://")
            data["redis_url"] = f"{scheme}://***@{rest.split('@', 1)[1]}"

        data["availability_failure_policy"] = self.availability_failure_policy.value
        return data

    def validate_for_startup(self) -> List[str]:
        """
        Validate settings for application startup.

        Returns:
            List of warning messages (empty if everything is OK)
        """
        warnings = []

        if self.use_mock_availability:
            warnings.append(
                "Running in demo mode - availability searches return mock slots"
            )

        if not self.signing_key_configured:
            warnings.append(
                "GP Connect signing key not configured - placeholder tokens will be sent"
            )

        if not self.redis_configured:
            warnings.append(
                "Redis not configured - using in-memory booking storage and sample practices"
            )

        if self.simulate_success_on_failure:
            if self.is_production:
                warnings.append(
                    "SIMULATE_SUCCESS_ON_FAILURE is ignored in production"
                )
            else:
                warnings.append(
                    "Failed bookings will be reported as simulated successes"
                )

        if (
            self.availability_failure_policy == ExternalFailurePolicy.FALLBACK_TO_MOCK
            and self.is_production
        ):
            warnings.append(
                "Availability search falls back to mock slots when a practice is unreachable"
            )

        if not self.admin_username or not self.admin_password.get_secret_value():
            warnings.append("Admin credentials not set - maintenance endpoints disabled")

        if self.debug and self.is_production:
            warnings.append(
                "SECURITY: Debug mode enabled in production - This is a security risk"
            )

        return warnings

    def ensure_production_ready(self) -> None:
        """
        Refuse to start in production without the identity and key material
        every outbound call needs.

        Raises:
            ConfigurationError: If a required production setting is missing
        """
        if not self.is_production:
            return

        missing = []
        if not self.signing_key_configured:
            missing.append("GP_CONNECT_JWT_KEY")
        if not self.nhs_asid:
            missing.append("NHS_ASID")
        if not self.nhs_organization_code:
            missing.append("NHS_ORGANIZATION_CODE")

        if missing:
            raise ConfigurationError(
                f"Production configuration incomplete: {', '.join(missing)} not set"
            )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    This function creates a singleton Settings instance that is cached
    for the lifetime of the application.
    """
    return Settings()


__all__ = ["ExternalFailurePolicy", "Settings", "get_settings"]
