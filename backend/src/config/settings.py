"""
Application settings configuration for the lifecycle engine.

Centralized settings loaded from environment variables.
"""

from datetime import timedelta
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class LifecycleSettings(BaseSettings):
    """
    Lifecycle engine settings loaded from environment variables.

    Environment Variables:
        LIFECYCLE_DB_URL: SQLAlchemy database URL
        LIFECYCLE_SWEEP_INTERVAL_SECONDS: Start/end sweep cadence (default: 300)
        LIFECYCLE_NO_SHOW_SWEEP_INTERVAL_SECONDS: No-show sweep cadence (default: 900)
        LIFECYCLE_RECONCILE_INTERVAL_SECONDS: Drift repair cadence (default: 1800)
        LIFECYCLE_ESCROW_SETTLEMENT_INTERVAL_SECONDS: Escrow retry cadence (default: 3600)
        LIFECYCLE_NO_SHOW_GRACE_MINUTES: Grace after event end before the sweep forfeits (default: 60)
        LIFECYCLE_SCHEDULED_NO_SHOW_DELAY_MINUTES: Delay after event end for the scheduled
            no-show forfeiture (default: 30)
        LIFECYCLE_RECONCILE_SAMPLE_SIZE: Recently-modified aggregates examined per pass (default: 20)
        LIFECYCLE_JOB_MAX_ATTEMPTS: Attempts per aggregate on persistence failure (default: 3)
        LIFECYCLE_JOB_INITIAL_BACKOFF_SECONDS: First retry delay, doubled per attempt (default: 1.0)
        LIFECYCLE_BACKGROUND_JOBS_ENABLED: Run scheduler and periodic jobs in the API process
        ESCROW_SERVICE_URL: Base URL of the escrow service (default: "" = no-signer mode)
        ESCROW_SERVICE_TOKEN: Bearer token for the escrow service
        ESCROW_TIMEOUT_SECONDS: Escrow request timeout (default: 30)
    """

    db_url: str = Field(
        default="sqlite:///./lifecycle.db",
        validation_alias="LIFECYCLE_DB_URL",
        description="SQLAlchemy database URL"
    )

    # Periodic job cadences
    sweep_interval_seconds: int = Field(
        default=300,
        validation_alias="LIFECYCLE_SWEEP_INTERVAL_SECONDS",
        ge=1,
    )

    no_show_sweep_interval_seconds: int = Field(
        default=900,
        validation_alias="LIFECYCLE_NO_SHOW_SWEEP_INTERVAL_SECONDS",
        ge=1,
    )

    reconcile_interval_seconds: int = Field(
        default=1800,
        validation_alias="LIFECYCLE_RECONCILE_INTERVAL_SECONDS",
        ge=1,
    )

    escrow_settlement_interval_seconds: int = Field(
        default=3600,
        validation_alias="LIFECYCLE_ESCROW_SETTLEMENT_INTERVAL_SECONDS",
        ge=1,
    )

    # Grace windows
    no_show_grace_minutes: int = Field(
        default=60,
        validation_alias="LIFECYCLE_NO_SHOW_GRACE_MINUTES",
        ge=0,
        description="Minutes after an event's end before the no-show sweep forfeits stakes"
    )

    scheduled_no_show_delay_minutes: int = Field(
        default=30,
        validation_alias="LIFECYCLE_SCHEDULED_NO_SHOW_DELAY_MINUTES",
        ge=0,
        description="Minutes after an event ends before the scheduled no-show forfeiture fires"
    )

    reconcile_sample_size: int = Field(
        default=20,
        validation_alias="LIFECYCLE_RECONCILE_SAMPLE_SIZE",
        ge=1,
        le=1000,
    )

    # Retry policy for PersistenceError inside jobs
    job_max_attempts: int = Field(
        default=3,
        validation_alias="LIFECYCLE_JOB_MAX_ATTEMPTS",
        ge=1,
        le=10,
    )

    job_initial_backoff_seconds: float = Field(
        default=1.0,
        validation_alias="LIFECYCLE_JOB_INITIAL_BACKOFF_SECONDS",
        ge=0,
    )

    background_jobs_enabled: bool = Field(
        default=True,
        validation_alias="LIFECYCLE_BACKGROUND_JOBS_ENABLED",
    )

    # Escrow service
    escrow_service_url: str = Field(
        default="",
        validation_alias="ESCROW_SERVICE_URL",
        description="Escrow service base URL. Empty = no-signer mode (releases are logged, not sent)."
    )

    escrow_service_token: str = Field(
        default="",
        validation_alias="ESCROW_SERVICE_TOKEN",
    )

    escrow_timeout_seconds: float = Field(
        default=30.0,
        validation_alias="ESCROW_TIMEOUT_SECONDS",
        gt=0,
    )

    class Config:
        env_file = ".env"
        extra = "ignore"

    @field_validator("escrow_service_url")
    @classmethod
    def validate_escrow_service_url(cls, v: str) -> str:
        """Require an http(s) scheme when an escrow URL is configured."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("ESCROW_SERVICE_URL must start with http:// or https://")
        return v.rstrip("/")

    @property
    def escrow_configured(self) -> bool:
        """Check if the escrow service is configured."""
        return bool(self.escrow_service_url)

    @property
    def no_show_grace(self) -> timedelta:
        return timedelta(minutes=self.no_show_grace_minutes)

    @property
    def scheduled_no_show_delay(self) -> timedelta:
        return timedelta(minutes=self.scheduled_no_show_delay_minutes)

    @property
    def escrow_token(self) -> Optional[str]:
        return self.escrow_service_token or None


@lru_cache()
def get_settings() -> LifecycleSettings:
    """
    Get cached lifecycle settings instance.

    Returns:
        LifecycleSettings: Configured settings from environment
    """
    return LifecycleSettings()
