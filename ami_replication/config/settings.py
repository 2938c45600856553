"""
Application Settings.

Centralized configuration using Pydantic Settings with environment variable loading.
Retry, polling and notification constants default to the values the deployed
replication workflow uses; override them per environment when needed.

Production Mode:
    When app_env="production", additional validations apply:
    - log_json must be True
    - poll_interval_seconds must be at least 30
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # AWS
    # -------------------------------------------------------------------------
    aws_region: str = Field(
        default="us-east-1",
        description="Region holding the source images and the orchestration service",
    )
    state_machine_arn: Optional[str] = Field(
        default=None,
        description="Step Functions state machine ARN used by the kickoff handler",
    )
    input_artifact_name: Optional[str] = Field(
        default="TestOutput",
        description="Pipeline input artifact naming the tested image",
    )
    source_artifact_file: str = Field(
        default="manifest.json",
        description="Manifest file inside the input artifact archive",
    )
    source_artifact_field: str = Field(
        default="imageId",
        description="Manifest field holding the tested image id",
    )

    # -------------------------------------------------------------------------
    # Execution store
    # -------------------------------------------------------------------------
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL; executions are kept in memory when unset",
    )
    redis_key_prefix: str = Field(default="ami-replication", description="Prefix for Redis keys")
    finished_execution_ttl_seconds: int = Field(
        default=7 * 24 * 3600,
        ge=1,
        description="How long finished execution records are kept in Redis",
    )

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------
    poll_interval_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Delay between snapshot progress checks",
    )
    max_poll_iterations: int = Field(
        default=720,
        ge=1,
        description="Progress checks allowed before an execution fails (720 x 30s = 6 hours)",
    )

    # -------------------------------------------------------------------------
    # Retry policy (applied to every step)
    # -------------------------------------------------------------------------
    retry_max_attempts: int = Field(default=6, ge=1, description="Total attempts per step")
    retry_initial_interval_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Delay before the first retry",
    )
    retry_backoff_rate: float = Field(default=2.0, ge=1, description="Backoff multiplier")

    # -------------------------------------------------------------------------
    # Pipeline notification
    # -------------------------------------------------------------------------
    failure_cause: str = Field(
        default="Snapshot copy failed",
        description="Fixed cause reported to the pipeline when an execution fails",
    )

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_json: bool = Field(
        default=False,
        description="Render logs as JSON lines instead of console output",
    )
    api_host: str = Field(default="0.0.0.0", description="API bind host")
    api_port: int = Field(default=8000, description="API bind port")

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate that production settings are sane."""
        if self.app_env == "production":
            errors = []

            if not self.log_json:
                errors.append("log_json must be True in production")

            if self.poll_interval_seconds < 30:
                errors.append("poll_interval_seconds must be at least 30 in production")

            if errors:
                raise ValueError(
                    f"Production configuration errors: {'; '.join(errors)}"
                )

        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings if needed.
    """
    return Settings()
