"""
Application configuration using Pydantic Settings.

Loads configuration from SHIPYARD_* environment variables and a .env file.
Retry counts, health-check bounds and approval timeouts are defaults only;
pipeline definitions may override them per stage or per target.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="SHIPYARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="shipyard", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    log_redaction_enabled: bool = Field(default=True, description="Redact secrets in logs")

    # State
    state_dir: str = Field(default=".shipyard", description="Directory for run snapshots, logs and gates")

    # Execution
    failure_policy: str = Field(default="fail_at_end", description="fail_fast or fail_at_end")
    parallel_limit: int = Field(default=4, description="Max concurrently executing stages")
    default_retry_attempts: int = Field(default=3, description="Attempts for retryable stages")
    default_retry_delay: float = Field(default=5.0, description="Initial retry delay in seconds")
    command_timeout: float = Field(default=1800.0, description="Default external command timeout")

    # Deployment
    health_timeout: float = Field(default=300.0, description="Health verification bound in seconds")
    health_poll_interval: float = Field(default=10.0, description="Seconds between health polls")
    health_request_timeout: float = Field(default=5.0, description="Timeout of a single health probe")

    # Approval
    approval_timeout: float | None = Field(default=None, description="Gate timeout; None waits forever")
    control_poll_interval: float = Field(default=2.0, description="Seconds between operator control polls")

    # Notifications
    notification_webhook_url: str | None = Field(default=None, description="Webhook for run events")
    notification_timeout: float = Field(default=10.0, description="Webhook request timeout")

    @field_validator("failure_policy")
    @classmethod
    def _validate_failure_policy(cls, value: str) -> str:
        normalized = value.lower().replace("-", "_")
        if normalized not in ("fail_fast", "fail_at_end"):
            raise ValueError(f"failure_policy must be fail_fast or fail_at_end, got '{value}'")
        return normalized

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env.lower() == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"


# Global settings instance
settings = Settings()
