"""Configuration management for the Aether updater."""

from functools import lru_cache
from typing import Annotated

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False, description="Also write logs to a rotating file")
    log_file_path: str = Field(default="logs/aether-updater.log", description="Log file path")
    log_file_max_bytes: int = Field(default=10 * 1024 * 1024)
    log_file_backup_count: int = Field(default=5)

    # Feature flag: updates refuse to run unless explicitly enabled
    enable_system_update: bool = Field(
        default=False, description="Allow the self-update pipeline to run"
    )

    # Deployment layout
    project_root: str = Field(default=".", description="Host directory holding the compose project")
    compose_file: str | None = Field(default=None, description="Explicit compose file path")
    deployment_service: str = Field(
        default="aether-dashboard", description="Compose service being updated"
    )

    # Sandbox runner
    runner_container: str = Field(
        default="aether-update-runner", description="Container name of the update runner"
    )
    runner_service: str = Field(
        default="update-runner", description="Compose service of the runner"
    )
    runner_profile: str = Field(default="update", description="Compose profile of the runner")
    runner_workdir: str | None = Field(
        default=None, description="Working directory for commands inside the runner"
    )
    runner_settle_seconds: float = Field(default=3.0, ge=0)

    # Source control
    git_remote: str = Field(default="origin")
    git_branch: str = Field(default="main")
    pull_max_attempts: int = Field(default=3, description="Pull attempts before giving up")
    pull_backoff_base_seconds: float = Field(default=2.0, ge=0)

    # Migrations
    migration_command: Annotated[
        list[str],
        Field(
            default_factory=lambda: ["npm", "run", "migrate"],
            description="Migration command run inside the deployment container",
        ),
    ]
    migration_settle_seconds: float = Field(default=15.0, ge=0)

    # Timeouts (seconds)
    command_timeout_seconds: float = Field(default=60.0)
    build_timeout_seconds: float = Field(default=300.0)
    up_timeout_seconds: float = Field(default=60.0)
    migration_timeout_seconds: float = Field(default=120.0)
    rollback_timeout_seconds: float = Field(default=300.0)
    health_timeout_seconds: float = Field(default=60.0)
    health_poll_interval_seconds: float = Field(default=2.0)
    health_url: str | None = Field(
        default=None, description="Optional HTTP health endpoint of the deployment"
    )

    max_output_bytes: int = Field(
        default=10 * 1024 * 1024, description="Captured output ceiling per command"
    )

    # Audit persistence
    database_url: SecretStr | None = Field(
        default=None, description="PostgreSQL DSN for update audit records"
    )

    # HTTP surface
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8090)
    updater_secret_path: str = Field(default="data/.updater-secret")
    update_rate_limit_seconds: float = Field(
        default=3600.0, ge=0, description="Minimum gap between updates per initiator"
    )

    @field_validator("pull_max_attempts", "max_output_bytes")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator(
        "command_timeout_seconds",
        "build_timeout_seconds",
        "up_timeout_seconds",
        "migration_timeout_seconds",
        "rollback_timeout_seconds",
        "health_timeout_seconds",
        "health_poll_interval_seconds",
    )
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("migration_command")
    @classmethod
    def _non_empty_command(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("migration_command must not be empty")
        return value

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
