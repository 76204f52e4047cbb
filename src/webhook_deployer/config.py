"""Configuration management for the webhook deployer."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ChangeDetection = Literal["revision", "pull_output"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Repository
    git_repo_path: Path = Field(description="Working copy that is pulled and built")
    change_detection: ChangeDetection = Field(
        default="revision",
        description="How a pull decides whether new content arrived",
    )

    # Webhook listener
    webhook_host: str = Field(default="0.0.0.0", description="Webhook listen host")
    webhook_port: int = Field(default=8000, ge=1, le=65535, description="Webhook listen port")
    webhook_secret_token: SecretStr | None = Field(
        default=None, description="Shared secret expected in the webhook header"
    )
    secret_file: Path = Field(
        default=Path("~/.webhook-deployer/secret"),
        description="Where a generated secret is kept when none is configured",
    )

    # Supervised application
    app_port: int = Field(
        default=3000,
        ge=1,
        le=65535,
        validation_alias=AliasChoices("app_port", "nextjs_port"),
        description="Port the application listens on",
    )
    sync_command: str = Field(default="git pull", description="Repository pull command")
    install_command: str = Field(default="npm install", description="Dependency install step")
    build_command: str = Field(default="npm run build", description="Build step")
    start_command: str = Field(default="npm start", description="Application launch command")
    command_timeout_seconds: float = Field(
        default=1200.0, gt=0, description="Timeout for each pull/install/build step"
    )
    readiness_path: str | None = Field(
        default=None, description="HTTP path polled after start, e.g. /api/health"
    )
    readiness_retries: int = Field(default=10, ge=1)
    readiness_delay_seconds: float = Field(default=3.0, ge=0)

    # Bookkeeping
    history_size: int = Field(default=50, ge=1, description="Recent runs and exits retained")
    shutdown_grace_seconds: float = Field(
        default=30.0, ge=0, description="How long shutdown waits for a running pipeline"
    )

    # Logging
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False, description="Also write JSON logs to a file")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)
    log_file_backup_count: int = Field(default=5, ge=0)

    @field_validator("git_repo_path", "secret_file", mode="before")
    @classmethod
    def _expand_home(cls, value: object) -> object:
        if isinstance(value, str | Path):
            return Path(value).expanduser()
        return value

    @field_validator("readiness_path")
    @classmethod
    def _normalise_readiness_path(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        value = value.strip()
        return value if value.startswith("/") else f"/{value}"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def log_file_path(self) -> str:
        return str(Path(self.log_directory) / "webhook_deployer.log")

    @property
    def readiness_url(self) -> str | None:
        """Full URL probed after the application starts, if configured."""
        if self.readiness_path is None:
            return None
        return f"http://127.0.0.1:{self.app_port}{self.readiness_path}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]
