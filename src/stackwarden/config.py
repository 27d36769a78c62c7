"""Configuration management for Stackwarden."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from stackwarden.constants import DEFAULT_BACKUP_RETENTION, HEALTH_CHECK_TIMEOUT


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

    # Installation layout
    root_dir: Path = Field(default=Path("."), description="Deployment root being updated")
    backup_dir: Path | None = Field(
        default=None, description="Backup root (defaults to <root_dir>/.stackwarden-backups)"
    )
    backup_retention: int = Field(
        default=DEFAULT_BACKUP_RETENTION, ge=1, description="Backups kept after an update"
    )
    version_file: str = Field(
        default="package.json", description="File holding the installed version"
    )

    # Release index
    github_repo: str = Field(default="", description="owner/name of the release repository")
    github_token: SecretStr | None = Field(default=None, description="GitHub API token")
    git_branch: str = Field(default="main", description="Branch pulled during updates")

    # Health endpoints
    api_url: str = Field(default="http://localhost:4000", description="Service base URL")
    database_url: SecretStr = Field(
        default=SecretStr("postgresql://postgres@localhost:5432/postgres"),
        description="PostgreSQL DSN used for the datastore probe",
    )
    redis_url: str = Field(default="redis://localhost:6379", description="Redis URL")

    # Container runtime
    docker_host: str | None = Field(
        default=None, description="Docker daemon URL (defaults to the environment)"
    )
    managed_label: str = Field(
        default="com.stackwarden.managed", description="Label marking managed containers"
    )
    legacy_name_prefix: str = Field(
        default="stackwarden", description="Name prefix of containers created before labels"
    )
    compose_file: str = Field(
        default="docker/docker-compose.full.yml", description="Stack definition file"
    )

    # External commands
    install_command: str | None = Field(default=None, description="Override install command")
    build_command: str | None = Field(default=None, description="Override build command")
    migrate_command: str = Field(
        default="npx prisma migrate deploy", description="Schema migration command"
    )

    # Timeouts (seconds)
    health_timeout: float = Field(default=HEALTH_CHECK_TIMEOUT, gt=0)
    fetch_timeout: int = Field(default=120, gt=0)
    install_timeout: int = Field(default=300, gt=0)
    migrate_timeout: int = Field(default=120, gt=0)
    build_timeout: int = Field(default=600, gt=0)
    pull_timeout: float = Field(default=600, gt=0)
    stop_timeout: int = Field(default=10, ge=0)
    runtime_timeout: int = Field(default=60, gt=0)
    stack_pull_timeout: int = Field(default=600, gt=0)
    stack_up_timeout: int = Field(default=300, gt=0)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def resolved_backup_dir(self) -> Path:
        """Backup root, falling back to a hidden directory in the deployment root."""
        if self.backup_dir is not None:
            return self.backup_dir
        return self.root_dir / ".stackwarden-backups"

    @property
    def health_url(self) -> str:
        """Get the service's own health endpoint."""
        return f"{self.api_url.rstrip('/')}/health"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
