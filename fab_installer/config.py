"""Configuration settings for fab_installer.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default artifact cache directory."""
    return Path.home() / ".cache" / "fab-installer" / "artifacts"


def _default_work_dir() -> Path:
    """Return the default work directory for build outputs."""
    return Path.cwd() / "result"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the FAB_INSTALLER_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="FAB_INSTALLER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for the artifact cache",
    )
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Directory receiving installers and images",
    )
    docker_config: Path | None = Field(
        default=None,
        description="Docker config.json with registry credentials "
        "(uses ~/.docker/config.json if not set)",
    )

    # Registry
    registry_repo: str = Field(
        default="ghcr.io",
        description="Registry host and optional path all artifacts live under",
    )
    registry_prefix: str = Field(
        default="githedgehog",
        description="Path prefix prepended to every artifact name",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - only use artifacts already in the cache",
    )
    show_progress: bool = Field(
        default=True,
        description="Show per-blob download progress bars",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    download_workers: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Concurrent blob transfers per artifact",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single blob download",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
