"""Configuration settings for kernelpack.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import os
import re
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)([hms]?)")
_DURATION_UNITS = {"h": 3600, "m": 60, "s": 1, "": 1}


def parse_duration(value: str | float | int) -> float:
    """Parse a duration such as ``90``, ``45s``, ``30m`` or ``1h30m``.

    Args:
        value: Duration string or number of seconds.

    Returns:
        Duration in seconds.

    Raises:
        ValueError: If the value is not a positive duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().lower().replace(" ", "")
        if not text:
            raise ValueError("Duration must not be empty")
        seconds = 0.0
        pos = 0
        while pos < len(text):
            match = _DURATION_PART.match(text, pos)
            if match is None or match.end() == pos:
                raise ValueError(f"Invalid duration: {value!r}")
            # A bare number is only allowed as the whole value
            if not match.group(2) and (pos > 0 or match.end() != len(text)):
                raise ValueError(f"Invalid duration: {value!r}")
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


def _default_cpu_count() -> int:
    """Return the available concurrency of this host."""
    return os.cpu_count() or 1


def _default_work_dir() -> Path:
    """Return the default root for per-plan working directories."""
    return Path.home() / ".cache" / "kernelpack" / "work"


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "kernelpack"


def _default_artifacts_dir() -> Path:
    """Return the default artifacts directory."""
    return Path.home() / ".local" / "share" / "kernelpack" / "artifacts"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "kernelpack" / "db.sqlite"
    return f"sqlite:///{db_path}"


def _default_config_options() -> dict[str, str]:
    """Return kernel options applied on top of every generated config."""
    return {"CONFIG_LOCALVERSION_AUTO": "n"}


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the KPKG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="KPKG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for per-plan working directories",
    )
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for cached kernel configs",
    )
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Root directory for collected artifacts and reports",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for the artifact store",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    install_tools: bool = Field(
        default=False,
        description="Install missing build dependencies with apt-get",
    )
    use_sudo: bool = Field(
        default=True,
        description="Prefix dependency installation with sudo",
    )
    reuse_config: bool = Field(
        default=True,
        description="Start from the cached kernel config of a previous run",
    )
    keep_work_dirs: bool = Field(
        default=False,
        description="Keep working directories of successful plans",
    )
    clone_depth: int | None = Field(
        default=None,
        ge=1,
        description="Shallow clone depth (full clone if not set)",
    )
    config_defaults: dict[str, str] = Field(
        default_factory=_default_config_options,
        description="Kernel options applied when generating a default config",
    )

    # Concurrency
    max_workers: int = Field(
        default_factory=_default_cpu_count,
        ge=1,
        description="Maximum number of target plans built concurrently",
    )

    # Timeouts (in seconds)
    step_timeout: float | None = Field(
        default=None,
        description="Maximum duration of a single step (no limit if not set)",
    )
    source_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for source acquisition",
    )

    # Retention and reporting
    retention_days: int = Field(
        default=7,
        ge=1,
        description="Days to keep stored artifacts",
    )
    output_tail_bytes: int = Field(
        default=8192,
        ge=256,
        description="Bytes of step output kept in the build report",
    )

    @field_validator("step_timeout", mode="before")
    @classmethod
    def validate_step_timeout(cls, v: object) -> float | None:
        """Accept durations such as '90m' for the step timeout."""
        if v is None or v == "":
            return None
        if isinstance(v, (str, int, float)):
            return parse_duration(v)
        raise ValueError(f"Invalid step timeout: {v!r}")


def get_settings() -> Settings:
    """Get the application settings.

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


__all__ = ["Settings", "get_settings", "parse_duration", "print_settings_json"]
