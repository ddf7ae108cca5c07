"""Configuration settings for buildkeep.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path, PurePosixPath
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from buildkeep.types import ConcurrentPolling, PointerStyle

# Substitution token for the project's fully qualified name
ITEM_FULL_NAME_TOKEN = "${ITEM_FULL_NAME}"


class ConfigurationError(ValueError):
    """Raised when configuration is invalid."""

    def __init__(self, message: str, code: str = "configuration_error") -> None:
        super().__init__(message)
        self.code = code


def _default_home_dir() -> Path:
    """Return the default buildkeep home directory."""
    return Path.home() / ".local" / "share" / "buildkeep"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = _default_home_dir() / "buildkeep.db"
    return f"sqlite:///{db_path}"


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def validate_builds_dir_template(
    template: str | None,
    permitted_roots: list[Path] | None = None,
) -> None:
    """Validate an external build storage template.

    Args:
        template: Template string, or None for the default nested layout.
        permitted_roots: Directories the storage root must live under.
            An empty list permits any absolute location.

    Raises:
        ConfigurationError: If the template is unusable.
    """
    if template is None:
        return

    if ITEM_FULL_NAME_TOKEN not in template:
        raise ConfigurationError(
            f"builds_dir_template must contain {ITEM_FULL_NAME_TOKEN}: {template}"
        )

    sample = PurePosixPath(template.replace(ITEM_FULL_NAME_TOKEN, "item"))
    if not sample.is_absolute():
        raise ConfigurationError(f"builds_dir_template must be absolute: {template}")
    if ".." in sample.parts:
        raise ConfigurationError(
            f"builds_dir_template must not contain '..': {template}"
        )

    if permitted_roots:
        base = Path(template.split(ITEM_FULL_NAME_TOKEN, 1)[0])
        if not any(_is_within(base, Path(root)) for root in permitted_roots):
            raise ConfigurationError(
                f"builds_dir_template {template} is outside permitted roots: "
                + ", ".join(str(r) for r in permitted_roots)
            )


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BUILDKEEP_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDKEEP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    home_dir: Path = Field(
        default_factory=_default_home_dir,
        description="Root directory holding project directories and locks",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    builds_dir_template: str | None = Field(
        default=None,
        description=(
            "External build storage template containing ${ITEM_FULL_NAME}; "
            "unset keeps builds under each project directory"
        ),
    )
    permitted_build_roots: list[Path] = Field(
        default_factory=list,
        description="Directories external build storage must live under",
    )

    # Pointers and polling
    pointer_style: PointerStyle = Field(
        default=PointerStyle.SYMLINK,
        description="On-disk form of named pointers (symlink or file)",
    )
    concurrent_polling: ConcurrentPolling = Field(
        default=ConcurrentPolling.EXCLUSIVE,
        description=(
            "Whether workspace polls wait for concurrent builds to vacate "
            "the main workspace"
        ),
    )

    # Security
    anonymous_read: bool = Field(
        default=False,
        description="Grant read access to anonymous principals",
    )

    # Operational
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Maximum concurrent builds",
    )
    build_cache_size: int = Field(
        default=256,
        ge=1,
        description="Number of build records kept in memory",
    )
    lock_poll_interval: float = Field(
        default=0.1,
        gt=0,
        le=5,
        description="Seconds between checks while waiting on a lock",
    )

    # Timeouts (in seconds)
    step_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for a single build step",
    )

    @model_validator(mode="after")
    def check_builds_dir_template(self) -> "Settings":
        """Reject unusable storage templates at configuration time."""
        validate_builds_dir_template(
            self.builds_dir_template, self.permitted_build_roots
        )
        return self

    @property
    def projects_dir(self) -> Path:
        """Directory holding top-level project and folder directories."""
        return self.home_dir / "jobs"

    @property
    def locks_dir(self) -> Path:
        """Directory holding mutation lock files."""
        return self.home_dir / ".locks"


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


__all__ = [
    "ITEM_FULL_NAME_TOKEN",
    "ConfigurationError",
    "Settings",
    "get_settings",
    "print_settings_json",
    "validate_builds_dir_template",
]
