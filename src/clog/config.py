"""Application configuration."""

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from clog.core.exceptions import ConfigError

SITE_CONFIG_FILENAME = "clog.yaml"


class MissingVariablePolicy(str, Enum):
    """What a template does when a variable cannot be resolved."""

    FAIL_FAST = "fail-fast"
    WARN_EMPTY = "warn-empty"


class Settings(BaseSettings):
    """Build defaults loaded from environment variables."""

    clean: bool = False
    strict: bool = False
    concurrency: int = Field(default=4, ge=1)
    missing_variable_policy: MissingVariablePolicy = MissingVariablePolicy.FAIL_FAST
    io_timeout: float = Field(default=30.0, gt=0)
    max_errors: int | None = Field(default=None, ge=0)
    include_drafts: bool = False
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CLOG_",
        env_file=".env",
        env_file_encoding="utf-8",
    )


class BuildOptions(BaseModel):
    """Immutable options for a single build run."""

    model_config = ConfigDict(frozen=True)

    clean: bool = False
    strict: bool = False
    concurrency: int = Field(default=4, ge=1)
    missing_variable_policy: MissingVariablePolicy = MissingVariablePolicy.FAIL_FAST
    io_timeout: float = Field(default=30.0, gt=0)
    max_errors: int | None = Field(default=None, ge=0)
    include_drafts: bool = False

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "BuildOptions":
        """Create options from settings, letting non-None overrides win."""
        values = settings.model_dump(exclude={"log_level"})
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class SiteConfig(BaseModel):
    """Site-wide configuration read from ``clog.yaml``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: str = "clog"
    base_url: str = "/"
    params: dict[str, Any] = Field(default_factory=dict)
    ignore: tuple[str, ...] = ()
    list_folders: tuple[str, ...] = ()
    default_type: str = "page"
    output_extension: str = ".html"
    slugify_paths: bool = True
    collection_sort: str = "-date"
    tag_pages: bool = True
    tag_prefix: str = "tags"
    year_pages: bool = True
    year_prefix: str = "archive"

    @field_validator("output_extension")
    @classmethod
    def _dotted_extension(cls, value: str) -> str:
        if value and not value.startswith("."):
            return "." + value
        return value

    @field_validator("list_folders")
    @classmethod
    def _normalize_folders(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(sorted({v.strip("/") for v in value}))

    @field_validator("collection_sort")
    @classmethod
    def _known_sort_key(cls, value: str) -> str:
        if value.lstrip("-") not in {"date", "title", "path"}:
            raise ValueError(f"unknown sort key: {value}")
        return value


def load_site_config(input_root: Path) -> SiteConfig:
    """Load ``clog.yaml`` from the input root, or defaults if absent.

    Raises:
        ConfigError: If the file exists but is not valid.
    """
    path = input_root / SITE_CONFIG_FILENAME
    if not path.is_file():
        return SiteConfig()
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to read {SITE_CONFIG_FILENAME}: {e}", path=str(path)) from e
    if not isinstance(data, dict):
        raise ConfigError(f"{SITE_CONFIG_FILENAME} must contain a mapping", path=str(path))
    try:
        return SiteConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid {SITE_CONFIG_FILENAME}: {e}", path=str(path)) from e


settings = Settings()
