from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

MiB = 1024 * 1024
KiB = 1024


class FileRotationSettings(BaseModel):
    """
    Date-based rotation settings (daily).

    This maps cleanly to Python's standard library TimedRotatingFileHandler behavior.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backup_count: int = 7


class FileLoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = ""
    rotation: FileRotationSettings = FileRotationSettings()


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = "INFO"
    file: FileLoggingSettings = FileLoggingSettings()


class StorageSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    base_dir: str = "data/storage"
    keep_versions: int = Field(default=3, ge=1)

    # On-disk content cache sweep
    cache_max_bytes: int = Field(default=100 * MiB, gt=0)
    cache_max_age_seconds: float = Field(default=7 * 24 * 3600.0, gt=0)
    cleanup_interval_seconds: float = Field(default=3600.0, gt=0)

    # In-memory cache of current content
    memory_cache_max_bytes: int = Field(default=100 * MiB, gt=0)
    memory_cache_max_age_seconds: float = Field(default=3600.0, gt=0)

    # Content sanitization
    allow_html: bool = False
    allowed_html_tags: Sequence[str] = ("p", "br", "b", "i", "code", "pre")
    max_content_chars: int = Field(default=1_000_000, gt=0)

    max_backups: int = Field(default=7, ge=1)


class HtmlSettings(BaseModel):
    """Scraping policy applied to HTML responses before they are stored."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    main_content_selectors: Sequence[str] = (
        "main",
        "article",
        "section",
        ".content",
        "#content",
        ".documentation",
        "#documentation",
    )
    stripped_tags: Sequence[str] = ("script", "style", "iframe", "nav", "footer", "header", "aside")
    warn_bytes: int = 500 * KiB
    large_bytes: int = 2 * MiB
    max_bytes: int = 5 * MiB


class FetcherSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    timeout_seconds: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    max_content_bytes: int = Field(default=10 * MiB, gt=0)
    user_agent: str = "codex-keeper/0.1"

    github_api_url: str = "https://api.github.com"
    npm_registry_url: str = "https://registry.npmjs.org"
    github_token: Optional[str] = None

    # Root directory file:// URLs must resolve inside.
    local_root: str = "."

    html: HtmlSettings = HtmlSettings()


class RateLimitSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_tokens: int = Field(default=60, ge=1)
    tokens_per_interval: int = Field(default=10, ge=1)
    interval_seconds: float = Field(default=60.0, gt=0)

    bucket_max_idle_seconds: float = Field(default=3600.0, gt=0)
    cleanup_interval_seconds: float = Field(default=300.0, gt=0)


class BatchSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_batch_size: int = Field(default=100, ge=1)
    max_wait_seconds: float = Field(default=0.1, ge=0)
    retry_count: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    mode: Literal["parallel", "sequential"] = "parallel"


class ServiceSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    min_update_interval_hours: float = Field(default=24.0, ge=0)
    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=100, ge=1)

    # Refresh-all fans out through a batch processor with these bounds.
    refresh_batch: BatchSettings = BatchSettings(max_batch_size=5, retry_count=1)


class AppConfig(BaseModel):
    """Effective runtime configuration after applying all precedence rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    logging: LoggingSettings = LoggingSettings()
    storage: StorageSettings = StorageSettings()
    fetcher: FetcherSettings = FetcherSettings()
    rate_limit: RateLimitSettings = RateLimitSettings()
    service: ServiceSettings = ServiceSettings()


@dataclass(frozen=True, slots=True)
class ConfigLoadRequest:
    """
    Optional inputs for a configuration loader.

    Implementations may use these to control where configuration is read from.
    """

    yaml_path: str = "data/config/config.yaml"
    env_prefix: str = "CODEX_KEEPER__"
    dotenv_path: Optional[str] = "data/.env"
