from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".mp3vault"
DEFAULT_EXTRACTOR_COMMAND = "yt-dlp"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("downloads_dir", Path("downloads")),
    ("credential_path", Path("cookies.txt")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "credential_refresh_enabled",
    "download_sweeper_enabled",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{MP3VAULT_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return {1: True, 0: False}.get(value, default)
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


class AppSettings(BaseSettings):
    """
    Runtime configuration for the mp3vault backend.

    Every option is read from `MP3VAULT_*` environment variables (or `.env`).
    Paths that are not set explicitly live under `data_dir`.
    """

    model_config = SettingsConfigDict(
        env_prefix="MP3VAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for downloads, credentials and logs.",
    )
    downloads_dir: Path = Field(
        default=_default_in_data_dir(Path("downloads")),
        description=f"Directory for finished downloads. {_data_dir_default_note(Path('downloads'))}",
    )

    # Credential refresh.
    credential_path: Path = Field(
        default=_default_in_data_dir(Path("cookies.txt")),
        description=(
            "Credential (cookie) file handed to the extractor. "
            f"{_data_dir_default_note(Path('cookies.txt'))}"
        ),
    )
    credential_refresh_enabled: bool = Field(
        default=True,
        description="Start the background credential refresh loop with the app.",
    )
    credential_source_url: str | None = Field(
        default=None,
        description="Base URL of the remote credential authority.",
    )
    credential_access_key: str | None = Field(
        default=None,
        description="Shared secret sent as `x-cookie-access-key` to the credential authority.",
    )
    credential_refresh_interval_seconds: int = Field(
        default=300,
        ge=1,
        description="Cadence of scheduled credential refreshes.",
    )
    credential_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per credential refresh before giving up.",
    )
    credential_retry_delay_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Fixed delay between credential refresh attempts.",
    )
    credential_http_timeout_seconds: float = Field(
        default=15.0,
        description="HTTP timeout for credential health and fetch calls.",
    )

    # Catalog caches.
    search_cache_ttl_seconds: int = Field(
        default=30 * 60,
        description="Freshness window for merged search results.",
    )
    trending_cache_ttl_seconds: int = Field(
        default=15 * 60,
        description="Freshness window for trending-by-country supersets.",
    )
    search_max_results: int = Field(
        default=20,
        ge=1,
        description="Maximum ranked search results returned per query.",
    )
    trending_max_items: int = Field(
        default=100,
        ge=1,
        description="Cap on the cached trending superset per country.",
    )
    trending_page_size: int = Field(
        default=12,
        ge=1,
        description="Trending page size.",
    )
    upstream_http_timeout_seconds: float = Field(
        default=15.0,
        description="HTTP timeout for upstream search and trending page fetches.",
    )
    upstream_user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        description="User-Agent sent to the upstream listing source.",
    )

    # Extraction jobs.
    extractor_command: str = Field(
        default=DEFAULT_EXTRACTOR_COMMAND,
        description="Command prefix used to launch the extractor, split shell-style.",
    )
    audio_job_timeout_seconds: float = Field(
        default=5 * 60,
        description="Wall-clock ceiling for audio download jobs.",
    )
    video_job_timeout_seconds: float = Field(
        default=10 * 60,
        description="Wall-clock ceiling for video download jobs.",
    )
    probe_timeout_seconds: float = Field(
        default=15,
        description="Wall-clock ceiling for metadata-only probes.",
    )

    # Download cleanup.
    download_sweeper_enabled: bool = Field(
        default=True,
        description="Periodically delete old files from the downloads directory.",
    )
    download_max_age_seconds: int = Field(
        default=24 * 60 * 60,
        description="Files older than this are removed by the sweeper.",
    )
    download_sweep_interval_seconds: int = Field(
        default=6 * 60 * 60,
        ge=1,
        description="Cadence of download sweeps.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="Telemetry sink backend. `log` emits structured telemetry locally.",
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("MP3VAULT_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("MP3VAULT_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("credential_source_url", mode="before")
    @classmethod
    def _normalize_source_url(cls, value: Any) -> str | None:
        normalized = _normalize_optional_text(value)
        if normalized is None:
            return None
        return normalized.rstrip("/")

    @field_validator("credential_access_key", mode="before")
    @classmethod
    def _normalize_access_key(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("extractor_command")
    @classmethod
    def _validate_extractor_command(cls, value: str) -> str:
        if not shlex.split(value):
            raise ValueError("MP3VAULT_EXTRACTOR_COMMAND must not be empty.")
        return value.strip()

    @property
    def extractor_command_parts(self) -> tuple[str, ...]:
        return tuple(shlex.split(self.extractor_command))

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
