from __future__ import annotations

import base64
import binascii
import tempfile
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".tubebridge"
ENCRYPTION_KEY_BYTES = 32
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("sessions_dir", Path("sessions")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    "temp_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "session_sweep_enabled",
    "telemetry_enabled",
)
_URL_FIELDS: tuple[str, ...] = (
    "sponsorblock_base_url",
    "dearrow_base_url",
    "dearrow_thumbnail_url",
)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{TUBEBRIDGE_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    """Lenient flag parsing: anything unrecognized keeps the field default."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from a `TUBEBRIDGE_*` environment variable (or `.env`)
    and documented here together with its default.
    """

    model_config = SettingsConfigDict(
        env_prefix="TUBEBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for session records and logs.",
    )
    sessions_dir: Path = Field(
        default=_default_in_data_dir(Path("sessions")),
        description=f"One JSON record per session. {_data_dir_default_note(Path('sessions'))}",
    )
    temp_dir: Path = Field(
        default=Path(tempfile.gettempdir()),
        description="Directory receiving short-lived credential files for the extraction tool.",
    )

    # Sessions.
    session_expiry_days: int = Field(
        default=30,
        ge=1,
        description="Sliding expiry window; every successful read pushes expiry this far out.",
    )
    session_sweep_enabled: bool = Field(
        default=True,
        description="Enable the background sweep deleting expired session records.",
    )
    session_sweep_interval_seconds: int = Field(
        default=3600,
        ge=1,
        description="Cadence of the expired-session sweep.",
    )

    # Crypto.
    encryption_key: str | None = Field(
        default=None,
        description=(
            "Base64-encoded 32-byte process key protecting config tokens. "
            "A random key is generated when unset, invalidating tokens on restart."
        ),
    )

    # Extraction tool.
    ytdlp_binary: str = Field(
        default="yt-dlp",
        description="Executable name or path of the extraction tool.",
    )
    ytdlp_extractors: str = Field(
        default="all",
        description="Extractor allow-list passed as `--ies`.",
    )
    ytdlp_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Upper bound for one extraction tool invocation.",
    )

    # Enrichment services.
    sponsorblock_base_url: str = Field(
        default="https://sponsor.ajay.app/api",
        description="Segment categorization service base URL.",
    )
    dearrow_base_url: str = Field(
        default="https://sponsor.ajay.app/api",
        description="Crowd-sourced title/thumbnail service base URL.",
    )
    dearrow_thumbnail_url: str = Field(
        default="https://dearrow-thumb.ajay.app/api/v1/getThumbnail",
        description="Renderer producing a thumbnail for a video at a timestamp.",
    )
    http_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="HTTP timeout for enrichment services and playlist fetches.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
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
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("TUBEBRIDGE_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("TUBEBRIDGE_TELEMETRY_SINK must be set to: none, log.")

    @field_validator(*_URL_FIELDS, mode="before")
    @classmethod
    def _normalize_base_urls(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"TUBEBRIDGE_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError(f"{env_name} must not be empty.")
        return normalized

    @field_validator("ytdlp_binary", "ytdlp_extractors", mode="before")
    @classmethod
    def _normalize_required_text(cls, value: Any, info: ValidationInfo) -> str:
        normalized = _normalize_optional_text(value)
        if normalized is None:
            raise ValueError(f"TUBEBRIDGE_{str(info.field_name).upper()} must not be empty.")
        return normalized

    @field_validator("encryption_key", mode="before")
    @classmethod
    def _normalize_encryption_key(cls, value: Any) -> str | None:
        normalized = _normalize_optional_text(value)
        if normalized is None:
            return None
        try:
            decoded = base64.b64decode(normalized, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("TUBEBRIDGE_ENCRYPTION_KEY must be valid base64.") from exc
        if len(decoded) != ENCRYPTION_KEY_BYTES:
            raise ValueError(
                f"TUBEBRIDGE_ENCRYPTION_KEY must decode to {ENCRYPTION_KEY_BYTES} bytes."
            )
        return normalized

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

    def encryption_key_bytes(self) -> bytes | None:
        if self.encryption_key is None:
            return None
        return base64.b64decode(self.encryption_key)


def _finalize_paths(settings: AppSettings) -> AppSettings:
    """Anchors unset data-dir children to `data_dir`, then resolves every path."""
    paths = {field_name: getattr(settings, field_name) for field_name in _PATH_FIELDS}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name not in settings.model_fields_set:
            paths[field_name] = settings.data_dir / relative_default
    return settings.model_copy(
        update={field_name: _resolve_path(path) for field_name, path in paths.items()}
    )


def load_settings() -> AppSettings:
    return _finalize_paths(AppSettings())
