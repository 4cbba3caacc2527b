from __future__ import annotations

import logging
import re
import sys
from pathlib import Path

import structlog
from structlog.typing import EventDict, Processor

from tubebridge.config import AppSettings
from tubebridge.telemetry import REDACTED, TELEMETRY_LOGGER_NAME, is_sensitive_attribute

LOG_FILE_NAME = "tubebridge.log"
TELEMETRY_LOG_FILE_NAME = "tubebridge-telemetry.log"
ROOT_LOGGER_NAME = "tubebridge"
ACCESS_LOGGER_NAME = "uvicorn.access"

# Both echo every outbound URL at INFO.
_CHATTY_LOGGERS: tuple[str, ...] = ("httpx", "httpcore")
# First path segments that are routes rather than a `{config}` reference.
_UNSCOPED_ROUTES = frozenset({"health", "encrypt", "sessions", "stream", "docs", "openapi.json"})
# salt:nonce:tag:ciphertext as produced by the crypto module.
SEALED_TOKEN_PATTERN = re.compile(r"[0-9a-f]{32}:[0-9a-f]{24}:[0-9a-f]{32}:[0-9a-f]*")


def configure_application_logging(settings: AppSettings) -> Path:
    """Routes `tubebridge.*` records to stdout and a JSON log file.

    Telemetry events get a file of their own. Config tokens and sealed
    secrets are masked before any handler sees them, including in the
    server's access log.
    """
    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME
    telemetry_log_file = log_dir / TELEMETRY_LOG_FILE_NAME

    _configure_structlog()

    app_logger = _isolated_logger(ROOT_LOGGER_NAME, logging.DEBUG)
    console_stream = sys.stdout
    console_handler = logging.StreamHandler(stream=console_stream)
    console_handler.setLevel(_resolve_log_level(settings.log_level))
    console_handler.setFormatter(
        _build_console_formatter(enable_colors=_stream_supports_color(console_stream))
    )
    app_logger.addHandler(console_handler)
    app_logger.addHandler(_file_handler(log_file, logging.DEBUG))

    telemetry_logger = _isolated_logger(TELEMETRY_LOGGER_NAME, logging.INFO)
    telemetry_logger.addHandler(_file_handler(telemetry_log_file, logging.INFO))

    _install_access_log_redaction()
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    app_logger.info(
        "logging configured console_level=%s file_level=%s path=%s telemetry_path=%s",
        settings.log_level.upper(),
        "DEBUG",
        log_file,
        telemetry_log_file,
    )
    return log_file


def redact_config_path(path: str) -> str:
    """Masks the leading `{config}` segment of an addon request path."""
    head, separator, rest = path.lstrip("/").partition("/")
    if not separator or head in _UNSCOPED_ROUTES:
        return path
    return f"/{REDACTED}/{rest}"


def redact_sealed_tokens(text: str) -> str:
    return SEALED_TOKEN_PATTERN.sub(REDACTED, text)


class AccessPathRedactionFilter(logging.Filter):
    """Rewrites the request path argument of access log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        args = record.args
        # uvicorn passes (client_addr, method, full_path, http_version, status_code).
        if isinstance(args, tuple) and len(args) >= 3 and isinstance(args[2], str):
            record.args = (*args[:2], redact_config_path(args[2]), *args[3:])
        return True


def _install_access_log_redaction() -> None:
    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)
    if not any(isinstance(item, AccessPathRedactionFilter) for item in access_logger.filters):
        access_logger.addFilter(AccessPathRedactionFilter())


def _isolated_logger(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    return logger


def _file_handler(path: Path, level: int) -> logging.FileHandler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(_build_file_formatter())
    return handler


def _resolve_log_level(raw_level: str) -> int:
    resolved = getattr(logging, raw_level.strip().upper(), None)
    if isinstance(resolved, int):
        return resolved
    return logging.INFO


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _build_console_formatter(*, enable_colors: bool) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_pre_chain(),
        processors=[
            _redact_event,
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=enable_colors),
        ],
    )


def _build_file_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_pre_chain(),
        processors=[
            _add_record_metadata,
            _redact_event,
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
    )


def _shared_pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]


def _redact_event(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    for key, value in list(event_dict.items()):
        if key.startswith("_"):
            continue
        if is_sensitive_attribute(key.lower()):
            event_dict[key] = REDACTED
        elif isinstance(value, str):
            event_dict[key] = redact_sealed_tokens(value)
    return event_dict


def _add_record_metadata(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["pathname"] = record.pathname
        event_dict["lineno"] = record.lineno
        event_dict["func_name"] = record.funcName
        event_dict["process"] = record.process
        event_dict["task_name"] = getattr(record, "taskName", None)
    return event_dict


def _stream_supports_color(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if callable(isatty):
        try:
            return bool(isatty())
        except Exception:
            return False
    return False
