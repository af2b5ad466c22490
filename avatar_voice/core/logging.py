import json
import logging
import os
import re
import sys
import traceback
from datetime import UTC, datetime
from functools import lru_cache
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

from avatar_voice.core.settings import get_settings

_RECORD_BUILTIN_KEYS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys())
_RECORD_BUILTIN_KEYS.update({"message", "asctime"})
_STRUCTURED_KEYS = {
    "component",
    "operation",
    "item_id",
    "context_data",
    "error_type",
    "error_message",
}
_SENSITIVE_KEY_PARTS = (
    "authorization",
    "cookie",
    "api-key",
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "credential",
)
# Audio payloads are large and useless in log files.
_BULKY_KEYS = {"audio", "audio_b64", "audio_base_64"}
_BEARER_PATTERN = re.compile(r"(?i)\bbearer\s+[a-z0-9\-._~+/]+=*")
_HEADER_PATTERN = re.compile(r"(?i)((?:authorization|cookie)['\"]?\s*[:=]\s*['\"])([^'\"]+)(['\"])")


def _sanitize_filename(value: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", value.strip().lower())
    return cleaned.strip("._-") or "avatar_voice"


def _redact_value(value: Any) -> Any:
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            lowered = key.lower()
            if lowered in _BULKY_KEYS:
                out[key] = f"<{len(str(v))} chars>"
            elif any(part in lowered for part in _SENSITIVE_KEY_PARTS):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(v)
        return out

    if isinstance(value, (list, tuple)):
        return type(value)(_redact_value(v) for v in value)

    if isinstance(value, str):
        redacted = _BEARER_PATTERN.sub("Bearer <redacted>", value)
        return _HEADER_PATTERN.sub(r"\1<redacted>\3", redacted)

    return value


def truncate_for_trace(text: str | None) -> str:
    """Bound trace text payloads to keep structured logs compact."""

    if not text:
        return ""
    settings = get_settings()
    max_chars = min(max(80, int(settings.voice_trace_max_chars)), 4_000)
    trimmed = text.strip()
    if len(trimmed) <= max_chars:
        return trimmed
    return trimmed[:max_chars].rstrip() + "..."


def _record_context(record: logging.LogRecord) -> Any:
    context_data = getattr(record, "context_data", None)
    extra_fields = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_BUILTIN_KEYS and key not in _STRUCTURED_KEYS
    }
    if extra_fields:
        if context_data is None:
            context_data = extra_fields
        elif isinstance(context_data, dict):
            context_data = {**extra_fields, **context_data}
        else:
            context_data = {"context_data": context_data, **extra_fields}
    if context_data is None:
        return None
    return _redact_value(context_data)


def _base_payload(record: logging.LogRecord) -> dict[str, Any]:
    component = getattr(record, "component", None)
    if not isinstance(component, str) or not component.strip():
        component = record.name
    return {
        "timestamp": datetime.now(UTC).isoformat(),
        "level": record.levelname,
        "logger": record.name,
        "component": component,
        "operation": getattr(record, "operation", None),
        "message": _redact_value(record.getMessage()),
        "context_data": _record_context(record),
        "item_id": getattr(record, "item_id", None),
        "source_file": record.filename,
        "source_line": record.lineno,
        "source_function": record.funcName,
        "process": record.process,
    }


def _build_error_json_payload(record: logging.LogRecord) -> dict[str, Any]:
    payload = _base_payload(record)

    exc_type = exc_value = exc_tb = None
    if record.exc_info and len(record.exc_info) == 3:
        exc_type, exc_value, exc_tb = record.exc_info

    error_type = getattr(record, "error_type", None)
    if not error_type:
        error_type = exc_type.__name__ if exc_type else "LogError"
    error_message = getattr(record, "error_message", None)
    if not error_message:
        error_message = str(exc_value) if exc_value else str(payload["message"])

    payload["error_type"] = error_type
    payload["error_message"] = _redact_value(error_message)
    if exc_type and exc_value and exc_tb:
        payload["stack_trace"] = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))

    # ServiceError carries vendor diagnostics worth keeping next to the failure.
    diagnostics = getattr(exc_value, "diagnostics", None)
    if diagnostics is not None and hasattr(diagnostics, "to_dict"):
        payload["diagnostics"] = _redact_value(diagnostics.to_dict())

    return {k: v for k, v in payload.items() if v is not None}


def _build_structured_json_payload(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in _base_payload(record).items() if v is not None}


class _JsonLineFormatter(logging.Formatter):
    def __init__(self, *, errors: bool) -> None:
        super().__init__()
        self._errors = errors

    def format(self, record: logging.LogRecord) -> str:
        if self._errors:
            payload = _build_error_json_payload(record)
        else:
            payload = _build_structured_json_payload(record)
        return json.dumps(payload, ensure_ascii=False, default=str)


class _StructuredLogFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return any(
            getattr(record, key, None) is not None
            for key in ("context_data", "item_id", "operation", "component")
        )


def _rotate_jsonl_namer(default_name: str) -> str:
    marker = ".jsonl."
    if marker not in default_name:
        return default_name
    before, after = default_name.split(marker, 1)
    return f"{before}_{after}.jsonl"


def _create_jsonl_handler(
    *,
    directory: Path,
    logger_name: str,
    kind: str,
    level: int,
) -> logging.Handler:
    directory.mkdir(parents=True, exist_ok=True)
    base_file = directory / f"{_sanitize_filename(logger_name)}_{kind}_{os.getpid()}.jsonl"

    handler = TimedRotatingFileHandler(
        filename=str(base_file),
        when="D",
        interval=1,
        backupCount=0,
        encoding="utf-8",
        delay=True,
        utc=True,
    )
    handler.setLevel(level)
    handler.setFormatter(_JsonLineFormatter(errors=kind == "errors"))
    if kind == "structured":
        handler.addFilter(_StructuredLogFilter())
    handler.suffix = "%Y%m%d_%H%M%S"
    handler.namer = _rotate_jsonl_namer
    return handler


@lru_cache
def setup_logging(name: str | None = None, level: str | None = None) -> logging.Logger:
    """
    Configure root logging for the service.

    Args:
        name: Logger name (defaults to app name from settings)
        level: Log level (defaults to settings.log_level)

    Returns:
        Configured application logger
    """
    settings = get_settings()
    logger_name = name or settings.app_name
    log_level = getattr(logging, (level or settings.log_level).upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root_logger.addHandler(console_handler)
    root_logger.addHandler(
        _create_jsonl_handler(
            directory=settings.logs_dir / "errors",
            logger_name=logger_name,
            kind="errors",
            level=logging.ERROR,
        )
    )
    root_logger.addHandler(
        _create_jsonl_handler(
            directory=settings.logs_dir / "structured",
            logger_name=logger_name,
            kind="structured",
            level=logging.NOTSET,
        )
    )

    app_logger = logging.getLogger(logger_name)
    app_logger.setLevel(log_level)
    return app_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)
