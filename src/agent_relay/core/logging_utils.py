from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .config import LogConfig

_MAX_VALUE_CHARS = 2000
_REDACTED_KEYS = frozenset({"token", "secret", "password", "authorization", "api_key"})
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def sanitize_log_value(value: Any, *, limit: int = _MAX_VALUE_CHARS) -> Any:
    """Return a JSON-friendly, size-bounded rendition of ``value``."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    if isinstance(value, Path):
        value = str(value)
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, str):
        if len(value) > limit:
            return f"{value[:limit]}...(+{len(value) - limit} chars)"
        return value
    if isinstance(value, dict):
        return {
            str(key): (
                "<redacted>"
                if str(key).lower() in _REDACTED_KEYS
                else sanitize_log_value(item, limit=limit)
            )
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize_log_value(item, limit=limit) for item in value]
    return sanitize_log_value(repr(value), limit=limit)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit a structured, single-line JSON log record."""
    if not logger.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        payload[key] = sanitize_log_value(value)
    if exc is not None:
        payload["error"] = sanitize_log_value(exc)
        payload["error_type"] = type(exc).__name__
    try:
        message = json.dumps(payload, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        message = f"{event} {payload!r}"
    logger.log(level, message)


def setup_rotating_logger(name: str, config: "LogConfig") -> logging.Logger:
    """Attach a rotating file handler for ``config.path`` to a named logger."""
    logger = logging.getLogger(name)
    logger.setLevel(config.level)
    target = str(config.path)
    for handler in logger.handlers:
        if (
            isinstance(handler, RotatingFileHandler)
            and getattr(handler, "baseFilename", None) == str(Path(target).resolve())
        ):
            return logger
    config.path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        target,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


__all__ = ["log_event", "sanitize_log_value", "setup_rotating_logger"]
