from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 3
_FIELD_PREVIEW_CHARS = 500


@dataclass(frozen=True)
class LogConfig:
    path: Path
    level: str = "INFO"
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUP_COUNT


def _coerce_field(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_coerce_field(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _coerce_field(item) for key, item in value.items()}
    text = str(value)
    if len(text) > _FIELD_PREVIEW_CHARS:
        return text[:_FIELD_PREVIEW_CHARS] + "..."
    return text


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit a structured log line: a dotted event name plus JSON fields."""

    if not logger.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        payload[key] = _coerce_field(value)
    if exc is not None:
        payload["error"] = _coerce_field(str(exc) or type(exc).__name__)
        payload["error_type"] = type(exc).__name__
    logger.log(level, json.dumps(payload, ensure_ascii=False, sort_keys=False))


def setup_rotating_logger(name: str, config: Optional[LogConfig]) -> logging.Logger:
    """Return a logger writing to a size-rotated file (stderr when unconfigured)."""

    logger = logging.getLogger(name)
    target = str(config.path) if config is not None else "<stderr>"
    if getattr(logger, "_ticket_bridge_target", None) == target:
        return logger
    for existing in list(getattr(logger, "_ticket_bridge_handlers", ())):
        logger.removeHandler(existing)
        existing.close()
    if config is None:
        handler: logging.Handler = logging.StreamHandler()
        level = logging.INFO
    else:
        config.path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            config.path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        level = logging.getLevelName(config.level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    setattr(logger, "_ticket_bridge_target", target)
    setattr(logger, "_ticket_bridge_handlers", (handler,))
    return logger


__all__ = ["LogConfig", "log_event", "setup_rotating_logger"]
