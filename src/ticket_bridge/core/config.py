from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from .logging_utils import (
    DEFAULT_LOG_BACKUP_COUNT,
    DEFAULT_LOG_MAX_BYTES,
    LogConfig,
)

CONFIG_FILENAME = "ticket-bridge.yml"
DEFAULT_STORAGE_DIR = "data"
DEFAULT_LOG_FILE = "logs/ticket-bridge.log"
DEFAULT_CLOSE_GRACE_SECONDS = 5.0
DEFAULT_SPECIAL_MENTION_DELAY_SECONDS = 1.0
DEFAULT_DEDUPE_CACHE_SIZE = 1000
DEFAULT_TRANSCRIPT_SCAN_DEPTH = 3
DEFAULT_TRANSCRIPT_SCAN_MAX_ENTRIES = 2000
DEFAULT_MEDIA_DOWNLOAD_TIMEOUT_SECONDS = 30.0
DEFAULT_FFMPEG_BINARY = "ffmpeg"


class BridgeConfigError(Exception):
    """Raised when the bridge config is invalid."""


@dataclass(frozen=True)
class MediaConfig:
    download_timeout_seconds: float = DEFAULT_MEDIA_DOWNLOAD_TIMEOUT_SECONDS
    ffmpeg_binary: str = DEFAULT_FFMPEG_BINARY
    max_download_retries: int = 3


@dataclass(frozen=True)
class BridgeConfig:
    root: Path
    storage_root: Path
    close_grace_seconds: float
    special_mention_delay_seconds: float
    dedupe_cache_size: int
    transcript_scan_depth: int
    transcript_scan_max_entries: int
    media: MediaConfig
    log: LogConfig
    raw: dict[str, Any]

    @classmethod
    def from_raw(cls, *, root: Path, raw: dict[str, Any]) -> "BridgeConfig":
        cfg: dict[str, Any] = raw if isinstance(raw, dict) else {}

        storage_value = cfg.get("storage_root", DEFAULT_STORAGE_DIR)
        if not isinstance(storage_value, str) or not storage_value.strip():
            raise BridgeConfigError("storage_root must be a string path")
        storage_root = _resolve_path(root, storage_value)

        close_grace_seconds = _parse_non_negative_float_or_default(
            cfg.get("close_grace_seconds"),
            default=DEFAULT_CLOSE_GRACE_SECONDS,
            key="close_grace_seconds",
        )
        special_mention_delay_seconds = _parse_non_negative_float_or_default(
            cfg.get("special_mention_delay_seconds"),
            default=DEFAULT_SPECIAL_MENTION_DELAY_SECONDS,
            key="special_mention_delay_seconds",
        )
        dedupe_cache_size = _parse_positive_int_or_default(
            cfg.get("dedupe_cache_size"),
            default=DEFAULT_DEDUPE_CACHE_SIZE,
            key="dedupe_cache_size",
        )

        transcripts_raw = cfg.get("transcripts")
        transcripts_cfg = transcripts_raw if isinstance(transcripts_raw, dict) else {}
        transcript_scan_depth = _parse_positive_int_or_default(
            transcripts_cfg.get("scan_depth"),
            default=DEFAULT_TRANSCRIPT_SCAN_DEPTH,
            key="transcripts.scan_depth",
        )
        transcript_scan_max_entries = _parse_positive_int_or_default(
            transcripts_cfg.get("scan_max_entries"),
            default=DEFAULT_TRANSCRIPT_SCAN_MAX_ENTRIES,
            key="transcripts.scan_max_entries",
        )

        media_raw = cfg.get("media")
        media_cfg = media_raw if isinstance(media_raw, dict) else {}
        ffmpeg_binary = str(media_cfg.get("ffmpeg_binary", DEFAULT_FFMPEG_BINARY)).strip()
        if not ffmpeg_binary:
            raise BridgeConfigError("media.ffmpeg_binary must be non-empty")
        media = MediaConfig(
            download_timeout_seconds=_parse_non_negative_float_or_default(
                media_cfg.get("download_timeout_seconds"),
                default=DEFAULT_MEDIA_DOWNLOAD_TIMEOUT_SECONDS,
                key="media.download_timeout_seconds",
            ),
            ffmpeg_binary=ffmpeg_binary,
            max_download_retries=_parse_positive_int_or_default(
                media_cfg.get("max_download_retries"),
                default=3,
                key="media.max_download_retries",
            ),
        )

        log_raw = cfg.get("log")
        log_cfg = log_raw if isinstance(log_raw, dict) else {}
        log_path_value = log_cfg.get("path", DEFAULT_LOG_FILE)
        if not isinstance(log_path_value, str) or not log_path_value.strip():
            raise BridgeConfigError("log.path must be a string path")
        log_level = str(log_cfg.get("level", "INFO")).strip().upper()
        if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise BridgeConfigError(
                "log.level must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL"
            )
        log = LogConfig(
            path=_resolve_path(root, log_path_value),
            level=log_level,
            max_bytes=_parse_positive_int_or_default(
                log_cfg.get("max_bytes"),
                default=DEFAULT_LOG_MAX_BYTES,
                key="log.max_bytes",
            ),
            backup_count=_parse_positive_int_or_default(
                log_cfg.get("backup_count"),
                default=DEFAULT_LOG_BACKUP_COUNT,
                key="log.backup_count",
            ),
        )

        return cls(
            root=root,
            storage_root=storage_root,
            close_grace_seconds=close_grace_seconds,
            special_mention_delay_seconds=special_mention_delay_seconds,
            dedupe_cache_size=dedupe_cache_size,
            transcript_scan_depth=transcript_scan_depth,
            transcript_scan_max_entries=transcript_scan_max_entries,
            media=media,
            log=log,
            raw=cfg,
        )


def load_bridge_config(root: Path, *, path: Optional[Path] = None) -> BridgeConfig:
    """Load `ticket-bridge.yml` from `root`; a missing file yields defaults."""

    config_path = path or (root / CONFIG_FILENAME)
    raw: Any = {}
    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise BridgeConfigError(f"failed to read {config_path}: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise BridgeConfigError(f"{config_path} must contain a mapping")
    return BridgeConfig.from_raw(root=root, raw=raw)


def _resolve_path(root: Path, value: str) -> Path:
    path = Path(value.strip()).expanduser()
    if not path.is_absolute():
        path = root / path
    return path


def _parse_positive_int_or_default(value: Any, *, default: int, key: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise BridgeConfigError(f"{key} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise BridgeConfigError(f"{key} must be an integer") from exc
    if parsed <= 0:
        return default
    return parsed


def _parse_non_negative_float_or_default(
    value: Any, *, default: float, key: str
) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise BridgeConfigError(f"{key} must be a number")
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise BridgeConfigError(f"{key} must be a number") from exc
    if parsed < 0:
        raise BridgeConfigError(f"{key} must be >= 0")
    return parsed


__all__ = [
    "BridgeConfig",
    "BridgeConfigError",
    "CONFIG_FILENAME",
    "MediaConfig",
    "load_bridge_config",
]
