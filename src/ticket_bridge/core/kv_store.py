"""Durable JSON documents backing the per-instance stores."""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from .exceptions import PersistenceError
from .logging_utils import log_event
from .utils import atomic_write

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """Whole-document persistence used by stores that keep state in memory."""

    def load(self) -> Optional[dict[str, Any]]: ...

    def save(self, data: dict[str, Any]) -> None: ...

    def delete(self) -> None: ...


class JsonFileStore:
    """A single JSON object on disk, rewritten atomically on every save."""

    def __init__(self, path: Path, *, durable: bool = False) -> None:
        self._path = path
        self._durable = durable

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[dict[str, Any]]:
        if not self._path.exists():
            return None
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            log_event(
                logger, logging.WARNING, "store.read_failed", path=self._path, exc=exc
            )
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            log_event(
                logger, logging.WARNING, "store.parse_failed", path=self._path, exc=exc
            )
            return None
        if not isinstance(data, dict):
            log_event(
                logger,
                logging.WARNING,
                "store.invalid_document",
                path=self._path,
                kind=type(data).__name__,
            )
            return None
        return data

    def save(self, data: dict[str, Any]) -> None:
        try:
            atomic_write(
                self._path,
                json.dumps(data, indent=2, ensure_ascii=False) + "\n",
                durable=self._durable,
            )
        except OSError as exc:
            raise PersistenceError(
                f"failed to write {self._path}: {exc}", path=str(self._path)
            ) from exc

    def delete(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            raise PersistenceError(
                f"failed to delete {self._path}: {exc}", path=str(self._path)
            ) from exc


def save_or_log(store: KeyValueStore, data: dict[str, Any], *, event: str) -> bool:
    """Persist `data`; a failure is logged and the caller keeps its memory state."""

    try:
        store.save(data)
    except PersistenceError as exc:
        log_event(logger, logging.ERROR, event, path=exc.path, exc=exc)
        return False
    return True


def remove_tree(path: Path) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        raise PersistenceError(f"failed to remove {path}: {exc}", path=str(path)) from exc


__all__ = ["JsonFileStore", "KeyValueStore", "remove_tree", "save_or_log"]
