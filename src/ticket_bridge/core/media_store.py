"""Content-addressed media files stored per contact and display name.

Layout under the instance storage root::

    <phone>/<sanitized-name>/media/<kind>-<hash16><ext>

`file_index.json` maps each content hash to the stored path of every phone
that sent those bytes, so deduplication never crosses contact directories.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

from .exceptions import PersistenceError
from .kv_store import KeyValueStore, remove_tree, save_or_log
from .logging_utils import log_event
from .utils import atomic_write

logger = logging.getLogger(__name__)

FILE_INDEX_FILENAME = "file_index.json"
MEDIA_DIRNAME = "media"
UNKNOWN_USER = "unknown-user"

DEFAULT_EXTENSIONS = {
    "image": ".jpg",
    "gif": ".mp4",
    "video": ".mp4",
    "voice_note": ".ogg",
    "audio": ".mp3",
    "document": ".bin",
}

_WHITESPACE_RE = re.compile(r"\s+")
_NAME_STRIP_RE = re.compile(r"[^a-z0-9-]")
_PHONE_SEGMENT_RE = re.compile(r"[^0-9A-Za-z+-]")
_SAFE_EXT_RE = re.compile(r"^\.[a-z0-9]{1,8}$")


def sanitize_name(name: Optional[str]) -> str:
    """Directory-safe form of a display name."""

    lowered = (name or "").strip().lower()
    hyphenated = _WHITESPACE_RE.sub("-", lowered)
    cleaned = _NAME_STRIP_RE.sub("", hyphenated)
    return cleaned or UNKNOWN_USER


def phone_segment(phone: str) -> str:
    cleaned = _PHONE_SEGMENT_RE.sub("", phone or "")
    return cleaned or "unknown-number"


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class MediaRecord:
    content_hash: str
    stored_path: Path
    media_type: str
    deduplicated: bool


@dataclass(frozen=True)
class RenameMove:
    phone: str
    old_dir: Path
    new_dir: Path
    moved: bool
    merged: bool = False
    rewritten_entries: int = 0


class PathBackReference(Protocol):
    """A store that remembers paths inside user directories."""

    def relocate(self, phone: str, new_name: str, old_dir: Path, new_dir: Path) -> int: ...


class MediaStore:
    def __init__(
        self,
        root: Path,
        index_store: KeyValueStore,
        *,
        back_references: Iterable[PathBackReference] = (),
    ) -> None:
        self._root = root
        self._index_store = index_store
        self._back_references = list(back_references)
        self._index: dict[str, dict[str, str]] = {}
        raw = index_store.load() or {}
        for digest, owners in raw.items():
            if not isinstance(owners, dict):
                continue
            entries = {
                str(phone): str(path)
                for phone, path in owners.items()
                if isinstance(path, str) and path
            }
            if entries:
                self._index[str(digest)] = entries

    @property
    def root(self) -> Path:
        return self._root

    def add_back_reference(self, reference: PathBackReference) -> None:
        self._back_references.append(reference)

    def content_hash(self, data: bytes) -> str:
        return content_hash(data)

    def user_dir(self, phone: str, display_name: str) -> Path:
        return self._root / phone_segment(phone) / sanitize_name(display_name)

    def media_dir(self, phone: str, display_name: str) -> Path:
        return self.user_dir(phone, display_name) / MEDIA_DIRNAME

    def lookup(self, phone: str, digest: str) -> Optional[Path]:
        stored = self._index.get(digest, {}).get(phone)
        return Path(stored) if stored else None

    def save(
        self,
        data: bytes,
        phone: str,
        display_name: str,
        media_type: str,
        *,
        file_name: Optional[str] = None,
    ) -> MediaRecord:
        digest = content_hash(data)
        existing = self.lookup(phone, digest)
        if existing is not None:
            if existing.exists():
                log_event(
                    logger,
                    logging.INFO,
                    "media.deduplicated",
                    phone=phone,
                    hash=digest[:16],
                    path=existing,
                )
                return MediaRecord(
                    content_hash=digest,
                    stored_path=existing,
                    media_type=media_type,
                    deduplicated=True,
                )
            log_event(
                logger,
                logging.WARNING,
                "media.index_stale",
                phone=phone,
                hash=digest[:16],
                path=existing,
            )

        target = self.media_dir(phone, display_name) / (
            f"{media_type}-{digest[:16]}{_extension_for(media_type, file_name)}"
        )
        deduplicated = target.exists()
        if not deduplicated:
            try:
                atomic_write(target, data)
            except OSError as exc:
                raise PersistenceError(
                    f"failed to write media {target}: {exc}", path=str(target)
                ) from exc
        self._index.setdefault(digest, {})[phone] = str(target)
        self._persist()
        log_event(
            logger,
            logging.INFO,
            "media.saved",
            phone=phone,
            hash=digest[:16],
            path=target,
            media_type=media_type,
            size=len(data),
        )
        return MediaRecord(
            content_hash=digest,
            stored_path=target,
            media_type=media_type,
            deduplicated=deduplicated,
        )

    def rename_user(self, phone: str, old_name: str, new_name: str) -> RenameMove:
        """Move a contact's directory to its new display name.

        Idempotent: a missing old directory just ensures the new one exists.
        """

        old_dir = self.user_dir(phone, old_name)
        new_dir = self.user_dir(phone, new_name)
        if old_dir == new_dir or not old_dir.exists():
            try:
                new_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise PersistenceError(
                    f"failed to create {new_dir}: {exc}", path=str(new_dir)
                ) from exc
            return RenameMove(phone=phone, old_dir=old_dir, new_dir=new_dir, moved=False)

        merged = new_dir.exists()
        try:
            if merged:
                _merge_tree(old_dir, new_dir)
            else:
                os.replace(old_dir, new_dir)
        except OSError as exc:
            raise PersistenceError(
                f"failed to move {old_dir} to {new_dir}: {exc}", path=str(old_dir)
            ) from exc

        rewritten = 0
        for owners in self._index.values():
            stored = owners.get(phone)
            if stored is None:
                continue
            relocated = relocate_path(Path(stored), old_dir, new_dir)
            if relocated is not None:
                owners[phone] = str(relocated)
                rewritten += 1
        if rewritten:
            self._persist()

        for reference in self._back_references:
            reference.relocate(phone, new_name, old_dir, new_dir)

        log_event(
            logger,
            logging.INFO,
            "media.user_renamed",
            phone=phone,
            old_dir=old_dir,
            new_dir=new_dir,
            merged=merged,
            rewritten=rewritten,
        )
        return RenameMove(
            phone=phone,
            old_dir=old_dir,
            new_dir=new_dir,
            moved=True,
            merged=merged,
            rewritten_entries=rewritten,
        )

    def media_files(self, phone: str, display_name: str) -> list[Path]:
        media_dir = self.media_dir(phone, display_name)
        if not media_dir.is_dir():
            return []
        return sorted(path for path in media_dir.iterdir() if path.is_file())

    def index_snapshot(self) -> dict[str, dict[str, str]]:
        return {digest: dict(owners) for digest, owners in self._index.items()}

    def purge(self) -> None:
        phones = {phone for owners in self._index.values() for phone in owners}
        self._index.clear()
        self._index_store.delete()
        for phone in phones:
            remove_tree(self._root / phone_segment(phone))

    def _persist(self) -> None:
        payload: dict[str, Any] = self.index_snapshot()
        save_or_log(self._index_store, payload, event="media.index_persist_failed")


def relocate_path(path: Path, old_dir: Path, new_dir: Path) -> Optional[Path]:
    """Return `path` re-rooted from `old_dir` to `new_dir`, or None if outside it."""

    try:
        relative = path.relative_to(old_dir)
    except ValueError:
        return None
    return new_dir / relative


def _merge_tree(source: Path, target: Path) -> None:
    for path in sorted(source.rglob("*")):
        if not path.is_file():
            continue
        destination = target / path.relative_to(source)
        if destination.exists():
            if destination.read_bytes() == path.read_bytes():
                continue
            destination = _free_name(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(path), str(destination))
    shutil.rmtree(source)


def _free_name(path: Path) -> Path:
    counter = 1
    while True:
        candidate = path.with_name(f"{path.stem}-merged-{counter}{path.suffix}")
        if not candidate.exists():
            return candidate
        counter += 1


def _extension_for(media_type: str, file_name: Optional[str]) -> str:
    if file_name:
        suffix = Path(file_name).suffix.lower()
        if _SAFE_EXT_RE.match(suffix):
            return suffix
    return DEFAULT_EXTENSIONS.get(media_type, ".bin")


__all__ = [
    "FILE_INDEX_FILENAME",
    "MediaRecord",
    "MediaStore",
    "PathBackReference",
    "RenameMove",
    "UNKNOWN_USER",
    "content_hash",
    "phone_segment",
    "relocate_path",
    "sanitize_name",
]
