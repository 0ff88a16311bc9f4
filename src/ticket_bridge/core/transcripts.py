from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from .exceptions import PersistenceError
from .kv_store import KeyValueStore, remove_tree, save_or_log
from .logging_utils import log_event
from .media_store import phone_segment, relocate_path, sanitize_name
from .time_utils import stamp_utc
from .utils import atomic_write

logger = logging.getLogger(__name__)

TRANSCRIPTS_INDEX_FILENAME = "transcripts.json"
MASTER_FILENAME = "transcript-master.md"
SNAPSHOT_PREFIX = "transcript-"
INSTANCE_TAG_PREFIX = "Instance: "
PHONE_TAG_PREFIX = "WhatsApp: "
HEADER_SCAN_LINES = 8

_TICKET_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ticket_segment(value: str) -> str:
    cleaned = _TICKET_SEGMENT_RE.sub("-", (value or "").strip()).strip("-._")
    return cleaned[:80] or "ticket"


@dataclass(frozen=True)
class TranscriptEntry:
    author: str
    text: str
    timestamp: datetime = field(default_factory=_utc_now)
    attachments: tuple[str, ...] = ()

    def render(self) -> str:
        stamp = self.timestamp.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        lines = [f"[{stamp}] **{self.author}**: {self.text}".rstrip()]
        for attachment in self.attachments:
            lines.append(f"  - attachment: {attachment}")
        return "\n".join(lines)


@dataclass(frozen=True)
class TranscriptRecord:
    phone: str
    display_name: str
    master_path: Path
    instance_id: str
    snapshot_paths: tuple[Path, ...] = ()

    def to_raw(self) -> dict[str, Any]:
        return {
            "phone": self.phone,
            "displayName": self.display_name,
            "masterPath": str(self.master_path),
            "snapshotPaths": [str(path) for path in self.snapshot_paths],
            "instanceId": self.instance_id,
        }

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> Optional["TranscriptRecord"]:
        phone = raw.get("phone")
        master = raw.get("masterPath")
        instance_id = raw.get("instanceId")
        if not isinstance(phone, str) or not isinstance(master, str):
            return None
        if not isinstance(instance_id, str) or not instance_id:
            return None
        snapshots_raw = raw.get("snapshotPaths")
        snapshots = (
            tuple(Path(item) for item in snapshots_raw if isinstance(item, str))
            if isinstance(snapshots_raw, list)
            else ()
        )
        display_name = raw.get("displayName")
        return cls(
            phone=phone,
            display_name=display_name if isinstance(display_name, str) else phone,
            master_path=Path(master),
            instance_id=instance_id,
            snapshot_paths=snapshots,
        )


class TranscriptStore:
    """Master transcript per contact plus immutable per-close snapshots.

    Every file carries an `Instance:` header line; lookups refuse records or
    files tagged with another instance.
    """

    def __init__(
        self,
        root: Path,
        records_store: KeyValueStore,
        *,
        instance_id: str,
        scan_depth: int = 3,
        scan_max_entries: int = 2000,
        now_fn: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._root = root
        self._records_store = records_store
        self._instance_id = instance_id
        self._scan_depth = scan_depth
        self._scan_max_entries = scan_max_entries
        self._now = now_fn
        self._records: dict[str, TranscriptRecord] = {}
        raw = records_store.load() or {}
        for phone, value in raw.items():
            if not isinstance(value, dict):
                continue
            record = TranscriptRecord.from_raw(value)
            if record is None:
                continue
            if record.instance_id != instance_id:
                log_event(
                    logger,
                    logging.WARNING,
                    "transcripts.record_foreign",
                    phone=phone,
                    record_instance=record.instance_id,
                    instance_id=instance_id,
                )
                continue
            self._records[record.phone] = record

    @property
    def instance_id(self) -> str:
        return self._instance_id

    def user_dir(self, phone: str, display_name: str) -> Path:
        return self._root / phone_segment(phone) / sanitize_name(display_name)

    def master_path(self, phone: str, display_name: str) -> Path:
        return self.user_dir(phone, display_name) / MASTER_FILENAME

    def record(self, phone: str) -> Optional[TranscriptRecord]:
        return self._records.get(phone)

    def append(self, phone: str, display_name: str, entry: TranscriptEntry) -> Path:
        record = self._records.get(phone)
        master = self.master_path(phone, display_name)
        if record is not None and record.master_path != master and record.master_path.exists():
            # Rename cascade has not caught up yet; keep writing where history lives.
            master = record.master_path
        body = ""
        if master.exists():
            body = _strip_header(master.read_text(encoding="utf-8"))
        body = f"{body.rstrip()}\n{entry.render()}\n" if body.strip() else f"{entry.render()}\n"
        _write(master, self._header(phone, display_name) + body)
        snapshots = record.snapshot_paths if record is not None else ()
        self._records[phone] = TranscriptRecord(
            phone=phone,
            display_name=display_name,
            master_path=master,
            instance_id=self._instance_id,
            snapshot_paths=snapshots,
        )
        self._persist()
        return master

    def snapshot(
        self, phone: str, display_name: str, ticket_name: str
    ) -> Optional[Path]:
        """Write an immutable copy of the master transcript for a closing ticket."""

        record = self._records.get(phone)
        master = record.master_path if record is not None else self.master_path(
            phone, display_name
        )
        if not master.exists():
            log_event(
                logger, logging.INFO, "transcripts.snapshot_skipped", phone=phone
            )
            return None
        body = _strip_header(master.read_text(encoding="utf-8"))
        stamp = stamp_utc(self._now())
        base = f"{SNAPSHOT_PREFIX}{_ticket_segment(ticket_name)}-{stamp}"
        target = master.parent / f"{base}.md"
        counter = 1
        while target.exists():
            target = master.parent / f"{base}-{counter}.md"
            counter += 1
        header = self._header(phone, display_name) + f"Ticket: {ticket_name}\n\n"
        _write(target, header + body)
        previous = record.snapshot_paths if record is not None else ()
        self._records[phone] = TranscriptRecord(
            phone=phone,
            display_name=display_name,
            master_path=master,
            instance_id=self._instance_id,
            snapshot_paths=previous + (target,),
        )
        self._persist()
        log_event(
            logger, logging.INFO, "transcripts.snapshot_written", phone=phone, path=target
        )
        return target

    def find_latest(self, phone: str, display_name: str) -> Optional[Path]:
        record = self._records.get(phone)
        if record is not None and record.instance_id == self._instance_id:
            if self._is_own(record.master_path):
                return record.master_path
            for snapshot in reversed(record.snapshot_paths):
                if self._is_own(snapshot):
                    return snapshot

        direct = self.master_path(phone, display_name)
        if self._is_own(direct):
            return direct
        return self._scan(phone, display_name)

    def relocate(self, phone: str, new_name: str, old_dir: Path, new_dir: Path) -> int:
        record = self._records.get(phone)
        if record is None:
            return 0
        changed = 0
        master = relocate_path(record.master_path, old_dir, new_dir)
        if master is not None:
            changed += 1
        snapshots: list[Path] = []
        for path in record.snapshot_paths:
            moved = relocate_path(path, old_dir, new_dir)
            if moved is not None:
                changed += 1
            snapshots.append(moved or path)
        if master is not None and master.exists():
            self._retag(master, phone, new_name)
        self._records[phone] = replace(
            record,
            display_name=new_name,
            master_path=master or record.master_path,
            snapshot_paths=tuple(snapshots),
        )
        self._persist()
        return changed

    def rename(self, phone: str, new_name: str) -> bool:
        """Record a display-name change and re-tag the master header."""

        record = self._records.get(phone)
        if record is None or record.display_name == new_name:
            return False
        if record.master_path.exists():
            self._retag(record.master_path, phone, new_name)
        self._records[phone] = replace(record, display_name=new_name)
        self._persist()
        return True

    def purge(self) -> None:
        phones = list(self._records)
        self._records.clear()
        self._records_store.delete()
        for phone in phones:
            remove_tree(self._root / phone_segment(phone))

    def _header(self, phone: str, display_name: str) -> str:
        return (
            f"# Transcript: {display_name}\n"
            f"{INSTANCE_TAG_PREFIX}{self._instance_id}\n"
            f"{PHONE_TAG_PREFIX}{phone}\n\n"
        )

    def _retag(self, master: Path, phone: str, display_name: str) -> None:
        body = _strip_header(master.read_text(encoding="utf-8"))
        _write(master, self._header(phone, display_name) + body)

    def _is_own(self, path: Path) -> bool:
        if not path.is_file():
            return False
        tag = read_instance_tag(path)
        if tag != self._instance_id:
            log_event(
                logger,
                logging.WARNING,
                "transcripts.tag_rejected",
                path=path,
                tag=tag,
                instance_id=self._instance_id,
            )
            return False
        return True

    def _scan(self, phone: str, display_name: str) -> Optional[Path]:
        phone_token = phone_segment(phone).lstrip("+")
        name_token = sanitize_name(display_name)
        best: Optional[tuple[tuple[bool, float], Path]] = None
        for path in self._walk():
            if not path.name.startswith(SNAPSHOT_PREFIX) or path.suffix != ".md":
                continue
            location = str(path.relative_to(self._root))
            # Same sanitized name can belong to another contact; phone must match.
            if phone_token not in location:
                continue
            if not self._is_own(path):
                continue
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            rank = (name_token in location, mtime)
            if best is None or rank > best[0]:
                best = (rank, path)
        if best is not None:
            log_event(
                logger, logging.INFO, "transcripts.scan_found", phone=phone, path=best[1]
            )
            return best[1]
        return None

    def _walk(self) -> Iterator[Path]:
        if not self._root.is_dir():
            return
        visited = 0
        stack: list[tuple[Path, int]] = [(self._root, 0)]
        while stack:
            current, depth = stack.pop()
            try:
                entries = list(os.scandir(current))
            except OSError:
                continue
            for entry in entries:
                visited += 1
                if visited > self._scan_max_entries:
                    return
                path = Path(entry.path)
                if entry.is_dir(follow_symlinks=False):
                    if depth + 1 < self._scan_depth:
                        stack.append((path, depth + 1))
                elif entry.is_file(follow_symlinks=False):
                    yield path

    def _persist(self) -> None:
        save_or_log(
            self._records_store,
            {phone: record.to_raw() for phone, record in self._records.items()},
            event="transcripts.persist_failed",
        )


def read_instance_tag(path: Path) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for _ in range(HEADER_SCAN_LINES):
                line = handle.readline()
                if not line:
                    break
                if line.startswith(INSTANCE_TAG_PREFIX):
                    return line[len(INSTANCE_TAG_PREFIX) :].strip()
    except (OSError, UnicodeDecodeError) as exc:
        log_event(logger, logging.WARNING, "transcripts.read_failed", path=path, exc=exc)
    return None


def _write(path: Path, content: str) -> None:
    try:
        atomic_write(path, content)
    except OSError as exc:
        raise PersistenceError(f"failed to write {path}: {exc}", path=str(path)) from exc


def _strip_header(text: str) -> str:
    lines = text.splitlines()
    if not lines or not lines[0].startswith("# Transcript:"):
        return text
    index = 1
    while index < len(lines) and (
        lines[index].startswith(INSTANCE_TAG_PREFIX)
        or lines[index].startswith(PHONE_TAG_PREFIX)
        or lines[index].startswith("Ticket: ")
    ):
        index += 1
    while index < len(lines) and not lines[index].strip():
        index += 1
    remainder = "\n".join(lines[index:])
    return remainder + "\n" if remainder else ""


__all__ = [
    "MASTER_FILENAME",
    "TRANSCRIPTS_INDEX_FILENAME",
    "TranscriptEntry",
    "TranscriptRecord",
    "TranscriptStore",
    "read_instance_tag",
]
