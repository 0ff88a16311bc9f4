from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from ticket_bridge.core.kv_store import JsonFileStore
from ticket_bridge.core.media_store import MediaStore
from ticket_bridge.core.transcripts import (
    MASTER_FILENAME,
    TranscriptEntry,
    TranscriptStore,
    read_instance_tag,
)

FIXED_NOW = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)


def _store(tmp_path: Path, instance_id: str = "inst-a") -> TranscriptStore:
    return TranscriptStore(
        tmp_path,
        JsonFileStore(tmp_path / "transcripts.json"),
        instance_id=instance_id,
        now_fn=lambda: FIXED_NOW,
    )


def _entry(author: str, text: str) -> TranscriptEntry:
    return TranscriptEntry(author=author, text=text, timestamp=FIXED_NOW)


def test_append_keeps_header_and_history(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.append("111", "John", _entry("John", "hello"))
    master = store.append("111", "John", _entry("Agent (agent)", "hi there"))

    assert master == tmp_path / "111" / "john" / MASTER_FILENAME
    lines = master.read_text(encoding="utf-8").splitlines()
    assert lines[:3] == ["# Transcript: John", "Instance: inst-a", "WhatsApp: 111"]
    assert lines[-2:] == [
        "[2026-03-04 05:06:07] **John**: hello",
        "[2026-03-04 05:06:07] **Agent (agent)**: hi there",
    ]
    assert read_instance_tag(master) == "inst-a"


def test_entry_render_lists_attachments() -> None:
    entry = TranscriptEntry(
        author="John",
        text="see file",
        timestamp=FIXED_NOW,
        attachments=("media/image-abc.jpg",),
    )
    assert entry.render().splitlines() == [
        "[2026-03-04 05:06:07] **John**: see file",
        "  - attachment: media/image-abc.jpg",
    ]


def test_snapshot_writes_unique_immutable_copies(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.append("111", "John", _entry("John", "hello"))

    first = store.snapshot("111", "John", "📋-john")
    second = store.snapshot("111", "John", "📋-john")

    assert first is not None and second is not None
    assert first != second
    assert first.name == "transcript-john-20260304T050607Z.md"
    text = first.read_text(encoding="utf-8")
    assert "Ticket: 📋-john" in text
    assert "**John**: hello" in text
    assert store.record("111").snapshot_paths == (first, second)


def test_snapshot_without_history_is_skipped(tmp_path: Path) -> None:
    assert _store(tmp_path).snapshot("111", "John", "📋-john") is None


def test_find_latest_prefers_recorded_master(tmp_path: Path) -> None:
    store = _store(tmp_path)
    master = store.append("111", "John", _entry("John", "hello"))

    assert store.find_latest("111", "John") == master
    assert _store(tmp_path).find_latest("111", "Someone Else") == master


def test_find_latest_rejects_files_tagged_for_another_instance(tmp_path: Path) -> None:
    other = _store(tmp_path, instance_id="inst-b")
    other.append("111", "John", _entry("John", "secret"))
    other.snapshot("111", "John", "📋-john")

    mine = _store(tmp_path, instance_id="inst-a")

    assert mine.record("111") is None
    assert mine.find_latest("111", "John") is None


def test_scan_requires_matching_phone(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.append("222", "John", _entry("John", "other john"))
    foreign_snapshot = store.snapshot("222", "John", "📋-john")
    assert foreign_snapshot is not None
    (tmp_path / "transcripts.json").unlink()

    fresh = _store(tmp_path)
    assert fresh.find_latest("111", "John") is None
    found = fresh.find_latest("222", "John")
    assert found is not None
    assert found.parent == tmp_path / "222" / "john"


def test_scan_finds_snapshot_under_previous_name(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.append("111", "Johnny", _entry("Johnny", "hello"))
    snapshot = store.snapshot("111", "Johnny", "📋-johnny")
    (tmp_path / "111" / "johnny" / MASTER_FILENAME).unlink()
    (tmp_path / "transcripts.json").unlink()

    assert _store(tmp_path).find_latest("111", "John") == snapshot


def test_records_tagged_for_another_instance_are_ignored(tmp_path: Path) -> None:
    (tmp_path / "transcripts.json").write_text(
        json.dumps(
            {
                "111": {
                    "phone": "111",
                    "displayName": "John",
                    "masterPath": str(tmp_path / "111" / "john" / MASTER_FILENAME),
                    "snapshotPaths": [],
                    "instanceId": "inst-b",
                },
                "222": {"phone": "222", "masterPath": "x.md"},
            }
        ),
        encoding="utf-8",
    )

    store = _store(tmp_path)

    assert store.record("111") is None
    assert store.record("222") is None


def test_media_rename_relocates_transcripts(tmp_path: Path) -> None:
    transcripts = _store(tmp_path)
    media = MediaStore(
        tmp_path, JsonFileStore(tmp_path / "file_index.json"), back_references=[transcripts]
    )
    transcripts.append("111", "John", _entry("John", "hello"))
    snapshot = transcripts.snapshot("111", "John", "📋-john")
    assert snapshot is not None

    media.rename_user("111", "John", "Jonathan")

    record = transcripts.record("111")
    new_dir = tmp_path / "111" / "jonathan"
    assert record.display_name == "Jonathan"
    assert record.master_path == new_dir / MASTER_FILENAME
    assert record.snapshot_paths == (new_dir / snapshot.name,)
    assert record.master_path.read_text(encoding="utf-8").startswith(
        "# Transcript: Jonathan\n"
    )
    assert transcripts.find_latest("111", "Jonathan") == record.master_path

    master = transcripts.append("111", "Jonathan", _entry("Jonathan", "after rename"))
    body = master.read_text(encoding="utf-8")
    assert "hello" in body and "after rename" in body


def test_rename_round_trip_preserves_transcript_counts(tmp_path: Path) -> None:
    transcripts = _store(tmp_path)
    media = MediaStore(
        tmp_path, JsonFileStore(tmp_path / "file_index.json"), back_references=[transcripts]
    )
    transcripts.append("111", "A", _entry("A", "first"))
    first = transcripts.snapshot("111", "A", "📋-a")
    transcripts.append("111", "A", _entry("Dana (agent)", "second"))
    second = transcripts.snapshot("111", "A", "📋-a")
    assert first is not None and second is not None and first != second
    before = transcripts.record("111").master_path.read_text(encoding="utf-8")

    media.rename_user("111", "A", "B")
    media.rename_user("111", "B", "A")

    record = transcripts.record("111")
    user_dir = tmp_path / "111" / "a"
    assert not (tmp_path / "111" / "b").exists()
    assert record.display_name == "A"
    assert record.master_path == user_dir / MASTER_FILENAME
    expected = sorted([user_dir / first.name, user_dir / second.name])
    assert sorted(record.snapshot_paths) == expected
    assert len(list(user_dir.glob("*.md"))) == 3
    after = record.master_path.read_text(encoding="utf-8")
    assert after.count("**A**: first") == before.count("**A**: first") == 1
    assert after.count("**Dana (agent)**: second") == 1
