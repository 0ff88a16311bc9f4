from __future__ import annotations

import logging
from pathlib import Path

import pytest

from ticket_bridge.core.exceptions import PersistenceError
from ticket_bridge.core.kv_store import JsonFileStore, save_or_log


def test_round_trip_and_delete(tmp_path: Path) -> None:
    store = JsonFileStore(tmp_path / "nested" / "doc.json")

    assert store.load() is None
    store.save({"a": 1, "name": "Zoë"})
    assert store.load() == {"a": 1, "name": "Zoë"}

    store.delete()
    store.delete()
    assert store.load() is None


@pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]"])
def test_unreadable_documents_load_as_none(
    tmp_path: Path, content: str, caplog: pytest.LogCaptureFixture
) -> None:
    path = tmp_path / "doc.json"
    path.write_text(content, encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        assert JsonFileStore(path).load() is None
    assert any("store." in record.getMessage() for record in caplog.records)


class _FailingStore:
    def load(self):
        return None

    def save(self, data):
        raise PersistenceError("disk full", path="/nowhere")

    def delete(self) -> None:
        return None


def test_save_or_log_reports_failure(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR):
        assert save_or_log(_FailingStore(), {"a": 1}, event="demo.persist_failed") is False
    assert any("demo.persist_failed" in record.getMessage() for record in caplog.records)
