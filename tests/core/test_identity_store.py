from __future__ import annotations

import itertools
import json
from pathlib import Path

import pytest

from ticket_bridge.core.identity import (
    UNKNOWN_NUMBER,
    IdentityStore,
    RenameCascade,
    RenameContext,
    normalize_phone,
)
from ticket_bridge.core.kv_store import JsonFileStore


def _counter_clock():
    ticks = itertools.count(1)
    return lambda: f"2026-01-01T00:00:{next(ticks):02d}Z"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("+1 (555) 123-4567", "+15551234567"),
        ("15551234567@s.whatsapp.net", "15551234567"),
        ("  4915112345678 ", "4915112345678"),
        ("", UNKNOWN_NUMBER),
        (None, UNKNOWN_NUMBER),
        ("no digits here", UNKNOWN_NUMBER),
        (UNKNOWN_NUMBER, UNKNOWN_NUMBER),
    ],
)
def test_normalize_phone(raw, expected) -> None:
    assert normalize_phone(raw) == expected


def test_normalize_phone_is_idempotent() -> None:
    once = normalize_phone("+1 (555) 123-4567@c.us")
    assert normalize_phone(once) == once


def test_get_or_create_uses_push_name_then_touches_last_contact(tmp_path: Path) -> None:
    store = IdentityStore(
        JsonFileStore(tmp_path / "user_cards.json"), now_fn=_counter_clock()
    )

    created = store.get_or_create("+1 555 123 4567", "Alice")
    again = store.get_or_create("+15551234567", "Someone Else")

    assert created.name == "Alice"
    assert again.name == "Alice"
    assert again.created_at == created.created_at
    assert again.last_contact > created.last_contact
    assert store.count() == 1

    reloaded = IdentityStore(JsonFileStore(tmp_path / "user_cards.json"))
    assert reloaded.get("+15551234567").name == "Alice"


def test_get_or_create_without_name_falls_back_to_phone(tmp_path: Path) -> None:
    store = IdentityStore(JsonFileStore(tmp_path / "user_cards.json"))
    assert store.get_or_create("4915112345678").name == "4915112345678"


def test_legacy_cards_are_migrated_on_load(tmp_path: Path) -> None:
    path = tmp_path / "user_cards.json"
    path.write_text(
        json.dumps(
            {
                "user_4915112345678": {
                    "phoneNumber": "4915112345678@s.whatsapp.net",
                    "username": "Bob",
                    "lastSeen": "2025-05-01T10:00:00Z",
                },
                "broken": {"phone": "123"},
            }
        ),
        encoding="utf-8",
    )

    store = IdentityStore(JsonFileStore(path))

    card = store.get("4915112345678")
    assert card is not None
    assert card.name == "Bob"
    assert card.last_contact == "2025-05-01T10:00:00Z"
    assert store.count() == 1
    persisted = json.loads(path.read_text(encoding="utf-8"))
    assert list(persisted) == ["4915112345678"]
    assert persisted["4915112345678"]["name"] == "Bob"


@pytest.mark.anyio
async def test_rename_reports_partial_cascade_failure(tmp_path: Path) -> None:
    calls: list[str] = []

    async def _ok_first(context: RenameContext) -> None:
        calls.append(f"first:{context.old_name}->{context.new_name}")

    async def _boom(context: RenameContext) -> None:
        calls.append("boom")
        raise OSError("disk full")

    async def _ok_last(context: RenameContext) -> None:
        calls.append("last")

    cascade = RenameCascade()
    cascade.add_step("first", _ok_first)
    cascade.add_step("boom", _boom)
    cascade.add_step("last", _ok_last)
    store = IdentityStore(JsonFileStore(tmp_path / "user_cards.json"), cascade=cascade)
    store.get_or_create("15551234567", "John")

    result = await store.update("15551234567", name="Jonathan")

    assert calls == ["first:John->Jonathan", "boom", "last"]
    assert result.renamed is True
    assert result.partial is True
    assert result.completed_steps == ("first", "last")
    assert result.failed_steps == ("boom",)
    assert isinstance(result.failures[0].__cause__, OSError)
    assert store.get("15551234567").name == "Jonathan"


@pytest.mark.anyio
async def test_notes_update_does_not_run_cascade(tmp_path: Path) -> None:
    ran: list[str] = []

    async def _step(context: RenameContext) -> None:
        ran.append(context.new_name)

    cascade = RenameCascade()
    cascade.add_step("step", _step)
    store = IdentityStore(JsonFileStore(tmp_path / "user_cards.json"), cascade=cascade)
    store.get_or_create("15551234567", "John")

    result = await store.update("15551234567", notes="VIP")
    unchanged = await store.update("15551234567", name="John")

    assert ran == []
    assert result.renamed is False
    assert result.card.notes == "VIP"
    assert unchanged.renamed is False


def test_cascade_rejects_duplicate_step_names() -> None:
    async def _noop(context: RenameContext) -> None:
        return None

    cascade = RenameCascade()
    cascade.add_step("media_directory", _noop)
    with pytest.raises(ValueError):
        cascade.add_step("media_directory", _noop)


def test_find_by_partial_name_orders_by_recent_contact(tmp_path: Path) -> None:
    store = IdentityStore(
        JsonFileStore(tmp_path / "user_cards.json"), now_fn=_counter_clock()
    )
    store.get_or_create("111", "Jon Older")
    store.get_or_create("222", "Jonathan")
    store.get_or_create("333", "Maria")
    store.get_or_create("111")

    matches = store.find_by_partial_name("jon")

    assert [card.phone for card in matches] == ["111", "222"]
    assert [card.phone for card in store.find_by_partial_name("", limit=2)] == [
        "111",
        "333",
    ]
    assert [card.phone for card in store.find_by_name("  JONATHAN ")] == ["222"]
