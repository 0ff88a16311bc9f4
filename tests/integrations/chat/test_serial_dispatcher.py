from __future__ import annotations

import asyncio

import pytest

from ticket_bridge.integrations.chat.dispatcher import (
    DispatchContext,
    RecentKeys,
    SerialDispatcher,
    channel_queue_key,
    conversation_queue_key,
)
from ticket_bridge.integrations.chat.models import Direction


def _context(queue_key: str, event_id: str, *, dedupe: bool = False) -> DispatchContext:
    return DispatchContext(
        queue_key=queue_key,
        direction=Direction.CONTACT_TO_TICKET,
        event_id=event_id,
        dedupe_key=("contact", event_id) if dedupe else None,
    )


def _redelivered() -> DispatchContext:
    return _context("conversation:1", "m1", dedupe=True)


@pytest.mark.anyio
async def test_same_key_handlers_run_in_enqueue_order() -> None:
    dispatcher = SerialDispatcher()
    log: list[str] = []

    async def _handler(event: str, context: DispatchContext) -> None:
        log.append(f"start:{event}")
        # The first event yields longest; a racing second event would start here.
        await asyncio.sleep(0.01 if event == "a" else 0)
        log.append(f"end:{event}")

    for event in ("a", "b", "c"):
        result = await dispatcher.dispatch(event, _context("conversation:1", event), _handler)
        assert result.status == "queued"
    await dispatcher.wait_idle()

    assert log == ["start:a", "end:a", "start:b", "end:b", "start:c", "end:c"]
    assert dispatcher.pending("conversation:1") == 0


@pytest.mark.anyio
async def test_different_keys_run_concurrently() -> None:
    dispatcher = SerialDispatcher()
    release = asyncio.Event()
    log: list[str] = []

    async def _slow(event: str, context: DispatchContext) -> None:
        log.append("slow:start")
        await release.wait()
        log.append("slow:end")

    async def _fast(event: str, context: DispatchContext) -> None:
        log.append("fast")
        release.set()

    await dispatcher.dispatch("x", _context("conversation:1", "x"), _slow)
    await dispatcher.dispatch("y", _context("conversation:2", "y"), _fast)
    await dispatcher.wait_idle()

    assert log == ["slow:start", "fast", "slow:end"]


@pytest.mark.anyio
async def test_failing_handler_does_not_block_queue() -> None:
    dispatcher = SerialDispatcher()
    seen: list[str] = []

    async def _handler(event: str, context: DispatchContext) -> None:
        if event == "bad":
            raise RuntimeError("boom")
        seen.append(event)

    await dispatcher.dispatch("bad", _context("channel:1", "bad"), _handler)
    await dispatcher.dispatch("good", _context("channel:1", "good"), _handler)
    await dispatcher.wait_idle()

    assert seen == ["good"]


def test_recent_keys_is_bounded() -> None:
    keys = RecentKeys(limit=2)

    assert keys.add("a") is True
    assert keys.add("a") is False
    assert keys.add("b") is True
    assert keys.add("c") is True
    assert "a" not in keys
    assert len(keys) == 2


@pytest.mark.anyio
async def test_redelivery_is_rejected_while_queued_and_after_success() -> None:
    dispatcher = SerialDispatcher()
    release = asyncio.Event()
    handled: list[str] = []

    async def _handler(event: str, context: DispatchContext) -> None:
        await release.wait()
        handled.append(event)

    first = await dispatcher.dispatch("m1", _redelivered(), _handler)
    racing = await dispatcher.dispatch("m1", _redelivered(), _handler)
    release.set()
    await dispatcher.wait_idle()
    late = await dispatcher.dispatch("m1", _redelivered(), _handler)

    assert (first.status, racing.status, late.status) == ("queued", "duplicate", "duplicate")
    assert handled == ["m1"]


@pytest.mark.anyio
async def test_failed_handler_releases_its_dedupe_key() -> None:
    dispatcher = SerialDispatcher()
    attempts: list[str] = []

    async def _handler(event: str, context: DispatchContext) -> None:
        attempts.append(event)
        if len(attempts) == 1:
            raise RuntimeError("ticket platform unavailable")

    await dispatcher.dispatch("m1", _redelivered(), _handler)
    await dispatcher.wait_idle()
    retried = await dispatcher.dispatch("m1", _redelivered(), _handler)
    await dispatcher.wait_idle()

    assert retried.status == "queued"
    assert attempts == ["m1", "m1"]


@pytest.mark.anyio
async def test_close_cancels_pending_work_and_rejects_new_events() -> None:
    dispatcher = SerialDispatcher()
    started = asyncio.Event()
    finished: list[str] = []

    async def _handler(event: str, context: DispatchContext) -> None:
        started.set()
        await asyncio.sleep(10)
        finished.append(event)

    await dispatcher.dispatch("a", _context("conversation:1", "a"), _handler)
    await dispatcher.dispatch("b", _context("conversation:1", "b"), _handler)
    await started.wait()

    await dispatcher.close()
    await dispatcher.wait_idle()
    rejected = await dispatcher.dispatch("c", _context("conversation:1", "c"), _handler)

    assert finished == []
    assert dispatcher.pending("conversation:1") == 0
    assert rejected.status == "rejected"


def test_queue_keys() -> None:
    assert conversation_queue_key("111") == "conversation:111"
    assert channel_queue_key("chan-1") == "channel:chan-1"
