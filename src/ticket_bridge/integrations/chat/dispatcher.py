"""Per-conversation FIFO dispatcher with redelivery suppression.

Events are queued in lanes. Contact traffic and agent replies for a bound
conversation share the lane `conversation:<phone>`, so everything touching
one ticket channel runs as a single chain; a channel with no bound contact
gets its own `channel:<channel_id>` lane. A handler starts only after the
previous handler in its lane has settled, while separate lanes run
concurrently.

Each event may carry a dedupe key. A key is rejected while its event is
queued or running and after it has been handled; a handler that raises
releases the key so a redelivery is processed again.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Hashable, Optional

from ...core.logging_utils import log_event
from .models import Direction

DEFAULT_RECENT_KEYS_LIMIT = 1000


@dataclass(frozen=True)
class DispatchContext:
    """Queueing metadata derived from a routed event."""

    queue_key: str
    direction: Direction
    event_id: str
    phone: Optional[str] = None
    channel_id: Optional[str] = None
    dedupe_key: Optional[Hashable] = None


@dataclass(frozen=True)
class DispatchResult:
    """Dispatch attempt result."""

    status: str
    context: Optional[DispatchContext] = None
    reason: Optional[str] = None


DispatchHandler = Callable[[Any, DispatchContext], Awaitable[None]]


class RecentKeys:
    """Bounded insertion-ordered set used for redelivery checks."""

    def __init__(self, limit: int = DEFAULT_RECENT_KEYS_LIMIT) -> None:
        self._limit = max(limit, 1)
        self._keys: "OrderedDict[Hashable, None]" = OrderedDict()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: Hashable) -> bool:
        """Record `key`; return False when it was already present."""

        if key in self._keys:
            self._keys.move_to_end(key)
            return False
        self._keys[key] = None
        while len(self._keys) > self._limit:
            self._keys.popitem(last=False)
        return True

    def clear(self) -> None:
        self._keys.clear()


@dataclass
class _Lane:
    jobs: Deque[tuple[Any, DispatchContext, DispatchHandler]] = field(
        default_factory=deque
    )
    worker: Optional[asyncio.Task[None]] = None
    current: Optional[DispatchContext] = None


class SerialDispatcher:
    def __init__(
        self,
        *,
        dedupe_limit: int = DEFAULT_RECENT_KEYS_LIMIT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._lanes: dict[str, _Lane] = {}
        self._handled = RecentKeys(dedupe_limit)
        self._inflight: set[Hashable] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    async def dispatch(
        self, event: Any, context: DispatchContext, handler: DispatchHandler
    ) -> DispatchResult:
        if self._closed:
            return DispatchResult(status="rejected", context=context, reason="closed")
        key = context.dedupe_key
        if key is not None and (key in self._inflight or key in self._handled):
            log_event(
                self._logger,
                logging.INFO,
                "bridge.dispatch.duplicate",
                queue_key=context.queue_key,
                event_id=context.event_id,
            )
            return DispatchResult(status="duplicate", context=context)
        if key is not None:
            self._inflight.add(key)

        lane = self._lanes.get(context.queue_key)
        if lane is None:
            lane = self._lanes[context.queue_key] = _Lane()
        lane.jobs.append((event, context, handler))
        self._idle.clear()
        if lane.worker is None:
            lane.worker = asyncio.create_task(self._run_lane(context.queue_key, lane))
        log_event(
            self._logger,
            logging.DEBUG,
            "bridge.dispatch.queued",
            queue_key=context.queue_key,
            event_id=context.event_id,
            pending=len(lane.jobs),
        )
        return DispatchResult(status="queued", context=context)

    async def wait_idle(self) -> None:
        """Wait until every lane has drained."""

        await self._idle.wait()

    def pending(self, queue_key: str) -> int:
        lane = self._lanes.get(queue_key)
        return len(lane.jobs) if lane else 0

    async def close(self) -> None:
        """Refuse new events and cancel every queued or running handler."""

        self._closed = True
        workers = [lane.worker for lane in self._lanes.values() if lane.worker]
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    async def _run_lane(self, queue_key: str, lane: _Lane) -> None:
        try:
            while lane.jobs:
                event, context, handler = lane.jobs.popleft()
                lane.current = context
                handled = await self._run_handler(event, context, handler)
                lane.current = None
                if context.dedupe_key is not None:
                    self._inflight.discard(context.dedupe_key)
                    if handled:
                        self._handled.add(context.dedupe_key)
        finally:
            abandoned = [context for _, context, _ in lane.jobs]
            if lane.current is not None:
                abandoned.append(lane.current)
            for context in abandoned:
                if context.dedupe_key is not None:
                    self._inflight.discard(context.dedupe_key)
            lane.jobs.clear()
            if self._lanes.get(queue_key) is lane:
                del self._lanes[queue_key]
            if not self._lanes:
                self._idle.set()

    async def _run_handler(
        self, event: Any, context: DispatchContext, handler: DispatchHandler
    ) -> bool:
        try:
            await handler(event, context)
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "bridge.dispatch.handler_failed",
                queue_key=context.queue_key,
                event_id=context.event_id,
                direction=context.direction.value,
                exc=exc,
            )
            return False
        return True


def conversation_queue_key(phone: str) -> str:
    return f"conversation:{phone}"


def channel_queue_key(channel_id: str) -> str:
    return f"channel:{channel_id}"


__all__ = [
    "DispatchContext",
    "DispatchHandler",
    "DispatchResult",
    "RecentKeys",
    "SerialDispatcher",
    "channel_queue_key",
    "conversation_queue_key",
]
