"""Explicit connection-state channel between a contact transport and its instance."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from .time_utils import now_iso


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    QR_REQUIRED = "qr_required"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILED = "auth_failed"


@dataclass(frozen=True)
class ConnectionChange:
    state: ConnectionState
    qr_payload: Optional[str] = None
    reason: Optional[str] = None
    timestamp: str = ""

    def __post_init__(self) -> None:
        if not self.timestamp:
            object.__setattr__(self, "timestamp", now_iso())


class ConnectionStateChannel:
    """Single-consumer queue of connection changes; `close()` ends iteration."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[ConnectionChange]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, change: ConnectionChange) -> None:
        if self._closed:
            return
        self._queue.put_nowait(change)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[ConnectionChange]:
        while True:
            change = await self._queue.get()
            if change is None:
                return
            yield change


__all__ = ["ConnectionChange", "ConnectionState", "ConnectionStateChannel"]
