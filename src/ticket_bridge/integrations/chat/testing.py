"""In-memory transports for exercising the bridge without either platform."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from ...core.connection import ConnectionChange, ConnectionState, ConnectionStateChannel
from ...core.exceptions import PermanentTransportError
from .models import Attachment, OutgoingMessage

FailurePredicate = Callable[[str, OutgoingMessage], bool]


@dataclass
class SentMessage:
    target: str
    payload: OutgoingMessage
    message_id: str


@dataclass
class FakeContactTransport:
    """Records sends; `media` maps attachment ids to downloadable bytes."""

    media: dict[str, bytes] = field(default_factory=dict)
    sent: list[SentMessage] = field(default_factory=list)
    fail_when: Optional[FailurePredicate] = None
    send_delay: Optional[Callable[[OutgoingMessage], Awaitable[None]]] = None
    download_delay: Optional[Callable[[Attachment], Awaitable[None]]] = None
    connected: bool = False
    logged_out: bool = False
    events: list[str] = field(default_factory=list)
    _counter: int = 0

    async def connect(self, states: ConnectionStateChannel) -> None:
        self.connected = True
        states.publish(ConnectionChange(ConnectionState.READY))

    async def disconnect(self, *, logout: bool = False) -> None:
        self.connected = False
        self.logged_out = logout

    async def send_message(
        self, address: str, payload: OutgoingMessage
    ) -> Optional[str]:
        self.events.append(f"start:{payload.text or payload.file_name}")
        if self.send_delay is not None:
            await self.send_delay(payload)
        if self.fail_when is not None and self.fail_when(address, payload):
            self.events.append(f"fail:{payload.text or payload.file_name}")
            raise PermanentTransportError("contact send rejected", platform="contact")
        self._counter += 1
        message_id = f"wa-{self._counter}"
        self.sent.append(SentMessage(target=address, payload=payload, message_id=message_id))
        self.events.append(f"end:{payload.text or payload.file_name}")
        return message_id

    async def download_media(self, ref: Attachment) -> bytes:
        if self.download_delay is not None:
            await self.download_delay(ref)
        data = self.media.get(ref.attachment_id)
        if data is None:
            raise PermanentTransportError(
                f"unknown media {ref.attachment_id}", platform="contact"
            )
        return data

    def texts(self) -> list[str]:
        return [item.payload.text or "" for item in self.sent if item.payload.file_path is None]


@dataclass
class FakeTicketTransport:
    """Records channel operations and message posts per channel."""

    sent: list[SentMessage] = field(default_factory=list)
    created: list[tuple[str, str, str]] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    renamed: list[tuple[str, str]] = field(default_factory=list)
    pinned: list[tuple[str, str]] = field(default_factory=list)
    edited: list[tuple[str, str, OutgoingMessage]] = field(default_factory=list)
    fail_create: bool = False
    fail_delete: bool = False
    fail_rename: bool = False
    fail_when: Optional[FailurePredicate] = None
    events: list[str] = field(default_factory=list)
    _counter: int = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    async def send_to_channel(self, channel_id: str, payload: OutgoingMessage) -> str:
        await asyncio.sleep(0)
        if self.fail_when is not None and self.fail_when(channel_id, payload):
            raise PermanentTransportError("ticket send rejected", platform="ticket")
        message_id = self._next_id("msg")
        self.sent.append(SentMessage(target=channel_id, payload=payload, message_id=message_id))
        self.events.append(f"send:{channel_id}")
        return message_id

    async def create_channel(self, category_id: str, name: str) -> str:
        if self.fail_create:
            raise PermanentTransportError("channel create rejected", platform="ticket")
        channel_id = self._next_id("chan")
        self.created.append((category_id, name, channel_id))
        self.events.append(f"create:{channel_id}")
        return channel_id

    async def delete_channel(self, channel_id: str) -> None:
        self.events.append(f"delete:{channel_id}")
        if self.fail_delete:
            raise PermanentTransportError("channel delete rejected", platform="ticket")
        self.deleted.append(channel_id)

    async def rename_channel(self, channel_id: str, name: str) -> None:
        if self.fail_rename:
            raise PermanentTransportError("channel rename rejected", platform="ticket")
        self.renamed.append((channel_id, name))

    async def pin_message(self, channel_id: str, message_id: str) -> None:
        self.pinned.append((channel_id, message_id))

    async def edit_message(
        self, channel_id: str, message_id: str, payload: OutgoingMessage
    ) -> None:
        self.edited.append((channel_id, message_id, payload))

    def texts(self, channel_id: Optional[str] = None) -> list[str]:
        return [
            item.payload.text or ""
            for item in self.sent
            if (channel_id is None or item.target == channel_id) and item.payload.text
        ]

    def files(self, channel_id: Optional[str] = None) -> list[SentMessage]:
        return [
            item
            for item in self.sent
            if (channel_id is None or item.target == channel_id)
            and item.payload.file_path is not None
        ]


class RecordingSleep:
    """Awaitable sleep stand-in that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


__all__ = [
    "FakeContactTransport",
    "FakeTicketTransport",
    "RecordingSleep",
    "SentMessage",
]
