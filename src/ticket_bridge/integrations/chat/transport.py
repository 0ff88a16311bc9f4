"""Transport contracts for the two bridged platforms (adapter layer).

Wire protocols live behind these protocols; the bridge only ever talks to a
`ContactTransport` (phone-addressed, e.g. WhatsApp) and a `TicketTransport`
(channel-addressed, e.g. a Discord guild).
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from ...core.connection import ConnectionStateChannel
from .models import Attachment, OutgoingMessage


@runtime_checkable
class ContactTransport(Protocol):
    """Contact-platform delivery contract."""

    async def connect(self, states: ConnectionStateChannel) -> None:
        """Start the session and publish connection changes to `states`."""

    async def disconnect(self, *, logout: bool = False) -> None:
        """Stop the session; `logout` also discards the stored credentials."""

    async def send_message(
        self, address: str, payload: OutgoingMessage
    ) -> Optional[str]:
        """Send text or media to a phone address and return the message id."""

    async def download_media(self, ref: Attachment) -> bytes:
        """Fetch the bytes of an inbound attachment."""


@runtime_checkable
class TicketTransport(Protocol):
    """Ticket-platform delivery and channel management contract."""

    async def send_to_channel(self, channel_id: str, payload: OutgoingMessage) -> str:
        """Post to a channel and return the new message id."""

    async def create_channel(self, category_id: str, name: str) -> str:
        """Create a text channel under `category_id` and return its id."""

    async def delete_channel(self, channel_id: str) -> None:
        """Delete a channel."""

    async def rename_channel(self, channel_id: str, name: str) -> None:
        """Rename a channel."""

    async def pin_message(self, channel_id: str, message_id: str) -> None:
        """Pin a message in a channel."""

    async def edit_message(
        self, channel_id: str, message_id: str, payload: OutgoingMessage
    ) -> None:
        """Replace the content of a previously-sent message."""


__all__ = ["ContactTransport", "TicketTransport"]
