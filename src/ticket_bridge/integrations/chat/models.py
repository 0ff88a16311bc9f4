"""Normalized message models exchanged between transports and the router."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from .media import MediaKind


class Direction(str, Enum):
    CONTACT_TO_TICKET = "contact_to_ticket"
    TICKET_TO_CONTACT = "ticket_to_contact"


@dataclass(frozen=True)
class Attachment:
    """Attachment metadata; `ref` is whatever the transport needs to fetch it."""

    attachment_id: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None
    url: Optional[str] = None
    ref: Any = None
    is_voice: bool = False
    is_animated: bool = False
    caption: Optional[str] = None


@dataclass(frozen=True)
class ContactMessage:
    """A message received from the contact platform."""

    message_id: str
    sender: str
    text: Optional[str] = None
    push_name: Optional[str] = None
    from_me: bool = False
    is_group: bool = False
    is_broadcast: bool = False
    is_system: bool = False
    attachments: tuple[Attachment, ...] = ()


@dataclass(frozen=True)
class TicketMessage:
    """A message posted in a ticket channel by an agent."""

    message_id: str
    channel_id: str
    author_id: str
    author_name: str
    text: Optional[str] = None
    is_bot: bool = False
    attachments: tuple[Attachment, ...] = ()
    channel_mentions: Mapping[str, str] = field(default_factory=dict)
    user_mentions: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OutgoingMessage:
    """Payload handed to either transport."""

    text: Optional[str] = None
    file_path: Optional[Path] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    media_kind: Optional[MediaKind] = None
    embed: Optional[Mapping[str, Any]] = None


__all__ = [
    "Attachment",
    "ContactMessage",
    "Direction",
    "OutgoingMessage",
    "TicketMessage",
]
