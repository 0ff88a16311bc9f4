"""Contact feedback ("vouches") posted to a configured community channel.

Agents request a vouch with `!vouch` in the ticket channel; the contact
answers with a message starting with `Vouch!`. Vouches bypass the ticket
channel entirely.
"""

from __future__ import annotations

import logging
import re
import tempfile
from pathlib import Path
from typing import Optional

from ...core.identity import UserCard
from ...core.logging_utils import log_event
from ...core.settings import SettingsStore, render_template
from ...core.time_utils import now_iso
from ..chat.media import MediaKind, classify_media, safe_file_name
from ..chat.models import Attachment, OutgoingMessage
from ..chat.transport import ContactTransport, TicketTransport

VOUCH_PREFIX_RE = re.compile(r"^\s*vouch!\s*", re.IGNORECASE)
VOUCH_EMPTY_MESSAGE = (
    "Please include some feedback with your vouch. Just send another message "
    "starting with 'Vouch!' followed by your feedback."
)
VOUCH_FAILED_MESSAGE = (
    "Sorry, there was an error posting your vouch. Please try again later or "
    "contact support."
)
_ATTACHABLE_KINDS = (MediaKind.IMAGE, MediaKind.GIF, MediaKind.VIDEO)


def parse_vouch(text: Optional[str]) -> Optional[str]:
    """Return the feedback following a `Vouch!` prefix, or None without one."""

    if not text:
        return None
    match = VOUCH_PREFIX_RE.match(text)
    if match is None:
        return None
    return text[match.end():].strip()


def render_vouch(card: UserCard, feedback: str, *, posted_at: str) -> dict:
    return {
        "title": f"New Vouch from {card.name}",
        "description": feedback,
        "fields": [{"name": "Posted", "value": posted_at, "inline": True}],
    }


class VouchDesk:
    def __init__(
        self,
        *,
        contact: ContactTransport,
        ticket: TicketTransport,
        settings: SettingsStore,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._contact = contact
        self._ticket = ticket
        self._settings = settings
        self._logger = logger or logging.getLogger(__name__)

    @property
    def available(self) -> bool:
        settings = self._settings.current
        return settings.vouches_enabled and settings.vouch_channel_id is not None

    def accepts(self, text: Optional[str]) -> bool:
        return self.available and parse_vouch(text) is not None

    async def request(self, card: UserCard) -> bool:
        """Send the vouch instructions to the contact."""

        text = render_template(
            self._settings.current.vouch_message, name=card.name, phone=card.phone
        )
        try:
            await self._contact.send_message(card.phone, OutgoingMessage(text=text))
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "vouch.request_failed",
                phone=card.phone,
                exc=exc,
            )
            return False
        log_event(self._logger, logging.INFO, "vouch.requested", phone=card.phone)
        return True

    async def submit(
        self, card: UserCard, text: str, attachments: tuple[Attachment, ...] = ()
    ) -> bool:
        """Post a contact's vouch and acknowledge it; returns False on failure."""

        feedback = parse_vouch(text) or ""
        if not feedback:
            await self._reply(card.phone, VOUCH_EMPTY_MESSAGE)
            return False
        channel_id = self._settings.current.vouch_channel_id
        if channel_id is None:
            return False

        embed = render_vouch(card, feedback, posted_at=now_iso())
        attachment = next(
            (
                item
                for item in attachments
                if classify_media(item.mime_type, item.file_name) in _ATTACHABLE_KINDS
            ),
            None,
        )
        try:
            if attachment is None:
                await self._ticket.send_to_channel(channel_id, OutgoingMessage(embed=embed))
            else:
                await self._post_with_media(channel_id, embed, attachment)
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "vouch.post_failed",
                phone=card.phone,
                channel_id=channel_id,
                exc=exc,
            )
            await self._reply(card.phone, VOUCH_FAILED_MESSAGE)
            return False

        log_event(
            self._logger,
            logging.INFO,
            "vouch.posted",
            phone=card.phone,
            channel_id=channel_id,
            with_media=attachment is not None,
        )
        await self._reply(card.phone, self._settings.current.vouch_success_message)
        return True

    async def _post_with_media(
        self, channel_id: str, embed: dict, attachment: Attachment
    ) -> None:
        kind = classify_media(attachment.mime_type, attachment.file_name)
        try:
            data = await self._contact.download_media(attachment)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "vouch.media_download_failed",
                attachment_id=attachment.attachment_id,
                exc=exc,
            )
            await self._ticket.send_to_channel(channel_id, OutgoingMessage(embed=embed))
            return
        file_name = safe_file_name(attachment.file_name, kind, attachment.mime_type)
        with tempfile.TemporaryDirectory(prefix="ticket-bridge-vouch-") as tmp:
            path = Path(tmp) / file_name
            path.write_bytes(data)
            await self._ticket.send_to_channel(
                channel_id,
                OutgoingMessage(
                    embed=embed,
                    file_path=path,
                    file_name=file_name,
                    mime_type=attachment.mime_type,
                    media_kind=kind,
                ),
            )

    async def _reply(self, phone: str, text: str) -> None:
        try:
            await self._contact.send_message(phone, OutgoingMessage(text=text))
        except Exception as exc:
            log_event(
                self._logger, logging.WARNING, "vouch.reply_failed", phone=phone, exc=exc
            )


__all__ = [
    "VOUCH_EMPTY_MESSAGE",
    "VOUCH_FAILED_MESSAGE",
    "VouchDesk",
    "parse_vouch",
    "render_vouch",
]
