"""Bidirectional message routing between a contact and its ticket channel.

Every routed event is queued on a `SerialDispatcher`. Contact messages and
agent replies for a bound conversation share one lane, so text and
attachments of consecutive events never interleave in either direction.
Each entry point owns its error boundary: failures are logged and surfaced
as a visible marker on the initiating side, never raised to the transport.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from ...core.channel_map import ChannelMap
from ...core.exceptions import PersistenceError
from ...core.identity import UNKNOWN_NUMBER, IdentityStore, UserCard, normalize_phone
from ...core.lifecycle import TicketLifecycle, TicketState
from ...core.logging_utils import log_event
from ...core.media_store import MediaStore
from ...core.settings import SettingsStore, render_template
from ...core.transcripts import TranscriptEntry, TranscriptStore
from ..chat.dispatcher import (
    DispatchContext,
    DispatchResult,
    RecentKeys,
    SerialDispatcher,
    channel_queue_key,
    conversation_queue_key,
)
from ..chat.media import MediaKind, classify_media, safe_file_name
from ..chat.mentions import translate_mentions
from ..chat.models import (
    Attachment,
    ContactMessage,
    Direction,
    OutgoingMessage,
    TicketMessage,
)
from ..chat.transport import ContactTransport, TicketTransport
from .media_pipeline import MediaPipeline
from .vouches import VouchDesk

GROUP_SUFFIXES = ("@g.us",)
BROADCAST_SUFFIXES = ("@broadcast", "@newsletter")
UNLINKED_CHANNEL_NOTICE = (
    "This channel is not linked to an active contact. Your message was not delivered."
)
CONTACT_DELIVERY_FAILED_NOTICE = "Message could not be delivered to the contact."
TICKET_OPEN_FAILED_MESSAGE = (
    "Sorry, we could not reach our support team right now. Please try again shortly."
)
CLOSE_COMMAND = "!close"
VOUCH_COMMAND = "!vouch"
VOUCH_REQUESTED_NOTICE = "Vouch instructions sent."
VOUCH_DISABLED_NOTICE = "Vouch system is disabled."


class MessageRouter:
    def __init__(
        self,
        *,
        identity: IdentityStore,
        channel_map: ChannelMap,
        lifecycle: TicketLifecycle,
        media: MediaStore,
        transcripts: TranscriptStore,
        settings: SettingsStore,
        contact: ContactTransport,
        ticket: TicketTransport,
        pipeline: MediaPipeline,
        dispatcher: Optional[SerialDispatcher] = None,
        self_address: Optional[str] = None,
        dedupe_cache_size: int = 1000,
        special_mention_delay_seconds: float = 1.0,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._identity = identity
        self._channel_map = channel_map
        self._lifecycle = lifecycle
        self._media = media
        self._transcripts = transcripts
        self._settings = settings
        self._contact = contact
        self._ticket = ticket
        self._pipeline = pipeline
        self._logger = logger or logging.getLogger(__name__)
        self._dispatcher = dispatcher or SerialDispatcher(
            dedupe_limit=dedupe_cache_size, logger=self._logger
        )
        self._vouches = VouchDesk(
            contact=contact, ticket=ticket, settings=settings, logger=self._logger
        )
        self._self_phone = normalize_phone(self_address) if self_address else None
        self._seen_attachments = RecentKeys(dedupe_cache_size)
        self._special_delay = special_mention_delay_seconds
        self._sleep = sleep_fn

    async def wait_idle(self) -> None:
        await self._dispatcher.wait_idle()

    async def close(self) -> None:
        await self._dispatcher.close()

    async def route_inbound(
        self, direction: Direction, msg: Union[ContactMessage, TicketMessage]
    ) -> DispatchResult:
        try:
            if direction is Direction.CONTACT_TO_TICKET:
                if not isinstance(msg, ContactMessage):
                    raise TypeError("contact_to_ticket expects a ContactMessage")
                return await self._route_contact(msg)
            if not isinstance(msg, TicketMessage):
                raise TypeError("ticket_to_contact expects a TicketMessage")
            return await self._route_ticket(msg)
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "bridge.route.failed",
                direction=direction.value,
                message_id=getattr(msg, "message_id", None),
                exc=exc,
            )
            return DispatchResult(status="failed", reason=str(exc))

    async def _route_contact(self, msg: ContactMessage) -> DispatchResult:
        reason = self._ignore_reason(msg)
        if reason is not None:
            log_event(
                self._logger,
                logging.DEBUG,
                "bridge.inbound.ignored",
                message_id=msg.message_id,
                reason=reason,
            )
            return DispatchResult(status="ignored", reason=reason)
        phone = normalize_phone(msg.sender)
        context = DispatchContext(
            queue_key=conversation_queue_key(phone),
            direction=Direction.CONTACT_TO_TICKET,
            event_id=msg.message_id,
            phone=phone,
            dedupe_key=("contact", msg.message_id),
        )
        return await self._dispatcher.dispatch(msg, context, self._handle_contact_message)

    def _ignore_reason(self, msg: ContactMessage) -> Optional[str]:
        sender = (msg.sender or "").strip().lower()
        if msg.from_me:
            return "self"
        if msg.is_group or sender.endswith(GROUP_SUFFIXES):
            return "group"
        if msg.is_broadcast or sender.endswith(BROADCAST_SUFFIXES):
            return "broadcast"
        if msg.is_system:
            return "system"
        phone = normalize_phone(msg.sender)
        if phone == UNKNOWN_NUMBER:
            return "unknown_sender"
        if self._self_phone is not None and phone == self._self_phone:
            return "self"
        return None

    async def _route_ticket(self, msg: TicketMessage) -> DispatchResult:
        if msg.is_bot:
            return DispatchResult(status="ignored", reason="bot")
        phone = self._channel_map.phone_for(msg.channel_id)
        context = DispatchContext(
            queue_key=(
                conversation_queue_key(phone)
                if phone is not None
                else channel_queue_key(msg.channel_id)
            ),
            direction=Direction.TICKET_TO_CONTACT,
            event_id=msg.message_id,
            phone=phone,
            channel_id=msg.channel_id,
            dedupe_key=("ticket", msg.message_id),
        )
        return await self._dispatcher.dispatch(msg, context, self._handle_ticket_message)

    async def _handle_contact_message(
        self, msg: ContactMessage, context: DispatchContext
    ) -> None:
        phone = context.phone or normalize_phone(msg.sender)
        first_contact = self._identity.get(phone) is None
        card = self._identity.get_or_create(phone, msg.push_name)
        settings = self._settings.current

        if self._vouches.accepts(msg.text):
            await self._vouches.submit(card, msg.text or "", msg.attachments)
            return

        channel_id = self._channel_map.lookup(phone)
        if channel_id is None:
            template = settings.welcome_message if first_contact else settings.reopen_message
            await self._send_contact_text(
                phone, render_template(template, name=card.name, phone=phone)
            )
            try:
                ticket = await self._lifecycle.open_ticket(phone, card.name)
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "bridge.inbound.open_failed",
                    phone=phone,
                    message_id=msg.message_id,
                    exc=exc,
                )
                await self._send_contact_text(phone, TICKET_OPEN_FAILED_MESSAGE)
                raise
            channel_id = ticket.channel_id

        if msg.text and msg.text.strip():
            await self._post_ticket_text(channel_id, f"**{card.name}:** {msg.text}")

        stored: list[str] = []
        for attachment in msg.attachments:
            if not self._seen_attachments.add((msg.message_id, attachment.attachment_id)):
                continue
            reference = await self._forward_contact_attachment(
                card, channel_id, attachment
            )
            if reference is not None:
                stored.append(reference)

        if settings.transcripts_enabled and (msg.text or stored):
            self._append_transcript(
                card,
                TranscriptEntry(author=card.name, text=msg.text or "", attachments=tuple(stored)),
            )

    async def _forward_contact_attachment(
        self, card: UserCard, channel_id: str, attachment: Attachment
    ) -> Optional[str]:
        kind = classify_media(
            attachment.mime_type,
            attachment.file_name,
            is_voice=attachment.is_voice,
            is_animated=attachment.is_animated,
        )
        try:
            data = await self._contact.download_media(attachment)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "bridge.inbound.media_download_failed",
                phone=card.phone,
                attachment_id=attachment.attachment_id,
                exc=exc,
            )
            await self._post_ticket_text(
                channel_id, f"**{card.name}:** [{kind.value} could not be downloaded]"
            )
            return None

        file_name = safe_file_name(attachment.file_name, kind, attachment.mime_type)
        caption = f"**{card.name}:** {attachment.caption}" if attachment.caption else None
        stored_path: Optional[Path] = None
        if self._settings.current.save_media:
            try:
                record = self._media.save(
                    data, card.phone, card.name, kind.value, file_name=file_name
                )
                stored_path = record.stored_path
            except PersistenceError as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "bridge.inbound.media_store_failed",
                    phone=card.phone,
                    attachment_id=attachment.attachment_id,
                    exc=exc,
                )

        if stored_path is not None:
            delivered = await self._post_ticket_file(
                channel_id, stored_path, file_name, attachment.mime_type, kind, caption
            )
        else:
            with tempfile.TemporaryDirectory(prefix="ticket-bridge-inbound-") as tmp:
                path = Path(tmp) / file_name
                path.write_bytes(data)
                delivered = await self._post_ticket_file(
                    channel_id, path, file_name, attachment.mime_type, kind, caption
                )
        if not delivered:
            await self._post_ticket_text(
                channel_id, f"**{card.name}:** [{kind.value} could not be forwarded]"
            )
        if stored_path is None:
            return file_name
        user_dir = self._media.user_dir(card.phone, card.name)
        try:
            return stored_path.relative_to(user_dir).as_posix()
        except ValueError:
            return str(stored_path)

    async def _handle_ticket_message(
        self, msg: TicketMessage, context: DispatchContext
    ) -> None:
        channel_id = msg.channel_id
        phone = self._channel_map.phone_for(channel_id)
        if phone is None:
            log_event(
                self._logger,
                logging.INFO,
                "bridge.outbound.unlinked",
                channel_id=channel_id,
                message_id=msg.message_id,
                state=self._lifecycle.state_of(channel_id).value,
            )
            if self._lifecycle.state_of(channel_id) is not TicketState.CLOSING:
                await self._post_ticket_text(channel_id, UNLINKED_CHANNEL_NOTICE)
            return

        command = (msg.text or "").strip().lower()
        if command == CLOSE_COMMAND:
            await self._lifecycle.close_ticket(channel_id)
            return
        if command == VOUCH_COMMAND:
            await self._request_vouch(phone, channel_id)
            return

        settings = self._settings.current
        translated = translate_mentions(
            msg.text or "",
            channel_names=msg.channel_mentions,
            user_names=msg.user_mentions,
            special_channels=settings.special_channels,
        )
        body = translated.text.strip()
        if body:
            try:
                await self._contact.send_message(
                    phone, OutgoingMessage(text=f"*{msg.author_name}*: {body}")
                )
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "bridge.outbound.send_failed",
                    phone=phone,
                    channel_id=channel_id,
                    message_id=msg.message_id,
                    exc=exc,
                )
                await self._post_ticket_text(channel_id, CONTACT_DELIVERY_FAILED_NOTICE)

        for announcement in translated.announcements:
            await self._sleep(self._special_delay)
            await self._send_contact_text(phone, announcement)

        sent: list[str] = []
        for attachment in msg.attachments:
            outcome = await self._pipeline.deliver(phone, attachment)
            label = attachment.file_name or attachment.attachment_id
            if outcome.delivered:
                sent.append(label)
                continue
            await self._post_ticket_text(
                channel_id,
                f"Attachment `{label}` could not be delivered to the contact.",
            )

        if settings.transcripts_enabled and (body or sent):
            card = self._identity.get(phone) or self._identity.get_or_create(phone)
            self._append_transcript(
                card,
                TranscriptEntry(
                    author=f"{msg.author_name} (agent)", text=body, attachments=tuple(sent)
                ),
            )

    async def _request_vouch(self, phone: str, channel_id: str) -> None:
        if not self._settings.current.vouches_enabled:
            await self._post_ticket_text(channel_id, VOUCH_DISABLED_NOTICE)
            return
        card = self._identity.get(phone) or self._identity.get_or_create(phone)
        if await self._vouches.request(card):
            await self._post_ticket_text(channel_id, VOUCH_REQUESTED_NOTICE)
        else:
            await self._post_ticket_text(channel_id, CONTACT_DELIVERY_FAILED_NOTICE)

    async def _send_contact_text(self, phone: str, text: str) -> bool:
        try:
            await self._contact.send_message(phone, OutgoingMessage(text=text))
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "bridge.contact.send_failed",
                phone=phone,
                exc=exc,
            )
            return False
        return True

    async def _post_ticket_text(self, channel_id: str, text: str) -> Optional[str]:
        try:
            return await self._ticket.send_to_channel(channel_id, OutgoingMessage(text=text))
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "bridge.ticket.send_failed",
                channel_id=channel_id,
                exc=exc,
            )
            return None

    async def _post_ticket_file(
        self,
        channel_id: str,
        path: Path,
        file_name: str,
        mime_type: Optional[str],
        kind: MediaKind,
        caption: Optional[str],
    ) -> bool:
        try:
            await self._ticket.send_to_channel(
                channel_id,
                OutgoingMessage(
                    text=caption,
                    file_path=path,
                    file_name=file_name,
                    mime_type=mime_type,
                    media_kind=kind,
                ),
            )
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "bridge.ticket.file_failed",
                channel_id=channel_id,
                file_name=file_name,
                exc=exc,
            )
            return False
        return True

    def _append_transcript(self, card: UserCard, entry: TranscriptEntry) -> None:
        try:
            self._transcripts.append(card.phone, card.name, entry)
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "bridge.transcript.append_failed",
                phone=card.phone,
                exc=exc,
            )


__all__ = ["MessageRouter"]
