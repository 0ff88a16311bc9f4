"""Ticket channel lifecycle: NONE -> OPEN -> CLOSING -> CLOSED."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from ..integrations.chat.models import OutgoingMessage
from ..integrations.chat.transport import ContactTransport, TicketTransport
from .channel_map import ChannelMap
from .exceptions import NotFoundError
from .identity import IdentityStore, UserCard, normalize_phone
from .kv_store import KeyValueStore, save_or_log
from .logging_utils import log_event
from .media_store import sanitize_name
from .settings import SettingsStore, render_template
from .time_utils import now_iso
from .transcripts import TranscriptStore

TICKETS_FILENAME = "tickets.json"
TICKET_CHANNEL_PREFIX = "📋-"
TICKET_CHANNEL_NAME_CHARS = 25
DEFAULT_CLOSE_GRACE_SECONDS = 5.0
CLOSED_HISTORY_LIMIT = 256


class TicketState(str, Enum):
    NONE = "none"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class Ticket:
    channel_id: str
    phone: str
    state: TicketState
    channel_name: str
    opened_at: str
    info_message_id: Optional[str] = None

    def to_raw(self) -> dict[str, Any]:
        return {
            "phone": self.phone,
            "state": self.state.value,
            "channelName": self.channel_name,
            "openedAt": self.opened_at,
            "infoMessageId": self.info_message_id,
        }


def ticket_channel_name(display_name: str) -> str:
    return f"{TICKET_CHANNEL_PREFIX}{sanitize_name(display_name)[:TICKET_CHANNEL_NAME_CHARS]}"


def render_ticket_info(card: UserCard, *, opened_at: str) -> dict[str, Any]:
    return {
        "title": "Ticket Information",
        "fields": [
            {"name": "Name", "value": card.name, "inline": True},
            {"name": "Phone", "value": card.phone, "inline": True},
            {"name": "Opened", "value": opened_at, "inline": False},
            {"name": "Notes", "value": card.notes or "No notes", "inline": False},
        ],
    }


def render_transcript_card(display_name: str, phone: str, *, closed_at: str) -> dict[str, Any]:
    return {
        "title": "Ticket Transcript",
        "fields": [
            {"name": "User", "value": display_name, "inline": True},
            {"name": "Phone", "value": phone, "inline": True},
            {"name": "Date", "value": closed_at, "inline": True},
        ],
    }


class TicketLifecycle:
    def __init__(
        self,
        *,
        category_id: str,
        ticket_transport: TicketTransport,
        contact_transport: ContactTransport,
        identity: IdentityStore,
        channel_map: ChannelMap,
        transcripts: TranscriptStore,
        settings: SettingsStore,
        store: KeyValueStore,
        close_grace_seconds: float = DEFAULT_CLOSE_GRACE_SECONDS,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now_fn: Callable[[], str] = now_iso,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._category_id = category_id
        self._ticket = ticket_transport
        self._contact = contact_transport
        self._identity = identity
        self._channel_map = channel_map
        self._transcripts = transcripts
        self._settings = settings
        self._store = store
        self._close_grace_seconds = close_grace_seconds
        self._sleep = sleep_fn
        self._now = now_fn
        self._logger = logger or logging.getLogger(__name__)
        self._tickets: dict[str, Ticket] = {}
        self._closed: "OrderedDict[str, Ticket]" = OrderedDict()
        self._deletions: dict[str, asyncio.Task[None]] = {}
        self._stopped = False
        self._load()

    def _load(self) -> None:
        raw = self._store.load() or {}
        for channel_id, value in raw.items():
            if not isinstance(value, dict):
                continue
            phone = value.get("phone")
            try:
                state = TicketState(value.get("state"))
            except ValueError:
                continue
            if not isinstance(phone, str) or state not in (
                TicketState.OPEN,
                TicketState.CLOSING,
            ):
                continue
            if state is TicketState.OPEN and self._channel_map.phone_for(channel_id) != phone:
                continue
            info_message_id = value.get("infoMessageId")
            self._tickets[channel_id] = Ticket(
                channel_id=channel_id,
                phone=phone,
                state=state,
                channel_name=str(value.get("channelName") or ""),
                opened_at=str(value.get("openedAt") or ""),
                info_message_id=info_message_id if isinstance(info_message_id, str) else None,
            )

    def _persist(self) -> None:
        if self._stopped:
            return
        save_or_log(
            self._store,
            {channel_id: ticket.to_raw() for channel_id, ticket in self._tickets.items()},
            event="ticket.persist_failed",
        )

    def _put(self, ticket: Ticket) -> Ticket:
        self._tickets[ticket.channel_id] = ticket
        self._persist()
        return ticket

    def get(self, channel_id: str) -> Optional[Ticket]:
        ticket = self._tickets.get(channel_id)
        if ticket is not None:
            return ticket
        phone = self._channel_map.phone_for(channel_id)
        if phone is None:
            return None
        card = self._identity.get(phone)
        return self._put(
            Ticket(
                channel_id=channel_id,
                phone=phone,
                state=TicketState.OPEN,
                channel_name=ticket_channel_name(card.name if card else phone),
                opened_at=self._now(),
            )
        )

    def state_of(self, channel_id: str) -> TicketState:
        ticket = self.get(channel_id) or self._closed.get(channel_id)
        return ticket.state if ticket is not None else TicketState.NONE

    def open_tickets(self) -> list[Ticket]:
        for channel_id in self._channel_map.mappings().values():
            self.get(channel_id)
        return [
            ticket for ticket in self._tickets.values() if ticket.state is TicketState.OPEN
        ]

    async def open_ticket(self, phone: str, display_name: Optional[str] = None) -> Ticket:
        """Create, bind and announce a ticket channel for `phone`.

        Returns the already-bound ticket when one exists. Channel creation
        failures propagate; later announcement steps are best-effort.
        """

        key = normalize_phone(phone)
        bound = self._channel_map.lookup(key)
        if bound is not None:
            existing = self.get(bound)
            if existing is not None and existing.state is TicketState.OPEN:
                return existing

        card = self._identity.get_or_create(key, display_name)
        name = ticket_channel_name(card.name)
        channel_id = await self._ticket.create_channel(self._category_id, name)
        self._channel_map.bind(key, channel_id)
        ticket = self._put(
            Ticket(
                channel_id=channel_id,
                phone=key,
                state=TicketState.OPEN,
                channel_name=name,
                opened_at=self._now(),
            )
        )
        log_event(
            self._logger,
            logging.INFO,
            "ticket.opened",
            phone=key,
            channel_id=channel_id,
            channel_name=name,
        )

        settings = self._settings.current
        intro = render_template(settings.ticket_intro_message, name=card.name, phone=key)
        await self._post_best_effort(channel_id, OutgoingMessage(text=intro), step="intro")

        previous = self._transcripts.find_latest(key, card.name)
        if previous is not None:
            await self._post_best_effort(
                channel_id,
                OutgoingMessage(
                    text="**Previous conversation transcript**",
                    file_path=previous,
                    file_name=previous.name,
                    mime_type="text/markdown",
                ),
                step="previous_transcript",
            )

        info_message_id = await self._post_ticket_info(ticket, card)
        if info_message_id is not None:
            ticket = self._put(replace(ticket, info_message_id=info_message_id))
        return ticket

    async def close_ticket(
        self, channel_id: str, *, notify_contact: Optional[bool] = None
    ) -> Ticket:
        """Unbind immediately, snapshot the transcript, schedule channel deletion."""

        phone = self._channel_map.unbind_channel(channel_id)
        ticket = self._tickets.get(channel_id)
        if ticket is None:
            if phone is None:
                raise NotFoundError(
                    f"no ticket for channel {channel_id}",
                    user_message="This channel is not linked to a ticket.",
                )
            card = self._identity.get(phone)
            ticket = Ticket(
                channel_id=channel_id,
                phone=phone,
                state=TicketState.OPEN,
                channel_name=ticket_channel_name(card.name if card else phone),
                opened_at=self._now(),
            )
        if ticket.state is not TicketState.OPEN:
            return ticket

        ticket = self._put(replace(ticket, state=TicketState.CLOSING))
        log_event(
            self._logger,
            logging.INFO,
            "ticket.closing",
            phone=ticket.phone,
            channel_id=channel_id,
        )

        settings = self._settings.current
        card = self._identity.get(ticket.phone)
        display_name = card.name if card is not None else ticket.phone

        await self._post_best_effort(
            channel_id,
            OutgoingMessage(
                text=(
                    "Closing ticket. This channel will be deleted in "
                    f"{self._close_grace_seconds:g} seconds."
                )
            ),
            step="closing_warning",
        )

        should_notify = (
            settings.send_closing_message if notify_contact is None else notify_contact
        )
        if should_notify:
            text = render_template(
                settings.closing_message, name=display_name, phone=ticket.phone
            )
            try:
                await self._contact.send_message(ticket.phone, OutgoingMessage(text=text))
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "ticket.closing_notice_failed",
                    phone=ticket.phone,
                    channel_id=channel_id,
                    exc=exc,
                )

        if settings.transcripts_enabled:
            snapshot: Optional[Path] = None
            try:
                snapshot = self._transcripts.snapshot(
                    ticket.phone, display_name, ticket.channel_name
                )
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "ticket.snapshot_failed",
                    phone=ticket.phone,
                    channel_id=channel_id,
                    exc=exc,
                )
            if snapshot is not None and settings.transcript_channel_id is not None:
                await self._post_best_effort(
                    settings.transcript_channel_id,
                    OutgoingMessage(
                        embed=render_transcript_card(
                            display_name, ticket.phone, closed_at=self._now()
                        ),
                        file_path=snapshot,
                        file_name=snapshot.name,
                        mime_type="text/markdown",
                    ),
                    step="transcript_channel",
                )

        self._schedule_deletion(channel_id)
        return ticket

    async def close_all(self) -> list[Ticket]:
        closed = []
        for ticket in self.open_tickets():
            closed.append(await self.close_ticket(ticket.channel_id, notify_contact=False))
        return closed

    async def resume_pending_deletions(self) -> int:
        """Reschedule deletion of channels left CLOSING by a previous process."""

        pending = [
            channel_id
            for channel_id, ticket in self._tickets.items()
            if ticket.state is TicketState.CLOSING and channel_id not in self._deletions
        ]
        for channel_id in pending:
            self._schedule_deletion(channel_id)
        return len(pending)

    async def wait_for_deletions(self) -> None:
        tasks = list(self._deletions.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def cancel_deletions(self) -> None:
        for task in self._deletions.values():
            task.cancel()

    async def stop(self) -> None:
        """Cancel pending deletions and stop writing `tickets.json`.

        CLOSING tickets stay on disk so the next lifecycle over the same
        storage root resumes their deletion.
        """

        self._stopped = True
        tasks = list(self._deletions.values())
        self.cancel_deletions()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._deletions.clear()

    def _schedule_deletion(self, channel_id: str) -> None:
        task = asyncio.create_task(self._delete_after_grace(channel_id))
        self._deletions[channel_id] = task

    async def _delete_after_grace(self, channel_id: str) -> None:
        try:
            await self._sleep(self._close_grace_seconds)
            try:
                await self._ticket.delete_channel(channel_id)
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "ticket.delete_failed",
                    channel_id=channel_id,
                    orphaned=True,
                    exc=exc,
                )
            ticket = self._tickets.pop(channel_id, None)
            if ticket is not None:
                self._closed[channel_id] = replace(ticket, state=TicketState.CLOSED)
                while len(self._closed) > CLOSED_HISTORY_LIMIT:
                    self._closed.popitem(last=False)
                self._persist()
            log_event(self._logger, logging.INFO, "ticket.closed", channel_id=channel_id)
        finally:
            self._deletions.pop(channel_id, None)

    async def rename_channel(self, phone: str) -> Optional[str]:
        """Rename the bound ticket channel to match the current display name."""

        key = normalize_phone(phone)
        channel_id = self._channel_map.lookup(key)
        card = self._identity.get(key)
        if channel_id is None or card is None:
            return None
        name = ticket_channel_name(card.name)
        await self._ticket.rename_channel(channel_id, name)
        ticket = self.get(channel_id)
        if ticket is not None:
            self._put(replace(ticket, channel_name=name))
        return name

    async def redraw_ticket_info(self, phone: str) -> Optional[str]:
        """Refresh the pinned ticket-info message; posts and pins one if missing."""

        key = normalize_phone(phone)
        channel_id = self._channel_map.lookup(key)
        card = self._identity.get(key)
        if channel_id is None or card is None:
            return None
        ticket = self.get(channel_id)
        if ticket is None:
            return None
        if ticket.info_message_id is None:
            message_id = await self._post_ticket_info(ticket, card)
            if message_id is not None:
                self._put(replace(ticket, info_message_id=message_id))
            return message_id
        await self._ticket.edit_message(
            channel_id,
            ticket.info_message_id,
            OutgoingMessage(embed=render_ticket_info(card, opened_at=ticket.opened_at)),
        )
        return ticket.info_message_id

    async def _post_ticket_info(self, ticket: Ticket, card: UserCard) -> Optional[str]:
        message_id = await self._post_best_effort(
            ticket.channel_id,
            OutgoingMessage(embed=render_ticket_info(card, opened_at=ticket.opened_at)),
            step="ticket_info",
        )
        if message_id is None:
            return None
        try:
            await self._ticket.pin_message(ticket.channel_id, message_id)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "ticket.pin_failed",
                channel_id=ticket.channel_id,
                message_id=message_id,
                exc=exc,
            )
        return message_id

    async def _post_best_effort(
        self, channel_id: str, payload: OutgoingMessage, *, step: str
    ) -> Optional[str]:
        try:
            return await self._ticket.send_to_channel(channel_id, payload)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "ticket.post_failed",
                channel_id=channel_id,
                step=step,
                exc=exc,
            )
            return None

    def purge(self) -> None:
        self.cancel_deletions()
        self._tickets.clear()
        self._closed.clear()
        self._store.delete()


__all__ = [
    "CLOSED_HISTORY_LIMIT",
    "TICKETS_FILENAME",
    "Ticket",
    "TicketLifecycle",
    "TicketState",
    "render_ticket_info",
    "render_transcript_card",
    "ticket_channel_name",
]
