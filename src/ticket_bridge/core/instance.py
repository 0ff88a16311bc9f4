"""One tenant's bridge: every store, the lifecycle and the router, wired together.

An `Instance` owns its caches outright. Nothing here is shared between
instances; the registry builds a new `Instance` whenever a tenant registers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from ..integrations.bridge.media_pipeline import (
    AttachmentFetcher,
    MediaConverter,
    MediaPipeline,
)
from ..integrations.bridge.router import MessageRouter
from ..integrations.chat.dispatcher import DispatchResult
from ..integrations.chat.models import ContactMessage, Direction, TicketMessage
from ..integrations.chat.transport import ContactTransport, TicketTransport
from .channel_map import CHANNEL_MAP_FILENAME, ChannelMap
from .config import BridgeConfig
from .connection import ConnectionChange, ConnectionState, ConnectionStateChannel
from .identity import (
    USER_CARDS_FILENAME,
    IdentityStore,
    RenameContext,
    UpdateResult,
)
from .kv_store import JsonFileStore, remove_tree
from .lifecycle import TICKETS_FILENAME, Ticket, TicketLifecycle
from .logging_utils import log_event
from .media_store import FILE_INDEX_FILENAME, MediaStore
from .settings import SETTINGS_FILENAME, InstanceSettings, SettingsStore
from .transcripts import TRANSCRIPTS_INDEX_FILENAME, TranscriptStore

AUTH_DIRNAME = "auth"

CASCADE_MEDIA = "media_directory"
CASCADE_TRANSCRIPTS = "transcripts"
CASCADE_CHANNEL = "ticket_channel"
CASCADE_TICKET_INFO = "ticket_info"


@dataclass(frozen=True)
class InstanceStatus:
    instance_id: str
    tenant_key: str
    category_id: str
    open_tickets: int
    registered_users: int
    connected: bool
    connection_state: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Instance:
    def __init__(
        self,
        *,
        instance_id: str,
        tenant_key: str,
        category_id: str,
        storage_root: Path,
        contact: ContactTransport,
        ticket: TicketTransport,
        config: BridgeConfig,
        self_address: Optional[str] = None,
        fetcher: Optional[AttachmentFetcher] = None,
        converter: Optional[MediaConverter] = None,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.instance_id = instance_id
        self.tenant_key = tenant_key
        self.category_id = category_id
        self.storage_root = storage_root
        self._contact = contact
        self._ticket = ticket
        self._logger = logger or logging.getLogger(__name__)
        storage_root.mkdir(parents=True, exist_ok=True)

        self.settings = SettingsStore(JsonFileStore(storage_root / SETTINGS_FILENAME))
        self.transcripts = TranscriptStore(
            storage_root,
            JsonFileStore(storage_root / TRANSCRIPTS_INDEX_FILENAME),
            instance_id=instance_id,
            scan_depth=config.transcript_scan_depth,
            scan_max_entries=config.transcript_scan_max_entries,
        )
        self.media = MediaStore(
            storage_root,
            JsonFileStore(storage_root / FILE_INDEX_FILENAME),
            back_references=[self.transcripts],
        )
        self.identity = IdentityStore(JsonFileStore(storage_root / USER_CARDS_FILENAME))
        self.channel_map = ChannelMap(JsonFileStore(storage_root / CHANNEL_MAP_FILENAME))
        self.lifecycle = TicketLifecycle(
            category_id=category_id,
            ticket_transport=ticket,
            contact_transport=contact,
            identity=self.identity,
            channel_map=self.channel_map,
            transcripts=self.transcripts,
            settings=self.settings,
            store=JsonFileStore(storage_root / TICKETS_FILENAME),
            close_grace_seconds=config.close_grace_seconds,
            sleep_fn=sleep_fn,
            logger=self._logger,
        )
        self._fetcher = fetcher or AttachmentFetcher(
            timeout_seconds=config.media.download_timeout_seconds,
            max_attempts=config.media.max_download_retries,
        )
        self.router = MessageRouter(
            identity=self.identity,
            channel_map=self.channel_map,
            lifecycle=self.lifecycle,
            media=self.media,
            transcripts=self.transcripts,
            settings=self.settings,
            contact=contact,
            ticket=ticket,
            pipeline=MediaPipeline(
                contact=contact,
                fetcher=self._fetcher,
                converter=converter
                or MediaConverter(ffmpeg_binary=config.media.ffmpeg_binary),
                logger=self._logger,
            ),
            self_address=self_address,
            dedupe_cache_size=config.dedupe_cache_size,
            special_mention_delay_seconds=config.special_mention_delay_seconds,
            sleep_fn=sleep_fn,
            logger=self._logger,
        )
        self._register_cascade()

        self.states = ConnectionStateChannel()
        self.connection_state = ConnectionState.DISCONNECTED
        self.last_qr: Optional[str] = None
        self._watch_task: Optional[asyncio.Task[None]] = None

    @property
    def auth_dir(self) -> Path:
        return self.storage_root / AUTH_DIRNAME

    @property
    def connected(self) -> bool:
        return self.connection_state is ConnectionState.READY

    def _register_cascade(self) -> None:
        cascade = self.identity.cascade

        async def _media(context: RenameContext) -> None:
            self.media.rename_user(context.phone, context.old_name, context.new_name)

        async def _transcripts(context: RenameContext) -> None:
            self.transcripts.rename(context.phone, context.new_name)

        async def _channel(context: RenameContext) -> None:
            await self.lifecycle.rename_channel(context.phone)

        async def _ticket_info(context: RenameContext) -> None:
            await self.lifecycle.redraw_ticket_info(context.phone)

        cascade.add_step(CASCADE_MEDIA, _media)
        cascade.add_step(CASCADE_TRANSCRIPTS, _transcripts)
        cascade.add_step(CASCADE_CHANNEL, _channel)
        cascade.add_step(CASCADE_TICKET_INFO, _ticket_info)

    async def connect(self) -> None:
        if self._watch_task is None or self._watch_task.done():
            if self.states.closed:
                self.states = ConnectionStateChannel()
            self._watch_task = asyncio.create_task(self.watch_connection())
        resumed = await self.lifecycle.resume_pending_deletions()
        if resumed:
            log_event(
                self._logger,
                logging.INFO,
                "instance.deletions_resumed",
                instance_id=self.instance_id,
                count=resumed,
            )
        self.apply_connection_change(ConnectionChange(ConnectionState.CONNECTING))
        await self._contact.connect(self.states)

    async def watch_connection(self) -> None:
        async for change in self.states:
            self.apply_connection_change(change)

    def apply_connection_change(self, change: ConnectionChange) -> None:
        previous = self.connection_state
        self.connection_state = change.state
        if change.state is ConnectionState.QR_REQUIRED:
            self.last_qr = change.qr_payload
        elif change.state is ConnectionState.READY:
            self.last_qr = None
        log_event(
            self._logger,
            logging.WARNING if change.state is ConnectionState.AUTH_FAILED else logging.INFO,
            "instance.connection_changed",
            instance_id=self.instance_id,
            previous=previous.value,
            state=change.state.value,
            reason=change.reason,
        )

    async def open_ticket(self, phone: str, display_name: Optional[str] = None) -> Ticket:
        return await self.lifecycle.open_ticket(phone, display_name)

    async def close_ticket(
        self, channel_id: str, *, notify_contact: Optional[bool] = None
    ) -> Ticket:
        return await self.lifecycle.close_ticket(channel_id, notify_contact=notify_contact)

    async def rename_user(self, phone: str, name: str) -> UpdateResult:
        return await self.identity.update(phone, name=name)

    async def set_notes(self, phone: str, notes: str) -> UpdateResult:
        result = await self.identity.update(phone, notes=notes)
        try:
            await self.lifecycle.redraw_ticket_info(result.card.phone)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "instance.ticket_info_refresh_failed",
                instance_id=self.instance_id,
                phone=result.card.phone,
                exc=exc,
            )
        return result

    async def route_inbound(
        self, direction: Direction, msg: Union[ContactMessage, TicketMessage]
    ) -> DispatchResult:
        return await self.router.route_inbound(direction, msg)

    def update_settings(self, **changes: Any) -> InstanceSettings:
        return self.settings.update(**changes)

    def get_status(self) -> InstanceStatus:
        return InstanceStatus(
            instance_id=self.instance_id,
            tenant_key=self.tenant_key,
            category_id=self.category_id,
            open_tickets=len(self.lifecycle.open_tickets()),
            registered_users=self.identity.count(),
            connected=self.connected,
            connection_state=self.connection_state.value,
        )

    async def disconnect(self, *, full: bool = False) -> None:
        """Close open tickets and stop the contact session.

        `full` also purges this instance's identities, bindings, media,
        transcripts, tickets and auth data. Settings are kept.
        """

        closed = await self.lifecycle.close_all()
        await self.router.wait_idle()
        await self.lifecycle.wait_for_deletions()
        try:
            await self._contact.disconnect(logout=full)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "instance.contact_disconnect_failed",
                instance_id=self.instance_id,
                exc=exc,
            )
        await self.shutdown()
        if full:
            self.purge()
        log_event(
            self._logger,
            logging.INFO,
            "instance.disconnected",
            instance_id=self.instance_id,
            full=full,
            closed_tickets=len(closed),
        )

    async def shutdown(self) -> None:
        """Stop this object's background work without touching tickets.

        Queued events are dropped, pending channel deletions are left on disk
        for whichever instance next owns the storage root, and the download
        client is closed. The contact session is not touched.
        """

        await self.router.close()
        await self.lifecycle.stop()
        self.states.close()
        if self._watch_task is not None:
            await self._watch_task
            self._watch_task = None
        self.connection_state = ConnectionState.DISCONNECTED
        await self._fetcher.close()
        log_event(
            self._logger, logging.INFO, "instance.shutdown", instance_id=self.instance_id
        )

    def purge(self) -> None:
        self.lifecycle.purge()
        self.channel_map.purge()
        self.media.purge()
        self.transcripts.purge()
        self.identity.purge()
        remove_tree(self.auth_dir)
        log_event(
            self._logger, logging.WARNING, "instance.purged", instance_id=self.instance_id
        )


__all__ = ["AUTH_DIRNAME", "Instance", "InstanceStatus"]
