from __future__ import annotations

import logging
from typing import Optional

from .identity import normalize_phone
from .kv_store import KeyValueStore, save_or_log
from .logging_utils import log_event

logger = logging.getLogger(__name__)

CHANNEL_MAP_FILENAME = "channel_map.json"


class ChannelMap:
    """Bidirectional phone <-> ticket channel binding.

    Rebinding is last-write-wins: binding a phone or a channel that is already
    bound elsewhere silently drops the older pairing so the map stays 1:1.
    Every mutation is flushed to disk before returning.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._by_phone: dict[str, str] = {}
        self._by_channel: dict[str, str] = {}
        raw = store.load() or {}
        for phone, channel_id in raw.items():
            if not isinstance(channel_id, (str, int)) or isinstance(channel_id, bool):
                continue
            self._insert(normalize_phone(str(phone)), str(channel_id))

    def _insert(self, phone: str, channel_id: str) -> None:
        previous_channel = self._by_phone.pop(phone, None)
        if previous_channel is not None:
            self._by_channel.pop(previous_channel, None)
        previous_phone = self._by_channel.pop(channel_id, None)
        if previous_phone is not None:
            self._by_phone.pop(previous_phone, None)
        self._by_phone[phone] = channel_id
        self._by_channel[channel_id] = phone

    def _persist(self) -> None:
        save_or_log(self._store, dict(self._by_phone), event="channel_map.persist_failed")

    def bind(self, phone: str, channel_id: str) -> None:
        key = normalize_phone(phone)
        previous_channel = self._by_phone.get(key)
        previous_phone = self._by_channel.get(channel_id)
        self._insert(key, channel_id)
        self._persist()
        if (previous_channel and previous_channel != channel_id) or (
            previous_phone and previous_phone != key
        ):
            log_event(
                logger,
                logging.INFO,
                "channel_map.rebound",
                phone=key,
                channel_id=channel_id,
                replaced_channel=previous_channel,
                replaced_phone=previous_phone,
            )

    def unbind(self, phone: str) -> Optional[str]:
        channel_id = self._by_phone.pop(normalize_phone(phone), None)
        if channel_id is None:
            return None
        self._by_channel.pop(channel_id, None)
        self._persist()
        return channel_id

    def unbind_channel(self, channel_id: str) -> Optional[str]:
        phone = self._by_channel.pop(channel_id, None)
        if phone is None:
            return None
        self._by_phone.pop(phone, None)
        self._persist()
        return phone

    def lookup(self, phone: str) -> Optional[str]:
        return self._by_phone.get(normalize_phone(phone))

    def phone_for(self, channel_id: str) -> Optional[str]:
        return self._by_channel.get(channel_id)

    def mappings(self) -> dict[str, str]:
        return dict(self._by_phone)

    def __len__(self) -> int:
        return len(self._by_phone)

    def clear(self) -> None:
        self._by_phone.clear()
        self._by_channel.clear()
        self._persist()

    def purge(self) -> None:
        self._by_phone.clear()
        self._by_channel.clear()
        self._store.delete()


__all__ = ["CHANNEL_MAP_FILENAME", "ChannelMap"]
