"""Per-instance runtime settings: message templates and feature toggles."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

from .kv_store import KeyValueStore, save_or_log
from .logging_utils import log_event

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"

DEFAULT_WELCOME_MESSAGE = (
    "Welcome to Support! We're here to help. A member of our team will be "
    "with you shortly."
)
DEFAULT_REOPEN_MESSAGE = (
    "Welcome back, {name}! Our team will continue assisting you with your request."
)
DEFAULT_TICKET_INTRO_MESSAGE = (
    "# New Support Ticket\n"
    "**A new ticket has been created for {name}**\n"
    "WhatsApp: `{phoneNumber}`\n\n"
    "Support agents will respond as soon as possible."
)
DEFAULT_CLOSING_MESSAGE = (
    "Thank you for contacting support. Your ticket is now being closed and a "
    "transcript will be saved."
)
DEFAULT_VOUCH_MESSAGE = (
    "Hey {name}! Thanks for using our service! We'd love to hear your feedback.\n\n"
    "To leave a vouch, simply send a message starting with *Vouch!* followed by "
    "your feedback."
)
DEFAULT_VOUCH_SUCCESS_MESSAGE = (
    "Thank you for your vouch! It has been posted to our community channel."
)

OPTIONAL_CHANNEL_FIELDS = frozenset({"transcript_channel_id", "vouch_channel_id"})


class SettingsError(ValueError):
    """Raised when a settings update carries an invalid value."""


@dataclass(frozen=True)
class SpecialChannel:
    channel_id: str
    message: str
    channel_name: Optional[str] = None


@dataclass(frozen=True)
class InstanceSettings:
    welcome_message: str = DEFAULT_WELCOME_MESSAGE
    reopen_message: str = DEFAULT_REOPEN_MESSAGE
    ticket_intro_message: str = DEFAULT_TICKET_INTRO_MESSAGE
    closing_message: str = DEFAULT_CLOSING_MESSAGE
    send_closing_message: bool = False
    transcripts_enabled: bool = True
    save_media: bool = True
    transcript_channel_id: Optional[str] = None
    vouches_enabled: bool = True
    vouch_channel_id: Optional[str] = None
    vouch_message: str = DEFAULT_VOUCH_MESSAGE
    vouch_success_message: str = DEFAULT_VOUCH_SUCCESS_MESSAGE
    special_channels: Mapping[str, SpecialChannel] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "InstanceSettings":
        defaults = cls()
        specials: dict[str, SpecialChannel] = {}
        specials_raw = raw.get("specialChannels")
        if isinstance(specials_raw, Mapping):
            for channel_id, entry in specials_raw.items():
                if not isinstance(entry, Mapping):
                    continue
                message = entry.get("message")
                if not isinstance(message, str) or not message.strip():
                    continue
                name = entry.get("channelName")
                specials[str(channel_id)] = SpecialChannel(
                    channel_id=str(channel_id),
                    message=message,
                    channel_name=name if isinstance(name, str) and name else None,
                )
        return cls(
            welcome_message=_text_or(raw.get("welcomeMessage"), defaults.welcome_message),
            reopen_message=_text_or(
                raw.get("reopenTicketMessage"), defaults.reopen_message
            ),
            ticket_intro_message=_text_or(
                raw.get("newTicketMessage"), defaults.ticket_intro_message
            ),
            closing_message=_text_or(raw.get("closingMessage"), defaults.closing_message),
            send_closing_message=_bool_or(
                raw.get("sendClosingMessage"), defaults.send_closing_message
            ),
            transcripts_enabled=_bool_or(
                raw.get("transcriptsEnabled"), defaults.transcripts_enabled
            ),
            save_media=_bool_or(raw.get("saveMedia"), defaults.save_media),
            transcript_channel_id=_channel_or_none(raw.get("transcriptChannelId")),
            vouches_enabled=_bool_or(raw.get("vouchesEnabled"), defaults.vouches_enabled),
            vouch_channel_id=_channel_or_none(raw.get("vouchChannelId")),
            vouch_message=_text_or(raw.get("vouchMessage"), defaults.vouch_message),
            vouch_success_message=_text_or(
                raw.get("vouchSuccessMessage"), defaults.vouch_success_message
            ),
            special_channels=specials,
        )

    def to_raw(self) -> dict[str, Any]:
        return {
            "welcomeMessage": self.welcome_message,
            "reopenTicketMessage": self.reopen_message,
            "newTicketMessage": self.ticket_intro_message,
            "closingMessage": self.closing_message,
            "sendClosingMessage": self.send_closing_message,
            "transcriptsEnabled": self.transcripts_enabled,
            "saveMedia": self.save_media,
            "transcriptChannelId": self.transcript_channel_id,
            "vouchesEnabled": self.vouches_enabled,
            "vouchChannelId": self.vouch_channel_id,
            "vouchMessage": self.vouch_message,
            "vouchSuccessMessage": self.vouch_success_message,
            "specialChannels": {
                channel_id: {
                    "message": special.message,
                    "channelName": special.channel_name,
                }
                for channel_id, special in self.special_channels.items()
            },
        }


def render_template(template: str, *, name: str, phone: str) -> str:
    """Fill `{name}` and `{phoneNumber}` placeholders; other braces are left alone."""

    return template.replace("{name}", name).replace("{phoneNumber}", phone)


class SettingsStore:
    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        raw = store.load()
        if raw is None:
            self._settings = InstanceSettings()
            save_or_log(
                store, self._settings.to_raw(), event="settings.persist_failed"
            )
        else:
            self._settings = InstanceSettings.from_raw(raw)

    @property
    def current(self) -> InstanceSettings:
        return self._settings

    def update(self, **changes: Any) -> InstanceSettings:
        valid = set(InstanceSettings.__dataclass_fields__)
        unknown = sorted(set(changes) - valid)
        if unknown:
            raise SettingsError(f"unknown settings: {', '.join(unknown)}")
        for key, value in changes.items():
            expected = type(getattr(self._settings, key))
            if key == "special_channels":
                if not isinstance(value, Mapping):
                    raise SettingsError("special_channels must be a mapping")
            elif key in OPTIONAL_CHANNEL_FIELDS:
                if value is not None and not (isinstance(value, str) and value.strip()):
                    raise SettingsError(f"{key} must be a channel id or None")
            elif not isinstance(value, expected):
                raise SettingsError(f"{key} must be {expected.__name__}")
        self._settings = replace(self._settings, **changes)
        save_or_log(self._store, self._settings.to_raw(), event="settings.persist_failed")
        log_event(logger, logging.INFO, "settings.updated", keys=sorted(changes))
        return self._settings

    def add_special_channel(
        self, channel_id: str, message: str, *, channel_name: Optional[str] = None
    ) -> InstanceSettings:
        specials = dict(self._settings.special_channels)
        specials[channel_id] = SpecialChannel(
            channel_id=channel_id, message=message, channel_name=channel_name
        )
        return self.update(special_channels=specials)

    def remove_special_channel(self, channel_id: str) -> bool:
        specials = dict(self._settings.special_channels)
        if specials.pop(channel_id, None) is None:
            return False
        self.update(special_channels=specials)
        return True


def _text_or(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value
    return default


def _bool_or(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    return default


def _channel_or_none(value: Any) -> Optional[str]:
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or None
    return None


__all__ = [
    "InstanceSettings",
    "SETTINGS_FILENAME",
    "SettingsError",
    "SettingsStore",
    "SpecialChannel",
    "render_template",
]
