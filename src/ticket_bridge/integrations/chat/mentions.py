"""Translate ticket-platform mention markup into plain text for contacts."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping

from ...core.settings import SpecialChannel

CHANNEL_MENTION_RE = re.compile(r"<#(\d+)>")
USER_MENTION_RE = re.compile(r"<@!?(\d+)>")
ROLE_MENTION_RE = re.compile(r"<@&(\d+)>")
UNKNOWN_CHANNEL_NAME = "deleted-channel"
UNKNOWN_USER_NAME = "unknown-user"


@dataclass(frozen=True)
class TranslatedText:
    text: str
    announcements: tuple[str, ...] = ()


def translate_mentions(
    text: str,
    *,
    channel_names: Mapping[str, str],
    user_names: Mapping[str, str],
    special_channels: Mapping[str, SpecialChannel],
) -> TranslatedText:
    """Rewrite `<#id>` to `#name` and `<@id>` to `@name`.

    Special channels are also rendered as `#name`; their announcement texts are
    returned separately, once per channel, in the order first mentioned.
    """

    announcements: list[str] = []
    announced: set[str] = set()

    def _channel(match: re.Match[str]) -> str:
        channel_id = match.group(1)
        special = special_channels.get(channel_id)
        name = channel_names.get(channel_id)
        if special is not None:
            if channel_id not in announced:
                announced.add(channel_id)
                announcements.append(special.message)
            name = name or special.channel_name
        return f"#{name or UNKNOWN_CHANNEL_NAME}"

    def _user(match: re.Match[str]) -> str:
        return f"@{user_names.get(match.group(1)) or UNKNOWN_USER_NAME}"

    translated = CHANNEL_MENTION_RE.sub(_channel, text or "")
    translated = USER_MENTION_RE.sub(_user, translated)
    translated = ROLE_MENTION_RE.sub("@role", translated)
    return TranslatedText(text=translated, announcements=tuple(announcements))


__all__ = ["TranslatedText", "translate_mentions"]
