"""Contact identities (UserCards) keyed by normalized phone number.

A display-name change fans out to other stores through a `RenameCascade`: an
ordered list of named async steps run one after another. A failing step is
logged and recorded but never stops the steps after it, so callers get a
partial-success report instead of a rollback.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Iterable, Optional

from .exceptions import CascadeError
from .kv_store import KeyValueStore, save_or_log
from .logging_utils import log_event
from .media_store import sanitize_name
from .time_utils import now_iso

logger = logging.getLogger(__name__)

USER_CARDS_FILENAME = "user_cards.json"
UNKNOWN_NUMBER = "unknown-number"
DEFAULT_PARTIAL_NAME_LIMIT = 25

_NON_DIGITS_RE = re.compile(r"\D+")


def normalize_phone(raw: Optional[str]) -> str:
    """Canonical phone key: transport suffix removed, optional `+`, digits only."""

    text = (raw or "").split("@", 1)[0].strip()
    if text == UNKNOWN_NUMBER:
        return UNKNOWN_NUMBER
    digits = _NON_DIGITS_RE.sub("", text)
    if not digits:
        return UNKNOWN_NUMBER
    return f"+{digits}" if text.startswith("+") else digits


@dataclass(frozen=True)
class UserCard:
    phone: str
    name: str
    notes: str
    created_at: str
    last_contact: str

    def to_raw(self) -> dict[str, Any]:
        return {
            "phone": self.phone,
            "name": self.name,
            "notes": self.notes,
            "createdAt": self.created_at,
            "lastContact": self.last_contact,
        }

    @classmethod
    def from_raw(cls, phone: str, raw: dict[str, Any]) -> Optional["UserCard"]:
        name = raw.get("name") or raw.get("username")
        if not isinstance(name, str) or not name.strip():
            return None
        created_at = raw.get("createdAt")
        last_contact = raw.get("lastContact") or raw.get("lastSeen")
        notes = raw.get("notes")
        return cls(
            phone=phone,
            name=name.strip(),
            notes=notes if isinstance(notes, str) else "",
            created_at=created_at if isinstance(created_at, str) else now_iso(),
            last_contact=(
                last_contact
                if isinstance(last_contact, str)
                else (created_at if isinstance(created_at, str) else now_iso())
            ),
        )


@dataclass(frozen=True)
class RenameContext:
    phone: str
    old_name: str
    new_name: str


CascadeHandler = Callable[[RenameContext], Awaitable[None]]


@dataclass(frozen=True)
class CascadeStep:
    name: str
    handler: CascadeHandler


@dataclass(frozen=True)
class UpdateResult:
    card: UserCard
    renamed: bool
    completed_steps: tuple[str, ...] = ()
    failures: tuple[CascadeError, ...] = ()

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    @property
    def failed_steps(self) -> tuple[str, ...]:
        return tuple(failure.step for failure in self.failures)


class RenameCascade:
    def __init__(self, steps: Iterable[CascadeStep] = ()) -> None:
        self._steps: list[CascadeStep] = list(steps)

    @property
    def step_names(self) -> tuple[str, ...]:
        return tuple(step.name for step in self._steps)

    def add_step(self, name: str, handler: CascadeHandler) -> None:
        if any(step.name == name for step in self._steps):
            raise ValueError(f"cascade step already registered: {name}")
        self._steps.append(CascadeStep(name=name, handler=handler))

    async def run(
        self, context: RenameContext
    ) -> tuple[tuple[str, ...], tuple[CascadeError, ...]]:
        completed: list[str] = []
        failures: list[CascadeError] = []
        for step in self._steps:
            try:
                await step.handler(context)
            except Exception as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "identity.cascade.step_failed",
                    step=step.name,
                    phone=context.phone,
                    old_name=context.old_name,
                    new_name=context.new_name,
                    exc=exc,
                )
                error = CascadeError(f"{step.name}: {exc}", step=step.name)
                error.__cause__ = exc
                failures.append(error)
                continue
            completed.append(step.name)
        return tuple(completed), tuple(failures)


class IdentityStore:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        cascade: Optional[RenameCascade] = None,
        now_fn: Callable[[], str] = now_iso,
    ) -> None:
        self._store = store
        self._now = now_fn
        self.cascade = cascade or RenameCascade()
        self._cards: dict[str, UserCard] = {}
        self._load()

    def _load(self) -> None:
        raw = self._store.load()
        if not raw:
            return
        migrated = False
        for key, value in raw.items():
            if not isinstance(value, dict):
                continue
            phone_source = value.get("phone") or value.get("phoneNumber") or key
            if str(key).startswith("user_") or "phoneNumber" in value:
                migrated = True
            phone = normalize_phone(str(phone_source))
            card = UserCard.from_raw(phone, value)
            if card is None:
                continue
            self._cards[phone] = card
        if migrated:
            log_event(
                logger, logging.INFO, "identity.legacy_migrated", cards=len(self._cards)
            )
            self._persist()

    def _persist(self) -> None:
        save_or_log(
            self._store,
            {phone: card.to_raw() for phone, card in self._cards.items()},
            event="identity.persist_failed",
        )

    def get(self, phone: str) -> Optional[UserCard]:
        return self._cards.get(normalize_phone(phone))

    def all(self) -> list[UserCard]:
        return list(self._cards.values())

    def count(self) -> int:
        return len(self._cards)

    def get_or_create(self, phone: str, default_name: Optional[str] = None) -> UserCard:
        key = normalize_phone(phone)
        now = self._now()
        card = self._cards.get(key)
        if card is None:
            name = (default_name or "").strip() or key
            card = UserCard(
                phone=key, name=name, notes="", created_at=now, last_contact=now
            )
            log_event(logger, logging.INFO, "identity.created", phone=key, name=name)
        else:
            card = replace(card, last_contact=now)
        self._cards[key] = card
        self._persist()
        return card

    async def update(
        self,
        phone: str,
        *,
        name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> UpdateResult:
        """Apply a name/notes edit; a name change runs the rename cascade."""

        key = normalize_phone(phone)
        card = self._cards.get(key) or self.get_or_create(key)
        old_name = card.name
        changes: dict[str, Any] = {}
        new_name = name.strip() if isinstance(name, str) else None
        if new_name and new_name != old_name:
            changes["name"] = new_name
        if notes is not None and notes != card.notes:
            changes["notes"] = notes
        if not changes:
            return UpdateResult(card=card, renamed=False)

        card = replace(card, **changes)
        self._cards[key] = card
        self._persist()
        log_event(
            logger,
            logging.INFO,
            "identity.updated",
            phone=key,
            fields=sorted(changes),
        )
        if "name" not in changes:
            return UpdateResult(card=card, renamed=False)

        completed, failures = await self.cascade.run(
            RenameContext(phone=key, old_name=old_name, new_name=card.name)
        )
        if failures:
            log_event(
                logger,
                logging.WARNING,
                "identity.rename.partial",
                phone=key,
                completed=completed,
                failed=[failure.step for failure in failures],
            )
        return UpdateResult(
            card=card, renamed=True, completed_steps=completed, failures=failures
        )

    def find_by_name(self, name: str) -> list[UserCard]:
        target = sanitize_name(name)
        return [card for card in self._cards.values() if sanitize_name(card.name) == target]

    def find_by_partial_name(
        self, prefix: str, limit: int = DEFAULT_PARTIAL_NAME_LIMIT
    ) -> list[UserCard]:
        needle = sanitize_name(prefix) if prefix.strip() else ""
        matches = [
            card
            for card in self._cards.values()
            if sanitize_name(card.name).startswith(needle)
        ]
        matches.sort(key=lambda card: card.last_contact, reverse=True)
        return matches[: max(limit, 0)]

    def purge(self) -> None:
        self._cards.clear()
        self._store.delete()


__all__ = [
    "CascadeStep",
    "IdentityStore",
    "RenameCascade",
    "RenameContext",
    "UNKNOWN_NUMBER",
    "USER_CARDS_FILENAME",
    "UpdateResult",
    "UserCard",
    "normalize_phone",
]
