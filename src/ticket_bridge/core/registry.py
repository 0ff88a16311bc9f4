"""Top-level tenant container.

Each registration gets its own storage root (`<storage_root>/instances/<id>/`)
and a freshly constructed `Instance`; re-registering a tenant shuts the
previous object down so no cache or background task survives an identity
switch. Instance ids are used verbatim as directory names, so they are
restricted to `[A-Za-z0-9._-]` and must not collide case-insensitively.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Iterable, Optional

from ..integrations.chat.transport import ContactTransport, TicketTransport
from .config import BridgeConfig
from .exceptions import NotFoundError, RegistrationError
from .instance import Instance, InstanceStatus
from .kv_store import JsonFileStore, save_or_log
from .logging_utils import log_event, setup_rotating_logger

INSTANCE_CONFIGS_FILENAME = "instance_configs.json"
INSTANCES_DIRNAME = "instances"
BRIDGE_LOGGER_NAME = "ticket-bridge"

InstanceFactory = Callable[..., Instance]

INSTANCE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,119}$")


def is_valid_instance_id(instance_id: str) -> bool:
    return isinstance(instance_id, str) and INSTANCE_ID_RE.match(instance_id) is not None


def instance_dirname(instance_id: str) -> str:
    """Return the storage directory name for `instance_id`; rejects unsafe ids."""

    if not is_valid_instance_id(instance_id):
        raise RegistrationError(
            f"invalid instance id {instance_id!r}",
            user_message="Instance ids may only contain letters, digits, '.', '_' and '-'.",
        )
    return instance_id


class InstanceRegistry:
    def __init__(
        self,
        config: BridgeConfig,
        *,
        instance_factory: InstanceFactory = Instance,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._factory = instance_factory
        self._logger = logger or logging.getLogger(__name__)
        self._configs = JsonFileStore(config.storage_root / INSTANCE_CONFIGS_FILENAME)
        self._instances: dict[str, Instance] = {}
        self._saved: dict[str, dict[str, Any]] = {
            key: value
            for key, value in (self._configs.load() or {}).items()
            if isinstance(value, dict) and is_valid_instance_id(key)
        }

    def saved_registrations(self) -> dict[str, dict[str, Any]]:
        return {key: dict(value) for key, value in self._saved.items()}

    async def register(
        self,
        instance_id: str,
        tenant_key: str,
        *,
        category_id: str,
        contact: ContactTransport,
        ticket: TicketTransport,
        **instance_kwargs: Any,
    ) -> Instance:
        dirname = instance_dirname(instance_id)
        replaced = [
            existing.instance_id
            for existing in self._instances.values()
            if existing.instance_id == instance_id or existing.tenant_key == tenant_key
        ]
        self._check_storage_conflict(instance_id, dirname, replaced)

        for old_id in replaced:
            old = self._instances.pop(old_id)
            if old_id != instance_id:
                self._saved.pop(old_id, None)
            try:
                await old.shutdown()
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "registry.shutdown_failed",
                    instance_id=old_id,
                    exc=exc,
                )
        if replaced:
            log_event(
                self._logger,
                logging.INFO,
                "registry.replaced",
                instance_id=instance_id,
                tenant_key=tenant_key,
                replaced=replaced,
            )

        storage_root = self._config.storage_root / INSTANCES_DIRNAME / dirname
        instance_kwargs.setdefault("logger", self._logger)
        instance = self._factory(
            instance_id=instance_id,
            tenant_key=tenant_key,
            category_id=category_id,
            storage_root=storage_root,
            contact=contact,
            ticket=ticket,
            config=self._config,
            **instance_kwargs,
        )
        self._instances[instance_id] = instance
        self._saved[instance_id] = {"tenantKey": tenant_key, "categoryId": category_id}
        self._persist()
        log_event(
            self._logger,
            logging.INFO,
            "registry.registered",
            instance_id=instance_id,
            tenant_key=tenant_key,
            category_id=category_id,
            storage_root=storage_root,
        )
        return instance

    def find(self, key: str) -> Optional[Instance]:
        """Match an instance id, tenant key or ticket category id."""

        instance = self._instances.get(key)
        if instance is not None:
            return instance
        for candidate in self._instances.values():
            if candidate.tenant_key == key or candidate.category_id == key:
                return candidate
        return None

    def lookup(self, key: str) -> Instance:
        instance = self.find(key)
        if instance is None:
            raise NotFoundError(
                f"no instance registered for {key}",
                user_message="This server is not connected to the bridge.",
            )
        return instance

    def instances(self) -> list[Instance]:
        return list(self._instances.values())

    async def disconnect(self, instance_id: str, *, full: bool = False) -> None:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise NotFoundError(f"no instance registered for {instance_id}")
        try:
            await instance.disconnect(full=full)
        finally:
            self._instances.pop(instance_id, None)
            if full:
                self._saved.pop(instance_id, None)
                self._persist()
        log_event(
            self._logger,
            logging.INFO,
            "registry.disconnected",
            instance_id=instance_id,
            full=full,
        )

    async def disconnect_all(self) -> None:
        for instance_id in list(self._instances):
            try:
                await self.disconnect(instance_id)
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "registry.disconnect_failed",
                    instance_id=instance_id,
                    exc=exc,
                )

    def get_status(self) -> list[InstanceStatus]:
        return [instance.get_status() for instance in self._instances.values()]

    def _check_storage_conflict(
        self, instance_id: str, dirname: str, replaced: Iterable[str]
    ) -> None:
        skip = set(replaced) | {instance_id}
        owners = (set(self._instances) | set(self._saved)) - skip
        for owner in owners:
            if owner.casefold() == dirname.casefold():
                raise RegistrationError(
                    f"storage root {dirname} is owned by instance {owner}",
                    user_message="Another instance already uses this id.",
                )

    def _persist(self) -> None:
        save_or_log(self._configs, dict(self._saved), event="registry.persist_failed")


def create_instance_registry(
    config: BridgeConfig,
    *,
    logger: Optional[logging.Logger] = None,
    instance_factory: InstanceFactory = Instance,
) -> InstanceRegistry:
    """Build the runtime registry, logging to the rotating file from `config.log`."""

    if logger is None:
        logger = setup_rotating_logger(BRIDGE_LOGGER_NAME, config.log)
    return InstanceRegistry(config, instance_factory=instance_factory, logger=logger)


__all__ = [
    "BRIDGE_LOGGER_NAME",
    "INSTANCES_DIRNAME",
    "INSTANCE_CONFIGS_FILENAME",
    "InstanceRegistry",
    "create_instance_registry",
    "instance_dirname",
    "is_valid_instance_id",
]
