from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Optional

import typer

from ....core.channel_map import CHANNEL_MAP_FILENAME, ChannelMap
from ....core.config import BridgeConfig
from ....core.identity import USER_CARDS_FILENAME, IdentityStore, normalize_phone
from ....core.kv_store import JsonFileStore
from ....core.registry import (
    INSTANCE_CONFIGS_FILENAME,
    INSTANCES_DIRNAME,
    instance_dirname,
    is_valid_instance_id,
)
from ....core.transcripts import TRANSCRIPTS_INDEX_FILENAME, TranscriptStore


def _instance_root(config: BridgeConfig, instance_id: str) -> Path:
    return config.storage_root / INSTANCES_DIRNAME / instance_dirname(instance_id)


def _registrations(config: BridgeConfig) -> dict[str, dict[str, Any]]:
    raw = JsonFileStore(config.storage_root / INSTANCE_CONFIGS_FILENAME).load() or {}
    return {
        key: value
        for key, value in raw.items()
        if isinstance(value, dict) and is_valid_instance_id(key)
    }


def register_bridge_commands(
    app: typer.Typer,
    *,
    require_config: Callable[[Optional[Path]], BridgeConfig],
    raise_exit: Callable,
) -> None:
    @app.command("instances")
    def bridge_instances(
        output_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
        path: Optional[Path] = typer.Option(None, "--path", help="Bridge root path"),
    ) -> None:
        """List saved instance registrations."""
        config = require_config(path)
        registrations = _registrations(config)
        if output_json:
            typer.echo(json.dumps({"instances": registrations}, indent=2))
            return
        if not registrations:
            typer.echo("No instances registered.")
            return
        for instance_id, entry in sorted(registrations.items()):
            typer.echo(
                f"{instance_id}\ttenant={entry.get('tenantKey')}\t"
                f"category={entry.get('categoryId')}"
            )

    @app.command("status")
    def bridge_status(
        output_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
        path: Optional[Path] = typer.Option(None, "--path", help="Bridge root path"),
    ) -> None:
        """Summarize open tickets and known contacts per instance (offline)."""
        config = require_config(path)
        rows: list[dict[str, Any]] = []
        for instance_id, entry in sorted(_registrations(config).items()):
            root = _instance_root(config, instance_id)
            channel_map = ChannelMap(JsonFileStore(root / CHANNEL_MAP_FILENAME))
            identity = IdentityStore(JsonFileStore(root / USER_CARDS_FILENAME))
            rows.append(
                {
                    "instance_id": instance_id,
                    "tenant_key": entry.get("tenantKey"),
                    "open_tickets": len(channel_map),
                    "registered_users": identity.count(),
                }
            )
        if output_json:
            typer.echo(json.dumps({"instances": rows}, indent=2))
            return
        if not rows:
            typer.echo("No instances registered.")
            return
        for row in rows:
            typer.echo(
                f"{row['instance_id']}\topen_tickets={row['open_tickets']}\t"
                f"users={row['registered_users']}"
            )

    @app.command("users")
    def bridge_users(
        instance_id: str = typer.Argument(..., help="Instance id"),
        query: str = typer.Option("", "--query", help="Display-name prefix"),
        limit: int = typer.Option(25, "--limit", min=1, help="Maximum rows"),
        output_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
        path: Optional[Path] = typer.Option(None, "--path", help="Bridge root path"),
    ) -> None:
        """List contacts of one instance, most recent first."""
        config = require_config(path)
        if instance_id not in _registrations(config):
            raise_exit(f"Unknown instance: {instance_id}")
        root = _instance_root(config, instance_id)
        identity = IdentityStore(JsonFileStore(root / USER_CARDS_FILENAME))
        cards = identity.find_by_partial_name(query, limit=limit)
        if output_json:
            typer.echo(json.dumps({"users": [card.to_raw() for card in cards]}, indent=2))
            return
        if not cards:
            typer.echo("No users found.")
            return
        for card in cards:
            typer.echo(f"{card.phone}\t{card.name}\tlast_contact={card.last_contact}")

    @app.command("transcript")
    def bridge_transcript(
        instance_id: str = typer.Argument(..., help="Instance id"),
        phone: str = typer.Argument(..., help="Contact phone number"),
        path: Optional[Path] = typer.Option(None, "--path", help="Bridge root path"),
    ) -> None:
        """Print the path of a contact's latest transcript."""
        config = require_config(path)
        if instance_id not in _registrations(config):
            raise_exit(f"Unknown instance: {instance_id}")
        root = _instance_root(config, instance_id)
        key = normalize_phone(phone)
        identity = IdentityStore(JsonFileStore(root / USER_CARDS_FILENAME))
        card = identity.get(key)
        transcripts = TranscriptStore(
            root,
            JsonFileStore(root / TRANSCRIPTS_INDEX_FILENAME),
            instance_id=instance_id,
            scan_depth=config.transcript_scan_depth,
            scan_max_entries=config.transcript_scan_max_entries,
        )
        latest = transcripts.find_latest(key, card.name if card else key)
        if latest is None:
            raise_exit(f"No transcript found for {key}")
        typer.echo(str(latest))
