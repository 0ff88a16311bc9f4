"""Test harness configuration.

This repo uses a `src/` layout; make sure tests import the in-repo code
rather than an installed `ticket_bridge` package.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import pytest

DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS = 120


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def pytest_collection_modifyitems(
    session: pytest.Session, config: pytest.Config, items: list[pytest.Item]
) -> None:
    """
    Apply a default per-test timeout to non-integration tests.

    This relies on `pytest-timeout` when installed; if it isn't installed, the
    marker is inert but still documents the intent.
    """
    _ = session, config
    for item in items:
        if item.get_closest_marker("integration") is not None:
            continue
        item.add_marker(pytest.mark.timeout(DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS))


class StubFetcher:
    """Serves attachment bytes by URL; unknown URLs fail permanently."""

    def __init__(self, payloads: Optional[dict[str, bytes]] = None) -> None:
        self.payloads = dict(payloads or {})
        self.requested: list[str] = []
        self.closed = False

    async def fetch(self, url: str) -> bytes:
        from ticket_bridge.core.exceptions import PermanentTransportError

        self.requested.append(url)
        data = self.payloads.get(url)
        if data is None:
            raise PermanentTransportError(f"missing {url}", platform="ticket")
        return data

    async def close(self) -> None:
        self.closed = True


class StubConverter:
    """Re-encodes by tagging bytes; `fail` forces a conversion error."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[str] = []

    async def convert(self, data: bytes, kind: Any, *, file_name: Optional[str] = None):
        from ticket_bridge.core.exceptions import ConversionError
        from ticket_bridge.integrations.bridge.media_pipeline import ConvertedMedia

        self.calls.append(kind.value)
        if self.fail:
            raise ConversionError("conversion disabled", tier="reencode")
        return ConvertedMedia(b"converted:" + data, f"converted-{file_name}", "video/mp4")


@dataclass
class BridgeEnv:
    root: Path
    contact: Any
    ticket: Any
    sleep: Any
    fetcher: StubFetcher
    converter: StubConverter
    identity: Any
    channel_map: Any
    media: Any
    transcripts: Any
    settings: Any
    lifecycle: Any
    router: Any


@pytest.fixture()
def bridge_env(tmp_path: Path) -> BridgeEnv:
    """Wire one instance's stores, lifecycle and router against in-memory transports."""

    # Import lazily so `pytest_configure()` can prepend the local src/ directory
    # before any `ticket_bridge` modules are loaded.
    from ticket_bridge.core.channel_map import ChannelMap
    from ticket_bridge.core.identity import IdentityStore
    from ticket_bridge.core.kv_store import JsonFileStore
    from ticket_bridge.core.lifecycle import TicketLifecycle
    from ticket_bridge.core.media_store import MediaStore
    from ticket_bridge.core.settings import SettingsStore
    from ticket_bridge.core.transcripts import TranscriptStore
    from ticket_bridge.integrations.bridge.media_pipeline import MediaPipeline
    from ticket_bridge.integrations.bridge.router import MessageRouter
    from ticket_bridge.integrations.chat.testing import (
        FakeContactTransport,
        FakeTicketTransport,
        RecordingSleep,
    )

    root = tmp_path / "instance"
    root.mkdir()
    contact = FakeContactTransport()
    ticket = FakeTicketTransport()
    sleep = RecordingSleep()
    fetcher = StubFetcher()
    converter = StubConverter()

    settings = SettingsStore(JsonFileStore(root / "settings.json"))
    transcripts = TranscriptStore(
        root, JsonFileStore(root / "transcripts.json"), instance_id="inst-a"
    )
    media = MediaStore(
        root, JsonFileStore(root / "file_index.json"), back_references=[transcripts]
    )
    identity = IdentityStore(JsonFileStore(root / "user_cards.json"))
    channel_map = ChannelMap(JsonFileStore(root / "channel_map.json"))
    lifecycle = TicketLifecycle(
        category_id="cat-1",
        ticket_transport=ticket,
        contact_transport=contact,
        identity=identity,
        channel_map=channel_map,
        transcripts=transcripts,
        settings=settings,
        store=JsonFileStore(root / "tickets.json"),
        close_grace_seconds=5.0,
        sleep_fn=sleep,
    )
    router = MessageRouter(
        identity=identity,
        channel_map=channel_map,
        lifecycle=lifecycle,
        media=media,
        transcripts=transcripts,
        settings=settings,
        contact=contact,
        ticket=ticket,
        pipeline=MediaPipeline(contact=contact, fetcher=fetcher, converter=converter),
        self_address="15550000000@s.whatsapp.net",
        sleep_fn=sleep,
    )
    return BridgeEnv(
        root=root,
        contact=contact,
        ticket=ticket,
        sleep=sleep,
        fetcher=fetcher,
        converter=converter,
        identity=identity,
        channel_map=channel_map,
        media=media,
        transcripts=transcripts,
        settings=settings,
        lifecycle=lifecycle,
        router=router,
    )


@pytest.fixture
def anyio_backend() -> str:
    """The code under test is built on asyncio; run anyio tests on that backend only."""
    return "asyncio"
