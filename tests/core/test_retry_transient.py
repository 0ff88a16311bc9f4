from __future__ import annotations

import json
import logging

import httpx
import pytest

from ticket_bridge.core.exceptions import (
    PermanentTransportError,
    TransientError,
    TransientTransportError,
)
from ticket_bridge.core.retry import is_retryable, retry_transient
from ticket_bridge.integrations.bridge.media_pipeline import AttachmentFetcher

URL = "https://cdn.example/attachments/1/clip.mp4"


def test_retry_classification_follows_platform() -> None:
    contact_error = TransientTransportError("busy", platform="contact")
    ticket_error = TransientTransportError("busy", platform="ticket")

    assert is_retryable(contact_error) is True
    assert is_retryable(ticket_error, ("ticket",)) is True
    assert is_retryable(contact_error, ("ticket",)) is False
    assert is_retryable(TransientError("blip"), ("ticket",)) is True
    assert is_retryable(PermanentTransportError("gone", platform="ticket")) is False
    assert is_retryable(ValueError("bad")) is False


@pytest.mark.anyio
async def test_foreign_platform_errors_are_not_retried() -> None:
    calls: list[int] = []

    @retry_transient(max_attempts=3, base_wait=0, platforms=("ticket",))
    async def _send() -> None:
        calls.append(1)
        raise TransientTransportError("rate limited", platform="contact")

    with pytest.raises(TransientTransportError):
        await _send()
    assert len(calls) == 1


@pytest.mark.anyio
async def test_retry_after_is_honoured_and_logged(caplog) -> None:
    logger = logging.getLogger("ticket_bridge.tests.retry")
    calls: list[int] = []

    @retry_transient(max_attempts=3, base_wait=30, max_wait=60, logger=logger)
    async def _send() -> str:
        calls.append(1)
        if len(calls) == 1:
            raise TransientTransportError("slow down", platform="ticket", retry_after=0)
        return "ok"

    with caplog.at_level(logging.WARNING, logger=logger.name):
        assert await _send() == "ok"

    [record] = [r for r in caplog.records if r.name == logger.name]
    payload = json.loads(record.getMessage())
    assert payload["event"] == "retry.scheduled"
    assert payload["attempt"] == 1
    assert payload["platform"] == "ticket"
    assert payload["wait_seconds"] == 0
    assert payload["error_type"] == "TransientTransportError"


@pytest.mark.anyio
async def test_fetcher_reads_retry_after_header() -> None:
    calls: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        if len(calls) == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, content=b"clip")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler=_handler))
    fetcher = AttachmentFetcher(max_attempts=2, base_wait=30, client=client)
    try:
        assert await fetcher.fetch(URL) == b"clip"
    finally:
        await fetcher.close()
    assert len(calls) == 2
