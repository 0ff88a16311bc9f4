from __future__ import annotations

import io

import httpx
import pytest
from PIL import Image

from ticket_bridge.core.exceptions import (
    ConversionError,
    PermanentTransportError,
    TransientTransportError,
)
from ticket_bridge.integrations.bridge.media_pipeline import (
    TIER_DOCUMENT,
    TIER_LINK,
    TIER_NATIVE,
    TIER_REENCODE,
    AttachmentFetcher,
    MediaConverter,
    MediaPipeline,
)
from ticket_bridge.integrations.chat.media import MediaKind
from ticket_bridge.integrations.chat.models import Attachment

URL = "https://cdn.example/attachments/1/photo.png"


def _fetcher(handler) -> AttachmentFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AttachmentFetcher(max_attempts=3, base_wait=0, client=client)


def _pipeline(env) -> MediaPipeline:
    return MediaPipeline(contact=env.contact, fetcher=env.fetcher, converter=env.converter)


def _photo() -> Attachment:
    return Attachment(
        attachment_id="a1", file_name="photo.png", mime_type="image/png", url=URL
    )


@pytest.mark.anyio
async def test_fetcher_retries_transient_status_codes() -> None:
    calls: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, content=b"payload")

    fetcher = _fetcher(_handler)
    try:
        assert await fetcher.fetch(URL) == b"payload"
    finally:
        await fetcher.close()
    assert len(calls) == 2


@pytest.mark.anyio
async def test_fetcher_gives_up_after_max_attempts() -> None:
    calls: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(429)

    fetcher = _fetcher(_handler)
    try:
        with pytest.raises(TransientTransportError):
            await fetcher.fetch(URL)
    finally:
        await fetcher.close()
    assert len(calls) == 3


@pytest.mark.anyio
async def test_fetcher_does_not_retry_client_errors() -> None:
    calls: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(404)

    fetcher = _fetcher(_handler)
    try:
        with pytest.raises(PermanentTransportError):
            await fetcher.fetch(URL)
    finally:
        await fetcher.close()
    assert len(calls) == 1


@pytest.mark.anyio
async def test_native_send_is_first_choice(bridge_env) -> None:
    bridge_env.fetcher.payloads[URL] = b"png"

    outcome = await _pipeline(bridge_env).deliver("111", _photo(), caption="see")

    assert outcome.delivered is True
    assert outcome.tier == TIER_NATIVE
    assert outcome.kind is MediaKind.IMAGE
    sent = bridge_env.contact.sent[-1].payload
    assert (sent.text, sent.file_name, sent.media_kind) == ("see", "photo.png", MediaKind.IMAGE)
    assert bridge_env.converter.calls == []


@pytest.mark.anyio
async def test_rejected_native_send_falls_back_to_reencode(bridge_env) -> None:
    bridge_env.fetcher.payloads[URL] = b"png"
    bridge_env.contact.fail_when = lambda _address, payload: payload.file_name == "photo.png"

    outcome = await _pipeline(bridge_env).deliver("111", _photo())

    assert outcome.tier == TIER_REENCODE
    assert bridge_env.converter.calls == ["image"]
    assert bridge_env.contact.sent[-1].payload.file_name == "converted-photo.png"
    assert len(outcome.errors) == 1


@pytest.mark.anyio
async def test_failed_conversion_falls_back_to_document(bridge_env) -> None:
    bridge_env.fetcher.payloads[URL] = b"png"
    bridge_env.converter.fail = True
    bridge_env.contact.fail_when = (
        lambda _address, payload: payload.media_kind is MediaKind.IMAGE
    )

    outcome = await _pipeline(bridge_env).deliver("111", _photo())

    assert outcome.tier == TIER_DOCUMENT
    sent = bridge_env.contact.sent[-1].payload
    assert sent.media_kind is MediaKind.DOCUMENT
    assert sent.mime_type == "application/octet-stream"


@pytest.mark.anyio
async def test_link_is_last_resort(bridge_env) -> None:
    bridge_env.fetcher.payloads[URL] = b"png"
    bridge_env.contact.fail_when = lambda _address, payload: payload.file_path is not None

    outcome = await _pipeline(bridge_env).deliver("111", _photo(), caption="fyi")

    assert outcome.tier == TIER_LINK
    assert bridge_env.contact.texts()[-1] == f"fyi\n{URL}"
    assert len(outcome.errors) == 3


@pytest.mark.anyio
async def test_download_failure_goes_straight_to_link(bridge_env) -> None:
    outcome = await _pipeline(bridge_env).deliver("111", _photo())

    assert outcome.tier == TIER_LINK
    assert bridge_env.contact.texts() == [URL]
    assert outcome.errors[0].startswith("download:")


@pytest.mark.anyio
async def test_documents_skip_reencode_and_can_be_undeliverable(bridge_env) -> None:
    bridge_env.contact.fail_when = lambda _address, _payload: True
    bridge_env.fetcher.payloads["https://cdn.example/a/report.pdf"] = b"%PDF"
    attachment = Attachment(
        attachment_id="d1",
        file_name="report.pdf",
        mime_type="application/pdf",
        url="https://cdn.example/a/report.pdf",
    )

    outcome = await _pipeline(bridge_env).deliver("111", attachment)

    assert outcome.delivered is False
    assert outcome.kind is MediaKind.DOCUMENT
    assert bridge_env.converter.calls == []
    assert [error.split(":", 1)[0] for error in outcome.errors] == [
        TIER_NATIVE,
        TIER_DOCUMENT,
        TIER_LINK,
    ]


@pytest.mark.anyio
async def test_image_reencode_produces_bounded_jpeg() -> None:
    buffer = io.BytesIO()
    Image.new("RGBA", (64, 32), (255, 0, 0, 128)).save(buffer, format="PNG")
    converter = MediaConverter(image_max_edge=16)

    converted = await converter.convert(buffer.getvalue(), MediaKind.IMAGE, file_name="x.png")

    assert converted.file_name == "x.jpg"
    assert converted.mime_type == "image/jpeg"
    with Image.open(io.BytesIO(converted.data)) as image:
        assert image.format == "JPEG"
        assert max(image.size) <= 16


@pytest.mark.anyio
async def test_converter_rejects_undecodable_images_and_documents() -> None:
    converter = MediaConverter()

    with pytest.raises(ConversionError):
        await converter.convert(b"not an image", MediaKind.IMAGE)
    with pytest.raises(ConversionError):
        await converter.convert(b"%PDF", MediaKind.DOCUMENT)


@pytest.mark.anyio
async def test_missing_ffmpeg_is_a_conversion_error() -> None:
    converter = MediaConverter(ffmpeg_binary="/nonexistent/ffmpeg-binary")

    with pytest.raises(ConversionError):
        await converter.convert(b"\x00\x01", MediaKind.VIDEO, file_name="clip.mp4")


@pytest.mark.anyio
async def test_oversized_image_is_a_conversion_error(monkeypatch) -> None:
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    buffer = io.BytesIO()
    Image.new("RGB", (64, 64), (0, 0, 255)).save(buffer, format="PNG")

    with pytest.raises(ConversionError):
        await MediaConverter().convert(buffer.getvalue(), MediaKind.IMAGE, file_name="big.png")


class _BrokenConverter:
    async def convert(self, data: bytes, kind, *, file_name=None):
        raise RuntimeError("codec crashed")


class _BrokenFetcher:
    async def fetch(self, url: str) -> bytes:
        raise OSError("socket closed")

    async def close(self) -> None:
        return None


@pytest.mark.anyio
async def test_unexpected_converter_error_falls_back_to_document(bridge_env) -> None:
    bridge_env.fetcher.payloads[URL] = b"png"
    bridge_env.contact.fail_when = (
        lambda _address, payload: payload.media_kind is MediaKind.IMAGE
    )
    pipeline = MediaPipeline(
        contact=bridge_env.contact, fetcher=bridge_env.fetcher, converter=_BrokenConverter()
    )

    outcome = await pipeline.deliver("111", _photo())

    assert outcome.tier == TIER_DOCUMENT
    assert outcome.errors[1] == f"{TIER_REENCODE}: codec crashed"


@pytest.mark.anyio
async def test_unexpected_download_error_falls_back_to_link(bridge_env) -> None:
    pipeline = MediaPipeline(
        contact=bridge_env.contact, fetcher=_BrokenFetcher(), converter=bridge_env.converter
    )

    outcome = await pipeline.deliver("111", _photo())

    assert outcome.tier == TIER_LINK
    assert outcome.errors == ("download: socket closed",)


@pytest.mark.anyio
async def test_attachment_name_stays_inside_work_dir(bridge_env, tmp_path) -> None:
    bridge_env.fetcher.payloads[URL] = b"png"
    written = []

    def _record(_address, payload) -> bool:
        written.append((payload.file_path, payload.file_path.exists()))
        return False

    bridge_env.contact.fail_when = _record
    attachment = Attachment(
        attachment_id="a1",
        file_name=f"../../{tmp_path.name}/evil.png",
        mime_type="image/png",
        url=URL,
    )

    outcome = await _pipeline(bridge_env).deliver("111", attachment)

    assert outcome.tier == TIER_NATIVE
    [(path, existed)] = written
    assert existed is True
    assert path.name == "native-evil.png"
    assert path.parent.name.startswith("ticket-bridge-media-")
    assert bridge_env.contact.sent[-1].payload.file_name == "evil.png"
    assert not (tmp_path / "evil.png").exists()
