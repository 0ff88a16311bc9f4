"""Download, re-encode and degrade-on-failure delivery of agent attachments.

Delivery to the contact walks a fixed ladder; each tier fails on its own and
hands over to the next:

1. native send of the downloaded bytes as the classified `MediaKind`
2. re-encode/compress (Pillow for images, ffmpeg otherwise) and resend
3. send as a generic document
4. send the caption plus the bare attachment URL
"""

from __future__ import annotations

import asyncio
import io
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import httpx
from PIL import Image, UnidentifiedImageError

from ...core.exceptions import (
    ConversionError,
    DegradableMediaError,
    PermanentTransportError,
    TransientTransportError,
)
from ...core.logging_utils import log_event
from ...core.retry import retry_transient
from ..chat.media import NATIVE_CONTENT_TYPES, MediaKind, classify_media, safe_file_name
from ..chat.models import Attachment, OutgoingMessage
from ..chat.transport import ContactTransport

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MAX_EDGE = 1600
DEFAULT_JPEG_QUALITY = 80
DEFAULT_FFMPEG_TIMEOUT_SECONDS = 120.0
_EVEN_SCALE = "scale=trunc(iw/2)*2:trunc(ih/2)*2"

TIER_NATIVE = "native"
TIER_REENCODE = "reencode"
TIER_DOCUMENT = "document"
TIER_LINK = "link"
DOWNLOAD_PLATFORM = "ticket"


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


class AttachmentFetcher:
    """Downloads attachment URLs; transient HTTP failures are retried."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        max_attempts: int = 3,
        base_wait: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            timeout=timeout_seconds, follow_redirects=True
        )
        self._fetch = retry_transient(
            max_attempts=max_attempts,
            base_wait=base_wait,
            platforms=(DOWNLOAD_PLATFORM,),
            logger=logger,
        )(self._fetch_once)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AttachmentFetcher":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    async def fetch(self, url: str) -> bytes:
        return await self._fetch(url)

    async def _fetch_once(self, url: str) -> bytes:
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            if status_code == 429 or 500 <= status_code < 600:
                raise TransientTransportError(
                    f"attachment download failed: status={status_code}",
                    platform=DOWNLOAD_PLATFORM,
                    retry_after=_retry_after(exc.response),
                ) from exc
            raise PermanentTransportError(
                f"attachment download failed: status={status_code}", platform=DOWNLOAD_PLATFORM
            ) from exc
        except (
            httpx.ConnectError,
            httpx.ReadError,
            httpx.WriteError,
            httpx.ConnectTimeout,
            httpx.ReadTimeout,
            httpx.WriteTimeout,
        ) as exc:
            raise TransientTransportError(
                f"attachment download network error: {type(exc).__name__}",
                platform=DOWNLOAD_PLATFORM,
            ) from exc
        except httpx.HTTPError as exc:
            raise PermanentTransportError(
                f"attachment download failed: {exc}", platform=DOWNLOAD_PLATFORM
            ) from exc
        return response.content


@dataclass(frozen=True)
class ConvertedMedia:
    data: bytes
    file_name: str
    mime_type: str


class MediaConverter:
    def __init__(
        self,
        *,
        ffmpeg_binary: str = "ffmpeg",
        timeout_seconds: float = DEFAULT_FFMPEG_TIMEOUT_SECONDS,
        image_max_edge: int = DEFAULT_IMAGE_MAX_EDGE,
    ) -> None:
        self._ffmpeg = ffmpeg_binary
        self._timeout_seconds = timeout_seconds
        self._image_max_edge = image_max_edge

    async def convert(
        self, data: bytes, kind: MediaKind, *, file_name: Optional[str] = None
    ) -> ConvertedMedia:
        stem = Path(file_name).stem if file_name else kind.value
        if kind is MediaKind.IMAGE:
            converted = await asyncio.to_thread(self._reencode_image, data)
            return ConvertedMedia(converted, f"{stem}.jpg", "image/jpeg")
        if kind is MediaKind.GIF:
            converted = await self._run_ffmpeg(
                data,
                input_suffix=Path(file_name).suffix if file_name else ".gif",
                output_suffix=".mp4",
                args=["-movflags", "faststart", "-pix_fmt", "yuv420p", "-vf", _EVEN_SCALE,
                      "-b:v", "1M", "-maxrate", "1M", "-bufsize", "1M", "-an"],
            )
            return ConvertedMedia(converted, f"{stem}.mp4", "video/mp4")
        if kind is MediaKind.VIDEO:
            converted = await self._run_ffmpeg(
                data,
                input_suffix=Path(file_name).suffix if file_name else ".mp4",
                output_suffix=".mp4",
                args=["-movflags", "faststart", "-pix_fmt", "yuv420p", "-vf", _EVEN_SCALE,
                      "-b:v", "1M", "-maxrate", "1M", "-bufsize", "1M",
                      "-c:a", "aac", "-b:a", "128k"],
            )
            return ConvertedMedia(converted, f"{stem}.mp4", "video/mp4")
        if kind is MediaKind.VOICE_NOTE:
            converted = await self._run_ffmpeg(
                data,
                input_suffix=Path(file_name).suffix if file_name else ".ogg",
                output_suffix=".ogg",
                args=["-vn", "-c:a", "libopus", "-b:a", "32k"],
            )
            return ConvertedMedia(converted, f"{stem}.ogg", "audio/ogg; codecs=opus")
        if kind is MediaKind.AUDIO:
            converted = await self._run_ffmpeg(
                data,
                input_suffix=Path(file_name).suffix if file_name else ".bin",
                output_suffix=".mp3",
                args=["-vn", "-c:a", "libmp3lame", "-b:a", "128k"],
            )
            return ConvertedMedia(converted, f"{stem}.mp3", "audio/mpeg")
        raise ConversionError(f"no re-encoding for {kind.value}", tier=TIER_REENCODE)

    def _reencode_image(self, data: bytes) -> bytes:
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                rgb = image.convert("RGB")
        except (
            UnidentifiedImageError,
            Image.DecompressionBombError,
            ValueError,
            OSError,
        ) as exc:
            raise ConversionError(f"image decode failed: {exc}", tier=TIER_REENCODE) from exc
        rgb.thumbnail((self._image_max_edge, self._image_max_edge))
        buffer = io.BytesIO()
        rgb.save(buffer, format="JPEG", quality=DEFAULT_JPEG_QUALITY, optimize=True)
        return buffer.getvalue()

    async def _run_ffmpeg(
        self,
        data: bytes,
        *,
        input_suffix: str,
        output_suffix: str,
        args: Sequence[str],
    ) -> bytes:
        with tempfile.TemporaryDirectory(prefix="ticket-bridge-ffmpeg-") as tmp:
            source = Path(tmp) / f"input{input_suffix or '.bin'}"
            target = Path(tmp) / f"output{output_suffix}"
            source.write_bytes(data)
            try:
                proc = await asyncio.create_subprocess_exec(
                    self._ffmpeg,
                    "-y",
                    "-loglevel",
                    "error",
                    "-i",
                    str(source),
                    *args,
                    str(target),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except (FileNotFoundError, OSError) as exc:
                raise ConversionError(
                    f"ffmpeg unavailable: {exc}", tier=TIER_REENCODE
                ) from exc
            try:
                _, stderr = await asyncio.wait_for(
                    proc.communicate(), timeout=self._timeout_seconds
                )
            except asyncio.TimeoutError as exc:
                proc.kill()
                await proc.wait()
                raise ConversionError("ffmpeg timed out", tier=TIER_REENCODE) from exc
            if proc.returncode != 0 or not target.exists():
                detail = stderr.decode("utf-8", errors="replace").strip()[:200]
                raise ConversionError(
                    f"ffmpeg failed: rc={proc.returncode} {detail}", tier=TIER_REENCODE
                )
            return target.read_bytes()


@dataclass(frozen=True)
class DeliveryOutcome:
    kind: MediaKind
    delivered: bool
    tier: Optional[str] = None
    errors: tuple[str, ...] = ()


class MediaPipeline:
    def __init__(
        self,
        *,
        contact: ContactTransport,
        fetcher: AttachmentFetcher,
        converter: MediaConverter,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._contact = contact
        self._fetcher = fetcher
        self._converter = converter
        self._logger = logger or logging.getLogger(__name__)

    async def deliver(
        self, phone: str, attachment: Attachment, *, caption: Optional[str] = None
    ) -> DeliveryOutcome:
        kind = classify_media(
            attachment.mime_type,
            attachment.file_name,
            source_url=attachment.url,
            is_voice=attachment.is_voice,
            is_animated=attachment.is_animated,
        )
        errors: list[str] = []
        data: Optional[bytes] = None
        if attachment.url:
            try:
                data = await self._fetcher.fetch(attachment.url)
            except Exception as exc:
                errors.append(f"download: {exc}")
                log_event(
                    self._logger,
                    logging.WARNING,
                    "bridge.media.download_failed",
                    phone=phone,
                    attachment_id=attachment.attachment_id,
                    exc=exc,
                )

        file_name = safe_file_name(attachment.file_name, kind, attachment.mime_type)
        if data is not None:
            with tempfile.TemporaryDirectory(prefix="ticket-bridge-media-") as tmp:
                work_dir = Path(tmp)
                native_mime = attachment.mime_type or NATIVE_CONTENT_TYPES[kind]
                tiers = [(TIER_NATIVE, kind)]
                if kind is not MediaKind.DOCUMENT:
                    tiers.append((TIER_REENCODE, kind))
                tiers.append((TIER_DOCUMENT, MediaKind.DOCUMENT))
                for tier, tier_kind in tiers:
                    try:
                        if tier == TIER_REENCODE:
                            converted = await self._converter.convert(
                                data, kind, file_name=file_name
                            )
                            payload_bytes = converted.data
                            payload_name = safe_file_name(
                                converted.file_name, kind, converted.mime_type
                            )
                            payload_mime = converted.mime_type
                        else:
                            payload_bytes = data
                            payload_name = file_name
                            payload_mime = (
                                native_mime
                                if tier == TIER_NATIVE
                                else "application/octet-stream"
                            )
                        path = work_dir / f"{tier}-{payload_name}"
                        path.write_bytes(payload_bytes)
                        await self._send(
                            phone,
                            OutgoingMessage(
                                text=caption,
                                file_path=path,
                                file_name=payload_name,
                                mime_type=payload_mime,
                                media_kind=tier_kind,
                            ),
                            tier=tier,
                        )
                    except Exception as exc:
                        errors.append(f"{tier}: {exc}")
                        log_event(
                            self._logger,
                            logging.WARNING,
                            "bridge.media.tier_failed",
                            phone=phone,
                            attachment_id=attachment.attachment_id,
                            tier=tier,
                            kind=kind.value,
                            exc=exc,
                        )
                        continue
                    return self._outcome(phone, attachment, kind, tier, errors)

        if attachment.url:
            text = f"{caption}\n{attachment.url}" if caption else attachment.url
            try:
                await self._send(phone, OutgoingMessage(text=text), tier=TIER_LINK)
            except DegradableMediaError as exc:
                errors.append(f"{TIER_LINK}: {exc}")
            else:
                return self._outcome(phone, attachment, kind, TIER_LINK, errors)

        log_event(
            self._logger,
            logging.ERROR,
            "bridge.media.undeliverable",
            phone=phone,
            attachment_id=attachment.attachment_id,
            kind=kind.value,
            errors=errors,
        )
        return DeliveryOutcome(kind=kind, delivered=False, errors=tuple(errors))

    async def _send(self, phone: str, payload: OutgoingMessage, *, tier: str) -> None:
        try:
            await self._contact.send_message(phone, payload)
        except DegradableMediaError:
            raise
        except Exception as exc:
            raise DegradableMediaError(f"send failed: {exc}", tier=tier) from exc

    def _outcome(
        self,
        phone: str,
        attachment: Attachment,
        kind: MediaKind,
        tier: str,
        errors: list[str],
    ) -> DeliveryOutcome:
        log_event(
            self._logger,
            logging.INFO if tier == TIER_NATIVE else logging.WARNING,
            "bridge.media.delivered",
            phone=phone,
            attachment_id=attachment.attachment_id,
            kind=kind.value,
            tier=tier,
        )
        return DeliveryOutcome(kind=kind, delivered=True, tier=tier, errors=tuple(errors))


__all__ = [
    "AttachmentFetcher",
    "ConvertedMedia",
    "DeliveryOutcome",
    "MediaConverter",
    "MediaPipeline",
    "TIER_DOCUMENT",
    "TIER_LINK",
    "TIER_NATIVE",
    "TIER_REENCODE",
]
