"""Media classification: the single place a payload becomes a `MediaKind`."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

IMAGE_CONTENT_TYPES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
    "image/bmp": ".bmp",
}
IMAGE_EXTS = set(IMAGE_CONTENT_TYPES.values()) | {".jpeg"}

VIDEO_CONTENT_TYPES = {
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/webm": ".webm",
    "video/x-matroska": ".mkv",
    "video/3gpp": ".3gp",
}
VIDEO_EXTS = set(VIDEO_CONTENT_TYPES.values()) | {".avi", ".m4v"}

AUDIO_CONTENT_TYPES = {
    "audio/aac": ".aac",
    "audio/flac": ".flac",
    "audio/mp4": ".m4a",
    "audio/mpeg": ".mp3",
    "audio/ogg": ".ogg",
    "audio/opus": ".opus",
    "audio/wav": ".wav",
    "audio/webm": ".webm",
}
AUDIO_EXT_TO_CONTENT_TYPE = {
    ".aac": "audio/aac",
    ".flac": "audio/flac",
    ".m4a": "audio/mp4",
    ".mp3": "audio/mpeg",
    ".oga": "audio/ogg",
    ".ogg": "audio/ogg",
    ".opus": "audio/opus",
    ".wav": "audio/wav",
}
VOICE_NOTE_EXTS = {".ogg", ".oga", ".opus"}
GIF_EXTS = {".gif"}
GENERIC_BINARY_MIME_TYPES = {"application/octet-stream", "binary/octet-stream"}
MAX_FILE_NAME_CHARS = 180


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    GIF = "gif"
    VOICE_NOTE = "voice_note"
    AUDIO = "audio"
    DOCUMENT = "document"


NATIVE_CONTENT_TYPES = {
    MediaKind.IMAGE: "image/jpeg",
    MediaKind.VIDEO: "video/mp4",
    MediaKind.GIF: "video/mp4",
    MediaKind.VOICE_NOTE: "audio/ogg; codecs=opus",
    MediaKind.AUDIO: "audio/mpeg",
    MediaKind.DOCUMENT: "application/octet-stream",
}


def normalize_mime_type(mime_type: Optional[str]) -> Optional[str]:
    if not mime_type:
        return None
    base = mime_type.lower().split(";", 1)[0].strip()
    return base or None


def classify_media(
    mime_type: Optional[str],
    file_name: Optional[str] = None,
    *,
    source_url: Optional[str] = None,
    is_voice: bool = False,
    is_animated: bool = False,
) -> MediaKind:
    """Classify a payload from its declared type, then filename heuristics."""

    mime_base = normalize_mime_type(mime_type)
    suffix = _suffix(file_name) or _suffix(_basename_from_url(source_url))

    if mime_base == "image/gif" or suffix in GIF_EXTS or (
        is_animated and mime_base == "video/mp4"
    ):
        return MediaKind.GIF
    if mime_base and mime_base.startswith("image/"):
        return MediaKind.IMAGE
    if mime_base and mime_base.startswith("video/"):
        return MediaKind.VIDEO
    if mime_base and mime_base.startswith("audio/"):
        if is_voice or (mime_base in {"audio/ogg", "audio/opus"} and not file_name):
            return MediaKind.VOICE_NOTE
        return MediaKind.AUDIO
    if mime_base and mime_base not in GENERIC_BINARY_MIME_TYPES:
        return MediaKind.DOCUMENT

    if suffix in IMAGE_EXTS:
        return MediaKind.IMAGE
    if suffix in VIDEO_EXTS:
        return MediaKind.VIDEO
    if suffix in AUDIO_EXT_TO_CONTENT_TYPE:
        if is_voice and suffix in VOICE_NOTE_EXTS:
            return MediaKind.VOICE_NOTE
        return MediaKind.AUDIO
    return MediaKind.DOCUMENT


def extension_for(kind: MediaKind, mime_type: Optional[str], file_name: Optional[str]) -> str:
    suffix = _suffix(file_name)
    if suffix:
        return suffix
    mime_base = normalize_mime_type(mime_type)
    if mime_base:
        for table in (IMAGE_CONTENT_TYPES, VIDEO_CONTENT_TYPES, AUDIO_CONTENT_TYPES):
            if mime_base in table:
                return table[mime_base]
        if mime_base == "image/gif":
            return ".gif"
    return {
        MediaKind.IMAGE: ".jpg",
        MediaKind.VIDEO: ".mp4",
        MediaKind.GIF: ".gif",
        MediaKind.VOICE_NOTE: ".ogg",
        MediaKind.AUDIO: ".mp3",
    }.get(kind, ".bin")


def safe_file_name(
    file_name: Optional[str], kind: MediaKind, mime_type: Optional[str] = None
) -> str:
    """Reduce an untrusted attachment name to a bare file name.

    Directory components (either separator) are dropped. A name that reduces
    to nothing or to a dot entry becomes `<kind><ext>`.
    """

    candidate = (file_name or "").replace("\x00", "").replace("\\", "/")
    candidate = candidate.rsplit("/", 1)[-1].strip()
    if candidate in {"", ".", ".."}:
        return f"{kind.value}{extension_for(kind, mime_type, None)}"
    if len(candidate) > MAX_FILE_NAME_CHARS:
        suffix = Path(candidate).suffix[:16]
        candidate = candidate[: MAX_FILE_NAME_CHARS - len(suffix)] + suffix
    return candidate


def _basename_from_url(url: Optional[str]) -> Optional[str]:
    if not isinstance(url, str) or not url:
        return None
    return Path(urlparse(url).path).name


def _suffix(candidate: Optional[str]) -> str:
    if not isinstance(candidate, str) or not candidate:
        return ""
    return Path(candidate).suffix.lower()


__all__ = [
    "MediaKind",
    "NATIVE_CONTENT_TYPES",
    "classify_media",
    "extension_for",
    "normalize_mime_type",
    "safe_file_name",
]
