from __future__ import annotations

import pytest

from ticket_bridge.integrations.chat.media import (
    MediaKind,
    classify_media,
    extension_for,
    normalize_mime_type,
    safe_file_name,
)


@pytest.mark.parametrize(
    "mime_type,file_name,kwargs,expected",
    [
        ("image/jpeg", "photo.jpg", {}, MediaKind.IMAGE),
        ("image/gif", None, {}, MediaKind.GIF),
        ("video/mp4", None, {"is_animated": True}, MediaKind.GIF),
        ("video/mp4", "clip.mp4", {}, MediaKind.VIDEO),
        ("audio/ogg; codecs=opus", None, {}, MediaKind.VOICE_NOTE),
        ("audio/ogg", "song.ogg", {}, MediaKind.AUDIO),
        ("audio/mpeg", "note.mp3", {"is_voice": True}, MediaKind.VOICE_NOTE),
        ("application/pdf", "invoice.pdf", {}, MediaKind.DOCUMENT),
        ("application/octet-stream", "picture.PNG", {}, MediaKind.IMAGE),
        (None, None, {"source_url": "https://cdn.example/a/anim.gif?x=1"}, MediaKind.GIF),
        (None, "voice.opus", {"is_voice": True}, MediaKind.VOICE_NOTE),
        (None, "archive.zip", {}, MediaKind.DOCUMENT),
    ],
)
def test_classify_media(mime_type, file_name, kwargs, expected) -> None:
    assert classify_media(mime_type, file_name, **kwargs) is expected


def test_extension_prefers_file_name_then_mime() -> None:
    assert extension_for(MediaKind.IMAGE, "image/png", "Shot.PNG") == ".png"
    assert extension_for(MediaKind.VIDEO, "video/quicktime", None) == ".mov"
    assert extension_for(MediaKind.VOICE_NOTE, None, None) == ".ogg"
    assert extension_for(MediaKind.DOCUMENT, "application/pdf", None) == ".bin"


def test_normalize_mime_type() -> None:
    assert normalize_mime_type(" Audio/OGG; codecs=opus") == "audio/ogg"
    assert normalize_mime_type("") is None


@pytest.mark.parametrize(
    "file_name,expected",
    [
        ("photo.jpg", "photo.jpg"),
        ("/etc/passwd", "passwd"),
        ("../../escaped.txt", "escaped.txt"),
        ("..\\..\\windows.ini", "windows.ini"),
        ("..", "document.bin"),
        ("dir/", "document.bin"),
        (None, "document.bin"),
        ("nul\x00byte.pdf", "nulbyte.pdf"),
    ],
)
def test_safe_file_name_keeps_only_the_base_name(file_name, expected) -> None:
    assert safe_file_name(file_name, MediaKind.DOCUMENT) == expected


def test_safe_file_name_truncates_and_keeps_suffix() -> None:
    name = safe_file_name("a" * 400 + ".mp4", MediaKind.VIDEO, "video/mp4")

    assert len(name) == 180
    assert name.endswith(".mp4")
    assert safe_file_name("", MediaKind.IMAGE, "image/png") == "image.png"
