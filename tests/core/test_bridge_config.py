from __future__ import annotations

from pathlib import Path

import pytest

from ticket_bridge.core.config import (
    CONFIG_FILENAME,
    BridgeConfig,
    BridgeConfigError,
    load_bridge_config,
)


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    config = load_bridge_config(tmp_path)

    assert config.storage_root == tmp_path / "data"
    assert config.close_grace_seconds == 5.0
    assert config.special_mention_delay_seconds == 1.0
    assert config.dedupe_cache_size == 1000
    assert config.transcript_scan_depth == 3
    assert config.media.ffmpeg_binary == "ffmpeg"
    assert config.log.path == tmp_path / "logs" / "ticket-bridge.log"
    assert config.log.level == "INFO"


def test_yaml_values_override_defaults(tmp_path: Path) -> None:
    (tmp_path / CONFIG_FILENAME).write_text(
        "\n".join(
            [
                "storage_root: /srv/bridge",
                "close_grace_seconds: 0",
                "dedupe_cache_size: 50",
                "transcripts:",
                "  scan_depth: 5",
                "media:",
                "  ffmpeg_binary: /usr/local/bin/ffmpeg",
                "  max_download_retries: 4",
                "log:",
                "  level: debug",
            ]
        ),
        encoding="utf-8",
    )

    config = load_bridge_config(tmp_path)

    assert config.storage_root == Path("/srv/bridge")
    assert config.close_grace_seconds == 0.0
    assert config.dedupe_cache_size == 50
    assert config.transcript_scan_depth == 5
    assert config.media.ffmpeg_binary == "/usr/local/bin/ffmpeg"
    assert config.media.max_download_retries == 4
    assert config.log.level == "DEBUG"


@pytest.mark.parametrize(
    "raw",
    [
        {"close_grace_seconds": -1},
        {"close_grace_seconds": "soon"},
        {"dedupe_cache_size": True},
        {"storage_root": ""},
        {"log": {"level": "chatty"}},
        {"media": {"ffmpeg_binary": "  "}},
    ],
)
def test_invalid_values_raise(tmp_path: Path, raw: dict) -> None:
    with pytest.raises(BridgeConfigError):
        BridgeConfig.from_raw(root=tmp_path, raw=raw)


def test_non_mapping_yaml_is_rejected(tmp_path: Path) -> None:
    (tmp_path / CONFIG_FILENAME).write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(BridgeConfigError):
        load_bridge_config(tmp_path)
