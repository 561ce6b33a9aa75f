"""Tests for naming, moving and pid file helpers."""

from __future__ import annotations

import re
import signal
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from utils import (
    CHANNEL_URLS,
    capture_command,
    encode_command,
    log_new_line_file,
    move_to_recordings,
    output_file_name,
    pid_file_name,
    resolve_channel,
    signal_pid_file,
)


def test_resolve_channel() -> None:
    assert resolve_channel("cr1") == CHANNEL_URLS["cr1"]
    assert resolve_channel(" CR2 ") == CHANNEL_URLS["cr2"]

    with pytest.raises(ValueError, match="Unknown channel"):
        resolve_channel("cr3")


def test_names() -> None:
    assert output_file_name("show", 12) == "show-12.ogg"
    assert re.fullmatch(r"ffmpeg-\d{9}\.pid", pid_file_name())


def test_tool_commands(tmp_path: Path) -> None:
    assert capture_command("ffmpeg", "http://radio.invalid/a") == [
        "ffmpeg", "-y", "-i", "http://radio.invalid/a", "-f", "wav", "-",
    ]
    assert encode_command("oggenc", 1, tmp_path / "show-1.ogg") == [
        "oggenc", "-q", "1", "-o", str(tmp_path / "show-1.ogg"), "-",
    ]


def test_log_new_line_file_appends(tmp_path: Path) -> None:
    log_fp = tmp_path / "show.ffmpeg.log"

    log_new_line_file(log_fp, "START show-1.ogg")
    log_new_line_file(log_fp, "START show-2.ogg")

    lines = log_fp.read_text().splitlines()
    assert len(lines) == 2
    assert lines[1].endswith(" START show-2.ogg")


class TestMoveToRecordings:
    """Best-effort move of finished files."""

    def test_moves_file(self, tmp_path: Path) -> None:
        src = tmp_path / "show-1.ogg"
        src.write_bytes(b"ogg")
        dest_dir = tmp_path / "recordings"
        dest_dir.mkdir()

        moved = move_to_recordings(src, dest_dir)

        assert moved == dest_dir / "show-1.ogg"
        assert moved.read_bytes() == b"ogg"
        assert not src.exists()

    def test_missing_file_is_tolerated(self, tmp_path: Path, caplog) -> None:
        assert move_to_recordings(tmp_path / "show-1.ogg", tmp_path) is None
        assert "Could not move show-1.ogg" in caplog.text


class TestSignalPidFile:
    """Reading, deleting and signalling the capture pid file."""

    def test_no_file(self, tmp_path: Path) -> None:
        assert signal_pid_file(tmp_path / "ffmpeg-1.pid") is None

    def test_terminates_running_process(self, tmp_path: Path) -> None:
        proc = subprocess.Popen(["sleep", "30"])
        pid_file = tmp_path / "ffmpeg-1.pid"
        pid_file.write_text(f"{proc.pid}\n")

        try:
            assert signal_pid_file(pid_file) == proc.pid
            assert proc.wait(timeout=5) == -signal.SIGTERM
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
        assert not pid_file.exists()

    def test_dead_process_is_not_an_error(self, tmp_path: Path) -> None:
        pid_file = tmp_path / "ffmpeg-1.pid"
        pid_file.write_text("4242")

        with patch("utils.os.kill", side_effect=ProcessLookupError) as kill:
            assert signal_pid_file(pid_file) == 4242

        kill.assert_called_once_with(4242, signal.SIGTERM)
        assert not pid_file.exists()

    def test_garbage_contents(self, tmp_path: Path) -> None:
        pid_file = tmp_path / "ffmpeg-1.pid"
        pid_file.write_text("not a pid")

        with patch("utils.os.kill") as kill:
            assert signal_pid_file(pid_file) is None

        kill.assert_not_called()
        assert not pid_file.exists()
