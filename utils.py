"""
utils.py — Utility functions for pipe_record
"""

import datetime as dt
import logging
import os
import shutil
import signal
import time
from pathlib import Path
from typing import Dict, List, Optional

from env import URL_CR1, URL_CR2

logger = logging.getLogger("pipe_record")

CHANNEL_URLS: Dict[str, str] = {"cr1": URL_CR1, "cr2": URL_CR2}


def resolve_channel(channel: str) -> str:
    """Map a channel selector to its stream URL.

    Args:
        channel: The channel selector, ``cr1`` or ``cr2``

    Returns:
        The stream URL configured for the channel

    Raises:
        ValueError: If the channel is not one of the known selectors
    """
    key = channel.lower().strip()
    if key not in CHANNEL_URLS:
        raise ValueError(
            f"Unknown channel \"{channel}\", expected one of: {', '.join(CHANNEL_URLS)}"
        )
    return CHANNEL_URLS[key]


def output_file_name(name: str, sequence: int) -> str:
    return f"{name}-{sequence}.ogg"


def pid_file_name() -> str:
    """Name for the capture pid file, stamped with the nanosecond part of the clock."""
    return f"ffmpeg-{time.time_ns() % 1_000_000_000:09d}.pid"


def capture_command(ffmpeg_bin: str, url: str) -> List[str]:
    return [ffmpeg_bin, "-y", "-i", url, "-f", "wav", "-"]


def encode_command(oggenc_bin: str, quality: int, output_fp: Path) -> List[str]:
    return [oggenc_bin, "-q", str(quality), "-o", str(output_fp), "-"]


def log_new_line_file(path, message):
    with open(path, "a+", encoding="utf-8") as lf:
        lf.write(f"{dt.datetime.now().isoformat()} {message}\n")


def move_to_recordings(src: Path, recordings_dir: Path) -> Optional[Path]:
    """Move a finished recording into the recordings directory.

    Failures are logged and swallowed so that one bad rotation never stops
    the session.

    Args:
        src: The encoded file to move
        recordings_dir: Destination directory

    Returns:
        The new path of the file, or None if the move failed
    """
    dest = recordings_dir / src.name
    try:
        shutil.move(str(src), str(dest))
    except (OSError, shutil.Error) as e:
        logger.warning(f"Could not move {src.name} to {recordings_dir}: {e}")
        return None
    logger.debug(f"Moved {src.name} to {dest}")
    return dest


def signal_pid_file(pid_file: Path, sig: int = signal.SIGTERM) -> Optional[int]:
    """Read a pid file, delete it and signal the process it names.

    A missing file, unreadable contents or a process that already exited
    are not errors.

    Args:
        pid_file: Path to the pid file
        sig: Signal to send

    Returns:
        The pid that was read from the file, or None if there was no usable pid
    """
    if not pid_file.exists():
        return None
    try:
        raw = pid_file.read_text().strip()
    except OSError as e:
        logger.warning(f"Cannot read pid file {pid_file}: {e}")
        return None
    try:
        pid_file.unlink()
    except FileNotFoundError:
        pass
    try:
        pid = int(raw)
    except ValueError:
        logger.warning(f"Pid file {pid_file} does not contain a pid: {raw!r}")
        return None

    logger.debug(f"Killing ffmpeg ({pid})")
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        logger.debug(f"Process {pid} already exited")
    except PermissionError as e:
        logger.warning(f"Not allowed to signal process {pid}: {e}")
    return pid
