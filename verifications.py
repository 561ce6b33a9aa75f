"""
verifications.py — Startup checks for pipe_record
"""

import logging
import os
import subprocess
from pathlib import Path

logger = logging.getLogger("pipe_record")


def _verify_tool(binary: str, version_flag: str) -> bool:
    """Check that an external tool can be started."""
    try:
        result = subprocess.run(
            [binary, version_flag],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=10,
        )
    except FileNotFoundError:
        logger.warning(f"{binary} not found. Use apt/yum install to add it")
        return False
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"{binary} error: {e}")
        return False

    if result.returncode == 0:
        logger.info(f"{binary} found")
        return True

    logger.warning(f"{binary} check failed (exit code {result.returncode})")
    return False


def verify_tools(ffmpeg_bin: str, oggenc_bin: str) -> bool:
    """Check that the capture and encode tools are installed.

    A missing tool does not stop the session: the recorder treats it like any
    other pipeline failure and keeps retrying, so this only warns.

    Returns:
        bool: True if both tools were found, False otherwise
    """
    ok = _verify_tool(ffmpeg_bin, "-version")
    return _verify_tool(oggenc_bin, "--version") and ok


def _ensure_writable(path: Path, description: str) -> bool:
    """Create ``path`` if needed and prove a file can be written into it."""
    if not path.is_dir():
        try:
            path.mkdir(parents=True)
        except OSError as e:
            logger.error(f"Cannot create {description} at {path}: {e}")
            return False
        logger.info(f"Created {description} at {path}")

    probe = path / f".pipe_record-{os.getpid()}.probe"
    try:
        probe.write_text("")
        probe.unlink()
    except OSError as e:
        logger.error(f"No write permission for {description} at {path}: {e}")
        return False
    return True


def verify_paths(work_dir: Path, recordings_dir: Path) -> bool:
    """Verify the directories a session writes to.

    The working directory receives the encoder output, the tool logs and the
    pid file; finished recordings are moved into the recordings directory.
    Both are created when missing.

    Returns:
        bool: True if both directories are usable, False otherwise
    """
    logger.debug("Verifying file paths and permissions...")
    checks = ((work_dir, "Working directory"), (recordings_dir, "Recordings directory"))
    if not all(_ensure_writable(path, description) for path, description in checks):
        return False
    logger.debug("File path verification successful")
    return True
