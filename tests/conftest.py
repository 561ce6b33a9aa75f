"""Shared fixtures for pipe_record tests."""

from __future__ import annotations

import asyncio
import logging
import socket
import stat
from pathlib import Path
from typing import Callable

import pytest
import pytest_asyncio
from aiohttp import web

from pipe_record import RetryPolicy, SessionConfig

FAST_RETRY = RetryPolicy(settle_seconds=0, backoff_seconds=0.05)

# Stand-ins for ffmpeg and oggenc. The encoder copies stdin to the file named by -o.
QUICK_CAPTURE = "#!/bin/sh\nprintf 'RIFFdata'\n"
TIMED_CAPTURE = "#!/bin/sh\nprintf 'RIFF'\nsleep 0.2\nprintf 'data'\n"
ENDLESS_CAPTURE = "#!/bin/sh\nprintf 'RIFF'\nexec sleep 30\n"
ENCODER = """#!/bin/sh
out=""
while [ "$#" -gt 0 ]; do
  if [ "$1" = "-o" ]; then out="$2"; shift; fi
  shift
done
cat > "$out"
"""


@pytest.fixture(autouse=True)
def reset_logger():
    """Drop handlers installed by setup_logging so they never outlive a test."""
    yield
    logger = logging.getLogger("pipe_record")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


def _write_tool(path: Path, body: str) -> str:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def tools(tmp_path: Path) -> dict:
    """Paths of executable fake capture/encode tools."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    return {
        "quick": _write_tool(bin_dir / "ffmpeg-quick", QUICK_CAPTURE),
        "timed": _write_tool(bin_dir / "ffmpeg-timed", TIMED_CAPTURE),
        "endless": _write_tool(bin_dir / "ffmpeg-endless", ENDLESS_CAPTURE),
        "missing": str(bin_dir / "does-not-exist"),
        "encoder": _write_tool(bin_dir / "oggenc", ENCODER),
    }


@pytest.fixture
def make_config(tmp_path: Path, tools: dict) -> Callable[..., SessionConfig]:
    work_dir = tmp_path / "work"
    recordings_dir = tmp_path / "recordings"
    work_dir.mkdir()
    recordings_dir.mkdir()

    def _make(**overrides) -> SessionConfig:
        values = dict(
            name="show",
            duration=1,
            channel="cr2",
            url="http://radio.invalid/stream",
            work_dir=work_dir,
            recordings_dir=recordings_dir,
            pid_file=work_dir / "ffmpeg-000000001.pid",
            capture_bin=tools["quick"],
            encoder_bin=tools["encoder"],
            retry=FAST_RETRY,
        )
        values.update(overrides)
        return SessionConfig(**values)

    return _make


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until predicate() is true or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


@pytest_asyncio.fixture
async def slow_webhook():
    """URL of a local webhook that holds every POST until the test ends."""
    release = asyncio.Event()

    async def hold(request: web.Request) -> web.Response:
        await release.wait()
        return web.Response(status=204)

    app = web.Application()
    app.router.add_post("/hook", hold)
    runner = web.AppRunner(app)
    await runner.setup()
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    site = web.SockSite(runner, sock)
    await site.start()
    try:
        yield f"http://127.0.0.1:{sock.getsockname()[1]}/hook"
    finally:
        release.set()
        await runner.cleanup()
