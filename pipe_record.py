#!/usr/bin/env python3
"""
pipe_record.py — record an internet audio stream to rotating ogg files for a fixed duration
Linux only - relies on POSIX pipes and signals.
"""

import argparse
import asyncio
import contextlib
import logging
import logging.handlers
import os
import re
import shlex
import signal
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential,
    wait_fixed,
)

from env import (
    BACKOFF_MAX,
    BACKOFF_MULTIPLIER,
    BACKOFF_SECONDS,
    DEFAULT_CHANNEL,
    FFMPEG_BIN,
    LOG_DIR,
    MAX_RESTARTS,
    OGGENC_BIN,
    OGGENC_QUALITY,
    RECORDINGS_DIR,
    SETTLE_SECONDS,
    WEBHOOK_TIMEOUT,
    WEBHOOK_URL,
    WORK_DIR,
)
from api import send_webhook_notification
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
from verifications import verify_paths, verify_tools


# ───── configuration ───── #
DEFAULT_LOG_LEVEL = 3  # 7 = debug -> 0 = emergency
STOP_TIMEOUT = 10  # seconds a child gets to exit after SIGTERM before SIGKILL
DURATION_RE = re.compile(r"[0-9]+")

# ───── color and terminal setup ───── #
USE_COLOR = sys.stdout.isatty() and ("TERM" in os.environ)
if USE_COLOR:
    RED, GREEN, RESET = "\033[91m", "\033[92m", "\033[0m"
else:
    RED = GREEN = RESET = ""

# ───── logging setup ───── #
EMERGENCY = 60
ALERT = 55
NOTICE = 25
logging.addLevelName(EMERGENCY, "EMERGENCY")
logging.addLevelName(ALERT, "ALERT")
logging.addLevelName(NOTICE, "NOTICE")

# index = LOG_LEVEL value
SYSLOG_LEVELS = (
    EMERGENCY,
    ALERT,
    logging.CRITICAL,
    logging.ERROR,
    logging.WARNING,
    NOTICE,
    logging.INFO,
    logging.DEBUG,
)

logger = logging.getLogger("pipe_record")


class SeverityFormatter(logging.Formatter):
    """Formats records as ``<UTC time> [ severity] message``.

    Debug, info and notice are shown in green, everything else in red, when
    colors are enabled.
    """

    converter = time.gmtime

    def __init__(self, fmt: str, use_color: bool = False):
        super().__init__(fmt, datefmt="%Y-%m-%d %H:%M:%S UTC")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        severity = f"[{record.levelname.lower():>9}]"
        if self.use_color:
            colour = GREEN if record.levelno <= NOTICE else RED
            severity = f"{colour}{severity}{RESET}"
        record.severity = severity
        return super().format(record)


def parse_log_level(raw: Optional[str]) -> int:
    """Parse the LOG_LEVEL environment value.

    Args:
        raw: The raw value, None or empty for the default

    Returns:
        The level as an index into SYSLOG_LEVELS

    Raises:
        ValueError: If the value is not an integer between 0 and 7
    """
    if raw is None or raw.strip() == "":
        return DEFAULT_LOG_LEVEL
    level = int(raw)
    if not 0 <= level < len(SYSLOG_LEVELS):
        raise ValueError(f"LOG_LEVEL must be between 0 and {len(SYSLOG_LEVELS) - 1}, got {level}")
    return level


def setup_logging(level: int, log_dir: Optional[Path] = None) -> None:
    """Configure the pipe_record logger for a LOG_LEVEL value (0-7)."""
    logger.setLevel(SYSLOG_LEVELS[level])
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(SeverityFormatter("%(asctime)s %(severity)s %(message)s", USE_COLOR))
    logger.addHandler(ch)

    if log_dir is None:
        return
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(log_dir / "pipe_record.log"),
            maxBytes=5_000_000,
            backupCount=3,
        )
    except OSError as e:
        logger.warning(f"Cannot write program log in {log_dir}: {e}")
        return
    file_handler.setFormatter(
        SeverityFormatter("%(asctime)s %(severity)s %(name)s: %(message)s")
    )
    logger.addHandler(file_handler)


# ───── session configuration ───── #
@dataclass(frozen=True)
class RetryPolicy:
    """How the rotation loop restarts after the pipeline ends.

    The defaults wait 1 + 9 seconds between rotations and never give up,
    whatever the reason the pipeline ended.
    """

    settle_seconds: float = 1.0
    backoff_seconds: float = 9.0
    backoff_multiplier: float = 1.0  # > 1 grows the backoff exponentially
    backoff_max: float = 300.0
    max_restarts: Optional[int] = None  # None = restart forever

    def stop(self):
        if self.max_restarts is None:
            return stop_never
        return stop_after_attempt(self.max_restarts + 1)

    def wait(self):
        if self.backoff_multiplier <= 1:
            return wait_fixed(min(self.backoff_seconds, self.backoff_max))
        return wait_exponential(
            multiplier=self.backoff_seconds,
            exp_base=self.backoff_multiplier,
            max=self.backoff_max,
        )


def load_retry_policy() -> RetryPolicy:
    max_restarts = int(MAX_RESTARTS) if MAX_RESTARTS.strip() else None
    return RetryPolicy(
        settle_seconds=SETTLE_SECONDS,
        backoff_seconds=BACKOFF_SECONDS,
        backoff_multiplier=BACKOFF_MULTIPLIER,
        backoff_max=BACKOFF_MAX,
        max_restarts=max_restarts,
    )


@dataclass(frozen=True)
class SessionConfig:
    """Everything one recording session needs to know."""

    name: str
    duration: int
    channel: str
    url: str
    work_dir: Path
    recordings_dir: Path
    pid_file: Path
    capture_bin: str = "ffmpeg"
    encoder_bin: str = "oggenc"
    encoder_quality: int = 1
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    webhook_url: str = ""
    webhook_timeout: float = 5.0

    @property
    def capture_log(self) -> Path:
        return self.work_dir / f"{self.name}.ffmpeg.log"

    @property
    def encoder_log(self) -> Path:
        return self.work_dir / f"{self.name}.oggenc.log"

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "SessionConfig":
        work_dir = Path(WORK_DIR)
        return cls(
            name=args.name,
            duration=args.duration,
            channel=args.channel,
            url=resolve_channel(args.channel),
            work_dir=work_dir,
            recordings_dir=Path(RECORDINGS_DIR),
            pid_file=work_dir / pid_file_name(),
            capture_bin=FFMPEG_BIN,
            encoder_bin=OGGENC_BIN,
            encoder_quality=OGGENC_QUALITY,
            retry=load_retry_policy(),
            webhook_url=WEBHOOK_URL,
            webhook_timeout=WEBHOOK_TIMEOUT,
        )


# ───── command line ───── #
class UsageError(Exception):
    """Bad or missing command line options, or help was requested."""


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(f"Invalid use of script: {message}")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="pipe_record",
        add_help=False,
        description="Record an internet audio stream to rotating ogg files.",
        epilog="Set LOG_LEVEL=0..7 (default 3) to control verbosity.",
    )
    parser.add_argument("-d", dest="duration", metavar="arg", default="", help="Duration (in seconds)")
    parser.add_argument(
        "-n",
        dest="name",
        metavar="arg",
        default="",
        help="Output file name (a number will be appended at the end)",
    )
    parser.add_argument("-x", dest="debug", action="store_true", help="Enables debug mode")
    parser.add_argument("-h", dest="help", action="store_true", help="This page")
    parser.add_argument(
        "-c",
        dest="channel",
        metavar="arg",
        default=DEFAULT_CHANNEL,
        help=f"Channel {' or '.join(CHANNEL_URLS)} (default: {DEFAULT_CHANNEL})",
    )
    return parser


def parse_cli(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse and validate the command line.

    Raises:
        UsageError: On invalid options, failed validation or ``-h``
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.help:
        raise UsageError(f"Help using {parser.prog}")

    if not DURATION_RE.fullmatch(args.duration):
        raise UsageError(
            f"Duration must be an integer (of seconds), received \"{args.duration}\""
        )
    if not args.name:
        raise UsageError("Programme name must not be empty")

    channel = args.channel.lower().strip()
    if channel not in CHANNEL_URLS:
        raise UsageError(
            f"Channel must be one of {', '.join(CHANNEL_URLS)}, received \"{args.channel}\""
        )

    args.duration = int(args.duration)
    args.channel = channel
    return args


def print_help(message: str) -> None:
    print("")
    print(f" {message}")
    print("")
    print(build_parser().format_help())


# ───── recorder ───── #
class PipelineEnded(Exception):
    """The capture→encode pipeline of one rotation exited."""

    def __init__(self, sequence: int, returncodes: Optional[Tuple[int, int]]):
        self.sequence = sequence
        self.returncodes = returncodes
        if returncodes is None:
            detail = "pipeline could not be started"
        else:
            detail = f"ffmpeg exit {returncodes[0]}, oggenc exit {returncodes[1]}"
        super().__init__(f"rotation {sequence} ended ({detail})")


async def _reap(proc: Optional[asyncio.subprocess.Process], label: str, terminate: bool = False):
    """Wait for a child to exit, killing it if it outlives STOP_TIMEOUT."""
    if proc is None or proc.returncode is not None:
        return
    if terminate:
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=STOP_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning(f"{label} ({proc.pid}) did not exit after terminate, sending KILL signal")
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


class RecorderLoop:
    """Runs capture→encode rotations in the background until stopped.

    Each rotation pipes the capture tool's stdout into the encoder, writing
    ``<name>-<n>.ogg`` into the working directory, and moves the result into
    the recordings directory once both tools have exited. Every pipeline exit
    counts as a premature end and is followed by the restart backoff of the
    session's RetryPolicy.

    Use as an async context manager: the loop starts on entry and every child
    process is terminated on exit.
    """

    def __init__(self, config: SessionConfig):
        self.config = config
        self.sequence = 0
        self.task: Optional[asyncio.Task] = None
        self.capture_proc: Optional[asyncio.subprocess.Process] = None
        self.encoder_proc: Optional[asyncio.subprocess.Process] = None
        self.current_output: Optional[Path] = None
        self.recordings: List[Path] = []

    def start(self):
        """Start the rotation loop as an asyncio task."""
        logger.log(
            ALERT,
            f"Start recording \"{self.config.name}\" (duration: {self.config.duration})",
        )
        logger.debug(f"pid_file_name: {self.config.pid_file}")
        logger.debug(f"fileno: {self.sequence}")
        self.task = asyncio.create_task(self._rotation_loop())

    def is_recording(self) -> bool:
        return bool(self.task and not self.task.done())

    async def _rotation_loop(self):
        retry = self.config.retry
        async for attempt in AsyncRetrying(
            stop=retry.stop(),
            wait=retry.wait(),
            retry=retry_if_exception_type(PipelineEnded),
            before_sleep=self._log_premature_end,
            reraise=True,
        ):
            with attempt:
                await self._rotate()

    def _log_premature_end(self, retry_state: RetryCallState):
        backoff = retry_state.next_action.sleep if retry_state.next_action else 0
        total = self.config.retry.settle_seconds + backoff
        logger.log(ALERT, f"ffmpeg ended prematurely, going to sleep for {total:g} seconds")

    async def _rotate(self):
        """Record one output file. Always ends by raising PipelineEnded."""
        self.sequence += 1
        output_fp = self.config.work_dir / output_file_name(self.config.name, self.sequence)
        self.current_output = output_fp
        logger.debug(f"output_file: {output_fp}")
        logger.log(ALERT, f"Recording to {output_fp.name}")

        returncodes = None
        try:
            returncodes = await self._run_pipeline(output_fp)
        except OSError as e:
            logger.error(f"Could not start pipeline for {output_fp.name}: {e}")

        # on cancellation these stay set so stop() can reap them
        self.capture_proc = None
        self.encoder_proc = None
        self.current_output = None
        self._collect(output_fp)
        await asyncio.sleep(self.config.retry.settle_seconds)
        raise PipelineEnded(self.sequence, returncodes)

    async def _run_pipeline(self, output_fp: Path) -> Tuple[int, int]:
        cfg = self.config
        capture_cmd = capture_command(cfg.capture_bin, cfg.url)
        encode_cmd = encode_command(cfg.encoder_bin, cfg.encoder_quality, output_fp)
        logger.debug(f"+ {shlex.join(capture_cmd)} | {shlex.join(encode_cmd)}")

        log_new_line_file(cfg.capture_log, f"START {output_fp.name}")
        log_new_line_file(cfg.encoder_log, f"START {output_fp.name}")

        with open(cfg.capture_log, "ab") as capture_log, open(cfg.encoder_log, "ab") as encoder_log:
            read_fd, write_fd = os.pipe()
            try:
                try:
                    self.capture_proc = await asyncio.create_subprocess_exec(
                        *capture_cmd,
                        stdin=asyncio.subprocess.DEVNULL,
                        stdout=write_fd,
                        stderr=capture_log,
                    )
                finally:
                    os.close(write_fd)
                try:
                    cfg.pid_file.write_text(f"{self.capture_proc.pid}\n")
                except OSError:
                    await _reap(self.capture_proc, "ffmpeg", terminate=True)
                    raise

                try:
                    self.encoder_proc = await asyncio.create_subprocess_exec(
                        *encode_cmd,
                        stdin=read_fd,
                        stdout=asyncio.subprocess.DEVNULL,
                        stderr=encoder_log,
                    )
                except OSError:
                    await _reap(self.capture_proc, "ffmpeg", terminate=True)
                    cfg.pid_file.unlink(missing_ok=True)
                    raise
            finally:
                os.close(read_fd)

            capture_rc, encoder_rc = await asyncio.gather(
                self.capture_proc.wait(), self.encoder_proc.wait()
            )

        cfg.pid_file.unlink(missing_ok=True)
        logger.debug(f"Pipeline exited (ffmpeg: {capture_rc}, oggenc: {encoder_rc})")
        return capture_rc, encoder_rc

    def _collect(self, output_fp: Path):
        moved = move_to_recordings(output_fp, self.config.recordings_dir)
        if moved is not None:
            self.recordings.append(moved)

    async def stop(self):
        """Stop the loop and every child it started.

        Safe to call more than once.
        """
        if self.task is not None:
            if not self.task.done():
                logger.debug("Killing loop")
                self.task.cancel()
            with contextlib.suppress(asyncio.CancelledError, PipelineEnded):
                await self.task

        capture_proc, encoder_proc = self.capture_proc, self.encoder_proc
        pid = signal_pid_file(self.config.pid_file)
        if capture_proc is not None and pid != capture_proc.pid:
            with contextlib.suppress(ProcessLookupError):
                capture_proc.terminate()
        await _reap(capture_proc, "ffmpeg")
        # the encoder finishes the file on EOF once the capture is gone
        await _reap(encoder_proc, "oggenc")
        self.capture_proc = None
        self.encoder_proc = None

        if self.current_output is not None:
            if self.current_output.exists():
                self._collect(self.current_output)
            self.current_output = None

    async def __aenter__(self) -> "RecorderLoop":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


class Session:
    """One invocation: record until the duration elapses or a signal arrives.

    Exit status of run(): 0 when the duration elapsed, 128 + signal number
    when interrupted, 1 when the retry policy gave up.
    """

    def __init__(self, config: SessionConfig, handle_signals: bool = True):
        self.config = config
        self.recorder = RecorderLoop(config)
        self.handle_signals = handle_signals
        self.stop_evt: Optional[asyncio.Event] = None
        self.received_signal: Optional[int] = None

    def request_stop(self, signum: int = signal.SIGTERM):
        self.received_signal = signum
        if self.stop_evt is not None:
            self.stop_evt.set()

    async def run(self) -> int:
        self.stop_evt = asyncio.Event()
        if self.received_signal is not None:
            self.stop_evt.set()

        loop = asyncio.get_running_loop()
        if self.handle_signals:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.request_stop, sig)

        notify_start = asyncio.create_task(
            send_webhook_notification(
                self.config.webhook_url,
                "start",
                self.config.name,
                f"Recording channel {self.config.channel} for {self.config.duration}s",
                timeout=self.config.webhook_timeout,
            )
        )
        try:
            try:
                async with self.recorder:
                    status = await self._wait()
            finally:
                logger.info("Cleaning up. Done")
                # drop the start notice if it is still in flight
                notify_start.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await notify_start

            await send_webhook_notification(
                self.config.webhook_url,
                "stop" if status == 0 else "failed",
                self.config.name,
                f"Recording ended with status {status}",
                {"Files": str(len(self.recorder.recordings))},
                timeout=self.config.webhook_timeout,
            )
        finally:
            if self.handle_signals:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(sig)
        return status

    async def _wait(self) -> int:
        timer = asyncio.create_task(asyncio.sleep(self.config.duration))
        stopper = asyncio.create_task(self.stop_evt.wait())
        try:
            done, _ = await asyncio.wait(
                {timer, stopper, self.recorder.task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            timer.cancel()
            stopper.cancel()

        if stopper in done:
            signum = self.received_signal or signal.SIGTERM
            logger.log(NOTICE, f"Received {signal.Signals(signum).name}, killing recorder")
            return 128 + signum
        if timer in done:
            logger.log(ALERT, "time's up, killing recorder")
            return 0

        error = self.recorder.task.exception()
        logger.error(f"Giving up after {self.recorder.sequence} rotations: {error}")
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Application entry point.

    Reads LOG_LEVEL, parses the command line, verifies the directories the
    session writes to and runs the session on a fresh event loop.
    """
    try:
        level = parse_log_level(os.environ.get("LOG_LEVEL"))
    except ValueError as e:
        setup_logging(0)
        logger.log(EMERGENCY, f"Cannot continue without loglevel. {e}")
        return 1

    try:
        args = parse_cli(argv)
    except UsageError as e:
        print_help(str(e))
        return 1

    if args.debug:
        level = len(SYSLOG_LEVELS) - 1
    setup_logging(level, Path(LOG_DIR))
    for key, value in vars(args).items():
        logger.debug(f"cli arg {key} = {value}")

    config = SessionConfig.from_args(args)
    if not config.url:
        logger.warning(f"No stream URL configured for channel {config.channel}")

    if not verify_paths(config.work_dir, config.recordings_dir):
        logger.error("Exiting due to file system permission/access errors.")
        return 1
    verify_tools(config.capture_bin, config.encoder_bin)

    return asyncio.run(Session(config).run())


if __name__ == "__main__":
    sys.exit(main())
