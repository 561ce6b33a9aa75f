import os
from pathlib import Path

SCRIPT_DIR = Path(__file__).parent.resolve()

# Stream endpoints for the two channels
URL_CR1 = os.environ.get("PIPE_RECORD_URL_CR1", "")
URL_CR2 = os.environ.get("PIPE_RECORD_URL_CR2", "")
DEFAULT_CHANNEL = "cr2"

# Paths
WORK_DIR = os.environ.get("PIPE_RECORD_WORK_DIR", ".")  # encoder output, tool logs and pid file
RECORDINGS_DIR = os.environ.get("PIPE_RECORD_RECORDINGS_DIR", "recordings")
LOG_DIR = os.environ.get("PIPE_RECORD_LOG_DIR", str(SCRIPT_DIR / "logs"))

# External tools
FFMPEG_BIN = os.environ.get("PIPE_RECORD_FFMPEG", "ffmpeg")
OGGENC_BIN = os.environ.get("PIPE_RECORD_OGGENC", "oggenc")
OGGENC_QUALITY = int(os.environ.get("PIPE_RECORD_OGGENC_QUALITY", "1"))

# Restart policy after the pipeline ends (1s settle + 9s backoff)
SETTLE_SECONDS = float(os.environ.get("PIPE_RECORD_SETTLE_SECONDS", "1"))
BACKOFF_SECONDS = float(os.environ.get("PIPE_RECORD_BACKOFF_SECONDS", "9"))
BACKOFF_MULTIPLIER = float(os.environ.get("PIPE_RECORD_BACKOFF_MULTIPLIER", "1"))
BACKOFF_MAX = float(os.environ.get("PIPE_RECORD_BACKOFF_MAX", "300"))
MAX_RESTARTS = os.environ.get("PIPE_RECORD_MAX_RESTARTS", "")  # empty = retry forever

# Optional webhook notifications on session start/end (Discord-compatible)
WEBHOOK_URL = os.environ.get("PIPE_RECORD_WEBHOOK_URL", "")
WEBHOOK_TIMEOUT = float(os.environ.get("PIPE_RECORD_WEBHOOK_TIMEOUT", "5"))  # seconds per request
