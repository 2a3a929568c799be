"""Pixel Agents server configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value:
        return default
    return Path(value).expanduser()


# Settings directory shared with the UI layer (layout, seats, cluster.json)
SETTINGS_DIR = _env_path("PIXEL_AGENTS_SETTINGS_DIR", Path.home() / ".pixel-agents")
CLUSTER_FILE = _env_path("PIXEL_AGENTS_CLUSTER_FILE", SETTINGS_DIR / "cluster.json")

# Where Claude Code writes session transcripts: <root>/<project-dir>/<session>.jsonl
CLAUDE_PROJECTS_DIR = _env_path("PIXEL_AGENTS_CLAUDE_PROJECTS_DIR", Path.home() / ".claude" / "projects")
# Same root as seen by the remote shell; left unexpanded so the remote home applies.
REMOTE_PROJECTS_DIR = os.getenv("PIXEL_AGENTS_REMOTE_PROJECTS_DIR", "~/.claude/projects")
SESSION_SUFFIX = ".jsonl"

# Discovery
SCAN_INTERVAL_SECONDS = _env_float("PIXEL_AGENTS_SCAN_INTERVAL_SECONDS", 3.0)
ACTIVITY_WINDOW_MINUTES = _env_int("PIXEL_AGENTS_ACTIVITY_WINDOW_MINUTES", 10)

# Tailing
TAIL_POLL_INTERVAL_SECONDS = _env_float("PIXEL_AGENTS_TAIL_POLL_INTERVAL_SECONDS", 2.0)
TAIL_WATCH_ENABLED = _env_bool("PIXEL_AGENTS_TAIL_WATCH_ENABLED", True)
REMOTE_TAIL_LINES = _env_int("PIXEL_AGENTS_REMOTE_TAIL_LINES", 50)

# Ownership / lifecycle
ROTATION_STALE_SECONDS = _env_float("PIXEL_AGENTS_ROTATION_STALE_SECONDS", 3.0)
STALE_TIMEOUT_SECONDS = _env_float("PIXEL_AGENTS_STALE_TIMEOUT_SECONDS", 10 * 60)
STALE_CHECK_INTERVAL_SECONDS = _env_float("PIXEL_AGENTS_STALE_CHECK_INTERVAL_SECONDS", 60)

# Activity timers
TURN_END_DEBOUNCE_SECONDS = _env_float("PIXEL_AGENTS_TURN_END_DEBOUNCE_SECONDS", 2.0)
COMPLETION_DELAY_SECONDS = _env_float("PIXEL_AGENTS_COMPLETION_DELAY_SECONDS", 0.3)

# Remote shell
SSH_BINARY = os.getenv("PIXEL_AGENTS_SSH_BINARY", "ssh")
SSH_CONNECT_TIMEOUT_SECONDS = _env_int("PIXEL_AGENTS_SSH_CONNECT_TIMEOUT_SECONDS", 3)
SSH_COMMAND_TIMEOUT_SECONDS = _env_float("PIXEL_AGENTS_SSH_COMMAND_TIMEOUT_SECONDS", 10.0)
SSH_STREAM_CONNECT_TIMEOUT_SECONDS = _env_int("PIXEL_AGENTS_SSH_STREAM_CONNECT_TIMEOUT_SECONDS", 5)
SSH_SERVER_ALIVE_INTERVAL_SECONDS = _env_int("PIXEL_AGENTS_SSH_SERVER_ALIVE_INTERVAL_SECONDS", 30)

# Launching new sessions
CLAUDE_BINARY = os.getenv("PIXEL_AGENTS_CLAUDE_BINARY", "claude")

# Subscriber fan-out
SUBSCRIBER_QUEUE_SIZE = _env_int("PIXEL_AGENTS_SUBSCRIBER_QUEUE_SIZE", 1000)

# Observability
OTEL_ENABLED = _env_bool("PIXEL_AGENTS_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("PIXEL_AGENTS_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("PIXEL_AGENTS_OTEL_SERVICE_NAME", "pixel-agents-server")
PROM_PORT = _env_int("PIXEL_AGENTS_PROM_PORT", 9465)

# CORS
FRONTEND_ORIGIN = os.getenv("PIXEL_AGENTS_FRONTEND_ORIGIN", "http://localhost:5173")
