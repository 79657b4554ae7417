"""cccontext configuration."""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


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


def _env_optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    try:
        return int(value)
    except ValueError:
        return None


# Root directory the assistant writes session transcripts into
PROJECTS_DIR = Path(
    os.getenv("CLAUDE_PROJECTS_DIR", str(Path.home() / ".claude" / "projects"))
).expanduser()
SESSION_FILE_SUFFIX = ".jsonl"

# Session lifecycle
MAX_SESSIONS = _env_int("CCCONTEXT_MAX_SESSIONS", 100)
SESSION_TTL_MS = _env_int("CCCONTEXT_SESSION_TTL_MS", 3_600_000)
CLEANUP_INTERVAL_MS = _env_int("CCCONTEXT_CLEANUP_INTERVAL_MS", 600_000)
DEBOUNCE_MS = _env_int("CCCONTEXT_DEBOUNCE_MS", 100)

# Rewrite (compaction) heuristics
REWRITE_SIZE_THRESHOLD = _env_int("CCCONTEXT_REWRITE_SIZE_THRESHOLD", 5000)
REWRITE_TIME_THRESHOLD_MS = _env_int("CCCONTEXT_REWRITE_TIME_THRESHOLD_MS", 60_000)

# Prediction
AUTO_COMPACT_ENABLED = _env_bool("CCCONTEXT_AUTO_COMPACT_ENABLED", True)
CONTEXT_WINDOW_OVERRIDE = _env_optional_int("CCCONTEXT_CONTEXT_WINDOW")

DEBUG = _env_bool("CCCONTEXT_DEBUG", False) or _env_bool("DEBUG", False)

# Observability
OTEL_ENABLED = _env_bool("CCCONTEXT_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("CCCONTEXT_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("CCCONTEXT_OTEL_SERVICE_NAME", "cccontext")
PROM_PORT = _env_int("CCCONTEXT_PROM_PORT", 0)


@dataclass
class MonitorSettings:
    """Per-instance snapshot of the monitor tunables."""

    projects_dir: Path = PROJECTS_DIR
    max_sessions: int = MAX_SESSIONS
    session_ttl_seconds: float = SESSION_TTL_MS / 1000
    cleanup_interval_seconds: float = CLEANUP_INTERVAL_MS / 1000
    debounce_seconds: float = DEBOUNCE_MS / 1000
    rewrite_size_threshold: int = REWRITE_SIZE_THRESHOLD
    rewrite_time_threshold_seconds: float = REWRITE_TIME_THRESHOLD_MS / 1000
    auto_compact_enabled: bool = AUTO_COMPACT_ENABLED
    context_window_override: Optional[int] = CONTEXT_WINDOW_OVERRIDE
    debug: bool = DEBUG

    @classmethod
    def from_env(cls) -> "MonitorSettings":
        return cls()
