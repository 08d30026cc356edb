"""Canonical filesystem paths for clork configuration and state.

Also hosts the small environment-parsing helpers the runtime modules use
for their tunables.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

log = logging.getLogger(__name__)


def _env_path(name: str, default: Path) -> Path:
    raw = os.environ.get(name)
    return Path(raw).expanduser() if raw else default


def int_env(name: str, default: int, *, min_value: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return max(min_value, int(raw))
    except ValueError:
        log.warning("Invalid %s=%r; falling back to %d", name, raw, default)
        return default


def float_env(name: str, default: float, *, min_value: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return max(min_value, float(raw))
    except ValueError:
        log.warning("Invalid %s=%r; falling back to %s", name, raw, default)
        return default


def bool_env(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


CLORK_CONFIG_DIR = _env_path("CLORK_CONFIG_DIR", Path.home() / ".config" / "clork")

DEFAULT_DB_PATH = _env_path("CLORK_DB_PATH", CLORK_CONFIG_DIR / "clork.db")


def _default_runtime_dir() -> Path:
    user_run = Path(f"/run/user/{os.getuid()}") if hasattr(os, "getuid") else None
    if user_run is not None and user_run.is_dir():
        return user_run / "clork"
    return CLORK_CONFIG_DIR / "run"


RUNTIME_DIR = _env_path("CLORK_RUNTIME_DIR", _default_runtime_dir())
DEFAULT_SOCKET_PATH = RUNTIME_DIR / "daemon.sock"

# Per-task output files live here while the agent runs.
SCRATCH_DIR = _env_path("CLORK_SCRATCH_DIR", Path(tempfile.gettempdir()))

# Files written by the external agent CLI itself.
AGENT_HOME = _env_path("CLORK_AGENT_HOME", Path.home() / ".claude")
CREDENTIALS_PATH = AGENT_HOME / ".credentials.json"
STATS_CACHE_PATH = AGENT_HOME / "stats-cache.json"
