"""Account usage state: rate limits, spend, and locally cached agent stats.

``UsageState`` is process-wide and never persisted. It is fed from three
places: the quota probe in ``clork.usage_poller``, stream records passing
through the scheduler (``UsageTracker.track_event``), and files the agent
CLI keeps under its home directory (``LocalFileReader``).
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from clork.paths import CREDENTIALS_PATH, STATS_CACHE_PATH
from clork.supervisor import AGENT_COMMAND

log = logging.getLogger(__name__)

LOCAL_CACHE_SECONDS = 30.0
RECENT_TASKS_LIMIT = 50
DAILY_ACTIVITY_DAYS = 14
# Utilization at or below this is read as a 0-1 fraction, above as a percentage.
FRACTION_THRESHOLD = 1.5
CLI_TIMEOUT_SECONDS = 10


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def normalize_utilization(value: object) -> float | None:
    """Return utilization as a 0-100 percentage, or None if not numeric."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value <= FRACTION_THRESHOLD:
        return float(value) * 100
    return float(value)


@dataclass
class AccountInfo:
    email: str | None = None
    org_id: str | None = None
    org_name: str | None = None
    subscription_type: str | None = None
    rate_limit_tier: str | None = None
    auth_method: str | None = None


@dataclass
class RateLimit:
    status: str
    resets_at: int | None
    utilization: float | None


@dataclass
class OverageInfo:
    overage_status: str = "unknown"
    is_using_overage: bool = False
    overage_disabled_reason: str | None = None


@dataclass
class LocalStats:
    total_sessions: int = 0
    total_messages: int = 0
    daily_activity: list[dict[str, Any]] = field(default_factory=list)
    model_usage: dict[str, dict[str, float]] = field(default_factory=dict)
    first_session_date: str | None = None


@dataclass
class TaskCost:
    cost_usd: float
    duration_ms: int
    timestamp: str


@dataclass
class UsageState:
    account: AccountInfo = field(default_factory=AccountInfo)
    local_stats: LocalStats = field(default_factory=LocalStats)
    # monotonic seconds of the last local-file refresh; 0 forces a re-read
    local_files_read_at: float = 0.0
    rate_limits: dict[str, RateLimit] = field(default_factory=dict)
    overage: OverageInfo = field(default_factory=OverageInfo)
    task_costs: dict[str, TaskCost] = field(default_factory=dict)
    total_cost_usd: float = 0.0
    total_duration_ms: int = 0
    task_count: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    last_updated_at: str = field(default_factory=_now_iso)

    def touch(self) -> None:
        self.last_updated_at = _now_iso()


class LocalFileReader:
    """Reads the agent CLI's credential file, auth status and stats cache.

    Reads are cached for ``cache_seconds``; ``refresh(force=True)`` bypasses
    the cache.
    """

    def __init__(
        self,
        state: UsageState,
        *,
        credentials_path: Path = CREDENTIALS_PATH,
        stats_cache_path: Path = STATS_CACHE_PATH,
        agent_command: str = AGENT_COMMAND,
        cache_seconds: float = LOCAL_CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state = state
        self.credentials_path = credentials_path
        self.stats_cache_path = stats_cache_path
        self.agent_command = agent_command
        self.cache_seconds = cache_seconds
        self._clock = clock

    def refresh(self, *, force: bool = False) -> bool:
        """Re-read local files unless the cache is fresh. Returns whether a read happened."""
        now = self._clock()
        if (
            not force
            and self.state.local_files_read_at
            and now - self.state.local_files_read_at < self.cache_seconds
        ):
            return False
        self.state.local_files_read_at = now
        self.read_credentials()
        self.read_auth_status()
        self.read_stats_cache()
        return True

    def invalidate(self) -> None:
        self.state.local_files_read_at = 0.0

    def read_credentials(self) -> None:
        if not self.credentials_path.exists():
            return
        try:
            data = json.loads(self.credentials_path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("Failed to read credentials: %s", exc)
            return
        oauth = data.get("claudeAiOauth") if isinstance(data, dict) else None
        if isinstance(oauth, dict):
            self.state.account.subscription_type = oauth.get("subscriptionType") or None
            self.state.account.rate_limit_tier = oauth.get("rateLimitTier") or None

    def read_auth_status(self) -> None:
        try:
            result = subprocess.run(
                [*shlex.split(self.agent_command), "auth", "status"],
                capture_output=True,
                text=True,
                timeout=CLI_TIMEOUT_SECONDS,
                check=True,
            )
            data = json.loads(result.stdout.strip())
        except (OSError, subprocess.SubprocessError, json.JSONDecodeError) as exc:
            log.warning("Failed to read auth status: %s", exc)
            return
        if not isinstance(data, dict):
            return
        account = self.state.account
        account.email = data.get("email") or None
        account.org_id = data.get("orgId") or None
        account.org_name = data.get("orgName") or None
        account.auth_method = data.get("authMethod") or None
        if data.get("subscriptionType"):
            account.subscription_type = data["subscriptionType"]

    def read_stats_cache(self) -> None:
        if not self.stats_cache_path.exists():
            return
        try:
            data = json.loads(self.stats_cache_path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("Failed to read stats cache: %s", exc)
            return
        if not isinstance(data, dict):
            return
        stats = self.state.local_stats
        stats.total_sessions = data.get("totalSessions") or 0
        stats.total_messages = data.get("totalMessages") or 0
        stats.first_session_date = data.get("firstSessionDate") or None
        if isinstance(data.get("dailyActivity"), list):
            stats.daily_activity = data["dailyActivity"][-DAILY_ACTIVITY_DAYS:]
        model_usage = data.get("modelUsage")
        if isinstance(model_usage, dict):
            stats.model_usage = {
                model: {
                    "input_tokens": u.get("inputTokens") or 0,
                    "output_tokens": u.get("outputTokens") or 0,
                    "cache_read_input_tokens": u.get("cacheReadInputTokens") or 0,
                    "cache_creation_input_tokens": u.get("cacheCreationInputTokens") or 0,
                    "cost_usd": u.get("costUSD") or 0,
                }
                for model, u in model_usage.items()
                if isinstance(u, dict)
            }


class UsageTracker:
    """Accumulates rate-limit and cost telemetry and builds usage snapshots."""

    def __init__(self, state: UsageState, reader: LocalFileReader) -> None:
        self.state = state
        self.reader = reader

    def track_event(self, task_id: str, record: dict[str, Any]) -> None:
        kind = record.get("type")
        if kind == "rate_limit_event" and isinstance(record.get("rate_limit_info"), dict):
            self.apply_rate_limit_info(record["rate_limit_info"])
        elif kind == "result":
            cost = record.get("total_cost_usd", record.get("cost_usd")) or 0
            duration = record.get("duration_ms") or 0
            self.state.task_costs[task_id] = TaskCost(
                cost_usd=float(cost), duration_ms=int(duration), timestamp=_now_iso()
            )
            self.state.total_cost_usd = sum(c.cost_usd for c in self.state.task_costs.values())
            self.state.total_duration_ms = sum(
                c.duration_ms for c in self.state.task_costs.values()
            )
            self.state.touch()

    def apply_rate_limit_info(self, info: dict[str, Any]) -> None:
        """Merge a ``rate_limit_info`` payload from the agent's stream."""
        key = info.get("rateLimitType") or "unknown"
        utilization = normalize_utilization(info.get("utilization"))
        self.state.rate_limits[key] = RateLimit(
            status=info.get("status") or "unknown",
            resets_at=info.get("resetsAt"),
            utilization=utilization,
        )
        if "overageStatus" in info:
            self.state.overage = OverageInfo(
                overage_status=info.get("overageStatus") or "unknown",
                is_using_overage=bool(info.get("isUsingOverage")),
                overage_disabled_reason=info.get("overageDisabledReason") or None,
            )
        self.state.touch()
        log.debug(
            "Rate limit from stream: type=%s status=%s utilization=%s",
            key,
            info.get("status"),
            utilization,
        )

    def track_completion(self, task_id: str, success: bool) -> None:
        self.state.task_count += 1
        if success:
            self.state.completed_tasks += 1
        else:
            self.state.failed_tasks += 1
        self.state.touch()

    def check_status(self) -> dict[str, Any]:
        """Whether the agent CLI is installed, and who is logged in."""
        try:
            result = subprocess.run(
                [*shlex.split(self.reader.agent_command), "--version"],
                capture_output=True,
                text=True,
                timeout=CLI_TIMEOUT_SECONDS,
                check=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            log.warning("Agent CLI not available: %s", exc)
            return {"installed": False, "logged_in": False, "user": None, "version": None}
        self.reader.refresh()
        return {
            "installed": True,
            "logged_in": True,
            "user": self.state.account.email or "Claude User",
            "version": result.stdout.strip(),
        }

    def get_snapshot(self, *, refresh: bool = True) -> dict[str, Any]:
        if refresh:
            self.reader.refresh()
        state = self.state
        recent = sorted(
            ({"task_id": task_id, **asdict(cost)} for task_id, cost in state.task_costs.items()),
            key=lambda entry: entry["timestamp"],
            reverse=True,
        )
        return {
            "account": asdict(state.account),
            "rate_limits": [
                {"rate_limit_type": name, **asdict(limit)}
                for name, limit in state.rate_limits.items()
            ],
            "overage": asdict(state.overage),
            "local_stats": asdict(state.local_stats),
            "clork_stats": {
                "total_cost_usd": state.total_cost_usd,
                "task_count": state.task_count,
                "completed_tasks": state.completed_tasks,
                "failed_tasks": state.failed_tasks,
                "total_duration_ms": state.total_duration_ms,
                "recent_tasks": recent[:RECENT_TASKS_LIMIT],
            },
            "last_updated_at": state.last_updated_at,
        }
