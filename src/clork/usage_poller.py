"""Periodic account quota probe with credential backoff.

Every cycle reads the agent CLI's OAuth token and, when one is available,
sends a one-token inference request whose only purpose is its
``anthropic-ratelimit-unified-*`` response headers. Over-quota (429)
responses carry the same headers, so the status code is ignored.

When the token is missing or expired for ``TOKEN_BACKOFF_THRESHOLD``
consecutive cycles the poller slows to ``USAGE_BACKOFF_SECONDS`` until a
valid token shows up again.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import httpx

from clork.paths import CREDENTIALS_PATH, float_env
from clork.usage import (
    LocalFileReader,
    OverageInfo,
    RateLimit,
    UsageState,
    UsageTracker,
)

log = logging.getLogger(__name__)

USAGE_POLL_SECONDS = float_env("CLORK_USAGE_POLL_SECONDS", 30.0, min_value=1.0)
USAGE_BACKOFF_SECONDS = float_env("CLORK_USAGE_BACKOFF_SECONDS", 120.0, min_value=1.0)
USAGE_INITIAL_DELAY_SECONDS = float_env("CLORK_USAGE_INITIAL_DELAY_SECONDS", 3.0, min_value=0.0)
USAGE_PROBE_TIMEOUT_SECONDS = float_env(
    "CLORK_USAGE_PROBE_TIMEOUT_SECONDS", 15.0, min_value=1.0
)
USAGE_API_URL = os.environ.get("CLORK_USAGE_API_URL", "https://api.anthropic.com/v1/messages")
USAGE_PROBE_MODEL = os.environ.get("CLORK_USAGE_PROBE_MODEL", "claude-sonnet-4-20250514")

TOKEN_BACKOFF_THRESHOLD = 3

HEADER_PREFIX = "anthropic-ratelimit-unified-"
# header abbreviation -> rate-limit class name
RATE_LIMIT_CLASSES = (
    ("5h", "five_hour"),
    ("7d", "seven_day"),
    ("7d_sonnet", "seven_day_sonnet"),
)

TOKEN_UNKNOWN = "unknown"
TOKEN_AVAILABLE = "available"
TOKEN_MISSING = "missing"
TOKEN_EXPIRED = "expired"


def parse_rate_limit_headers(
    headers: Mapping[str, str],
) -> tuple[dict[str, RateLimit], OverageInfo | None]:
    """Extract rate-limit classes and overage info from probe response headers."""
    limits: dict[str, RateLimit] = {}
    for abbrev, name in RATE_LIMIT_CLASSES:
        raw_util = headers.get(f"{HEADER_PREFIX}{abbrev}-utilization")
        if raw_util is None:
            continue
        try:
            utilization: float | None = float(raw_util) * 100
        except ValueError:
            utilization = None
        raw_reset = headers.get(f"{HEADER_PREFIX}{abbrev}-reset")
        try:
            resets_at = int(raw_reset) if raw_reset else None
        except ValueError:
            resets_at = None
        limits[name] = RateLimit(
            status=headers.get(f"{HEADER_PREFIX}{abbrev}-status") or "allowed",
            resets_at=resets_at,
            utilization=utilization,
        )

    overage = None
    overage_status = headers.get(f"{HEADER_PREFIX}overage-status")
    if overage_status:
        overage = OverageInfo(
            overage_status=overage_status,
            is_using_overage=headers.get(f"{HEADER_PREFIX}status") == "rejected"
            and overage_status in ("allowed", "allowed_warning"),
            overage_disabled_reason=headers.get(f"{HEADER_PREFIX}overage-disabled-reason")
            or None,
        )
    return limits, overage


class UsagePoller:
    """Owns the usage state, its poll loop and the backoff counters."""

    def __init__(
        self,
        *,
        state: UsageState | None = None,
        reader: LocalFileReader | None = None,
        credentials_path: Path = CREDENTIALS_PATH,
        api_url: str = USAGE_API_URL,
        probe_model: str = USAGE_PROBE_MODEL,
        poll_interval: float = USAGE_POLL_SECONDS,
        backoff_interval: float = USAGE_BACKOFF_SECONDS,
        initial_delay: float = USAGE_INITIAL_DELAY_SECONDS,
        probe_timeout: float = USAGE_PROBE_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        publish: Callable[[dict[str, Any]], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state = state or UsageState()
        self.reader = reader or LocalFileReader(self.state, credentials_path=credentials_path)
        self.tracker = UsageTracker(self.state, self.reader)
        self.credentials_path = credentials_path
        self.api_url = api_url
        self.probe_model = probe_model
        self.poll_interval = poll_interval
        self.backoff_interval = backoff_interval
        self.initial_delay = initial_delay
        self.probe_timeout = probe_timeout
        self.publish = publish
        self._transport = transport
        self._clock = clock

        self._task: asyncio.Task[None] | None = None
        self._polling = False
        self.token_state = TOKEN_UNKNOWN
        self.consecutive_token_failures = 0
        self.is_backoff = False

    # -- Lifecycle --------------------------------------------------------

    @property
    def current_interval(self) -> float:
        return self.backoff_interval if self.is_backoff else self.poll_interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self.reader.invalidate()
        self._task = asyncio.create_task(self._run())
        log.info("Usage polling started (every %ss)", self.poll_interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("Usage polling stopped")

    async def _run(self) -> None:
        await asyncio.to_thread(self.reader.refresh, force=True)
        await asyncio.sleep(self.initial_delay)
        while True:
            try:
                await self.poll_once()
            except Exception:
                log.exception("Usage poll failed")
            await asyncio.sleep(self.current_interval)

    def refresh(self) -> asyncio.Task[bool]:
        """Force an out-of-band poll, re-reading local files."""
        self.reader.invalidate()
        return asyncio.create_task(self.poll_once())

    # -- Polling ----------------------------------------------------------

    async def poll_once(self) -> bool:
        """Run one probe cycle. Returns False if another cycle was already in flight."""
        if self._polling:
            return False
        self._polling = True
        try:
            token = self.read_token()
            if not token:
                self.consecutive_token_failures += 1
                if (
                    self.consecutive_token_failures >= TOKEN_BACKOFF_THRESHOLD
                    and not self.is_backoff
                ):
                    self._enter_backoff()
                await asyncio.to_thread(self.reader.refresh)
                return True

            self.consecutive_token_failures = 0
            if self.is_backoff:
                self._leave_backoff()

            headers = await self._probe(token)
            if headers is None:
                return True

            limits, overage = parse_rate_limit_headers(headers)
            self.state.rate_limits.update(limits)
            if overage is not None:
                self.state.overage = overage
            self.state.touch()

            await asyncio.to_thread(self.reader.refresh, force=True)
            if self.publish is not None:
                self.publish(self.tracker.get_snapshot(refresh=False))
            return True
        finally:
            self._polling = False

    def read_token(self) -> str | None:
        """OAuth access token from the credential file, if present and unexpired."""
        try:
            data = json.loads(self.credentials_path.read_text())
        except (OSError, json.JSONDecodeError):
            self._transition_token_state(TOKEN_MISSING)
            return None
        oauth = data.get("claudeAiOauth") if isinstance(data, dict) else None
        token = oauth.get("accessToken") if isinstance(oauth, dict) else None
        if not token:
            self._transition_token_state(TOKEN_MISSING)
            return None
        expires_at = oauth.get("expiresAt")
        if isinstance(expires_at, (int, float)) and self._clock() * 1000 > expires_at:
            self._transition_token_state(TOKEN_EXPIRED)
            # The CLI may rewrite the file with a refreshed token.
            self.reader.invalidate()
            return None
        self._transition_token_state(TOKEN_AVAILABLE)
        return token

    def _transition_token_state(self, new_state: str) -> None:
        if new_state == self.token_state:
            return
        previous, self.token_state = self.token_state, new_state
        if new_state == TOKEN_EXPIRED:
            log.warning("OAuth token expired; waiting for the agent CLI to refresh it")
        elif new_state == TOKEN_MISSING:
            log.warning("No OAuth token available for rate limit polling")
        elif new_state == TOKEN_AVAILABLE and previous != TOKEN_UNKNOWN:
            log.info("OAuth token recovered; resuming quota probes")

    def _enter_backoff(self) -> None:
        self.is_backoff = True
        log.info(
            "No token after %d attempts; slowing usage polling to %ss",
            TOKEN_BACKOFF_THRESHOLD,
            self.backoff_interval,
        )

    def _leave_backoff(self) -> None:
        self.is_backoff = False
        log.info("Token available; restoring normal usage polling (%ss)", self.poll_interval)

    async def _probe(self, token: str) -> httpx.Headers | None:
        body = {
            "model": self.probe_model,
            "max_tokens": 1,
            "messages": [{"role": "user", "content": "hi"}],
        }
        headers = {
            "Authorization": f"Bearer {token}",
            "anthropic-version": "2023-06-01",
            "anthropic-beta": "oauth-2025-04-20",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.probe_timeout
            ) as client:
                response = await client.post(self.api_url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            log.warning("Usage probe failed: %s", exc)
            return None
        log.debug("Usage probe returned %d", response.status_code)
        return response.headers

    # -- Telemetry passthrough --------------------------------------------

    def track_event(self, task_id: str, record: dict[str, Any]) -> None:
        self.tracker.track_event(task_id, record)

    def track_completion(self, task_id: str, success: bool) -> None:
        self.tracker.track_completion(task_id, success)

    def get_snapshot(self, *, refresh: bool = True) -> dict[str, Any]:
        return self.tracker.get_snapshot(refresh=refresh)

    def check_status(self) -> dict[str, Any]:
        return self.tracker.check_status()
