"""
Rate Limiter — fixed-window admission control per (actor, endpoint class).

The first request of a window opens it with reset_at = now + window;
later requests increment the count until it reaches the endpoint's
maximum, after which requests are denied (never queued) with
retry_after = ceil(reset_at - now). A window resets once now > reset_at.
A background sweep drops closed windows to bound memory.
"""
from __future__ import annotations

import asyncio
import math
import time
import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from config.settings import RateLimitRule

logger = structlog.get_logger()


@dataclass
class RateLimitWindow:
    key: str
    count: int
    window_start: float
    reset_at: float
    max_requests: int


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float                   # epoch seconds
    retry_after: Optional[int] = None

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": datetime.fromtimestamp(self.reset_at, tz=timezone.utc).isoformat(),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitExceeded(Exception):
    def __init__(self, decision: RateLimitDecision):
        super().__init__(f"Rate limit exceeded, retry after {decision.retry_after}s")
        self.decision = decision


class RateLimiter:

    DEFAULT_RULE = RateLimitRule(window_s=3600, max_requests=100)

    def __init__(
        self,
        endpoints: dict[str, RateLimitRule] = None,
        sweep_interval_s: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.endpoints = dict(endpoints or {})
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._windows: dict[str, RateLimitWindow] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def rule_for(self, endpoint: str) -> RateLimitRule:
        return self.endpoints.get(endpoint) or self.endpoints.get("default") or self.DEFAULT_RULE

    def check_and_consume(self, key: str, endpoint: str = "api") -> RateLimitDecision:
        rule = self.rule_for(endpoint)
        now = self._clock()
        window_key = f"{key}:{endpoint}"
        window = self._windows.get(window_key)

        if window is None or now > window.reset_at:
            window = RateLimitWindow(
                key=window_key, count=1, window_start=now,
                reset_at=now + rule.window_s, max_requests=rule.max_requests,
            )
            self._windows[window_key] = window
            return RateLimitDecision(True, rule.max_requests, rule.max_requests - 1, window.reset_at)

        if window.count >= window.max_requests:
            retry_after = max(1, math.ceil(window.reset_at - now))
            logger.warning("rate_limit_denied", key=key, endpoint=endpoint, retry_after=retry_after)
            return RateLimitDecision(False, window.max_requests, 0, window.reset_at, retry_after)

        window.count += 1
        return RateLimitDecision(True, window.max_requests, window.max_requests - window.count, window.reset_at)

    def status(self, key: str, endpoint: str = "api") -> dict[str, Any]:
        rule = self.rule_for(endpoint)
        now = self._clock()
        window = self._windows.get(f"{key}:{endpoint}")
        if window is None or now > window.reset_at:
            return {
                "count": 0, "limit": rule.max_requests,
                "resetTime": now + rule.window_s, "remaining": rule.max_requests,
            }
        return {
            "count": window.count, "limit": window.max_requests,
            "resetTime": window.reset_at, "remaining": window.max_requests - window.count,
        }

    def reset(self, key: str, endpoint: str = "") -> int:
        if endpoint:
            return 1 if self._windows.pop(f"{key}:{endpoint}", None) else 0
        doomed = [k for k in self._windows if k.startswith(f"{key}:")]
        for k in doomed:
            del self._windows[k]
        return len(doomed)

    def sweep_expired(self) -> int:
        now = self._clock()
        doomed = [k for k, w in self._windows.items() if now > w.reset_at]
        for k in doomed:
            del self._windows[k]
        if doomed:
            logger.debug("rate_limit_windows_swept", count=len(doomed))
        return len(doomed)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        endpoints: dict[str, int] = {}
        active = 0
        for window_key, window in self._windows.items():
            if now <= window.reset_at:
                active += 1
                endpoint = window_key.rsplit(":", 1)[-1]
                endpoints[endpoint] = endpoints.get(endpoint, 0) + 1
        return {"totalEntries": len(self._windows), "activeEntries": active, "endpoints": endpoints}

    # ── Background sweep ──────────────────────────────────────

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="rate_limit_sweeper")

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval_s)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.error("rate_limit_sweep_error", error=str(e))
