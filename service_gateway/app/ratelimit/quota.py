"""
Fixed-window quota enforcement.

Every client gets one counter per window, keyed by the window's start in
milliseconds. Windows are aligned to the epoch so every gateway instance
agrees on the boundaries. The counter is incremented and its expiry armed
in a single store call; rejected attempts also count.

When the store fails the request is let through (fail-open) and the
decision is tagged DEGRADED_ALLOW so it can be told apart from a normal
allow in logs and metrics.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from shared.errors import RateLimitExceededError, StoreUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.store import KeyValueStore


class QuotaOutcome(str, Enum):
    """Quota decision outcomes."""
    ALLOWED = "allowed"
    DENIED = "denied"
    DEGRADED_ALLOW = "degraded_allow"


@dataclass(frozen=True)
class QuotaDecision:
    """Result of a quota check, with the metadata exposed in response headers."""
    outcome: QuotaOutcome
    limit: int
    remaining: int
    reset_time_ms: int
    retry_after: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.outcome != QuotaOutcome.DENIED

    @property
    def degraded(self) -> bool:
        return self.outcome == QuotaOutcome.DEGRADED_ALLOW

    @property
    def reset_time(self) -> datetime:
        return datetime.fromtimestamp(self.reset_time_ms / 1000, tz=timezone.utc)

    def headers(self) -> Dict[str, str]:
        """Rate limit response headers for this decision."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_time.isoformat().replace("+00:00", "Z"),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        if self.degraded:
            headers["X-RateLimit-Degraded"] = "true"
        return headers

    def to_error(self) -> RateLimitExceededError:
        return RateLimitExceededError(
            retry_after=self.retry_after or 1,
            details={"limit": self.limit, "reset_time": self.reset_time.isoformat()},
            headers=self.headers(),
        )


class QuotaEnforcer:
    """Per-client fixed-window counters kept in the shared store."""

    KEY_PREFIX = "rate_limit:"

    def __init__(self, store: KeyValueStore, window_ms: int = 60_000,
                 clock: Callable[[], float] = time.time, metrics: Optional[MetricsCollector] = None):
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.store = store
        self.window_ms = window_ms
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("gateway.quota")

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def window_start(self, now_ms: int) -> int:
        return (now_ms // self.window_ms) * self.window_ms

    def _make_key(self, client_id: str, window_start: int) -> str:
        """Generate rate limit key."""
        return f"{self.KEY_PREFIX}{client_id}:{window_start}"

    def _retry_after(self, window_end: int, now_ms: int) -> int:
        return max(1, math.ceil((window_end - now_ms) / 1000))

    def _record(self, outcome: QuotaOutcome) -> None:
        if self.metrics:
            self.metrics.increment_counter("quota_decisions_total", outcome=outcome.value)

    async def check(self, client_id: str, limit: int) -> QuotaDecision:
        """Count one request against the client's current window."""
        now_ms = self._now_ms()
        window_start = self.window_start(now_ms)
        window_end = window_start + self.window_ms
        key = self._make_key(client_id, window_start)

        try:
            count = await self.store.incr_with_expiry(key, self.window_ms)
        except StoreUnavailableError as e:
            self.logger.warning(
                "Quota check degraded, allowing request",
                client_id=client_id,
                operation=e.operation,
                error=str(e.cause) if e.cause else None
            )
            if self.metrics:
                self.metrics.increment_counter("store_errors_total", operation="quota_check")
            self._record(QuotaOutcome.DEGRADED_ALLOW)
            return QuotaDecision(
                outcome=QuotaOutcome.DEGRADED_ALLOW,
                limit=limit,
                remaining=limit,
                reset_time_ms=window_end,
            )

        if count > limit:
            decision = QuotaDecision(
                outcome=QuotaOutcome.DENIED,
                limit=limit,
                remaining=0,
                reset_time_ms=window_end,
                retry_after=self._retry_after(window_end, now_ms),
            )
            self.logger.info("Quota exceeded", client_id=client_id, limit=limit, count=count)
        else:
            decision = QuotaDecision(
                outcome=QuotaOutcome.ALLOWED,
                limit=limit,
                remaining=limit - count,
                reset_time_ms=window_end,
            )

        self._record(decision.outcome)
        return decision

    async def enforce(self, client_id: str, limit: int) -> QuotaDecision:
        """Like check(), but raises RateLimitExceededError on denial."""
        decision = await self.check(client_id, limit)
        if not decision.allowed:
            raise decision.to_error()
        return decision

    async def status(self, client_id: str, limit: int) -> QuotaDecision:
        """Read the current window without counting a request."""
        now_ms = self._now_ms()
        window_start = self.window_start(now_ms)
        window_end = window_start + self.window_ms

        try:
            raw = await self.store.get(self._make_key(client_id, window_start))
        except StoreUnavailableError as e:
            self.logger.warning("Quota status unavailable", client_id=client_id, operation=e.operation)
            return QuotaDecision(QuotaOutcome.DEGRADED_ALLOW, limit, limit, window_end)

        count = int(raw) if raw else 0
        if count > limit:
            return QuotaDecision(
                QuotaOutcome.DENIED, limit, 0, window_end, self._retry_after(window_end, now_ms)
            )
        return QuotaDecision(QuotaOutcome.ALLOWED, limit, limit - count, window_end)

    async def reset(self, client_id: str) -> None:
        """Clear the client's counter for the current window."""
        window_start = self.window_start(self._now_ms())
        await self.store.delete(self._make_key(client_id, window_start))
        self.logger.info("Quota reset", client_id=client_id)
