"""
Sliding-window and monthly rate limiting for the chart service.

The chart service is metered: it allows a small number of requests per
window and bills per request. The limiter keeps one persisted record with the
request timestamps inside the current window plus a per-month request
counter, so limits survive restarts.
"""

import json
import math
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import MonthlyUsage
from .storage import RecordStore

logger = logging.getLogger(__name__)


def parse_limit(limit_str: str) -> Tuple[int, int]:
    """
    Parse limit string into tokens and period.

    Args:
        limit_str: Limit string like "5/minute" or "1000/hour"

    Returns:
        Tuple of (tokens, period_seconds)

    Raises:
        ValueError: If limit string is invalid
    """
    try:
        tokens_str, unit = limit_str.split("/", 1)
        tokens = int(tokens_str)

        unit = unit.lower().strip()
        if unit in ["second", "sec", "s"]:
            period = 1
        elif unit in ["minute", "min", "m"]:
            period = 60
        elif unit in ["hour", "hr", "h"]:
            period = 3600
        elif unit in ["day", "d"]:
            period = 86400
        else:
            raise ValueError(f"Unknown time unit: {unit}")

        if tokens <= 0:
            raise ValueError("Token count must be positive")

        return tokens, period

    except (ValueError, AttributeError) as e:
        raise ValueError(f"Invalid limit format '{limit_str}': {e}")


def month_token(epoch_seconds: float) -> str:
    """UTC calendar month of an instant, as "YYYY-MM"."""
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return f"{moment.year:04d}-{moment.month:02d}"


class RateLimiter:
    """
    Persisted sliding-window limiter with a monthly usage counter.

    Every read-modify-write of the state record runs under one lock, so
    concurrent callers in this process cannot lose timestamps or counts.
    """

    def __init__(
        self,
        store: RecordStore,
        max_requests: int = 5,
        window_seconds: float = 60,
        requests_per_chart: int = 2,
        limit: Optional[str] = None,
        name: str = "chart_service",
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the limiter and tidy its persisted state.

        Args:
            store: Durable record store holding the limiter state
            max_requests: Requests allowed per window
            window_seconds: Sliding window length
            requests_per_chart: Upstream requests one chart costs
            limit: Alternative "5/minute" form of max_requests/window_seconds
            name: State record name, one per metered service
            clock: Epoch-seconds clock
        """
        if limit:
            max_requests, window_seconds = parse_limit(limit)

        self.store = store
        self.max_requests = max(int(max_requests), 1)
        self.window_seconds = max(float(window_seconds), 1.0)
        self.requests_per_chart = max(int(requests_per_chart), 1)
        self.key = f"ratelimit:{name}"
        self.clock = clock
        self._lock = threading.Lock()
        self._stats = {"checks": 0, "allowed": 0, "denied": 0, "recorded": 0}

        with self._lock:
            now = self.clock()
            state = self._load()
            self._prune(state, now)
            self._roll_month(state, now)
            self._save(state)

    def _load(self) -> Dict[str, Any]:
        raw = self.store.get(self.key)
        state = {"timestamps": [], "month_token": None, "monthly_count": 0}
        if raw is None:
            return state
        try:
            stored = json.loads(raw)
            state["timestamps"] = sorted(float(t) for t in stored.get("timestamps", []))
            state["month_token"] = stored.get("month_token")
            state["monthly_count"] = int(stored.get("monthly_count", 0))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Discarding unreadable rate limiter state '{self.key}': {e}")
        return state

    def _save(self, state: Dict[str, Any]) -> None:
        self.store.put(self.key, json.dumps(state, separators=(",", ":")))

    def _prune(self, state: Dict[str, Any], now: float) -> None:
        cutoff = now - self.window_seconds
        state["timestamps"] = sorted(t for t in state["timestamps"] if t >= cutoff)

    def _roll_month(self, state: Dict[str, Any], now: float) -> bool:
        current = month_token(now)
        if state["month_token"] != current:
            if state["month_token"] is not None:
                logger.info(f"New billing month {current}; resetting monthly count of {state['monthly_count']}")
            state["month_token"] = current
            state["monthly_count"] = 0
            return True
        return False

    def _retry_after(self, timestamps: List[float], now: float, count: int = 1) -> float:
        # the oldest (len + count - max) timestamps must leave the window
        overflow = len(timestamps) + count - self.max_requests
        if overflow <= 0 or not timestamps:
            return 0.0
        freeing = timestamps[min(overflow, len(timestamps)) - 1]
        return max(freeing + self.window_seconds - now, 0.0)

    def _check_count(self, count: int) -> None:
        if count > self.max_requests:
            raise ValueError(
                f"{count} requests can never fit a limit of {self.max_requests} per {self.window_seconds:g}s"
            )

    def can_make_request(self, count: int = 1) -> Tuple[bool, Optional[float]]:
        """
        Check whether `count` more requests fit in the window.

        Does not consume a slot.

        Returns:
            (True, None) when allowed, otherwise (False, seconds until enough
            old requests leave the window)
        """
        self._check_count(count)
        with self._lock:
            now = self.clock()
            state = self._load()
            self._prune(state, now)
            self._save(state)

            self._stats["checks"] += 1
            if len(state["timestamps"]) + count <= self.max_requests:
                self._stats["allowed"] += 1
                return True, None

            self._stats["denied"] += 1
            retry_after = self._retry_after(state["timestamps"], now, count)
            logger.info(f"Rate limit reached ({self.max_requests}/{self.window_seconds:g}s); retry in {retry_after:.1f}s")
            return False, retry_after

    def record_request(self, count: int = 1) -> None:
        """Record `count` upstream requests made now."""
        with self._lock:
            now = self.clock()
            state = self._load()
            self._prune(state, now)
            state["timestamps"].extend([now] * count)
            self._roll_month(state, now)
            state["monthly_count"] += count
            self._save(state)
            self._stats["recorded"] += count

    def acquire(self, count: int = 1) -> Tuple[bool, Optional[float]]:
        """
        Check and record in one step.

        Allowed only when all `count` requests fit in the window; they are
        recorded before the lock is released, so two concurrent callers
        cannot both take the last slots. A denied call records nothing.

        Raises:
            ValueError: If `count` exceeds the window limit
        """
        self._check_count(count)
        with self._lock:
            now = self.clock()
            state = self._load()
            self._prune(state, now)
            self._stats["checks"] += 1
            if len(state["timestamps"]) + count > self.max_requests:
                self._save(state)
                self._stats["denied"] += 1
                return False, self._retry_after(state["timestamps"], now, count)
            self._stats["allowed"] += 1
            state["timestamps"].extend([now] * count)
            self._roll_month(state, now)
            state["monthly_count"] += count
            self._save(state)
            self._stats["recorded"] += count
        return True, None

    def retry_after(self, count: int = 1) -> Optional[float]:
        allowed, retry_after = self.can_make_request(count)
        return None if allowed else retry_after

    def remaining(self) -> int:
        with self._lock:
            state = self._load()
            self._prune(state, self.clock())
            return max(self.max_requests - len(state["timestamps"]), 0)

    def monthly_usage(self) -> MonthlyUsage:
        with self._lock:
            now = self.clock()
            state = self._load()
            if self._roll_month(state, now):
                self._save(state)
            count = state["monthly_count"]

        return MonthlyUsage(
            request_count=count,
            estimated_charts=math.ceil(count / self.requests_per_chart),
            credits_consumed=count,
        )

    def stats(self) -> Dict[str, Any]:
        """Limiter statistics for health checks."""
        usage = self.monthly_usage()
        return {
            "limit": f"{self.max_requests}/{self.window_seconds:g}s",
            "requests_per_chart": self.requests_per_chart,
            "remaining": self.remaining(),
            "monthly_requests": usage.request_count,
            "estimated_monthly_charts": usage.estimated_charts,
            **self._stats,
        }
