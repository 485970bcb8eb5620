"""
Chart generation orchestrator.

generate_chart is the single entry point that turns a birth input into a
chart: cache first, then the offline fallback, then the rate limiter, and
only then the chart source. Every chart that reaches the caller fresh is
also written to the cache for offline use.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from .caching import ChartCache, fingerprint
from .connectivity import ConnectivitySignal
from .errors import (
    CachePersistFailure, InvalidBirthInput, NatalEngineError,
    Offline, QuotaExceeded, RulerNotFound, StorageError, UnknownTimezone,
    UpstreamFailure, error_payload,
)
from .models import BirthInput, HouseSystem, MonthlyUsage, NatalChart
from .obs.logging import StructuredLogger, TimedOperation
from .obs.metrics import metrics
from .ratelimit import RateLimiter
from .sources import ChartSource

logger = logging.getLogger(__name__)
business_logger = StructuredLogger(__name__)

# raised by the source and passed to the caller unchanged
_PASSTHROUGH_ERRORS = (UnknownTimezone, RulerNotFound, InvalidBirthInput, UpstreamFailure)


class ChartService:
    """
    Orchestrates cache, connectivity, rate limiting and the chart source.

    Args:
        source: Where fresh charts come from
        cache: Fingerprint-keyed chart cache
        rate_limiter: Limiter guarding the metered source
        connectivity: Online/offline signal
        house_system: House system used for fresh charts
    """

    def __init__(self, source: ChartSource, cache: ChartCache, rate_limiter: RateLimiter,
                 connectivity: ConnectivitySignal, house_system: HouseSystem = HouseSystem.PLACIDUS):
        self.source = source
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.connectivity = connectivity
        self.house_system = house_system

    @staticmethod
    def fingerprint(birth_input: BirthInput) -> str:
        return fingerprint(birth_input)

    def _served(self, chart: NatalChart, fp: str, outcome: str, start_time: float) -> NatalChart:
        duration = time.perf_counter() - start_time
        business_logger.chart_generated(
            self.source.name, fp, duration * 1000,
            len(chart.bodies), len(chart.aspects), outcome=outcome
        )
        metrics.record_chart(self.source.name, outcome, duration)
        return chart

    async def generate_chart(self, birth_input: BirthInput, force_refresh: bool = False) -> NatalChart:
        """
        Return the chart for a birth input.

        A cached chart is returned unless `force_refresh` is set. When the
        source is metered and the network is down, the cached chart is
        returned even under `force_refresh`.

        Raises:
            Offline: No connectivity and nothing cached
            QuotaExceeded: The rate limiter has no free slot
            UnknownTimezone: The birth timezone is not an IANA zone
            InvalidBirthInput: The input cannot be sent to the source
            RulerNotFound: A house ruler is missing from the chart bodies
            UpstreamFailure: The source failed or its answer was undecodable
        """
        start_time = time.perf_counter()
        fp = fingerprint(birth_input)

        try:
            return await self._generate(birth_input, force_refresh, fp, start_time)
        except NatalEngineError as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            cause = getattr(e, "cause", None)
            business_logger.chart_error(e.code, e.title, fp, duration_ms,
                                        cause=repr(cause) if cause is not None else None)
            metrics.record_error(e.code)
            metrics.record_chart(self.source.name, "error")
            logger.debug(f"Chart error payload: {error_payload(e, getattr(e, 'retry_after', None))}")
            raise

    async def _find_cached(self, birth_input: BirthInput, fp: str) -> Optional[NatalChart]:
        """Cache lookup for generation; an unreadable store counts as a miss."""
        try:
            return await asyncio.to_thread(self.cache.find, birth_input)
        except StorageError as e:
            logger.warning(f"Cache read failed, treating as a miss: {e}")
            business_logger.cache_operation("read_failed", fp)
            metrics.record_cache_operation("read_failed")
            return None

    async def _generate(self, birth_input: BirthInput, force_refresh: bool,
                        fp: str, start_time: float) -> NatalChart:
        if not force_refresh:
            cached = await self._find_cached(birth_input, fp)
            if cached is not None:
                return self._served(cached, fp, "cache_hit", start_time)

        if self.source.metered:
            connected = await asyncio.to_thread(self.connectivity.is_connected)
            if not connected:
                cached = await self._find_cached(birth_input, fp)
                if cached is not None:
                    return self._served(cached, fp, "offline_cache", start_time)
                raise Offline()

            allowed, retry_after = await asyncio.to_thread(
                self.rate_limiter.acquire, self.source.requests_per_chart
            )
            usage = await asyncio.to_thread(self.rate_limiter.monthly_usage)
            business_logger.rate_limit_decision(allowed, retry_after)
            metrics.record_rate_limit(allowed, usage.request_count)
            if not allowed:
                raise QuotaExceeded(retry_after)

        try:
            chart = await self.source.generate(birth_input, self.house_system)
        except _PASSTHROUGH_ERRORS:
            raise
        except Exception as e:
            # DecodingFailure included: the caller sees it as a failed fetch
            raise UpstreamFailure(e)

        try:
            await asyncio.to_thread(self.cache.save, chart, birth_input)
        except CachePersistFailure as e:
            logger.warning(f"Chart generated but not cached: {e}")

        return self._served(chart, fp, "generated", start_time)

    async def get_cached_chart(self, birth_input: BirthInput) -> Optional[NatalChart]:
        return await asyncio.to_thread(self.cache.find, birth_input)

    async def cache_status(self, birth_input: BirthInput) -> Dict[str, Any]:
        """Advisory cache state; reported as not cached when the store cannot be read."""
        try:
            return await asyncio.to_thread(self.cache.status, birth_input)
        except StorageError as e:
            logger.warning(f"Cache status unavailable: {e}")
            return {"cached": False, "generated_at": None, "stale": False}

    async def is_connected(self) -> bool:
        if not self.source.metered:
            return True
        return await asyncio.to_thread(self.connectivity.is_connected)

    async def can_generate_chart(self) -> bool:
        """True when a fresh chart could be generated right now."""
        if not self.source.metered:
            return True
        if not await self.is_connected():
            return False
        allowed, _ = await asyncio.to_thread(
            self.rate_limiter.can_make_request, self.source.requests_per_chart
        )
        return allowed

    async def retry_after_seconds(self) -> Optional[float]:
        if not self.source.metered:
            return None
        return await asyncio.to_thread(self.rate_limiter.retry_after, self.source.requests_per_chart)

    async def remaining_requests(self) -> int:
        return await asyncio.to_thread(self.rate_limiter.remaining)

    async def monthly_usage(self) -> MonthlyUsage:
        return await asyncio.to_thread(self.rate_limiter.monthly_usage)

    async def clear_old_charts(self, days: int = 30) -> int:
        """Evict cached charts older than `days`; returns how many were removed."""
        with TimedOperation(business_logger, "cache_eviction", older_than_days=days):
            return await asyncio.to_thread(self.cache.evict_older_than, days)

    async def aclose(self) -> None:
        await self.source.aclose()
