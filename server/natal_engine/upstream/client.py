"""
HTTP client for the external chart-data service.

One chart costs one POST to /charts/natal, plus one to /charts/natal/svg
when the wheel image is requested. Connection errors and 5xx responses are
retried with exponential backoff a bounded number of times; each retry is a
billed request, so it must first pass the retry gate (the rate limiter).
A 429 is never retried.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx

from ..config import UpstreamConfig
from ..errors import DecodingFailure, InvalidBirthInput, UpstreamFailure
from ..ephemeris.provider import SWISS_HOUSE_CODES
from ..models import BirthInput, HouseSystem
from ..obs.logging import StructuredLogger
from ..obs.metrics import metrics
from ..schemas import (
    UpstreamBirthData, UpstreamChartRequest, UpstreamOptions, UpstreamSubject,
)
from ..time_resolver.resolver import resolve, utc_offset_seconds

logger = logging.getLogger(__name__)
business_logger = StructuredLogger(__name__)

CHART_ENDPOINT = "/charts/natal"
IMAGE_ENDPOINT = "/charts/natal/svg"

# 429 is final: the service quota is already spent
RETRYABLE_STATUS = {500, 502, 503, 504}


def build_chart_request(birth_input: BirthInput, house_system: HouseSystem,
                        language: str = "en", zodiac_type: str = "Tropic") -> UpstreamChartRequest:
    """
    Build the chart service request body for a birth input.

    The service wants the UTC offset in force at the birth moment, in hours.

    Raises:
        UnknownTimezone: If the birth timezone is not an IANA zone
        InvalidBirthInput: If neither coordinates nor a location are given
    """
    if birth_input.coordinates is None and not birth_input.location.strip():
        raise InvalidBirthInput("Either coordinates or a location name is required")

    tz = resolve(birth_input.timezone)
    offset_hours = utc_offset_seconds(birth_input.birth_date, birth_input.birth_time, tz) / 3600.0
    coordinates = birth_input.coordinates

    birth_data = UpstreamBirthData(
        year=birth_input.birth_date.year,
        month=birth_input.birth_date.month,
        day=birth_input.birth_date.day,
        hour=birth_input.birth_time.hour,
        minute=birth_input.birth_time.minute,
        second=birth_input.birth_time.second,
        latitude=coordinates.latitude if coordinates else None,
        longitude=coordinates.longitude if coordinates else None,
        timezone=offset_hours,
        city=birth_input.location.split(",")[0].strip(),
    )
    return UpstreamChartRequest(
        subject=UpstreamSubject(name=birth_input.name, birth_data=birth_data),
        options=UpstreamOptions(
            house_system=SWISS_HOUSE_CODES[HouseSystem(house_system)].decode(),
            language=language,
            zodiac_type=zodiac_type,
        ),
    )


class ChartServiceClient:
    """
    Async client for the chart-data service.

    Args:
        config: Chart service configuration
        transport: httpx transport override (tests pass httpx.MockTransport)
        sleep: Awaitable sleep used between retries
        retry_gate: Called with 1 before every retry; returns (allowed,
            retry_after) like RateLimiter.acquire. None retries freely.
    """

    def __init__(self, config: UpstreamConfig,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 retry_gate: Optional[Callable[[int], Tuple[bool, Optional[float]]]] = None):
        self.config = config
        self.retry_gate = retry_gate
        self._sleep = sleep

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=httpx.Timeout(config.timeout_ms / 1000.0),
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _backoff(self, attempt: int, response: Optional[httpx.Response]) -> float:
        delay = (self.config.backoff_ms / 1000.0) * (2 ** (attempt - 1))
        if response is not None and "Retry-After" in response.headers:
            try:
                delay = max(delay, float(response.headers["Retry-After"]))
            except ValueError:
                pass
        return delay

    async def _may_retry(self, endpoint: str) -> bool:
        if self.retry_gate is None:
            return True
        allowed, retry_after = await asyncio.to_thread(self.retry_gate, 1)
        if not allowed:
            logger.warning(f"Not retrying {endpoint}: rate limit reached, next slot in {retry_after:.1f}s")
        return allowed

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> httpx.Response:
        last_error: Optional[Exception] = None

        for attempt in range(1, self.config.max_attempts + 1):
            start_time = time.perf_counter()
            response = None
            try:
                response = await self._client.post(endpoint, json=payload)
            except httpx.TransportError as e:
                last_error = e
                duration_ms = (time.perf_counter() - start_time) * 1000
                business_logger.upstream_call(endpoint, None, duration_ms, attempt, error=str(e) or type(e).__name__)
                metrics.record_upstream_call(endpoint, False, duration_ms / 1000)
            else:
                duration_ms = (time.perf_counter() - start_time) * 1000
                if response.status_code < 400:
                    business_logger.upstream_call(endpoint, response.status_code, duration_ms, attempt)
                    metrics.record_upstream_call(endpoint, True, duration_ms / 1000)
                    return response

                error = f"HTTP {response.status_code}: {response.text[:200]}"
                business_logger.upstream_call(endpoint, response.status_code, duration_ms, attempt, error=error)
                metrics.record_upstream_call(endpoint, False, duration_ms / 1000)
                last_error = httpx.HTTPStatusError(error, request=response.request, response=response)

                if response.status_code not in RETRYABLE_STATUS:
                    raise UpstreamFailure(last_error)

            if attempt < self.config.max_attempts:
                delay = self._backoff(attempt, response)
                logger.info(f"Retrying {endpoint} in {delay:.2f}s (attempt {attempt + 1}/{self.config.max_attempts})")
                await self._sleep(delay)
                if not await self._may_retry(endpoint):
                    break

        raise UpstreamFailure(last_error)

    async def fetch_chart(self, birth_input: BirthInput,
                          house_system: HouseSystem = HouseSystem.PLACIDUS) -> Dict[str, Any]:
        """
        Request chart data.

        Returns:
            Decoded JSON body, validated later by the response mapper

        Raises:
            UpstreamFailure: On transport errors or error statuses
            DecodingFailure: If the body is not a JSON object
        """
        request = build_chart_request(birth_input, house_system,
                                      self.config.language, self.config.zodiac_type)
        response = await self._post(CHART_ENDPOINT, request.model_dump())

        try:
            body = response.json()
        except ValueError as e:
            raise DecodingFailure(e)
        if not isinstance(body, dict):
            raise DecodingFailure(f"expected a JSON object, got {type(body).__name__}")
        return body

    async def fetch_svg(self, birth_input: BirthInput,
                        house_system: HouseSystem = HouseSystem.PLACIDUS,
                        theme: str = "classic") -> str:
        """Request the chart wheel as SVG text."""
        request = build_chart_request(birth_input, house_system,
                                      self.config.language, self.config.zodiac_type)
        payload = request.model_dump()
        payload["svg_options"] = {"theme": theme, "language": self.config.language}

        response = await self._post(IMAGE_ENDPOINT, payload)

        # the service answers either {"svg": "..."} or the bare document
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("svg"), str):
            return body["svg"]
        if response.text.lstrip().startswith("<"):
            return response.text
        raise DecodingFailure("image response is neither {\"svg\": ...} nor SVG text")
