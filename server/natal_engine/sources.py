"""
Chart sources: where a fresh chart comes from.

The remote source asks the metered chart service and maps its answer; the
local source computes the chart with the ephemeris and costs nothing.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from .ephemeris.compute import ChartCalculator
from .ephemeris.mapper import ChartResponseMapper
from .images import ChartImageStore
from .models import BirthInput, HouseSystem, NatalChart
from .upstream.client import ChartServiceClient

logger = logging.getLogger(__name__)


class ChartSource(Protocol):
    name: str
    metered: bool
    requests_per_chart: int

    async def generate(self, birth_input: BirthInput, house_system: HouseSystem) -> NatalChart:
        ...

    async def aclose(self) -> None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RemoteChartSource:
    """
    Chart service source.

    With an image store the wheel SVG is fetched alongside the chart data;
    a failed image never fails the chart.
    """

    name = "remote"
    metered = True

    def __init__(self, client: ChartServiceClient, mapper: ChartResponseMapper,
                 image_store: Optional[ChartImageStore] = None, theme: str = "classic",
                 clock: Callable[[], datetime] = _utcnow):
        self.client = client
        self.mapper = mapper
        self.image_store = image_store
        self.theme = theme
        self.clock = clock

    @property
    def requests_per_chart(self) -> int:
        return 2 if self.image_store is not None else 1

    async def generate(self, birth_input: BirthInput, house_system: HouseSystem) -> NatalChart:
        if self.image_store is None:
            payload = await self.client.fetch_chart(birth_input, house_system)
            return self.mapper.to_chart(payload, birth_input, house_system, self.clock())

        payload, svg = await asyncio.gather(
            self.client.fetch_chart(birth_input, house_system),
            self.client.fetch_svg(birth_input, house_system, self.theme),
            return_exceptions=True,
        )
        if isinstance(payload, BaseException):
            raise payload

        chart = self.mapper.to_chart(payload, birth_input, house_system, self.clock())

        if isinstance(svg, BaseException):
            logger.warning(f"Chart image unavailable, returning chart without it: {svg}")
            return chart

        try:
            visualization = await asyncio.to_thread(self.image_store.save, svg, "svg")
        except OSError as e:
            logger.warning(f"Failed to store chart image: {e}")
            return chart
        return chart.model_copy(update={"visualization": visualization})

    async def aclose(self) -> None:
        await self.client.aclose()


class LocalChartSource:
    """Swiss Ephemeris source; not metered."""

    name = "local"
    metered = False
    requests_per_chart = 0

    def __init__(self, calculator: ChartCalculator):
        self.calculator = calculator

    async def generate(self, birth_input: BirthInput, house_system: HouseSystem) -> NatalChart:
        return await asyncio.to_thread(self.calculator.calculate, birth_input, house_system)

    async def aclose(self) -> None:
        return None
