import pytest
from datetime import date, datetime, time, timezone

from natal_engine.caching import ChartCache
from natal_engine.connectivity import StaticConnectivity
from natal_engine.ephemeris.compute import ChartCalculator, wrap_degree
from natal_engine.ephemeris.provider import RawBodyPosition, RawHouses
from natal_engine.models import BirthInput, CelestialBody, Coordinates
from natal_engine.ratelimit import RateLimiter
from natal_engine.service import ChartService
from natal_engine.sources import LocalChartSource
from natal_engine.storage import MemoryRecordStore


# (longitude, latitude, speed in degrees/day)
FAKE_POSITIONS = {
    CelestialBody.SUN: (10.0, 0.0, 1.0),
    CelestialBody.MOON: (132.0, 2.0, 13.0),
    CelestialBody.MERCURY: (25.0, 1.0, -0.5),
    CelestialBody.VENUS: (73.0, -1.0, 1.2),
    CelestialBody.MARS: (190.0, 0.5, 0.6),
    CelestialBody.JUPITER: (250.0, 0.2, 0.1),
    CelestialBody.SATURN: (300.0, 0.1, 0.05),
    CelestialBody.URANUS: (320.0, 0.0, 0.03),
    CelestialBody.NEPTUNE: (340.0, 0.0, 0.02),
    CelestialBody.PLUTO: (280.0, 5.0, 0.01),
    CelestialBody.TRUE_NODE: (100.0, 0.0, -0.05),
    CelestialBody.LILITH: (200.0, 1.5, 0.11),
}


class FakeProvider:
    """Deterministic ephemeris: fixed positions, equal houses from a fixed ascendant."""

    def __init__(self, positions=None, ascendant=15.0):
        self.positions = dict(positions or FAKE_POSITIONS)
        self.ascendant = ascendant
        self.calls = []

    def body(self, body, instant):
        self.calls.append((body, instant))
        return RawBodyPosition(*self.positions[body])

    def houses(self, instant, latitude, longitude, system):
        cusps = tuple(wrap_degree(self.ascendant + 30.0 * i) for i in range(12))
        return RawHouses(cusps=cusps, ascendant=self.ascendant,
                         midheaven=wrap_degree(self.ascendant + 270.0))


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeDateClock:
    """Aware-datetime clock for cache ages."""

    def __init__(self, start=datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now


class MeteredLocalSource(LocalChartSource):
    """Local computation dressed up as the metered chart service."""

    name = "remote"
    metered = True
    requests_per_chart = 2

    def __init__(self, calculator, error=None):
        super().__init__(calculator)
        self.error = error
        self.calls = 0

    async def generate(self, birth_input, house_system):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return await super().generate(birth_input, house_system)


def house_cusps(ascendant=15.0):
    return [
        {"house": n, "absolute_longitude": wrap_degree(ascendant + 30.0 * (n - 1))}
        for n in range(1, 13)
    ]


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def calculator(fake_provider):
    return ChartCalculator(
        fake_provider,
        clock=lambda: datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    )


@pytest.fixture
def birth_input():
    """London, 15 March 1990 14:30 (GMT, before the clocks went forward)."""
    return BirthInput(
        name="Ada",
        birth_date=date(1990, 3, 15),
        birth_time=time(14, 30),
        location="London, UK",
        timezone="Europe/London",
        coordinates=Coordinates(latitude=51.5074, longitude=-0.1278),
    )


@pytest.fixture
def other_birth_input():
    return BirthInput(
        name="Grace",
        birth_date=date(1985, 7, 4),
        birth_time=time(6, 5, 30),
        location="New York, NY",
        timezone="America/New_York",
        coordinates=Coordinates(latitude=40.7128, longitude=-74.006),
    )


@pytest.fixture
def sample_chart(calculator, birth_input):
    return calculator.calculate(birth_input)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def date_clock():
    return FakeDateClock()


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def limiter(store, fake_clock):
    return RateLimiter(store, max_requests=5, window_seconds=60, requests_per_chart=2, clock=fake_clock)


@pytest.fixture
def chart_cache(store, date_clock):
    return ChartCache(store, clock=date_clock)


@pytest.fixture
def connectivity():
    return StaticConnectivity(True)


@pytest.fixture
def upstream_payload():
    """Chart service response for the FakeProvider positions."""
    return {
        "subject_data": {
            "name": "Ada",
            "lat": 51.5074,
            "lng": -0.1278,
            "city": "London",
            "ascendant": {"abs_pos": 15.0},
            "medium_coeli": 285.0,
        },
        "chart_data": {
            "planetary_positions": [
                {"name": "Sun", "sign": "Ari", "absolute_longitude": 10.0, "speed": 1.0, "house": "Twelfth_House"},
                {"name": "Moon", "sign": "Leo", "absolute_longitude": 132.0, "speed": 13.0},
                {"name": "Mercury", "sign": "Ari", "absolute_longitude": 25.0, "speed": -0.5},
                {"name": "Venus", "sign": "Gem", "absolute_longitude": 73.0, "speed": 1.2},
                {"name": "Mars", "sign": "Lib", "absolute_longitude": 190.0, "speed": 0.6},
                {"name": "Jupiter", "sign": "Sag", "absolute_longitude": 250.0, "speed": 0.1},
                {"name": "Saturn", "sign": "Aqu", "absolute_longitude": 300.0, "speed": 0.05},
                {"name": "Uranus", "sign": "Aqu", "absolute_longitude": 320.0, "speed": 0.03},
                {"name": "Neptune", "sign": "Pis", "absolute_longitude": 340.0, "speed": 0.02},
                {"name": "Pluto", "sign": "Cap", "absolute_longitude": 280.0, "speed": 0.01},
                {"name": "True_Node", "sign": "Can", "absolute_longitude": 100.0, "speed": -0.05},
                {"name": "Mean_Lilith", "sign": "Lib", "absolute_longitude": 200.0, "speed": 0.11},
                {"name": "Ascendant", "sign": "Ari", "absolute_longitude": 15.0},
                {"name": "Medium_Coeli", "sign": "Cap", "absolute_longitude": 285.0},
            ],
            "house_cusps": house_cusps(),
            "aspects": [
                {"point1": "Sun", "point2": "Moon", "aspect_type": "trine", "orb": 2.0},
                {"point1": "Sun", "point2": "Mars", "aspect_type": "opposition", "orb": 0.0},
                {"point1": "Sun", "point2": "Ascendant", "aspect_type": "conjunction", "orb": 5.0},
                {"point1": "Moon", "point2": "Sun", "aspect_type": "Trine", "orb": 2.5},
            ],
        },
    }


@pytest.fixture
def metered_source(calculator):
    return MeteredLocalSource(calculator)


@pytest.fixture
def chart_service(metered_source, chart_cache, limiter, connectivity):
    return ChartService(metered_source, chart_cache, limiter, connectivity)
