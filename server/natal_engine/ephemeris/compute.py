"""
Chart derivation from raw ephemeris output.

Signs, house placement, aspects and rulers are all computed here from
longitudes, so the local ephemeris path and the chart service path produce
charts with the same rules. All functions are pure.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from ..errors import InvalidBirthInput, RulerNotFound
from ..models import (
    ALL_BODIES, MAJOR_ASPECTS, ZODIAC_ORDER,
    Aspect, AspectType, BirthInput, BodyPosition, CelestialBody, House,
    HouseRuler, HouseSystem, NatalChart, ZodiacSign,
)
from ..time_resolver.resolver import resolve, to_utc
from .provider import EphemerisProvider
from .rulership import ruler_of

logger = logging.getLogger(__name__)

DEFAULT_BODIES = ALL_BODIES

# forward step used to decide applying vs separating, in days
_APPLYING_STEP_DAYS = 1.0 / 24.0


def wrap_degree(x: float) -> float:
    """Normalise an angle into [0, 360)."""
    wrapped = x % 360.0
    # -1e-20 % 360 rounds to 360.0
    return 0.0 if wrapped >= 360.0 else wrapped


def sign_for_longitude(longitude: float) -> ZodiacSign:
    return ZODIAC_ORDER[int(wrap_degree(longitude) // 30) % 12]


def angular_separation(a: float, b: float) -> float:
    """Shortest arc between two longitudes, in [0, 180]."""
    diff = abs(wrap_degree(a) - wrap_degree(b))
    return min(diff, 360.0 - diff)


def body_position(provider: EphemerisProvider, body: CelestialBody,
                  instant: datetime) -> BodyPosition:
    """
    Compute one body's position.

    The SouthNode is not an ephemeris body: it sits opposite the TrueNode
    and moves with it.

    Args:
        provider: Ephemeris primitive provider
        body: Body to compute
        instant: UTC instant

    Returns:
        BodyPosition with sign derived from longitude; house is filled in
        later by place_bodies
    """
    if body == CelestialBody.SOUTH_NODE:
        node = provider.body(CelestialBody.TRUE_NODE, instant)
        longitude = wrap_degree(node.longitude + 180.0)
        latitude = -node.latitude
        speed = node.speed
    else:
        raw = provider.body(body, instant)
        longitude = wrap_degree(raw.longitude)
        latitude = raw.latitude
        speed = raw.speed

    return BodyPosition(
        body=body,
        longitude=longitude,
        latitude=latitude,
        sign=sign_for_longitude(longitude),
        is_retrograde=speed < 0,
        speed=speed,
    )


def all_bodies(provider: EphemerisProvider, instant: datetime,
               bodies: Iterable[CelestialBody] = DEFAULT_BODIES) -> List[BodyPosition]:
    """One position per requested body, in enum order, duplicates dropped."""
    requested = {CelestialBody(b) for b in bodies}
    return [body_position(provider, b, instant) for b in ALL_BODIES if b in requested]


@dataclass(frozen=True)
class HouseResult:
    ascendant: float
    midheaven: float
    houses: List[House]


def houses(provider: EphemerisProvider, instant: datetime, latitude: float,
           longitude: float,
           system: Union[HouseSystem, str] = HouseSystem.PLACIDUS) -> HouseResult:
    """
    Compute the twelve house cusps and the chart angles.

    Raises:
        ValueError: If the house system is unknown or the provider returns
            something other than twelve cusps
    """
    system = HouseSystem(system)
    raw = provider.houses(instant, latitude, longitude, system)
    if len(raw.cusps) != 12:
        raise ValueError(f"Expected 12 house cusps, provider returned {len(raw.cusps)}")

    result = [
        House(number=n, cusp=wrap_degree(cusp), sign=sign_for_longitude(cusp))
        for n, cusp in enumerate(raw.cusps, start=1)
    ]
    return HouseResult(
        ascendant=wrap_degree(raw.ascendant),
        midheaven=wrap_degree(raw.midheaven),
        houses=result,
    )


def house_placement(longitude: float, houses: Sequence[House]) -> int:
    """
    Find the house containing a longitude.

    House n spans [cusp n, cusp n+1), with house 12 running on to the
    house 1 cusp across 0 degrees. The answer is the house whose cusp is the
    nearest one at or behind the longitude, which gives exactly one house
    for every longitude.

    Args:
        longitude: Ecliptic longitude in degrees
        houses: Chart houses

    Returns:
        House number 1-12

    Raises:
        ValueError: If houses is empty
    """
    if not houses:
        raise ValueError("Cannot place a body without house cusps")

    lon = wrap_degree(longitude)
    best_number = None
    best_distance = None
    for house in sorted(houses, key=lambda h: h.number):
        distance = wrap_degree(lon - house.cusp)
        # ties go to the later house: an earlier house with the same cusp is empty
        if best_distance is None or distance <= best_distance:
            best_number = house.number
            best_distance = distance
    return best_number


def place_bodies(bodies: Sequence[BodyPosition], houses: Sequence[House]) -> List[BodyPosition]:
    return [b.model_copy(update={"house": house_placement(b.longitude, houses)}) for b in bodies]


def orb_limits(aspect_types: Iterable[AspectType],
                orb_overrides: Optional[Mapping]) -> Dict[AspectType, float]:
    overrides = {AspectType(k): float(v) for k, v in (orb_overrides or {}).items()}
    limits = {}
    for aspect_type in aspect_types:
        limit = overrides.get(aspect_type, aspect_type.max_orb)
        # overrides can only tighten
        limits[aspect_type] = max(0.0, min(limit, aspect_type.max_orb))
    return limits


def is_applying(first: BodyPosition, second: BodyPosition, angle: float) -> bool:
    now = abs(angular_separation(first.longitude, second.longitude) - angle)
    later = abs(angular_separation(
        first.longitude + first.speed * _APPLYING_STEP_DAYS,
        second.longitude + second.speed * _APPLYING_STEP_DAYS,
    ) - angle)
    return later < now


def aspects(bodies: Sequence[BodyPosition],
            orb_overrides: Optional[Mapping[AspectType, float]] = None,
            aspect_types: Iterable[AspectType] = MAJOR_ASPECTS) -> List[Aspect]:
    """
    Find the aspects between every pair of bodies.

    Each pair gets at most one aspect: the type it is closest to exact.
    The result is sorted by orb, tightest first; equal orbs keep the order
    the pairs were visited in.

    Args:
        bodies: Positioned bodies
        orb_overrides: Per-type maximum orbs; values above the default are
            capped at the default
        aspect_types: Aspect types to look for (major aspects by default)

    Returns:
        Aspects sorted ascending by orb
    """
    limits = orb_limits(aspect_types, orb_overrides)
    found = []

    for i in range(len(bodies)):
        for j in range(i + 1, len(bodies)):
            first, second = bodies[i], bodies[j]
            if first.body == second.body:
                continue

            separation = angular_separation(first.longitude, second.longitude)
            best_type = None
            best_orb = None
            for aspect_type, limit in limits.items():
                orb = abs(separation - aspect_type.angle)
                if orb <= limit and (best_orb is None or orb < best_orb):
                    best_type, best_orb = aspect_type, orb

            if best_type is not None:
                found.append(Aspect(
                    body1=first.body,
                    body2=second.body,
                    type=best_type,
                    orb=best_orb,
                    is_applying=is_applying(first, second, best_type.angle),
                ))

    return sorted(found, key=lambda a: a.orb)


def house_ruler(house: House, bodies: Sequence[BodyPosition]) -> HouseRuler:
    """
    Traditional ruler of a house, located in the chart.

    Raises:
        RulerNotFound: If the ruling body is not among the chart's bodies
    """
    ruling_body = ruler_of(house.sign)
    ruler = next((b for b in bodies if b.body == ruling_body), None)
    if ruler is None:
        raise RulerNotFound(ruling_body)

    return HouseRuler(
        house_number=house.number,
        ruling_body=ruling_body,
        ruler_sign=ruler.sign,
        ruler_house=ruler.house,
        ruler_longitude=ruler.longitude,
    )


def house_rulers(houses: Sequence[House], bodies: Sequence[BodyPosition]) -> List[HouseRuler]:
    return [house_ruler(h, bodies) for h in sorted(houses, key=lambda h: h.number)]


class ChartCalculator:
    """Builds a NatalChart locally from an ephemeris provider."""

    def __init__(self, provider: EphemerisProvider,
                 bodies: Iterable[CelestialBody] = DEFAULT_BODIES,
                 aspect_types: Iterable[AspectType] = MAJOR_ASPECTS,
                 orb_overrides: Optional[Mapping[AspectType, float]] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.provider = provider
        self.bodies = tuple(bodies)
        self.aspect_types = tuple(aspect_types)
        self.orb_overrides = dict(orb_overrides or {})
        self.clock = clock

    def calculate(self, birth_input: BirthInput,
                  house_system: Union[HouseSystem, str] = HouseSystem.PLACIDUS) -> NatalChart:
        """
        Compute a complete natal chart.

        Raises:
            InvalidBirthInput: If the birth input has no coordinates
            UnknownTimezone: If the birth timezone is not an IANA zone
        """
        if birth_input.coordinates is None:
            raise InvalidBirthInput("Coordinates are required to compute a chart locally")

        house_system = HouseSystem(house_system)
        tz = resolve(birth_input.timezone)
        instant = to_utc(birth_input.birth_date, birth_input.birth_time, tz)
        lat = birth_input.coordinates.latitude
        lon = birth_input.coordinates.longitude

        house_result = houses(self.provider, instant, lat, lon, house_system)
        positioned = place_bodies(all_bodies(self.provider, instant, self.bodies), house_result.houses)

        logger.debug(f"Computed {len(positioned)} bodies for {instant.isoformat()} ({house_system.value})")

        return NatalChart(
            birth_date=birth_input.birth_date,
            birth_time=birth_input.birth_time,
            latitude=lat,
            longitude=lon,
            location_name=birth_input.location,
            house_system=house_system,
            bodies=positioned,
            houses=house_result.houses,
            aspects=aspects(positioned, self.orb_overrides, self.aspect_types),
            house_rulers=house_rulers(house_result.houses, positioned),
            ascendant=house_result.ascendant,
            midheaven=house_result.midheaven,
            calculated_at=self.clock(),
        )
