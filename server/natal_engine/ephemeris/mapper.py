"""
Chart service response to NatalChart mapping.

The chart service reports positions, cusps and aspects in its own
vocabulary. Signs are always re-derived from absolute longitudes and house
rulers are always computed locally, so a mapped chart obeys the same rules
as one computed from the ephemeris.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from ..errors import DecodingFailure
from ..models import (
    ALL_BODIES, MAJOR_ASPECTS, Aspect, AspectType, BirthInput, BodyPosition,
    CelestialBody, House, HouseSystem, NatalChart, ZodiacSign,
)
from ..schemas import (
    UpstreamAspect, UpstreamChartResponse, UpstreamHouseCusp,
    UpstreamPlanetaryPosition,
)
from .compute import (
    aspects as compute_aspects, house_placement, house_rulers, is_applying,
    orb_limits, sign_for_longitude, wrap_degree,
)
from .vocabulary import angle_name, parse_aspect_type, parse_body, parse_house_number, parse_sign

logger = logging.getLogger(__name__)


def decode_response(payload: Union[Mapping[str, Any], UpstreamChartResponse]) -> UpstreamChartResponse:
    """
    Validate a raw chart service body.

    Raises:
        DecodingFailure: If the body does not match the response schema
    """
    if isinstance(payload, UpstreamChartResponse):
        return payload
    try:
        return UpstreamChartResponse.model_validate(payload)
    except ValidationError as e:
        raise DecodingFailure(e)


def whole_sign_house(sign: ZodiacSign, ascendant: float) -> int:
    return (sign.ordinal - sign_for_longitude(ascendant).ordinal) % 12 + 1


def _check_sign(reported: Optional[str], longitude: float, what: str) -> ZodiacSign:
    derived = sign_for_longitude(longitude)
    if reported is not None:
        upstream_sign = parse_sign(reported)
        if upstream_sign != derived:
            logger.warning(
                f"Chart service sign {upstream_sign.value} for {what} disagrees with "
                f"longitude {longitude:.4f} ({derived.value}); using {derived.value}"
            )
    return derived


def _known_body(name: str) -> Optional[CelestialBody]:
    try:
        return parse_body(name)
    except DecodingFailure:
        logger.info(f"Skipping unsupported chart service point '{name}'")
        return None


def _upstream_house(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return parse_house_number(value)
    except DecodingFailure:
        logger.debug(f"Ignoring invalid upstream house '{value}'")
        return None


class ChartResponseMapper:
    """
    Maps chart service responses to NatalChart.

    Args:
        aspect_types: Aspect types kept, whether reported or computed locally
        orb_overrides: Tightened orb limits, applied to reported aspects too
        aspect_limit: Keep only the N tightest aspects (None keeps all)
    """

    def __init__(self, aspect_types: Iterable[AspectType] = MAJOR_ASPECTS,
                 orb_overrides: Optional[Mapping[AspectType, float]] = None,
                 aspect_limit: Optional[int] = None):
        self.aspect_types = tuple(aspect_types)
        self.orb_overrides = dict(orb_overrides or {})
        self.aspect_limit = aspect_limit

    def to_chart(self, payload: Union[Mapping[str, Any], UpstreamChartResponse],
                 birth_input: BirthInput, house_system: HouseSystem,
                 calculated_at: datetime) -> NatalChart:
        """
        Map one chart service response.

        Args:
            payload: Raw JSON body or an already validated response
            birth_input: The birth input the chart was requested for
            house_system: House system the chart was requested with
            calculated_at: Timestamp recorded on the chart

        Returns:
            The mapped NatalChart

        Raises:
            DecodingFailure: On schema errors, an unknown sign, house or aspect
                type, or a cusp list that is not exactly houses 1-12
            RulerNotFound: If a house ruler is missing from the bodies
        """
        response = decode_response(payload)
        subject = response.subject_data
        data = response.chart_data

        raw_bodies, reported_angles = self._split_points(data.planetary_positions)
        houses = self._map_houses(data.house_cusps)

        ascendant = self._angle(subject.ascendant, reported_angles.get("ascendant"), houses, 1)
        midheaven = self._angle(subject.medium_coeli, reported_angles.get("midheaven"), houses, 10)

        bodies = self._place(raw_bodies, houses, ascendant)

        if data.aspects is None:
            chart_aspects = compute_aspects(bodies, self.orb_overrides, self.aspect_types)
        else:
            chart_aspects = self._map_aspects(data.aspects, bodies)
        if self.aspect_limit is not None:
            chart_aspects = chart_aspects[:self.aspect_limit]

        return NatalChart(
            birth_date=birth_input.birth_date,
            birth_time=birth_input.birth_time,
            latitude=subject.lat,
            longitude=subject.lng,
            location_name=subject.city or birth_input.location,
            house_system=house_system,
            bodies=bodies,
            houses=houses,
            aspects=chart_aspects,
            house_rulers=house_rulers(houses, bodies) if houses else [],
            ascendant=ascendant,
            midheaven=midheaven,
            calculated_at=calculated_at,
        )

    def _split_points(self, positions: List[UpstreamPlanetaryPosition]):
        bodies: Dict[CelestialBody, Dict[str, Any]] = {}
        angles: Dict[str, float] = {}

        for position in positions:
            longitude = wrap_degree(position.absolute_longitude)

            angle = angle_name(position.name)
            if angle is not None:
                angles[angle] = longitude
                continue

            body = _known_body(position.name)
            if body is None:
                continue
            if body in bodies:
                logger.warning(f"Duplicate position for {body.value} in chart service response; keeping the first")
                continue

            sign = _check_sign(position.sign, longitude, body.value)
            if position.speed is not None:
                retrograde = position.speed < 0
            else:
                retrograde = bool(position.is_retrograde)

            bodies[body] = {
                "body": body,
                "longitude": longitude,
                "latitude": position.latitude or 0.0,
                "sign": sign,
                "is_retrograde": retrograde,
                "speed": position.speed or 0.0,
                "upstream_house": _upstream_house(position.house),
            }

        node = bodies.get(CelestialBody.TRUE_NODE)
        if node is not None and CelestialBody.SOUTH_NODE not in bodies:
            longitude = wrap_degree(node["longitude"] + 180.0)
            bodies[CelestialBody.SOUTH_NODE] = {
                **node,
                "body": CelestialBody.SOUTH_NODE,
                "longitude": longitude,
                "latitude": -node["latitude"],
                "sign": sign_for_longitude(longitude),
                "upstream_house": None,
            }

        return [bodies[b] for b in ALL_BODIES if b in bodies], angles

    def _map_houses(self, cusps: Optional[List[UpstreamHouseCusp]]) -> List[House]:
        if not cusps:
            return []

        by_number: Dict[int, House] = {}
        for cusp in cusps:
            number = parse_house_number(cusp.house)
            if number in by_number:
                raise DecodingFailure(f"house {number} reported twice")
            longitude = wrap_degree(cusp.absolute_longitude)
            by_number[number] = House(
                number=number,
                cusp=longitude,
                sign=_check_sign(cusp.sign, longitude, f"house {number}"),
            )

        if sorted(by_number) != list(range(1, 13)):
            raise DecodingFailure(f"expected houses 1-12, got {sorted(by_number)}")
        return [by_number[n] for n in range(1, 13)]

    @staticmethod
    def _angle(subject_value: Optional[float], reported: Optional[float],
               houses: List[House], house_number: int) -> float:
        if subject_value is not None:
            return wrap_degree(subject_value)
        if reported is not None:
            return reported
        if houses:
            return houses[house_number - 1].cusp
        return 0.0

    @staticmethod
    def _place(raw_bodies: List[Dict[str, Any]], houses: List[House],
               ascendant: float) -> List[BodyPosition]:
        placed = []
        for raw in raw_bodies:
            fields = dict(raw)
            upstream_house = fields.pop("upstream_house")
            if houses:
                fields["house"] = house_placement(fields["longitude"], houses)
            elif upstream_house is not None:
                fields["house"] = upstream_house
            else:
                fields["house"] = whole_sign_house(fields["sign"], ascendant)
            placed.append(BodyPosition(**fields))
        return placed

    def _map_aspects(self, upstream: List[UpstreamAspect], bodies: List[BodyPosition]) -> List[Aspect]:
        positions = {b.body: b for b in bodies}
        limits = orb_limits(self.aspect_types, self.orb_overrides)
        tightest: Dict[frozenset, Aspect] = {}

        for item in upstream:
            # aspects to the angles are not body aspects
            if angle_name(item.point1) is not None or angle_name(item.point2) is not None:
                continue

            body1 = _known_body(item.point1)
            body2 = _known_body(item.point2)
            aspect_type = parse_aspect_type(item.aspect_type)
            if body1 is None or body2 is None or body1 == body2:
                continue

            # same rules as locally computed aspects
            if aspect_type not in limits or abs(item.orb) > limits[aspect_type]:
                continue

            applying = False
            if body1 in positions and body2 in positions:
                applying = is_applying(positions[body1], positions[body2], aspect_type.angle)

            aspect = Aspect(body1=body1, body2=body2, type=aspect_type,
                            orb=item.orb, is_applying=applying)
            pair = frozenset((body1, body2))
            current = tightest.get(pair)
            if current is None or aspect.orb < current.orb:
                tightest[pair] = aspect

        return sorted(tightest.values(), key=lambda a: a.orb)
