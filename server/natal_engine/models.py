"""
Domain model for natal charts.

Closed enumerations for signs, bodies and aspect types, plus the immutable
value objects a chart is assembled from. Everything here is a frozen
pydantic model so charts serialise to JSON for the cache without custom
codecs.
"""

import math
from datetime import date, datetime, time
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Element(str, Enum):
    FIRE = "Fire"
    EARTH = "Earth"
    AIR = "Air"
    WATER = "Water"


class Modality(str, Enum):
    CARDINAL = "Cardinal"
    FIXED = "Fixed"
    MUTABLE = "Mutable"


class ZodiacSign(str, Enum):
    ARIES = "Aries"
    TAURUS = "Taurus"
    GEMINI = "Gemini"
    CANCER = "Cancer"
    LEO = "Leo"
    VIRGO = "Virgo"
    LIBRA = "Libra"
    SCORPIO = "Scorpio"
    SAGITTARIUS = "Sagittarius"
    CAPRICORN = "Capricorn"
    AQUARIUS = "Aquarius"
    PISCES = "Pisces"

    @property
    def ordinal(self) -> int:
        return ZODIAC_ORDER.index(self)

    @property
    def element(self) -> Element:
        return (Element.FIRE, Element.EARTH, Element.AIR, Element.WATER)[self.ordinal % 4]

    @property
    def modality(self) -> Modality:
        return (Modality.CARDINAL, Modality.FIXED, Modality.MUTABLE)[self.ordinal % 3]

    @property
    def degree_range(self) -> Tuple[float, float]:
        start = self.ordinal * 30.0
        return start, start + 30.0


ZODIAC_ORDER: Tuple[ZodiacSign, ...] = tuple(ZodiacSign)


class CelestialBody(str, Enum):
    SUN = "Sun"
    MOON = "Moon"
    MERCURY = "Mercury"
    VENUS = "Venus"
    MARS = "Mars"
    JUPITER = "Jupiter"
    SATURN = "Saturn"
    URANUS = "Uranus"
    NEPTUNE = "Neptune"
    PLUTO = "Pluto"
    TRUE_NODE = "TrueNode"
    SOUTH_NODE = "SouthNode"
    LILITH = "Lilith"


CLASSICAL_PLANETS: Tuple[CelestialBody, ...] = (
    CelestialBody.SUN, CelestialBody.MOON, CelestialBody.MERCURY,
    CelestialBody.VENUS, CelestialBody.MARS, CelestialBody.JUPITER,
    CelestialBody.SATURN, CelestialBody.URANUS, CelestialBody.NEPTUNE,
    CelestialBody.PLUTO,
)

OPTIONAL_POINTS: Tuple[CelestialBody, ...] = (
    CelestialBody.TRUE_NODE, CelestialBody.SOUTH_NODE, CelestialBody.LILITH,
)

ALL_BODIES: Tuple[CelestialBody, ...] = tuple(CelestialBody)


class AspectType(str, Enum):
    CONJUNCTION = "Conjunction"
    OPPOSITION = "Opposition"
    TRINE = "Trine"
    SQUARE = "Square"
    SEXTILE = "Sextile"
    QUINCUNX = "Quincunx"
    SEMISEXTILE = "Semisextile"
    SEMISQUARE = "Semisquare"
    SESQUISQUARE = "Sesquisquare"
    QUINTILE = "Quintile"
    BIQUINTILE = "Biquintile"

    @property
    def angle(self) -> float:
        return _ASPECT_GEOMETRY[self][0]

    @property
    def max_orb(self) -> float:
        return _ASPECT_GEOMETRY[self][1]

    @property
    def is_major(self) -> bool:
        return self in MAJOR_ASPECTS


# aspect -> (exact angle, default max orb)
_ASPECT_GEOMETRY = {
    AspectType.CONJUNCTION: (0.0, 8.0),
    AspectType.OPPOSITION: (180.0, 8.0),
    AspectType.TRINE: (120.0, 7.0),
    AspectType.SQUARE: (90.0, 7.0),
    AspectType.SEXTILE: (60.0, 6.0),
    AspectType.QUINCUNX: (150.0, 3.0),
    AspectType.SEMISEXTILE: (30.0, 3.0),
    AspectType.SEMISQUARE: (45.0, 3.0),
    AspectType.SESQUISQUARE: (135.0, 3.0),
    AspectType.QUINTILE: (72.0, 2.0),
    AspectType.BIQUINTILE: (144.0, 2.0),
}

MAJOR_ASPECTS: Tuple[AspectType, ...] = (
    AspectType.CONJUNCTION, AspectType.OPPOSITION, AspectType.TRINE,
    AspectType.SQUARE, AspectType.SEXTILE,
)

MINOR_ASPECTS: Tuple[AspectType, ...] = tuple(a for a in AspectType if a not in MAJOR_ASPECTS)


class HouseSystem(str, Enum):
    PLACIDUS = "placidus"
    KOCH = "koch"
    EQUAL = "equal"
    WHOLE_SIGN = "whole_sign"
    REGIOMONTANUS = "regiomontanus"
    CAMPANUS = "campanus"
    PORPHYRY = "porphyry"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class Coordinates(_Frozen):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class BirthInput(_Frozen):
    """Birth data as entered by the user; the source of a chart's fingerprint."""

    name: str
    birth_date: date
    birth_time: time
    location: str = ""
    timezone: str
    coordinates: Optional[Coordinates] = None

    @field_validator("birth_time")
    @classmethod
    def drop_sub_second_precision(cls, v: time) -> time:
        return v.replace(microsecond=0, tzinfo=None)

    @field_validator("timezone")
    @classmethod
    def strip_timezone(cls, v: str) -> str:
        return v.strip()


class BodyPosition(_Frozen):
    body: CelestialBody
    longitude: float = Field(..., ge=0, lt=360)
    latitude: float = 0.0
    sign: ZodiacSign
    house: int = Field(1, ge=1, le=12)
    is_retrograde: bool = False
    speed: float = 0.0


class House(_Frozen):
    number: int = Field(..., ge=1, le=12)
    cusp: float = Field(..., ge=0, lt=360)
    sign: ZodiacSign


class Aspect(_Frozen):
    body1: CelestialBody
    body2: CelestialBody
    type: AspectType
    orb: float
    is_applying: bool = False

    @model_validator(mode="before")
    @classmethod
    def clamp_orb(cls, data):
        if isinstance(data, dict) and "orb" in data and "type" in data:
            aspect_type = AspectType(data["type"])
            orb = abs(float(data["orb"]))
            if math.isnan(orb):
                orb = aspect_type.max_orb
            data = {**data, "orb": min(max(0.0, orb), aspect_type.max_orb)}
        return data

    def involves(self, body: CelestialBody) -> bool:
        return body in (self.body1, self.body2)


class HouseRuler(_Frozen):
    house_number: int = Field(..., ge=1, le=12)
    ruling_body: CelestialBody
    ruler_sign: ZodiacSign
    ruler_house: int = Field(..., ge=1, le=12)
    ruler_longitude: float


class ChartVisualization(_Frozen):
    file_id: str
    format: str = "svg"


class NatalChart(_Frozen):
    birth_date: date
    birth_time: time
    latitude: float
    longitude: float
    location_name: str
    house_system: HouseSystem = HouseSystem.PLACIDUS
    bodies: List[BodyPosition]
    houses: List[House]
    aspects: List[Aspect]
    house_rulers: List[HouseRuler]
    ascendant: float
    midheaven: float
    calculated_at: datetime
    visualization: Optional[ChartVisualization] = None

    def body(self, body: CelestialBody) -> Optional[BodyPosition]:
        return next((b for b in self.bodies if b.body == body), None)

    def house(self, number: int) -> Optional[House]:
        return next((h for h in self.houses if h.number == number), None)


class CachedChartRecord(_Frozen):
    fingerprint: str
    birth_input: BirthInput
    chart: NatalChart
    generated_at: datetime


class MonthlyUsage(_Frozen):
    request_count: int
    estimated_charts: int
    credits_consumed: int
