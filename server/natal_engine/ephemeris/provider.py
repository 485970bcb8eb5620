"""
Ephemeris primitive providers.

A provider answers two questions for a UTC instant: where is each body
(ecliptic longitude, latitude, daily motion) and where are the house cusps
and angles for a place. Everything astrological is derived from that in
compute.py.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol, Tuple

import swisseph as swe

from ..models import CelestialBody, HouseSystem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawBodyPosition:
    longitude: float
    latitude: float
    speed: float


@dataclass(frozen=True)
class RawHouses:
    cusps: Tuple[float, ...]  # houses 1..12 in order
    ascendant: float
    midheaven: float


class EphemerisProvider(Protocol):
    def body(self, body: CelestialBody, instant: datetime) -> RawBodyPosition:
        ...

    def houses(self, instant: datetime, latitude: float, longitude: float,
               system: HouseSystem) -> RawHouses:
        ...


# SouthNode is derived from TrueNode, not requested from the ephemeris
SWISS_BODY_CODES: Dict[CelestialBody, int] = {
    CelestialBody.SUN: swe.SUN,
    CelestialBody.MOON: swe.MOON,
    CelestialBody.MERCURY: swe.MERCURY,
    CelestialBody.VENUS: swe.VENUS,
    CelestialBody.MARS: swe.MARS,
    CelestialBody.JUPITER: swe.JUPITER,
    CelestialBody.SATURN: swe.SATURN,
    CelestialBody.URANUS: swe.URANUS,
    CelestialBody.NEPTUNE: swe.NEPTUNE,
    CelestialBody.PLUTO: swe.PLUTO,
    CelestialBody.TRUE_NODE: swe.TRUE_NODE,
    CelestialBody.LILITH: swe.MEAN_APOG,
}

SWISS_HOUSE_CODES: Dict[HouseSystem, bytes] = {
    HouseSystem.PLACIDUS: b"P",
    HouseSystem.KOCH: b"K",
    HouseSystem.EQUAL: b"E",
    HouseSystem.WHOLE_SIGN: b"W",
    HouseSystem.REGIOMONTANUS: b"R",
    HouseSystem.CAMPANUS: b"C",
    HouseSystem.PORPHYRY: b"O",
}


def julian_day(instant: datetime) -> float:
    """UT Julian day for an aware (or naive UTC) datetime."""
    if instant.tzinfo is not None:
        instant = instant.astimezone(timezone.utc)
    hours = (
        instant.hour
        + instant.minute / 60.0
        + (instant.second + instant.microsecond / 1e6) / 3600.0
    )
    return swe.julday(instant.year, instant.month, instant.day, hours)


class SwissEphemerisProvider:
    """
    Swiss Ephemeris adapter.

    Without ephemeris files on `ephe_path` the library falls back to its
    built-in Moshier theory, which is accurate to well under an arcsecond for
    the planets and good enough for natal work.
    """

    def __init__(self, ephe_path: Optional[str] = None):
        self.ephe_path = ephe_path
        self._lock = threading.Lock()
        self._flags = swe.FLG_SPEED | (swe.FLG_SWIEPH if ephe_path else swe.FLG_MOSEPH)
        if ephe_path:
            swe.set_ephe_path(ephe_path)
            logger.info(f"Swiss Ephemeris path set to {ephe_path}")

    def body(self, body: CelestialBody, instant: datetime) -> RawBodyPosition:
        code = SWISS_BODY_CODES.get(body)
        if code is None:
            raise ValueError(f"{body.value} is not computed directly by the ephemeris")

        # the C library keeps global state; serialise calls
        with self._lock:
            values, _ = swe.calc_ut(julian_day(instant), code, self._flags)
        return RawBodyPosition(longitude=values[0], latitude=values[1], speed=values[3])

    def houses(self, instant: datetime, latitude: float, longitude: float,
               system: HouseSystem = HouseSystem.PLACIDUS) -> RawHouses:
        with self._lock:
            cusps, ascmc = swe.houses(julian_day(instant), latitude, longitude,
                                      SWISS_HOUSE_CODES[system])

        # older releases return 13 values with a dummy at index 0
        cusps = tuple(cusps[1:13]) if len(cusps) > 12 else tuple(cusps[:12])
        return RawHouses(cusps=cusps, ascendant=ascmc[0], midheaven=ascmc[1])

    def version(self) -> str:
        return getattr(swe, "version", "unknown")
