"""Traditional sign rulership."""

from typing import Dict

from ..models import CelestialBody, ZodiacSign

TRADITIONAL_RULERS: Dict[ZodiacSign, CelestialBody] = {
    ZodiacSign.ARIES: CelestialBody.MARS,
    ZodiacSign.TAURUS: CelestialBody.VENUS,
    ZodiacSign.GEMINI: CelestialBody.MERCURY,
    ZodiacSign.CANCER: CelestialBody.MOON,
    ZodiacSign.LEO: CelestialBody.SUN,
    ZodiacSign.VIRGO: CelestialBody.MERCURY,
    ZodiacSign.LIBRA: CelestialBody.VENUS,
    ZodiacSign.SCORPIO: CelestialBody.MARS,
    ZodiacSign.SAGITTARIUS: CelestialBody.JUPITER,
    ZodiacSign.CAPRICORN: CelestialBody.SATURN,
    ZodiacSign.AQUARIUS: CelestialBody.SATURN,
    ZodiacSign.PISCES: CelestialBody.JUPITER,
}


def ruler_of(sign: ZodiacSign) -> CelestialBody:
    return TRADITIONAL_RULERS[sign]
