"""
Closed vocabulary parsers for chart service payloads.

Each parser maps every spelling the chart service is known to use onto one
enum member and raises DecodingFailure for anything else. There is no
default member: an unknown sign is a decoding error, not Aries.
"""

from typing import Dict, Optional, Union

from ..errors import DecodingFailure
from ..models import AspectType, CelestialBody, ZodiacSign


def _key(value: str) -> str:
    return " ".join(str(value).strip().lower().replace("_", " ").replace("-", " ").split())


_SIGNS: Dict[str, ZodiacSign] = {}
for _sign in ZodiacSign:
    _SIGNS[_sign.value.lower()] = _sign
    _SIGNS[_sign.value[:3].lower()] = _sign

_BODIES: Dict[str, CelestialBody] = {b.value.lower(): b for b in CelestialBody}
_BODIES.update({
    "true node": CelestialBody.TRUE_NODE,
    "north node": CelestialBody.TRUE_NODE,
    "true north node": CelestialBody.TRUE_NODE,
    "mean node": CelestialBody.TRUE_NODE,
    "south node": CelestialBody.SOUTH_NODE,
    "true south node": CelestialBody.SOUTH_NODE,
    "mean lilith": CelestialBody.LILITH,
    "black moon": CelestialBody.LILITH,
    "black moon lilith": CelestialBody.LILITH,
})

_ASPECTS: Dict[str, AspectType] = {a.value.lower(): a for a in AspectType}
_ASPECTS.update({
    "inconjunct": AspectType.QUINCUNX,
    "semi sextile": AspectType.SEMISEXTILE,
    "semi square": AspectType.SEMISQUARE,
    "sesqui square": AspectType.SESQUISQUARE,
    "sesquiquadrate": AspectType.SESQUISQUARE,
    "bi quintile": AspectType.BIQUINTILE,
})

# angle point name -> canonical angle
ANGLE_NAMES: Dict[str, str] = {
    "ascendant": "ascendant",
    "asc": "ascendant",
    "descendant": "descendant",
    "dsc": "descendant",
    "medium coeli": "midheaven",
    "midheaven": "midheaven",
    "mc": "midheaven",
    "imum coeli": "imum_coeli",
    "ic": "imum_coeli",
}

_ORDINAL_HOUSES: Dict[str, int] = {
    name: number for number, name in enumerate(
        ["first", "second", "third", "fourth", "fifth", "sixth", "seventh",
         "eighth", "ninth", "tenth", "eleventh", "twelfth"],
        start=1,
    )
}


def parse_sign(value: str) -> ZodiacSign:
    """
    Parse a zodiac sign name or three-letter abbreviation.

    Examples:
        >>> parse_sign("Ari")
        <ZodiacSign.ARIES: 'Aries'>

        >>> parse_sign("scorpio")
        <ZodiacSign.SCORPIO: 'Scorpio'>

    Raises:
        DecodingFailure: If the value names no sign
    """
    sign = _SIGNS.get(_key(value)) if value is not None else None
    if sign is None:
        raise DecodingFailure(f"unknown zodiac sign '{value}'")
    return sign


def parse_body(value: str) -> CelestialBody:
    """Parse a body name such as "Sun", "True_Node" or "Mean_Lilith"."""
    body = _BODIES.get(_key(value)) if value is not None else None
    if body is None:
        raise DecodingFailure(f"unknown celestial body '{value}'")
    return body


def parse_aspect_type(value: str) -> AspectType:
    aspect = _ASPECTS.get(_key(value)) if value is not None else None
    if aspect is None:
        raise DecodingFailure(f"unknown aspect type '{value}'")
    return aspect


def angle_name(value: str) -> Optional[str]:
    """Return the canonical angle for an angle point name, None for anything else."""
    if value is None:
        return None
    return ANGLE_NAMES.get(_key(value))


def parse_house_number(value: Union[int, str]) -> int:
    """
    Parse a house reference: 9, "9" or "Ninth_House".

    Raises:
        DecodingFailure: If the value is not a house 1-12
    """
    number = None
    if isinstance(value, bool):
        number = None
    elif isinstance(value, int):
        number = value
    elif isinstance(value, str):
        key = _key(value)
        if key.isdigit():
            number = int(key)
        else:
            number = _ORDINAL_HOUSES.get(key.replace(" house", ""))

    if number is None or not 1 <= number <= 12:
        raise DecodingFailure(f"invalid house '{value}'")
    return number
