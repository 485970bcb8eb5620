# server/natal_engine/schemas.py
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import InvalidBirthInput
from .models import BirthInput, Coordinates, MonthlyUsage, NatalChart
from .util.dates import parse_birth_date, parse_birth_time


# --- chart service wire format ---------------------------------------------

class UpstreamBirthData(BaseModel):
    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int = 0
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: float  # hours east of UTC, e.g. 5.5
    city: str = ""


class UpstreamSubject(BaseModel):
    name: str
    birth_data: UpstreamBirthData


class UpstreamOptions(BaseModel):
    house_system: str = "P"
    language: str = "en"
    zodiac_type: str = "Tropic"
    active_points: List[str] = [
        "Sun", "Moon", "Mercury", "Venus", "Mars", "Jupiter", "Saturn",
        "Uranus", "Neptune", "Pluto", "True_Node", "Mean_Lilith",
        "Ascendant", "Medium_Coeli",
    ]


class UpstreamChartRequest(BaseModel):
    subject: UpstreamSubject
    options: UpstreamOptions = UpstreamOptions()


def _abs_pos(v: Any) -> Any:
    # angles come either as a bare longitude or as a point object
    if isinstance(v, dict):
        return v.get("abs_pos", v.get("absolute_longitude"))
    return v


class UpstreamSubjectData(BaseModel):
    name: str = ""
    lat: float
    lng: float
    city: str = ""
    ascendant: Optional[float] = None
    medium_coeli: Optional[float] = None

    @field_validator("ascendant", "medium_coeli", mode="before")
    @classmethod
    def unwrap_point(cls, v):
        return _abs_pos(v)


class UpstreamPlanetaryPosition(BaseModel):
    name: str
    sign: Optional[str] = None
    absolute_longitude: float
    latitude: Optional[float] = None
    speed: Optional[float] = None
    is_retrograde: Optional[bool] = None
    house: Optional[Union[int, str]] = None


class UpstreamHouseCusp(BaseModel):
    house: Union[int, str]
    sign: Optional[str] = None
    absolute_longitude: float


class UpstreamAspect(BaseModel):
    point1: str
    point2: str
    aspect_type: str
    orb: float


class UpstreamChartData(BaseModel):
    planetary_positions: List[UpstreamPlanetaryPosition]
    house_cusps: Optional[List[UpstreamHouseCusp]] = None
    aspects: Optional[List[UpstreamAspect]] = None


class UpstreamChartResponse(BaseModel):
    subject_data: UpstreamSubjectData
    chart_data: UpstreamChartData


# --- HTTP API ----------------------------------------------------------------

class BirthInputIn(BaseModel):
    name: str = Field(..., min_length=1)
    birth_date: str  # "1990-03-15", "15 March 1990", ...
    birth_time: str  # "14:30", "2:30 PM", ...
    location: str = ""
    timezone: str = Field(..., min_length=1)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def coordinates_come_in_pairs(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError('Provide both "latitude" and "longitude", or neither')
        return self

    def to_birth_input(self) -> BirthInput:
        """
        Build the domain birth input, parsing the flexible date and time.

        Raises:
            InvalidBirthInput: If the date or time cannot be parsed
        """
        try:
            birth_date = parse_birth_date(self.birth_date)
            birth_time = parse_birth_time(self.birth_time)
        except ValueError as e:
            raise InvalidBirthInput(str(e))

        coordinates = None
        if self.latitude is not None and self.longitude is not None:
            coordinates = Coordinates(latitude=self.latitude, longitude=self.longitude)

        return BirthInput(
            name=self.name,
            birth_date=birth_date,
            birth_time=birth_time,
            location=self.location,
            timezone=self.timezone,
            coordinates=coordinates,
        )


class ChartRequest(BirthInputIn):
    force_refresh: bool = False


class CacheStatusOut(BaseModel):
    cached: bool
    generated_at: Optional[datetime] = None
    stale: bool = False


class ChartResponse(BaseModel):
    chart: NatalChart
    fingerprint: str
    cache: CacheStatusOut


class AvailabilityResponse(BaseModel):
    can_generate: bool
    connected: bool
    retry_after_seconds: Optional[float] = None
    remaining_requests: int
    monthly_usage: MonthlyUsage


class EvictionResponse(BaseModel):
    older_than_days: int
    deleted: int


class HealthzResponse(BaseModel):
    status: str = "healthy"
    timestamp: Optional[str] = None
    version: Optional[str] = None
    source: str
    connected: bool
    store: Dict[str, Any]
    cache: Dict[str, Any]
    rate_limiting: Dict[str, Any]
    metrics: Dict[str, Any]


class ErrorOut(BaseModel):
    code: str
    title: str
    detail: Optional[str] = None
    tip: Optional[str] = None
