# server/natal_engine/api.py
from fastapi import APIRouter, Query
from fastapi.responses import Response
from typing import Optional
import logging

from .schemas import (
    AvailabilityResponse, BirthInputIn, CacheStatusOut, ChartRequest, ChartResponse,
    ErrorOut, EvictionResponse,
)
from .errors import NatalEngineError, bad_request, map_chart_error, not_found
from .images import ChartImageStore
from .config import AppConfig
from .service import ChartService

logger = logging.getLogger(__name__)

router = APIRouter()

# Global variables - will be injected in main.py
SERVICE: ChartService = None
IMAGES: Optional[ChartImageStore] = None
CONFIG: AppConfig = None

_ERROR_RESPONSES = {
    400: {"model": ErrorOut},
    429: {"model": ErrorOut},
    502: {"model": ErrorOut},
    503: {"model": ErrorOut},
}


def _to_birth_input(req: BirthInputIn):
    try:
        return req.to_birth_input()
    except NatalEngineError as e:
        map_chart_error(e)


@router.post("/v1/charts", response_model=ChartResponse, responses=_ERROR_RESPONSES)
async def generate_chart(req: ChartRequest):
    """
    Generate (or return the cached) natal chart for a birth input.

    Set force_refresh to bypass the cache; while offline the cached chart is
    still returned.
    """
    birth_input = _to_birth_input(req)

    try:
        chart = await SERVICE.generate_chart(birth_input, force_refresh=req.force_refresh)
        status = await SERVICE.cache_status(birth_input)
    except NatalEngineError as e:
        map_chart_error(e)

    return ChartResponse(
        chart=chart,
        fingerprint=SERVICE.fingerprint(birth_input),
        cache=CacheStatusOut(**status),
    )


@router.post("/v1/charts/cached", response_model=ChartResponse,
             responses={404: {"model": ErrorOut}, 503: {"model": ErrorOut}})
async def cached_chart(req: BirthInputIn):
    """Return a cached chart without touching the network or the rate limiter."""
    birth_input = _to_birth_input(req)

    try:
        chart = await SERVICE.get_cached_chart(birth_input)
        status = await SERVICE.cache_status(birth_input)
    except NatalEngineError as e:
        map_chart_error(e)

    if chart is None:
        not_found(
            "CACHE.NOT_FOUND",
            "No cached chart",
            "No chart has been generated for this birth input yet.",
            "Generate the chart while online first."
        )

    return ChartResponse(
        chart=chart,
        fingerprint=SERVICE.fingerprint(birth_input),
        cache=CacheStatusOut(**status),
    )


@router.get("/v1/charts/availability", response_model=AvailabilityResponse)
async def availability():
    """Whether a fresh chart can be generated now, and this month's usage."""
    try:
        connected = await SERVICE.is_connected()
        can_generate = await SERVICE.can_generate_chart()
        retry_after = await SERVICE.retry_after_seconds()
        usage = await SERVICE.monthly_usage()
        remaining = await SERVICE.remaining_requests()
    except NatalEngineError as e:
        map_chart_error(e)

    return AvailabilityResponse(
        can_generate=can_generate,
        connected=connected,
        retry_after_seconds=round(retry_after, 3) if retry_after is not None else None,
        remaining_requests=remaining,
        monthly_usage=usage,
    )


@router.delete("/v1/charts/cache", response_model=EvictionResponse)
async def evict_cache(
    older_than_days: Optional[int] = Query(None, ge=1, description="Evict charts older than this many days")
):
    """Delete cached charts older than the given age."""
    days = older_than_days or (CONFIG.cache.eviction_days if CONFIG else 30)

    try:
        deleted = await SERVICE.clear_old_charts(days)
    except NatalEngineError as e:
        map_chart_error(e)

    return EvictionResponse(older_than_days=days, deleted=deleted)


@router.get("/v1/charts/images/{file_id}", responses={404: {"model": ErrorOut}})
def chart_image(file_id: str):
    """Serve a stored chart wheel image."""
    if IMAGES is None:
        not_found("IMAGES.DISABLED", "Chart images are disabled")

    try:
        content = IMAGES.load(file_id, "svg")
    except ValueError as e:
        bad_request("INPUT.INVALID", "Invalid image id", str(e))
    except FileNotFoundError:
        not_found("IMAGES.NOT_FOUND", "Chart image not found", f"No image with id '{file_id}'.")

    return Response(content, media_type="image/svg+xml")
