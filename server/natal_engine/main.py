# server/natal_engine/main.py
import logging
import os
import time
import sys
from datetime import datetime, timedelta, timezone
from contextlib import asynccontextmanager
from typing import Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__, api
from .caching import ChartCache
from .config import AppConfig, load_config, print_config
from .connectivity import StaticConnectivity, TcpConnectivity
from .ephemeris.compute import ChartCalculator
from .ephemeris.mapper import ChartResponseMapper
from .ephemeris.provider import SwissEphemerisProvider
from .images import ChartImageStore
from .models import MAJOR_ASPECTS, MINOR_ASPECTS
from .obs.logging import setup_logging, StructuredLogger, set_request_context, clear_request_context
from .obs.metrics import metrics, get_metrics_content, RequestMetricsMiddleware
from .ratelimit import RateLimiter
from .schemas import HealthzResponse
from .service import ChartService
from .sources import LocalChartSource, RemoteChartSource
from .storage import RecordStore, create_store
from .upstream.client import ChartServiceClient

# Will be configured in lifespan
logger = logging.getLogger(__name__)
business_logger = StructuredLogger(__name__)

CONFIG_PATH = os.environ.get("NATAL_CONFIG", "config.yaml")

# Loaded at import so CORS can be configured before the app starts
CONFIG: AppConfig = load_config(CONFIG_PATH)
STORE: Optional[RecordStore] = None
EPHEMERIS_VERSION = "n/a"


def build_service(config: AppConfig) -> Tuple[RecordStore, Optional[ChartImageStore], ChartService]:
    """
    Wire the chart pipeline from configuration.

    Returns:
        (record store, image store or None, chart service)
    """
    global EPHEMERIS_VERSION

    store = create_store(config.store.backend, config.store.redis_url, config.store.key_prefix)
    images = ChartImageStore(config.images.directory) if config.images.enabled else None

    aspect_types = MAJOR_ASPECTS + MINOR_ASPECTS if config.ephemeris.include_minor_aspects else MAJOR_ASPECTS
    orb_overrides = config.ephemeris.orb_overrides

    if config.ephemeris.source == "local":
        provider = SwissEphemerisProvider(config.ephemeris.ephe_path)
        EPHEMERIS_VERSION = f"pyswisseph-{provider.version()}"
        source = LocalChartSource(
            ChartCalculator(provider, aspect_types=aspect_types, orb_overrides=orb_overrides)
        )
    else:
        source = RemoteChartSource(
            ChartServiceClient(config.upstream),
            ChartResponseMapper(aspect_types, orb_overrides, config.ephemeris.aspect_limit),
            image_store=images,
            theme=config.images.theme,
        )

    rate_limiter = RateLimiter(
        store,
        limit=config.ratelimit.limit,
        requests_per_chart=config.ratelimit.requests_per_chart or max(source.requests_per_chart, 1),
        name=config.ratelimit.name,
    )
    if source.metered:
        if source.requests_per_chart > rate_limiter.max_requests:
            raise ValueError(
                f"One chart costs {source.requests_per_chart} requests, more than the "
                f"window limit {config.ratelimit.limit} allows"
            )
        # retries are billed like first attempts
        source.client.retry_gate = rate_limiter.acquire
    cache = ChartCache(store, max_age=timedelta(days=config.cache.max_age_days), image_store=images)

    if config.connectivity.mode == "tcp":
        connectivity = TcpConnectivity(
            config.connectivity.host, config.connectivity.port, config.connectivity.timeout_ms
        )
    else:
        connectivity = StaticConnectivity(config.connectivity.connected)

    service = ChartService(source, cache, rate_limiter, connectivity, config.ephemeris.house_system)
    return store, images, service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager for startup and shutdown.
    """
    global STORE

    setup_logging(level=CONFIG.logging.level, enable_json=CONFIG.logging.json_format)

    logger.info(f"Starting Natal Chart Engine v{__version__}...")
    business_logger.startup_event("application", "starting")
    startup_start = time.perf_counter()

    print_config(CONFIG)

    try:
        STORE, images, service = build_service(CONFIG)
    except Exception as e:
        business_logger.startup_event("application", "error")
        logger.error(f"Failed to initialize services: {e}")
        raise

    business_logger.startup_event("store", "ready", details=STORE.health_check())
    business_logger.startup_event(
        "chart_source", "ready",
        details={
            "source": service.source.name,
            "metered": service.source.metered,
            "house_system": CONFIG.ephemeris.house_system.value
        }
    )
    business_logger.startup_event(
        "rate_limiting", "ready" if service.source.metered else "disabled",
        details={"limit": CONFIG.ratelimit.limit, "requests_per_chart": service.rate_limiter.requests_per_chart}
    )
    business_logger.startup_event(
        "chart_images", "ready" if images else "disabled",
        details={"directory": CONFIG.images.directory}
    )

    metrics.set_system_info(
        version=__version__,
        source=service.source.name,
        python_version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        ephemeris_version=EPHEMERIS_VERSION
    )

    # Inject dependencies into API module
    api.CONFIG = CONFIG
    api.SERVICE = service
    api.IMAGES = images

    business_logger.startup_event(
        "application", "ready",
        duration_ms=(time.perf_counter() - startup_start) * 1000
    )
    logger.info(f"Natal Chart Engine v{__version__} startup complete")

    yield

    # Shutdown
    logger.info("Shutting down Natal Chart Engine...")
    business_logger.startup_event("application", "stopping")

    try:
        await service.aclose()
    except Exception as e:
        logger.error(f"Error closing chart source: {e}")

    business_logger.startup_event("application", "stopped")
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Natal Chart Engine",
    version=__version__,
    description="Natal charts with offline cache and metered chart service access",
    lifespan=lifespan
)

# Add metrics middleware
app.add_middleware(RequestMetricsMiddleware)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=CONFIG.api.cors_origins or ["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    """
    Request correlation and logging middleware.
    """
    request_id = set_request_context(request.headers.get("X-Request-Id"))
    start_time = time.perf_counter()

    try:
        response = await call_next(request)

        duration_ms = int((time.perf_counter() - start_time) * 1000)
        logger.info(
            "HTTP request processed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "user_agent": request.headers.get("user-agent", "unknown")
            }
        )

        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        clear_request_context()


@app.get("/healthz", response_model=HealthzResponse)
async def healthz():
    """
    Health check endpoint with store, cache and rate limiter status.
    """
    service = api.SERVICE
    if service is None:
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "error": "Service not initialized"
            }
        )

    try:
        store_info = STORE.health_check() if STORE is not None else {"healthy": False, "error": "Store not initialized"}
        connected = await service.is_connected()

        if store_info.get("healthy"):
            status = "healthy" if connected else "degraded"
        else:
            status = "unhealthy"

        return {
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "source": service.source.name,
            "connected": connected,
            "store": store_info,
            "cache": service.cache.get_stats(),
            "rate_limiting": service.rate_limiter.stats() if service.source.metered else {"enabled": False},
            "metrics": metrics.get_metrics_summary()
        }

    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "error": str(e)
            }
        )


@app.get("/metrics", response_class=PlainTextResponse)
def metrics_endpoint():
    """
    Prometheus metrics endpoint.
    """
    content, content_type = get_metrics_content()
    return PlainTextResponse(content, media_type=content_type)


# Include API routes
app.include_router(api.router)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """
    Return structured error bodies as-is instead of nesting them under "detail".
    """
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"detail": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


# Global exception handler for unhandled exceptions
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unhandled errors.
    """
    logger.error(f"Unhandled exception in {request.method} {request.url}: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "code": "SERVER.ERROR",
            "title": "Internal server error",
            "detail": "An unexpected error occurred",
            "tip": "Please try again or contact support if the problem persists"
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
