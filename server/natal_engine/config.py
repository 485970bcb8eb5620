from pydantic import BaseModel, ConfigDict, field_validator
from typing import Dict, List, Literal, Optional
import yaml
import os

from .models import AspectType, HouseSystem
from .ratelimit import parse_limit


class APIConfig(BaseModel):
    cors_origins: List[str] = []
    workers: int = 2


class RateLimitConfig(BaseModel):
    limit: str = "5/minute"  # chart service allowance
    requests_per_chart: Optional[int] = None  # None: taken from the chart source
    name: str = "chart_service"

    @field_validator('limit')
    @classmethod
    def validate_limit(cls, v):
        parse_limit(v)
        return v

    @field_validator('requests_per_chart')
    @classmethod
    def validate_requests_per_chart(cls, v):
        if v is not None and v < 1:
            raise ValueError("requests_per_chart must be at least 1")
        return v


class StoreConfig(BaseModel):
    backend: Literal["memory", "redis"] = "redis"  # memory: tests and local runs only
    redis_url: str = "redis://redis:6379/0"
    key_prefix: str = "natal"


class CacheConfig(BaseModel):
    max_age_days: int = 30
    eviction_days: int = 30

    @field_validator('max_age_days', 'eviction_days')
    @classmethod
    def validate_days(cls, v):
        if v < 1:
            raise ValueError("Cache ages must be at least one day")
        return v


class UpstreamConfig(BaseModel):
    base_url: str = "https://api.astrology-api.io/api/v3"
    api_key: str = ""
    timeout_ms: int = 10000
    max_attempts: int = 3
    backoff_ms: int = 500
    language: str = "en"
    zodiac_type: str = "Tropic"

    @field_validator('timeout_ms')
    @classmethod
    def validate_timeout(cls, v):
        if v < 100 or v > 60000:
            raise ValueError("Timeout must be between 100ms and 60s")
        return v

    @field_validator('max_attempts')
    @classmethod
    def validate_attempts(cls, v):
        if v < 1 or v > 10:
            raise ValueError("max_attempts must be between 1 and 10")
        return v


class ConnectivityConfig(BaseModel):
    mode: Literal["tcp", "static"] = "tcp"
    host: str = "api.astrology-api.io"
    port: int = 443
    timeout_ms: int = 1500
    connected: bool = True  # static mode only


class EphemerisConfig(BaseModel):
    source: Literal["remote", "local"] = "remote"
    house_system: HouseSystem = HouseSystem.PLACIDUS
    ephe_path: Optional[str] = None
    include_minor_aspects: bool = False
    orb_overrides: Dict[AspectType, float] = {}
    aspect_limit: Optional[int] = None

    @field_validator('orb_overrides')
    @classmethod
    def validate_orbs(cls, v):
        for aspect_type, orb in v.items():
            if orb < 0:
                raise ValueError(f"Orb for {aspect_type.value} must not be negative")
        return v

    @field_validator('aspect_limit')
    @classmethod
    def validate_aspect_limit(cls, v):
        if v is not None and v < 0:
            raise ValueError("aspect_limit must not be negative")
        return v


class ImagesConfig(BaseModel):
    enabled: bool = False
    directory: str = "data/chart_images"
    theme: str = "classic"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_format: bool = True

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR"]
        if v.upper() not in allowed:
            raise ValueError(f"Invalid log level: {v}. Must be one of {allowed}")
        return v.upper()


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")  # Prevent unexpected config keys

    api: APIConfig = APIConfig()
    ratelimit: RateLimitConfig = RateLimitConfig()
    store: StoreConfig = StoreConfig()
    cache: CacheConfig = CacheConfig()
    upstream: UpstreamConfig = UpstreamConfig()
    connectivity: ConnectivityConfig = ConnectivityConfig()
    ephemeris: EphemerisConfig = EphemerisConfig()
    images: ImagesConfig = ImagesConfig()
    logging: LoggingConfig = LoggingConfig()


def _env_bool(name: str) -> bool:
    return os.environ[name].lower() in ("1", "true", "yes")


def load_config(path: str = "config.yaml") -> AppConfig:
    """Load configuration from YAML file with environment variable overrides."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        print(f"Warning: Config file {path} not found, using defaults")
        data = {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file {path}: {e}")

    env_overrides = {}

    # API overrides
    if "CORS_ORIGINS" in os.environ:
        env_overrides.setdefault("api", {})["cors_origins"] = os.environ["CORS_ORIGINS"].split(",")
    if "WORKERS" in os.environ:
        env_overrides.setdefault("api", {})["workers"] = int(os.environ["WORKERS"])

    # Store overrides
    if "REDIS_URL" in os.environ:
        env_overrides.setdefault("store", {})["backend"] = "redis"
        env_overrides.setdefault("store", {})["redis_url"] = os.environ["REDIS_URL"]
    if "NATAL_STORE_BACKEND" in os.environ:
        env_overrides.setdefault("store", {})["backend"] = os.environ["NATAL_STORE_BACKEND"]

    # Rate limiting overrides
    if "NATAL_RATE_LIMIT" in os.environ:
        env_overrides.setdefault("ratelimit", {})["limit"] = os.environ["NATAL_RATE_LIMIT"]

    # Cache overrides
    if "NATAL_CACHE_MAX_AGE_DAYS" in os.environ:
        env_overrides.setdefault("cache", {})["max_age_days"] = int(os.environ["NATAL_CACHE_MAX_AGE_DAYS"])

    # Chart service overrides
    if "UPSTREAM_API_KEY" in os.environ:
        env_overrides.setdefault("upstream", {})["api_key"] = os.environ["UPSTREAM_API_KEY"]
    if "NATAL_UPSTREAM_URL" in os.environ:
        env_overrides.setdefault("upstream", {})["base_url"] = os.environ["NATAL_UPSTREAM_URL"]

    # Connectivity overrides
    if "NATAL_CONNECTIVITY_MODE" in os.environ:
        env_overrides.setdefault("connectivity", {})["mode"] = os.environ["NATAL_CONNECTIVITY_MODE"]
    if "NATAL_OFFLINE" in os.environ:
        env_overrides.setdefault("connectivity", {})["mode"] = "static"
        env_overrides.setdefault("connectivity", {})["connected"] = not _env_bool("NATAL_OFFLINE")

    # Ephemeris overrides
    if "NATAL_CHART_SOURCE" in os.environ:
        env_overrides.setdefault("ephemeris", {})["source"] = os.environ["NATAL_CHART_SOURCE"]
    if "NATAL_HOUSE_SYSTEM" in os.environ:
        env_overrides.setdefault("ephemeris", {})["house_system"] = os.environ["NATAL_HOUSE_SYSTEM"]
    if "SE_EPHE_PATH" in os.environ:
        env_overrides.setdefault("ephemeris", {})["ephe_path"] = os.environ["SE_EPHE_PATH"]

    # Image overrides
    if "NATAL_IMAGES_ENABLED" in os.environ:
        env_overrides.setdefault("images", {})["enabled"] = _env_bool("NATAL_IMAGES_ENABLED")
    if "NATAL_IMAGES_DIR" in os.environ:
        env_overrides.setdefault("images", {})["directory"] = os.environ["NATAL_IMAGES_DIR"]

    # Logging overrides
    if "LOG_LEVEL" in os.environ:
        env_overrides.setdefault("logging", {})["level"] = os.environ["LOG_LEVEL"]

    # Merge environment overrides into config data
    def merge_dict(base, override):
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                merge_dict(base[key], value)
            else:
                base[key] = value

    merge_dict(data, env_overrides)

    try:
        return AppConfig(**data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")


def print_config(config: AppConfig) -> None:
    """Print effective configuration on startup."""
    print("=== Natal Chart Engine Configuration ===")
    print(f"API Workers: {config.api.workers}")
    print(f"CORS Origins: {config.api.cors_origins}")
    print(f"Chart Source: {config.ephemeris.source} (houses: {config.ephemeris.house_system.value})")
    print(f"Chart Service: {config.upstream.base_url} (API key {'set' if config.upstream.api_key else 'missing'})")
    print(f"Rate Limit: {config.ratelimit.limit}")
    print(f"Record Store: {config.store.backend}" + (f" ({config.store.redis_url})" if config.store.backend == "redis" else ""))
    print(f"Cache Max Age: {config.cache.max_age_days} days")
    print(f"Connectivity: {config.connectivity.mode} ({config.connectivity.host}:{config.connectivity.port})")
    print(f"Chart Images: {'enabled' if config.images.enabled else 'disabled'} ({config.images.directory})")
    print(f"Log Level: {config.logging.level}")
    print("=" * 40)
