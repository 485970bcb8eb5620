"""
Tests for YAML configuration loading and environment overrides.
"""

import pytest

from natal_engine.config import AppConfig, load_config
from natal_engine.models import AspectType, HouseSystem

ENV_VARS = [
    "CORS_ORIGINS", "WORKERS", "REDIS_URL", "NATAL_STORE_BACKEND", "NATAL_RATE_LIMIT",
    "NATAL_CACHE_MAX_AGE_DAYS", "UPSTREAM_API_KEY", "NATAL_UPSTREAM_URL",
    "NATAL_CONNECTIVITY_MODE", "NATAL_OFFLINE", "NATAL_CHART_SOURCE", "NATAL_HOUSE_SYSTEM",
    "SE_EPHE_PATH", "NATAL_IMAGES_ENABLED", "NATAL_IMAGES_DIR", "LOG_LEVEL",
]

SAMPLE = """
ratelimit:
  limit: "10/minute"
  requests_per_chart: 2
cache:
  max_age_days: 14
ephemeris:
  source: local
  house_system: koch
  orb_overrides:
    Trine: 5.0
logging:
  level: debug
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(SAMPLE)
    return path


class TestLoadConfig:
    def test_yaml_values(self, config_file):
        config = load_config(str(config_file))

        assert config.ratelimit.limit == "10/minute"
        assert config.ratelimit.requests_per_chart == 2
        assert config.cache.max_age_days == 14
        assert config.ephemeris.source == "local"
        assert config.ephemeris.house_system == HouseSystem.KOCH
        assert config.ephemeris.orb_overrides == {AspectType.TRINE: 5.0}
        assert config.logging.level == "DEBUG"

    def test_defaults_for_missing_sections(self, config_file):
        config = load_config(str(config_file))

        assert config.store.backend == "redis"
        assert config.upstream.max_attempts == 3
        assert config.images.enabled is False

    def test_missing_file_uses_defaults(self, tmp_path, capsys):
        config = load_config(str(tmp_path / "absent.yaml"))

        assert config == AppConfig()
        assert "not found" in capsys.readouterr().out

    def test_shipped_config_is_valid(self):
        from pathlib import Path

        config = load_config(str(Path(__file__).resolve().parents[2] / "config.yaml"))
        assert config.ratelimit.limit == "5/minute"
        assert config.store.backend == "redis"


class TestEnvironmentOverrides:
    def test_overrides_win(self, config_file, monkeypatch):
        monkeypatch.setenv("NATAL_RATE_LIMIT", "3/second")
        monkeypatch.setenv("NATAL_HOUSE_SYSTEM", "equal")
        monkeypatch.setenv("UPSTREAM_API_KEY", "k-123")
        monkeypatch.setenv("CORS_ORIGINS", "https://a.test,https://b.test")

        config = load_config(str(config_file))

        assert config.ratelimit.limit == "3/second"
        assert config.ratelimit.requests_per_chart == 2
        assert config.ephemeris.house_system == HouseSystem.EQUAL
        assert config.upstream.api_key == "k-123"
        assert config.api.cors_origins == ["https://a.test", "https://b.test"]

    def test_redis_url_selects_redis(self, config_file, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")

        config = load_config(str(config_file))

        assert config.store.backend == "redis"
        assert config.store.redis_url == "redis://cache:6379/2"

    def test_offline_flag(self, config_file, monkeypatch):
        monkeypatch.setenv("NATAL_OFFLINE", "true")

        config = load_config(str(config_file))

        assert config.connectivity.mode == "static"
        assert config.connectivity.connected is False

    def test_images_flag(self, config_file, monkeypatch):
        monkeypatch.setenv("NATAL_IMAGES_ENABLED", "1")
        monkeypatch.setenv("NATAL_IMAGES_DIR", "/tmp/wheels")

        config = load_config(str(config_file))

        assert config.images.enabled is True
        assert config.images.directory == "/tmp/wheels"


class TestValidation:
    """Tests for rejected configurations."""

    @pytest.mark.parametrize("content", [
        "ratelimit:\n  limit: lots\n",
        "ratelimit:\n  requests_per_chart: 0\n",
        "cache:\n  max_age_days: 0\n",
        "upstream:\n  timeout_ms: 10\n",
        "upstream:\n  max_attempts: 0\n",
        "ephemeris:\n  house_system: topocentric\n",
        "ephemeris:\n  orb_overrides:\n    Trine: -1\n",
        "logging:\n  level: chatty\n",
        "store:\n  backend: sqlite\n",
        "unexpected_section:\n  key: 1\n",
    ])
    def test_invalid_values(self, tmp_path, content):
        path = tmp_path / "config.yaml"
        path.write_text(content)

        with pytest.raises(ValueError, match="Configuration validation failed"):
            load_config(str(path))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("ratelimit: [unclosed\n")

        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config(str(path))
