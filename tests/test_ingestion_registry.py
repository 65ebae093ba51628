"""Tests for the ingestion registry module."""

import tempfile
from pathlib import Path

import pytest
import yaml

from civic_ingest.ingestion.registry import (
    DEFAULT_OVERPASS_INSTANCES,
    SOFIA,
    AISettings,
    GeocodingConfig,
    GlobalConfig,
    IngestRegistry,
    IngestSettings,
    LocalityConfig,
    get_default_registry,
    reset_default_registry,
)

PLOVDIV = {
    "city": "Plovdiv",
    "country": "Bulgaria",
    "country_code": "BG",
    "timezone": "Europe/Sofia",
    "bounds": {"south": 42.08, "west": 24.65, "north": 42.2, "east": 24.85},
    "center": {"lat": 42.1354, "lng": 24.7453},
}


class TestLocalityConfig:
    """Tests for LocalityConfig."""

    def test_from_dict(self) -> None:
        locality = LocalityConfig.from_dict("bg.plovdiv", PLOVDIV)
        assert locality.code == "bg.plovdiv"
        assert locality.city == "Plovdiv"
        assert locality.south == 42.08
        assert locality.center_lng == 24.7453
        assert locality.generic_addresses == []

    def test_contains(self) -> None:
        assert SOFIA.contains(42.6977, 23.3219)
        assert not SOFIA.contains(42.1354, 24.7453)

    def test_is_center(self) -> None:
        assert SOFIA.is_center(42.69770001, 23.32190002)
        assert not SOFIA.is_center(42.6987, 23.3219)

    def test_bbox_orders(self) -> None:
        assert SOFIA.overpass_bbox == "42.605,23.188,42.83,23.528"
        assert SOFIA.nominatim_viewbox == "23.188,42.605,23.528,42.83"


class TestSettings:
    """Tests for the settings dataclasses."""

    def test_ingest_defaults(self) -> None:
        settings = IngestSettings()
        assert settings.max_age_days == 90
        assert settings.max_retry_attempts == 3

    def test_ingest_from_dict(self) -> None:
        settings = IngestSettings.from_dict({"max_age_days": 30})
        assert settings.max_age_days == 30
        assert settings.max_retry_attempts == 3

    def test_geocoding_from_none(self) -> None:
        config = GeocodingConfig.from_dict(None)
        assert config.overpass_instances == DEFAULT_OVERPASS_INSTANCES
        assert config.street_buffer_meters == 10.0

    def test_geocoding_from_dict(self) -> None:
        config = GeocodingConfig.from_dict({"overpass_instances": ["https://o.example/api"], "max_retries": 5})
        assert config.overpass_instances == ["https://o.example/api"]
        assert config.max_retries == 5

    def test_ai_from_dict(self) -> None:
        settings = AISettings.from_dict({"provider": "openai", "model": "gpt-4o"})
        assert settings.provider == "openai"
        assert settings.model == "gpt-4o"

    def test_global_defaults(self) -> None:
        config = GlobalConfig.from_dict(None)
        assert config.log_level == "INFO"


class TestIngestRegistry:
    """Tests for IngestRegistry."""

    def test_builtin_defaults(self) -> None:
        registry = IngestRegistry()
        assert registry.get_locality("bg.sofia") == SOFIA
        assert registry.config_path is None

    def test_load_config(self) -> None:
        config = {
            "global": {"log_level": "DEBUG"},
            "ingest": {"max_age_days": 14, "max_retry_attempts": 5},
            "ai": {"provider": "openai"},
            "localities": {"bg.plovdiv": PLOVDIV},
        }
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            yaml.dump(config, f)
            config_path = Path(f.name)

        try:
            registry = IngestRegistry()
            registry.load_config(config_path)

            assert registry.global_config.log_level == "DEBUG"
            assert registry.ingest.max_age_days == 14
            assert registry.ingest.max_retry_attempts == 5
            assert registry.ai.provider == "openai"
            assert registry.get_locality("bg.plovdiv") is not None
            assert registry.get_locality("bg.sofia") is None
            assert len(registry.list_localities()) == 1
        finally:
            config_path.unlink()

    def test_load_missing_file(self) -> None:
        registry = IngestRegistry()
        with pytest.raises(FileNotFoundError):
            registry.load_config("/nonexistent/ingest.yaml")

    def test_load_empty_file_keeps_defaults(self) -> None:
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            config_path = Path(f.name)

        try:
            registry = IngestRegistry()
            registry.load_config(config_path)
            assert registry.get_locality("bg.sofia") == SOFIA
            assert registry.ingest.max_age_days == 90
        finally:
            config_path.unlink()


class TestDefaultRegistry:
    """Tests for the default registry singleton."""

    def test_is_singleton(self) -> None:
        reset_default_registry()
        try:
            assert get_default_registry() is get_default_registry()
        finally:
            reset_default_registry()

    def test_reads_env_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            yaml.dump({"ingest": {"max_age_days": 7}}, f)
            config_path = Path(f.name)

        monkeypatch.setenv("INGEST_CONFIG_PATH", str(config_path))
        reset_default_registry()
        try:
            assert get_default_registry().ingest.max_age_days == 7
        finally:
            reset_default_registry()
            config_path.unlink()

    def test_shipped_config_parses(self) -> None:
        config_path = Path(__file__).parent.parent / "config" / "ingest.yaml"
        registry = IngestRegistry()
        registry.load_config(config_path)
        sofia = registry.get_locality("bg.sofia")
        assert sofia is not None
        assert sofia.timezone == "Europe/Sofia"
        assert len(registry.geocoding.overpass_instances) == 4
