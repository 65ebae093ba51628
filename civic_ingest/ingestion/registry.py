"""
Ingest Registry Module
======================

Manages ingestion settings loaded from a YAML file: age cutoff, retry
ceiling, localities with their bounds, geocoding provider endpoints and
AI provider selection.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_OVERPASS_INSTANCES = [
    "https://overpass.private.coffee/api/interpreter",
    "https://maps.mail.ru/osm/tools/overpass/api/interpreter",
    "https://overpass-api.de/api/interpreter",
    "https://overpass.osm.jp/api/interpreter",
]


@dataclass
class LocalityConfig:
    """A service area: its name, time zone, bounding box and centre."""

    code: str
    city: str
    country: str
    country_code: str
    timezone: str
    south: float
    west: float
    north: float
    east: float
    center_lat: float
    center_lng: float
    generic_addresses: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, code: str, data: dict[str, Any]) -> LocalityConfig:
        """Create from dictionary."""
        bounds = data.get("bounds", {})
        center = data.get("center", {})
        return cls(
            code=code,
            city=data["city"],
            country=data["country"],
            country_code=data.get("country_code", ""),
            timezone=data.get("timezone", "UTC"),
            south=float(bounds["south"]),
            west=float(bounds["west"]),
            north=float(bounds["north"]),
            east=float(bounds["east"]),
            center_lat=float(center["lat"]),
            center_lng=float(center["lng"]),
            generic_addresses=data.get("generic_addresses", []),
        )

    def contains(self, lat: float, lng: float) -> bool:
        """Check whether a point lies inside the bounding box."""
        return self.south <= lat <= self.north and self.west <= lng <= self.east

    def is_center(self, lat: float, lng: float) -> bool:
        """Check whether a point is the city-centre fallback of a geocoder."""
        return round(lat, 4) == round(self.center_lat, 4) and round(lng, 4) == round(
            self.center_lng, 4
        )

    @property
    def overpass_bbox(self) -> str:
        """Bounding box in Overpass order: south,west,north,east."""
        return f"{self.south},{self.west},{self.north},{self.east}"

    @property
    def nominatim_viewbox(self) -> str:
        """Bounding box in Nominatim order: west,south,east,north."""
        return f"{self.west},{self.south},{self.east},{self.north}"


SOFIA = LocalityConfig(
    code="bg.sofia",
    city="Sofia",
    country="Bulgaria",
    country_code="BG",
    timezone="Europe/Sofia",
    south=42.605,
    west=23.188,
    north=42.83,
    east=23.528,
    center_lat=42.6977,
    center_lng=23.3219,
    generic_addresses=["Sofia", "София"],
)


@dataclass
class GeocodingConfig:
    """Endpoints and pacing of the geocoding providers."""

    google_url: str = "https://maps.googleapis.com/maps/api/geocode/json"
    google_delay: float = 0.2
    overpass_instances: list[str] = field(default_factory=lambda: list(DEFAULT_OVERPASS_INSTANCES))
    overpass_timeout: float = 25.0
    overpass_delay: float = 0.5
    nominatim_url: str = "https://nominatim.openstreetmap.org/search"
    cadastre_url: str = "https://kais.cadastre.bg"
    cadastre_delay: float = 2.0
    user_agent: str = "CivicIngest/0.1"
    max_retries: int = 3
    retry_backoff: float = 1.0
    street_buffer_meters: float = 10.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GeocodingConfig:
        """Create from dictionary, using defaults for missing values."""
        if data is None:
            return cls()
        return cls(
            google_url=data.get("google_url", cls.google_url),
            google_delay=float(data.get("google_delay", 0.2)),
            overpass_instances=data.get("overpass_instances", list(DEFAULT_OVERPASS_INSTANCES)),
            overpass_timeout=float(data.get("overpass_timeout", 25.0)),
            overpass_delay=float(data.get("overpass_delay", 0.5)),
            nominatim_url=data.get("nominatim_url", cls.nominatim_url),
            cadastre_url=data.get("cadastre_url", cls.cadastre_url),
            cadastre_delay=float(data.get("cadastre_delay", 2.0)),
            user_agent=data.get("user_agent", "CivicIngest/0.1"),
            max_retries=int(data.get("max_retries", 3)),
            retry_backoff=float(data.get("retry_backoff", 1.0)),
            street_buffer_meters=float(data.get("street_buffer_meters", 10.0)),
        )


@dataclass
class AISettings:
    """Text-understanding service selection."""

    provider: str = "anthropic"
    model: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> AISettings:
        """Create from dictionary."""
        if data is None:
            return cls()
        return cls(provider=data.get("provider", "anthropic"), model=data.get("model"))


@dataclass
class IngestSettings:
    """Limits applied by the ingest run."""

    max_age_days: int = 90
    max_retry_attempts: int = 3
    categorize_max_length: int = 10000
    extract_max_length: int = 5000

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> IngestSettings:
        """Create from dictionary."""
        if data is None:
            return cls()
        return cls(
            max_age_days=int(data.get("max_age_days", 90)),
            max_retry_attempts=int(data.get("max_retry_attempts", 3)),
            categorize_max_length=int(data.get("categorize_max_length", 10000)),
            extract_max_length=int(data.get("extract_max_length", 5000)),
        )


@dataclass
class GlobalConfig:
    """Global configuration settings."""

    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GlobalConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        return cls(
            log_level=data.get("log_level", "INFO"),
        )


class IngestRegistry:
    """
    Registry for ingestion settings.

    Loads settings from a YAML file and provides lookups for
    localities. Built-in defaults apply when no file is loaded.
    """

    def __init__(self) -> None:
        self._global_config = GlobalConfig()
        self._ingest = IngestSettings()
        self._geocoding = GeocodingConfig()
        self._ai = AISettings()
        self._localities: dict[str, LocalityConfig] = {SOFIA.code: SOFIA}
        self._config_path: Path | None = None

    @property
    def global_config(self) -> GlobalConfig:
        """Get global configuration."""
        return self._global_config

    @property
    def ingest(self) -> IngestSettings:
        """Get ingest run limits."""
        return self._ingest

    @property
    def geocoding(self) -> GeocodingConfig:
        """Get geocoding provider configuration."""
        return self._geocoding

    @property
    def ai(self) -> AISettings:
        """Get AI provider settings."""
        return self._ai

    @property
    def config_path(self) -> Path | None:
        """Path of the loaded file, if any."""
        return self._config_path

    def load_config(self, config_path: Path | str) -> None:
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the ingest.yaml file
        """
        config_path = Path(config_path).expanduser().resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        self._config_path = config_path
        self._global_config = GlobalConfig.from_dict(data.get("global"))
        self._ingest = IngestSettings.from_dict(data.get("ingest"))
        self._geocoding = GeocodingConfig.from_dict(data.get("geocoding"))
        self._ai = AISettings.from_dict(data.get("ai"))

        localities = data.get("localities")
        if localities:
            self._localities = {
                code: LocalityConfig.from_dict(code, locality_data)
                for code, locality_data in localities.items()
            }

    def get_locality(self, code: str) -> LocalityConfig | None:
        """
        Get a locality by its code.

        Args:
            code: Locality code, e.g. "bg.sofia"

        Returns:
            LocalityConfig if found, None otherwise
        """
        return self._localities.get(code)

    def list_localities(self) -> list[LocalityConfig]:
        """Get all configured localities."""
        return list(self._localities.values())


# Global registry instance
_default_registry: IngestRegistry | None = None


def get_default_registry() -> IngestRegistry:
    """
    Get the default ingest registry instance.

    Loads configuration from the path specified in INGEST_CONFIG_PATH
    environment variable, or falls back to config/ingest.yaml.

    Returns:
        The global IngestRegistry instance
    """
    global _default_registry

    if _default_registry is None:
        _default_registry = IngestRegistry()

        config_path = os.environ.get("INGEST_CONFIG_PATH")
        if config_path:
            path = Path(config_path)
        else:
            module_dir = Path(__file__).parent
            project_root = module_dir.parent.parent
            path = project_root / "config" / "ingest.yaml"

        if path.exists():
            _default_registry.load_config(path)

    return _default_registry


def reset_default_registry() -> None:
    """Reset the default registry (useful for testing)."""
    global _default_registry
    _default_registry = None
