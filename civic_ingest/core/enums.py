"""Enums for announcement, message and ingestion fields."""

from enum import Enum


class Category(str, Enum):
    """Disruption category assigned by the categorize stage."""

    AIR_QUALITY = "air-quality"
    ART = "art"
    BICYCLES = "bicycles"
    CONSTRUCTION_AND_REPAIRS = "construction-and-repairs"
    CULTURE = "culture"
    ELECTRICITY = "electricity"
    HEALTH = "health"
    HEATING = "heating"
    PARKING = "parking"
    PUBLIC_TRANSPORT = "public-transport"
    ROAD_BLOCK = "road-block"
    SPORTS = "sports"
    TRAFFIC = "traffic"
    VEHICLES = "vehicles"
    WASTE = "waste"
    WATER = "water"
    WEATHER = "weather"


# Shown by the map UI for messages without categories; never stored.
UNCATEGORIZED = "uncategorized"


class IngestErrorType(str, Enum):
    """Severity of a diagnostic attached to a message."""

    WARNING = "warning"
    ERROR = "error"
    EXCEPTION = "exception"


class IngestStatus(str, Enum):
    """Ingestion state of a source document."""

    NEW = "new"
    PROCESSING = "processing"
    FINALIZED = "finalized"
    RETRYABLE = "retryable"
    FILTERED = "filtered"
    OUTSIDE_BOUNDS = "outside_bounds"


# States that are never reprocessed.
TERMINAL_STATUSES = frozenset(
    {IngestStatus.FINALIZED, IngestStatus.FILTERED, IngestStatus.OUTSIDE_BOUNDS}
)


class FeatureType(str, Enum):
    """Kind of GeoJSON feature produced by geocoding."""

    PIN = "pin"
    STREET = "street"
    CADASTRAL_PROPERTY = "cadastral_property"
    BUS_STOP = "bus_stop"


class ResolutionStatus(str, Enum):
    """Outcome of one geocoding provider attempt."""

    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
