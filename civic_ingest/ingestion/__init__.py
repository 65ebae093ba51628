"""
Civic Ingestion Pipeline
========================

Turns crawled civic-disruption announcements into finalized, geocoded,
publicly servable messages.

Pipeline Stages:
1. Pre-filter - Drop sources that are too old or outside the service area
2. Gate - Skip sources already ingested or past the retry ceiling
3. Filter & split - Break an announcement into discrete relevant messages
4. Categorize - Assign categories and location hints per message
5. Extract - Pull pins, street sections, parcels and bus stops
6. Geocode - Resolve locations to coordinates and GeoJSON
7. Persist - Normalize fields, store, assign the public slug, finalize

The orchestration modules (jobs, messages, slugs, dedup) depend on the
document store and are imported from their own modules.
"""

from civic_ingest.ingestion.errors import (
    AIServiceError,
    AIValidationError,
    GeocodingFailedError,
    IngestErrorCollector,
    IngestionError,
    MessageFilteredError,
    MissingLocalityError,
    OutsideBoundariesError,
    SlugGenerationError,
)
from civic_ingest.ingestion.normalizer import (
    FIELD_STORAGE,
    FieldNormalizer,
    StorageKind,
)
from civic_ingest.ingestion.registry import (
    GeocodingConfig,
    IngestRegistry,
    IngestSettings,
    LocalityConfig,
    get_default_registry,
)

__all__ = [
    # Errors
    "AIServiceError",
    "AIValidationError",
    "GeocodingFailedError",
    "IngestErrorCollector",
    "IngestionError",
    "MessageFilteredError",
    "MissingLocalityError",
    "OutsideBoundariesError",
    "SlugGenerationError",
    # Normalizer
    "FIELD_STORAGE",
    "FieldNormalizer",
    "StorageKind",
    # Registry
    "GeocodingConfig",
    "IngestRegistry",
    "IngestSettings",
    "LocalityConfig",
    "get_default_registry",
]
