"""
Geocoding providers and the orchestrator that combines them.
"""

from civic_ingest.ingestion.geocoding.address import GoogleGeocoder
from civic_ingest.ingestion.geocoding.base import HttpProvider, ProviderResult
from civic_ingest.ingestion.geocoding.cadastre import CadastreProvider
from civic_ingest.ingestion.geocoding.gtfs import GtfsStopProvider
from civic_ingest.ingestion.geocoding.nominatim import NominatimProvider
from civic_ingest.ingestion.geocoding.orchestrator import (
    GeocodingOrchestrator,
    GeocodingResult,
    find_missing_street_endpoints,
)
from civic_ingest.ingestion.geocoding.overpass import OverpassProvider

__all__ = [
    "CadastreProvider",
    "GeocodingOrchestrator",
    "GeocodingResult",
    "GoogleGeocoder",
    "GtfsStopProvider",
    "HttpProvider",
    "NominatimProvider",
    "OverpassProvider",
    "ProviderResult",
    "find_missing_street_endpoints",
]
