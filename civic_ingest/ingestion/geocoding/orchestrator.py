"""
Geocoding Orchestrator Module
=============================

Turns the locations extracted from a message into coordinates and a
GeoJSON FeatureCollection.

Each entity kind has a fixed, ordered set of providers:

- pins: address geocoder
- street endpoints: Overpass intersection (Nominatim for house numbers),
  then the address geocoder for whatever is still missing
- cadastral identifiers: cadastre
- bus stops: GTFS stops table

Unresolved entities stay in their structured arrays without coordinates
and are reported as warnings; only a total failure is fatal.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from shapely.geometry import LineString

from civic_ingest.core.schema import Address, Coordinates, ExtractedLocations, StreetSection
from civic_ingest.ingestion.errors import GeocodingFailedError, IngestErrorCollector
from civic_ingest.ingestion.geocoding.address import GoogleGeocoder
from civic_ingest.ingestion.geocoding.base import haversine_distance
from civic_ingest.ingestion.geocoding.cadastre import CadastralGeometry, CadastreProvider
from civic_ingest.ingestion.geocoding.geojson import (
    DEFAULT_STREET_BUFFER_METERS,
    bus_stop_feature,
    cadastral_feature,
    feature_collection,
    pin_feature,
    street_feature,
)
from civic_ingest.ingestion.geocoding.gtfs import GtfsStopProvider
from civic_ingest.ingestion.geocoding.nominatim import NominatimProvider
from civic_ingest.ingestion.geocoding.overpass import OverpassProvider
from civic_ingest.ingestion.registry import LocalityConfig

logger = logging.getLogger(__name__)

DUPLICATE_DISTANCE_METERS = 50.0
OUTLIER_DISTANCE_METERS = 1000.0

_STANDALONE_NUMBER = re.compile(r"^\d+[А-Яа-я]?$", re.IGNORECASE)
_NUMBER_MARKER = re.compile(r"№\s*\d+|бл\.\s*\d+|номер\s+\d+", re.IGNORECASE)


def has_house_number(endpoint: str) -> bool:
    """
    Check if a street endpoint is a house or block number.

    Matches "14", "25Б", "№111", "с № 65", "бл. 38", "номер 3".
    """
    if _STANDALONE_NUMBER.match(endpoint.strip()):
        return True
    return bool(_NUMBER_MARKER.search(endpoint))


def build_house_number_query(street_name: str, endpoint: str) -> str:
    """Prefix the street to a house-number endpoint unless it already names it."""
    street = street_name.strip()
    endpoint = endpoint.strip()
    if street.lower() in endpoint.lower():
        return endpoint
    return f"{street} {endpoint}"


def find_missing_street_endpoints(
    streets: list[StreetSection], geocoded_map: dict[str, Coordinates]
) -> list[str]:
    """
    List street endpoints that have no coordinates yet.

    Per street, "from" comes before "to". Endpoints shared between streets
    appear once per street occurrence.
    """
    missing: list[str] = []
    for street in streets:
        if street.from_ not in geocoded_map:
            missing.append(street.from_)
        if street.to not in geocoded_map:
            missing.append(street.to)
    return missing


def deduplicate_addresses(addresses: list[Address]) -> list[Address]:
    """Drop addresses repeating an earlier text or lying within 50 m of one."""
    seen: dict[str, Address] = {}
    for address in addresses:
        key = address.original_text.lower().strip()
        if key in seen:
            continue
        is_duplicate = any(
            haversine_distance(
                address.coordinates.lat,
                address.coordinates.lng,
                existing.coordinates.lat,
                existing.coordinates.lng,
            )
            < DUPLICATE_DISTANCE_METERS
            for existing in seen.values()
        )
        if not is_duplicate:
            seen[key] = address
    return list(seen.values())


def filter_outlier_coordinates(
    addresses: list[Address], max_distance: float = OUTLIER_DISTANCE_METERS
) -> list[Address]:
    """
    Remove addresses farther than max_distance meters from every other one.

    A lone address is never an outlier.
    """
    if len(addresses) < 2:
        return addresses

    kept: list[Address] = []
    for i, address in enumerate(addresses):
        nearest = min(
            haversine_distance(
                address.coordinates.lat,
                address.coordinates.lng,
                other.coordinates.lat,
                other.coordinates.lng,
            )
            for j, other in enumerate(addresses)
            if j != i
        )
        if nearest > max_distance:
            logger.warning(
                f"Filtered outlier coordinate '{address.original_text}' "
                f"[{address.coordinates.lat:.6f}, {address.coordinates.lng:.6f}], "
                f"{nearest / 1000:.2f} km from the rest"
            )
        else:
            kept.append(address)
    return kept


@dataclass
class GeocodingResult:
    """Everything geocoding learned about one message."""

    geocoded_map: dict[str, Coordinates] = field(default_factory=dict)
    addresses: list[Address] = field(default_factory=list)
    cadastral_geometries: dict[str, CadastralGeometry] = field(default_factory=dict)
    bus_stops: list[Address] = field(default_factory=list)
    geometry: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Summary for logs and audit steps."""
        return {
            "geocoded": len(self.geocoded_map),
            "addresses": len(self.addresses),
            "cadastral": len(self.cadastral_geometries),
            "bus_stops": len(self.bus_stops),
            "features": len(self.geometry["features"]) if self.geometry else 0,
        }


class GeocodingOrchestrator:
    """Resolves extracted locations through the configured providers."""

    def __init__(
        self,
        locality: LocalityConfig,
        address_geocoder: GoogleGeocoder,
        overpass: OverpassProvider,
        nominatim: NominatimProvider,
        cadastre: CadastreProvider,
        gtfs: GtfsStopProvider | None = None,
        street_buffer_meters: float = DEFAULT_STREET_BUFFER_METERS,
    ):
        self.locality = locality
        self.address_geocoder = address_geocoder
        self.overpass = overpass
        self.nominatim = nominatim
        self.cadastre = cadastre
        self.gtfs = gtfs
        self.street_buffer_meters = street_buffer_meters

    async def aclose(self) -> None:
        """Close provider HTTP clients."""
        for provider in (self.address_geocoder, self.overpass, self.nominatim, self.cadastre):
            await provider.aclose()

    async def geocode_intersections_for_streets(
        self,
        streets: list[StreetSection],
        pre_geocoded: dict[str, Coordinates] | None = None,
    ) -> dict[str, Coordinates]:
        """
        Resolve street endpoints through OSM.

        Cross-street endpoints become intersection lookups keyed by the
        cross-street name. House-number endpoints go to Nominatim with
        the street prefixed. Endpoints already in pre_geocoded are skipped.
        """
        pre_geocoded = pre_geocoded or {}
        geocoded: dict[str, Coordinates] = {}
        intersections: list[tuple[str, str]] = []
        house_numbers: dict[str, str] = {}

        for street in streets:
            for endpoint in (street.from_, street.to):
                if endpoint in pre_geocoded:
                    continue
                if has_house_number(endpoint):
                    house_numbers[endpoint] = street.street
                elif (street.street, endpoint) not in intersections:
                    intersections.append((street.street, endpoint))

        for i, (street_name, cross_street) in enumerate(intersections):
            logger.info(f"Geocoding intersection: {street_name} ∩ {cross_street}")
            result = await self.overpass.geocode_intersection(street_name, cross_street)
            if result.is_resolved and result.value is not None:
                geocoded[cross_street] = result.value
            if i < len(intersections) - 1:
                await self.overpass.pause()

        if house_numbers:
            logger.info(f"Geocoding {len(house_numbers)} house-number endpoints via Nominatim")
        for endpoint, street_name in house_numbers.items():
            query = build_house_number_query(street_name, endpoint)
            result = await self.nominatim.geocode(query)
            if result.is_resolved and result.value is not None:
                geocoded[endpoint] = result.value
            await self.nominatim.pause()

        return geocoded

    async def geocode_bus_stops(self, stop_codes: list[str], errors: IngestErrorCollector) -> list[Address]:
        if not stop_codes:
            return []
        if self.gtfs is None:
            errors.warn(f"Bus stops not geocoded, no GTFS data configured: {', '.join(stop_codes)}")
            return []
        stops = await self.gtfs.geocode_many(stop_codes)
        logger.info(f"Geocoded bus stops: {len(stops)}/{len(stop_codes)}")
        return stops

    async def geocode(
        self,
        locations: ExtractedLocations,
        errors: IngestErrorCollector,
        bus_stop_codes: list[str] | None = None,
    ) -> GeocodingResult:
        """
        Geocode all extracted locations and assemble the geometry.

        Pins and street endpoints on the locations are enriched in place.

        Raises:
            GeocodingFailedError: If there were locations to geocode and
                none of them resolved.
        """
        result = GeocodingResult()
        geocoded_map = result.geocoded_map
        addresses: list[Address] = []

        if locations.pins:
            pin_results = await self.address_geocoder.geocode_many([pin.address for pin in locations.pins])
            for text, pin_result in pin_results.items():
                if pin_result.is_resolved and pin_result.value is not None:
                    addresses.append(pin_result.value)
                    geocoded_map[text] = pin_result.value.coordinates

        if locations.streets:
            street_map = await self.geocode_intersections_for_streets(locations.streets, geocoded_map)
            for key, coordinates in street_map.items():
                geocoded_map[key] = coordinates
                addresses.append(Address(original_text=key, formatted_address=key, coordinates=coordinates))

            missing = find_missing_street_endpoints(locations.streets, geocoded_map)
            if missing:
                logger.info(f"Falling back to address geocoder for {len(missing)} street endpoints")
                fallback = await self.address_geocoder.geocode_many(missing)
                for text, fallback_result in fallback.items():
                    if fallback_result.is_resolved and fallback_result.value is not None:
                        geocoded_map[text] = fallback_result.value.coordinates
                        addresses.append(fallback_result.value)

        if locations.cadastral_properties:
            identifiers = [prop.identifier for prop in locations.cadastral_properties]
            result.cadastral_geometries = await self.cadastre.geocode_many(identifiers)
            logger.info(
                f"Geocoded cadastral properties: {len(result.cadastral_geometries)}/{len(identifiers)}"
            )

        if not locations.bus_stops and bus_stop_codes:
            locations.bus_stops = list(bus_stop_codes)
        stops = await self.geocode_bus_stops(locations.bus_stops, errors)
        for stop in stops:
            geocoded_map[stop.original_text] = stop.coordinates
        addresses.extend(stops)

        deduplicated = deduplicate_addresses(addresses)
        result.addresses = filter_outlier_coordinates(deduplicated)
        kept = {address.original_text for address in result.addresses}
        for address in deduplicated:
            if address.original_text not in kept:
                geocoded_map.pop(address.original_text, None)
        result.bus_stops = [stop for stop in stops if stop.original_text in kept]

        self.enrich(locations, geocoded_map)
        result.geometry = await self.build_geometry(locations, result, errors)
        return result

    @staticmethod
    def enrich(locations: ExtractedLocations, geocoded_map: dict[str, Coordinates]) -> None:
        """Copy resolved coordinates onto pins and street endpoints."""
        for pin in locations.pins:
            pin.coordinates = geocoded_map.get(pin.address)
        for street in locations.streets:
            street.from_coordinates = geocoded_map.get(street.from_)
            street.to_coordinates = geocoded_map.get(street.to)

    async def build_geometry(
        self,
        locations: ExtractedLocations,
        result: GeocodingResult,
        errors: IngestErrorCollector,
    ) -> dict[str, Any] | None:
        """
        Assemble the FeatureCollection from resolved entities.

        Returns None when there was nothing to geocode.

        Raises:
            GeocodingFailedError: If nothing at all resolved.
        """
        if locations.is_empty:
            return None

        geocoded_map = result.geocoded_map
        missing: list[str] = [pin.address for pin in locations.pins if pin.address not in geocoded_map]
        for street in locations.streets:
            if street.from_ not in geocoded_map:
                missing.append(f"{street.street} from: {street.from_}")
            if street.to not in geocoded_map:
                missing.append(f"{street.street} to: {street.to}")

        pins = [pin for pin in locations.pins if pin.address in geocoded_map]
        streets = [s for s in locations.streets if s.from_ in geocoded_map and s.to in geocoded_map]

        if not (pins or streets or result.cadastral_geometries or result.bus_stops):
            total = len(missing) + len(locations.cadastral_properties) + len(locations.bus_stops)
            errors.error(f"No geocoded features available (all {total} locations failed)")
            raise GeocodingFailedError(f"Failed to geocode all addresses: {', '.join(missing)}")

        if missing:
            errors.warn(
                f"Partial geocoding: {len(missing)} addresses failed "
                f"(showing {len(pins)} pins + {len(streets)} streets): {', '.join(missing)}"
            )

        features = [pin_feature(pin, geocoded_map[pin.address]) for pin in pins]

        for street in streets:
            start, end = geocoded_map[street.from_], geocoded_map[street.to]
            line = await self.overpass.street_section(street.street, start, end)
            if line is None:
                line = LineString([(start.lng, start.lat), (end.lng, end.lat)])
            features.append(
                street_feature(street, line, self.overpass.projection, self.street_buffer_meters)
            )

        for prop in locations.cadastral_properties:
            geometry = result.cadastral_geometries.get(prop.identifier)
            if geometry is None:
                errors.warn(f"Cadastral property {prop.identifier} failed to geocode")
                continue
            features.append(cadastral_feature(prop, geometry.polygon))

        features.extend(bus_stop_feature(stop) for stop in result.bus_stops)

        missing_stops = len(locations.bus_stops) - len(result.bus_stops)
        if locations.bus_stops and missing_stops > 0:
            errors.warn(f"{missing_stops} of {len(locations.bus_stops)} bus stops failed to geocode")

        return feature_collection(features)
