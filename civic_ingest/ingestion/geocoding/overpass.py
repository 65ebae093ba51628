"""
Overpass Provider Module
========================

Resolves street intersections and street sections from OpenStreetMap
data served by the Overpass API. Several public instances are tried in
order; query errors stop the fallback since every instance would reject
the same query.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx
from pyproj import Transformer
from shapely.geometry import LineString, MultiLineString, Point
from shapely.geometry.base import BaseGeometry
from shapely.ops import linemerge, nearest_points, substring, transform

from civic_ingest.core.schema import Coordinates
from civic_ingest.ingestion.geocoding.base import HttpProvider, ProviderResult, haversine_distance
from civic_ingest.ingestion.registry import DEFAULT_OVERPASS_INSTANCES, LocalityConfig

logger = logging.getLogger(__name__)

INTERSECTION_BUFFER_METERS = 30.0
NEAREST_POINT_MAX_METERS = 200.0
SECTION_SNAP_MAX_METERS = 50.0
SQUARE_NODE_OFFSET = 0.0001

_STREET_PREFIX = re.compile(r"^(бул\.|ул\.|площад|пл\.)\s*")
_QUOTES = re.compile(r"[\"“”„'`‘’‚«»‹›]")
_SQUARE_PREFIX = re.compile(r"^(площад|пл\.)\s*")
_REMARK = re.compile(r"<remark>\s*([\s\S]+?)\s*</remark>")
_CLIENT_ERROR_MARKERS = ("syntax", "parse error", "expected", "unexpected", "invalid")

MAIN_ROADS = "primary|secondary|tertiary|trunk"
ALL_STREETS = "primary|secondary|tertiary|trunk|residential|unclassified|living_street"


class OverpassQueryError(Exception):
    """The Overpass server rejected the query itself."""


def normalize_street_name(street_name: str) -> str:
    """
    Normalize a street name for OSM name matching.

    Lower-cases, strips the street-type prefix (бул., ул., площад, пл.),
    removes quotes of any style and collapses whitespace.
    """
    name = street_name.lower().strip()
    name = _STREET_PREFIX.sub("", name)
    name = _QUOTES.sub("", name)
    return re.sub(r"\s+", " ", name).strip()


def parse_overpass_error(response_text: str) -> str | None:
    """Extract the <remark> message from an Overpass error document."""
    match = _REMARK.search(response_text)
    return match.group(1).strip() if match else None


def should_try_fallback(message: str, status_code: int | None = None) -> bool:
    """
    Decide whether a failure may be retried on another instance.

    Query problems (syntax errors, 4xx other than 429) would fail
    everywhere, so they do not fall through.
    """
    lowered = message.lower()
    if any(marker in lowered for marker in _CLIENT_ERROR_MARKERS):
        return False
    if status_code is not None and 400 <= status_code < 500 and status_code != 429:
        return False
    return True


def build_street_query(street_name: str, bbox: str) -> str:
    """Build the Overpass QL query for a street, boulevard or square."""
    normalized = normalize_street_name(street_name)
    lowered = street_name.lower().strip()

    if _SQUARE_PREFIX.match(lowered):
        return (
            "[out:json][timeout:25];\n"
            "(\n"
            f'  node["place"="square"]["name"~"{normalized}",i]({bbox});\n'
            f'  way["place"="square"]["name"~"{normalized}",i]({bbox});\n'
            f'  node["place"="square"]["name:bg"~"{normalized}",i]({bbox});\n'
            f'  way["place"="square"]["name:bg"~"{normalized}",i]({bbox});\n'
            ");\n"
            "out geom;"
        )

    highways = ALL_STREETS if "ул." in lowered else MAIN_ROADS
    highway_filter = f'["highway"~"^({highways})$"]'
    return (
        "[out:json][timeout:25];\n"
        "(\n"
        f'  way{highway_filter}["name"~"{normalized}",i]({bbox});\n'
        f'  way{highway_filter}["name:bg"~"{normalized}",i]({bbox});\n'
        ");\n"
        "out geom;"
    )


def elements_to_geometry(elements: list[dict[str, Any]]) -> MultiLineString | None:
    """
    Convert Overpass elements to a MultiLineString in lon/lat order.

    Square nodes become a short diagonal so they can still intersect.
    """
    lines: list[list[tuple[float, float]]] = []
    for element in elements:
        if element.get("type") == "node" and "lat" in element and "lon" in element:
            lat, lon = element["lat"], element["lon"]
            lines.append(
                [
                    (lon - SQUARE_NODE_OFFSET, lat - SQUARE_NODE_OFFSET),
                    (lon + SQUARE_NODE_OFFSET, lat + SQUARE_NODE_OFFSET),
                ]
            )
        elif element.get("type") == "way" and len(element.get("geometry") or []) >= 2:
            lines.append(
                [(round(point["lon"], 6), round(point["lat"], 6)) for point in element["geometry"]]
            )
    if not lines:
        return None
    return MultiLineString(lines)


class LocalProjection:
    """Azimuthal equidistant projection centred on a locality, in meters."""

    def __init__(self, center_lat: float, center_lng: float) -> None:
        crs = f"+proj=aeqd +lat_0={center_lat} +lon_0={center_lng} +datum=WGS84 +units=m +no_defs"
        self._forward = Transformer.from_crs("EPSG:4326", crs, always_xy=True)
        self._inverse = Transformer.from_crs(crs, "EPSG:4326", always_xy=True)

    def to_meters(self, geometry: BaseGeometry) -> BaseGeometry:
        return transform(self._forward.transform, geometry)

    def to_degrees(self, geometry: BaseGeometry) -> BaseGeometry:
        return transform(self._inverse.transform, geometry)


def _points_of(geometry: BaseGeometry) -> list[Point]:
    if geometry.is_empty:
        return []
    if isinstance(geometry, Point):
        return [geometry]
    if hasattr(geometry, "geoms"):
        points: list[Point] = []
        for part in geometry.geoms:
            points.extend(_points_of(part))
        return points
    # Overlapping segments intersect as lines; use their centroid.
    return [geometry.centroid]


def find_intersection(
    street1: MultiLineString,
    street2: MultiLineString,
    projection: LocalProjection,
    center: Coordinates,
) -> Coordinates | None:
    """
    Find where two streets meet.

    Tries the exact line intersection first (closest hit to the city
    centre when there are several), then the centroid of the overlap of
    30 m buffers, then the nearest pair of points if under 200 m apart.
    """
    hits = _points_of(street1.intersection(street2))
    if hits:
        best = min(hits, key=lambda p: haversine_distance(p.y, p.x, center.lat, center.lng))
        logger.info(f"Found exact intersection ({len(hits)} candidates)")
        return Coordinates(lat=best.y, lng=best.x)

    metric1 = projection.to_meters(street1)
    metric2 = projection.to_meters(street2)

    overlap = metric1.buffer(INTERSECTION_BUFFER_METERS).intersection(
        metric2.buffer(INTERSECTION_BUFFER_METERS)
    )
    if not overlap.is_empty:
        point = projection.to_degrees(overlap.centroid)
        logger.info("Found buffered intersection")
        return Coordinates(lat=point.y, lng=point.x)

    near1, near2 = nearest_points(metric1, metric2)
    distance = near1.distance(near2)
    if distance < NEAREST_POINT_MAX_METERS:
        point = projection.to_degrees(near2)
        logger.info(f"Using nearest point, {distance:.0f} m apart")
        return Coordinates(lat=point.y, lng=point.x)

    return None


def extract_section(
    street: MultiLineString,
    start: Coordinates,
    end: Coordinates,
    projection: LocalProjection,
) -> LineString | None:
    """
    Cut the part of a street between two points.

    Both points must snap to the same line within 50 m. Connected OSM
    ways are merged first so sections spanning several ways are found.
    The result runs from start to end.
    """
    metric = projection.to_meters(street)
    start_point = projection.to_meters(Point(start.lng, start.lat))
    end_point = projection.to_meters(Point(end.lng, end.lat))

    merged = linemerge(metric)
    lines = list(merged.geoms) if hasattr(merged, "geoms") else [merged]

    best: LineString | None = None
    best_distance = float("inf")
    for line in lines:
        if line.length == 0:
            continue
        start_offset = line.project(start_point)
        end_offset = line.project(end_point)
        start_distance = line.interpolate(start_offset).distance(start_point)
        end_distance = line.interpolate(end_offset).distance(end_point)
        if start_distance >= SECTION_SNAP_MAX_METERS or end_distance >= SECTION_SNAP_MAX_METERS:
            continue
        total = start_distance + end_distance
        if total < best_distance:
            section = substring(line, start_offset, end_offset)
            if isinstance(section, LineString) and len(section.coords) >= 2:
                best_distance = total
                best = section

    if best is None:
        return None
    return projection.to_degrees(best)


class OverpassProvider(HttpProvider):
    """Street geometry lookups against Overpass instances."""

    name = "overpass"

    def __init__(
        self,
        locality: LocalityConfig,
        instances: list[str] | None = None,
        timeout: float = 25.0,
        request_delay: float = 0.5,
        **kwargs: Any,
    ) -> None:
        super().__init__(timeout=timeout, request_delay=request_delay, **kwargs)
        self.locality = locality
        self.instances = instances or list(DEFAULT_OVERPASS_INSTANCES)
        self.projection = LocalProjection(locality.center_lat, locality.center_lng)
        self._geometry_cache: dict[str, MultiLineString | None] = {}

    async def _query(self, query: str) -> dict[str, Any]:
        """
        Run a query, falling back through the configured instances.

        Raises:
            OverpassQueryError: The query was rejected as invalid.
            httpx.HTTPError: Every instance failed.
        """
        last_error: Exception | None = None
        for instance in self.instances:
            host = httpx.URL(instance).host
            try:
                response = await self.request("POST", instance, data={"data": query})
            except httpx.HTTPError as e:
                logger.info(f"Failed with Overpass instance {host}: {e}")
                last_error = e
                continue

            text = response.text
            if response.status_code != 200:
                message = f"HTTP {response.status_code}: {parse_overpass_error(text) or response.reason_phrase}"
                if not should_try_fallback(message, response.status_code):
                    logger.error(f"Client error (query issue): {message}")
                    raise OverpassQueryError(message)
                logger.info(f"Server error from Overpass instance {host}: {message}")
                last_error = httpx.HTTPStatusError(message, request=response.request, response=response)
                continue

            try:
                return response.json()
            except ValueError as e:
                remark = parse_overpass_error(text)
                message = remark or f"Invalid JSON from {host}: {e}"
                if not should_try_fallback(message):
                    raise OverpassQueryError(message) from e
                last_error = e
                continue

        raise last_error or httpx.HTTPError("All Overpass instances failed")

    async def fetch_street_geometry(self, street_name: str) -> MultiLineString | None:
        """Get the OSM geometry of a street, cached per provider."""
        key = street_name.strip()
        if key in self._geometry_cache:
            return self._geometry_cache[key]

        query = build_street_query(street_name, self.locality.overpass_bbox)
        try:
            data = await self._query(query)
        except (OverpassQueryError, httpx.HTTPError, ValueError) as e:
            logger.error(f"Error fetching '{street_name}' from Overpass: {e}")
            return None

        geometry = elements_to_geometry(data.get("elements") or [])
        if geometry is None:
            logger.info(f"Could not find street in OSM: {street_name}")
        else:
            logger.info(f"Found {len(geometry.geoms)} way segments for {street_name}")
        self._geometry_cache[key] = geometry
        return geometry

    async def geocode_intersection(self, street: str, cross_street: str) -> ProviderResult[Coordinates]:
        """Resolve the point where two named streets cross."""
        geometry1 = await self.fetch_street_geometry(street)
        if geometry1 is None:
            return ProviderResult.unresolved(f"street not found: {street}")
        geometry2 = await self.fetch_street_geometry(cross_street)
        if geometry2 is None:
            return ProviderResult.unresolved(f"street not found: {cross_street}")

        center = Coordinates(lat=self.locality.center_lat, lng=self.locality.center_lng)
        point = find_intersection(geometry1, geometry2, self.projection, center)
        if point is None:
            logger.error(f"Could not find intersection of {street} and {cross_street}")
            return ProviderResult.unresolved("streets do not meet")
        return ProviderResult.resolved(point)

    async def street_section(self, street: str, start: Coordinates, end: Coordinates) -> LineString | None:
        """Get the OSM geometry of a street between two points, if found."""
        geometry = await self.fetch_street_geometry(street)
        if geometry is None:
            return None
        section = extract_section(geometry, start, end, self.projection)
        if section is None:
            logger.info(f"Could not extract street section of {street}")
        return section
