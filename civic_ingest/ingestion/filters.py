"""
Pre-filter Module
=================

Cheap filters applied before any AI or geocoding call: an age cutoff and
a geographic boundary check.

The boundary check fails open. A feature whose geometry cannot be built
falls back to a bounding-box test, and is kept if even that fails; a
source whose geometry cannot be parsed at all is kept as well.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any

from shapely.errors import GEOSException
from shapely.geometry import box, shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from civic_ingest.core.schema import SourceDocument
from civic_ingest.ingestion.timespans import ensure_aware

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_DAYS = 90

_GEOMETRY_ERRORS = (GEOSException, KeyError, TypeError, ValueError, AttributeError, IndexError)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class AgeFilter:
    """Drops sources published max_age_days or more before today (midnight UTC)."""

    def __init__(
        self,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
        now: Callable[[], datetime] = _utc_now,
    ):
        self.max_age_days = max_age_days
        self._now = now

    @property
    def cutoff(self) -> datetime:
        """Sources published at or before this instant are too old."""
        today = self._now().astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
        return today - timedelta(days=self.max_age_days)

    def accepts(self, source: SourceDocument) -> bool:
        return ensure_aware(source.published_at) > self.cutoff

    def split(self, sources: Iterable[SourceDocument]) -> tuple[list[SourceDocument], list[SourceDocument]]:
        """Partition sources into (recent, too_old)."""
        cutoff = self.cutoff
        recent, too_old = [], []
        for source in sources:
            if ensure_aware(source.published_at) > cutoff:
                recent.append(source)
            else:
                too_old.append(source)
        if too_old:
            logger.info(f"Filtered out {len(too_old)} sources older than {self.max_age_days} days")
        return recent, too_old


@lru_cache(maxsize=8)
def load_boundaries(path: str) -> BaseGeometry:
    """
    Load a GeoJSON boundary file as one shapely geometry.

    Accepts a FeatureCollection, a single Feature or a bare geometry.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file holds no usable polygon.
    """
    with open(Path(path).expanduser(), encoding="utf-8") as f:
        data = json.load(f)

    if data.get("type") == "FeatureCollection":
        geometries = [feature["geometry"] for feature in data.get("features", []) if feature.get("geometry")]
    elif data.get("type") == "Feature":
        geometries = [data["geometry"]]
    else:
        geometries = [data]

    shapes = [shape(geometry) for geometry in geometries]
    if not shapes:
        raise ValueError(f"No boundary geometry found in {path}")
    logger.info(f"Loaded {len(shapes)} boundary geometries from {path}")
    return unary_union(shapes)


def _iter_positions(coordinates: Any) -> Iterable[tuple[float, float]]:
    if isinstance(coordinates, (list, tuple)) and coordinates and isinstance(coordinates[0], (int, float)):
        yield float(coordinates[0]), float(coordinates[1])
        return
    for item in coordinates:
        yield from _iter_positions(item)


def _bbox_overlaps(geometry: dict[str, Any], boundaries: BaseGeometry) -> bool:
    positions = list(_iter_positions(geometry["coordinates"]))
    xs = [x for x, _ in positions]
    ys = [y for _, y in positions]
    return box(min(xs), min(ys), max(xs), max(ys)).intersects(box(*boundaries.bounds))


def feature_within_boundaries(feature: dict[str, Any], boundaries: BaseGeometry) -> bool:
    """Check whether a GeoJSON feature intersects the boundaries."""
    try:
        return shape(feature["geometry"]).intersects(boundaries)
    except _GEOMETRY_ERRORS as e:
        logger.warning(f"Could not build feature geometry, falling back to bbox check: {e}")

    try:
        return _bbox_overlaps(feature["geometry"], boundaries)
    except _GEOMETRY_ERRORS as e:
        logger.warning(f"Bounding box check failed, including feature: {e}")
        return True


def filter_features_by_boundaries(
    geojson: dict[str, Any], boundaries: BaseGeometry
) -> dict[str, Any] | None:
    """
    Keep only the features that intersect the boundaries.

    Returns:
        A new FeatureCollection, or None when no feature remains.
    """
    features = [f for f in geojson.get("features", []) if feature_within_boundaries(f, boundaries)]
    if not features:
        return None
    return {**geojson, "features": features}


def is_within_boundaries(geojson: Any, boundaries: BaseGeometry) -> bool:
    """Check whether any feature of a FeatureCollection lies within the boundaries."""
    try:
        features = geojson["features"]
        return any(feature_within_boundaries(feature, boundaries) for feature in features)
    except (KeyError, TypeError) as e:
        logger.warning(f"Invalid geometry, including source: {e}")
        return True


class BoundaryFilter:
    """Applies the service-area boundary to sources and geocoded geometry."""

    def __init__(self, boundaries: BaseGeometry):
        self.boundaries = boundaries

    @classmethod
    def from_file(cls, path: Path | str) -> BoundaryFilter:
        return cls(load_boundaries(str(Path(path).expanduser().resolve())))

    def accepts(self, source: SourceDocument) -> bool:
        """
        Check a source's precomputed geometry.

        Sources without geometry pass; they are checked again after
        geocoding.
        """
        try:
            geometry = source.parsed_geometry()
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Invalid precomputed geometry for {source.url}, including it: {e}")
            return True
        if not geometry:
            return True
        return is_within_boundaries(geometry, self.boundaries)

    def split(self, sources: Iterable[SourceDocument]) -> tuple[list[SourceDocument], list[SourceDocument]]:
        """Partition sources into (within, outside)."""
        within, outside = [], []
        for source in sources:
            (within if self.accepts(source) else outside).append(source)
        logger.info(f"Boundary filter: {len(within)} within, {len(outside)} outside")
        return within, outside

    def filter_geometry(self, geojson: dict[str, Any]) -> dict[str, Any] | None:
        """Drop features outside the boundaries; None when nothing remains."""
        return filter_features_by_boundaries(geojson, self.boundaries)
