"""Tests for the age and boundary pre-filters."""

import json
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from shapely.geometry import box

from civic_ingest.core.schema import SourceDocument
from civic_ingest.ingestion.filters import (
    AgeFilter,
    BoundaryFilter,
    feature_within_boundaries,
    filter_features_by_boundaries,
    is_within_boundaries,
    load_boundaries,
)

NOW = datetime(2026, 10, 19, 15, 30, tzinfo=UTC)

# Roughly central Sofia
BOUNDARIES = box(23.30, 42.68, 23.35, 42.71)


def make_source(published_at: datetime = NOW, geometry=None, url: str = "https://example.bg/1") -> SourceDocument:
    return SourceDocument(
        url=url,
        raw_text="text",
        source_type="test",
        published_at=published_at,
        precomputed_geometry=geometry,
    )


def point_feature(lng: float, lat: float) -> dict:
    return {"type": "Feature", "geometry": {"type": "Point", "coordinates": [lng, lat]}, "properties": {}}


def collection(*features: dict) -> dict:
    return {"type": "FeatureCollection", "features": list(features)}


class TestAgeFilter:
    """Tests for AgeFilter."""

    def test_cutoff_is_midnight_utc(self) -> None:
        age_filter = AgeFilter(max_age_days=90, now=lambda: NOW)
        assert age_filter.cutoff == datetime(2026, 7, 21, tzinfo=UTC)

    def test_day_granularity(self) -> None:
        """Test a source 90 days old is dropped while one a minute younger is kept."""
        age_filter = AgeFilter(max_age_days=90, now=lambda: NOW)
        cutoff = datetime(2026, 7, 21, tzinfo=UTC)

        assert not age_filter.accepts(make_source(cutoff))
        assert not age_filter.accepts(make_source(cutoff - timedelta(days=1)))
        assert age_filter.accepts(make_source(cutoff + timedelta(minutes=1)))
        assert age_filter.accepts(make_source(NOW))

    def test_time_of_day_does_not_matter(self) -> None:
        published = datetime(2026, 7, 21, 0, 0, tzinfo=UTC)
        early = AgeFilter(90, now=lambda: datetime(2026, 10, 19, 0, 1, tzinfo=UTC))
        late = AgeFilter(90, now=lambda: datetime(2026, 10, 19, 23, 59, tzinfo=UTC))
        assert early.accepts(make_source(published)) == late.accepts(make_source(published))

    def test_naive_published_at_is_utc(self) -> None:
        age_filter = AgeFilter(max_age_days=1, now=lambda: NOW)
        assert age_filter.accepts(make_source(datetime(2026, 10, 19, 1, 0)))

    def test_split(self) -> None:
        age_filter = AgeFilter(max_age_days=90, now=lambda: NOW)
        recent = make_source(NOW, url="https://example.bg/new")
        old = make_source(NOW - timedelta(days=200), url="https://example.bg/old")

        kept, dropped = age_filter.split([recent, old])
        assert kept == [recent]
        assert dropped == [old]


class TestFeatureWithinBoundaries:
    """Tests for the feature-level boundary checks."""

    def test_inside(self) -> None:
        assert feature_within_boundaries(point_feature(23.32, 42.69), BOUNDARIES)

    def test_outside(self) -> None:
        assert not feature_within_boundaries(point_feature(24.74, 42.13), BOUNDARIES)

    def test_line_crossing_boundary(self) -> None:
        feature = {
            "type": "Feature",
            "geometry": {"type": "LineString", "coordinates": [[23.20, 42.69], [23.32, 42.69]]},
        }
        assert feature_within_boundaries(feature, BOUNDARIES)

    def test_bbox_fallback(self) -> None:
        """Test an unbuildable polygon falls back to its bounding box."""
        feature = {
            "type": "Feature",
            # Two-point ring: shapely refuses it, the bbox check still works
            "geometry": {"type": "Polygon", "coordinates": [[[23.31, 42.69], [23.32, 42.70]]]},
        }
        assert feature_within_boundaries(feature, BOUNDARIES)

    def test_unusable_feature_is_included(self) -> None:
        assert feature_within_boundaries({"type": "Feature"}, BOUNDARIES)

    def test_filter_features(self) -> None:
        inside = point_feature(23.32, 42.69)
        outside = point_feature(24.74, 42.13)
        result = filter_features_by_boundaries(collection(inside, outside), BOUNDARIES)
        assert result["features"] == [inside]
        assert result["type"] == "FeatureCollection"

    def test_filter_features_none_left(self) -> None:
        assert filter_features_by_boundaries(collection(point_feature(24.74, 42.13)), BOUNDARIES) is None

    def test_is_within_boundaries_invalid_geojson(self) -> None:
        """Test invalid GeoJSON is included rather than dropped."""
        assert is_within_boundaries({"type": "Point"}, BOUNDARIES)
        assert is_within_boundaries(None, BOUNDARIES)


class TestBoundaryFilter:
    """Tests for BoundaryFilter."""

    @pytest.fixture
    def boundary_filter(self) -> BoundaryFilter:
        return BoundaryFilter(BOUNDARIES)

    def test_source_without_geometry_passes(self, boundary_filter: BoundaryFilter) -> None:
        assert boundary_filter.accepts(make_source())

    def test_source_with_invalid_json_passes(self, boundary_filter: BoundaryFilter) -> None:
        assert boundary_filter.accepts(make_source(geometry="{not json"))

    def test_source_inside_and_outside(self, boundary_filter: BoundaryFilter) -> None:
        inside = make_source(geometry=json.dumps(collection(point_feature(23.32, 42.69))))
        outside = make_source(geometry=collection(point_feature(24.74, 42.13)), url="https://example.bg/2")

        within, rest = boundary_filter.split([inside, outside])
        assert within == [inside]
        assert rest == [outside]

    def test_filter_geometry(self, boundary_filter: BoundaryFilter) -> None:
        geometry = collection(point_feature(23.32, 42.69), point_feature(24.74, 42.13))
        assert len(boundary_filter.filter_geometry(geometry)["features"]) == 1

    def test_from_file(self) -> None:
        data = collection(
            {
                "type": "Feature",
                "geometry": {
                    "type": "Polygon",
                    "coordinates": [[[23.30, 42.68], [23.35, 42.68], [23.35, 42.71], [23.30, 42.71], [23.30, 42.68]]],
                },
                "properties": {"name": "Оборище"},
            }
        )
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "boundaries.geojson"
            path.write_text(json.dumps(data), encoding="utf-8")

            boundary_filter = BoundaryFilter.from_file(path)
            assert boundary_filter.accepts(make_source(geometry=collection(point_feature(23.32, 42.69))))
            assert not boundary_filter.accepts(make_source(geometry=collection(point_feature(23.40, 42.69))))

    def test_load_boundaries_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "empty.geojson"
            path.write_text(json.dumps(collection()), encoding="utf-8")
            with pytest.raises(ValueError):
                load_boundaries(str(path))
