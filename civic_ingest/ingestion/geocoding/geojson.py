"""
GeoJSON Assembly Module
=======================

Builds the FeatureCollection stored on a message from resolved pins,
street sections, cadastral parcels and bus stops.
"""

from __future__ import annotations

import json
from typing import Any

from shapely.geometry import LineString, mapping

from civic_ingest.core.enums import FeatureType
from civic_ingest.core.schema import Address, CadastralProperty, Coordinates, Pin, StreetSection, Timespan
from civic_ingest.ingestion.geocoding.gtfs import stop_code_from_text
from civic_ingest.ingestion.geocoding.overpass import LocalProjection

DEFAULT_STREET_BUFFER_METERS = 10.0


def _timespan_properties(timespans: list[Timespan]) -> dict[str, Any]:
    first = timespans[0] if timespans else None
    return {
        "start_time": first.start if first else "",
        "end_time": first.end if first else "",
        "timespans": json.dumps([t.to_storage() for t in timespans], ensure_ascii=False),
    }


def _feature(geometry: dict[str, Any], properties: dict[str, Any]) -> dict[str, Any]:
    return {"type": "Feature", "geometry": geometry, "properties": properties}


def pin_feature(pin: Pin, coordinates: Coordinates) -> dict[str, Any]:
    return _feature(
        {"type": "Point", "coordinates": coordinates.as_lng_lat()},
        {
            "feature_type": FeatureType.PIN.value,
            "address": pin.address,
            **_timespan_properties(pin.timespans),
        },
    )


def street_feature(
    street: StreetSection,
    line: LineString,
    projection: LocalProjection,
    buffer_meters: float = DEFAULT_STREET_BUFFER_METERS,
) -> dict[str, Any]:
    """
    Buffer a street centreline into a polygon a few meters wide.

    Buffering happens in the local metric projection so the width is
    uniform regardless of latitude.
    """
    polygon = projection.to_degrees(projection.to_meters(line).buffer(buffer_meters))
    return _feature(
        mapping(polygon),
        {
            "feature_type": FeatureType.STREET.value,
            "street_name": street.street,
            "start": street.from_,
            "end": street.to,
            **_timespan_properties(street.timespans),
        },
    )


def close_ring(ring: list[list[float]]) -> list[list[float]]:
    """Repeat the first position at the end when a ring is left open."""
    if ring and ring[0] != ring[-1]:
        return [*ring, ring[0]]
    return ring


def cadastral_feature(prop: CadastralProperty, polygon: list[list[list[float]]]) -> dict[str, Any]:
    return _feature(
        {"type": "Polygon", "coordinates": [close_ring(ring) for ring in polygon]},
        {
            "feature_type": FeatureType.CADASTRAL_PROPERTY.value,
            "identifier": prop.identifier,
            **_timespan_properties(prop.timespans),
        },
    )


def bus_stop_feature(stop: Address) -> dict[str, Any]:
    return _feature(
        {"type": "Point", "coordinates": stop.coordinates.as_lng_lat()},
        {
            "feature_type": FeatureType.BUS_STOP.value,
            "stop_code": stop_code_from_text(stop.original_text),
            "stop_name": stop.formatted_address,
        },
    )


def feature_collection(features: list[dict[str, Any]]) -> dict[str, Any]:
    return {"type": "FeatureCollection", "features": features}
