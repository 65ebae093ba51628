"""Bus-stop lookups against the local GTFS stops table."""

from __future__ import annotations

import csv
import io
import logging
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from civic_ingest.core.schema import Address, Coordinates
from civic_ingest.db.repositories import GtfsStopRepository
from civic_ingest.ingestion.geocoding.base import ProviderResult

logger = logging.getLogger(__name__)

BUS_STOP_PREFIX = "Спирка "


def bus_stop_text(stop_code: str) -> str:
    """Text under which a geocoded stop is listed among the addresses."""
    return f"{BUS_STOP_PREFIX}{stop_code}"


def stop_code_from_text(original_text: str) -> str:
    return original_text.removeprefix(BUS_STOP_PREFIX)


class GtfsStopProvider:
    """Resolves stop codes to coordinates; no network, no rate limiting."""

    name = "gtfs"

    def __init__(self, session: Session):
        self.repo = GtfsStopRepository(session)

    async def geocode(self, stop_code: str) -> ProviderResult[Address]:
        try:
            stop = self.repo.get_by_code(stop_code)
        except SQLAlchemyError as e:
            logger.error(f"Failed to look up bus stop {stop_code}: {e}")
            return ProviderResult.unresolved(str(e))

        if stop is None:
            logger.warning(f"Bus stop {stop_code} not found in GTFS data")
            return ProviderResult.unresolved("unknown stop code")

        logger.info(f"Geocoded bus stop {stop_code}: {stop.stop_name}")
        return ProviderResult.resolved(
            Address(
                original_text=bus_stop_text(stop_code),
                formatted_address=f"{stop.stop_name} ({stop_code})",
                coordinates=Coordinates(lat=stop.lat, lng=stop.lng),
            )
        )

    async def geocode_many(self, stop_codes: list[str]) -> list[Address]:
        """Geocode stop codes, keeping only the ones found."""
        addresses = []
        for stop_code in stop_codes:
            result = await self.geocode(stop_code)
            if result.is_resolved and result.value is not None:
                addresses.append(result.value)
        return addresses


def import_gtfs_stops(session: Session, stops_file: Path | str) -> int:
    """
    Load a GTFS stops.txt file into the stops table.

    Rows without a stop_code or with unparseable coordinates are skipped.

    Returns:
        Number of stops stored.
    """
    repo = GtfsStopRepository(session)
    text = Path(stops_file).read_text(encoding="utf-8-sig")
    count = 0
    for row in csv.DictReader(io.StringIO(text)):
        code = (row.get("stop_code") or "").strip()
        if not code:
            continue
        try:
            lat, lng = float(row["stop_lat"]), float(row["stop_lon"])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Skipping stop {code} with invalid coordinates")
            continue
        repo.add(code, (row.get("stop_name") or "").strip(), lat, lng)
        count += 1
    logger.info(f"Imported {count} GTFS stops from {stops_file}")
    return count
