"""House-number geocoding through OSM Nominatim."""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from civic_ingest.core.schema import Coordinates
from civic_ingest.ingestion.geocoding.base import HttpProvider, ProviderResult
from civic_ingest.ingestion.registry import LocalityConfig

logger = logging.getLogger(__name__)

NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"


def normalize_address_for_nominatim(address: str) -> str:
    """Drop the "№" number sign, which Nominatim does not understand."""
    address = re.sub(r"№\s*", "", address)
    return re.sub(r"\s+", " ", address).strip()


class NominatimProvider(HttpProvider):
    """Resolves street + house number addresses inside the locality bounds."""

    name = "nominatim"

    def __init__(
        self,
        locality: LocalityConfig,
        url: str = NOMINATIM_URL,
        user_agent: str = "CivicIngest/0.1",
        request_delay: float = 1.0,
        **kwargs: Any,
    ) -> None:
        headers = kwargs.pop("headers", None) or {}
        headers.setdefault("User-Agent", user_agent)
        super().__init__(request_delay=request_delay, headers=headers, **kwargs)
        self.locality = locality
        self.url = url

    def build_params(self, address: str) -> dict[str, str]:
        """Query parameters restricting results to the locality's viewbox."""
        query = f"{normalize_address_for_nominatim(address)}, {self.locality.city}, {self.locality.country}"
        return {
            "q": query,
            "format": "json",
            "limit": "5",
            "addressdetails": "1",
            "bounded": "1",
            "viewbox": self.locality.nominatim_viewbox,
        }

    async def geocode(self, address: str) -> ProviderResult[Coordinates]:
        """Return the first in-bounds match for the address."""
        try:
            response = await self.request("GET", self.url, params=self.build_params(address))
            response.raise_for_status()
            results = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Nominatim lookup failed for '{address}': {e}")
            return ProviderResult.unresolved(f"request failed: {e}")

        for result in results or []:
            try:
                lat, lng = float(result["lat"]), float(result["lon"])
            except (KeyError, TypeError, ValueError):
                continue
            if self.locality.contains(lat, lng):
                logger.info(f"Nominatim resolved '{address}' to [{lat:.6f}, {lng:.6f}]")
                return ProviderResult.resolved(Coordinates(lat=lat, lng=lng))

        logger.warning(f"Nominatim found nothing within {self.locality.city} for '{address}'")
        return ProviderResult.unresolved("no result within bounds")
