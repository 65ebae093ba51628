"""Point-address geocoding through the Google Geocoding API."""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from civic_ingest.core.schema import Address, Coordinates
from civic_ingest.ingestion.geocoding.base import HttpProvider, ProviderResult
from civic_ingest.ingestion.registry import LocalityConfig

logger = logging.getLogger(__name__)

GOOGLE_GEOCODING_URL = "https://maps.googleapis.com/maps/api/geocode/json"


def is_generic_city_address(formatted_address: str, locality: LocalityConfig) -> bool:
    """
    Check whether a geocoder answer names only the city.

    Such answers ("Sofia, Bulgaria", "София") mean the address itself was
    not found and the geocoder fell back to the whole locality.
    """
    names = [locality.city, *locality.generic_addresses]
    pattern = re.compile(
        rf"^({'|'.join(re.escape(name) for name in names)})(,\s*[^,]+)?$",
        re.IGNORECASE,
    )
    return bool(pattern.match(formatted_address.strip()))


class GoogleGeocoder(HttpProvider):
    """Geocodes free-text addresses restricted to one locality."""

    name = "google"

    def __init__(
        self,
        api_key: str,
        locality: LocalityConfig,
        url: str = GOOGLE_GEOCODING_URL,
        request_delay: float = 0.2,
        **kwargs: Any,
    ) -> None:
        super().__init__(request_delay=request_delay, **kwargs)
        self.api_key = api_key
        self.locality = locality
        self.url = url

    def build_params(self, address: str) -> dict[str, str]:
        """Query parameters for one lookup."""
        return {
            "address": f"{address}, {self.locality.city}, {self.locality.country}",
            "components": f"locality:{self.locality.city}|country:{self.locality.country_code}",
            "key": self.api_key,
        }

    async def geocode(self, address: str) -> ProviderResult[Address]:
        """
        Geocode one address.

        The first result that is neither the city-centre fallback, a
        generic city-only answer, nor outside the locality bounds wins.
        """
        try:
            response = await self.request("GET", self.url, params=self.build_params(address))
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error geocoding address '{address}': {e}")
            return ProviderResult.unresolved(f"request failed: {e}")

        status = data.get("status")
        results = data.get("results") or []
        if status != "OK" or not results:
            return ProviderResult.unresolved(f"geocoder status {status}")

        for result in results:
            location = result.get("geometry", {}).get("location", {})
            lat, lng = location.get("lat"), location.get("lng")
            formatted = result.get("formatted_address", "")
            if lat is None or lng is None:
                continue

            if self.locality.is_center(lat, lng):
                logger.warning(
                    f"Result for '{address}' is the {self.locality.city} city center "
                    f"[{lat:.6f}, {lng:.6f}], rejecting generic fallback"
                )
                continue

            if is_generic_city_address(formatted, self.locality):
                logger.warning(f"Rejecting generic address for '{address}': {formatted}")
                continue

            if not self.locality.contains(lat, lng):
                logger.warning(
                    f"Result for '{address}' is outside {self.locality.city}: [{lat:.6f}, {lng:.6f}]"
                )
                continue

            return ProviderResult.resolved(
                Address(
                    original_text=address,
                    formatted_address=formatted,
                    coordinates=Coordinates(lat=lat, lng=lng),
                )
            )

        return ProviderResult.unresolved(f"no result within {self.locality.city}")

    async def geocode_many(self, addresses: list[str]) -> dict[str, ProviderResult[Address]]:
        """Geocode addresses one after another, pausing between calls."""
        results: dict[str, ProviderResult[Address]] = {}
        for i, address in enumerate(addresses):
            if address in results:
                continue
            results[address] = await self.geocode(address)
            if not results[address].is_resolved:
                logger.warning(f"Failed to geocode address: {address}")
            if i < len(addresses) - 1:
                await self.pause()
        return results
