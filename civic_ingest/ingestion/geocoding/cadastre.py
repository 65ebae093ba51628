"""
Cadastre Provider Module
========================

Looks up cadastral parcel polygons in the Bulgarian cadastre map service
(KAIS). Each lookup opens a fresh browser-like session: the map page sets
cookies and embeds a CSRF token, after which a search is started, its first
hit read back, and the hit's geometry requested. Geometry arrives as ESRI
rings in a national projected CRS and is converted to WGS84.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any

import httpx
from pyproj import Transformer

from civic_ingest.ingestion.geocoding.base import HttpProvider, ProviderResult

logger = logging.getLogger(__name__)

CADASTRE_URL = "https://kais.cadastre.bg"
BROWSER_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

_CSRF_PATTERN = re.compile(r'name="__RequestVerificationToken".*?value="([^"]+)"', re.DOTALL)

# BGS 2005 projections used by the cadastre map
CADASTRE_CRS = {
    "7801": (
        "+proj=lcc +lat_0=42.6678756833333 +lon_0=25.5 +lat_1=42 +lat_2=43.3333333333333 "
        "+x_0=500000 +y_0=4725824.3591 +ellps=GRS80 +towgs84=0,0,0,0,0,0,0 +units=m +no_defs"
    ),
    "7802": "+proj=utm +zone=34 +ellps=GRS80 +towgs84=0,0,0,0,0,0,0 +units=m +no_defs",
}


class CadastreError(Exception):
    """A step of the cadastre lookup failed."""


@dataclass
class CadastralGeometry:
    """Polygon rings of one parcel in GeoJSON [lng, lat] order."""

    identifier: str
    polygon: list[list[list[float]]]


def rings_to_wgs84(rings: list[list[list[float]]], spatial_reference: str) -> list[list[list[float]]]:
    """
    Convert ESRI rings from a cadastre CRS to WGS84 [lng, lat] rings.

    Raises:
        CadastreError: If the spatial reference is unknown.
    """
    proj = CADASTRE_CRS.get(str(spatial_reference))
    if proj is None:
        raise CadastreError(f"Unexpected spatial reference: {spatial_reference}")

    transformer = Transformer.from_crs(proj, "EPSG:4326", always_xy=True)
    converted = []
    for ring in rings:
        xs = [point[0] for point in ring]
        ys = [point[1] for point in ring]
        lngs, lats = transformer.transform(xs, ys)
        converted.append([[lng, lat] for lng, lat in zip(lngs, lats)])
    return converted


class CadastreProvider(HttpProvider):
    """Single-item, session-based parcel geometry lookups."""

    name = "cadastre"

    def __init__(self, base_url: str = CADASTRE_URL, request_delay: float = 2.0, **kwargs: Any) -> None:
        headers = kwargs.pop("headers", None) or {}
        headers.setdefault("User-Agent", BROWSER_USER_AGENT)
        super().__init__(request_delay=request_delay, headers=headers, **kwargs)
        self.base_url = base_url.rstrip("/")

    @property
    def map_url(self) -> str:
        return f"{self.base_url}/bg/Map/Index"

    def _ajax_headers(self, csrf_token: str | None = None) -> dict[str, str]:
        headers = {
            "Accept": "*/*",
            "Referer": self.map_url,
            "X-Requested-With": "XMLHttpRequest",
        }
        if csrf_token:
            headers["X-CSRF-TOKEN"] = csrf_token
        return headers

    async def _start_session(self) -> str:
        """Load the map page so the client holds session cookies; return the CSRF token."""
        self.client.cookies.clear()
        response = await self.request("GET", self.map_url)
        response.raise_for_status()
        match = _CSRF_PATTERN.search(response.text)
        if not match:
            raise CadastreError("Failed to extract CSRF token from cadastre main page")
        return match.group(1)

    async def _fast_search(self, identifier: str) -> None:
        url = (
            f"{self.base_url}/bg/Map/FastSearch?KeyWords={identifier}"
            "&ServiceObjectHash=&LimitSearchExtent=false&LimitResultCount=true"
            f"&LimitResultCount=false&X-Requested-With=XMLHttpRequest&_={int(time.time() * 1000)}"
        )
        response = await self.request("GET", url, headers=self._ajax_headers())
        if response.status_code != 200:
            raise CadastreError(f"FastSearch failed with status {response.status_code} for {identifier}")

    async def _read_found_objects(self, csrf_token: str) -> dict[str, Any] | None:
        response = await self.request(
            "POST",
            f"{self.base_url}/bg/Map/ReadFoundObjects",
            headers={
                **self._ajax_headers(csrf_token),
                "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
            },
            content="sort=&page=1&pageSize=10&group=&filter=",
        )
        if response.status_code != 200:
            raise CadastreError(f"ReadFoundObjects failed with status {response.status_code}")
        payload = response.json()
        if not isinstance(payload, dict):
            raise CadastreError(f"Unexpected ReadFoundObjects payload: {type(payload).__name__}")
        rows = payload.get("Data") or []
        if not isinstance(rows, list) or not rows:
            return None
        if not isinstance(rows[0], dict):
            raise CadastreError(f"Unexpected ReadFoundObjects row: {type(rows[0]).__name__}")
        return rows[0]

    async def _get_geometry(self, csrf_token: str, found: dict[str, Any]) -> dict[str, Any] | None:
        form = {
            "IsChecked": "false",
            "HistoryDate": "",
            "OfficeId": str(found.get("OfficeId", "")),
            "OtherData": "",
            "DbId": "",
            "Id": str(found.get("Id", "")),
            "Type": str(found.get("Type", "")),
            "SubType": "",
            "Number": str(found.get("Number", "")),
            "Title": str(found.get("Title", "")),
            "ShortDescription": str(found.get("ShortDescription", "")),
            "Description": "",
            "IsAdditional": "false",
            "Hash": str(found.get("Hash", "")),
        }
        response = await self.request(
            "POST",
            f"{self.base_url}/bg/Map/GetGeometry/",
            headers=self._ajax_headers(csrf_token),
            data=form,
        )
        if response.status_code != 200:
            raise CadastreError(f"GetGeometry failed with status {response.status_code}")
        data = response.json()
        if not isinstance(data, list) or not data:
            return None
        if not isinstance(data[0], dict):
            raise CadastreError(f"Unexpected GetGeometry item: {type(data[0]).__name__}")
        return data[0]

    async def geocode(self, identifier: str) -> ProviderResult[CadastralGeometry]:
        """
        Resolve one cadastral identifier (УПИ) to its parcel polygon.

        Any failure yields an unresolved result; the parcel is then left
        out of the geometry.
        """
        logger.info(f"Geocoding cadastral property {identifier}")
        try:
            csrf_token = await self._start_session()
            await self.pause()

            await self._fast_search(identifier)
            await self.pause()

            found = await self._read_found_objects(csrf_token)
            if not found:
                logger.info(f"No cadastre results found for {identifier}")
                return ProviderResult.unresolved("not found")
            await self.pause()

            response = await self._get_geometry(csrf_token, found)
            if not response:
                logger.info(f"No cadastre geometry found for {identifier}")
                return ProviderResult.unresolved("no geometry")

            geometry = response.get("Geometry") or {}
            rings = geometry.get("rings") if isinstance(geometry, dict) else None
            if not rings or not isinstance(rings, list):
                return ProviderResult.unresolved("empty geometry")
            polygon = rings_to_wgs84(rings, str(response.get("SpatialReferenceCode", "")))
        except (CadastreError, httpx.HTTPError, ValueError, KeyError, TypeError, IndexError) as e:
            logger.error(f"Failed to geocode cadastral property {identifier}: {e}")
            return ProviderResult.unresolved(str(e))

        logger.info(f"Geocoded {identifier} with {len(polygon[0])} vertices")
        return ProviderResult.resolved(CadastralGeometry(identifier=identifier, polygon=polygon))

    async def geocode_many(self, identifiers: list[str]) -> dict[str, CadastralGeometry]:
        """Geocode identifiers one by one, keeping only the resolved ones."""
        results: dict[str, CadastralGeometry] = {}
        for identifier in identifiers:
            result = await self.geocode(identifier)
            if result.is_resolved and result.value is not None:
                results[identifier] = result.value
        return results
