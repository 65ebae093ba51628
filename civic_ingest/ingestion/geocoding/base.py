"""
Geocoding Provider Base
=======================

Shared pieces of the geocoding providers: the explicit resolved/unresolved
result type, great-circle distance, and an httpx-based provider base with
bounded retry on transient HTTP failures.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import httpx

from civic_ingest.core.enums import ResolutionStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

EARTH_RADIUS_METERS = 6371000.0

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class ProviderResult(Generic[T]):
    """Outcome of one provider attempt for one entity."""

    status: ResolutionStatus
    value: T | None = None
    reason: str = ""

    @classmethod
    def resolved(cls, value: T) -> ProviderResult[T]:
        return cls(status=ResolutionStatus.RESOLVED, value=value)

    @classmethod
    def unresolved(cls, reason: str) -> ProviderResult[T]:
        return cls(status=ResolutionStatus.UNRESOLVED, reason=reason)

    @property
    def is_resolved(self) -> bool:
        """Check if the provider produced a value."""
        return self.status == ResolutionStatus.RESOLVED


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Distance in meters between two WGS84 points."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class HttpProvider:
    """
    Base class for providers that talk HTTP.

    Owns an httpx.AsyncClient unless one is injected, and retries requests
    that fail with a transport error or a transient status code using
    exponential backoff.
    """

    name = "http"

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        request_delay: float = 0.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self.request_delay = request_delay
        self._headers = headers or {}
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the underlying HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self._headers,
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpProvider:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def pause(self) -> None:
        """Wait between consecutive calls to respect the provider's rate limits."""
        if self.request_delay > 0:
            await asyncio.sleep(self.request_delay)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request, retrying transient failures.

        Non-transient responses (including 4xx) are returned to the caller.

        Raises:
            httpx.HTTPError: When every attempt failed.
        """
        last_error: httpx.HTTPError | None = None
        for attempt in range(self.max_retries):
            try:
                response = await self.client.request(method, url, **kwargs)
                if response.status_code not in TRANSIENT_STATUS_CODES:
                    return response
                last_error = httpx.HTTPStatusError(
                    f"HTTP {response.status_code}",
                    request=response.request,
                    response=response,
                )
                logger.warning(
                    f"{self.name}: HTTP {response.status_code} from {url} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
            except httpx.TimeoutException as e:
                last_error = e
                logger.warning(
                    f"{self.name}: timeout calling {url} (attempt {attempt + 1}/{self.max_retries})"
                )
            except httpx.TransportError as e:
                last_error = e
                logger.warning(
                    f"{self.name}: transport error calling {url}: {e} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_backoff * 2**attempt)

        assert last_error is not None
        raise last_error
