"""
Geocodio API client (secondary geocoder).

API Documentation: https://www.geocod.io/docs/
Authentication: api_key query parameter
"""

import httpx

from mls_geo.clients.base_client import BaseAPIClient
from mls_geo.config import settings
from mls_geo.errors import ProviderError
from mls_geo.pipeline.types import GeocodeResult


class GeocodioClient(BaseAPIClient):
    """Geocodio single-address geocoding."""

    provider_name = "Geocodio"

    def __init__(self, api_key: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(
            base_url="https://api.geocod.io",
            transport=transport,
        )
        self.api_key = api_key if api_key is not None else settings.geocodio_api_key

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    async def lookup(self, full_address: str) -> GeocodeResult:
        if not self.api_key:
            raise ProviderError("API key not configured", provider=self.provider_name)

        data = await self.get(
            "/v1.7/geocode",
            params={"q": full_address, "api_key": self.api_key},
        )

        results = data.get("results") or []
        if not results:
            raise ProviderError("no results found", provider=self.provider_name)

        result = results[0]
        location = result.get("location") or {}
        if location.get("lat") is None or location.get("lng") is None:
            raise ProviderError("result has no coordinates", provider=self.provider_name)

        components = result.get("address_components") or {}
        return GeocodeResult(
            provider=self.provider_name,
            formatted_address=result.get("formatted_address") or full_address,
            latitude=float(location["lat"]),
            longitude=float(location["lng"]),
            neighborhood=components.get("neighborhood") or components.get("suburb"),
            house_number=components.get("number"),
            confidence=result.get("accuracy"),
        )
