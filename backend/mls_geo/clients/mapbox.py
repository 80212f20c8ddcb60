"""
Mapbox Geocoding API client (primary geocoder).

API Documentation: https://docs.mapbox.com/api/search/geocoding-v5/
Authentication: access_token query parameter
"""

from urllib.parse import quote

import httpx

from mls_geo.clients.base_client import BaseAPIClient
from mls_geo.config import settings
from mls_geo.errors import ProviderError
from mls_geo.pipeline.types import GeocodeResult


class MapboxClient(BaseAPIClient):
    """Forward geocoding restricted to US addresses."""

    provider_name = "Mapbox"

    def __init__(self, access_token: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(
            base_url="https://api.mapbox.com",
            transport=transport,
        )
        self.access_token = access_token if access_token is not None else settings.mapbox_access_token

    @property
    def is_available(self) -> bool:
        return bool(self.access_token)

    async def lookup(self, full_address: str) -> GeocodeResult:
        if not self.access_token:
            raise ProviderError("access token not configured", provider=self.provider_name)

        data = await self.get(
            f"/geocoding/v5/mapbox.places/{quote(full_address, safe='')}.json",
            params={
                "access_token": self.access_token,
                "country": "us",
                "types": "address,place,locality,neighborhood",
                "limit": 1,
                "autocomplete": "false",
            },
        )

        features = data.get("features") or []
        if not features:
            raise ProviderError("no results found", provider=self.provider_name)

        feature = features[0]
        center = feature.get("center") or []
        if len(center) < 2:
            raise ProviderError("result has no coordinates", provider=self.provider_name)
        lng, lat = center[0], center[1]

        neighborhood = None
        for ctx in feature.get("context") or []:
            if str(ctx.get("id", "")).startswith("neighborhood"):
                neighborhood = ctx.get("text")
                break
        if neighborhood is None:
            neighborhood = (feature.get("properties") or {}).get("neighborhood")

        return GeocodeResult(
            provider=self.provider_name,
            formatted_address=feature.get("place_name") or full_address,
            latitude=float(lat),
            longitude=float(lng),
            neighborhood=neighborhood,
            house_number=feature.get("address"),
            confidence=feature.get("relevance"),
        )
