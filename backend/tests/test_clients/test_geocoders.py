"""Tests for the Mapbox and Geocodio clients against a mocked transport."""

import httpx
import pytest

from mls_geo.clients.base_client import parse_retry_after
from mls_geo.clients.geocodio import GeocodioClient
from mls_geo.clients.mapbox import MapboxClient
from mls_geo.errors import ProviderError, RateLimitError

MAPBOX_FEATURE = {
    "place_name": "1920 NW 3rd Ave, Miami, Florida 33136, United States",
    "center": [-80.2012, 25.7947],
    "address": "1920",
    "relevance": 0.96,
    "context": [
        {"id": "postcode.123", "text": "33136"},
        {"id": "neighborhood.456", "text": "Overtown"},
        {"id": "place.789", "text": "Miami"},
    ],
}


def mock_transport(handler, seen=None):
    def _handler(request):
        if seen is not None:
            seen.append(request)
        return handler(request)
    return httpx.MockTransport(_handler)


class TestMapboxClient:
    @pytest.mark.asyncio
    async def test_parses_first_feature(self):
        seen = []
        transport = mock_transport(lambda r: httpx.Response(200, json={"features": [MAPBOX_FEATURE]}), seen)
        client = MapboxClient(access_token="pk.test", transport=transport)

        result = await client.lookup("1920 NW 3rd Ave, 33136, Miami, Miami-Dade")
        await client.close()

        assert result.provider == "Mapbox"
        assert result.latitude == 25.7947
        assert result.longitude == -80.2012
        assert result.neighborhood == "Overtown"
        assert result.house_number == "1920"
        assert result.confidence == 0.96

        request = seen[0]
        assert "/geocoding/v5/mapbox.places/1920%20NW%203rd%20Ave%2C%2033136" in str(request.url)
        assert request.url.params["country"] == "us"
        assert request.url.params["limit"] == "1"
        assert request.url.params["access_token"] == "pk.test"

    @pytest.mark.asyncio
    async def test_neighborhood_from_properties(self):
        feature = {**MAPBOX_FEATURE, "context": [], "properties": {"neighborhood": "Wynwood"}}
        transport = mock_transport(lambda r: httpx.Response(200, json={"features": [feature]}))
        result = await MapboxClient(access_token="pk.test", transport=transport).lookup("x")
        assert result.neighborhood == "Wynwood"

    @pytest.mark.asyncio
    async def test_no_features(self):
        transport = mock_transport(lambda r: httpx.Response(200, json={"features": []}))
        with pytest.raises(ProviderError, match="no results found"):
            await MapboxClient(access_token="pk.test", transport=transport).lookup("nowhere")

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        transport = mock_transport(lambda r: httpx.Response(429, headers={"Retry-After": "12"}))
        with pytest.raises(RateLimitError) as exc:
            await MapboxClient(access_token="pk.test", transport=transport).lookup("x")
        assert exc.value.retry_after == 12.0
        assert exc.value.provider == "Mapbox"

    @pytest.mark.asyncio
    async def test_server_error(self):
        transport = mock_transport(lambda r: httpx.Response(503, text="unavailable"))
        with pytest.raises(ProviderError) as exc:
            await MapboxClient(access_token="pk.test", transport=transport).lookup("x")
        assert exc.value.status == 503
        assert not isinstance(exc.value, RateLimitError)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        transport = mock_transport(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(ProviderError, match="invalid JSON"):
            await MapboxClient(access_token="pk.test", transport=transport).lookup("x")

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def fail(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProviderError, match="request failed"):
            await MapboxClient(access_token="pk.test", transport=httpx.MockTransport(fail)).lookup("x")

    @pytest.mark.asyncio
    async def test_missing_token(self):
        client = MapboxClient(access_token="")
        assert client.is_available is False
        with pytest.raises(ProviderError):
            await client.lookup("x")


class TestGeocodioClient:
    @pytest.mark.asyncio
    async def test_parses_first_result(self):
        seen = []
        body = {
            "results": [{
                "formatted_address": "1920 NW 3rd Ave, Miami, FL 33136",
                "location": {"lat": 25.79, "lng": -80.20},
                "accuracy": 1,
                "address_components": {"number": "1920", "suburb": "Overtown"},
            }]
        }
        transport = mock_transport(lambda r: httpx.Response(200, json=body), seen)
        client = GeocodioClient(api_key="gc-test", transport=transport)

        result = await client.lookup("1920 NW 3rd Ave, Miami")

        assert result.provider == "Geocodio"
        assert (result.latitude, result.longitude) == (25.79, -80.20)
        assert result.neighborhood == "Overtown"
        assert result.house_number == "1920"
        assert seen[0].url.path == "/v1.7/geocode"
        assert seen[0].url.params["q"] == "1920 NW 3rd Ave, Miami"

    @pytest.mark.asyncio
    async def test_no_results(self):
        transport = mock_transport(lambda r: httpx.Response(200, json={"results": []}))
        with pytest.raises(ProviderError, match="no results found"):
            await GeocodioClient(api_key="gc-test", transport=transport).lookup("x")

    @pytest.mark.asyncio
    async def test_missing_coordinates(self):
        body = {"results": [{"location": {"lat": None, "lng": None}}]}
        transport = mock_transport(lambda r: httpx.Response(200, json=body))
        with pytest.raises(ProviderError, match="no coordinates"):
            await GeocodioClient(api_key="gc-test", transport=transport).lookup("x")


class TestRetryAfter:
    def test_values(self):
        assert parse_retry_after("7") == 7.0
        assert parse_retry_after(" 2.5 ") == 2.5
        assert parse_retry_after(None) is None
        assert parse_retry_after("Wed, 21 Oct 2026 07:28:00 GMT") is None
