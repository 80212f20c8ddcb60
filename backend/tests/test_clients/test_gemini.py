"""Tests for the Gemini enrichment client and response parsing."""

import json

import httpx
import pytest

from mls_geo.clients.gemini import GeminiClient, parse_enrichment_text
from mls_geo.errors import ProviderError


def gemini_response(text, finish_reason="STOP"):
    return {
        "candidates": [{
            "content": {"parts": [{"text": text}]},
            "finishReason": finish_reason,
        }]
    }


class TestParseEnrichmentText:
    def test_fenced_json(self):
        text = '```json\n{"neighborhood": "Kendall", "community": "Kendall Lake Sec 2"}\n```'
        result = parse_enrichment_text(text)
        assert result.neighborhood == "Kendall"
        assert result.community == "Kendall Lake"
        assert result.confidence == 0.8

    def test_null_like_values(self):
        result = parse_enrichment_text('{"neighborhood": "N/A", "community": "Brickell Key"}')
        assert result.neighborhood is None
        assert result.community == "Brickell Key"

    def test_field_fallback(self):
        text = 'Sure! neighborhood: "Coconut Grove", community: "Camp Biscayne"'
        result = parse_enrichment_text(text)
        assert result.neighborhood == "Coconut Grove"
        assert result.community == "Camp Biscayne"
        assert result.confidence == 0.3

    def test_unparseable(self):
        with pytest.raises(ProviderError):
            parse_enrichment_text("I am not able to help with that.")


class TestGeminiClient:
    @pytest.mark.asyncio
    async def test_lookup(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200, json=gemini_response('{"neighborhood": "Little Havana", "community": "Shenandoah"}')
            )

        client = GeminiClient(api_key="g-test", model="gemini-test", transport=httpx.MockTransport(handler))
        result = await client.lookup("1501 SW 8th St", "Miami", "Miami-Dade")
        await client.close()

        assert result.provider == "Gemini"
        assert result.neighborhood == "Little Havana"
        assert result.community == "Shenandoah"

        request = seen[0]
        assert request.url.path == "/v1beta/models/gemini-test:generateContent"
        assert request.url.params["key"] == "g-test"
        body = json.loads(request.content)
        assert body["generationConfig"]["temperature"] == 0.1
        assert "1501 SW 8th St, Miami, Miami-Dade" in body["contents"][0]["parts"][0]["text"]

    @pytest.mark.asyncio
    async def test_safety_block(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json=gemini_response("", "SAFETY")))
        with pytest.raises(ProviderError, match="safety"):
            await GeminiClient(api_key="g-test", transport=transport).lookup("x")

    @pytest.mark.asyncio
    async def test_no_candidates(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"candidates": []}))
        with pytest.raises(ProviderError, match="no response candidates"):
            await GeminiClient(api_key="g-test", transport=transport).lookup("x")

    @pytest.mark.asyncio
    async def test_empty_text(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json=gemini_response("")))
        with pytest.raises(ProviderError, match="empty response"):
            await GeminiClient(api_key="g-test", transport=transport).lookup("x")
