"""
Gemini generateContent client for neighborhood / community enrichment.

API Documentation: https://ai.google.dev/api/generate-content
Authentication: key query parameter
"""

import json
import re

import httpx
import structlog

from mls_geo.clients.base_client import BaseAPIClient
from mls_geo.config import settings
from mls_geo.errors import ProviderError
from mls_geo.pipeline.types import EnrichmentResult
from mls_geo.utils.address import clean_area_name

logger = structlog.get_logger()

PROMPT_TEMPLATE = """Role: You are a geographic data enrichment specialist with access to property records, neighborhood maps and current MLS databases.

Goal: For the address below, identify two levels of geographic information.

ADDRESS: {address}, {city}, {county}

Provide:
1. neighborhood: the broad area within the city (e.g. "Kendall Green", "Ives Estates").
2. community: the specific subdivision or development (e.g. "Kendall Lake", "Pine Ridge At Delray Beach").

Rules:
- Give only the main commercial name, without plat qualifiers such as "Sec 1", "Section 2", "Phase 1A", "6th Sec", "Unit 1", "Addition" or "Plat 1".
  Correct: "Highland Lakes" (not "Highland Lakes Sec 1"); "Cresthaven" (not "Cresthaven 6th Sec").
- If several names apply, pick the best known one.
- If you have no data for a field, use exactly "N/A".

Answer with JSON only:
{{
  "neighborhood": "main neighborhood name or N/A",
  "community": "main subdivision/community name or N/A"
}}"""

CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)
JSON_OBJECT = re.compile(r'\{[^}]*"neighborhood"[^}]*"community"[^}]*\}', re.DOTALL)
FIELD_PATTERNS = {
    "neighborhood": re.compile(r'"?neighborhood"?\s*:\s*"([^"]*)"', re.IGNORECASE),
    "community": re.compile(r'"?community"?\s*:\s*"([^"]*)"', re.IGNORECASE),
}

# Confidence assigned when the JSON block could not be parsed and fields were scraped
FALLBACK_CONFIDENCE = 0.3
PARSED_CONFIDENCE = 0.8


def parse_enrichment_text(text: str, provider: str = "Gemini") -> EnrichmentResult:
    """
    Extract neighborhood and community from model output.

    Tries the JSON object first, then falls back to per-field matching.
    Null-like answers ("N/A", "unknown") come back as None.
    """
    cleaned = CODE_FENCE.sub("", text or "").strip()

    match = JSON_OBJECT.search(cleaned)
    if match:
        try:
            payload = json.loads(match.group(0))
            return EnrichmentResult(
                provider=provider,
                neighborhood=clean_area_name(payload.get("neighborhood")),
                community=clean_area_name(payload.get("community")),
                confidence=PARSED_CONFIDENCE,
            )
        except (json.JSONDecodeError, AttributeError):
            logger.debug("Enrichment JSON did not parse, using field fallback", text=cleaned[:200])

    fields = {}
    for name, pattern in FIELD_PATTERNS.items():
        m = pattern.search(cleaned)
        fields[name] = clean_area_name(m.group(1)) if m else None

    if fields["neighborhood"] is None and fields["community"] is None and not match:
        raise ProviderError("could not parse enrichment response", provider=provider)

    return EnrichmentResult(
        provider=provider,
        neighborhood=fields["neighborhood"],
        community=fields["community"],
        confidence=FALLBACK_CONFIDENCE,
    )


class GeminiClient(BaseAPIClient):
    """Asks Gemini for the neighborhood and subdivision of an address."""

    provider_name = "Gemini"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(
            base_url="https://generativelanguage.googleapis.com",
            headers={"User-Agent": "mls-geo-enricher/0.1"},
            transport=transport,
        )
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = model or settings.gemini_model

    @property
    def is_available(self) -> bool:
        return bool(self.api_key) and settings.enrichment_enabled

    async def lookup(self, address: str, city: str = "", county: str = "") -> EnrichmentResult:
        if not self.api_key:
            raise ProviderError("API key not configured", provider=self.provider_name)

        data = await self.post(
            f"/v1beta/models/{self.model}:generateContent",
            params={"key": self.api_key},
            json={
                "contents": [{"parts": [{"text": PROMPT_TEMPLATE.format(
                    address=address, city=city or "N/A", county=county or "N/A",
                )}]}],
                "generationConfig": {
                    "temperature": 0.1,
                    "topK": 10,
                    "topP": 0.8,
                    "maxOutputTokens": 300,
                },
            },
        )

        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError("no response candidates", provider=self.provider_name)

        candidate = candidates[0]
        if candidate.get("finishReason") == "SAFETY":
            raise ProviderError("response blocked by safety filters", provider=self.provider_name)

        parts = (candidate.get("content") or {}).get("parts") or []
        text = parts[0].get("text") if parts else None
        if not text:
            raise ProviderError("empty response", provider=self.provider_name)

        return parse_enrichment_text(text, provider=self.provider_name)
