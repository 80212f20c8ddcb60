"""
Provider fallback chain for a single spreadsheet row.

Order: geocoding cache -> Mapbox -> Geocodio, then (when the row is missing
neighborhood or community) enrichment cache -> Gemini. Failures stay local
to the row: the chain always returns a ProcessedResult.
"""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from mls_geo.config import settings
from mls_geo.errors import ChainExhaustedError, ProviderError
from mls_geo.pipeline.cache import CacheTiers
from mls_geo.pipeline.retry import RetryPolicy
from mls_geo.pipeline.types import (
    SOURCE_CACHE,
    SOURCE_EXCEL,
    STATUS_CACHED,
    STATUS_ERROR,
    STATUS_SUCCESS,
    BatchConfig,
    DetectedColumns,
    EnrichmentResult,
    GeocodeResult,
    InputRecord,
    ProcessedResult,
)
from mls_geo.utils.address import (
    address_cache_key,
    build_full_address,
    clean_area_name,
    extract_house_number,
)

logger = structlog.get_logger()


class GeocodingProvider(Protocol):
    provider_name: str

    async def lookup(self, full_address: str) -> GeocodeResult: ...


class EnrichmentProvider(Protocol):
    provider_name: str

    async def lookup(self, address: str, city: str = "", county: str = "") -> EnrichmentResult: ...


@dataclass
class ChainOutcome:
    result: ProcessedResult
    provider_calls: Counter = field(default_factory=Counter)
    cache_hits: int = 0


class ProviderChain:
    """Resolves one row through cache and providers."""

    def __init__(
        self,
        geocoders: list[GeocodingProvider],
        enricher: EnrichmentProvider | None,
        caches: CacheTiers,
        config: BatchConfig,
        retry_policy: RetryPolicy | None = None,
        enrichment_ttl_hours: float | None = None,
    ):
        self.geocoders = geocoders
        self.enricher = enricher
        self.caches = caches
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.max_retries,
            base_delay_seconds=config.retry_delay_ms / 1000,
        )
        self.enrichment_ttl_hours = enrichment_ttl_hours or settings.enrichment_cache_ttl_hours
        self._inflight: dict[str, asyncio.Future] = {}

    async def _call(self, provider, calls: Counter, *args):
        async def attempt():
            calls[provider.provider_name] += 1
            return await provider.lookup(*args)

        return await self.retry_policy.call(attempt, name=provider.provider_name)

    async def _geocode(self, full_address: str, calls: Counter) -> GeocodeResult:
        failures = []
        for provider in self.geocoders:
            try:
                return await self._call(provider, calls, full_address)
            except ProviderError as e:
                logger.warning(
                    "Geocoder failed, trying next",
                    provider=provider.provider_name,
                    address=full_address[:60],
                    error=str(e),
                )
                failures.append(f"{provider.provider_name}: {e}")
        raise ChainExhaustedError(
            "All geocoding services failed: " + (", ".join(failures) or "no provider configured")
        )

    async def _geocode_shared(self, key: str, full_address: str, calls: Counter) -> GeocodeResult:
        """Geocode once per key; concurrent callers with the same key await the first."""
        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            geocode = await self._geocode(full_address, calls)
        except ChainExhaustedError as e:
            future.set_exception(e)
            # Mark retrieved so an unobserved failure is not logged by asyncio
            future.exception()
            raise
        else:
            future.set_result(geocode)
            return geocode
        finally:
            self._inflight.pop(key, None)
            if not future.done():
                future.cancel()

    async def _enrich(
        self, key: str, address: str, city: str, county: str, calls: Counter
    ) -> tuple[EnrichmentResult | None, bool]:
        """Returns (enrichment, from_cache). Failures are logged and yield (None, False)."""
        if self.config.cache_enabled:
            cached = self.caches.enrichment.get(key)
            if cached is not None:
                return cached, True

        if self.enricher is None:
            return None, False

        try:
            enrichment = await self._call(self.enricher, calls, address, city, county)
        except ProviderError as e:
            logger.warning("Enrichment failed", address=address[:60], error=str(e))
            return None, False

        if self.config.cache_enabled:
            self.caches.enrichment.set(key, enrichment, self.enrichment_ttl_hours)
        return enrichment, False

    async def lookup(self, record: InputRecord, columns: DetectedColumns, index: int) -> ChainOutcome:
        started = time.perf_counter()
        calls: Counter = Counter()
        cache_hits = 0

        address = columns.value(record, "address")
        zip_code = columns.value(record, "zip")
        city = columns.value(record, "city")
        county = columns.value(record, "county")
        base = {
            "index": index,
            "record": record,
            "address": address,
            "listing_id": columns.value(record, "listing_id"),
            "zip": zip_code,
            "city": city,
            "county": county,
        }

        def elapsed_ms() -> int:
            return int((time.perf_counter() - started) * 1000)

        if not address:
            result = ProcessedResult(
                **base,
                status=STATUS_ERROR,
                error="No address",
                processing_time_ms=elapsed_ms(),
            )
            return ChainOutcome(result=result)

        key = address_cache_key(address, city, county)
        full_address = build_full_address(address, zip_code, city, county)

        geocode: GeocodeResult | None = None
        from_cache = False
        try:
            if self.config.cache_enabled:
                geocode = self.caches.geocoding.get(key)
                if geocode is not None:
                    from_cache = True
                elif key in self._inflight:
                    geocode = await asyncio.shield(self._inflight[key])
                    from_cache = True

            if geocode is None:
                if self.config.cache_enabled:
                    geocode = await self._geocode_shared(key, full_address, calls)
                    self.caches.geocoding.set(key, geocode, self.config.cache_ttl_hours)
                else:
                    geocode = await self._geocode(full_address, calls)
        except ChainExhaustedError as e:
            logger.warning("Geocoding failed", index=index, address=address[:60], error=str(e))
            result = ProcessedResult(
                **base,
                house_number=extract_house_number(address),
                status=STATUS_ERROR,
                error=str(e),
                processing_time_ms=elapsed_ms(),
            )
            return ChainOutcome(result=result, provider_calls=calls)

        if from_cache:
            cache_hits += 1

        excel_neighborhood = clean_area_name(columns.value(record, "neighborhood"))
        excel_community = clean_area_name(columns.value(record, "community"))
        geo_neighborhood = clean_area_name(geocode.neighborhood)
        geo_source = SOURCE_CACHE if from_cache else geocode.provider

        neighborhood, neighborhood_source = None, None
        community, community_source = None, None
        if excel_neighborhood:
            neighborhood, neighborhood_source = excel_neighborhood, SOURCE_EXCEL
        elif geo_neighborhood:
            neighborhood, neighborhood_source = geo_neighborhood, geo_source
        if excel_community:
            community, community_source = excel_community, SOURCE_EXCEL

        # Only skip enrichment when the sheet already carries both names
        if not (excel_neighborhood and excel_community):
            enrichment, enriched_from_cache = await self._enrich(key, address, city, county, calls)
            if enrichment is not None:
                if enriched_from_cache:
                    cache_hits += 1
                ai_source = SOURCE_CACHE if enriched_from_cache else enrichment.provider
                if neighborhood is None and enrichment.neighborhood:
                    neighborhood, neighborhood_source = enrichment.neighborhood, ai_source
                if community is None and enrichment.community:
                    community, community_source = enrichment.community, ai_source

        result = ProcessedResult(
            **base,
            house_number=geocode.house_number or extract_house_number(address),
            status=STATUS_CACHED if from_cache else STATUS_SUCCESS,
            provider=geocode.provider,
            formatted_address=geocode.formatted_address,
            latitude=geocode.latitude,
            longitude=geocode.longitude,
            neighborhood=neighborhood,
            neighborhood_source=neighborhood_source,
            community=community,
            community_source=community_source,
            processing_time_ms=elapsed_ms(),
            cache_hit=from_cache,
        )
        return ChainOutcome(result=result, provider_calls=calls, cache_hits=cache_hits)
