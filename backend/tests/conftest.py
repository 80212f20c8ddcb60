"""Test configuration and fixtures."""

import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from mls_geo.errors import ProviderError
from mls_geo.models.processing import CompletedFile, SnapshotRecord
from mls_geo.pipeline.types import DetectedColumns, EnrichmentResult, GeocodeResult


class FakeGeocoder:
    """Geocoder double. ``fail_with`` makes every call raise; ``on_call`` runs before answering."""

    def __init__(self, name, neighborhood=None, fail_with=None, on_call=None, delay=0.0):
        self.provider_name = name
        self.neighborhood = neighborhood
        self.fail_with = fail_with
        self.on_call = on_call
        self.delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def lookup(self, full_address):
        self.calls.append(full_address)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.on_call is not None:
                result = self.on_call(full_address)
                if asyncio.iscoroutine(result):
                    await result
            await asyncio.sleep(self.delay)
            if self.fail_with is not None:
                raise self.fail_with
            return GeocodeResult(
                provider=self.provider_name,
                formatted_address=full_address.upper(),
                latitude=25.0 + len(self.calls) / 1000,
                longitude=-80.0,
                neighborhood=self.neighborhood,
            )
        finally:
            self.active -= 1


class FakeEnricher:
    provider_name = "Gemini"

    def __init__(self, neighborhood="AI Hood", community="AI Community", fail_with=None):
        self.neighborhood = neighborhood
        self.community = community
        self.fail_with = fail_with
        self.calls: list[tuple] = []

    async def lookup(self, address, city="", county=""):
        self.calls.append((address, city, county))
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        return EnrichmentResult(
            provider=self.provider_name,
            neighborhood=self.neighborhood,
            community=self.community,
            confidence=0.8,
        )


class MemorySnapshotStore:
    def __init__(self):
        self.blobs: dict[str, str] = {}
        self.saves = 0

    async def save(self, key, blob):
        self.blobs[key] = blob
        self.saves += 1

    async def load(self, key):
        return self.blobs.get(key)

    async def delete(self, key):
        self.blobs.pop(key, None)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)
        await asyncio.sleep(0)
    return _sleep


@pytest.fixture
def columns():
    return DetectedColumns(
        address="Address",
        zip="Zip Code",
        city="City",
        county="County",
        listing_id="ML#",
        neighborhood="Neighborhoods",
        community="Communities",
    )


def make_record(i, address=None, neighborhood=None, community=None):
    return {
        "ML#": f"A{1000 + i}",
        "Address": address or f"{100 + i} Main St",
        "Zip Code": "33101",
        "City": "Miami",
        "County": "Miami-Dade",
        "Neighborhoods": neighborhood,
        "Communities": community,
    }


@pytest.fixture
def records():
    return [make_record(i) for i in range(10)]


@pytest.fixture
def failing_primary():
    return FakeGeocoder("Mapbox", fail_with=ProviderError("boom", provider="Mapbox"))


@pytest.fixture
def secondary():
    return FakeGeocoder("Geocodio", neighborhood="Little Havana")


@pytest.fixture
def enricher():
    return FakeEnricher()


@pytest.fixture
def memory_store():
    return MemorySnapshotStore()


@pytest.fixture
def geocoder_factory():
    return FakeGeocoder


@pytest.fixture
def enricher_factory():
    return FakeEnricher


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def sqlite_sessions(tmp_path):
    """Async builder for a throwaway SQLite engine with the processing tables."""
    async def _build():
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
        async with engine.begin() as conn:
            for table in (SnapshotRecord.__table__, CompletedFile.__table__):
                await conn.run_sync(lambda sync_conn, t=table: t.create(sync_conn, checkfirst=True))
        return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return _build
