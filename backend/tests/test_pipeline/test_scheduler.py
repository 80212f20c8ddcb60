"""Tests for the batch scheduler."""

import asyncio
import random

import pytest

from mls_geo.errors import ProviderError
from mls_geo.pipeline.cache import CacheTiers
from mls_geo.pipeline.chain import ProviderChain
from mls_geo.pipeline.recovery import RecoveryManager, decode_snapshot
from mls_geo.pipeline.retry import RetryPolicy
from mls_geo.pipeline.scheduler import BatchScheduler, RunContext
from mls_geo.pipeline.stats import StatsTracker
from mls_geo.pipeline.types import BatchConfig


@pytest.fixture
def make_scheduler(columns, fake_sleep):
    def _make(geocoders, records, config, **kwargs):
        chain = ProviderChain(
            geocoders,
            None,
            CacheTiers(),
            config,
            retry_policy=RetryPolicy(max_attempts=config.max_retries, base_delay_seconds=0.01, sleep=fake_sleep),
        )
        context = RunContext(file_name="listings.xlsx", records=records, columns=columns, config=config)
        kwargs.setdefault("sleep", fake_sleep)
        return BatchScheduler(chain, context, **kwargs)
    return _make


async def drain(scheduler):
    return [outcome async for outcome in scheduler.run()]


class TestBatchScheduler:
    @pytest.mark.asyncio
    async def test_results_in_input_order(self, make_scheduler, geocoder_factory, record_factory):
        rng = random.Random(7)
        geocoder = geocoder_factory("Mapbox")

        async def jitter(_):
            await asyncio.sleep(rng.random() / 200)

        geocoder.on_call = jitter
        records = [record_factory(i) for i in range(23)]
        config = BatchConfig(batch_size=10, concurrency_limit=5, max_retries=1)
        scheduler = make_scheduler([geocoder], records, config)

        outcomes = await drain(scheduler)

        assert [o.batch_number for o in outcomes] == [1, 2, 3]
        assert all(o.total_batches == 3 for o in outcomes)
        assert [r.index for r in scheduler.results] == list(range(23))
        assert [r.address for r in scheduler.results] == [r["Address"] for r in records]

    @pytest.mark.asyncio
    async def test_one_result_per_record_even_on_failure(self, make_scheduler, geocoder_factory, record_factory):
        geocoder = geocoder_factory("Mapbox", fail_with=ProviderError("HTTP 500"))
        records = [record_factory(i) for i in range(7)]
        scheduler = make_scheduler([geocoder], records, BatchConfig(batch_size=3, concurrency_limit=2, max_retries=1))

        await drain(scheduler)

        assert len(scheduler.results) == 7
        assert all(r.status == "error" for r in scheduler.results)
        assert scheduler.tracker.snapshot().errors == 7

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, make_scheduler, geocoder_factory, record_factory):
        geocoder = geocoder_factory("Mapbox", delay=0.005)
        records = [record_factory(i) for i in range(12)]
        scheduler = make_scheduler([geocoder], records, BatchConfig(batch_size=12, concurrency_limit=3, max_retries=1))

        await drain(scheduler)

        assert geocoder.max_active <= 3
        assert len(geocoder.calls) == 12

    @pytest.mark.asyncio
    async def test_pause_between_batches(self, make_scheduler, geocoder_factory, record_factory, sleeps):
        records = [record_factory(i) for i in range(5)]
        scheduler = make_scheduler(
            [geocoder_factory("Mapbox")],
            records,
            BatchConfig(batch_size=2, concurrency_limit=2, max_retries=1),
            inter_batch_pause=0.1,
        )
        await drain(scheduler)
        assert sleeps == [0.1, 0.1]

    @pytest.mark.asyncio
    async def test_stop_between_batches(self, make_scheduler, geocoder_factory, record_factory):
        geocoder = geocoder_factory("Mapbox")
        records = [record_factory(i) for i in range(9)]
        stop = asyncio.Event()
        scheduler = make_scheduler(
            [geocoder], records, BatchConfig(batch_size=3, concurrency_limit=3, max_retries=1), stop_event=stop
        )

        seen = []
        async for outcome in scheduler.run():
            seen.append(outcome)
            stop.set()

        assert len(seen) == 1
        assert scheduler.cursor == 3
        assert len(geocoder.calls) == 3

    @pytest.mark.asyncio
    async def test_stop_mid_batch_keeps_contiguous_prefix(self, make_scheduler, geocoder_factory, record_factory):
        stop = asyncio.Event()
        geocoder = geocoder_factory("Mapbox")
        geocoder.on_call = lambda address: stop.set() if address.startswith("102 Main St") else None
        records = [record_factory(i) for i in range(8)]
        scheduler = make_scheduler(
            [geocoder], records, BatchConfig(batch_size=5, concurrency_limit=1, max_retries=1), stop_event=stop
        )

        outcomes = await drain(scheduler)

        # Row 2 was in flight when the stop arrived and finished; rows 3+ never started
        assert len(outcomes) == 1
        assert [r.index for r in scheduler.results] == [0, 1, 2]
        assert scheduler.cursor == 3
        assert scheduler.tracker.snapshot().processed == 3

    @pytest.mark.asyncio
    async def test_checkpoint_cadence(self, make_scheduler, geocoder_factory, record_factory, memory_store):
        records = [record_factory(i) for i in range(12)]
        recovery = RecoveryManager(memory_store, "processing_progress:anonymous", interval=5)
        scheduler = make_scheduler(
            [geocoder_factory("Mapbox")],
            records,
            BatchConfig(batch_size=3, concurrency_limit=3, max_retries=1),
            recovery=recovery,
        )

        await drain(scheduler)

        # Saved once at least 5 new rows accumulated: after rows 6 and 12
        assert memory_store.saves == 2
        snapshot = decode_snapshot(memory_store.blobs["processing_progress:anonymous"])
        assert snapshot.cursor == 12
        assert len(snapshot.results) == 12
        assert snapshot.file_name == "listings.xlsx"

    @pytest.mark.asyncio
    async def test_resume_from_cursor(self, make_scheduler, geocoder_factory, record_factory):
        records = [record_factory(i) for i in range(6)]
        config = BatchConfig(batch_size=4, concurrency_limit=2, max_retries=1)
        first = make_scheduler([geocoder_factory("Mapbox")], records, config)
        stop = first.stop_event
        async for _ in first.run():
            stop.set()
        assert first.cursor == 4

        geocoder = geocoder_factory("Mapbox")
        second = make_scheduler([geocoder], records, config, results=first.results)
        await drain(second)

        assert len(geocoder.calls) == 2
        assert [r.index for r in second.results] == list(range(6))

    @pytest.mark.asyncio
    async def test_empty_dataset(self, make_scheduler, geocoder_factory):
        scheduler = make_scheduler([geocoder_factory("Mapbox")], [], BatchConfig())
        assert await drain(scheduler) == []
        assert scheduler.is_complete

    @pytest.mark.asyncio
    async def test_elapsed_time_stops_when_run_ends(self, make_scheduler, geocoder_factory, record_factory):
        now = [0.0]

        async def advance(_):
            now[0] = 2.0

        records = [record_factory(i) for i in range(2)]
        scheduler = make_scheduler(
            [geocoder_factory("Mapbox", on_call=advance)],
            records,
            BatchConfig(batch_size=2, concurrency_limit=2, max_retries=1),
            tracker=StatsTracker(total_records=2, clock=lambda: now[0]),
        )

        await drain(scheduler)

        now[0] = 3600.0
        stats = scheduler.tracker.snapshot()
        assert stats.elapsed_seconds == 2.0
        assert stats.throughput == 1.0
