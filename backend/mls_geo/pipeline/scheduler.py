"""
Batch scheduler: sequential batches, bounded concurrency inside each batch.

Rows keep their input index through the concurrent lookups and are put back
in input order before they are appended, so ``results[i]`` always belongs to
``records[i]``. A stop request is honored between batches and before each
row's lookup; lookups already in flight finish, and only the contiguous
prefix of a halted batch is kept so the cursor stays exact.
"""

import asyncio
import contextlib
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable

import structlog

from mls_geo.config import settings
from mls_geo.pipeline.chain import ChainOutcome, ProviderChain
from mls_geo.pipeline.recovery import RecoveryManager
from mls_geo.pipeline.stats import StatsTracker
from mls_geo.pipeline.types import (
    STATUS_ERROR,
    BatchConfig,
    BatchOutcome,
    DetectedColumns,
    InputRecord,
    ProcessedResult,
    ProcessingSnapshot,
)

logger = structlog.get_logger()


@dataclass
class RunContext:
    """The dataset and settings one run works on."""

    file_name: str
    records: list[InputRecord]
    columns: DetectedColumns
    config: BatchConfig
    user_id: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BatchScheduler:
    def __init__(
        self,
        chain: ProviderChain,
        context: RunContext,
        stop_event: asyncio.Event | None = None,
        recovery: RecoveryManager | None = None,
        tracker: StatsTracker | None = None,
        results: list[ProcessedResult] | None = None,
        inter_batch_pause: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.chain = chain
        self.context = context
        self.stop_event = stop_event or asyncio.Event()
        self.recovery = recovery
        self.tracker = tracker or StatsTracker(total_records=len(context.records))
        self.results: list[ProcessedResult] = list(results or [])
        self.inter_batch_pause = (
            settings.inter_batch_pause_seconds if inter_batch_pause is None else inter_batch_pause
        )
        self._sleep = sleep

    @property
    def cursor(self) -> int:
        return len(self.results)

    @property
    def is_complete(self) -> bool:
        return self.cursor >= len(self.context.records)

    def build_snapshot(self) -> ProcessingSnapshot:
        ctx = self.context
        return ProcessingSnapshot(
            file_name=ctx.file_name,
            total_records=len(ctx.records),
            cursor=self.cursor,
            records=ctx.records,
            results=list(self.results),
            columns=ctx.columns,
            config=ctx.config,
            stats=self.tracker.snapshot(),
            user_id=ctx.user_id,
            started_at=ctx.started_at,
        )

    async def checkpoint(self, force: bool = False) -> bool:
        if self.recovery is None:
            return False
        return await self.recovery.checkpoint(self.build_snapshot(), force=force)

    async def _sweep_caches(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = self.chain.caches.cleanup()
            if removed:
                logger.debug("Periodic cache sweep", removed=removed)

    async def _process(self, index: int, record: InputRecord, semaphore: asyncio.Semaphore) -> ChainOutcome | None:
        async with semaphore:
            if self.stop_event.is_set():
                return None
            try:
                return await self.chain.lookup(record, self.context.columns, index)
            except Exception as e:
                # One bad row must not sink the batch
                logger.error("Unexpected lookup failure", index=index, error=str(e))
                columns = self.context.columns
                return ChainOutcome(result=ProcessedResult(
                    index=index,
                    record=record,
                    address=columns.value(record, "address"),
                    listing_id=columns.value(record, "listing_id"),
                    zip=columns.value(record, "zip"),
                    city=columns.value(record, "city"),
                    county=columns.value(record, "county"),
                    status=STATUS_ERROR,
                    error=str(e),
                ))

    async def run(self) -> AsyncIterator[BatchOutcome]:
        """Process everything after the cursor, yielding once per settled batch."""
        records = self.context.records
        config = self.context.config
        total = len(records)
        start = self.cursor
        if start >= total:
            return

        batch_size = max(1, config.batch_size)
        total_batches = math.ceil((total - start) / batch_size)
        semaphore = asyncio.Semaphore(max(1, config.concurrency_limit))

        self.tracker.start()
        logger.info(
            "Run started",
            file=self.context.file_name,
            total=total,
            start_index=start,
            batches=total_batches,
            batch_size=batch_size,
            concurrency=config.concurrency_limit,
        )

        sweeper = asyncio.create_task(self._sweep_caches(config.cleanup_interval_seconds))
        try:
            for batch_number, batch_start in enumerate(range(start, total, batch_size), start=1):
                if self.stop_event.is_set():
                    logger.info("Stop requested, no new batch started", cursor=self.cursor)
                    break

                batch = records[batch_start:batch_start + batch_size]
                batch_started = time.perf_counter()
                settled = await asyncio.gather(*(
                    self._process(batch_start + offset, record, semaphore)
                    for offset, record in enumerate(batch)
                ))

                completed: list[ChainOutcome] = []
                for outcome in settled:
                    if outcome is None:
                        break
                    completed.append(outcome)
                halted = len(completed) < len(batch)

                self.results.extend(o.result for o in completed)
                stats = self.tracker.record_batch(completed)
                await self.checkpoint(force=halted)

                elapsed_ms = int((time.perf_counter() - batch_started) * 1000)
                logger.info(
                    "Batch completed",
                    batch=batch_number,
                    total_batches=total_batches,
                    records=len(completed),
                    processed=stats.processed,
                    success_rate=round(stats.success_rate * 100, 1),
                    elapsed_ms=elapsed_ms,
                )

                yield BatchOutcome(
                    batch_number=batch_number,
                    total_batches=total_batches,
                    start_index=batch_start,
                    results=[o.result for o in completed],
                    stats=stats,
                    elapsed_ms=elapsed_ms,
                )

                if halted:
                    logger.info("Batch halted by stop request", batch=batch_number, kept=len(completed))
                    break
                if batch_start + batch_size < total and self.inter_batch_pause > 0:
                    await self._sleep(self.inter_batch_pause)
        finally:
            self.tracker.finish()
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
