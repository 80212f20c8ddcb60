"""
Processor: the caller-facing entry point for enrichment runs.

Owns the caches, the stop flag, the active scheduler and progress
subscribers. One processor runs one dataset at a time.
"""

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable

import structlog

from mls_geo.clients.geocodio import GeocodioClient
from mls_geo.clients.gemini import GeminiClient
from mls_geo.clients.mapbox import MapboxClient
from mls_geo.config import settings
from mls_geo.errors import ColumnDetectionError, NoSnapshotError, ProcessingInProgressError
from mls_geo.pipeline.cache import CacheTiers
from mls_geo.pipeline.chain import EnrichmentProvider, GeocodingProvider, ProviderChain
from mls_geo.pipeline.config_selector import select_batch_config
from mls_geo.pipeline.recovery import RecoveryManager, SnapshotStore, snapshot_key
from mls_geo.pipeline.retry import RetryPolicy
from mls_geo.pipeline.scheduler import BatchScheduler, RunContext
from mls_geo.pipeline.stats import StatsTracker
from mls_geo.pipeline.types import (
    BatchConfig,
    DetectedColumns,
    InputRecord,
    ProcessedResult,
    ProcessingSnapshot,
    ProgressUpdate,
    Stats,
)
from mls_geo.services.sink_service import ResultSink, SinkMetadata, SinkResult, StorageSink
from mls_geo.services.snapshot_store import get_snapshot_store
from mls_geo.services.spreadsheet_service import PARTIAL_SHEET, processed_filename, write_results
from mls_geo.utils.columns import detect_columns

logger = structlog.get_logger()


class Processor:
    def __init__(
        self,
        geocoders: list[GeocodingProvider],
        enricher: EnrichmentProvider | None,
        snapshot_store: SnapshotStore,
        sink: ResultSink | None = None,
        caches: CacheTiers | None = None,
        inter_batch_pause: float | None = None,
        autosave_interval: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.geocoders = geocoders
        self.enricher = enricher
        self.snapshot_store = snapshot_store
        self.sink = sink
        self.caches = caches or CacheTiers()
        self.inter_batch_pause = inter_batch_pause
        self.autosave_interval = autosave_interval
        self._sleep = sleep

        self._stop = asyncio.Event()
        self._scheduler: BatchScheduler | None = None
        self._subscribers: set[asyncio.Queue] = set()
        self.is_running = False
        self.results: list[ProcessedResult] = []
        self.last_sink_result: SinkResult | None = None

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------

    def configure(self, total_records: int) -> BatchConfig:
        return select_batch_config(total_records)

    def start(
        self,
        records: list[InputRecord],
        columns: DetectedColumns | None = None,
        config: BatchConfig | None = None,
        file_name: str = "",
        user_id: str | None = None,
        headers: list[str] | None = None,
    ) -> Awaitable[list[ProcessedResult]]:
        """
        Claim the processor for a fresh dataset and return the run to await.

        The claim is taken on call, before anything is awaited: a second
        start() raises immediately, and a stop() issued before the returned
        run is scheduled still halts it ahead of the first batch. The
        returned awaitable must be awaited (or dispatched) to release it.
        """
        if records:
            if columns is None:
                columns = detect_columns(headers or list(records[0].keys()))
            if columns.address is None:
                raise ColumnDetectionError("No address column found in the spreadsheet")

        self._claim()
        return self._run_fresh(records, columns, config, file_name, user_id)

    def resume(self, user_id: str | None = None) -> Awaitable[list[ProcessedResult]]:
        """Claim the processor and return a run that continues the saved snapshot from its cursor."""
        self._claim()
        return self._run_saved(user_id)

    def stop(self) -> None:
        """Ask the active run to halt. In-flight lookups finish first."""
        if self.is_running:
            logger.info("Stop requested")
        self._stop.set()

    def _claim(self) -> None:
        if self.is_running:
            raise ProcessingInProgressError("A run is already in progress")
        self.is_running = True
        self._stop.clear()
        self.last_sink_result = None

    async def _run_fresh(
        self,
        records: list[InputRecord],
        columns: DetectedColumns | None,
        config: BatchConfig | None,
        file_name: str,
        user_id: str | None,
    ) -> list[ProcessedResult]:
        try:
            if not records:
                logger.info("Empty dataset, nothing to process", file=file_name)
                self._scheduler = None
                self.results = []
                self.is_running = False
                self._publish(self.progress())
                return []

            config = config or self.configure(len(records))

            # A fresh start never reuses results from an earlier run
            self.caches.clear()
            recovery = self._recovery(user_id)
            await recovery.clear()

            context = RunContext(
                file_name=file_name,
                records=records,
                columns=columns,
                config=config,
                user_id=user_id,
            )
            return await self._execute(context, recovery)
        finally:
            self.is_running = False

    async def _run_saved(self, user_id: str | None) -> list[ProcessedResult]:
        try:
            recovery = self._recovery(user_id)
            snapshot = await recovery.load()
            if snapshot is None:
                raise NoSnapshotError("No saved progress to resume")

            logger.info(
                "Resuming run",
                file=snapshot.file_name,
                cursor=snapshot.cursor,
                total=snapshot.total_records,
            )
            context = RunContext(
                file_name=snapshot.file_name,
                records=snapshot.records,
                columns=snapshot.columns,
                config=snapshot.config,
                user_id=snapshot.user_id,
                started_at=snapshot.started_at,
            )
            return await self._execute(
                context,
                recovery,
                results=snapshot.results,
                tracker=StatsTracker.restore(snapshot.stats),
            )
        finally:
            self.is_running = False

    async def _execute(
        self,
        context: RunContext,
        recovery: RecoveryManager,
        results: list[ProcessedResult] | None = None,
        tracker: StatsTracker | None = None,
    ) -> list[ProcessedResult]:
        config = context.config
        chain = ProviderChain(
            self.geocoders,
            self.enricher,
            self.caches,
            config,
            retry_policy=RetryPolicy(
                max_attempts=config.max_retries,
                base_delay_seconds=config.retry_delay_ms / 1000,
                sleep=self._sleep,
            ),
        )
        recovery.reset(len(results or []))
        scheduler = BatchScheduler(
            chain,
            context,
            stop_event=self._stop,
            recovery=recovery,
            tracker=tracker,
            results=results,
            inter_batch_pause=self.inter_batch_pause,
            sleep=self._sleep,
        )

        self._scheduler = scheduler
        try:
            async for outcome in scheduler.run():
                self._publish(self.progress(
                    current_batch=outcome.batch_number,
                    total_batches=outcome.total_batches,
                ))
        except asyncio.CancelledError:
            logger.warning("Run cancelled, saving progress", cursor=scheduler.cursor)
            await self._save_best_effort(scheduler)
            raise
        except Exception as e:
            logger.error("Run failed, saving progress", cursor=scheduler.cursor, error=str(e))
            await self._save_best_effort(scheduler)
            raise
        finally:
            self.results = list(scheduler.results)

        if scheduler.is_complete:
            await self._deliver(scheduler, recovery)
        else:
            await scheduler.checkpoint(force=True)
            logger.info("Run stopped", cursor=scheduler.cursor, total=len(context.records))

        self.is_running = False
        self._publish(self.progress())
        return self.results

    async def _save_best_effort(self, scheduler: BatchScheduler) -> None:
        try:
            await scheduler.checkpoint(force=True)
        except Exception as e:
            logger.error("Could not save progress snapshot", error=str(e))

    async def _deliver(self, scheduler: BatchScheduler, recovery: RecoveryManager) -> None:
        stats = scheduler.tracker.snapshot()
        logger.info("Run completed", file=scheduler.context.file_name, **stats.as_dict())

        if self.sink is not None:
            ctx = scheduler.context
            self.last_sink_result = await self.sink.persist(
                scheduler.results,
                SinkMetadata(
                    original_filename=ctx.file_name,
                    stats=stats,
                    config=ctx.config,
                    columns=ctx.columns,
                    user_id=ctx.user_id,
                    started_at=ctx.started_at,
                ),
            )
            if not self.last_sink_result.success:
                # Keep the finished snapshot so delivery can be retried via resume
                await scheduler.checkpoint(force=True)
                return

        await recovery.clear()

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    @property
    def stats(self) -> Stats:
        if self._scheduler is None:
            return Stats()
        return self._scheduler.tracker.snapshot()

    def progress(self, current_batch: int = 0, total_batches: int = 0) -> ProgressUpdate:
        scheduler = self._scheduler
        if scheduler is None:
            return ProgressUpdate(
                current=0, total=0, current_batch=0, total_batches=0,
                stats=Stats(), is_running=self.is_running,
            )
        last = scheduler.results[-1].address if scheduler.results else ""
        return ProgressUpdate(
            current=scheduler.cursor,
            total=len(scheduler.context.records),
            current_batch=current_batch or scheduler.tracker.snapshot().batches_completed,
            total_batches=total_batches,
            stats=scheduler.tracker.snapshot(),
            is_running=self.is_running,
            last_address=last,
        )

    def subscribe(self, maxsize: int = 0) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def _publish(self, update: ProgressUpdate) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(update)
            except asyncio.QueueFull:
                logger.debug("Progress subscriber is full, dropping update")

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def _recovery(self, user_id: str | None) -> RecoveryManager:
        return RecoveryManager(
            self.snapshot_store,
            snapshot_key(user_id),
            interval=self.autosave_interval,
        )

    async def check_for_snapshot(self, user_id: str | None = None) -> ProcessingSnapshot | None:
        return await self._recovery(user_id).load()

    async def discard(self, user_id: str | None = None) -> None:
        await self._recovery(user_id).clear()
        self.caches.clear()

    async def export_partial(self, path: str | Path | None = None, user_id: str | None = None) -> Path:
        """Write the saved partial results to a workbook without resuming."""
        snapshot = await self._recovery(user_id).load()
        if snapshot is None:
            raise NoSnapshotError("No saved progress to export")
        if path is None:
            path = Path(settings.output_dir) / processed_filename(snapshot.file_name, partial=True)
        return write_results(snapshot.results, path, sheet_name=PARTIAL_SHEET)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def cache_stats(self) -> dict[str, dict[str, int]]:
        return self.caches.stats()

    def clear_cache(self) -> None:
        self.caches.clear()

    async def close(self) -> None:
        for provider in [*self.geocoders, self.enricher, self.sink]:
            close = getattr(provider, "close", None)
            if close is not None:
                await close()


def create_processor(session_factory=None) -> Processor:
    """Processor wired to the configured providers, snapshot store and storage sink."""
    geocoders = [c for c in (MapboxClient(), GeocodioClient()) if c.is_available]
    if not geocoders:
        logger.warning("No geocoding provider configured; every row will fail")
    gemini = GeminiClient()
    enricher = gemini if gemini.is_available else None
    if enricher is None:
        logger.info("AI enrichment disabled")

    return Processor(
        geocoders=geocoders,
        enricher=enricher,
        snapshot_store=get_snapshot_store(),
        sink=StorageSink(session_factory=session_factory),
    )


