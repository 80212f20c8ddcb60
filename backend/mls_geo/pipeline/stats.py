"""Run counters, throughput and ETA."""

import time
from collections import Counter
from dataclasses import replace
from typing import Callable, Iterable

from mls_geo.pipeline.types import STATUS_CACHED, STATUS_ERROR, STATUS_SUCCESS, Stats


class StatsTracker:
    """
    Accumulates per-record outcomes into Stats.

    Elapsed time is wall time since ``start()`` plus whatever a restored
    snapshot had already spent, so throughput stays meaningful across resumes.
    """

    def __init__(self, total_records: int = 0, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._stats = Stats(total_records=total_records)
        self._started_at: float | None = None
        self._carried_seconds = 0.0
        self._finished_seconds: float | None = None

    @classmethod
    def restore(cls, stats: Stats, clock: Callable[[], float] = time.monotonic) -> "StatsTracker":
        tracker = cls(stats.total_records, clock=clock)
        tracker._stats = stats
        tracker._carried_seconds = stats.elapsed_seconds
        return tracker

    def start(self) -> None:
        if self._finished_seconds is not None:
            # Restarted after finish(): keep counting from the frozen total
            self._carried_seconds = self._finished_seconds
            self._finished_seconds = None
            self._started_at = None
        if self._started_at is None:
            self._started_at = self._clock()

    def finish(self) -> None:
        """Freeze elapsed time so throughput and ETA stop drifting once the run ends."""
        if self._finished_seconds is None:
            self._finished_seconds = self._elapsed()

    def _elapsed(self) -> float:
        if self._finished_seconds is not None:
            return self._finished_seconds
        if self._started_at is None:
            return self._carried_seconds
        return self._carried_seconds + (self._clock() - self._started_at)

    def record_batch(self, outcomes: Iterable) -> Stats:
        """Fold a settled batch of ChainOutcomes into the counters."""
        statuses: Counter = Counter()
        calls: Counter = Counter()
        cache_hits = 0
        processing_ms = 0
        for outcome in outcomes:
            statuses[outcome.result.status] += 1
            calls.update(outcome.provider_calls)
            cache_hits += outcome.cache_hits
            processing_ms += outcome.result.processing_time_ms

        s = self._stats
        self._stats = replace(
            s,
            processed=s.processed + sum(statuses.values()),
            successes=s.successes + statuses[STATUS_SUCCESS],
            errors=s.errors + statuses[STATUS_ERROR],
            cached=s.cached + statuses[STATUS_CACHED],
            mapbox_calls=s.mapbox_calls + calls["Mapbox"],
            geocodio_calls=s.geocodio_calls + calls["Geocodio"],
            gemini_calls=s.gemini_calls + calls["Gemini"],
            cache_hits=s.cache_hits + cache_hits,
            total_processing_ms=s.total_processing_ms + processing_ms,
            batches_completed=s.batches_completed + 1,
            elapsed_seconds=self._elapsed(),
        )
        return self._stats

    def snapshot(self) -> Stats:
        return replace(self._stats, elapsed_seconds=self._elapsed())
