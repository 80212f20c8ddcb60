"""
Core data structures for the enrichment pipeline.

Provides:
- InputRecord / DetectedColumns: spreadsheet rows and the resolved column mapping
- GeocodeResult / EnrichmentResult: typed provider payloads
- ProcessedResult: one enriched row with per-field provenance
- BatchConfig / Stats / ProcessingSnapshot: run configuration, counters and recovery state
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Union

Scalar = Union[str, int, float, bool, None]
InputRecord = dict[str, Scalar]

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_CACHED = "cached"

# Provenance tags
SOURCE_EXCEL = "Excel"
SOURCE_CACHE = "Cache"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DetectedColumns:
    """Canonical field -> source column name (None when absent)."""

    address: str | None = None
    zip: str | None = None
    city: str | None = None
    county: str | None = None
    listing_id: str | None = None
    neighborhood: str | None = None
    community: str | None = None

    def value(self, record: InputRecord, field_name: str) -> str:
        """Read a canonical field from a row as a stripped string ("" when absent)."""
        column = getattr(self, field_name)
        if column is None:
            return ""
        raw = record.get(column)
        if raw is None:
            return ""
        if isinstance(raw, float) and raw.is_integer():
            raw = int(raw)
        return str(raw).strip()


@dataclass(frozen=True)
class GeocodeResult:
    """Coordinates and components from a geocoding provider."""

    provider: str
    formatted_address: str
    latitude: float
    longitude: float
    neighborhood: str | None = None
    house_number: str | None = None
    confidence: float | None = None


@dataclass(frozen=True)
class EnrichmentResult:
    """Neighborhood / community names from the AI provider."""

    provider: str
    neighborhood: str | None = None
    community: str | None = None
    confidence: float | None = None


@dataclass(frozen=True)
class ProcessedResult:
    """One enriched spreadsheet row. Never mutated after creation."""

    index: int
    record: InputRecord
    address: str
    status: str
    listing_id: str = ""
    zip: str = ""
    city: str = ""
    county: str = ""
    house_number: str | None = None
    provider: str | None = None
    formatted_address: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    neighborhood: str | None = None
    neighborhood_source: str | None = None
    community: str | None = None
    community_source: str | None = None
    error: str | None = None
    processing_time_ms: int = 0
    cache_hit: bool = False
    processed_at: datetime = field(default_factory=_now)

    @property
    def is_success(self) -> bool:
        return self.status in (STATUS_SUCCESS, STATUS_CACHED)


@dataclass(frozen=True)
class BatchConfig:
    """Performance parameters for one run."""

    batch_size: int = 30
    concurrency_limit: int = 8
    max_retries: int = 3
    retry_delay_ms: int = 1000
    cache_enabled: bool = True
    cache_ttl_hours: float = 24.0
    cleanup_interval_seconds: float = 8.0
    target_throughput: float = 20.0


@dataclass(frozen=True)
class Stats:
    """Read-only view of run counters."""

    total_records: int = 0
    processed: int = 0
    successes: int = 0
    errors: int = 0
    cached: int = 0
    mapbox_calls: int = 0
    geocodio_calls: int = 0
    gemini_calls: int = 0
    cache_hits: int = 0
    total_processing_ms: int = 0
    batches_completed: int = 0
    elapsed_seconds: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.processed == 0:
            return 0.0
        return (self.successes + self.cached) / self.processed

    @property
    def throughput(self) -> float:
        """Records per second."""
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.processed / self.elapsed_seconds

    @property
    def eta_seconds(self) -> float | None:
        """Seconds until completion at the current throughput, None while unknown."""
        remaining = max(self.total_records - self.processed, 0)
        if remaining == 0:
            return 0.0
        if self.throughput <= 0:
            return None
        return remaining / self.throughput

    @property
    def avg_processing_ms(self) -> float:
        if self.processed == 0:
            return 0.0
        return self.total_processing_ms / self.processed

    def as_dict(self) -> dict:
        eta = self.eta_seconds
        return {
            "total_records": self.total_records,
            "processed": self.processed,
            "successes": self.successes,
            "errors": self.errors,
            "cached": self.cached,
            "mapbox_calls": self.mapbox_calls,
            "geocodio_calls": self.geocodio_calls,
            "gemini_calls": self.gemini_calls,
            "cache_hits": self.cache_hits,
            "total_processing_ms": self.total_processing_ms,
            "batches_completed": self.batches_completed,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "success_rate": round(self.success_rate * 100, 1),
            "throughput_per_second": round(self.throughput, 2),
            "avg_processing_ms": round(self.avg_processing_ms),
            "eta_seconds": round(eta) if eta is not None else None,
        }


@dataclass(frozen=True)
class ProcessingSnapshot:
    """Everything needed to resume a run. Replaces the previous snapshot wholesale."""

    file_name: str
    total_records: int
    cursor: int
    records: list[InputRecord]
    results: list[ProcessedResult]
    columns: DetectedColumns
    config: BatchConfig
    stats: Stats
    user_id: str | None = None
    started_at: datetime = field(default_factory=_now)
    saved_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class BatchOutcome:
    """Emitted by the scheduler after each batch settles."""

    batch_number: int
    total_batches: int
    start_index: int
    results: list[ProcessedResult]
    stats: Stats
    elapsed_ms: int


@dataclass(frozen=True)
class ProgressUpdate:
    """Progress event delivered to subscribers."""

    current: int
    total: int
    current_batch: int
    total_batches: int
    stats: Stats
    is_running: bool
    last_address: str = ""

    @property
    def percentage(self) -> int:
        if self.total == 0:
            return 100
        return round(self.current / self.total * 100)
