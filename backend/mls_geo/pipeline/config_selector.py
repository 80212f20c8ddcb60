"""Pick batch parameters from the size of the dataset."""

import structlog

from mls_geo.pipeline.types import BatchConfig

logger = structlog.get_logger()

# (max records, config). Larger files trade concurrency for provider headroom.
TIERS: list[tuple[int | None, BatchConfig]] = [
    (50, BatchConfig(
        batch_size=25,
        concurrency_limit=15,
        max_retries=3,
        retry_delay_ms=500,
        cache_ttl_hours=6,
        cleanup_interval_seconds=10,
        target_throughput=25,
    )),
    (1_000, BatchConfig(
        batch_size=100,
        concurrency_limit=20,
        max_retries=3,
        retry_delay_ms=1000,
        cache_ttl_hours=12,
        cleanup_interval_seconds=8,
        target_throughput=22,
    )),
    (10_000, BatchConfig(
        batch_size=200,
        concurrency_limit=15,
        max_retries=2,
        retry_delay_ms=1500,
        cache_ttl_hours=24,
        cleanup_interval_seconds=6,
        target_throughput=18,
    )),
    (None, BatchConfig(
        batch_size=100,
        concurrency_limit=10,
        max_retries=2,
        retry_delay_ms=2000,
        cache_ttl_hours=48,
        cleanup_interval_seconds=5,
        target_throughput=15,
    )),
]


def select_batch_config(total_records: int) -> BatchConfig:
    """Return the tier config for a dataset of ``total_records`` rows."""
    for limit, config in TIERS:
        if limit is None or total_records <= limit:
            logger.info(
                "Batch config selected",
                total_records=total_records,
                batch_size=config.batch_size,
                concurrency=config.concurrency_limit,
                max_retries=config.max_retries,
            )
            return config
    raise AssertionError("unreachable")
