"""
Progress snapshots for interrupted runs.

A snapshot holds the input rows, the results produced so far and the
cursor, so a run can be resumed without the original file. Snapshots are
written through a key-value SnapshotStore and expire after the retention
window; expired or unreadable snapshots are removed on load.
"""

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import structlog
from pydantic import TypeAdapter, ValidationError

from mls_geo.config import settings
from mls_geo.errors import SnapshotCorruptError
from mls_geo.pipeline.types import ProcessingSnapshot

logger = structlog.get_logger()

_snapshot_adapter = TypeAdapter(ProcessingSnapshot)


class SnapshotStore(Protocol):
    async def save(self, key: str, blob: str) -> None: ...

    async def load(self, key: str) -> str | None: ...

    async def delete(self, key: str) -> None: ...


def snapshot_key(user_id: str | None) -> str:
    return f"processing_progress:{user_id or 'anonymous'}"


# Results point back at their input row by index, so the row itself is
# stored once under "records" and re-attached on decode.
_RESULT_ROWS = {"results": {"__all__": {"record"}}}


def encode_snapshot(snapshot: ProcessingSnapshot) -> str:
    return _snapshot_adapter.dump_json(snapshot, exclude=_RESULT_ROWS).decode("utf-8")


def decode_snapshot(blob: str) -> ProcessingSnapshot:
    try:
        data = json.loads(blob)
        records = data["records"]
        for result in data["results"]:
            result.setdefault("record", records[result["index"]])
        return _snapshot_adapter.validate_python(data)
    except ValidationError as e:
        raise SnapshotCorruptError(f"snapshot could not be decoded: {e.error_count()} errors") from e
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise SnapshotCorruptError(f"snapshot could not be decoded: {e}") from e


class RecoveryManager:
    """Saves snapshots on a record cadence and restores them on demand."""

    def __init__(
        self,
        store: SnapshotStore,
        key: str,
        interval: int | None = None,
        retention_hours: float | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.key = key
        self.interval = interval or settings.autosave_interval
        self.retention = timedelta(hours=retention_hours or settings.snapshot_retention_hours)
        self._now = now
        self._last_saved_cursor = 0

    def reset(self, cursor: int = 0) -> None:
        self._last_saved_cursor = cursor

    async def checkpoint(self, snapshot: ProcessingSnapshot, force: bool = False) -> bool:
        """Persist when enough new records accumulated (or when forced). Returns True if saved."""
        if len(snapshot.results) != snapshot.cursor:
            raise ValueError(
                f"snapshot cursor {snapshot.cursor} does not match {len(snapshot.results)} results"
            )
        if not force and snapshot.cursor - self._last_saved_cursor < self.interval:
            return False
        await self.save(snapshot)
        return True

    async def save(self, snapshot: ProcessingSnapshot) -> None:
        stamped = replace(snapshot, saved_at=self._now())
        await self.store.save(self.key, encode_snapshot(stamped))
        self._last_saved_cursor = snapshot.cursor
        logger.info(
            "Progress snapshot saved",
            key=self.key,
            cursor=snapshot.cursor,
            total=snapshot.total_records,
        )

    async def load(self) -> ProcessingSnapshot | None:
        """Return the stored snapshot, or None when absent, expired or corrupt."""
        blob = await self.store.load(self.key)
        if blob is None:
            return None

        try:
            snapshot = decode_snapshot(blob)
        except SnapshotCorruptError as e:
            logger.warning("Discarding unreadable snapshot", key=self.key, error=str(e))
            await self.store.delete(self.key)
            return None

        saved_at = snapshot.saved_at
        if saved_at.tzinfo is None:
            saved_at = saved_at.replace(tzinfo=timezone.utc)
        if self._now() - saved_at > self.retention:
            logger.info("Discarding expired snapshot", key=self.key, saved_at=saved_at.isoformat())
            await self.store.delete(self.key)
            return None

        if len(snapshot.results) != snapshot.cursor:
            logger.warning(
                "Discarding inconsistent snapshot",
                key=self.key,
                cursor=snapshot.cursor,
                results=len(snapshot.results),
            )
            await self.store.delete(self.key)
            return None

        return snapshot

    async def clear(self) -> None:
        await self.store.delete(self.key)
        self._last_saved_cursor = 0
        logger.info("Progress snapshot cleared", key=self.key)
