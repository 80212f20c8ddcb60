"""Durable key-value stores for progress snapshots."""

import os
import re
import tempfile
from pathlib import Path

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mls_geo.config import settings
from mls_geo.models.processing import SnapshotRecord

logger = structlog.get_logger()


def _safe_filename(key: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", key) + ".json"


class FileSnapshotStore:
    """One JSON file per key. Writes go through a temp file and an atomic rename."""

    def __init__(self, directory: str | Path | None = None):
        self.directory = Path(directory or settings.snapshot_dir)

    def _path(self, key: str) -> Path:
        return self.directory / _safe_filename(key)

    async def save(self, key: str, blob: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(blob)
            os.replace(tmp_name, self._path(key))
        except Exception:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def load(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    async def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class DatabaseSnapshotStore:
    """Snapshots stored as rows in the processing_snapshots table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        if session_factory is None:
            from mls_geo.database import async_session
            session_factory = async_session
        self.session_factory = session_factory

    async def save(self, key: str, blob: str) -> None:
        async with self.session_factory() as session:
            row = await session.get(SnapshotRecord, key)
            if row is None:
                session.add(SnapshotRecord(key=key, payload=blob))
            else:
                row.payload = blob
            await session.commit()

    async def load(self, key: str) -> str | None:
        async with self.session_factory() as session:
            row = await session.get(SnapshotRecord, key)
            return row.payload if row else None

    async def delete(self, key: str) -> None:
        async with self.session_factory() as session:
            row = await session.get(SnapshotRecord, key)
            if row is not None:
                await session.delete(row)
                await session.commit()


def get_snapshot_store():
    """Store selected by SNAPSHOT_BACKEND ("file" or "database")."""
    if settings.snapshot_backend == "database":
        return DatabaseSnapshotStore()
    if settings.snapshot_backend != "file":
        logger.warning("Unknown snapshot backend, using file store", backend=settings.snapshot_backend)
    return FileSnapshotStore()
