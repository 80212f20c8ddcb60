"""Hand finished result sets to durable storage."""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mls_geo.config import settings
from mls_geo.models.processing import CompletedFile
from mls_geo.pipeline.types import BatchConfig, DetectedColumns, ProcessedResult, Stats
from mls_geo.services.spreadsheet_service import processed_filename, render_workbook

logger = structlog.get_logger()

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@dataclass
class SinkMetadata:
    original_filename: str
    stats: Stats
    config: BatchConfig
    columns: DetectedColumns
    user_id: str | None = None
    started_at: datetime | None = None


@dataclass
class SinkResult:
    success: bool
    location_ref: str | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class ResultSink(ABC):
    """Receives the full result set once a run completes. Delivery is at-least-once."""

    @abstractmethod
    async def persist(self, results: list[ProcessedResult], metadata: SinkMetadata) -> SinkResult:
        ...

    async def close(self):
        pass


class StorageSink(ResultSink):
    """
    Renders the results workbook and stores it.

    Uploads to Supabase Storage when configured, otherwise writes under the
    output directory. Object names are derived from user and file name, so a
    repeated delivery overwrites the same object. When a session factory is
    given a CompletedFile row is recorded as well.
    """

    def __init__(
        self,
        output_dir: str | Path | None = None,
        supabase_url: str | None = None,
        service_role_key: str | None = None,
        bucket: str | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.output_dir = Path(output_dir or settings.output_dir)
        self.supabase_url = supabase_url if supabase_url is not None else settings.supabase_url
        self.service_role_key = (
            service_role_key if service_role_key is not None else settings.supabase_service_role_key
        )
        self.bucket = bucket or settings.supabase_storage_bucket
        self.session_factory = session_factory
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def storage_available(self) -> bool:
        return bool(self.supabase_url and self.service_role_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=60.0, transport=self._transport)
        return self._client

    async def _upload(self, object_path: str, content: bytes) -> str:
        client = await self._get_client()
        upload_url = f"{self.supabase_url}/storage/v1/object/{self.bucket}/{object_path}"
        resp = await client.post(
            upload_url,
            content=content,
            headers={
                "Authorization": f"Bearer {self.service_role_key}",
                "Content-Type": XLSX_CONTENT_TYPE,
                "x-upsert": "true",
            },
        )
        if resp.status_code not in (200, 201):
            raise RuntimeError(f"upload failed with HTTP {resp.status_code}: {resp.text[:200]}")
        return f"{self.bucket}/{object_path}"

    def _write_local(self, object_path: str, content: bytes) -> str:
        path = self.output_dir / object_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return str(path)

    async def _record(self, metadata: SinkMetadata, filename: str, location_ref: str) -> str:
        stats = metadata.stats
        async with self.session_factory() as session:
            row = CompletedFile(
                user_id=metadata.user_id,
                original_filename=metadata.original_filename,
                processed_filename=filename,
                location_ref=location_ref,
                total_records=stats.total_records,
                successful_records=stats.successes,
                failed_records=stats.errors,
                cached_records=stats.cached,
                stats=stats.as_dict(),
                batch_config=asdict(metadata.config),
                detected_columns=asdict(metadata.columns),
                started_at=metadata.started_at,
                completed_at=datetime.now(timezone.utc),
            )
            session.add(row)
            await session.flush()
            row_id = row.id
            await session.commit()
            return row_id

    async def persist(self, results: list[ProcessedResult], metadata: SinkMetadata) -> SinkResult:
        filename = processed_filename(metadata.original_filename)
        object_path = f"{metadata.user_id or 'anonymous'}/{filename}"

        try:
            content = render_workbook(results)
            if self.storage_available:
                location_ref = await self._upload(object_path, content)
            else:
                location_ref = self._write_local(object_path, content)

            details: dict[str, Any] = {"filename": filename, "rows": len(results)}
            if self.session_factory is not None:
                details["completed_file_id"] = await self._record(metadata, filename, location_ref)
        except Exception as e:
            logger.error("Result delivery failed", file=metadata.original_filename, error=str(e))
            return SinkResult(success=False, error=str(e))

        logger.info(
            "Results delivered",
            file=metadata.original_filename,
            location=location_ref,
            rows=len(results),
        )
        return SinkResult(success=True, location_ref=location_ref, details=details)

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
