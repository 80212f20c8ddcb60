import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mls_geo.database import Base


def _uuid_str() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotRecord(Base):
    """Key-value row holding one serialized progress snapshot."""

    __tablename__ = "processing_snapshots"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class CompletedFile(Base):
    """A finished, enriched workbook handed to storage."""

    __tablename__ = "completed_files"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=_uuid_str
    )
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    original_filename: Mapped[str] = mapped_column(String(500))
    processed_filename: Mapped[str] = mapped_column(String(500))
    location_ref: Mapped[str] = mapped_column(Text)

    # Counts
    total_records: Mapped[int] = mapped_column(Integer, default=0)
    successful_records: Mapped[int] = mapped_column(Integer, default=0)
    failed_records: Mapped[int] = mapped_column(Integer, default=0)
    cached_records: Mapped[int] = mapped_column(Integer, default=0)

    # Run details
    stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    batch_config: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    detected_columns: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
