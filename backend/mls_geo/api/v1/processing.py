from dataclasses import asdict, replace
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from mls_geo.api.deps import get_processor, verify_api_key
from mls_geo.errors import NoSnapshotError, ProcessingInProgressError, SpreadsheetError
from mls_geo.pipeline.processor import Processor
from mls_geo.pipeline.types import ProcessingSnapshot, ProgressUpdate
from mls_geo.services.spreadsheet_service import read_spreadsheet
from mls_geo.tasks.runner import cancel_task, dispatch_processing_job, get_task_status
from mls_geo.utils.columns import detect_columns

router = APIRouter(dependencies=[Depends(verify_api_key)])


class ConfigOverrides(BaseModel):
    batch_size: int | None = Field(default=None, ge=1)
    concurrency_limit: int | None = Field(default=None, ge=1)
    max_retries: int | None = Field(default=None, ge=1)
    retry_delay_ms: int | None = Field(default=None, ge=0)
    cache_enabled: bool | None = None
    cache_ttl_hours: float | None = Field(default=None, gt=0)


class StartRequest(BaseModel):
    file_path: str
    user_id: str | None = None
    overrides: ConfigOverrides | None = None


class UserRequest(BaseModel):
    user_id: str | None = None


class ExportRequest(BaseModel):
    user_id: str | None = None
    path: str | None = None


def _progress_to_dict(update: ProgressUpdate) -> dict:
    return {
        "current": update.current,
        "total": update.total,
        "percentage": update.percentage,
        "current_batch": update.current_batch,
        "total_batches": update.total_batches,
        "is_running": update.is_running,
        "last_address": update.last_address,
        "stats": update.stats.as_dict(),
    }


def _snapshot_to_dict(snapshot: ProcessingSnapshot) -> dict:
    return {
        "file_name": snapshot.file_name,
        "user_id": snapshot.user_id,
        "cursor": snapshot.cursor,
        "total_records": snapshot.total_records,
        "percentage": round(snapshot.cursor / snapshot.total_records * 100) if snapshot.total_records else 100,
        "started_at": snapshot.started_at.isoformat(),
        "saved_at": snapshot.saved_at.isoformat(),
        "stats": snapshot.stats.as_dict(),
    }


@router.post("/start")
async def start_processing(req: StartRequest, processor: Processor = Depends(get_processor)):
    if processor.is_running:
        raise HTTPException(status_code=409, detail="A run is already in progress")

    try:
        headers, records = read_spreadsheet(req.file_path)
    except SpreadsheetError as e:
        raise HTTPException(status_code=400, detail=str(e))

    columns = detect_columns(headers)
    if records and columns.address is None:
        raise HTTPException(status_code=422, detail="No address column found in the spreadsheet")

    config = processor.configure(len(records))
    if req.overrides:
        config = replace(config, **req.overrides.model_dump(exclude_none=True))

    file_name = Path(req.file_path).name
    try:
        run = processor.start(
            records,
            columns=columns,
            config=config,
            file_name=file_name,
            user_id=req.user_id,
        )
    except ProcessingInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    job_id = dispatch_processing_job(run)

    return {
        "job_id": job_id,
        "file_name": file_name,
        "total_records": len(records),
        "columns": asdict(columns),
        "config": asdict(config),
    }


@router.post("/stop")
async def stop_processing(processor: Processor = Depends(get_processor)):
    was_running = processor.is_running
    processor.stop()
    return {"stopped": was_running}


@router.get("/progress")
async def get_progress(processor: Processor = Depends(get_processor)):
    return _progress_to_dict(processor.progress())


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    status = get_task_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"job_id": job_id, **status}


@router.delete("/jobs/{job_id}")
async def cancel_job(job_id: str):
    """Cancel a running job. The run saves its progress so it can be resumed."""
    if not cancel_task(job_id):
        raise HTTPException(status_code=404, detail="No running job with that id")
    return {"job_id": job_id, "cancelled": True}


@router.get("/recovery")
async def check_recovery(user_id: str | None = None, processor: Processor = Depends(get_processor)):
    snapshot = await processor.check_for_snapshot(user_id)
    if snapshot is None:
        return {"available": False}
    return {"available": True, "snapshot": _snapshot_to_dict(snapshot)}


@router.post("/recovery/resume")
async def resume_processing(req: UserRequest, processor: Processor = Depends(get_processor)):
    if processor.is_running:
        raise HTTPException(status_code=409, detail="A run is already in progress")
    snapshot = await processor.check_for_snapshot(req.user_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No saved progress to resume")

    try:
        run = processor.resume(req.user_id)
    except ProcessingInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    job_id = dispatch_processing_job(run)
    return {"job_id": job_id, "snapshot": _snapshot_to_dict(snapshot)}


@router.post("/recovery/discard")
async def discard_recovery(req: UserRequest, processor: Processor = Depends(get_processor)):
    if processor.is_running:
        raise HTTPException(status_code=409, detail="Stop the active run before discarding")
    await processor.discard(req.user_id)
    return {"discarded": True}


@router.post("/recovery/export")
async def export_partial(req: ExportRequest, processor: Processor = Depends(get_processor)):
    try:
        path = await processor.export_partial(req.path, user_id=req.user_id)
    except NoSnapshotError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"path": str(path)}


@router.get("/cache")
async def cache_stats(processor: Processor = Depends(get_processor)):
    return processor.cache_stats()


@router.delete("/cache")
async def clear_cache(processor: Processor = Depends(get_processor)):
    processor.clear_cache()
    return {"cleared": True}
