"""Async background task runner for processing jobs (no worker queue required).

Includes:
- dispatch_processing_job(): Run a processor coroutine as a background asyncio task
- get_task_status(): Report whether a dispatched job is still running
- cancel_task(): Cancel a dispatched job (the processor saves progress on cancel)
"""
import asyncio
import uuid
from collections.abc import Awaitable
from datetime import datetime, timezone

import structlog

logger = structlog.get_logger()

# Track running tasks, plus the outcome of the most recent finished ones
MAX_FINISHED_JOBS = 200
_running_tasks: dict[str, asyncio.Task] = {}
_finished: dict[str, dict] = {}


def _record_outcome(job_id: str, outcome: dict) -> None:
    _finished[job_id] = outcome
    while len(_finished) > MAX_FINISHED_JOBS:
        # Dicts keep insertion order, so the first key is the oldest outcome
        _finished.pop(next(iter(_finished)))


async def _run_job(job_id: str, coro: Awaitable):
    started_at = datetime.now(timezone.utc)
    try:
        results = await coro
        _record_outcome(job_id, {
            "status": "completed",
            "records": len(results) if results is not None else 0,
            "started_at": started_at.isoformat(),
            "completed_at": datetime.now(timezone.utc).isoformat(),
        })
        logger.info("Processing job finished", job_id=job_id)
    except asyncio.CancelledError:
        _record_outcome(job_id, {"status": "cancelled", "started_at": started_at.isoformat()})
        logger.info("Processing job cancelled", job_id=job_id)
        raise
    except Exception as e:
        _record_outcome(job_id, {
            "status": "failed",
            "error": str(e)[:500],
            "started_at": started_at.isoformat(),
            "completed_at": datetime.now(timezone.utc).isoformat(),
        })
        logger.error("Processing job failed", job_id=job_id, error=str(e))


def dispatch_processing_job(coro: Awaitable, job_id: str | None = None) -> str:
    """Dispatch a processing coroutine as a background asyncio task. Returns the job id."""
    job_id = job_id or str(uuid.uuid4())
    loop = asyncio.get_running_loop()
    task = loop.create_task(_run_job(job_id, coro))
    _running_tasks[job_id] = task
    task.add_done_callback(lambda t: _running_tasks.pop(job_id, None))
    logger.info("Dispatched processing job", job_id=job_id)
    return job_id


def get_task_status(job_id: str) -> dict | None:
    """Status of a dispatched job, or None if unknown."""
    task = _running_tasks.get(job_id)
    if task is not None and not task.done():
        return {"status": "running"}
    return _finished.get(job_id)


def cancel_task(job_id: str) -> bool:
    """Cancel a running job. Returns False if the id is unknown or already finished."""
    task = _running_tasks.get(job_id)
    if task is None or task.done():
        return False
    task.cancel()
    logger.info("Processing job cancel requested", job_id=job_id)
    return True


async def cancel_all():
    """Cancel every running job and wait for them to save progress."""
    tasks = [t for t in _running_tasks.values() if not t.done()]
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
