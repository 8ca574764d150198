"""Job lifecycle API — start, cancel, retry, delete, and read a tab's job."""

from fastapi import APIRouter, Depends, Header, HTTPException
from typing import Optional

from visionm.api.deps import TrackerRegistry, get_registry, get_tracker, job_error_to_http
from visionm.jobs.errors import JobError
from visionm.jobs.results import RESULT_FILTERS
from visionm.jobs.tracker import JobTracker

router = APIRouter()


@router.get("/{kind}/state")
async def get_state(tracker: JobTracker = Depends(get_tracker)):
    """Current job, selection, and pending notices for this tab.

    The first call for a tab mounts the tracker: a job recorded in the
    recovery store is resumed, never re-submitted.
    """
    snapshot = tracker.snapshot()
    tracker.drain_notices()
    return snapshot


@router.post("/{kind}/start")
async def start_job(tracker: JobTracker = Depends(get_tracker)):
    try:
        job = await tracker.start()
    except JobError as e:
        raise job_error_to_http(e)
    return {
        "job_id": job.job_id,
        "status": job.status.value,
        "message": "Job submitted. Poll GET state for progress.",
    }


@router.post("/{kind}/cancel")
async def cancel_job(tracker: JobTracker = Depends(get_tracker)):
    try:
        job = await tracker.cancel()
    except JobError as e:
        raise job_error_to_http(e)
    return {"job_id": job.job_id, "status": job.status.value}


@router.post("/{kind}/retry")
async def retry_job(tracker: JobTracker = Depends(get_tracker)):
    try:
        job = await tracker.retry()
    except JobError as e:
        raise job_error_to_http(e)
    return {"job_id": job.job_id, "status": job.status.value}


@router.delete("/{kind}/job")
async def delete_job(tracker: JobTracker = Depends(get_tracker)):
    try:
        await tracker.delete()
    except JobError as e:
        raise job_error_to_http(e)
    return {"status": tracker.status.value}


@router.post("/{kind}/acknowledge")
async def acknowledge_job(tracker: JobTracker = Depends(get_tracker)):
    """Dismiss a finished job and return to idle ("start new")."""
    try:
        await tracker.acknowledge()
    except JobError as e:
        raise job_error_to_http(e)
    return {"status": tracker.status.value}


@router.get("/{kind}/results")
async def get_results(filter: str = "all", tracker: JobTracker = Depends(get_tracker)):
    if filter not in RESULT_FILTERS:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown filter '{filter}'. Valid: {list(RESULT_FILTERS)}",
        )
    try:
        results = await tracker.fetch_results(filter=filter)
    except JobError as e:
        raise job_error_to_http(e)
    return results.model_dump(exclude={"raw"})


@router.get("/{kind}/logs")
async def get_logs(limit: int = 200, tracker: JobTracker = Depends(get_tracker)):
    try:
        lines = await tracker.fetch_logs(limit=max(1, min(limit, 1000)))
    except JobError as e:
        raise job_error_to_http(e)
    return {"logs": lines}


@router.get("/{kind}/history")
async def get_history(status: Optional[str] = None, tracker: JobTracker = Depends(get_tracker)):
    jobs = await tracker.fetch_history(status=status)
    return {"jobs": jobs, "count": len(jobs)}


@router.delete("/session")
async def close_session(
    x_tab_id: str = Header(...),
    registry: TrackerRegistry = Depends(get_registry),
):
    """Tab closed or navigated away: stop its pollers."""
    removed = await registry.remove(x_tab_id)
    return {"unmounted": removed}
