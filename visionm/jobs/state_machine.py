"""Job lifecycle transitions.

    idle --start--> queued --(poll: running)--> running --(poll: completed)--> completed
    queued/running --cancel--> cancelled
    queued/running --(poll: failed)--> failed
    completed/failed/cancelled --retry--> queued (new job id)
    completed/failed/cancelled --delete--> idle (record destroyed)

A poll may skip ahead (a fast job can go straight from queued to completed),
but nothing ever moves backwards, nothing leaves a terminal state on its own,
and idle never jumps to a terminal state.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet

from visionm.jobs.errors import InvalidTransitionError
from visionm.jobs.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Job,
    JobProgress,
    JobStatus,
    StatusReport,
)

logger = logging.getLogger(__name__)

# Statuses a server poll may move a job into, keyed by current status
_POLL_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({
        JobStatus.QUEUED,
        JobStatus.RUNNING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }),
    JobStatus.RUNNING: frozenset({
        JobStatus.RUNNING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }),
}


def can_start(status: JobStatus) -> bool:
    return status == JobStatus.IDLE


def can_cancel(status: JobStatus) -> bool:
    return status in ACTIVE_STATUSES


def can_retry(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_delete(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def ensure(allowed: bool, event: str, status: JobStatus) -> None:
    if not allowed:
        raise InvalidTransitionError(
            f"Cannot {event} a job that is {status.value}", operation=event
        )


def apply_report(job: Job, report: StatusReport) -> Job:
    """Merge a status report into ``job`` and return the updated copy.

    Reports that would move the job backwards (or out of a terminal state)
    are ignored. Progress never decreases while the job is running.
    """
    allowed = _POLL_TRANSITIONS.get(job.status, frozenset())
    if report.status not in allowed:
        logger.debug(
            "Ignoring %s -> %s for job %s", job.status.value, report.status.value, job.job_id
        )
        return job

    update: Dict[str, object] = {"status": report.status}

    if report.progress is not None:
        update["progress"] = _merge_progress(job.progress, report.progress, report.status)
    if report.status == JobStatus.COMPLETED:
        update["progress"] = _completed_progress(update.get("progress", job.progress))
        update["completed_at"] = datetime.utcnow()
        if report.metrics is not None:
            update["metrics"] = report.metrics
    elif report.status in TERMINAL_STATUSES:
        update["completed_at"] = datetime.utcnow()
    if report.logs is not None:
        update["logs"] = list(report.logs)

    return job.model_copy(update=update)


def _merge_progress(current: JobProgress, incoming: JobProgress, status: JobStatus) -> JobProgress:
    if status != JobStatus.RUNNING:
        return incoming
    return JobProgress(
        processed=max(current.processed, incoming.processed),
        total=max(current.total, incoming.total),
        percent=max(current.percent, incoming.percent),
    )


def _completed_progress(progress: JobProgress) -> JobProgress:
    total = progress.total or progress.processed
    return JobProgress(processed=max(progress.processed, total), total=total, percent=100.0)
