"""Job tracker — drives one flow (training or inference) for one browser tab.

The tracker is what a mounted dashboard view talks to. It owns exactly one
poller, mirrors every job transition into the recovery store, and on mount
re-attaches to a job recorded there instead of submitting a new one.

Lifecycle errors are turned into notices once per occurrence; none of them
leaves the tracker in an undefined state.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from visionm.catalog.fetcher import CatalogFetcher
from visionm.config import settings
from visionm.jobs import state_machine
from visionm.jobs.dispatcher import JobDispatcher
from visionm.jobs.errors import (
    CancelFirstError,
    JobError,
    PolicyRejectedError,
    RateLimitedError,
    ResultsUnavailableError,
    SelectionValidationError,
    StaleReferenceError,
)
from visionm.jobs.models import (
    TERMINAL_STATUSES,
    Job,
    JobKind,
    JobProgress,
    JobResults,
    JobStatus,
    StatusReport,
)
from visionm.jobs.poller import Poller
from visionm.jobs.results import ResultsFetcher
from visionm.selection.context import SelectionContext
from visionm.storage.recovery_store import JOB_KEYS, RecoveryStore

logger = logging.getLogger(__name__)

STORAGE_NAMESPACES = {
    JobKind.TRAINING: "training",
    JobKind.INFERENCE: "prediction",
}


class Notice(BaseModel):
    """A user-facing message produced by the tracker."""
    level: str
    title: str
    message: str
    category: Optional[str] = None
    job_id: Optional[str] = None
    retry_after: Optional[float] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class JobTracker:
    def __init__(
        self,
        kind: JobKind,
        dispatcher: JobDispatcher,
        catalog_fetcher: CatalogFetcher,
        store: RecoveryStore,
        poll_interval: Optional[float] = None,
        max_backoff: Optional[float] = None,
    ):
        self.kind = kind
        self._dispatcher = dispatcher
        self._store = store
        self._job_writer = store.writer(JOB_KEYS)

        if poll_interval is None:
            poll_interval = (
                settings.training_poll_interval_seconds
                if kind == JobKind.TRAINING
                else settings.inference_poll_interval_seconds
            )
        self._poller = Poller(
            dispatcher,
            interval=poll_interval,
            on_report=self._on_report,
            on_stale=self._on_stale,
            on_error=self._on_poll_error,
            max_backoff=max_backoff if max_backoff is not None else settings.poll_max_backoff_seconds,
        )
        self._results = ResultsFetcher(dispatcher, kind)
        self.selection = SelectionContext(
            kind,
            catalog_fetcher,
            store,
            is_idle=lambda: self.status == JobStatus.IDLE,
            on_project_change=self._drop_job,
        )

        self.job: Optional[Job] = None
        self.results: Optional[JobResults] = None
        self.notices: Deque[Notice] = deque(maxlen=50)
        self.history: List[Dict[str, Any]] = []
        self._mounted = False
        self._lock = asyncio.Lock()
        self._logs_task: Optional[asyncio.Task] = None

    # -----------------------------------------------------------------
    # State
    # -----------------------------------------------------------------

    @property
    def status(self) -> JobStatus:
        return self.job.status if self.job else JobStatus.IDLE

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def polling(self) -> bool:
        return self._poller.active

    @property
    def results_fetch_count(self) -> int:
        return self._results.fetch_count

    def snapshot(self) -> Dict[str, Any]:
        job = self.job
        return {
            "kind": self.kind.value,
            "status": self.status.value,
            "job_id": job.job_id if job else None,
            "progress": (job.progress if job else JobProgress()).model_dump(),
            "metrics": job.metrics if job else None,
            "logs": list(job.logs) if job else [],
            "polling": self.polling,
            "selection": self.selection.to_dict(),
            "results": self.results.model_dump(exclude={"raw"}) if self.results else None,
            "notices": [n.model_dump(mode="json") for n in self.notices],
        }

    def drain_notices(self) -> List[Notice]:
        notices = list(self.notices)
        self.notices.clear()
        return notices

    def _notify(self, level: str, title: str, message: str, **extra: Any) -> None:
        self.notices.append(Notice(level=level, title=title, message=message, **extra))

    def _notify_error(self, exc: JobError) -> None:
        level = "warning" if isinstance(exc, (ResultsUnavailableError, RateLimitedError)) else "error"
        self._notify(
            level,
            exc.title,
            exc.user_message,
            category=exc.category,
            job_id=self.job.job_id if self.job else None,
            retry_after=getattr(exc, "retry_after", None),
        )

    def _persist_job(self) -> None:
        job = self.job
        if job is None or job.job_id is None:
            self._job_writer.remove(*JOB_KEYS)
            return
        self._job_writer.save("jobId", job.job_id)
        self._job_writer.save("status", job.status.value)
        self._job_writer.save("progress", job.progress.model_dump())

    def _reset_store(self) -> None:
        """Full reset of the namespace; the live selection is then re-mirrored."""
        self._store.clear()
        self.selection.persist_all()

    # -----------------------------------------------------------------
    # Mount / unmount
    # -----------------------------------------------------------------

    async def mount(self, company_id: Optional[str] = None) -> Dict[str, Any]:
        """Restore persisted state and resume tracking. Idempotent."""
        if self._mounted:
            return self.snapshot()
        self._mounted = True

        record = self._store.snapshot()
        self.selection.restore(record)

        if record.job_id:
            status = record.status or JobStatus.QUEUED
            if status == JobStatus.IDLE:
                status = JobStatus.QUEUED
            self.job = Job(
                job_id=record.job_id,
                kind=self.kind,
                status=status,
                progress=record.progress,
            )
            logger.info("Resuming %s job %s (%s)", self.kind.value, record.job_id, status.value)
            if status in TERMINAL_STATUSES:
                # Training metrics only arrive on a live completing poll
                if status == JobStatus.COMPLETED and self.kind == JobKind.INFERENCE:
                    await self._fetch_results_quietly()
            else:
                self._poller.attach(record.job_id)

        # Catalog mismatches only drop selection fields; the job above is unaffected
        await self.selection.load_projects(company_id)
        await self.selection.refresh()
        return self.snapshot()

    async def unmount(self) -> None:
        """Stop polling and abandon pending requests. Persisted state is kept."""
        self._mounted = False
        await self._poller.detach()
        if self._logs_task is not None and not self._logs_task.done():
            self._logs_task.cancel()
        self._logs_task = None

    # -----------------------------------------------------------------
    # Lifecycle operations
    # -----------------------------------------------------------------

    async def start(self) -> Job:
        """Submit a new job from the current selection.

        Rejected without a request while another job is tracked.
        """
        if not state_machine.can_start(self.status):
            exc = PolicyRejectedError("A job is already in progress", operation="start")
            self._notify_error(exc)
            raise exc

        try:
            payload = self.selection.build_payload()
        except SelectionValidationError as exc:
            self._notify_error(exc)
            raise

        # Optimistic queued state so a second start() is refused while this one is in flight
        placeholder = Job(kind=self.kind, status=JobStatus.QUEUED)
        self.job = placeholder
        self.results = None
        try:
            job_id = await self._dispatcher.start(payload)
        except (SelectionValidationError, RateLimitedError) as exc:
            if self.job is placeholder:
                self.job = None
            logger.info("Start rejected: %s", exc.detail)
            self._notify_error(exc)
            raise
        except JobError as exc:
            if self.job is placeholder:
                self.job = placeholder.model_copy(
                    update={"status": JobStatus.FAILED, "completed_at": datetime.utcnow()}
                )
            logger.warning("Start failed: %s", exc.detail)
            self._notify_error(exc)
            raise

        if self.job is not placeholder:
            # The selection changed (or the view reset) while the request was in flight
            logger.info("Not tracking job %s; selection changed while it was being submitted", job_id)
            exc = PolicyRejectedError("The selection changed before the job was accepted", operation="start")
            self._notify_error(exc)
            raise exc

        self.job = Job(job_id=job_id, kind=self.kind, status=JobStatus.QUEUED)
        self._persist_job()
        self._notify("info", "Job started", f"{self.kind.value.capitalize()} job has been queued.", job_id=job_id)
        self._poller.attach(job_id)
        return self.job

    async def cancel(self) -> Job:
        async with self._lock:
            job = self.job
            try:
                state_machine.ensure(
                    job is not None and job.job_id is not None and state_machine.can_cancel(self.status),
                    "cancel",
                    self.status,
                )
            except PolicyRejectedError as exc:
                self._notify_error(exc)
                raise

            # Stop polling first so no in-flight status can land after the cancel
            await self._poller.detach()
            try:
                new_status = await self._dispatcher.cancel(job.job_id)
            except StaleReferenceError as exc:
                self._notify_error(exc)
                await self._forget_job()
                raise
            except JobError as exc:
                if isinstance(exc, PolicyRejectedError):
                    logger.info("Cancel of %s refused: %s", job.job_id, exc.detail)
                else:
                    logger.warning("Cancel of %s failed: %s", job.job_id, exc.detail)
                self._notify_error(exc)
                # Job is still live server-side; keep tracking it
                self._poller.attach(job.job_id)
                raise

            if new_status not in TERMINAL_STATUSES:
                new_status = JobStatus.CANCELLED
            self.job = job.model_copy(update={"status": new_status, "completed_at": datetime.utcnow()})
            self._job_writer.remove(*JOB_KEYS)
            self._notify("info", "Cancelled", f"{self.kind.value.capitalize()} job cancelled.", job_id=job.job_id)
            return self.job

    async def retry(self) -> Job:
        async with self._lock:
            job = self.job
            try:
                state_machine.ensure(
                    job is not None and job.job_id is not None and state_machine.can_retry(self.status),
                    "retry",
                    self.status,
                )
            except PolicyRejectedError as exc:
                self._notify_error(exc)
                raise

            try:
                new_id = await self._dispatcher.retry(job.job_id)
            except StaleReferenceError as exc:
                self._notify_error(exc)
                await self._forget_job()
                raise
            except JobError as exc:
                self._notify_error(exc)
                raise

            self.results = None
            self.job = Job(job_id=new_id, kind=self.kind, status=JobStatus.QUEUED)
            self._persist_job()
            self._notify("info", "Retry started", f"New job {new_id} started", job_id=new_id)
            self._poller.attach(new_id)
            return self.job

    async def delete(self) -> None:
        async with self._lock:
            job = self.job
            if job is None or job.job_id is None:
                exc = PolicyRejectedError("There is no job to delete", operation="delete")
                self._notify_error(exc)
                raise exc
            if not state_machine.can_delete(job.status):
                exc = CancelFirstError("Job is still active", status_code=400, operation="delete")
                self._notify_error(exc)
                raise exc

            try:
                await self._dispatcher.delete(job.job_id)
            except StaleReferenceError as exc:
                self._notify("warning", "Not found", "The job was not found. It may have already been deleted.",
                             category=exc.category, job_id=job.job_id)
                await self._forget_job()
                return
            except JobError as exc:
                self._notify_error(exc)
                raise

            await self._forget_job()
            self._notify("info", "Deleted", "Job and results deleted.", job_id=job.job_id)

    async def acknowledge(self) -> None:
        """Dismiss a finished job ("start new"); returns the view to idle."""
        async with self._lock:
            if self.job is not None and self.job.is_active:
                exc = PolicyRejectedError("Cancel the running job before starting a new one",
                                          operation="acknowledge")
                self._notify_error(exc)
                raise exc
            await self._forget_job()

    async def _forget_job(self) -> None:
        await self._poller.detach()
        self.job = None
        self.results = None
        self._reset_store()

    async def _drop_job(self) -> None:
        """Project changed: the tracked job belongs to the old project."""
        await self._poller.detach()
        self.job = None
        self.results = None
        self._job_writer.remove(*JOB_KEYS)

    # -----------------------------------------------------------------
    # Poller callbacks
    # -----------------------------------------------------------------

    async def _on_report(self, job_id: str, report: StatusReport) -> None:
        job = self.job
        if job is None or job.job_id != job_id:
            logger.debug("Dropping status for superseded job %s", job_id)
            return

        updated = state_machine.apply_report(job, report)
        previous = job.status
        self.job = updated

        if updated.status in (JobStatus.FAILED, JobStatus.CANCELLED):
            # Nothing left to resume after a reload
            self._job_writer.remove(*JOB_KEYS)
            if previous != updated.status and updated.status == JobStatus.FAILED:
                self._notify("error", "Job failed", report.error or "The job failed.",
                             category="job_failed", job_id=job_id)
            return

        self._persist_job()
        if updated.status == JobStatus.COMPLETED and previous != JobStatus.COMPLETED:
            self._notify("info", "Job completed", f"{self.kind.value.capitalize()} job finished.", job_id=job_id)
            await self._fetch_results_quietly()

    async def _on_stale(self, job_id: str, exc: StaleReferenceError) -> None:
        if self.job is None or self.job.job_id != job_id:
            return
        self._notify("warning", "Job not found", "The job no longer exists on the server.",
                     category=exc.category, job_id=job_id)
        self.job = None
        self.results = None
        self._reset_store()

    async def _on_poll_error(self, job_id: str, exc: JobError) -> None:
        if self.job is not None and self.job.job_id == job_id:
            self._notify_error(exc)

    # -----------------------------------------------------------------
    # Results, logs, history
    # -----------------------------------------------------------------

    async def _fetch_results_quietly(self) -> None:
        try:
            await self.fetch_results()
        except JobError:
            # Already surfaced as a notice; the job itself stays completed
            pass

    async def fetch_results(self, filter: str = "all") -> JobResults:
        job = self.job
        if job is None:
            exc = PolicyRejectedError("There is no job to show results for", operation="results")
            self._notify_error(exc)
            raise exc
        try:
            results = await self._results.fetch(job, filter=filter)
        except JobError as exc:
            self._notify_error(exc)
            raise
        if self.job is not None and self.job.job_id == job.job_id:
            self.results = results
            if results.metrics and not self.job.metrics:
                self.job = self.job.model_copy(update={"metrics": results.metrics})
        return results

    async def fetch_logs(self, limit: int = 200) -> List[str]:
        """Fetch recent log lines; a newer call supersedes a pending one."""
        job = self.job
        if job is None or job.job_id is None:
            return []
        if self._logs_task is not None and not self._logs_task.done():
            self._logs_task.cancel()
        task = asyncio.create_task(self._dispatcher.logs(job.job_id, limit=limit))
        self._logs_task = task
        try:
            lines = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # Superseded by a newer request
            return []
        except JobError as exc:
            self._notify_error(exc)
            raise
        finally:
            if self._logs_task is task:
                self._logs_task = None
        if self.job is not None and self.job.job_id == job.job_id:
            self.job = self.job.model_copy(update={"logs": lines})
        return lines

    async def fetch_history(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        project = self.selection.project
        if project is None:
            self.history = []
            return self.history
        try:
            self.history = await self._dispatcher.history(self.selection.scope(), status=status)
        except JobError as exc:
            logger.warning("Failed to fetch job history: %s", exc.detail)
            self.history = []
        return self.history
