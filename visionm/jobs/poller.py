"""Status poller: one sequential status-check loop per tracked job.

The loop checks immediately on attach, then sleeps a fixed interval after
each check completes, so checks for a job never overlap however slow the
network is. It stops for good once a terminal status is seen.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set, Tuple

from visionm.jobs.dispatcher import JobDispatcher
from visionm.jobs.errors import JobError, RateLimitedError, StaleReferenceError
from visionm.jobs.models import TERMINAL_STATUSES, StatusReport

logger = logging.getLogger(__name__)

ReportHandler = Callable[[str, StatusReport], Awaitable[None]]
StaleHandler = Callable[[str, StaleReferenceError], Awaitable[None]]
ErrorHandler = Callable[[str, JobError], Awaitable[None]]


class Poller:
    """Owns at most one polling task.

    ``attach`` starts polling a job id (a no-op if that id is already being
    polled), ``detach`` stops it and waits for the task to unwind. Any
    status check still in flight when ``detach`` runs is cancelled, and a
    result that arrives for a superseded attachment is dropped.
    """

    def __init__(
        self,
        dispatcher: JobDispatcher,
        interval: float,
        on_report: ReportHandler,
        on_stale: StaleHandler,
        on_error: ErrorHandler,
        max_backoff: float = 30.0,
    ):
        self._dispatcher = dispatcher
        self._interval = interval
        self._max_backoff = max(max_backoff, interval)
        self._on_report = on_report
        self._on_stale = on_stale
        self._on_error = on_error
        self._task: Optional[asyncio.Task] = None
        self._job_id: Optional[str] = None
        self._generation = 0
        self._finished: Set[str] = set()

    @property
    def job_id(self) -> Optional[str]:
        return self._job_id if self.active else None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def attach(self, job_id: str) -> bool:
        """Start polling ``job_id``. Returns False if nothing was started."""
        if self.active and self._job_id == job_id:
            return False
        if job_id in self._finished:
            logger.debug("Job %s already reached a terminal status; not polling", job_id)
            return False
        self._stop_task()
        self._generation += 1
        self._job_id = job_id
        self._task = asyncio.create_task(
            self._run(job_id, self._generation), name=f"poll-{job_id}"
        )
        logger.debug("Polling job %s every %.1fs", job_id, self._interval)
        return True

    async def detach(self) -> None:
        """Stop polling and wait for the loop to finish unwinding."""
        task = self._stop_task()
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _stop_task(self) -> Optional[asyncio.Task]:
        self._generation += 1
        task, self._task = self._task, None
        self._job_id = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return task

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _backoff(self, failures: int, exc: JobError) -> float:
        delay = min(self._interval * (2 ** failures), self._max_backoff)
        if isinstance(exc, RateLimitedError) and exc.retry_after:
            delay = max(delay, exc.retry_after)
        return delay

    async def _run(self, job_id: str, generation: int) -> None:
        failures = 0
        last_error: Optional[Tuple[str, Optional[int], str]] = None

        while self._is_current(generation):
            try:
                report = await self._dispatcher.status(job_id)
            except StaleReferenceError as exc:
                if self._is_current(generation):
                    logger.info("Job %s no longer exists server-side; stopping", job_id)
                    self._finished.add(job_id)
                    await self._on_stale(job_id, exc)
                return
            except JobError as exc:
                if not self._is_current(generation):
                    return
                failures += 1
                key = (exc.category, exc.status_code, exc.detail)
                if key != last_error:
                    logger.warning("Status check for job %s failed: %s", job_id, exc.detail)
                    last_error = key
                    await self._on_error(job_id, exc)
                else:
                    logger.debug("Status check for job %s failed again: %s", job_id, exc.detail)
                delay = self._backoff(failures, exc)
            else:
                if not self._is_current(generation):
                    return
                failures = 0
                last_error = None
                terminal = report.status in TERMINAL_STATUSES
                if terminal:
                    self._finished.add(job_id)
                await self._on_report(job_id, report)
                if terminal:
                    logger.info("Job %s reached %s; polling stopped", job_id, report.status.value)
                    return
                delay = self._interval

            await asyncio.sleep(delay)
