"""Results fetcher — retrieves the terminal artifact of a completed job."""

import logging

from visionm.jobs.dispatcher import JobDispatcher
from visionm.jobs.errors import InvalidTransitionError, ResultsUnavailableError
from visionm.jobs.models import Job, JobKind, JobResults, JobStatus

logger = logging.getLogger(__name__)

RESULT_FILTERS = ("all", "good", "defect")


class ResultsFetcher:
    """Fetches results only for completed jobs; never mutates server state.

    Re-fetching the same job id simply returns a fresh copy of the same
    artifact, so callers may retry freely after a ``ResultsUnavailableError``.
    Training jobs have no results endpoint: their artifact is the final
    metrics the completing status check already carried, so no request is made.
    """

    def __init__(self, dispatcher: JobDispatcher, kind: JobKind):
        self._dispatcher = dispatcher
        self._kind = kind
        self.fetch_count = 0

    async def fetch(self, job: Job, filter: str = "all") -> JobResults:
        if job.status != JobStatus.COMPLETED:
            raise InvalidTransitionError(
                f"Results are only available for completed jobs (job is {job.status.value})",
                operation="results",
            )
        if filter not in RESULT_FILTERS:
            filter = "all"

        self.fetch_count += 1
        if self._kind == JobKind.TRAINING:
            if not job.metrics:
                raise ResultsUnavailableError(
                    f"No final metrics reported for job {job.job_id}", operation="results"
                )
            return JobResults(job_id=job.job_id, metrics=job.metrics)

        results = await self._dispatcher.results(job.job_id, filter=filter)
        logger.info("Fetched results for job %s (filter=%s)", job.job_id, filter)
        return results
