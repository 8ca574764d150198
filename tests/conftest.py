"""
Shared test fixtures for the job console test suite.

Provides: scripted job dispatcher, in-memory catalog fetcher, recovery stores
Dependencies: pytest, pytest-asyncio
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from visionm.catalog.models import Catalog, CatalogEntry, Hyperparameters, Project
from visionm.jobs.dispatcher import JobDispatcher
from visionm.jobs.models import (
    JobKind,
    JobProgress,
    JobResults,
    JobStartPayload,
    JobStatus,
    StatusReport,
)
from visionm.jobs.tracker import STORAGE_NAMESPACES, JobTracker
from visionm.storage.recovery_store import MemoryBackend, RecoveryStore


def report(status: JobStatus, percent: Optional[float] = None, processed: int = 0, total: int = 0,
           **extra: Any) -> StatusReport:
    progress = None
    if percent is not None:
        progress = JobProgress(processed=processed, total=total, percent=percent)
    return StatusReport(status=status, progress=progress, **extra)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


class FakeDispatcher(JobDispatcher):
    """Scripted dispatcher.

    ``statuses`` is consumed front to back; the last entry repeats. An entry
    that is an exception is raised instead of returned.
    """

    def __init__(self):
        self.statuses: List[Any] = []
        self.status_delay = 0.0
        self.start_gate: Optional[asyncio.Event] = None
        self.start_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.results_error: Optional[Exception] = None
        self.next_job_ids = ["J1", "J2", "J3"]
        self.payloads: List[JobStartPayload] = []
        self.status_calls = 0
        self.results_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.cancelled: List[str] = []
        self.deleted: List[str] = []
        self.retried: List[str] = []
        self.log_lines: List[str] = ["epoch 1/10"]

    async def start(self, payload: JobStartPayload) -> str:
        self.payloads.append(payload)
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.start_error is not None:
            raise self.start_error
        return self.next_job_ids.pop(0)

    async def status(self, job_id: str) -> StatusReport:
        self.status_calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.status_delay:
                await asyncio.sleep(self.status_delay)
            if not self.statuses:
                return report(JobStatus.RUNNING)
            item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            if isinstance(item, Exception):
                raise item
            return item
        finally:
            self.in_flight -= 1

    async def cancel(self, job_id: str) -> JobStatus:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(job_id)
        return JobStatus.CANCELLED

    async def retry(self, job_id: str) -> str:
        self.retried.append(job_id)
        return self.next_job_ids.pop(0)

    async def delete(self, job_id: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(job_id)

    async def results(self, job_id: str, filter: str = "all") -> JobResults:
        self.results_calls += 1
        if self.results_error is not None:
            raise self.results_error
        return JobResults(job_id=job_id, total_detections=3, average_confidence=0.8)

    async def logs(self, job_id: str, limit: int = 200) -> List[str]:
        return list(self.log_lines)[:limit]


class FakeCatalogFetcher:
    """In-memory stand-in for ``CatalogFetcher``."""

    def __init__(self):
        self.company_name: Optional[str] = "Acme"
        self.projects = [Project(id="P1", name="Line A"), Project(id="P2", name="Line B")]
        self.datasets: Dict[str, List[str]] = {"P1": ["D1", "D2"], "P2": ["D9"]}
        self.models: Dict[str, List[str]] = {"P1": ["M1", "M2"], "P2": ["M9"]}
        self.datasets_known = True
        self.models_known = True
        self.fetch_calls = 0

    async def fetch_projects(self, company_id: Optional[str]) -> List[Project]:
        return list(self.projects) if company_id else []

    async def fetch(self, project: Optional[Project]) -> Catalog:
        self.fetch_calls += 1
        if project is None:
            return Catalog(project_id=None)
        return Catalog(
            project_id=project.id,
            datasets=[CatalogEntry(id=d, name=d) for d in self.datasets.get(project.id, [])],
            models=[CatalogEntry(id=m, name=m) for m in self.models.get(project.id, [])],
            datasets_known=self.datasets_known,
            models_known=self.models_known,
        )

    async def fetch_defaults(self, model_type: str) -> Hyperparameters:
        return Hyperparameters(epochs=50)


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def fetcher():
    return FakeCatalogFetcher()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def make_tracker(dispatcher, fetcher, backend):
    """Build trackers that share one tab's backend, as a page reload would."""
    def _make(kind: JobKind = JobKind.INFERENCE, disp: Optional[JobDispatcher] = None) -> JobTracker:
        store = RecoveryStore(backend, STORAGE_NAMESPACES[kind])
        tracker = JobTracker(
            kind,
            disp or dispatcher,
            fetcher,
            store,
            poll_interval=0.01,
            max_backoff=0.04,
        )
        return tracker

    return _make
