"""Job dispatcher interface: the lifecycle requests the tracker depends on."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from visionm.jobs.models import JobResults, JobStartPayload, JobStatus, StatusReport


class JobDispatcher(ABC):
    """Abstract interface to the remote job-processing service."""

    @abstractmethod
    async def start(self, payload: JobStartPayload) -> str:
        """Submit a job. Returns the server-assigned job_id."""
        ...

    @abstractmethod
    async def status(self, job_id: str) -> StatusReport:
        """Get the current normalized status of a job."""
        ...

    @abstractmethod
    async def cancel(self, job_id: str) -> JobStatus:
        """Cancel a queued or running job. Returns the resulting status."""
        ...

    @abstractmethod
    async def retry(self, job_id: str) -> str:
        """Re-run a finished job. Returns the new job_id."""
        ...

    @abstractmethod
    async def delete(self, job_id: str) -> None:
        """Destroy a finished job and its artifacts."""
        ...

    @abstractmethod
    async def results(self, job_id: str, filter: str = "all") -> JobResults:
        """Fetch the terminal artifact of a completed job."""
        ...

    async def logs(self, job_id: str, limit: int = 200) -> List[str]:
        """Fetch recent log lines. Not every job kind has logs."""
        return []

    async def history(self, scope: Dict[str, Any], status: Optional[str] = None) -> List[Dict[str, Any]]:
        """List past jobs in a project scope. Not every job kind keeps history."""
        return []

    async def close(self) -> None:
        """Release transport resources."""
        return None
