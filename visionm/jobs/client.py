"""HTTP client for the job-processing API.

Contract:
- All methods are async (httpx.AsyncClient)
- All failures are raised as ``JobError`` subclasses from ``visionm.jobs.errors``
- Response bodies are normalized before they leave this module
- Selection problems are caught here and never sent to the server
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from visionm.config import settings
from visionm.jobs.dispatcher import JobDispatcher
from visionm.jobs.errors import (
    InvalidTransitionError,
    SelectionValidationError,
    TransientJobError,
    classify_response,
)
from visionm.jobs.models import (
    InferenceMode,
    JobKind,
    JobResults,
    JobStartPayload,
    JobStatus,
    StatusReport,
)
from visionm.jobs.normalize import (
    extract_job_id,
    normalize_results,
    normalize_status,
    parse_status,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobEndpoints:
    """Path templates for one job kind. ``{id}`` is the URL-quoted job id."""
    start: str
    status: str
    cancel: str
    retry: str
    delete: str
    results: Optional[str] = None
    logs: Optional[str] = None
    history: Optional[str] = None


ENDPOINTS: Dict[JobKind, JobEndpoints] = {
    JobKind.TRAINING: JobEndpoints(
        start="/train",
        status="/train/{id}/status",
        cancel="/train/{id}/cancel",
        retry="/train/{id}/retry",
        delete="/train/{id}",
        logs="/train/{id}/logs",
    ),
    JobKind.INFERENCE: JobEndpoints(
        start="/inference/start",
        status="/inference/{id}/status",
        cancel="/inference/{id}/cancel",
        retry="/inference/{id}/retry",
        delete="/inference/{id}",
        results="/inference/{id}/results",
        history="/inference",
    ),
}


class JobClient(JobDispatcher):
    """Talks to one job kind's endpoints on the job-processing API."""

    def __init__(
        self,
        kind: JobKind,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.kind = kind
        self.endpoints = ENDPOINTS[kind]
        self.base_url = (base_url or settings.job_api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.job_api_timeout_seconds
        self._access_token = access_token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()

    def set_access_token(self, token: Optional[str]) -> None:
        self._access_token = token

    def _headers(self) -> Dict[str, str]:
        if self._access_token:
            return {"Authorization": f"Bearer {self._access_token}"}
        return {}

    def _path(self, template: str, job_id: str) -> str:
        return template.format(id=quote(job_id, safe=""))

    async def _get_client(self) -> httpx.AsyncClient:
        async with self._lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=self.timeout,
                    follow_redirects=True,
                    transport=self._transport,
                )
            return self._client

    async def close(self) -> None:
        async with self._lock:
            if self._client:
                await self._client.aclose()
                self._client = None

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> Any:
        """Issue a request and return the parsed JSON body.

        Raises the classified ``JobError`` for any non-2xx status, and
        ``TransientJobError`` for network failures and non-JSON bodies.
        """
        client = await self._get_client()
        try:
            response = await client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientJobError(f"{operation} timed out", operation=operation) from exc
        except httpx.RequestError as exc:
            raise TransientJobError(f"{operation} request failed: {exc}", operation=operation) from exc

        body = _parse_body(response)
        if response.is_success:
            if response.status_code == 204:
                return {}
            if body is None or isinstance(body, str):
                raise TransientJobError(
                    f"{operation} returned a non-JSON response",
                    status_code=response.status_code,
                    operation=operation,
                )
            return body

        raise classify_response(response.status_code, body, response.headers, operation)

    async def get_json(self, path: str, operation: str, **kwargs) -> Any:
        """Generic GET with JSON response, for catalog reads on the same API."""
        return await self._request("GET", path, operation, **kwargs)

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self, payload: JobStartPayload) -> str:
        """POST the start endpoint. Returns the new job id (initially queued)."""
        if not payload.model_id:
            raise SelectionValidationError("Please select a model before starting.", operation="start")

        mode = payload.input_mode
        if mode is None:
            if payload.dataset_id and payload.files:
                raise SelectionValidationError(
                    "Choose either a dataset or uploaded files, not both.", operation="start"
                )
            raise SelectionValidationError(
                "Select a dataset or add at least one file before starting.", operation="start"
            )
        if mode == InferenceMode.CUSTOM and self.kind == JobKind.TRAINING:
            raise SelectionValidationError("Training requires a dataset.", operation="start")

        if mode == InferenceMode.DATASET:
            body = await self._request(
                "POST", self.endpoints.start, "start", json=payload.to_json_body(self.kind)
            )
        else:
            data = {"modelId": payload.model_id}
            if payload.confidence_threshold is not None:
                data["confidenceThreshold"] = str(payload.confidence_threshold)
            if payload.project_id:
                data["projectId"] = payload.project_id
            files = [
                ("images", (f.filename, f.content, f.content_type)) for f in payload.files
            ]
            body = await self._request("POST", self.endpoints.start, "start", data=data, files=files)

        job_id = extract_job_id(body)
        if not job_id:
            raise TransientJobError("Server did not return a job id", operation="start")
        logger.info("Started %s job %s", self.kind.value, job_id)
        return job_id

    async def status(self, job_id: str) -> StatusReport:
        body = await self._request("GET", self._path(self.endpoints.status, job_id), "status")
        return normalize_status(body)

    async def cancel(self, job_id: str) -> JobStatus:
        body = await self._request("POST", self._path(self.endpoints.cancel, job_id), "cancel")
        raw = body.get("status") if isinstance(body, dict) else None
        if raw is None:
            return JobStatus.CANCELLED
        try:
            return parse_status(raw)
        except TransientJobError:
            return JobStatus.CANCELLED

    async def retry(self, job_id: str) -> str:
        body = await self._request("POST", self._path(self.endpoints.retry, job_id), "retry")
        new_id = extract_job_id(body)
        if not new_id:
            raise TransientJobError("No new job id returned from retry", operation="retry")
        logger.info("Retried %s job %s as %s", self.kind.value, job_id, new_id)
        return new_id

    async def delete(self, job_id: str) -> None:
        await self._request("DELETE", self._path(self.endpoints.delete, job_id), "delete")
        logger.info("Deleted %s job %s", self.kind.value, job_id)

    async def results(self, job_id: str, filter: str = "all") -> JobResults:
        if self.endpoints.results is None:
            # Training artifacts are the final metrics on the completing status body
            raise InvalidTransitionError(
                f"{self.kind.value.capitalize()} jobs have no results endpoint", operation="results"
            )
        body = await self._request(
            "GET",
            self._path(self.endpoints.results, job_id),
            "results",
            params={"filter": filter},
        )
        return normalize_results(body, job_id, self.base_url)

    # -----------------------------------------------------------------
    # Auxiliary reads
    # -----------------------------------------------------------------

    async def logs(self, job_id: str, limit: int = 200) -> List[str]:
        if self.endpoints.logs is None:
            return []
        body = await self._request(
            "GET", self._path(self.endpoints.logs, job_id), "logs", params={"limit": limit}
        )
        lines = body.get("logs") if isinstance(body, dict) else body
        return [str(line) for line in lines] if isinstance(lines, list) else []

    async def history(self, scope: Dict[str, Any], status: Optional[str] = None) -> List[Dict[str, Any]]:
        if self.endpoints.history is None:
            return []
        params = {k: v for k, v in scope.items() if v}
        if status and status != "all":
            params["status"] = status
        body = await self._request("GET", self.endpoints.history, "history", params=params)
        jobs = body.get("inferenceJobs") if isinstance(body, dict) else None
        return [j for j in jobs if isinstance(j, dict)] if isinstance(jobs, list) else []


def _parse_body(response: httpx.Response) -> Any:
    """Parse JSON when the server says it is JSON; otherwise return the text."""
    content_type = response.headers.get("content-type", "")
    if not response.content:
        return None
    if "application/json" in content_type:
        try:
            return response.json()
        except ValueError:
            return None
    return response.text
