"""Job data model shared by the training and inference flows."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING})


class JobKind(str, Enum):
    TRAINING = "training"
    INFERENCE = "inference"


class InferenceMode(str, Enum):
    DATASET = "dataset"
    CUSTOM = "custom"


class JobProgress(BaseModel):
    """Canonical progress shape; every server variant is normalized into this."""
    processed: int = 0
    total: int = 0
    percent: float = Field(default=0.0, ge=0.0, le=100.0)


class Job(BaseModel):
    """Client-side view of a server-tracked job."""
    job_id: Optional[str] = None  # None until the server has assigned one
    kind: JobKind
    status: JobStatus = JobStatus.QUEUED
    progress: JobProgress = Field(default_factory=JobProgress)
    metrics: Optional[Dict[str, Any]] = None
    logs: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class StatusReport(BaseModel):
    """One normalized status-check response."""
    status: JobStatus
    progress: Optional[JobProgress] = None
    metrics: Optional[Dict[str, Any]] = None
    logs: Optional[List[str]] = None
    error: Optional[str] = None


class JobFile(BaseModel):
    """A file attached to a custom-upload inference job."""
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class JobStartPayload(BaseModel):
    """Everything needed to submit a job.

    Exactly one input mode is allowed: ``dataset_id`` (dataset mode) or
    ``files`` (custom-upload mode).
    """
    model_config = {"protected_namespaces": ()}

    model_id: str
    dataset_id: Optional[str] = None
    files: List[JobFile] = Field(default_factory=list)
    project_id: Optional[str] = None
    hyperparameters: Optional[Dict[str, Any]] = None
    confidence_threshold: Optional[float] = None
    model_type: Optional[str] = None
    model_size: Optional[str] = None

    @property
    def input_mode(self) -> Optional[InferenceMode]:
        if self.dataset_id and not self.files:
            return InferenceMode.DATASET
        if self.files and not self.dataset_id:
            return InferenceMode.CUSTOM
        return None

    def to_json_body(self, kind: JobKind) -> Dict[str, Any]:
        """JSON body for dataset-mode submissions."""
        body: Dict[str, Any] = {"modelId": self.model_id, "datasetId": self.dataset_id}
        if self.project_id:
            body["projectId"] = self.project_id
        if kind == JobKind.TRAINING:
            if self.model_type:
                body["modelType"] = self.model_type
            if self.model_size:
                body["modelSize"] = self.model_size
            if self.hyperparameters:
                body["hyperparameters"] = self.hyperparameters
        elif self.confidence_threshold is not None:
            body["confidenceThreshold"] = self.confidence_threshold
        return body


class JobResults(BaseModel):
    """Terminal artifact of a completed job."""
    job_id: str
    total_detections: int = 0
    average_confidence: float = 0.0
    detections_by_class: List[Dict[str, Any]] = Field(default_factory=list)
    annotated_images: List[Dict[str, Any]] = Field(default_factory=list)
    videos: List[Dict[str, Any]] = Field(default_factory=list)
    statistics: Dict[str, Any] = Field(default_factory=dict)
    metadata: Optional[Dict[str, Any]] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    raw: Dict[str, Any] = Field(default_factory=dict)
