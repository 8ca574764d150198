"""Selection and catalog API — what the next job will be submitted with."""

from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel
from typing import Any, Dict, List, Optional

from visionm.api.deps import get_tracker, job_error_to_http
from visionm.jobs.errors import JobError
from visionm.jobs.models import JobFile
from visionm.jobs.tracker import JobTracker

router = APIRouter()

# Max upload size per file: 500 MB
_MAX_FILE_BYTES = 500 * 1024 * 1024


class ProjectRequest(BaseModel):
    project_id: Optional[str] = None


class DatasetRequest(BaseModel):
    dataset_id: Optional[str] = None


class ModelRequest(BaseModel):
    model_config = {"protected_namespaces": ()}

    model_id: Optional[str] = None


class ConfidenceRequest(BaseModel):
    value: float


class ModeRequest(BaseModel):
    mode: str


class ModelTypeRequest(BaseModel):
    model_config = {"protected_namespaces": ()}

    model_type: str


class HyperparametersRequest(BaseModel):
    use_defaults: Optional[bool] = None
    values: Dict[str, Any] = {}


@router.get("/{kind}/catalog")
async def get_catalog(tracker: JobTracker = Depends(get_tracker)):
    """Refetch datasets/models for the selected project and reconcile."""
    await tracker.selection.refresh()
    return tracker.selection.to_dict()


@router.put("/{kind}/selection/project")
async def select_project(request: ProjectRequest, tracker: JobTracker = Depends(get_tracker)):
    try:
        await tracker.selection.set_project(request.project_id)
    except JobError as e:
        raise job_error_to_http(e)
    return tracker.snapshot()


@router.put("/{kind}/selection/dataset")
async def select_dataset(request: DatasetRequest, tracker: JobTracker = Depends(get_tracker)):
    try:
        tracker.selection.set_dataset(request.dataset_id)
    except JobError as e:
        raise job_error_to_http(e)
    return tracker.selection.to_dict()


@router.put("/{kind}/selection/model")
async def select_model(request: ModelRequest, tracker: JobTracker = Depends(get_tracker)):
    try:
        tracker.selection.set_model(request.model_id)
    except JobError as e:
        raise job_error_to_http(e)
    return tracker.selection.to_dict()


@router.put("/{kind}/selection/confidence")
async def select_confidence(request: ConfidenceRequest, tracker: JobTracker = Depends(get_tracker)):
    value = tracker.selection.set_confidence(request.value)
    return {"confidence_threshold": value}


@router.put("/{kind}/selection/mode")
async def select_mode(request: ModeRequest, tracker: JobTracker = Depends(get_tracker)):
    try:
        tracker.selection.set_inference_mode(request.mode)
    except JobError as e:
        raise job_error_to_http(e)
    return tracker.selection.to_dict()


@router.put("/{kind}/selection/model-type")
async def select_model_type(request: ModelTypeRequest, tracker: JobTracker = Depends(get_tracker)):
    try:
        defaults = await tracker.selection.set_model_type(request.model_type)
    except JobError as e:
        raise job_error_to_http(e)
    return {"model_type": request.model_type, "defaults": defaults.to_payload()}


@router.put("/{kind}/selection/hyperparameters")
async def select_hyperparameters(
    request: HyperparametersRequest, tracker: JobTracker = Depends(get_tracker)
):
    try:
        if request.use_defaults is not None:
            tracker.selection.set_use_defaults(request.use_defaults)
        if request.values:
            tracker.selection.set_hyperparameters(request.values)
    except JobError as e:
        raise job_error_to_http(e)
    return tracker.selection.to_dict()


@router.post("/{kind}/selection/files")
async def add_files(
    files: List[UploadFile] = File(...),
    tracker: JobTracker = Depends(get_tracker),
):
    """Attach images/videos for a custom-upload inference job."""
    attached = []
    oversized = []
    for upload in files:
        content = await upload.read(_MAX_FILE_BYTES + 1)
        if len(content) > _MAX_FILE_BYTES:
            oversized.append(upload.filename or "upload")
            continue
        attached.append(
            JobFile(
                filename=upload.filename or "upload",
                content=content,
                content_type=upload.content_type or "application/octet-stream",
            )
        )
    rejected = tracker.selection.add_files(attached)
    return {
        "files": [f.filename for f in tracker.selection.files],
        "rejected": rejected,
        "oversized": oversized,
    }


@router.delete("/{kind}/selection/files/{filename}")
async def remove_file(filename: str, tracker: JobTracker = Depends(get_tracker)):
    tracker.selection.remove_file(filename)
    return {"files": [f.filename for f in tracker.selection.files]}
