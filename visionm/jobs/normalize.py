"""Normalize the job API's heterogeneous response shapes.

The status endpoint has shipped several layouts over time:

  {"progress": {"processedImages": 5, "totalImages": 20, "progressPercent": 25}}
  {"progress": {"currentEpoch": 3, "totalEpochs": 10}}
  {"progress": 25, "processedImages": 5, "totalImages": 20}

Everything collapses into ``JobProgress`` here so the state machine only ever
sees one shape.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

from visionm.jobs.errors import TransientJobError
from visionm.jobs.models import JobProgress, JobResults, JobStatus, StatusReport

_STATUS_ALIASES = {
    "pending": JobStatus.QUEUED,
    "queued": JobStatus.QUEUED,
    "running": JobStatus.RUNNING,
    "processing": JobStatus.RUNNING,
    "in_progress": JobStatus.RUNNING,
    "completed": JobStatus.COMPLETED,
    "succeeded": JobStatus.COMPLETED,
    "success": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
    "error": JobStatus.FAILED,
    "cancelled": JobStatus.CANCELLED,
    "canceled": JobStatus.CANCELLED,
}

_JOB_ID_KEYS = ("jobId", "job_id", "inferenceId", "id", "_id")


def parse_status(raw: Any) -> JobStatus:
    status = _STATUS_ALIASES.get(str(raw).strip().lower()) if raw is not None else None
    if status is None:
        raise TransientJobError(f"Unrecognized job status: {raw!r}", operation="status")
    return status


def extract_job_id(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    for key in _JOB_ID_KEYS:
        value = body.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


def normalize_progress(body: Dict[str, Any]) -> Optional[JobProgress]:
    """Collapse nested, epoch-based, numeric, and flat progress fields."""
    raw = body.get("progress")
    processed: Optional[int] = None
    total: Optional[int] = None
    percent: Optional[float] = None

    if isinstance(raw, dict):
        processed = _as_int(raw.get("processedImages", raw.get("processed")))
        total = _as_int(raw.get("totalImages", raw.get("total")))
        percent = _as_float(raw.get("progressPercent", raw.get("percent")))
        if processed is None and total is None:
            processed = _as_int(raw.get("currentEpoch"))
            total = _as_int(raw.get("totalEpochs"))
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        percent = float(raw)

    # Legacy top-level counters
    if processed is None:
        processed = _as_int(body.get("processedImages"))
    if total is None:
        total = _as_int(body.get("totalImages"))

    if percent is None and processed is not None and total:
        percent = round(processed / total * 100)

    if processed is None and total is None and percent is None:
        return None

    return JobProgress(
        processed=max(0, processed or 0),
        total=max(0, total or 0),
        percent=_clamp_percent(percent or 0.0),
    )


def normalize_status(body: Any) -> StatusReport:
    if not isinstance(body, dict):
        raise TransientJobError("Status response was not a JSON object", operation="status")

    metrics = body.get("metrics")
    logs = body.get("logsSummary")
    return StatusReport(
        status=parse_status(body.get("status")),
        progress=normalize_progress(body),
        metrics=metrics if isinstance(metrics, dict) else None,
        logs=[str(line) for line in logs] if isinstance(logs, list) else None,
        error=body.get("error") if isinstance(body.get("error"), str) else None,
    )


def _resolve_url(base_url: str, job_id: str, item: Dict[str, Any], strip_query: bool = False) -> str:
    url = item.get("url")
    if isinstance(url, str) and url.startswith("/api/"):
        path = url[len("/api"):]
    elif isinstance(url, str) and url:
        path = url
    else:
        path = f"/inference/{quote(job_id, safe='')}/image/{quote(str(item.get('filename', '')), safe='')}"
    if strip_query:
        path = path.split("?")[0]
    if path.startswith("http://") or path.startswith("https://"):
        return path
    return f"{base_url.rstrip('/')}{path}"


def normalize_images(images: Any, job_id: str, base_url: str) -> List[Dict[str, Any]]:
    """Accept either a flat list or the newer ``{all, good, defect}`` structure."""
    if isinstance(images, dict) and "all" in images:
        images = images.get("all") or []
    if not isinstance(images, list):
        return []
    return [
        {
            **img,
            "url": _resolve_url(base_url, job_id, img),
            "tag": img.get("tag") or "unreviewed",
        }
        for img in images
        if isinstance(img, dict)
    ]


def normalize_videos(videos: Any, job_id: str, base_url: str) -> List[Dict[str, Any]]:
    if not isinstance(videos, list):
        return []
    return [
        {
            "filename": vid.get("filename") or "",
            "url": _resolve_url(base_url, job_id, vid, strip_query=True),
            "fileType": "video",
        }
        for vid in videos
        if isinstance(vid, dict)
    ]


def normalize_results(body: Any, job_id: str, base_url: str) -> JobResults:
    if not isinstance(body, dict):
        raise TransientJobError("Results response was not a JSON object", operation="results")

    data = body.get("results") if isinstance(body.get("results"), dict) else body
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else None

    images = normalize_images(data.get("annotatedImages"), job_id, base_url)
    raw_videos = data.get("videos") or (metadata or {}).get("videos") or []
    videos = normalize_videos(raw_videos, job_id, base_url)

    by_class = [
        {**item, "averageConfidence": item.get("avgConfidence", item.get("averageConfidence", 0))}
        for item in data.get("detectionsByClass") or []
        if isinstance(item, dict)
    ]

    statistics = data.get("statistics")
    if not isinstance(statistics, dict):
        statistics = {
            "total": len(images) + len(videos),
            "totalImages": len(images),
            "totalVideos": len(videos),
            "good": 0,
            "defect": 0,
            "hasTags": False,
        }

    return JobResults(
        job_id=job_id,
        total_detections=_as_int(data.get("totalDetections")) or 0,
        average_confidence=_as_float(data.get("averageConfidence")) or 0.0,
        detections_by_class=by_class,
        annotated_images=images,
        videos=videos,
        statistics=statistics,
        metadata=metadata,
        raw=data,
    )
