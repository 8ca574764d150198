"""Persisted recovery store with namespaced keys and TTL-based cleanup.

Mirrors the selection and the active job of one flow (training or
inference) in one browser tab, so a reload can re-attach to a running job
instead of submitting a new one. Values are JSON-encoded strings under
keys like ``prediction_jobId``; ``clear()`` drops every key of one
namespace in a single write.
"""

import hashlib
import json
import logging
import os
import re
import tempfile
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from pydantic import BaseModel, Field

from visionm.config import settings
from visionm.jobs.models import JobProgress, JobStatus

logger = logging.getLogger(__name__)

# Disjoint key sets: the selection context writes only the first, the
# tracker's job bookkeeping only the second.
SELECTION_KEYS: FrozenSet[str] = frozenset({
    "projectId",
    "datasetId",
    "modelId",
    "confidenceThreshold",
    "inferenceMode",
    "modelType",
    "modelSize",
    "useDefaults",
    "hyperparameters",
})
JOB_KEYS: FrozenSet[str] = frozenset({"jobId", "status", "progress"})


class StorageBackend(ABC):
    """Flat string key/value storage."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_many(self, keys: Iterable[str]) -> None:
        """Remove all ``keys`` in one step."""
        ...

    @abstractmethod
    def keys(self) -> List[str]:
        ...

    def remove(self, key: str) -> None:
        self.remove_many([key])


class MemoryBackend(StorageBackend):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove_many(self, keys: Iterable[str]) -> None:
        for key in list(keys):
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)


class FileBackend(StorageBackend):
    """One JSON file per tab session, rewritten atomically on every change."""

    def __init__(self, session_id: str, base_dir: Optional[str] = None):
        self._base_dir = base_dir or settings.recovery_store_dir
        os.makedirs(self._base_dir, exist_ok=True)
        self._path = os.path.join(self._base_dir, f"{_safe_name(session_id)}.json")
        self._data: Dict[str, str] = self._load()

    @property
    def path(self) -> str:
        return self._path

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self._path):
            return {}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable recovery file %s: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _flush(self) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self._base_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f)
            os.replace(tmp_path, self._path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def remove_many(self, keys: Iterable[str]) -> None:
        removed = False
        for key in list(keys):
            if self._data.pop(key, None) is not None:
                removed = True
        if removed:
            self._flush()

    def keys(self) -> List[str]:
        return list(self._data)


def _safe_name(session_id: str) -> str:
    if re.fullmatch(r"[A-Za-z0-9_-]{1,64}", session_id):
        return session_id
    return hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:32]


def cleanup_expired(base_dir: Optional[str] = None, ttl_hours: Optional[int] = None) -> int:
    """Remove session files older than the TTL. Returns count of removed files."""
    base_dir = base_dir or settings.recovery_store_dir
    ttl_seconds = (ttl_hours if ttl_hours is not None else settings.recovery_ttl_hours) * 3600
    if not os.path.exists(base_dir):
        return 0
    now = time.time()
    removed = 0
    for entry in os.listdir(base_dir):
        path = os.path.join(base_dir, entry)
        if not entry.endswith(".json") or not os.path.isfile(path):
            continue
        if now - os.path.getmtime(path) > ttl_seconds:
            os.remove(path)
            removed += 1
    return removed


class RecoveryRecord(BaseModel):
    """Everything a flow needs to resume after a reload."""
    model_config = {"protected_namespaces": ()}

    project_id: Optional[str] = None
    dataset_id: Optional[str] = None
    model_id: Optional[str] = None
    confidence_threshold: Optional[float] = None
    inference_mode: Optional[str] = None
    model_type: Optional[str] = None
    model_size: Optional[str] = None
    use_defaults: Optional[bool] = None
    hyperparameters: Optional[Dict[str, Any]] = None
    job_id: Optional[str] = None
    status: Optional[JobStatus] = None
    progress: JobProgress = Field(default_factory=JobProgress)


class RecoveryStore:
    """Namespaced view over a storage backend."""

    def __init__(self, backend: StorageBackend, namespace: str):
        self._backend = backend
        self._prefix = f"{namespace}_"

    @property
    def namespace(self) -> str:
        return self._prefix[:-1]

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def save(self, key: str, value: Any) -> None:
        """Persist ``value``; ``None`` removes the key."""
        if value is None:
            self._backend.remove(self._key(key))
            return
        self._backend.set(self._key(key), json.dumps(value))

    def load(self, key: str, default: Any = None) -> Any:
        raw = self._backend.get(self._key(key))
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            return default

    def remove(self, *keys: str) -> None:
        self._backend.remove_many(self._key(k) for k in keys)

    def keys(self) -> List[str]:
        return [k[len(self._prefix):] for k in self._backend.keys() if k.startswith(self._prefix)]

    def clear(self) -> None:
        """Drop every key of this namespace in one backend write."""
        self._backend.remove_many([k for k in self._backend.keys() if k.startswith(self._prefix)])
        logger.debug("Cleared recovery namespace %s", self.namespace)

    def writer(self, owned: FrozenSet[str]) -> "ScopedWriter":
        return ScopedWriter(self, owned)

    def snapshot(self) -> RecoveryRecord:
        progress = self.load("progress")
        status = self.load("status")
        try:
            status = JobStatus(status) if status is not None else None
        except ValueError:
            status = None
        confidence = self.load("confidenceThreshold")
        return RecoveryRecord(
            project_id=self.load("projectId"),
            dataset_id=self.load("datasetId"),
            model_id=self.load("modelId"),
            confidence_threshold=float(confidence) if isinstance(confidence, (int, float)) else None,
            inference_mode=self.load("inferenceMode"),
            model_type=self.load("modelType"),
            model_size=self.load("modelSize"),
            use_defaults=self.load("useDefaults"),
            hyperparameters=self.load("hyperparameters"),
            job_id=self.load("jobId"),
            status=status,
            progress=_progress_from(progress),
        )


class ScopedWriter:
    """Write access restricted to one owner's keys."""

    def __init__(self, store: RecoveryStore, owned: FrozenSet[str]):
        self._store = store
        self._owned = owned

    def _check(self, key: str) -> None:
        if key not in self._owned:
            raise KeyError(f"{key!r} is not owned by this writer")

    def save(self, key: str, value: Any) -> None:
        self._check(key)
        self._store.save(key, value)

    def remove(self, *keys: str) -> None:
        for key in keys:
            self._check(key)
        self._store.remove(*keys)


def _progress_from(raw: Any) -> JobProgress:
    if isinstance(raw, dict):
        try:
            return JobProgress(**raw)
        except ValueError:
            return JobProgress()
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return JobProgress(percent=max(0.0, min(100.0, float(raw))))
    return JobProgress()
