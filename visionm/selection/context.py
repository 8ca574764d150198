"""Selection context — the user's current choices for one flow.

Holds project, dataset, model, and the tuning inputs (hyperparameters for
training, confidence threshold for inference) and keeps them consistent
with the latest catalog. Every change is written through to the recovery
store immediately, using only the selection keys.
"""

import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from visionm.catalog.fetcher import CatalogFetcher
from visionm.catalog.models import MODEL_TYPES, Catalog, Hyperparameters, Project
from visionm.config import settings
from visionm.jobs.errors import PolicyRejectedError, SelectionValidationError
from visionm.jobs.models import InferenceMode, JobFile, JobKind, JobStartPayload
from visionm.storage.recovery_store import SELECTION_KEYS, RecoveryRecord, RecoveryStore

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png")
VIDEO_EXTENSIONS = ("mp4", "mov", "avi", "mkv")

ProjectChangeHook = Callable[[], Awaitable[None]]


class SelectionContext:
    def __init__(
        self,
        kind: JobKind,
        catalog_fetcher: CatalogFetcher,
        store: RecoveryStore,
        is_idle: Callable[[], bool],
        on_project_change: Optional[ProjectChangeHook] = None,
    ):
        self.kind = kind
        self._fetcher = catalog_fetcher
        self._writer = store.writer(SELECTION_KEYS)
        self._is_idle = is_idle
        self._on_project_change = on_project_change

        self.projects: List[Project] = []
        self.project: Optional[Project] = None
        self.dataset_id: Optional[str] = None
        self.model_id: Optional[str] = None
        self.catalog: Catalog = Catalog()

        self.confidence_threshold: float = settings.default_confidence_threshold
        self.inference_mode: InferenceMode = InferenceMode.DATASET
        self.files: List[JobFile] = []

        self.model_type: str = "YOLO"
        self.model_size: Optional[str] = None
        self.use_defaults: bool = True
        self.hyperparameters: Hyperparameters = Hyperparameters()

    @property
    def project_id(self) -> Optional[str]:
        return self.project.id if self.project else None

    # -----------------------------------------------------------------
    # Restore
    # -----------------------------------------------------------------

    def restore(self, record: RecoveryRecord) -> None:
        """Adopt persisted selection fields. Validation happens on reconcile."""
        if record.project_id:
            self.project = Project(id=record.project_id)
        self.dataset_id = record.dataset_id
        self.model_id = record.model_id
        if record.confidence_threshold is not None:
            self.confidence_threshold = _clamp(record.confidence_threshold)
        if record.inference_mode in (InferenceMode.DATASET.value, InferenceMode.CUSTOM.value):
            self.inference_mode = InferenceMode(record.inference_mode)
        if record.model_type in MODEL_TYPES:
            self.model_type = record.model_type
        self.model_size = record.model_size
        if record.use_defaults is not None:
            self.use_defaults = bool(record.use_defaults)
        if record.hyperparameters:
            try:
                self.hyperparameters = Hyperparameters(**record.hyperparameters)
            except ValidationError:
                self._writer.remove("hyperparameters")

    async def load_projects(self, company_id: Optional[str]) -> List[Project]:
        """Load the company's projects and drop a persisted project that is gone."""
        self.projects = await self._fetcher.fetch_projects(company_id)
        if self.project is None:
            return self.projects
        match = next((p for p in self.projects if p.id == self.project.id), None)
        if match is not None:
            self.project = match
        elif self.projects:
            logger.info("Persisted project %s no longer exists; clearing", self.project.id)
            self.project = None
            self._clear_dependents()
            self._writer.remove("projectId")
        return self.projects

    def persist_all(self) -> None:
        """Mirror the whole in-memory selection to the store."""
        self._writer.save("projectId", self.project_id)
        self._writer.save("datasetId", self.dataset_id)
        self._writer.save("modelId", self.model_id)
        self._writer.save("confidenceThreshold", self.confidence_threshold)
        self._writer.save("inferenceMode", self.inference_mode.value)
        if self.kind == JobKind.TRAINING:
            self._writer.save("modelType", self.model_type)
            self._writer.save("modelSize", self.model_size)
            self._writer.save("useDefaults", self.use_defaults)
            self._writer.save("hyperparameters", self.hyperparameters.to_payload())

    # -----------------------------------------------------------------
    # Setters
    # -----------------------------------------------------------------

    def _require_idle(self, what: str) -> None:
        if not self._is_idle():
            raise PolicyRejectedError(f"Cannot change the {what} while a job is in progress")

    def _clear_dependents(self) -> None:
        self.dataset_id = None
        self.model_id = None
        self.model_size = None
        self.catalog = Catalog(project_id=self.project_id)

    async def set_project(self, project_id: Optional[str]) -> Catalog:
        """Switch project: drop dataset, model, and the tracked job, then refetch."""
        if project_id:
            project = next((p for p in self.projects if p.id == project_id), None)
            if project is None:
                if self.projects:
                    raise SelectionValidationError(f"Project {project_id} is not available")
                project = Project(id=project_id)
        else:
            project = None

        self.project = project
        self._clear_dependents()
        self._writer.save("projectId", self.project_id)
        self._writer.remove("datasetId", "modelId", "modelSize")
        if self._on_project_change is not None:
            await self._on_project_change()
        return await self.refresh()

    def set_dataset(self, dataset_id: Optional[str]) -> None:
        self._require_idle("dataset")
        if dataset_id and self.catalog.datasets_known and self.catalog.project_id == self.project_id:
            if not self.catalog.has_dataset(dataset_id):
                raise SelectionValidationError(f"Dataset {dataset_id} is not in this project")
        self.dataset_id = dataset_id or None
        self._writer.save("datasetId", self.dataset_id)

    def set_model(self, model_id: Optional[str]) -> None:
        self._require_idle("model")
        if model_id and self.catalog.models_known and self.catalog.project_id == self.project_id:
            if not self.catalog.has_model(model_id):
                raise SelectionValidationError(f"Model {model_id} is not available")
        self.model_id = model_id or None
        if self.kind == JobKind.TRAINING:
            self.model_size = self.model_id
            self._writer.save("modelSize", self.model_size)
        self._writer.save("modelId", self.model_id)

    def set_confidence(self, value: float) -> float:
        self.confidence_threshold = _clamp(value)
        self._writer.save("confidenceThreshold", self.confidence_threshold)
        return self.confidence_threshold

    def set_inference_mode(self, mode: str) -> None:
        try:
            self.inference_mode = InferenceMode(mode)
        except ValueError:
            raise SelectionValidationError(f"Unknown inference mode: {mode}")
        self._writer.save("inferenceMode", self.inference_mode.value)

    async def set_model_type(self, model_type: str) -> Hyperparameters:
        """Change training model type and load its default hyperparameters."""
        if model_type not in MODEL_TYPES:
            raise SelectionValidationError(f"Unknown model type: {model_type}")
        self.model_type = model_type
        self._writer.save("modelType", model_type)
        defaults = await self._fetcher.fetch_defaults(model_type)
        if self.use_defaults:
            self.hyperparameters = defaults
            self._writer.save("hyperparameters", defaults.to_payload())
        return defaults

    def set_use_defaults(self, use_defaults: bool) -> None:
        self.use_defaults = bool(use_defaults)
        self._writer.save("useDefaults", self.use_defaults)

    def set_hyperparameters(self, values: Dict[str, Any]) -> Hyperparameters:
        merged = {**self.hyperparameters.to_payload(), **values}
        try:
            self.hyperparameters = Hyperparameters(**merged)
        except ValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in e["loc"]) for e in exc.errors())
            raise SelectionValidationError(f"Hyperparameters out of range: {fields}")
        self._writer.save("hyperparameters", self.hyperparameters.to_payload())
        return self.hyperparameters

    def add_files(self, files: List[JobFile]) -> List[str]:
        """Attach upload files; returns the names that were rejected."""
        rejected = []
        existing = {f.filename for f in self.files}
        for f in files:
            ext = os.path.splitext(f.filename)[1].lower().lstrip(".")
            if ext not in IMAGE_EXTENSIONS + VIDEO_EXTENSIONS:
                rejected.append(f.filename)
                continue
            if f.filename in existing:
                continue
            self.files.append(f)
            existing.add(f.filename)
        return rejected

    def remove_file(self, filename: str) -> None:
        self.files = [f for f in self.files if f.filename != filename]

    # -----------------------------------------------------------------
    # Catalog
    # -----------------------------------------------------------------

    async def refresh(self) -> Catalog:
        """Refetch the catalog for the current project and reconcile against it."""
        project = self.project
        if project is None:
            self.catalog = Catalog(project_id=None)
            return self.catalog
        catalog = await self._fetcher.fetch(project)
        self.reconcile(catalog)
        return self.catalog

    def reconcile(self, catalog: Catalog) -> List[str]:
        """Clear selections that are absent from ``catalog``.

        Returns the names of the cleared fields. A catalog for a project other
        than the current one is a stale response and is ignored.
        """
        if catalog.project_id != self.project_id:
            logger.debug("Discarding catalog for project %s", catalog.project_id)
            return []
        self.catalog = catalog
        cleared = []
        if self.dataset_id and catalog.datasets_known and not catalog.has_dataset(self.dataset_id):
            logger.info("Dataset %s no longer in catalog; clearing", self.dataset_id)
            self.dataset_id = None
            self._writer.remove("datasetId")
            cleared.append("dataset_id")
        if self.model_id and catalog.models_known and not catalog.has_model(self.model_id):
            logger.info("Model %s no longer in catalog; clearing", self.model_id)
            self.model_id = None
            self._writer.remove("modelId")
            cleared.append("model_id")
            if self.kind == JobKind.TRAINING:
                self.model_size = None
                self._writer.remove("modelSize")
        return cleared

    # -----------------------------------------------------------------
    # Submission
    # -----------------------------------------------------------------

    def build_payload(self) -> JobStartPayload:
        """Validate the selection and build the start payload."""
        if self.project is None:
            raise SelectionValidationError("Please select a project first.")

        if self.kind == JobKind.TRAINING:
            if not self.dataset_id:
                raise SelectionValidationError("Select a dataset before starting training.")
            model_size = self.model_size if self.model_type == "YOLO" else None
            return JobStartPayload(
                model_id=self.model_id or self.model_type,
                dataset_id=self.dataset_id,
                project_id=self.project_id,
                model_type=self.model_type,
                model_size=model_size,
                hyperparameters=None if self.use_defaults else self.hyperparameters.to_payload(),
            )

        if not self.model_id:
            raise SelectionValidationError("Please select a model before starting inference.")
        if self.inference_mode == InferenceMode.DATASET:
            if not self.dataset_id:
                raise SelectionValidationError("Please select a dataset when using dataset mode.")
            return JobStartPayload(
                model_id=self.model_id,
                dataset_id=self.dataset_id,
                confidence_threshold=self.confidence_threshold,
            )
        if not self.files:
            raise SelectionValidationError(
                "Add at least one image or video when using custom upload mode."
            )
        return JobStartPayload(
            model_id=self.model_id,
            files=list(self.files),
            confidence_threshold=self.confidence_threshold,
        )

    def scope_company(self, company_name: str) -> None:
        self._fetcher.company_name = company_name

    def scope(self) -> Dict[str, Optional[str]]:
        """Company/project names the inference endpoints are scoped by."""
        return {
            "company": self._fetcher.company_name,
            "project": self.project.name if self.project else None,
        }

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "project_id": self.project_id,
            "dataset_id": self.dataset_id,
            "model_id": self.model_id,
            "projects": [p.model_dump() for p in self.projects],
            "datasets": [{"id": d.id, "name": d.name} for d in self.catalog.datasets],
            "models": [{"id": m.id, "name": m.name} for m in self.catalog.models],
        }
        if self.kind == JobKind.TRAINING:
            data.update(
                model_type=self.model_type,
                model_size=self.model_size,
                use_defaults=self.use_defaults,
                hyperparameters=self.hyperparameters.to_payload(),
            )
        else:
            data.update(
                confidence_threshold=self.confidence_threshold,
                inference_mode=self.inference_mode.value,
                files=[f.filename for f in self.files],
            )
        return data


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))
