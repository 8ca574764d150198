"""Catalog data types: projects, datasets, models, and hyperparameters."""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence
from pydantic import BaseModel, ConfigDict, Field

# Used only when GET /train/base-models fails
FALLBACK_BASE_MODELS = [
    {"size": "n", "name": "YOLOv8 Nano (n)"},
    {"size": "s", "name": "YOLOv8 Small (s)"},
    {"size": "m", "name": "YOLOv8 Medium (m)"},
    {"size": "l", "name": "YOLOv8 Large (l)"},
    {"size": "x", "name": "YOLOv8 XLarge (x)"},
]

MODEL_TYPES = ("YOLO", "EfficientNet", "Custom")

DATASET_ID_KEYS = ("_id", "id", "datasetId", "uuid")
MODEL_ID_KEYS = ("_id", "modelId", "id", "size", "filename")
PROJECT_FIELDS = ("project", "projectId", "project_id", "project_uuid", "projectName", "project_name")


class Project(BaseModel):
    id: str
    name: str = ""
    description: Optional[str] = None


class CatalogEntry(BaseModel):
    id: str
    name: str = ""
    raw: Dict[str, Any] = Field(default_factory=dict)


class Catalog(BaseModel):
    """Authoritative snapshot of what can be selected in one project.

    ``datasets_known``/``models_known`` are False when the list could not be
    fetched (network failure); an unknown list never invalidates a selection.
    """
    project_id: Optional[str] = None
    datasets: List[CatalogEntry] = Field(default_factory=list)
    models: List[CatalogEntry] = Field(default_factory=list)
    datasets_known: bool = True
    models_known: bool = True
    fetched_at: datetime = Field(default_factory=datetime.utcnow)

    def has_dataset(self, dataset_id: str) -> bool:
        return any(d.id == dataset_id for d in self.datasets)

    def has_model(self, model_id: str) -> bool:
        return any(m.id == model_id for m in self.models)


class Hyperparameters(BaseModel):
    """Training hyperparameters with their valid ranges."""
    model_config = ConfigDict(populate_by_name=True)

    epochs: int = Field(default=100, ge=1, le=1000)
    batch_size: int = Field(default=16, ge=1, le=512, alias="batchSize")
    img_size: int = Field(default=640, ge=32, le=4096, multiple_of=32, alias="imgSize")
    learning_rate: float = Field(default=0.01, gt=0.0, le=1.0, alias="learningRate")
    workers: int = Field(default=4, ge=0, le=64)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def _first(record: Dict[str, Any], keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def normalize_entries(records: Iterable[Any], id_keys: Sequence[str]) -> List[CatalogEntry]:
    """Give every record a string ``id`` from whichever id field it carries."""
    entries = []
    for record in records:
        if not isinstance(record, dict):
            continue
        entry_id = _first(record, id_keys)
        if entry_id is None:
            continue
        name = _first(record, ("name", "label", "filename", "datasetName", "modelName")) or entry_id
        entries.append(CatalogEntry(id=entry_id, name=name, raw=record))
    return entries


def filter_by_project(records: Iterable[Any], project: Project) -> List[Dict[str, Any]]:
    """Keep datasets belonging to ``project``.

    Records that carry no project-identifying field at all are kept, since
    the server has already filtered them.
    """
    kept = []
    for record in records:
        if not isinstance(record, dict):
            continue
        fields = [str(record[k]) for k in PROJECT_FIELDS if record.get(k) is not None]
        if not fields:
            kept.append(record)
            continue
        if project.id in fields or (project.name and project.name in fields):
            kept.append(record)
    return kept
