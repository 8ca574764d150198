"""Catalog fetcher — the authoritative lists a selection is validated against."""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from visionm.catalog.models import (
    DATASET_ID_KEYS,
    FALLBACK_BASE_MODELS,
    MODEL_ID_KEYS,
    Catalog,
    CatalogEntry,
    Hyperparameters,
    Project,
    filter_by_project,
    normalize_entries,
)
from visionm.jobs.client import JobClient
from visionm.jobs.errors import JobError, StaleReferenceError
from visionm.jobs.models import JobKind

logger = logging.getLogger(__name__)


class CatalogFetcher:
    """Fetches projects, datasets, models, and training defaults.

    Nothing project-scoped is requested while no project is selected.
    """

    def __init__(
        self,
        client: JobClient,
        supabase_factory: Optional[Callable[[], Any]] = None,
        company_name: Optional[str] = None,
    ):
        self._client = client
        self._supabase_factory = supabase_factory
        self.company_name = company_name

    @property
    def kind(self) -> JobKind:
        return self._client.kind

    # -----------------------------------------------------------------
    # Projects (Supabase)
    # -----------------------------------------------------------------

    async def fetch_projects(self, company_id: Optional[str]) -> List[Project]:
        """Projects of a company, newest first. Empty when unavailable."""
        if not company_id or self._supabase_factory is None:
            return []
        loop = asyncio.get_running_loop()
        try:
            rows = await loop.run_in_executor(None, self._query_projects, company_id)
        except Exception as exc:
            logger.error("Error loading projects for company %s: %s", company_id, exc)
            return []
        return [
            Project(id=str(r["id"]), name=r.get("name") or "", description=r.get("description"))
            for r in rows
            if isinstance(r, dict) and r.get("id") is not None
        ]

    def _query_projects(self, company_id: str) -> List[Dict[str, Any]]:
        supabase = self._supabase_factory()
        response = (
            supabase.table("projects")
            .select("id, name, description")
            .eq("company_id", company_id)
            .order("created_at", desc=True)
            .execute()
        )
        return response.data or []

    # -----------------------------------------------------------------
    # Datasets & models (job API)
    # -----------------------------------------------------------------

    async def fetch(self, project: Optional[Project]) -> Catalog:
        """Fetch datasets and models for ``project`` concurrently."""
        if project is None:
            return Catalog(project_id=None)

        (datasets, datasets_known), (models, models_known) = await asyncio.gather(
            self.fetch_datasets(project),
            self.fetch_models(project),
        )
        return Catalog(
            project_id=project.id,
            datasets=datasets,
            models=models,
            datasets_known=datasets_known,
            models_known=models_known,
        )

    def _scope(self, project: Project) -> Dict[str, str]:
        return {"company": self.company_name or "", "project": project.name}

    async def _get_list(
        self, path: str, operation: str, params: Dict[str, str], list_key: str
    ) -> Tuple[List[Any], bool]:
        """GET a list endpoint. Returns (records, known).

        A 404 is an authoritative empty list; any other failure leaves the
        list unknown.
        """
        try:
            body = await self._client.get_json(path, operation, params=params)
        except StaleReferenceError:
            return [], True
        except JobError as exc:
            logger.warning("Failed to fetch %s: %s", operation, exc.detail)
            return [], False
        if isinstance(body, list):
            return body, True
        if isinstance(body, dict) and isinstance(body.get(list_key), list):
            return body[list_key], True
        return [], True

    async def fetch_datasets(self, project: Project) -> Tuple[List[CatalogEntry], bool]:
        if self.kind == JobKind.TRAINING:
            params = {"status": "ready", "projectId": project.id}
            if project.name:
                params["project"] = project.name
            records, known = await self._get_list("/datasets", "datasets", params, "datasets")
            records = filter_by_project(records, project)
        else:
            records, known = await self._get_list(
                "/inference/datasets", "datasets", self._scope(project), "datasets"
            )
        return normalize_entries(records, DATASET_ID_KEYS), known

    async def fetch_models(self, project: Project) -> Tuple[List[CatalogEntry], bool]:
        if self.kind == JobKind.TRAINING:
            return await self.fetch_base_models(), True
        records, known = await self._get_list(
            "/inference/models", "models", self._scope(project), "models"
        )
        return normalize_entries(records, MODEL_ID_KEYS), known

    async def fetch_base_models(self) -> List[CatalogEntry]:
        """YOLO base model sizes, falling back to the static list on any failure."""
        try:
            body = await self._client.get_json("/train/base-models", "base-models")
        except JobError as exc:
            logger.warning("Falling back to static base models: %s", exc.detail)
            return normalize_entries(FALLBACK_BASE_MODELS, ("size",))
        models = body.get("models") if isinstance(body, dict) else None
        if not isinstance(models, list) or not models:
            return normalize_entries(FALLBACK_BASE_MODELS, ("size",))
        records = []
        for m in models:
            if not isinstance(m, dict):
                continue
            size = m.get("size") or m.get("sizeMB") or m.get("filename") or ""
            name = m.get("name") or m.get("filename") or f"model-{size}"
            if m.get("name") and m.get("sizeMB"):
                name = f"{m['name']} ({m['sizeMB']} MB)"
            records.append({**m, "size": str(size), "name": name})
        return normalize_entries(records, ("size",))

    async def fetch_defaults(self, model_type: str) -> Hyperparameters:
        """Default hyperparameters for a model type; built-in defaults on failure."""
        try:
            body = await self._client.get_json(
                "/train/defaults", "defaults", params={"modelType": model_type}
            )
        except JobError as exc:
            logger.warning("Using built-in defaults for %s: %s", model_type, exc.detail)
            return Hyperparameters()
        defaults = body.get("defaults") if isinstance(body, dict) else None
        if not isinstance(defaults, dict):
            return Hyperparameters()
        base = Hyperparameters().to_payload()
        merged = {k: defaults.get(k, v) for k, v in base.items()}
        try:
            return Hyperparameters(**merged)
        except ValueError as exc:
            logger.warning("Server defaults for %s out of range: %s", model_type, exc)
            return Hyperparameters()

