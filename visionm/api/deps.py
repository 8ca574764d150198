"""Tab-scoped tracker registry and FastAPI dependencies.

Each browser tab (``X-Tab-Id``) gets one recovery file and, per job kind,
one tracker with its own poller. Tabs never share trackers.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, Header, HTTPException

from visionm.auth.supabase_auth import AuthContext, verify_jwt
from visionm.catalog.fetcher import CatalogFetcher
from visionm.config import settings
from visionm.db.supabase_client import get_supabase
from visionm.jobs.client import JobClient
from visionm.jobs.errors import (
    RATE_LIMITED,
    REJECTED,
    STALE_REFERENCE,
    TRANSIENT,
    VALIDATION,
    JobError,
    ResultsUnavailableError,
)
from visionm.jobs.models import JobKind
from visionm.jobs.tracker import STORAGE_NAMESPACES, JobTracker
from visionm.storage.recovery_store import FileBackend, RecoveryStore, StorageBackend

logger = logging.getLogger(__name__)

BackendFactory = Callable[[str], StorageBackend]
ClientFactory = Callable[[JobKind, str], JobClient]


def _default_backend(tab_id: str) -> StorageBackend:
    return FileBackend(tab_id)


def _default_client(kind: JobKind, token: str) -> JobClient:
    return JobClient(kind, access_token=token)


def _supabase_factory():
    if not settings.supabase_url:
        return None
    return get_supabase


class TrackerRegistry:
    """Creates and owns trackers, keyed by (tab id, job kind)."""

    def __init__(
        self,
        backend_factory: BackendFactory = _default_backend,
        client_factory: ClientFactory = _default_client,
        poll_interval: Optional[float] = None,
    ):
        self._backend_factory = backend_factory
        self._client_factory = client_factory
        self._poll_interval = poll_interval
        self._backends: Dict[str, StorageBackend] = {}
        self._trackers: Dict[Tuple[str, JobKind], JobTracker] = {}
        self._clients: Dict[Tuple[str, JobKind], JobClient] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._trackers)

    def polling_count(self) -> int:
        return sum(1 for t in self._trackers.values() if t.polling)

    async def get(
        self,
        tab_id: str,
        kind: JobKind,
        token: str,
        company_name: Optional[str] = None,
    ) -> JobTracker:
        async with self._lock:
            key = (tab_id, kind)
            tracker = self._trackers.get(key)
            if tracker is not None:
                self._clients[key].set_access_token(token)
                if company_name:
                    tracker.selection.scope_company(company_name)
                return tracker

            backend = self._backends.get(tab_id)
            if backend is None:
                backend = self._backend_factory(tab_id)
                self._backends[tab_id] = backend

            client = self._client_factory(kind, token)
            fetcher = CatalogFetcher(
                client,
                supabase_factory=_supabase_factory(),
                company_name=company_name or settings.company_name,
            )
            tracker = JobTracker(
                kind,
                client,
                fetcher,
                RecoveryStore(backend, STORAGE_NAMESPACES[kind]),
                poll_interval=self._poll_interval,
            )
            self._trackers[key] = tracker
            self._clients[key] = client
            logger.debug("Created %s tracker for tab %s", kind.value, tab_id)
            return tracker

    async def remove(self, tab_id: str) -> int:
        """Unmount and drop every tracker of a tab. Persisted state is kept."""
        async with self._lock:
            keys = [k for k in self._trackers if k[0] == tab_id]
            for key in keys:
                await self._trackers.pop(key).unmount()
                await self._clients.pop(key).close()
            self._backends.pop(tab_id, None)
            return len(keys)

    async def close_all(self) -> None:
        for tab_id in {k[0] for k in list(self._trackers)}:
            await self.remove(tab_id)


# Set by main.py during lifespan
_registry: Optional[TrackerRegistry] = None


def set_registry(registry: Optional[TrackerRegistry]) -> None:
    global _registry
    _registry = registry


def current_registry() -> Optional[TrackerRegistry]:
    """The installed registry, or None before startup has run."""
    return _registry


def get_registry() -> TrackerRegistry:
    if _registry is None:
        raise HTTPException(status_code=503, detail="Tracker registry not initialized")
    return _registry


async def get_tracker(
    kind: JobKind,
    x_tab_id: str = Header(...),
    x_company_id: Optional[str] = Header(None),
    x_company_name: Optional[str] = Header(None),
    auth: AuthContext = Depends(verify_jwt),
    registry: TrackerRegistry = Depends(get_registry),
) -> JobTracker:
    """Resolve (and mount, on first use) the tracker for this tab and kind."""
    tracker = await registry.get(x_tab_id, kind, auth.token, company_name=x_company_name)
    await tracker.mount(company_id=x_company_id)
    return tracker


_CATEGORY_STATUS = {
    VALIDATION: 400,
    REJECTED: 409,
    RATE_LIMITED: 429,
    TRANSIENT: 502,
    STALE_REFERENCE: 404,
}


def job_error_to_http(exc: JobError) -> HTTPException:
    status_code = _CATEGORY_STATUS.get(exc.category, 500)
    if isinstance(exc, ResultsUnavailableError):
        status_code = 409
    headers = None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        headers = {"Retry-After": f"{retry_after:g}"}
    return HTTPException(status_code=status_code, detail=exc.to_dict(), headers=headers)
