"""
Read-only storage observability endpoints plus orphan cleanup.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from zvol_agent.backend import StorageBackend
from zvol_agent.models.events import ItemOutcome, OperationEvent
from zvol_agent.models.resources import Inconsistency, StorageStatus

router = APIRouter(prefix="/v1/storages", tags=["storages"])


class OrphanReport(BaseModel):
    storage_id: str
    orphans: List[Inconsistency]
    count: int


class CleanupResponse(BaseModel):
    storage_id: str
    outcomes: List[ItemOutcome]
    failed: int


def _backend(request: Request, storage_id: str) -> StorageBackend:
    backend = request.app.state.backends.get(storage_id)
    if backend is None:
        raise HTTPException(status_code=404, detail=f"Unknown storage: {storage_id}")
    return backend


@router.get("")
def list_storages(request: Request) -> List[str]:
    return sorted(request.app.state.backends)


@router.get("/{storage_id}/status", response_model=StorageStatus)
def storage_status(storage_id: str, request: Request):
    return _backend(request, storage_id).volumes.storage_status()


@router.get("/{storage_id}/metrics")
def storage_metrics(storage_id: str, request: Request) -> Dict[str, Any]:
    return _backend(request, storage_id).metrics()


@router.get("/{storage_id}/events", response_model=List[OperationEvent])
def storage_events(storage_id: str, request: Request, limit: int = 100):
    return _backend(request, storage_id).events.events(limit)


@router.get("/{storage_id}/orphans", response_model=OrphanReport)
def list_orphans(storage_id: str, request: Request, include_datasets: bool = False):
    """
    Detect orphaned exports, mappings and (optionally) datasets.

    Args:
        storage_id: Configured storage id
        include_datasets: Also report volume datasets without an export
    """
    orphans = _backend(request, storage_id).orphans.detect(include_datasets=include_datasets)
    return OrphanReport(storage_id=storage_id, orphans=orphans, count=len(orphans))


@router.post("/{storage_id}/orphans/cleanup", response_model=CleanupResponse)
def cleanup_orphans(storage_id: str, request: Request, include_datasets: bool = False):
    """Delete detected orphans: mappings, then exports, then datasets."""
    outcomes = _backend(request, storage_id).orphans.cleanup(include_datasets=include_datasets)
    return CleanupResponse(
        storage_id=storage_id,
        outcomes=outcomes,
        failed=sum(1 for o in outcomes if not o.success and not o.skipped),
    )
