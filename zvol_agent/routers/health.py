"""
Health endpoint.
"""

import time
from typing import Dict

from fastapi import APIRouter, Request
from pydantic import BaseModel

from zvol_agent import __version__

router = APIRouter(tags=["health"])

# Track startup time
_startup_time = time.time()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    uptime_seconds: int
    version: str
    storages: Dict[str, bool]


@router.get("/v1/health", response_model=HealthResponse)
def health(request: Request):
    """Liveness plus per-storage availability of the dataset root."""
    backends = request.app.state.backends
    storages = {sid: backend.volumes.storage_status().active for sid, backend in backends.items()}
    status = "healthy" if all(storages.values()) else "degraded"
    return HealthResponse(
        status=status,
        uptime_seconds=int(time.time() - _startup_time),
        version=__version__,
        storages=storages,
    )
