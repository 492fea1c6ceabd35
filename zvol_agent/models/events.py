"""
Pydantic models for operation events and cleanup reports.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from zvol_agent.utils import utc_now_iso


class OperationOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class OperationEvent(BaseModel):
    """Audit record for one lifecycle or reconciliation operation."""
    operation: str
    storage_id: Optional[str] = None
    resources: List[str] = []
    outcome: OperationOutcome
    duration_ms: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    step: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now_iso)


class ItemOutcome(BaseModel):
    """Result for one item of a batch (orphan cleanup, retention)."""
    kind: str
    resource_id: str
    success: bool
    skipped: bool = False
    error: Optional[str] = None


class SessionResult(BaseModel):
    """Result of a local iSCSI/NVMe session command."""
    success: bool
    descriptor: Optional[str] = None
    error: Optional[str] = None
