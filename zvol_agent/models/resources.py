"""
Pydantic models for volumes and the remote resource graph.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class VolumeState(str, Enum):
    ABSENT = "absent"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    RESIZING = "resizing"
    DELETING = "deleting"
    ERROR = "error"


class VolumeRef(BaseModel):
    """One logical disk on the host."""
    model_config = ConfigDict(frozen=True)

    entity_id: str
    disk_index: int = Field(ge=0)
    dataset_root: str
    size_bytes: int = Field(default=0, ge=0)
    format: str = "raw"

    @field_validator("entity_id", mode="before")
    @classmethod
    def _coerce_entity_id(cls, value):
        return str(value)

    @property
    def name(self) -> str:
        from zvol_agent.graph import volume_name
        return volume_name(self.entity_id, self.disk_index)

    @property
    def dataset_path(self) -> str:
        return f"{self.dataset_root}/{self.name}"

    def with_size(self, size_bytes: int) -> "VolumeRef":
        return self.model_copy(update={"size_bytes": size_bytes})


class VolumeDataset(BaseModel):
    """ZFS dataset as reported by pool.dataset.query."""
    path: str
    size: int = 0
    available: Optional[int] = None
    type: str = "VOLUME"  # VOLUME, FILESYSTEM
    children: List[str] = []

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]


class BlockExport(BaseModel):
    """iSCSI extent or NVMe namespace."""
    id: int
    name: str
    backing_path: str  # dataset path, without the zvol/ prefix
    device_uuid: Optional[str] = None
    enabled: bool = True


class ExportMapping(BaseModel):
    """Binding of an export to the shared target (iSCSI) or subsystem (NVMe)."""
    id: int
    export_id: int
    target_id: int
    lun: Optional[int] = None  # LUN id or NVMe nsid


class SnapshotRef(BaseModel):
    volume_path: str
    name: str
    creation_time: datetime
    protected: bool = False
    has_vmstate: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.volume_path}@{self.name}"


class InconsistencyKind(str, Enum):
    MISSING_DATASET = "missing_dataset"
    MISSING_EXPORT = "missing_export"
    MISSING_MAPPING = "missing_mapping"
    DUPLICATE_EXPORT = "duplicate_export"
    EXPORT_WITHOUT_DATASET = "export_without_dataset"
    MAPPING_WITHOUT_EXPORT = "mapping_without_export"
    DATASET_WITHOUT_EXPORT = "dataset_without_export"


class Inconsistency(BaseModel):
    kind: InconsistencyKind
    resource_kind: str  # dataset, export, mapping
    resource_id: str
    detail: str = ""


class ExpectedChain(BaseModel):
    """Remote names a VolumeRef must resolve to."""
    dataset_path: str
    export_name: str
    backing_path: str
    mapping_id: Optional[int] = None


class RemoteResourceSet(BaseModel):
    """Snapshot of the appliance's datasets, exports and mappings."""
    datasets: Dict[str, VolumeDataset] = {}
    exports: Dict[int, BlockExport] = {}
    mappings: Dict[int, ExportMapping] = {}

    def exports_for(self, dataset_path: str) -> List[BlockExport]:
        return [e for e in self.exports.values() if e.backing_path == dataset_path]

    def mappings_for(self, export_id: int) -> List[ExportMapping]:
        return [m for m in self.mappings.values() if m.export_id == export_id]

    def check_invariants(self) -> List[Inconsistency]:
        """Exports pointing at missing datasets and mappings pointing at missing exports."""
        found = []
        for export in sorted(self.exports.values(), key=lambda e: e.id):
            if export.backing_path not in self.datasets:
                found.append(Inconsistency(
                    kind=InconsistencyKind.EXPORT_WITHOUT_DATASET,
                    resource_kind="export",
                    resource_id=str(export.id),
                    detail=f"export {export.name} backs missing dataset {export.backing_path}",
                ))
        for mapping in sorted(self.mappings.values(), key=lambda m: m.id):
            if mapping.export_id not in self.exports:
                found.append(Inconsistency(
                    kind=InconsistencyKind.MAPPING_WITHOUT_EXPORT,
                    resource_kind="mapping",
                    resource_id=str(mapping.id),
                    detail=f"mapping {mapping.id} references missing export {mapping.export_id}",
                ))
        return found


class StorageStatus(BaseModel):
    total: int = 0
    available: int = 0
    used: int = 0
    active: bool = False
    error: Optional[str] = None
