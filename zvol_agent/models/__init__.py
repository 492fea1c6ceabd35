from .events import ItemOutcome, OperationEvent, OperationOutcome, SessionResult
from .resources import (
    BlockExport,
    ExpectedChain,
    ExportMapping,
    Inconsistency,
    InconsistencyKind,
    RemoteResourceSet,
    SnapshotRef,
    StorageStatus,
    VolumeDataset,
    VolumeRef,
    VolumeState,
)

__all__ = [
    "BlockExport",
    "ExpectedChain",
    "ExportMapping",
    "Inconsistency",
    "InconsistencyKind",
    "ItemOutcome",
    "OperationEvent",
    "OperationOutcome",
    "RemoteResourceSet",
    "SessionResult",
    "SnapshotRef",
    "StorageStatus",
    "VolumeDataset",
    "VolumeRef",
    "VolumeState",
]
