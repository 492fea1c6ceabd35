"""
Orphan detection and cleanup.

Cross-references exports, mappings and volume datasets under the storage's
dataset root. Broken references left behind by interrupted sequences are
reported and, on request, deleted in dependency order
(mappings, then exports, then datasets).
"""

import logging
from contextlib import nullcontext
from typing import Dict, List, Optional

from zvol_agent.config import StorageConfig
from zvol_agent.locks import OperationLockRegistry
from zvol_agent.models.events import ItemOutcome
from zvol_agent.models.resources import (
    Inconsistency,
    InconsistencyKind,
    RemoteResourceSet,
    VolumeDataset,
)
from zvol_agent.transport_mode import ExportShape
from zvol_agent.truenas_api.client import ApplianceClient
from zvol_agent.truenas_api.errors import ApplianceError, NotFoundError, OperationInProgressError
from zvol_agent.truenas_api.metrics import EventLog
from zvol_agent.utils import to_int

logger = logging.getLogger(__name__)

CLEANUP_ORDER = [
    InconsistencyKind.MAPPING_WITHOUT_EXPORT,
    InconsistencyKind.EXPORT_WITHOUT_DATASET,
    InconsistencyKind.DATASET_WITHOUT_EXPORT,
]


class OrphanReconciler:

    def __init__(
        self,
        client: ApplianceClient,
        shape: ExportShape,
        config: StorageConfig,
        events: Optional[EventLog] = None,
        locks: Optional[OperationLockRegistry] = None,
    ):
        self.client = client
        self.shape = shape
        self.config = config
        self.events = events or EventLog()
        self.locks = locks or OperationLockRegistry()

    def fetch(self) -> RemoteResourceSet:
        """
        Current datasets, exports and mappings relevant to this storage.

        Exports are those backed by a path under the dataset root. Mappings
        are those on our target/subsystem, minus mappings whose export is
        alive but belongs to another dataset root sharing the target.
        """
        root = self.config.dataset
        records = self.client.call("pool.dataset.query", [[["id", "^", root + "/"]]]) or []

        datasets: Dict[str, VolumeDataset] = {}
        for record in records:
            path = record.get("id") or record.get("name")
            datasets[path] = VolumeDataset(
                path=path,
                size=to_int(record.get("volsize")),
                available=to_int(record.get("available")),
                type=record.get("type") or "FILESYSTEM",
            )
        for path, dataset in datasets.items():
            dataset.children = sorted(p for p in datasets if p.rpartition("/")[0] == path)

        all_exports = self.shape.list_exports()
        prefix = root + "/"
        exports = {e.id: e for e in all_exports if e.backing_path.startswith(prefix)}
        foreign = {e.id for e in all_exports if e.id not in exports}

        mappings = {
            m.id: m for m in self.shape.list_mappings()
            if m.export_id not in foreign
        }
        return RemoteResourceSet(datasets=datasets, exports=exports, mappings=mappings)

    def detect(
        self, include_datasets: bool = False, resources: Optional[RemoteResourceSet] = None
    ) -> List[Inconsistency]:
        """
        Report orphans.

        ``include_datasets`` adds volume datasets no export references; the
        dataset root, non-volume datasets and datasets with volume children
        are never reported.
        """
        resources = resources if resources is not None else self.fetch()
        found = resources.check_invariants()

        if include_datasets:
            exported = {e.backing_path for e in resources.exports.values()}
            for path, dataset in sorted(resources.datasets.items()):
                if path == self.config.dataset or dataset.type != "VOLUME" or path in exported:
                    continue
                if any(
                    child in resources.datasets and resources.datasets[child].type == "VOLUME"
                    for child in dataset.children
                ):
                    continue
                found.append(Inconsistency(
                    kind=InconsistencyKind.DATASET_WITHOUT_EXPORT,
                    resource_kind="dataset",
                    resource_id=path,
                    detail=f"volume dataset {path} has no export",
                ))

        for item in found:
            logger.warning(f"[{self.config.storage_id}] orphan {item.kind.value}: {item.resource_id}")
        return found

    def _lock_key(self, item: Inconsistency, resources: RemoteResourceSet) -> Optional[str]:
        """Dataset path whose volume lock guards the item; None for mappings of dead exports."""
        if item.kind == InconsistencyKind.EXPORT_WITHOUT_DATASET:
            return resources.exports[int(item.resource_id)].backing_path
        if item.kind == InconsistencyKind.DATASET_WITHOUT_EXPORT:
            return item.resource_id
        return None

    def _still_orphaned(self, item: Inconsistency, resources: RemoteResourceSet) -> bool:
        """Re-read the item's dependency; the bulk fetch is not a consistent snapshot."""
        if item.kind == InconsistencyKind.MAPPING_WITHOUT_EXPORT:
            export_id = resources.mappings[int(item.resource_id)].export_id
            return export_id not in {e.id for e in self.shape.list_exports()}
        if item.kind == InconsistencyKind.EXPORT_WITHOUT_DATASET:
            path = resources.exports[int(item.resource_id)].backing_path
            return not self.client.call("pool.dataset.query", [[["id", "=", path]]])
        return not self.shape.find_exports(item.resource_id)

    def _remove(self, item: Inconsistency, resources: RemoteResourceSet):
        if item.kind == InconsistencyKind.MAPPING_WITHOUT_EXPORT:
            self.shape.delete_mapping(resources.mappings[int(item.resource_id)])
        elif item.kind == InconsistencyKind.EXPORT_WITHOUT_DATASET:
            self.shape.delete_export(resources.exports[int(item.resource_id)])
        elif item.kind == InconsistencyKind.DATASET_WITHOUT_EXPORT:
            self.client.call(
                "pool.dataset.delete", [item.resource_id, {"recursive": True, "force": True}], wait_job=True
            )

    def _clean_one(self, item: Inconsistency, resources: RemoteResourceSet) -> ItemOutcome:
        outcome = dict(kind=item.kind.value, resource_id=item.resource_id)
        key = self._lock_key(item, resources)
        lock = self.locks.hold(key, blocking=False) if key else nullcontext()
        try:
            with lock:
                if not self._still_orphaned(item, resources):
                    logger.info(f"Skipping {item.resource_kind} {item.resource_id}: no longer orphaned")
                    return ItemOutcome(**outcome, success=False, skipped=True, error="no longer orphaned")
                self._remove(item, resources)
                logger.info(f"Removed orphan {item.resource_kind} {item.resource_id}")
        except OperationInProgressError:
            logger.warning(f"Skipping {item.resource_kind} {item.resource_id}: operation in progress on {key}")
            return ItemOutcome(**outcome, success=False, error=f"operation in progress on {key}")
        except NotFoundError:
            pass
        except ApplianceError as e:
            logger.error(f"Failed to remove orphan {item.resource_kind} {item.resource_id}: {e}")
            return ItemOutcome(**outcome, success=False, error=str(e))
        return ItemOutcome(**outcome, success=True)

    def cleanup(
        self, include_datasets: bool = False, resources: Optional[RemoteResourceSet] = None
    ) -> List[ItemOutcome]:
        """
        Delete detected orphans in dependency order; one outcome per orphan, failures included.

        Each item is removed under its volume's lock (never waiting for it)
        and only if it is still orphaned when re-read.
        """
        resources = resources if resources is not None else self.fetch()
        orphans = self.detect(include_datasets, resources)
        tags = [f"{o.resource_kind}:{o.resource_id}" for o in orphans]
        outcomes = []

        with self.events.track("orphan_cleanup", self.config.storage_id, tags):
            for kind in CLEANUP_ORDER:
                for item in (o for o in orphans if o.kind == kind):
                    outcomes.append(self._clean_one(item, resources))
        return outcomes
