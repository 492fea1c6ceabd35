"""
Volume lifecycle orchestration.

Create, resize, delete and clone run as fixed, ordered sequences of remote
calls under the volume's operation lock:

    create: dataset -> export -> mapping
    delete: mapping(s) -> export(s) -> dataset

Nothing is rolled back. A failure at step N leaves steps before N in place
and raises an error annotated with the step and the resources it touched;
the orphan reconciler picks up what is left.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from zvol_agent.config import StorageConfig
from zvol_agent.graph import parse_volume_name, volume_name
from zvol_agent.locks import OperationLockRegistry
from zvol_agent.models.resources import (
    BlockExport,
    ExportMapping,
    StorageStatus,
    VolumeRef,
    VolumeState,
)
from zvol_agent.transport_mode import ExportShape
from zvol_agent.truenas_api.client import ApplianceClient
from zvol_agent.truenas_api.errors import (
    AlreadyExistsError,
    ApplianceError,
    CapacityError,
    ConflictError,
    MissingDependencyError,
    NotFoundError,
    ShrinkNotSupportedError,
    StorageValidationError,
)
from zvol_agent.truenas_api.metrics import EventLog
from zvol_agent.utils import DEFAULT_BLOCKSIZE, align_size, format_bytes, normalize_value, to_int

logger = logging.getLogger(__name__)

# Space that must remain free on top of the requested bytes
SPACE_HEADROOM = 1.2

CLONE_SNAPSHOT_PREFIX = "__clone_"


def run_step(step: str, resources: List[str], fn: Callable, *args, **kwargs):
    """Run one remote step; NotFound becomes MissingDependencyError, every error gets the step."""
    try:
        return fn(*args, **kwargs)
    except NotFoundError as e:
        raise MissingDependencyError(
            e.message, error_code=e.error_code, status_code=e.status_code, step=step, resources=resources
        ) from e
    except ApplianceError as e:
        raise e.annotate(step, resources)


def run_delete_step(step: str, resources: List[str], fn: Callable, *args, **kwargs) -> bool:
    """Run one remote delete; NotFound counts as success. Returns False if it was already absent."""
    try:
        fn(*args, **kwargs)
        return True
    except NotFoundError:
        logger.info(f"{step}: {', '.join(resources)} already absent")
        return False
    except ApplianceError as e:
        raise e.annotate(step, resources)


class VolumeLifecycleManager:
    """Create/resize/delete/clone for the volumes of one storage."""

    def __init__(
        self,
        client: ApplianceClient,
        shape: ExportShape,
        config: StorageConfig,
        locks: Optional[OperationLockRegistry] = None,
        events: Optional[EventLog] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.client = client
        self.shape = shape
        self.config = config
        self.locks = locks or OperationLockRegistry()
        self.events = events or EventLog()
        self.lock_timeout = lock_timeout
        self._states: Dict[str, VolumeState] = {}
        self._states_lock = threading.Lock()

    # =========================================================================
    # State
    # =========================================================================

    def state(self, ref: VolumeRef) -> VolumeState:
        with self._states_lock:
            return self._states.get(ref.dataset_path, VolumeState.ABSENT)

    def _set_state(self, path: str, state: VolumeState):
        with self._states_lock:
            if state == VolumeState.ABSENT:
                self._states.pop(path, None)
            else:
                self._states[path] = state
        logger.debug(f"{path} -> {state.value}")

    # =========================================================================
    # Remote lookups
    # =========================================================================

    def _query_dataset(self, path: str) -> Optional[dict]:
        records = self.client.call("pool.dataset.query", [[["id", "=", path]]]) or []
        return records[0] if records else None

    def _root_dataset(self) -> dict:
        record = self._query_dataset(self.config.dataset)
        if record is None:
            raise MissingDependencyError(
                f"Dataset root {self.config.dataset} not found on appliance",
                error_code="ENOENT",
                resources=[self.config.dataset],
            )
        return record

    def _blocksize(self) -> int:
        return self.config.blocksize_bytes or DEFAULT_BLOCKSIZE

    def _preflight(self, required_bytes: int, path: str):
        available = to_int(self._root_dataset().get("available"))
        needed = int(required_bytes * SPACE_HEADROOM)
        if needed > available:
            raise CapacityError(
                f"Insufficient space on {self.config.dataset}: need {format_bytes(needed)} "
                f"(incl. headroom), {format_bytes(available)} available",
                error_code="INSUFFICIENT_SPACE",
                resources=[path],
            )

    def _validate(self, ref: VolumeRef):
        if ref.format != "raw":
            raise StorageValidationError(
                f"Unsupported format '{ref.format}'; only raw volumes are supported",
                error_code="UNSUPPORTED_FORMAT",
                resources=[ref.dataset_path],
            )
        if ref.dataset_root != self.config.dataset:
            raise StorageValidationError(
                f"Volume root {ref.dataset_root} does not belong to storage {self.config.storage_id}",
                error_code="WRONG_STORAGE",
                resources=[ref.dataset_path],
            )

    def _ensure_absent(self, path: str):
        if self._query_dataset(path) is not None:
            raise AlreadyExistsError(f"Volume {path} already exists", error_code="EEXIST", resources=[path])

    # =========================================================================
    # Provisioning steps shared by create and clone
    # =========================================================================

    def _ensure_export(self, path: str) -> BlockExport:
        existing = self.shape.find_exports(path)
        if existing:
            logger.warning(f"Reusing existing {self.shape.export_kind} {existing[0].id} for {path}")
            return existing[0]
        return self.shape.create_export(path)

    def _create_dataset(self, path: str, matches: Callable[[dict], bool], method: str, params: list):
        """
        Issue the call that creates ``path``.

        ``path`` was checked absent under the volume lock, so EEXIST after a
        retried attempt means an earlier attempt was applied. The dataset is
        adopted when ``matches`` accepts it; any other EEXIST is a conflict.
        """
        try:
            return self.client.call(method, params)
        except AlreadyExistsError as e:
            if e.attempts > 1:
                record = self._query_dataset(path)
                if record is not None and matches(record):
                    logger.warning(f"{method} for {path} was applied by an earlier attempt; adopting it")
                    return record
            raise ConflictError(
                f"{path} appeared while it was being created: {e.message}",
                error_code=e.error_code,
                status_code=e.status_code,
                resources=[path],
            ) from e

    def _provision(
        self, path: str, resources: List[str], create_dataset: Callable, *args
    ) -> Tuple[BlockExport, ExportMapping]:
        self._set_state(path, VolumeState.PROVISIONING)
        try:
            run_step("create dataset", [path], create_dataset, *args)

            export = run_step("create export", [path], self._ensure_export, path)
            resources.append(f"{self.shape.export_kind}:{export.id}")

            mapping = run_step("create mapping", list(resources), self.shape.create_mapping, export)
            resources.append(f"{self.shape.mapping_kind}:{mapping.id}")
        except ApplianceError as e:
            self._set_state(path, VolumeState.ERROR)
            logger.error(f"Provisioning {path} failed at '{e.step}': {e.message}")
            raise
        self._set_state(path, VolumeState.ACTIVE)
        return export, mapping

    # =========================================================================
    # Operations
    # =========================================================================

    def create(self, ref: VolumeRef) -> VolumeRef:
        """
        Create the dataset, export and mapping for ``ref``.

        Returns the VolumeRef with its size aligned to the volblocksize.

        Raises:
            StorageValidationError: bad format, wrong root, non-positive size
            AlreadyExistsError: the dataset already exists
            CapacityError: not enough space on the dataset root
            ApplianceError: a remote step failed (``step`` says which)
        """
        path = ref.dataset_path
        resources = [path]
        with self.locks.hold(path, timeout=self.lock_timeout), \
                self.events.track("create", self.config.storage_id, resources):
            self._validate(ref)
            if ref.size_bytes <= 0:
                raise StorageValidationError(
                    f"Volume size must be positive, got {ref.size_bytes}",
                    error_code="INVALID_SIZE",
                    resources=[path],
                )
            self._ensure_absent(path)

            blocksize = self._blocksize()
            size = align_size(ref.size_bytes, blocksize)
            self._preflight(size, path)

            payload = {
                "name": path,
                "type": "VOLUME",
                "volsize": size,
                "sparse": self.config.thin_provisioning,
            }
            if self.config.zvol_blocksize:
                payload["volblocksize"] = self.config.zvol_blocksize

            logger.info(f"Creating volume {path} ({format_bytes(size)})")
            def matches(record):
                return record.get("type") == "VOLUME" and to_int(record.get("volsize")) == size

            self._provision(path, resources, self._create_dataset, path, matches, "pool.dataset.create", [payload])
            logger.info(f"Created volume {path}")
            return ref.with_size(size)

    def resize(self, ref: VolumeRef, new_size: int) -> VolumeRef:
        """Grow the volume's dataset. Shrinking is rejected before any remote call."""
        path = ref.dataset_path
        if new_size < ref.size_bytes:
            raise ShrinkNotSupportedError(
                f"Cannot shrink {path} from {ref.size_bytes} to {new_size} bytes",
                error_code="SHRINK_NOT_SUPPORTED",
                resources=[path],
            )
        if new_size == ref.size_bytes:
            return ref

        resources = [path]
        with self.locks.hold(path, timeout=self.lock_timeout), \
                self.events.track("resize", self.config.storage_id, resources):
            record = self._query_dataset(path)
            if record is None:
                raise MissingDependencyError(f"Volume {path} not found", error_code="ENOENT", resources=[path])
            current = to_int(record.get("volsize"))
            size = align_size(new_size, self._blocksize())
            if size < current:
                raise ShrinkNotSupportedError(
                    f"Cannot shrink {path}: appliance size {current} exceeds requested {size}",
                    error_code="SHRINK_NOT_SUPPORTED",
                    resources=[path],
                )
            if size == current:
                return ref.with_size(size)

            self._preflight(size - current, path)

            self._set_state(path, VolumeState.RESIZING)
            try:
                run_step("resize dataset", [path], self.client.call, "pool.dataset.update", [path, {"volsize": size}])
            except ApplianceError:
                self._set_state(path, VolumeState.ERROR)
                raise
            self._set_state(path, VolumeState.ACTIVE)
            logger.info(f"Resized {path} to {format_bytes(size)}")
            return ref.with_size(size)

    def delete(self, ref: VolumeRef):
        """
        Delete mapping(s), export(s) and dataset, in that order.

        Anything already absent counts as deleted, so this is safe to repeat
        after a partial failure.
        """
        path = ref.dataset_path
        resources = [path]
        with self.locks.hold(path, timeout=self.lock_timeout), \
                self.events.track("delete", self.config.storage_id, resources):
            self._set_state(path, VolumeState.DELETING)
            try:
                exports = run_step("list exports", [path], self.shape.find_exports, path)
                mappings = run_step("list mappings", [path], self.shape.list_mappings) if exports else []
                export_ids = {e.id for e in exports}

                for mapping in mappings:
                    if mapping.export_id in export_ids:
                        tag = f"{self.shape.mapping_kind}:{mapping.id}"
                        resources.append(tag)
                        run_delete_step("delete mapping", [tag], self.shape.delete_mapping, mapping)

                for export in exports:
                    tag = f"{self.shape.export_kind}:{export.id}"
                    resources.append(tag)
                    run_delete_step("delete export", [tag], self.shape.delete_export, export)

                self._delete_dataset(path)
            except ApplianceError:
                self._set_state(path, VolumeState.ERROR)
                raise
            self._set_state(path, VolumeState.ABSENT)
            logger.info(f"Deleted volume {path}")

    def _delete_dataset(self, path: str):
        record = self._query_dataset(path)
        if record is None:
            logger.info(f"delete dataset: {path} already absent")
            return

        children = self.client.call("pool.dataset.query", [[["id", "^", path + "/"]]]) or []
        if children:
            raise ConflictError(
                f"Refusing to delete {path}: it has {len(children)} child dataset(s)",
                error_code="HAS_CHILDREN",
                step="delete dataset",
                resources=[path],
            )

        origin = normalize_value(record.get("origin"))
        run_delete_step(
            "delete dataset", [path],
            self.client.call, "pool.dataset.delete", [path, {"recursive": True, "force": True}], wait_job=True,
        )

        # Temporary snapshots taken for a clone go with the clone
        if isinstance(origin, str) and f"@{CLONE_SNAPSHOT_PREFIX}" in origin:
            run_delete_step("delete clone origin", [origin], self.client.call, "zfs.snapshot.delete", [origin])

    def clone(self, source: VolumeRef, target: VolumeRef, snapshot: Optional[str] = None) -> VolumeRef:
        """
        Create ``target`` as a copy-on-write clone of ``source``.

        Clones from ``snapshot`` when given, otherwise from a temporary
        snapshot of the source's live data (removed when the clone is deleted).
        Export and mapping are created exactly as in create().
        """
        src, dst = source.dataset_path, target.dataset_path
        resources = [src, dst]
        with self.locks.hold_many([src, dst], timeout=self.lock_timeout), \
                self.events.track("clone", self.config.storage_id, resources):
            self._validate(target)
            source_record = self._query_dataset(src)
            if source_record is None:
                raise MissingDependencyError(f"Clone source {src} not found", error_code="ENOENT", resources=[src])
            self._ensure_absent(dst)

            if snapshot is None:
                snapshot = f"{CLONE_SNAPSHOT_PREFIX}{target.name}"
                run_step(
                    "create clone snapshot", [f"{src}@{snapshot}"],
                    self.client.call, "zfs.snapshot.create", [{"dataset": src, "name": snapshot, "recursive": False}],
                )
                resources.append(f"{src}@{snapshot}")

            origin = f"{src}@{snapshot}"

            def matches(record):
                return normalize_value(record.get("origin")) == origin

            logger.info(f"Cloning {origin} to {dst}")
            self._provision(
                dst, resources,
                self._create_dataset, dst, matches, "zfs.snapshot.clone", [{"snapshot": origin, "dataset_dst": dst}],
            )
            return target.with_size(to_int(source_record.get("volsize")))

    # =========================================================================
    # Queries
    # =========================================================================

    def list_volumes(self, entity_id=None) -> List[VolumeRef]:
        """Volumes directly under the dataset root, optionally for one entity."""
        root = self.config.dataset
        records = self.client.call("pool.dataset.query", [[["id", "^", root + "/"], ["type", "=", "VOLUME"]]]) or []
        volumes = []
        for record in records:
            path = record.get("id") or record.get("name") or ""
            parent, _, leaf = path.rpartition("/")
            if parent != root:
                continue
            parsed = parse_volume_name(leaf)
            if parsed is None:
                continue
            owner, index = parsed
            if entity_id is not None:
                if leaf != volume_name(entity_id, index):
                    continue
                owner = str(entity_id)
            volumes.append(VolumeRef(
                entity_id=owner,
                disk_index=index,
                dataset_root=root,
                size_bytes=to_int(record.get("volsize")),
            ))
        return sorted(volumes, key=lambda v: (v.entity_id, v.disk_index))

    def volume_size(self, ref: VolumeRef) -> int:
        record = self._query_dataset(ref.dataset_path)
        if record is None:
            raise MissingDependencyError(f"Volume {ref.dataset_path} not found", error_code="ENOENT")
        return to_int(record.get("volsize"))

    def next_free_index(self, entity_id) -> int:
        used = {v.disk_index for v in self.list_volumes(entity_id)}
        index = 0
        while index in used:
            index += 1
        return index

    def storage_status(self) -> StorageStatus:
        """Capacity of the dataset root; ``active=False`` with the error when unreachable."""
        try:
            record = self._root_dataset()
        except ApplianceError as e:
            logger.error(f"Storage {self.config.storage_id} status check failed: {e}")
            return StorageStatus(active=False, error=f"{type(e).__name__}: {e}")

        available = to_int(record.get("available"))
        used = to_int(record.get("used"))
        quota = to_int(record.get("quota"))
        total = quota if quota else used + available
        return StorageStatus(total=total, available=available, used=used, active=True)
