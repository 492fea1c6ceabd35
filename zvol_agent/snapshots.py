"""
Snapshot management for volumes.

Snapshots are plain ZFS snapshots of the volume dataset. Two optional
attributes are stored on the appliance itself so they survive restarts:

- protected: a ZFS user hold on the snapshot
- vmstate:   the VMSTATE_PROPERTY user property; the state blob lives in
             the host's ArtifactStore under artifact_key(volume, snapshot)
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Union

from zvol_agent.config import StorageConfig
from zvol_agent.lifecycle import run_delete_step, run_step
from zvol_agent.locks import OperationLockRegistry
from zvol_agent.models.events import ItemOutcome
from zvol_agent.models.resources import SnapshotRef, VolumeRef
from zvol_agent.truenas_api.client import ApplianceClient
from zvol_agent.truenas_api.errors import (
    ApplianceError,
    ConflictError,
    MissingDependencyError,
    SnapshotProtectedError,
    StorageValidationError,
)
from zvol_agent.truenas_api.metrics import EventLog
from zvol_agent.utils import normalize_value

logger = logging.getLogger(__name__)

VMSTATE_PROPERTY = "org.zvol-agent:vmstate"

_SNAPSHOT_NAME_RE = re.compile(r"^[A-Za-z0-9_.:\-]+$")


class ArtifactStore:
    """Host-provided storage for VM-state blobs of live snapshots."""

    def save(self, key: str, data: bytes):
        raise NotImplementedError

    def load(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError


def artifact_key(volume_path: str, snapshot: str) -> str:
    return f"{volume_path.replace('/', '_')}@{snapshot}.vmstate"


def _creation_time(record: dict) -> datetime:
    creation = (record.get("properties") or {}).get("creation")
    if isinstance(creation, dict):
        raw = creation.get("rawvalue")
        if raw is not None and str(raw).isdigit():
            return datetime.fromtimestamp(int(raw), tz=timezone.utc)
        parsed = creation.get("parsed")
        if isinstance(parsed, dict) and "$date" in parsed:
            return datetime.fromtimestamp(parsed["$date"] / 1000, tz=timezone.utc)
    elif creation is not None and str(creation).isdigit():
        return datetime.fromtimestamp(int(creation), tz=timezone.utc)
    return datetime.fromtimestamp(0, tz=timezone.utc)


def _project_snapshot(record: dict) -> SnapshotRef:
    full = record.get("name") or record.get("id")
    volume_path, _, name = full.partition("@")
    holds = record.get("holds") or {}
    props = record.get("properties") or {}
    return SnapshotRef(
        volume_path=volume_path,
        name=name,
        creation_time=_creation_time(record),
        protected=bool(holds),
        has_vmstate=str(normalize_value(props.get(VMSTATE_PROPERTY))) == "1",
    )


def select_for_retention(
    snapshots: Iterable[SnapshotRef],
    max_count: Optional[int] = None,
    max_age: Union[timedelta, float, None] = None,
    now: Optional[datetime] = None,
) -> List[SnapshotRef]:
    """
    Pick snapshots to delete, oldest first.

    Protected snapshots are never selected and do not count toward
    ``max_count``: the count limit applies to unprotected snapshots only.
    Selection is every unprotected snapshot beyond the ``max_count`` most
    recent, plus every unprotected snapshot older than ``max_age``.
    """
    candidates = sorted((s for s in snapshots if not s.protected), key=lambda s: (s.creation_time, s.name))
    selected = {}

    if max_count is not None:
        excess = len(candidates) - max(max_count, 0)
        for snap in candidates[:max(excess, 0)]:
            selected[snap.full_name] = snap

    if max_age is not None:
        if not isinstance(max_age, timedelta):
            max_age = timedelta(seconds=max_age)
        cutoff = (now or datetime.now(timezone.utc)) - max_age
        for snap in candidates:
            if snap.creation_time < cutoff:
                selected[snap.full_name] = snap

    return sorted(selected.values(), key=lambda s: (s.creation_time, s.name))


class SnapshotEngine:
    """Snapshot create/rollback/delete/list/retention for one storage."""

    def __init__(
        self,
        client: ApplianceClient,
        config: StorageConfig,
        locks: Optional[OperationLockRegistry] = None,
        events: Optional[EventLog] = None,
        artifacts: Optional[ArtifactStore] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.client = client
        self.config = config
        self.locks = locks or OperationLockRegistry()
        self.events = events or EventLog()
        self.artifacts = artifacts
        self.lock_timeout = lock_timeout

    def _discard_artifact(self, volume_path: str, name: str):
        if self.artifacts is None:
            return
        try:
            self.artifacts.delete(artifact_key(volume_path, name))
        except Exception as e:
            logger.error(f"Failed to remove vmstate artifact for {volume_path}@{name}: {e}")

    def list(self, ref: VolumeRef) -> List[SnapshotRef]:
        path = ref.dataset_path
        records = self.client.call(
            "zfs.snapshot.query",
            [[["dataset", "=", path]], {"extra": {"holds": True, "user_properties": True}}],
        ) or []
        snaps = [_project_snapshot(r) for r in records]
        return sorted((s for s in snaps if s.volume_path == path), key=lambda s: (s.creation_time, s.name))

    def get(self, ref: VolumeRef, name: str) -> Optional[SnapshotRef]:
        full = f"{ref.dataset_path}@{name}"
        records = self.client.call(
            "zfs.snapshot.query",
            [[["id", "=", full]], {"extra": {"holds": True, "user_properties": True}}],
        ) or []
        return _project_snapshot(records[0]) if records else None

    def create(
        self,
        ref: VolumeRef,
        name: str,
        protected: bool = False,
        vmstate: Optional[bytes] = None,
    ) -> SnapshotRef:
        """
        Snapshot the volume. ``vmstate`` makes it a live snapshot; the blob
        is written to the artifact store before the snapshot is taken and
        removed again if the snapshot fails.
        """
        path = ref.dataset_path
        full = f"{path}@{name}"
        if not _SNAPSHOT_NAME_RE.match(name):
            raise StorageValidationError(f"Invalid snapshot name '{name}'", error_code="INVALID_NAME", resources=[full])
        if vmstate is not None:
            if not self.config.enable_live_snapshots:
                raise StorageValidationError(
                    f"Live snapshots are disabled for storage {self.config.storage_id}",
                    error_code="LIVE_SNAPSHOTS_DISABLED",
                    resources=[full],
                )
            if self.artifacts is None:
                raise StorageValidationError(
                    "Live snapshot requested but no artifact store is configured",
                    error_code="NO_ARTIFACT_STORE",
                    resources=[full],
                )

        resources = [full]
        with self.locks.hold(path, timeout=self.lock_timeout), \
                self.events.track("snapshot_create", self.config.storage_id, resources):
            payload = {"dataset": path, "name": name, "recursive": False}
            if vmstate is not None:
                self.artifacts.save(artifact_key(path, name), vmstate)
                payload["properties"] = {VMSTATE_PROPERTY: "1"}

            try:
                run_step("create snapshot", [full], self.client.call, "zfs.snapshot.create", [payload], wait_job=True)
            except ApplianceError:
                if vmstate is not None:
                    self._discard_artifact(path, name)
                raise

            if protected:
                run_step("hold snapshot", [full], self.client.call, "zfs.snapshot.hold", [full])

            logger.info(f"Created snapshot {full}{' (protected)' if protected else ''}")
            return SnapshotRef(
                volume_path=path,
                name=name,
                creation_time=datetime.now(timezone.utc),
                protected=protected,
                has_vmstate=vmstate is not None,
            )

    def rollback(self, ref: VolumeRef, name: str, destroy_newer: bool = True) -> Optional[bytes]:
        """
        Roll the volume back to ``name``.

        Newer snapshots are destroyed when ``destroy_newer`` is set (their
        vmstate artifacts too); otherwise their presence is a conflict.
        Dependent clones are always a conflict. Returns the snapshot's
        vmstate blob for live snapshots.
        """
        path = ref.dataset_path
        full = f"{path}@{name}"
        resources = [full]
        with self.locks.hold(path, timeout=self.lock_timeout), \
                self.events.track("snapshot_rollback", self.config.storage_id, resources):
            before = {s.name: s for s in self.list(ref)}
            if name not in before:
                raise MissingDependencyError(
                    f"Snapshot {full} not found", error_code="ENOENT", step="rollback snapshot", resources=[full]
                )

            try:
                self.client.call("zfs.snapshot.rollback", [full, {"force": True, "recursive": False}])
            except ConflictError as e:
                if not destroy_newer or "more recent snapshots" not in e.message.lower():
                    raise e.annotate("rollback snapshot", [full])
                logger.warning(f"Rolling back {full} destroys newer snapshots")
                run_step(
                    "rollback snapshot", [full],
                    self.client.call, "zfs.snapshot.rollback", [full, {"force": True, "recursive": True}],
                )
            except ApplianceError as e:
                raise e.annotate("rollback snapshot", [full])

            after = {s.name for s in self.list(ref)}
            for removed in sorted(set(before) - after):
                logger.info(f"Rollback of {path} removed snapshot {removed}")
                if before[removed].has_vmstate:
                    self._discard_artifact(path, removed)

            if before[name].has_vmstate and self.artifacts is not None:
                return self.artifacts.load(artifact_key(path, name))
            return None

    def delete(self, ref: VolumeRef, name: str, force: bool = False) -> bool:
        """
        Delete a snapshot. Returns False if it was already absent.

        Protected snapshots need ``force=True``; the hold is released first.
        """
        path = ref.dataset_path
        full = f"{path}@{name}"
        resources = [full]
        with self.locks.hold(path, timeout=self.lock_timeout), \
                self.events.track("snapshot_delete", self.config.storage_id, resources):
            snap = self.get(ref, name)
            if snap is None:
                logger.info(f"Snapshot {full} already absent")
                self._discard_artifact(path, name)
                return False

            if snap.protected:
                if not force:
                    raise SnapshotProtectedError(
                        f"Snapshot {full} is protected; pass force to delete it",
                        error_code="PROTECTED",
                        resources=[full],
                    )
                run_delete_step("release hold", [full], self.client.call, "zfs.snapshot.release", [full])

            deleted = run_delete_step("delete snapshot", [full], self.client.call, "zfs.snapshot.delete", [full], wait_job=True)
            if snap.has_vmstate and self.artifacts is not None:
                self.artifacts.delete(artifact_key(path, name))
            return deleted

    def apply_retention(
        self,
        ref: VolumeRef,
        max_count: Optional[int] = None,
        max_age: Union[timedelta, float, None] = None,
        now: Optional[datetime] = None,
    ) -> List[ItemOutcome]:
        """Delete what select_for_retention picks, one snapshot at a time, continuing past failures."""
        outcomes = []
        for snap in select_for_retention(self.list(ref), max_count, max_age, now):
            try:
                self.delete(ref, snap.name)
                outcomes.append(ItemOutcome(kind="snapshot", resource_id=snap.full_name, success=True))
            except ApplianceError as e:
                logger.error(f"Retention failed to delete {snap.full_name}: {e}")
                outcomes.append(ItemOutcome(kind="snapshot", resource_id=snap.full_name, success=False, error=str(e)))
        return outcomes
