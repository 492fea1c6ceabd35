"""
One configured storage, fully wired.

Bundles the appliance client, the transport-mode shape, the per-volume
lock registry, the event log, and the lifecycle, snapshot, orphan and
session components built on top of them.
"""

import json
import logging
from typing import Dict, List, Optional, Union

from zvol_agent.config import StorageConfig, TransportMode, settings
from zvol_agent.locks import OperationLockRegistry
from zvol_agent.lifecycle import VolumeLifecycleManager
from zvol_agent.models.events import SessionResult
from zvol_agent.models.resources import VolumeRef
from zvol_agent.orphans import OrphanReconciler
from zvol_agent.sessions import SessionRunner
from zvol_agent.snapshots import ArtifactStore, SnapshotEngine
from zvol_agent.transport_mode import select_shape
from zvol_agent.truenas_api.client import ApplianceClient
from zvol_agent.truenas_api.errors import ApplianceError, MissingDependencyError
from zvol_agent.truenas_api.metrics import EventLog

logger = logging.getLogger(__name__)

SERVICE_NAMES = {
    TransportMode.ISCSI: "iscsitarget",
    TransportMode.NVME_TCP: "nvmet",
}


class StorageBackend:

    def __init__(
        self,
        config: StorageConfig,
        client: Optional[ApplianceClient] = None,
        artifacts: Optional[ArtifactStore] = None,
        session_runner: Optional[SessionRunner] = None,
        events: Optional[EventLog] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.config = config
        self.client = client or ApplianceClient.from_config(config)
        self.events = events or EventLog(settings.event_log_size)
        self.locks = OperationLockRegistry()
        self.shape = select_shape(self.client, config)
        self.volumes = VolumeLifecycleManager(
            self.client, self.shape, config, self.locks, self.events, lock_timeout=lock_timeout
        )
        self.snapshots = SnapshotEngine(
            self.client, config, self.locks, self.events, artifacts=artifacts, lock_timeout=lock_timeout
        )
        self.orphans = OrphanReconciler(self.client, self.shape, config, self.events, self.locks)
        self.sessions = self.shape.session_manager(session_runner)

    @classmethod
    def from_config(cls, config: Union[StorageConfig, dict], **kwargs) -> "StorageBackend":
        if not isinstance(config, StorageConfig):
            config = StorageConfig(**config)
        return cls(config, **kwargs)

    @property
    def storage_id(self) -> str:
        return self.config.storage_id

    def check_service(self) -> bool:
        """True if the appliance's block service for our transport mode is running."""
        name = SERVICE_NAMES[self.config.transport_mode]
        records = self.client.call("service.query", [[["service", "=", name]]]) or []
        running = bool(records) and records[0].get("state") == "RUNNING"
        if not running:
            logger.warning(f"[{self.storage_id}] appliance service {name} is not running")
        return running

    def activate(self) -> SessionResult:
        """Verify the appliance is reachable and establish the local initiator sessions."""
        try:
            self.client.ping()
            self.check_service()
        except ApplianceError as e:
            logger.error(f"[{self.storage_id}] activation failed: {e}")
            return SessionResult(success=False, error=str(e))
        return self.sessions.establish()

    def deactivate(self) -> SessionResult:
        return self.sessions.teardown()

    def volname(self, ref: VolumeRef) -> str:
        """Host-facing volume id (``vol-<name>-lun<N>`` / ``vol-<name>-ns<uuid>``)."""
        exports = self.shape.find_exports(ref.dataset_path)
        if not exports:
            raise MissingDependencyError(
                f"No export for {ref.dataset_path}", error_code="ENOENT", resources=[ref.dataset_path]
            )
        export = exports[0]
        mapping = next((m for m in self.shape.list_mappings() if m.export_id == export.id), None)
        return self.shape.volname(export, mapping)

    def metrics(self) -> dict:
        return self.client.metrics.snapshot()

    def close(self):
        self.client.close()


def load_backends(path: str, **kwargs) -> Dict[str, StorageBackend]:
    """Build backends from a JSON file holding a list of storage config objects."""
    with open(path) as f:
        entries: List[dict] = json.load(f)
    backends = {}
    for entry in entries:
        backend = StorageBackend.from_config(entry, **kwargs)
        backends[backend.storage_id] = backend
        logger.info(
            f"Loaded storage {backend.storage_id} ({backend.config.transport_mode.value} via "
            f"{backend.config.api_transport.value}, root {backend.config.dataset})"
        )
    return backends
