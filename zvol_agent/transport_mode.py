"""
Block-export shapes for the two transport modes.

A shape knows which remote object kinds implement "export" and "mapping"
for its mode, how to build their payloads, and how to project the
appliance's records into BlockExport / ExportMapping. The lifecycle
manager and orphan reconciler only ever talk to a shape.

iSCSI:    export = iscsi.extent,    mapping = iscsi.targetextent
NVMe/TCP: export = nvmet.namespace, mapping = the namespace enabled in the
          configured subsystem (the projected mapping id is the namespace id)
"""

import logging
import re
import threading
from typing import Any, List, Optional

from zvol_agent.config import StorageConfig, TransportMode
from zvol_agent.graph import encode_volname
from zvol_agent.models.resources import BlockExport, ExportMapping
from zvol_agent.sessions import (
    DEFAULT_NVME_PORT,
    IscsiSessionManager,
    NvmeSessionManager,
    SessionRunner,
    parse_portal,
)
from zvol_agent.truenas_api.client import ApplianceClient
from zvol_agent.truenas_api.errors import ApplianceError, MissingDependencyError

logger = logging.getLogger(__name__)

ZVOL_PREFIX = "zvol/"


def _strip_zvol(device: Optional[str]) -> str:
    device = device or ""
    if device.startswith("/dev/"):
        device = device[len("/dev/"):]
    if device.startswith(ZVOL_PREFIX):
        device = device[len(ZVOL_PREFIX):]
    return device


def _record_id(record: Any) -> Any:
    return record.get("id") if isinstance(record, dict) else record


class ExportShape:
    """Common plumbing; subclasses fill in the remote object kinds."""

    mode: TransportMode
    export_kind = ""
    mapping_kind = ""

    def __init__(self, client: ApplianceClient, config: StorageConfig):
        self.client = client
        self.config = config
        self._target_id: Optional[int] = None
        self._target_lock = threading.Lock()

    def export_name(self, dataset_path: str) -> str:
        return dataset_path.rsplit("/", 1)[-1]

    def backing_device(self, dataset_path: str) -> str:
        return f"{ZVOL_PREFIX}{dataset_path}"

    def target_id(self) -> int:
        """Appliance id of the shared target/subsystem (resolved once, then cached)."""
        with self._target_lock:
            if self._target_id is None:
                self._target_id = self._resolve_target()
            return self._target_id

    def find_exports(self, dataset_path: str) -> List[BlockExport]:
        return [e for e in self.list_exports() if e.backing_path == dataset_path]

    def list_exports(self, dataset_root: Optional[str] = None) -> List[BlockExport]:
        exports = [self.project_export(r) for r in self._query_exports()]
        if dataset_root:
            prefix = dataset_root + "/"
            exports = [e for e in exports if e.backing_path.startswith(prefix)]
        return exports

    def session_manager(self, runner: Optional[SessionRunner] = None):
        raise NotImplementedError

    def _resolve_target(self) -> int:
        raise NotImplementedError

    def _query_exports(self) -> List[dict]:
        raise NotImplementedError

    def project_export(self, record: dict) -> BlockExport:
        raise NotImplementedError

    def list_mappings(self) -> List[ExportMapping]:
        raise NotImplementedError

    def create_export(self, dataset_path: str) -> BlockExport:
        raise NotImplementedError

    def delete_export(self, export: BlockExport):
        raise NotImplementedError

    def create_mapping(self, export: BlockExport) -> ExportMapping:
        raise NotImplementedError

    def delete_mapping(self, mapping: ExportMapping):
        raise NotImplementedError

    def volname(self, export: BlockExport, mapping: Optional[ExportMapping]) -> str:
        raise NotImplementedError


class IscsiShape(ExportShape):
    mode = TransportMode.ISCSI
    export_kind = "iscsi.extent"
    mapping_kind = "iscsi.targetextent"

    def _resolve_target(self) -> int:
        want = self.config.target_iqn
        targets = self.client.call("iscsi.target.query") or []
        if not targets:
            raise MissingDependencyError(
                f"Appliance returned no iSCSI targets; is the iSCSI service running and {want} configured?",
                error_code="NO_TARGETS",
            )
        basename = (self.client.call("iscsi.global.config") or {}).get("basename", "")

        for target in targets:
            name = target.get("name") or ""
            if target.get("iqn") == want:
                return target["id"]
            if basename and name and f"{basename}:{name}" == want:
                return target["id"]
            if name and want.endswith(f":{name}"):
                return target["id"]

        available = ", ".join(
            target.get("iqn") or (f"{basename}:{target.get('name')}" if basename else str(target.get("name")))
            for target in targets
        )
        raise MissingDependencyError(
            f"Could not resolve iSCSI target {want}; available: {available}",
            error_code="TARGET_NOT_FOUND",
        )

    def _query_exports(self) -> List[dict]:
        return self.client.call("iscsi.extent.query", [[["type", "=", "DISK"]]]) or []

    def project_export(self, record: dict) -> BlockExport:
        return BlockExport(
            id=record["id"],
            name=record.get("name") or "",
            backing_path=_strip_zvol(record.get("disk") or record.get("path")),
            enabled=record.get("enabled", True),
        )

    def _project_mapping(self, record: dict) -> ExportMapping:
        return ExportMapping(
            id=record["id"],
            export_id=record["extent"],
            target_id=record["target"],
            lun=record.get("lunid"),
        )

    def list_mappings(self) -> List[ExportMapping]:
        target_id = self.target_id()
        records = self.client.call("iscsi.targetextent.query", [[["target", "=", target_id]]]) or []
        return [self._project_mapping(r) for r in records]

    def create_export(self, dataset_path: str) -> BlockExport:
        payload = {
            "name": self.export_name(dataset_path),
            "type": "DISK",
            "disk": self.backing_device(dataset_path),
            "insecure_tpc": True,
        }
        record = self.client.call("iscsi.extent.create", [payload])
        logger.info(f"Created iSCSI extent {record['id']} for {dataset_path}")
        return self.project_export(record)

    def delete_export(self, export: BlockExport):
        # remove=False keeps the zvol, force=True tolerates lingering initiator sessions
        self.client.call("iscsi.extent.delete", [export.id, False, True])

    def create_mapping(self, export: BlockExport) -> ExportMapping:
        target_id = self.target_id()
        for mapping in self.list_mappings():
            if mapping.export_id == export.id:
                logger.info(f"Reusing target-extent mapping {mapping.id} for extent {export.id}")
                return mapping
        record = self.client.call("iscsi.targetextent.create", [{"target": target_id, "extent": export.id}])
        return self._project_mapping(record)

    def delete_mapping(self, mapping: ExportMapping):
        self.client.call("iscsi.targetextent.delete", [mapping.id, True])

    def volname(self, export: BlockExport, mapping: Optional[ExportMapping]) -> str:
        if mapping is None or mapping.lun is None:
            raise MissingDependencyError(f"Extent {export.name} has no LUN assigned", error_code="NO_LUN")
        return encode_volname(export.name, lun=mapping.lun)

    def session_manager(self, runner: Optional[SessionRunner] = None) -> IscsiSessionManager:
        return IscsiSessionManager(self.config, runner)


class NvmeShape(ExportShape):
    mode = TransportMode.NVME_TCP
    export_kind = "nvmet.namespace"
    mapping_kind = "nvmet.namespace"

    def _find_subsystem(self) -> Optional[int]:
        records = self.client.call("nvmet.subsys.query", [[["subnqn", "=", self.config.subsystem_nqn]]]) or []
        return records[0]["id"] if records else None

    def _resolve_target(self) -> int:
        subsys_id = self._find_subsystem()
        if subsys_id is not None:
            return subsys_id
        return self._create_subsystem()

    def _create_subsystem(self) -> int:
        nqn = self.config.subsystem_nqn
        name = nqn.rsplit(":", 1)[-1]
        name = re.sub(r"[^a-zA-Z0-9_\-]", "_", name)
        logger.info(f"Creating NVMe subsystem {nqn}")
        record = self.client.call("nvmet.subsys.create", [{
            "name": name,
            "subnqn": nqn,
            "allow_any_host": True,
        }])
        subsys_id = _record_id(record)

        for portal in self.config.all_portals:
            host, port = parse_portal(portal, DEFAULT_NVME_PORT)
            try:
                self.client.call("nvmet.port.create", [{
                    "subsys_id": subsys_id,
                    "trtype": "TCP",
                    "traddr": host,
                    "trsvcid": str(port),
                }])
            except ApplianceError as e:
                logger.warning(f"Failed to create NVMe port for {portal}: {e}")
        return subsys_id

    @staticmethod
    def _subsys_of(record: dict) -> Optional[int]:
        if record.get("subsys_id") is not None:
            return record["subsys_id"]
        subsys = record.get("subsys")
        return subsys.get("id") if isinstance(subsys, dict) else subsys

    def _query_exports(self) -> List[dict]:
        return self.client.call("nvmet.namespace.query", [[["device_type", "=", "ZVOL"]]]) or []

    def project_export(self, record: dict) -> BlockExport:
        backing = _strip_zvol(record.get("device_path"))
        return BlockExport(
            id=record["id"],
            name=backing.rsplit("/", 1)[-1],
            backing_path=backing,
            device_uuid=record.get("device_uuid"),
            enabled=bool(record.get("enabled", True)),
        )

    def _project_mapping(self, record: dict) -> ExportMapping:
        return ExportMapping(
            id=record["id"],
            export_id=record["id"],
            target_id=self._subsys_of(record),
            lun=record.get("nsid"),
        )

    def list_mappings(self) -> List[ExportMapping]:
        subsys_id = self._find_subsystem()
        if subsys_id is None:
            return []
        records = self.client.call("nvmet.namespace.query", [[["subsys_id", "=", subsys_id]]]) or []
        return [self._project_mapping(r) for r in records if r.get("enabled", True)]

    def create_export(self, dataset_path: str) -> BlockExport:
        subsys_id = self.target_id()
        record = self.client.call("nvmet.namespace.create", [{
            "device_type": "ZVOL",
            "device_path": self.backing_device(dataset_path),
            "subsys_id": subsys_id,
            "enabled": False,
        }])
        logger.info(f"Created NVMe namespace {record['id']} for {dataset_path}")
        return self.project_export(record)

    def delete_export(self, export: BlockExport):
        self.client.call("nvmet.namespace.delete", [export.id])

    def create_mapping(self, export: BlockExport) -> ExportMapping:
        record = self.client.call("nvmet.namespace.update", [export.id, {"enabled": True}])
        if not isinstance(record, dict):
            record = {"id": export.id, "subsys_id": self.target_id(), "enabled": True}
        return self._project_mapping(record)

    def delete_mapping(self, mapping: ExportMapping):
        self.client.call("nvmet.namespace.update", [mapping.export_id, {"enabled": False}])

    def volname(self, export: BlockExport, mapping: Optional[ExportMapping]) -> str:
        if not export.device_uuid:
            raise MissingDependencyError(f"Namespace {export.id} has no device uuid", error_code="NO_UUID")
        return encode_volname(export.name, ns_uuid=export.device_uuid)

    def session_manager(self, runner: Optional[SessionRunner] = None) -> NvmeSessionManager:
        return NvmeSessionManager(self.config, runner)


def select_shape(client: ApplianceClient, config: StorageConfig) -> ExportShape:
    if config.transport_mode == TransportMode.NVME_TCP:
        return NvmeShape(client, config)
    return IscsiShape(client, config)
