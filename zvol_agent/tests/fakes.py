"""In-memory stand-ins for the appliance, the initiator tools and the artifact store."""

import itertools
import threading
from collections import defaultdict, deque

from zvol_agent.backend import StorageBackend
from zvol_agent.config import StorageConfig
from zvol_agent.truenas_api.client import ApplianceClient
from zvol_agent.truenas_api.endpoints import apply_filters
from zvol_agent.truenas_api.errors import map_appliance_error
from zvol_agent.truenas_api.throttler import RetryPolicy
from zvol_agent.truenas_api.transports import Transport

GiB = 1024 ** 3
ROOT = "tank/proxmox"
IQN = "iqn.2005-10.org.freenas.ctl:proxmox"
NQN = "nqn.2011-06.com.truenas:uuid:proxmox"


def prop(value):
    return {"parsed": value, "rawvalue": str(value), "value": str(value)}


def err(errname, reason):
    return map_appliance_error({"code": -32001, "data": {"errname": errname, "reason": reason}})


class FakeAppliance(Transport):
    """
    Implements the middleware methods the agent uses, keeping state in dicts.

    ``fail(method, exc, times)`` makes the next ``times`` calls of ``method``
    raise ``exc`` before touching state. ``calls`` records every request.
    """

    name = "fake"

    def __init__(self, available=100 * GiB, root=ROOT):
        self.root = root
        self.calls = []
        self.datasets = {}
        self.extents = {}
        self.targetextents = {}
        self.snapshots = {}
        self.subsystems = {}
        self.ports = {}
        self.namespaces = {}
        self.services = {"iscsitarget": "RUNNING", "nvmet": "RUNNING"}
        self.targets = [{"id": 1, "name": "proxmox", "alias": None}]
        self.basename = "iqn.2005-10.org.freenas.ctl"
        self._failures = defaultdict(deque)
        self._late_failures = defaultdict(deque)
        self._ids = defaultdict(lambda: itertools.count(1))
        self._clock = itertools.count(1_700_000_000, 60)
        self._lock = threading.Lock()
        self.hooks = {}
        self.add_dataset(root, type="FILESYSTEM", available=available)

    # ---- setup helpers ----

    def add_dataset(self, path, type="VOLUME", volsize=0, available=0, origin=None):
        self.datasets[path] = {
            "id": path,
            "name": path,
            "type": type,
            "volsize": prop(volsize),
            "available": prop(available),
            "used": prop(volsize),
            "quota": prop(0),
            "origin": prop(origin) if origin else {"parsed": None, "rawvalue": "-", "value": "-"},
        }
        return self.datasets[path]

    def add_extent(self, path, name=None):
        ext_id = next(self._ids["extent"])
        self.extents[ext_id] = {
            "id": ext_id, "name": name or path.rsplit("/", 1)[-1], "type": "DISK", "disk": f"zvol/{path}",
        }
        return ext_id

    def add_targetextent(self, extent_id, target=1, lunid=None):
        te_id = next(self._ids["targetextent"])
        if lunid is None:
            used = {t["lunid"] for t in self.targetextents.values() if t["target"] == target}
            lunid = next(i for i in itertools.count() if i not in used)
        self.targetextents[te_id] = {"id": te_id, "target": target, "extent": extent_id, "lunid": lunid}
        return te_id

    def add_snapshot(self, path, name, holds=None, vmstate=False):
        full = f"{path}@{name}"
        props = {"creation": {"rawvalue": str(next(self._clock)), "parsed": None}}
        if vmstate:
            props["org.zvol-agent:vmstate"] = {"value": "1", "rawvalue": "1", "parsed": "1", "source": "LOCAL"}
        self.snapshots[full] = {
            "id": full, "name": full, "dataset": path, "snapshot_name": name,
            "properties": props, "holds": dict(holds or {}),
        }
        return full

    def fail(self, method, exc, times=1):
        for _ in range(times):
            self._failures[method].append(exc)

    def fail_after_apply(self, method, exc, times=1):
        """The call takes effect on the appliance, then the caller sees ``exc``."""
        for _ in range(times):
            self._late_failures[method].append(exc)

    def methods(self):
        return [m for m, _ in self.calls]

    def mutating_calls(self):
        return [m for m in self.methods() if not m.endswith((".query", ".config", ".get_instance")) and m != "core.ping"]

    # ---- transport ----

    def request(self, method, params, timeout):
        with self._lock:
            self.calls.append((method, params))
            hook = self.hooks.get(method)
            if hook:
                hook(method, params)
            if self._failures[method]:
                raise self._failures[method].popleft()
            handler = getattr(self, "_" + method.replace(".", "_"), None)
            if handler is None:
                raise err("EINVAL", f"Method {method} not implemented by fake")
            result = handler(*params)
            if self._late_failures[method]:
                raise self._late_failures[method].popleft()
            return result

    # ---- core / service ----

    def _core_ping(self):
        return "pong"

    def _core_get_jobs(self, filters=None, options=None):
        return []

    def _service_query(self, filters=None, options=None):
        records = [{"id": i, "service": k, "state": v} for i, (k, v) in enumerate(self.services.items())]
        return apply_filters(records, filters)

    # ---- datasets ----

    def _pool_dataset_query(self, filters=None, options=None):
        return apply_filters([dict(d) for d in self.datasets.values()], filters)

    def _pool_dataset_create(self, payload):
        path = payload["name"]
        if path in self.datasets:
            raise err("EEXIST", f"Dataset {path} already exists")
        if path.rpartition("/")[0] not in self.datasets:
            raise err("ENOENT", f"Parent dataset of {path} does not exist")
        record = self.add_dataset(path, type=payload.get("type", "FILESYSTEM"), volsize=payload.get("volsize", 0))
        return dict(record)

    def _pool_dataset_update(self, path, payload):
        if path not in self.datasets:
            raise err("ENOENT", f"Dataset {path} does not exist")
        if "volsize" in payload:
            self.datasets[path]["volsize"] = prop(payload["volsize"])
        return dict(self.datasets[path])

    def _pool_dataset_delete(self, path, options=None):
        if path not in self.datasets:
            raise err("ENOENT", f"Dataset {path} does not exist")
        for snap in self.snapshots.values():
            if snap["dataset"] == path and snap["holds"]:
                raise err("EBUSY", f"Snapshot {snap['name']} is held")
        del self.datasets[path]
        for full in [s for s, rec in self.snapshots.items() if rec["dataset"] == path]:
            del self.snapshots[full]
        return True

    # ---- iSCSI ----

    def _iscsi_global_config(self):
        return {"id": 1, "basename": self.basename}

    def _iscsi_target_query(self, filters=None, options=None):
        return apply_filters([dict(t) for t in self.targets], filters)

    def _iscsi_extent_query(self, filters=None, options=None):
        return apply_filters([dict(e) for e in self.extents.values()], filters)

    def _iscsi_extent_create(self, payload):
        path = payload["disk"][len("zvol/"):]
        if path not in self.datasets:
            raise err("ENOENT", f"Zvol {path} does not exist")
        ext_id = self.add_extent(path, payload["name"])
        return dict(self.extents[ext_id])

    def _iscsi_extent_delete(self, ext_id, remove=False, force=False):
        if ext_id not in self.extents:
            raise err("ENOENT", f"Extent {ext_id} does not exist")
        del self.extents[ext_id]
        return True

    def _iscsi_targetextent_query(self, filters=None, options=None):
        return apply_filters([dict(t) for t in self.targetextents.values()], filters)

    def _iscsi_targetextent_create(self, payload):
        if payload["extent"] not in self.extents:
            raise err("ENOENT", f"Extent {payload['extent']} does not exist")
        te_id = self.add_targetextent(payload["extent"], payload["target"])
        return dict(self.targetextents[te_id])

    def _iscsi_targetextent_delete(self, te_id, force=False):
        if te_id not in self.targetextents:
            raise err("ENOENT", f"Target-extent {te_id} does not exist")
        del self.targetextents[te_id]
        return True

    # ---- snapshots ----

    def _zfs_snapshot_query(self, filters=None, options=None):
        return apply_filters([dict(s) for s in self.snapshots.values()], filters)

    def _zfs_snapshot_create(self, payload):
        path, name = payload["dataset"], payload["name"]
        if path not in self.datasets:
            raise err("ENOENT", f"Dataset {path} does not exist")
        if f"{path}@{name}" in self.snapshots:
            raise err("EEXIST", f"Snapshot {path}@{name} already exists")
        vmstate = (payload.get("properties") or {}).get("org.zvol-agent:vmstate") == "1"
        full = self.add_snapshot(path, name, vmstate=vmstate)
        return dict(self.snapshots[full])

    def _zfs_snapshot_delete(self, full, options=None):
        if full not in self.snapshots:
            raise err("ENOENT", f"Snapshot {full} does not exist")
        if self.snapshots[full]["holds"]:
            raise err("EBUSY", f"Snapshot {full} is held")
        if any(d["origin"]["parsed"] == full for d in self.datasets.values()):
            raise err("EBUSY", f"Snapshot {full} has dependent clones")
        del self.snapshots[full]
        return True

    def _zfs_snapshot_hold(self, full, options=None):
        if full not in self.snapshots:
            raise err("ENOENT", f"Snapshot {full} does not exist")
        self.snapshots[full]["holds"]["truenas"] = 1
        return None

    def _zfs_snapshot_release(self, full, options=None):
        if full not in self.snapshots:
            raise err("ENOENT", f"Snapshot {full} does not exist")
        self.snapshots[full]["holds"] = {}
        return None

    def _zfs_snapshot_clone(self, payload):
        snap, dst = payload["snapshot"], payload["dataset_dst"]
        if snap not in self.snapshots:
            raise err("ENOENT", f"Snapshot {snap} does not exist")
        if dst in self.datasets:
            raise err("EEXIST", f"Dataset {dst} already exists")
        source = self.datasets[self.snapshots[snap]["dataset"]]
        self.add_dataset(dst, type="VOLUME", volsize=source["volsize"]["parsed"], origin=snap)
        return True

    def _zfs_snapshot_rollback(self, full, options=None):
        options = options or {}
        if full not in self.snapshots:
            raise err("ENOENT", f"Snapshot {full} does not exist")
        path = self.snapshots[full]["dataset"]
        created = int(self.snapshots[full]["properties"]["creation"]["rawvalue"])
        newer = [
            s for s, rec in self.snapshots.items()
            if rec["dataset"] == path and int(rec["properties"]["creation"]["rawvalue"]) > created
        ]
        if any(d["origin"]["parsed"] in newer for d in self.datasets.values()):
            raise map_appliance_error(f"cannot rollback to '{full}': clones of previous snapshots exist")
        if newer and not options.get("recursive"):
            raise map_appliance_error(
                f"cannot rollback to '{full}': more recent snapshots or bookmarks exist"
            )
        if any(self.snapshots[s]["holds"] for s in newer):
            raise err("EBUSY", "dataset is busy")
        for snap in newer:
            del self.snapshots[snap]
        return None

    # ---- NVMe-oF ----

    def _nvmet_subsys_query(self, filters=None, options=None):
        return apply_filters([dict(s) for s in self.subsystems.values()], filters)

    def _nvmet_subsys_create(self, payload):
        sub_id = next(self._ids["subsys"])
        self.subsystems[sub_id] = {"id": sub_id, **payload}
        return dict(self.subsystems[sub_id])

    def _nvmet_port_create(self, payload):
        port_id = next(self._ids["port"])
        self.ports[port_id] = {"id": port_id, **payload}
        return dict(self.ports[port_id])

    def _nvmet_namespace_query(self, filters=None, options=None):
        return apply_filters([dict(n) for n in self.namespaces.values()], filters)

    def _nvmet_namespace_create(self, payload):
        path = payload["device_path"][len("zvol/"):]
        if path not in self.datasets:
            raise err("ENOENT", f"Zvol {path} does not exist")
        ns_id = next(self._ids["namespace"])
        nsid = len([n for n in self.namespaces.values() if n["subsys_id"] == payload["subsys_id"]]) + 1
        self.namespaces[ns_id] = {
            "id": ns_id,
            "nsid": nsid,
            "device_uuid": f"{ns_id:08x}-0000-4000-8000-{ns_id:012x}",
            **payload,
        }
        return dict(self.namespaces[ns_id])

    def _nvmet_namespace_update(self, ns_id, payload):
        if ns_id not in self.namespaces:
            raise err("ENOENT", f"Namespace {ns_id} does not exist")
        self.namespaces[ns_id].update(payload)
        return dict(self.namespaces[ns_id])

    def _nvmet_namespace_delete(self, ns_id):
        if ns_id not in self.namespaces:
            raise err("ENOENT", f"Namespace {ns_id} does not exist")
        del self.namespaces[ns_id]
        return True


class FakeRunner:
    """Records initiator commands; ``responses`` maps a command prefix tuple to (code, stdout, stderr)."""

    def __init__(self, responses=None):
        self.commands = []
        self.responses = dict(responses or {})

    def run(self, cmd):
        self.commands.append(list(cmd))
        best = None
        for prefix, response in self.responses.items():
            if tuple(cmd[:len(prefix)]) == tuple(prefix):
                if best is None or len(prefix) > len(best[0]):
                    best = (prefix, response)
        return best[1] if best else (0, "", "")


class MemoryArtifactStore:

    def __init__(self):
        self.blobs = {}

    def save(self, key, data):
        self.blobs[key] = data

    def load(self, key):
        return self.blobs.get(key)

    def delete(self, key):
        self.blobs.pop(key, None)


def make_config(**overrides):
    values = {
        "storage_id": "tn1",
        "api_host": "10.0.0.5",
        "api_key": "1-secret",
        "dataset": ROOT,
        "target_iqn": IQN,
        "discovery_portal": "10.0.0.5:3260",
    }
    values.update(overrides)
    return StorageConfig(**values)


def make_nvme_config(**overrides):
    values = {
        "transport_mode": "nvme-tcp",
        "target_iqn": None,
        "subsystem_nqn": NQN,
        "discovery_portal": "10.0.0.5:4420",
    }
    values.update(overrides)
    return make_config(**values)


def make_client(transport, sleeps=None, **kwargs):
    """Client with zero-jitter backoff and a no-op sleep that records delays."""
    sleeps = sleeps if sleeps is not None else []
    kwargs.setdefault("retry_policy", RetryPolicy(max_retries=3, base_delay=0.01, max_delay=1.0, rand=lambda a, b: 0))
    kwargs.setdefault("sleep", sleeps.append)
    return ApplianceClient(transport, **kwargs)


def make_backend(transport, config=None, **kwargs):
    kwargs.setdefault("artifacts", MemoryArtifactStore())
    kwargs.setdefault("session_runner", FakeRunner())
    return StorageBackend(config or make_config(), client=make_client(transport), **kwargs)
