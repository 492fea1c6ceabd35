"""
Resource graph naming and drift detection.

Pure functions only: deterministic names derived from a VolumeRef, the
host-facing volume id encoding, and the diff between what the appliance
reports and what a set of VolumeRefs expects.
"""

import hashlib
import re
from collections import namedtuple
from typing import Iterable, List, Optional, Tuple

from zvol_agent.models.resources import (
    ExpectedChain,
    Inconsistency,
    InconsistencyKind,
    RemoteResourceSet,
    VolumeRef,
)

# ZFS limits a full dataset name to 255 bytes; keep the leaf well below that
# so realistic dataset roots still fit.
MAX_NAME_LENGTH = 128

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._\-]+")
_VOLUME_NAME_RE = re.compile(r"^vm-(.+)-disk-(\d+)$")
_LUN_VOLNAME_RE = re.compile(r"^vol-([A-Za-z0-9:_.\-]+)-lun(\d+)$")
_NS_VOLNAME_RE = re.compile(r"^vol-([A-Za-z0-9:_.\-]+)-ns([a-f0-9\-]+)$")

VolnameInfo = namedtuple("VolnameInfo", ["name", "lun", "ns_uuid"])


def sanitize_component(value) -> str:
    """Collapse every run of characters ZFS dislikes into a single ``_``."""
    cleaned = _UNSAFE_CHARS.sub("_", str(value))
    if not cleaned:
        return "_"
    if cleaned[0] in ".-":
        cleaned = "_" + cleaned
    return cleaned


def volume_name(entity_id, disk_index: int) -> str:
    """
    Leaf dataset name for a VolumeRef: ``vm-<entity>-disk-<index>``.

    Entity ids that needed escaping, or are too long, get a short digest of
    the original id appended, so "a b", "a/b" and "a_b" map to distinct names.
    """
    if disk_index < 0:
        raise ValueError(f"disk index must be >= 0, got {disk_index}")
    raw = str(entity_id)
    entity = sanitize_component(raw)
    suffix = f"-disk-{disk_index}"
    name = f"vm-{entity}{suffix}"
    if entity != raw or len(name) > MAX_NAME_LENGTH:
        digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()[:8]
        room = MAX_NAME_LENGTH - len("vm-") - len(suffix) - len(digest) - 1
        name = f"vm-{entity[:room]}_{digest}{suffix}"
    return name


def parse_volume_name(name: str) -> Optional[Tuple[str, int]]:
    """(entity component, disk_index) of a volume_name result, or None."""
    match = _VOLUME_NAME_RE.match(name)
    if not match:
        return None
    return match.group(1), int(match.group(2))


def encode_volname(name: str, lun: Optional[int] = None, ns_uuid: Optional[str] = None) -> str:
    """Host-facing volume id: ``vol-<name>-lun<N>`` or ``vol-<name>-ns<uuid>``."""
    if ns_uuid:
        return f"vol-{name}-ns{ns_uuid}"
    if lun is None:
        raise ValueError("either lun or ns_uuid is required")
    return f"vol-{name}-lun{lun}"


def parse_volname(volname: str) -> VolnameInfo:
    match = _NS_VOLNAME_RE.match(volname)
    if match:
        return VolnameInfo(match.group(1), None, match.group(2))
    match = _LUN_VOLNAME_RE.match(volname)
    if match:
        return VolnameInfo(match.group(1), int(match.group(2)), None)
    raise ValueError(f"unable to parse volume name '{volname}'")


def expected_chain(ref: VolumeRef, shape, mapping_id: Optional[int] = None) -> ExpectedChain:
    return ExpectedChain(
        dataset_path=ref.dataset_path,
        export_name=shape.export_name(ref.dataset_path),
        backing_path=ref.dataset_path,
        mapping_id=mapping_id,
    )


def diff(resources: RemoteResourceSet, expected: Iterable[VolumeRef], shape) -> List[Inconsistency]:
    """
    Compare the remote graph with the chains the given VolumeRefs expect.

    Reports broken references first, then per-volume gaps, then volume
    datasets nobody expects and nothing exports.
    """
    found = resources.check_invariants()
    expected_paths = set()

    for ref in expected:
        chain = expected_chain(ref, shape)
        expected_paths.add(chain.dataset_path)

        if chain.dataset_path not in resources.datasets:
            found.append(Inconsistency(
                kind=InconsistencyKind.MISSING_DATASET,
                resource_kind="dataset",
                resource_id=chain.dataset_path,
            ))

        exports = resources.exports_for(chain.backing_path)
        if not exports:
            found.append(Inconsistency(
                kind=InconsistencyKind.MISSING_EXPORT,
                resource_kind="export",
                resource_id=chain.export_name,
                detail=f"no export backed by {chain.backing_path}",
            ))
            continue
        if len(exports) > 1:
            found.append(Inconsistency(
                kind=InconsistencyKind.DUPLICATE_EXPORT,
                resource_kind="export",
                resource_id=",".join(str(e.id) for e in exports),
                detail=f"{len(exports)} exports backed by {chain.backing_path}",
            ))
        for export in exports:
            if not resources.mappings_for(export.id):
                found.append(Inconsistency(
                    kind=InconsistencyKind.MISSING_MAPPING,
                    resource_kind="mapping",
                    resource_id=str(export.id),
                    detail=f"export {export.name} is not mapped",
                ))

    exported = {e.backing_path for e in resources.exports.values()}
    for path, dataset in sorted(resources.datasets.items()):
        if dataset.type != "VOLUME" or path in expected_paths or path in exported:
            continue
        found.append(Inconsistency(
            kind=InconsistencyKind.DATASET_WITHOUT_EXPORT,
            resource_kind="dataset",
            resource_id=path,
        ))

    return found
