"""Route table translating middleware JSON-RPC methods to TrueNAS REST v2.0 calls.

CRUD namespaces follow the middleware's generic layout (``x.y.create`` ->
``POST /x/y`` and so on). Methods that do not fit that layout are listed in
EXPLICIT_ROUTES. Namespaces with no REST binding at all raise
UnsupportedOperationError so the client fails before touching the network.
"""

from collections import namedtuple
from typing import Any, List, Optional
from urllib.parse import quote

from .errors import NotFoundError, UnsupportedOperationError

RestRequest = namedtuple("RestRequest", ["http_method", "path", "body", "filters", "get_one"])

CRUD_ACTIONS = {
    "query": "GET",
    "get_instance": "GET",
    "create": "POST",
    "update": "PUT",
    "delete": "DELETE",
}

EXPLICIT_ROUTES = {
    "core.ping": ("GET", "/core/ping"),
    "core.get_jobs": ("GET", "/core/get_jobs"),
    "iscsi.global.config": ("GET", "/iscsi/global"),
    "zfs.snapshot.clone": ("POST", "/zfs/snapshot/clone"),
    "zfs.snapshot.rollback": ("POST", "/zfs/snapshot/rollback"),
    "zfs.snapshot.hold": ("POST", "/zfs/snapshot/hold"),
    "zfs.snapshot.release": ("POST", "/zfs/snapshot/release"),
}

UNSUPPORTED_PREFIXES = ("nvmet.", "core.bulk", "auth.")


def _id_path(base: str, resource_id: Any) -> str:
    return f"{base}/id/{quote(str(resource_id), safe='')}"


def build_rest_request(method: str, params: Optional[List[Any]] = None) -> RestRequest:
    """
    Translate one JSON-RPC call into a REST request.

    Raises:
        UnsupportedOperationError: method has no REST binding
    """
    params = list(params or [])

    if method.startswith(UNSUPPORTED_PREFIXES):
        raise UnsupportedOperationError(
            f"{method} is not available over the REST API; use the ws transport",
            error_code="UNSUPPORTED_METHOD",
        )

    if method in EXPLICIT_ROUTES:
        http_method, path = EXPLICIT_ROUTES[method]
        if method == "core.get_jobs":
            return RestRequest(http_method, path, None, params[0] if params else [], False)
        if method in ("zfs.snapshot.rollback", "zfs.snapshot.hold", "zfs.snapshot.release"):
            body = {"id": params[0], "options": params[1] if len(params) > 1 else {}}
            return RestRequest(http_method, path, body, None, False)
        body = params[0] if params else None
        return RestRequest(http_method, path, body, None, False)

    if "." not in method:
        raise UnsupportedOperationError(f"Unknown method: {method}", error_code="UNSUPPORTED_METHOD")

    namespace, action = method.rsplit(".", 1)
    if action not in CRUD_ACTIONS:
        raise UnsupportedOperationError(
            f"{method} has no REST route", error_code="UNSUPPORTED_METHOD"
        )
    base = "/" + namespace.replace(".", "/")
    http_method = CRUD_ACTIONS[action]

    if action == "query":
        filters = params[0] if params else []
        options = params[1] if len(params) > 1 else {}
        return RestRequest(http_method, base, None, filters, bool(options.get("get")))
    if action == "create":
        return RestRequest(http_method, base, params[0] if params else {}, None, False)

    if not params:
        raise UnsupportedOperationError(f"{method} requires an id", error_code="MISSING_ID")
    path = _id_path(base, params[0])
    if action == "get_instance":
        return RestRequest(http_method, path, None, None, False)
    if action == "update":
        return RestRequest(http_method, path, params[1] if len(params) > 1 else {}, None, False)

    # delete: extra positional arguments travel as the request body
    if len(params) == 1:
        body = None
    elif len(params) == 2:
        body = params[1]
    else:
        body = params[1:]
    return RestRequest(http_method, path, body, None, False)


def _lookup(record: Any, key: str) -> Any:
    value = record
    for part in key.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _matches(record: Any, flt: List[Any]) -> bool:
    key, op, expected = flt
    value = _lookup(record, key)
    if op == "=":
        return value == expected
    if op == "!=":
        return value != expected
    if op == "^":
        return isinstance(value, str) and value.startswith(expected)
    if op == "$":
        return isinstance(value, str) and value.endswith(expected)
    if op == "in":
        return value in expected
    if op == "nin":
        return value not in expected
    raise UnsupportedOperationError(f"Unsupported filter operator: {op}", error_code="UNSUPPORTED_FILTER")


def apply_filters(records: Any, filters: Optional[List[Any]], get_one: bool = False) -> Any:
    """Apply middleware-style ``[[key, op, value], ...]`` filters client-side."""
    if not isinstance(records, list):
        return records
    matched = [r for r in records if all(_matches(r, f) for f in (filters or []))]
    if get_one:
        if not matched:
            raise NotFoundError("MatchNotFound", error_code="ENOENT")
        return matched[0]
    return matched
