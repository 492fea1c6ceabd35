"""
Wire bindings for the TrueNAS middleware API.

WebSocketTransport keeps one authenticated JSON-RPC 2.0 connection open per
client; RestTransport issues one-shot requests through a requests.Session.
Both translate wire failures into the classified errors from ``errors``.
"""

import itertools
import json
import logging
import ssl
import threading
from typing import Any, Callable, List, Optional

import requests
import urllib3
import websocket

from .endpoints import apply_filters, build_rest_request
from .errors import (
    ApplianceError,
    AuthenticationError,
    RemoteCallError,
    TransientError,
    TransportError,
    map_appliance_error,
)

logger = logging.getLogger(__name__)


class Transport:
    """One request/response exchange with the appliance."""

    name = "base"

    def request(self, method: str, params: List[Any], timeout: float) -> Any:
        raise NotImplementedError

    def close(self):
        pass


class WebSocketTransport(Transport):
    """
    Persistent JSON-RPC 2.0 connection to ``/api/current``.

    Calls are serialized over the single socket. Messages whose id does not
    match the outstanding request (event notifications, late replies to a
    timed-out call) are skipped. Any socket failure drops the connection;
    the next call reconnects and re-authenticates.
    """

    name = "ws"

    def __init__(
        self,
        url: str,
        api_key: str,
        verify_ssl: bool = True,
        connect_timeout: float = 10.0,
        connection_factory: Optional[Callable[..., Any]] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.verify_ssl = verify_ssl
        self.connect_timeout = connect_timeout
        self._connection_factory = connection_factory or websocket.create_connection
        self._conn = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def _connect(self, timeout: float):
        sslopt = {} if self.verify_ssl else {"cert_reqs": ssl.CERT_NONE, "check_hostname": False}
        logger.debug(f"Opening websocket to {self.url}")
        self._conn = self._connection_factory(
            self.url, timeout=min(self.connect_timeout, timeout), sslopt=sslopt
        )
        try:
            authenticated = self._exchange("auth.login_with_api_key", [self.api_key], timeout)
        except ApplianceError:
            self._drop()
            raise
        if authenticated is not True:
            self._drop()
            raise AuthenticationError(
                f"API key rejected by {self.url}", error_code="AUTH_FAILED", status_code=401
            )
        logger.info(f"Authenticated websocket session to {self.url}")

    def _drop(self):
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                conn.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing websocket: {e}")

    def _exchange(self, method: str, params: List[Any], timeout: float) -> Any:
        request_id = next(self._ids)
        self._conn.settimeout(timeout)
        self._conn.send(json.dumps({
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params,
        }))
        while True:
            raw = self._conn.recv()
            try:
                message = json.loads(raw)
            except ValueError as e:
                raise RemoteCallError(f"Malformed JSON-RPC frame: {e}", error_code="BAD_FRAME")
            if not isinstance(message, dict) or message.get("id") != request_id:
                continue
            if message.get("error") is not None:
                raise map_appliance_error(message["error"])
            return message.get("result")

    def request(self, method: str, params: List[Any], timeout: float) -> Any:
        with self._lock:
            try:
                if self._conn is None:
                    self._connect(timeout)
                return self._exchange(method, params, timeout)
            except websocket.WebSocketTimeoutException as e:
                self._drop()
                raise TransientError(f"{method} timed out after {timeout:.1f}s: {e}", error_code="TIMEOUT")
            except (websocket.WebSocketException, OSError) as e:
                self._drop()
                raise TransientError(f"Websocket connection failed during {method}: {e}", error_code="CONNECTION")

    def close(self):
        with self._lock:
            self._drop()


class RestTransport(Transport):
    """One-shot REST calls against ``/api/v2.0`` with bearer authentication."""

    name = "rest"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        verify_ssl: bool = True,
        session: Optional[requests.Session] = None,
        connect_timeout: float = 5.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.connect_timeout = connect_timeout
        self.session = session or requests.Session()
        self.session.verify = verify_ssl
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        })
        if not verify_ssl:
            urllib3.disable_warnings()

    def request(self, method: str, params: List[Any], timeout: float) -> Any:
        route = build_rest_request(method, params)
        url = f"{self.base_url}{route.path}"
        kwargs = {"timeout": (min(self.connect_timeout, timeout), timeout)}
        if route.body is not None:
            kwargs["json"] = route.body

        logger.debug(f"{route.http_method} {url}")
        try:
            response = self.session.request(route.http_method, url, **kwargs)
        except requests.Timeout as e:
            raise TransientError(f"{method} timed out: {e}", error_code="TIMEOUT")
        except requests.ConnectionError as e:
            raise TransientError(f"Connection failed during {method}: {e}", error_code="CONNECTION")
        except requests.RequestException as e:
            raise TransportError(f"Request error during {method}: {e}", error_code="REQUEST_ERROR")

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text or response.reason or f"HTTP {response.status_code}"
            raise map_appliance_error(payload, status_code=response.status_code)

        if not response.text:
            data = None
        else:
            try:
                data = response.json()
            except ValueError:
                raise RemoteCallError(
                    f"Non-JSON response for {method}: {response.text[:200]}",
                    status_code=response.status_code,
                )

        if route.filters is not None:
            data = apply_filters(data, route.filters, route.get_one)
        return data

    def close(self):
        self.session.close()
