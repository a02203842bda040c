"""HTTP client for the OpenObserve backend, one per Config.

Every call goes through the Config's shared token bucket and connection
pool, is retried with exponential backoff and full jitter on network errors,
timeouts and 5xx/429 responses, and fails immediately on other 4xx answers.
"""
from __future__ import annotations

import hashlib
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .config import OperatorSettings
from .errors import (
    RemoteAuthError,
    RemoteConflictError,
    RemoteNotFoundError,
    RemoteRejectedError,
    RemoteTimeoutError,
    RemoteTransientError,
)
from .ratelimit import TokenBucket
from .resources.base import ResourceKey, ResourceKind

_LOG = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
_MAX_RETRY_DELAY = 30.0


@dataclass(frozen=True)
class KindRoute:
    """Where a resource kind lives on the backend and how it is identified."""

    collection: str
    id_keys: Tuple[str, ...] = ("id",)
    named: bool = False
    name_key: str = "name"

    def collection_path(self, organization: str) -> str:
        return self.collection.format(org=organization)

    def item_path(self, organization: str, remote_id: str) -> str:
        return f"{self.collection_path(organization)}/{remote_id}"


KIND_ROUTES: Dict[ResourceKind, KindRoute] = {
    ResourceKind.ALERT: KindRoute("/api/v2/{org}/alerts", id_keys=("id", "alert_id")),
    ResourceKind.PIPELINE: KindRoute("/api/{org}/pipelines", id_keys=("pipeline_id", "id")),
    ResourceKind.FUNCTION: KindRoute("/api/{org}/functions", named=True),
    ResourceKind.DESTINATION: KindRoute("/api/{org}/alerts/destinations", named=True),
    ResourceKind.TEMPLATE: KindRoute("/api/{org}/alerts/templates", named=True),
    ResourceKind.DASHBOARD: KindRoute("/api/{org}/dashboards", id_keys=("dashboard_id", "id"), name_key="title"),
}


@dataclass(frozen=True)
class ClientDescriptor:
    """Authenticated connection details resolved from a Config resource."""

    config_key: ResourceKey
    endpoint: str
    organization: str
    username: str
    secret: str = field(repr=False)
    auth_mode: str = "password"
    tls_verify: bool = True

    def fingerprint(self) -> str:
        material = "\x00".join(
            [self.endpoint, self.organization, self.username, self.secret, self.auth_mode, str(self.tls_verify)]
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()


def _items(body: Any) -> List[Dict[str, Any]]:
    if isinstance(body, list):
        return [item for item in body if isinstance(item, dict)]
    if isinstance(body, dict):
        for key in ("list", "dashboards", "data", "items"):
            value = body.get(key)
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
    return []


def _error_message(resp: httpx.Response) -> str:
    body = resp.text
    message = body[:200] if body else f"HTTP {resp.status_code}"
    try:
        payload = resp.json()
    except ValueError:
        return message
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("error") or message)
    return message


def _already_exists(resp: httpx.Response) -> bool:
    if resp.status_code == 409:
        return True
    return resp.status_code == 400 and "already exist" in resp.text.lower()


class RemoteSyncClient:
    """Typed create/update/get/delete calls for every remote resource kind."""

    def __init__(
        self,
        descriptor: ClientDescriptor,
        http_client: httpx.Client,
        limiter: TokenBucket,
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        initial_wait: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.descriptor = descriptor
        self._http = http_client
        self._limiter = limiter
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._initial_wait = initial_wait
        self._sleep = sleep

    @property
    def organization(self) -> str:
        return self.descriptor.organization

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""

        ceiling = min(_MAX_RETRY_DELAY, self._initial_wait * (2 ** (attempt - 1)))
        return random.uniform(0, ceiling)

    def _request(self, method: str, path: str, *, json: Any = None) -> httpx.Response:
        last_exc: Optional[RemoteTransientError] = None
        for attempt in range(1, self._max_attempts + 1):
            self._limiter.acquire(timeout=self._timeout)
            try:
                resp = self._http.request(method, path, json=json, timeout=self._timeout)
            except httpx.TimeoutException as exc:
                last_exc = RemoteTimeoutError(f"{method} {path} timed out: {exc}")
            except httpx.TransportError as exc:
                last_exc = RemoteTransientError(f"{method} {path} failed: {exc}")
            else:
                if resp.status_code not in _RETRYABLE_STATUS_CODES:
                    return resp
                last_exc = RemoteTransientError(
                    f"{method} {path} returned {resp.status_code}: {_error_message(resp)}",
                    status_code=resp.status_code,
                )
            if attempt < self._max_attempts:
                delay = self._backoff_delay(attempt)
                _LOG.warning(
                    "%s (attempt %d/%d), retrying in %.1fs",
                    last_exc.message,
                    attempt,
                    self._max_attempts,
                    delay,
                )
                self._sleep(delay)
        assert last_exc is not None
        raise last_exc

    @staticmethod
    def _raise_for_status(resp: httpx.Response, action: str) -> None:
        if resp.status_code < 400:
            return
        message = f"{action} failed with {resp.status_code}: {_error_message(resp)}"
        if resp.status_code in (401, 403):
            raise RemoteAuthError(message, status_code=resp.status_code)
        if resp.status_code == 404:
            raise RemoteNotFoundError(message, status_code=resp.status_code)
        if resp.status_code == 409:
            raise RemoteConflictError(message, status_code=resp.status_code)
        raise RemoteRejectedError(message, status_code=resp.status_code)

    @staticmethod
    def _route(kind: ResourceKind) -> KindRoute:
        try:
            return KIND_ROUTES[kind]
        except KeyError:
            raise ValueError(f"{kind.value} resources have no remote object.") from None

    def create(self, kind: ResourceKind, desired: Dict[str, Any]) -> str:
        """Create the remote object and return its identifier.

        When the backend reports that an object with the same name already
        exists, the existing object is adopted instead.
        """

        route = self._route(kind)
        path = route.collection_path(self.organization)
        resp = self._request("POST", path, json=desired)
        if _already_exists(resp):
            _LOG.info("%s %s already exists remotely; adopting it", kind.value, desired.get(route.name_key))
            return self._adopt(kind, desired)
        self._raise_for_status(resp, f"Create {kind.value}")
        remote_id = self._extract_id(route, resp, desired)
        if remote_id:
            return remote_id
        return self._adopt(kind, desired)

    def update(self, kind: ResourceKind, remote_id: str, desired: Dict[str, Any]) -> None:
        route = self._route(kind)
        resp = self._request("PUT", route.item_path(self.organization, remote_id), json=desired)
        self._raise_for_status(resp, f"Update {kind.value} {remote_id}")

    def get(self, kind: ResourceKind, remote_id: str) -> Optional[Dict[str, Any]]:
        """Return the remote object, or ``None`` when it does not exist."""

        route = self._route(kind)
        resp = self._request("GET", route.item_path(self.organization, remote_id))
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, f"Get {kind.value} {remote_id}")
        body = resp.json()
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            return body["data"]
        return body if isinstance(body, dict) else {}

    def delete(self, kind: ResourceKind, remote_id: str) -> bool:
        """Delete the remote object; ``False`` means it was already gone."""

        route = self._route(kind)
        resp = self._request("DELETE", route.item_path(self.organization, remote_id))
        if resp.status_code == 404:
            return False
        self._raise_for_status(resp, f"Delete {kind.value} {remote_id}")
        return True

    def find(self, kind: ResourceKind, name: str) -> Optional[str]:
        """Look up the identifier of a remote object by name."""

        route = self._route(kind)
        resp = self._request("GET", route.collection_path(self.organization))
        self._raise_for_status(resp, f"List {kind.value}")
        for item in _items(resp.json()):
            if item.get(route.name_key) == name or item.get("name") == name:
                if route.named:
                    return name
                for key in route.id_keys:
                    if item.get(key):
                        return str(item[key])
        return None

    def test_function(self, transform: str, record: Any) -> Any:
        """Run a transform against one record on the backend without saving it."""

        path = f"/api/{self.organization}/functions/test"
        resp = self._request("POST", path, json={"function": transform, "events": [record]})
        self._raise_for_status(resp, "Function test")
        body = resp.json()
        results = body.get("results") if isinstance(body, dict) else body
        if isinstance(results, list) and results:
            first = results[0]
            if isinstance(first, dict) and "event" in first:
                return first["event"]
            return first
        return results

    def organization_exists(self) -> bool:
        resp = self._request("GET", "/api/organizations")
        self._raise_for_status(resp, "List organizations")
        for item in _items(resp.json()):
            if self.organization in (item.get("identifier"), item.get("name")):
                return True
        return False

    def _adopt(self, kind: ResourceKind, desired: Dict[str, Any]) -> str:
        route = self._route(kind)
        name = str(desired.get(route.name_key) or desired.get("name") or "")
        remote_id = self.find(kind, name)
        if not remote_id:
            raise RemoteConflictError(
                f"{kind.value} {name!r} reported as existing but was not found by name"
            )
        return remote_id

    @staticmethod
    def _extract_id(route: KindRoute, resp: httpx.Response, desired: Dict[str, Any]) -> Optional[str]:
        if route.named:
            return str(desired.get(route.name_key) or desired.get("name"))
        try:
            body = resp.json()
        except ValueError:
            return None
        candidates = [body]
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            candidates.append(body["data"])
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            for key in route.id_keys:
                if candidate.get(key):
                    return str(candidate[key])
        return None


@dataclass
class _Connection:
    fingerprint: str
    http: httpx.Client
    limiter: TokenBucket


class ConnectionRegistry:
    """Owns one rate limiter and connection pool per Config.

    Entries are created on first use, rebuilt when the Config's resolved
    connection details change, and disposed when the Config is deleted.
    """

    def __init__(
        self,
        settings: OperatorSettings,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._sleep = sleep
        self._connections: Dict[ResourceKey, _Connection] = {}
        # Clients replaced by a rotation may still be in use by running workers.
        self._retired: List[httpx.Client] = []
        self._lock = threading.Lock()

    def client_for(self, descriptor: ClientDescriptor) -> RemoteSyncClient:
        with self._lock:
            connection = self._connections.get(descriptor.config_key)
            if connection is None or connection.fingerprint != descriptor.fingerprint():
                if connection is not None:
                    _LOG.info("Connection details for %s changed; rebuilding pool", descriptor.config_key)
                    self._retired.append(connection.http)
                connection = self._open(descriptor)
                self._connections[descriptor.config_key] = connection
        return RemoteSyncClient(
            descriptor,
            connection.http,
            connection.limiter,
            timeout=self.settings.http_timeout,
            max_attempts=self.settings.retry_max_attempts,
            initial_wait=self.settings.retry_initial_wait,
            sleep=self._sleep,
        )

    def _open(self, descriptor: ClientDescriptor) -> _Connection:
        pool = self.settings.connection_pool_size
        http = httpx.Client(
            base_url=descriptor.endpoint,
            auth=httpx.BasicAuth(descriptor.username, descriptor.secret),
            verify=descriptor.tls_verify,
            timeout=httpx.Timeout(self.settings.http_timeout),
            limits=httpx.Limits(max_connections=pool, max_keepalive_connections=pool),
            transport=self._transport,
        )
        limiter = TokenBucket(self.settings.rate_limit, self.settings.rate_burst, sleep=self._sleep)
        _LOG.debug("Opened connection pool for %s (%s)", descriptor.config_key, descriptor.endpoint)
        return _Connection(descriptor.fingerprint(), http, limiter)

    def dispose(self, config_key: ResourceKey) -> None:
        with self._lock:
            connection = self._connections.pop(config_key, None)
        if connection is not None:
            connection.http.close()
            _LOG.info("Disposed connection pool for %s", config_key)

    def __contains__(self, config_key: object) -> bool:
        with self._lock:
            return config_key in self._connections

    def close(self) -> None:
        with self._lock:
            clients = [connection.http for connection in self._connections.values()] + self._retired
            self._connections.clear()
            self._retired = []
        for http in clients:
            http.close()
