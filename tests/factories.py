"""Manifest builders and an in-process OpenObserve backend for tests."""
from __future__ import annotations

import itertools
import json
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from openobserve_operator.remote import KIND_ROUTES
from openobserve_operator.resources.base import ManagedResource, ResourceKind
from openobserve_operator.resources.manifest import from_manifest
from openobserve_operator.status import StatusReporter
from openobserve_operator.store import MemoryStore

NAMESPACE = "observability"
ORG = "default"
ENDPOINT = "http://openobserve.test"
CONFIG_REF = {"name": "o2"}


def manifest(crd_kind: str, name: str, spec: Dict[str, Any], namespace: str = NAMESPACE) -> ManagedResource:
    return from_manifest(
        {
            "apiVersion": "openobserve.ai/v1alpha1",
            "kind": crd_kind,
            "metadata": {"name": name, "namespace": namespace},
            "spec": spec,
        }
    )


def config(name: str = "o2", organization: str = ORG, endpoint: str = ENDPOINT, **overrides: Any) -> ManagedResource:
    spec = {"endpoint": endpoint, "organization": organization, "credentialRef": {"name": "o2-creds"}}
    spec.update(overrides)
    return manifest("OpenObserveConfig", name, spec)


def template(name: str = "slack-body", **overrides: Any) -> ManagedResource:
    spec = {"configRef": CONFIG_REF, "bodyExpr": '{"text": "{alert_name} fired"}'}
    spec.update(overrides)
    return manifest("OpenObserveAlertTemplate", name, spec)


def alert_destination(name: str = "slack", template_name: str = "slack-body", **overrides: Any) -> ManagedResource:
    spec = {
        "configRef": CONFIG_REF,
        "kind": "alert",
        "transportType": "http",
        "templateRef": template_name,
        "url": "https://hooks.example.com/services/T000",
    }
    spec.update(overrides)
    return manifest("OpenObserveDestination", name, spec)


def pipeline_destination(name: str = "datadog", **overrides: Any) -> ManagedResource:
    spec = {
        "configRef": CONFIG_REF,
        "kind": "pipeline",
        "destinationTypeName": "datadog",
        "outputFormat": "json",
        "headers": {"DD-API-KEY": "x"},
        "metadata": {"ddsource": "o2", "ddtags": "env:prod"},
    }
    spec.update(overrides)
    return manifest("OpenObserveDestination", name, spec)


def function(name: str = "enrich", transform: str = '.env = "prod"', test_cases: Optional[List[Dict[str, Any]]] = None) -> ManagedResource:
    spec: Dict[str, Any] = {"configRef": CONFIG_REF, "transformExpr": transform}
    if test_cases is not None:
        spec["testCases"] = test_cases
    return manifest("OpenObserveFunction", name, spec)


def alert(name: str = "high-errors", destinations: Sequence[str] = ("slack",), **overrides: Any) -> ManagedResource:
    spec = {
        "configRef": CONFIG_REF,
        "streamName": "default",
        "queryCondition": {"type": "sql", "sql": "SELECT count(*) AS hits FROM \"default\" WHERE level = 'error'"},
        "schedule": {"period": 10, "frequency": 1},
        "destinations": list(destinations),
    }
    spec.update(overrides)
    return manifest("OpenObserveAlert", name, spec)


def pipeline(name: str = "route", nodes: Optional[List[Dict[str, Any]]] = None, edges: Optional[List[Dict[str, Any]]] = None, **overrides: Any) -> ManagedResource:
    if nodes is None:
        nodes = [
            {"id": "enrich", "kind": "function", "config": {"name": "enrich"}},
            {"id": "out", "kind": "custom", "config": {"destination": "datadog"}},
        ]
    if edges is None:
        edges = [
            {"sourceNodeId": "source", "targetNodeId": "enrich"},
            {"sourceNodeId": "enrich", "targetNodeId": "out"},
        ]
    spec = {
        "configRef": CONFIG_REF,
        "source": {"type": "realtime", "streamName": "default"},
        "nodes": nodes,
        "edges": edges,
    }
    spec.update(overrides)
    return manifest("OpenObservePipeline", name, spec)


def dashboard(name: str = "overview", **overrides: Any) -> ManagedResource:
    spec = {"configRef": CONFIG_REF, "title": "Overview", "tabs": [{"tabId": "default", "name": "Default", "panels": []}]}
    spec.update(overrides)
    return manifest("OpenObserveDashboard", name, spec)


def mark_ready(store: MemoryStore, resource: ManagedResource, remote_id: str = "") -> ManagedResource:
    """Store ``resource`` and record it as successfully synced."""

    stored = store.apply(resource)
    stored = StatusReporter().synced(stored, remote_id or stored.name, changed=True)
    store.update_status(stored)
    return stored


class FakeBackend:
    """Minimal OpenObserve HTTP API keeping objects in memory."""

    def __init__(self, organization: str = ORG) -> None:
        self.organization = organization
        self.objects: Dict[ResourceKind, Dict[str, Dict[str, Any]]] = {}
        self.requests: List[Tuple[str, str]] = []
        self.failures: List[int] = []
        self.transforms: Dict[str, Callable[[Any], Any]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def writes(self) -> List[Tuple[str, str]]:
        return [
            (method, path)
            for method, path in self.requests
            if method in ("POST", "PUT", "DELETE") and not path.endswith("/functions/test")
        ]

    def seed(self, kind: ResourceKind, remote_id: str, body: Dict[str, Any]) -> None:
        self.objects.setdefault(kind, {})[remote_id] = self._stored(remote_id, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append((request.method, request.url.path))
            if self.failures:
                return httpx.Response(self.failures.pop(0), json={"message": "injected failure"})
            return self._route(request)

    def _route(self, request: httpx.Request) -> httpx.Response:
        path, method = request.url.path, request.method
        if path == "/api/organizations":
            return httpx.Response(200, json={"data": [{"identifier": self.organization, "name": self.organization}]})
        if method == "POST" and path == f"/api/{self.organization}/functions/test":
            body = json.loads(request.content)
            transform = self.transforms.get(body["function"], lambda record: record)
            return httpx.Response(200, json={"results": [{"event": transform(event)} for event in body["events"]]})
        for kind, route in KIND_ROUTES.items():
            collection = route.collection_path(self.organization)
            if path == collection:
                return self._collection(kind, method, request)
            remote_id = path[len(collection) + 1:] if path.startswith(collection + "/") else ""
            if remote_id and "/" not in remote_id:
                return self._item(kind, method, remote_id, request)
        return httpx.Response(404, json={"message": f"no route for {path}"})

    def _collection(self, kind: ResourceKind, method: str, request: httpx.Request) -> httpx.Response:
        route = KIND_ROUTES[kind]
        items = self.objects.setdefault(kind, {})
        if method == "GET":
            return httpx.Response(200, json={"list": list(items.values())})
        body = json.loads(request.content)
        name = body.get(route.name_key) or body.get("name")
        if any((item.get(route.name_key) or item.get("name")) == name for item in items.values()):
            return httpx.Response(409, json={"message": f"{name} already exists"})
        remote_id = str(name) if route.named else f"{kind.value.lower()}-{next(self._ids)}"
        items[remote_id] = self._stored(remote_id, body)
        return httpx.Response(200, json={"id": remote_id, "message": "created"})

    def _item(self, kind: ResourceKind, method: str, remote_id: str, request: httpx.Request) -> httpx.Response:
        items = self.objects.setdefault(kind, {})
        if remote_id not in items:
            return httpx.Response(404, json={"message": f"{remote_id} not found"})
        if method == "GET":
            return httpx.Response(200, json=items[remote_id])
        if method == "PUT":
            items[remote_id] = self._stored(remote_id, json.loads(request.content))
            return httpx.Response(200, json={"message": "updated"})
        if method == "DELETE":
            del items[remote_id]
            return httpx.Response(200, json={"message": "deleted"})
        return httpx.Response(405)

    @staticmethod
    def _stored(remote_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return {**body, "id": remote_id, "owner": "root@example.com", "updated_at": 1700000000}
