"""Kubernetes-backed store, secret reader, and event source."""
from __future__ import annotations

import base64
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pydantic
from kubernetes import client, config, watch
from kubernetes.client import ApiException

from .config import KubeContext
from .resources.base import (
    API_GROUP,
    API_VERSION,
    FINALIZER,
    ManagedResource,
    ResourceKey,
    ResourceKind,
)
from .resources.manifest import from_manifest
from .status import StatusReporter

_LOG = logging.getLogger(__name__)

EventHandler = Callable[[str, ManagedResource], None]


class KubeClient:
    """Holds the Kubernetes API clients the operator talks through."""

    def __init__(self, context: KubeContext) -> None:
        self.context = context
        if context.in_cluster:
            config.load_incluster_config()
            api_client = client.ApiClient()
        else:
            api_client = config.new_client_from_config(
                config_file=context.kubeconfig,
                context=context.context,
            )
        api_client.configuration.verify_ssl = context.verify_ssl
        self.api_client = api_client
        self.custom = client.CustomObjectsApi(api_client)
        self.core_v1 = client.CoreV1Api(api_client)
        self.coordination = client.CoordinationV1Api(api_client)


class KubeSecretReader:
    """Reads credential material from Kubernetes Secrets."""

    def __init__(self, core_v1: client.CoreV1Api) -> None:
        self.core_v1 = core_v1

    def read(self, namespace: str, name: str) -> Optional[Dict[str, str]]:
        try:
            secret = self.core_v1.read_namespaced_secret(name, namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        data: Dict[str, str] = {}
        for key, value in (secret.data or {}).items():
            data[key] = base64.b64decode(value).decode("utf-8")
        for key, value in (getattr(secret, "string_data", None) or {}).items():
            data[key] = value
        return data


class KubeStore:
    """Resource store backed by the operator's custom resources."""

    def __init__(self, custom: client.CustomObjectsApi, namespaces: Sequence[str] = ()) -> None:
        self.custom = custom
        self.namespaces = list(namespaces)

    def _get_raw(self, key: ResourceKey) -> Optional[Dict[str, Any]]:
        try:
            return self.custom.get_namespaced_custom_object(
                API_GROUP, API_VERSION, key.namespace, key.kind.plural, key.name
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def get(self, key: ResourceKey) -> Optional[ManagedResource]:
        body = self._get_raw(key)
        return from_manifest(body, key.namespace) if body is not None else None

    def _list_raw(self, kind: ResourceKind) -> List[Dict[str, Any]]:
        if not self.namespaces:
            result = self.custom.list_cluster_custom_object(API_GROUP, API_VERSION, kind.plural)
            return list(result.get("items", []))
        items: List[Dict[str, Any]] = []
        for namespace in self.namespaces:
            result = self.custom.list_namespaced_custom_object(API_GROUP, API_VERSION, namespace, kind.plural)
            items.extend(result.get("items", []))
        return items

    def list(self, kind: Optional[ResourceKind] = None) -> List[ManagedResource]:
        kinds: Iterable[ResourceKind] = [kind] if kind is not None else list(ResourceKind)
        resources: List[ManagedResource] = []
        for current in kinds:
            for body in self._list_raw(current):
                try:
                    resources.append(from_manifest(body))
                except (pydantic.ValidationError, ValueError) as exc:
                    name = body.get("metadata", {}).get("name")
                    _LOG.warning("Skipping malformed %s %s: %s", current.crd_kind, name, exc)
        return resources

    def set_finalizer(self, key: ResourceKey, present: bool) -> Optional[ManagedResource]:
        body = self._get_raw(key)
        if body is None:
            return None
        metadata = body.get("metadata", {})
        finalizers: List[str] = list(metadata.get("finalizers") or [])
        if (FINALIZER in finalizers) == present:
            return from_manifest(body, key.namespace)
        if present:
            finalizers.append(FINALIZER)
        else:
            finalizers.remove(FINALIZER)
        patch_body = {
            "metadata": {
                "finalizers": finalizers,
                "resourceVersion": metadata.get("resourceVersion"),
            }
        }
        _LOG.debug("%s finalizer on %s", "Adding" if present else "Removing", key)
        try:
            patched = self.custom.patch_namespaced_custom_object(
                API_GROUP, API_VERSION, key.namespace, key.kind.plural, key.name, patch_body
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return from_manifest(patched, key.namespace)

    def update_status(self, resource: ManagedResource) -> None:
        key = resource.key
        try:
            self.custom.patch_namespaced_custom_object_status(
                API_GROUP,
                API_VERSION,
                key.namespace,
                key.kind.plural,
                key.name,
                {"status": StatusReporter.project(resource)},
            )
        except ApiException as exc:
            if exc.status != 404:
                raise
            _LOG.debug("Resource %s vanished before its status was written", key)

    def dependents_of(self, key: ResourceKey) -> List[ResourceKey]:
        return sorted(
            resource.key
            for resource in self.list()
            if resource.key != key and key in resource.references()
        )


class KubeEventSource:
    """Watches every resource kind and forwards meaningful changes.

    Creation, spec changes (a new ``generation``) and deletion requests are
    forwarded; status-only and finalizer-only updates are not.
    """

    def __init__(
        self,
        custom: client.CustomObjectsApi,
        handler: EventHandler,
        namespaces: Sequence[str] = (),
        kinds: Sequence[ResourceKind] = tuple(ResourceKind),
        timeout_seconds: int = 300,
    ) -> None:
        self.custom = custom
        self.handler = handler
        self.namespaces = set(namespaces)
        self.kinds = list(kinds)
        self.timeout_seconds = timeout_seconds
        self._seen: Dict[ResourceKey, Tuple[int, bool]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._watches: List[watch.Watch] = []

    def should_forward(self, event_type: str, resource: ManagedResource) -> bool:
        key = resource.key
        with self._lock:
            if event_type == "DELETED":
                self._seen.pop(key, None)
                return True
            marker = (resource.generation, resource.deletion_requested is not None)
            previous = self._seen.get(key)
            self._seen[key] = marker
        return previous != marker

    def dispatch(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        body = event.get("object")
        if event_type not in ("ADDED", "MODIFIED", "DELETED") or not isinstance(body, dict):
            return
        try:
            resource = from_manifest(body)
        except (pydantic.ValidationError, ValueError) as exc:
            _LOG.warning("Ignoring malformed %s event: %s", event_type, exc)
            return
        if self.namespaces and resource.namespace not in self.namespaces:
            return
        if self.should_forward(event_type, resource):
            self.handler(event_type, resource)

    def _watch_kind(self, kind: ResourceKind) -> None:
        stream_watch = watch.Watch()
        self._watches.append(stream_watch)
        while not self._stop.is_set():
            try:
                for event in stream_watch.stream(
                    self.custom.list_cluster_custom_object,
                    API_GROUP,
                    API_VERSION,
                    kind.plural,
                    timeout_seconds=self.timeout_seconds,
                ):
                    self.dispatch(event)
                    if self._stop.is_set():
                        break
            except ApiException as exc:
                if exc.status == 410:
                    _LOG.debug("Watch for %s expired; restarting", kind.plural)
                    continue
                _LOG.warning("Watch for %s failed: %s", kind.plural, exc)
                self._stop.wait(5)

    def start(self) -> None:
        self._stop.clear()
        for kind in self.kinds:
            thread = threading.Thread(target=self._watch_kind, args=(kind,), name=f"watch-{kind.plural}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        self._stop.set()
        for stream_watch in self._watches:
            stream_watch.stop()
        self._watches = []
        self._threads = []
