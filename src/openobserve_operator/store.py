"""Declarative resource store interface and the in-process implementation."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol

from .resources.base import ManagedResource, ResourceKey, ResourceKind
from .utils import fingerprint

_LOG = logging.getLogger(__name__)

Listener = Callable[[str, ManagedResource], None]


class ResourceStore(Protocol):
    """Everything the controller needs from the declarative store."""

    def get(self, key: ResourceKey) -> Optional[ManagedResource]: ...

    def list(self, kind: Optional[ResourceKind] = None) -> List[ManagedResource]: ...

    def set_finalizer(self, key: ResourceKey, present: bool) -> Optional[ManagedResource]: ...

    def update_status(self, resource: ManagedResource) -> None: ...

    def dependents_of(self, key: ResourceKey) -> List[ResourceKey]: ...


def _spec_fingerprint(resource: ManagedResource) -> str:
    return fingerprint(resource.spec.model_dump(mode="json", by_alias=True))


class MemoryStore:
    """Thread-safe in-memory store with Kubernetes-like lifecycle rules.

    ``generation`` only moves when the spec changes, records with a deletion
    request and no finalizer are purged, and listeners observe every change.
    """

    def __init__(self) -> None:
        self._items: Dict[ResourceKey, ManagedResource] = {}
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self, event: str, resource: ManagedResource) -> None:
        for listener in list(self._listeners):
            listener(event, resource.copy())

    def get(self, key: ResourceKey) -> Optional[ManagedResource]:
        with self._lock:
            item = self._items.get(key)
            return item.copy() if item else None

    def list(self, kind: Optional[ResourceKind] = None) -> List[ManagedResource]:
        with self._lock:
            return [item.copy() for key, item in sorted(self._items.items()) if kind is None or key.kind is kind]

    def apply(self, resource: ManagedResource) -> ManagedResource:
        """Create or update the spec of a resource."""

        with self._lock:
            existing = self._items.get(resource.key)
            if existing is None:
                stored = resource.copy()
                stored.generation = max(resource.generation, 1)
                self._items[resource.key] = stored
                event = "ADDED"
            else:
                if existing.deletion_requested is not None:
                    raise ValueError(f"{resource.key} is being deleted and cannot be updated.")
                if _spec_fingerprint(existing) == _spec_fingerprint(resource):
                    return existing.copy()
                existing.spec = resource.spec.model_copy(deep=True)
                existing.generation += 1
                stored = existing
                event = "MODIFIED"
            _LOG.debug("%s %s at generation %s", event.title(), resource.key, stored.generation)
            snapshot = stored.copy()
        self._notify(event, snapshot)
        return snapshot

    def request_deletion(self, key: ResourceKey) -> Optional[ManagedResource]:
        with self._lock:
            existing = self._items.get(key)
            if existing is None:
                return None
            if existing.deletion_requested is None:
                existing.deletion_requested = datetime.now(timezone.utc)
            snapshot = existing.copy()
            purged = self._purge_if_released(key)
        self._notify("DELETED" if purged else "MODIFIED", snapshot)
        return None if purged else snapshot

    def set_finalizer(self, key: ResourceKey, present: bool) -> Optional[ManagedResource]:
        with self._lock:
            existing = self._items.get(key)
            if existing is None:
                return None
            if existing.finalizer_present == present:
                return existing.copy()
            existing.finalizer_present = present
            snapshot = existing.copy()
            purged = self._purge_if_released(key)
        if purged:
            _LOG.info("Purged %s after finalizer release", key)
            self._notify("DELETED", snapshot)
            return None
        return snapshot

    def update_status(self, resource: ManagedResource) -> None:
        with self._lock:
            existing = self._items.get(resource.key)
            if existing is None:
                return
            existing.remote_id = resource.remote_id
            existing.conditions = [entry.model_copy() for entry in resource.conditions]
            existing.observed_generation = resource.observed_generation
            existing.last_sync_time = resource.last_sync_time
            existing.phase = resource.phase

    def dependents_of(self, key: ResourceKey) -> List[ResourceKey]:
        with self._lock:
            return sorted(
                item.key
                for item in self._items.values()
                if item.key != key and key in item.references()
            )

    def _purge_if_released(self, key: ResourceKey) -> bool:
        existing = self._items[key]
        if existing.deletion_requested is not None and not existing.finalizer_present:
            del self._items[key]
            return True
        return False
