"""Finalizer protocol: remote deprovisioning before a record may be purged."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from .errors import DependencyMissingError, HasDependentsError, OperatorError
from .remote import KIND_ROUTES, ClientDescriptor, ConnectionRegistry
from .resolver import ConfigResolver
from .resources.base import ManagedResource, ResourceKind
from .resources.connection import ConfigSpec
from .store import ResourceStore

_LOG = logging.getLogger(__name__)


class FinalizerState(str, Enum):
    ACTIVE = "Active"
    DELETING = "Deleting"
    RELEASED = "Released"


def state_of(resource: ManagedResource) -> FinalizerState:
    if resource.deletion_requested is None:
        return FinalizerState.ACTIVE
    if resource.finalizer_present:
        return FinalizerState.DELETING
    return FinalizerState.RELEASED


class FinalizerManager:
    """Attaches the finalizer on create and releases it after remote cleanup.

    Ordering across kinds comes from the store's dependency index: a
    resource is only released once nothing references it, so alerts and
    pipelines go before destinations and templates, which go before Configs.
    """

    def __init__(self, store: ResourceStore, configs: ConfigResolver, connections: ConnectionRegistry) -> None:
        self.store = store
        self.configs = configs
        self.connections = connections

    def attach(self, resource: ManagedResource) -> ManagedResource:
        if state_of(resource) is not FinalizerState.ACTIVE or resource.finalizer_present:
            return resource
        self.store.set_finalizer(resource.key, True)
        resource.finalizer_present = True
        _LOG.debug("Attached finalizer to %s", resource.key)
        return resource

    def release(self, resource: ManagedResource) -> FinalizerState:
        """Deprovision ``resource`` remotely and clear its finalizer.

        Raises ``HasDependentsError`` while other resources still reference it
        and lets remote errors propagate so the caller can retry; the
        finalizer stays in place until the remote delete is confirmed.
        """

        state = state_of(resource)
        if state is FinalizerState.ACTIVE:
            raise ValueError(f"{resource.key} has no deletion request")
        if state is FinalizerState.RELEASED:
            return state

        dependents = self.store.dependents_of(resource.key)
        if dependents:
            raise HasDependentsError(
                f"{resource.kind.value} {resource.namespace}/{resource.name} is still referenced by "
                + ", ".join(str(key) for key in dependents)
            )

        if resource.kind is ResourceKind.CONFIG:
            self.connections.dispose(resource.key)
        elif resource.kind in KIND_ROUTES:
            self._delete_remote(resource)

        self.store.set_finalizer(resource.key, False)
        resource.finalizer_present = False
        _LOG.info("Released finalizer for %s", resource.key)
        return FinalizerState.RELEASED

    def _delete_remote(self, resource: ManagedResource) -> None:
        try:
            descriptor = self.configs.resolve(resource, require_ready=False)
        except DependencyMissingError:
            if resource.remote_id:
                raise
            _LOG.info("%s was never synced and its Config is unavailable; nothing to delete", resource.key)
            return
        client = self.connections.client_for(descriptor)
        remote_id = resource.remote_id
        if not remote_id:
            payload = resource.spec.to_payload(resource.name)
            name = str(payload.get(KIND_ROUTES[resource.kind].name_key) or resource.name)
            remote_id = client.find(resource.kind, name) or ""
            if not remote_id:
                _LOG.info("%s has no remote object; nothing to delete", resource.key)
                return
            owner = self._owner_of(resource, remote_id, descriptor)
            if owner is not None:
                _LOG.info("Remote %s %s belongs to %s; leaving it in place", resource.kind.value, remote_id, owner.key)
                return
        if client.delete(resource.kind, remote_id):
            _LOG.info("Deleted remote %s %s for %s", resource.kind.value, remote_id, resource.key)
        else:
            _LOG.info("Remote %s %s for %s was already gone", resource.kind.value, remote_id, resource.key)

    def _owner_of(
        self, resource: ManagedResource, remote_id: str, descriptor: ClientDescriptor
    ) -> Optional[ManagedResource]:
        """Another resource already recorded as owning ``remote_id`` on the same backend."""

        for other in self.store.list(resource.kind):
            if other.key == resource.key or other.remote_id != remote_id:
                continue
            try:
                config = self.configs.resolve_config(other, require_ready=False)
            except OperatorError:
                continue
            spec = config.spec
            assert isinstance(spec, ConfigSpec)
            if spec.endpoint.rstrip("/") == descriptor.endpoint and spec.organization == descriptor.organization:
                return other
        return None
