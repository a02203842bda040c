"""Resolution of Config references and cross-resource dependencies."""
from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Protocol, Tuple

from .config import OperatorSettings
from .errors import DependencyMissingError, RemoteAuthError, ValidationError
from .remote import KIND_ROUTES, ClientDescriptor, RemoteSyncClient
from .resources.base import ManagedResource, ResourceKey, ResourceKind
from .resources.connection import ConfigSpec
from .resources.destination import DestinationSpec
from .store import ResourceStore

_LOG = logging.getLogger(__name__)


class SecretReader(Protocol):
    def read(self, namespace: str, name: str) -> Optional[Dict[str, str]]: ...


class StaticSecretReader:
    """Secret reader backed by a plain mapping; used offline and in tests."""

    def __init__(self, secrets: Optional[Mapping[Tuple[str, str], Dict[str, str]]] = None) -> None:
        self._secrets: Dict[Tuple[str, str], Dict[str, str]] = dict(secrets or {})

    def put(self, namespace: str, name: str, data: Dict[str, str]) -> None:
        self._secrets[(namespace, name)] = dict(data)

    def read(self, namespace: str, name: str) -> Optional[Dict[str, str]]:
        data = self._secrets.get((namespace, name))
        return dict(data) if data is not None else None


class ConfigResolver:
    """Turns a resource's ``configRef`` into an authenticated client descriptor."""

    def __init__(self, store: ResourceStore, secrets: SecretReader, settings: OperatorSettings) -> None:
        self.store = store
        self.secrets = secrets
        self.settings = settings

    def resolve_config(self, resource: ManagedResource, require_ready: bool = True) -> ManagedResource:
        """Return the Config resource ``resource`` points at."""

        if resource.kind is ResourceKind.CONFIG:
            return resource
        config_key = resource.config_key
        if config_key is None:
            raise ValidationError("configRef is required", reason="ConfigRefMissing")
        if not self.settings.config_namespace_allowed(resource.namespace, config_key.namespace):
            raise ValidationError(
                f"Config {config_key.namespace}/{config_key.name} is outside the allowed namespace scope",
                reason="ConfigRefForbidden",
            )
        config = self.store.get(config_key)
        if config is None:
            raise DependencyMissingError(f"Config {config_key.namespace}/{config_key.name} not found")
        # A Config held by its finalizer still serves the teardown of its dependents.
        if require_ready and config.deletion_requested is not None:
            raise DependencyMissingError(f"Config {config_key.namespace}/{config_key.name} is being deleted")
        if require_ready and not config.is_ready:
            raise DependencyMissingError(f"Config {config_key.namespace}/{config_key.name} is not Ready")
        return config

    def resolve(self, resource: ManagedResource, require_ready: bool = True) -> ClientDescriptor:
        config = self.resolve_config(resource, require_ready=require_ready)
        spec = config.spec
        assert isinstance(spec, ConfigSpec)
        ref = spec.credential_ref
        secret_namespace = ref.namespace or config.namespace
        data = self.secrets.read(secret_namespace, ref.name)
        if data is None:
            raise DependencyMissingError(f"Secret {secret_namespace}/{ref.name} not found")
        username = data.get(ref.username_key)
        if not username:
            raise RemoteAuthError(f"Secret {secret_namespace}/{ref.name} has no {ref.username_key!r} key")
        if data.get(ref.token_key):
            secret, auth_mode = data[ref.token_key], "token"
        elif data.get(ref.password_key):
            secret, auth_mode = data[ref.password_key], "password"
        else:
            raise RemoteAuthError(
                f"Secret {secret_namespace}/{ref.name} needs either {ref.token_key!r} or {ref.password_key!r}"
            )
        _LOG.debug("Resolved %s to %s using %s credentials", resource.key, spec.endpoint, auth_mode)
        return ClientDescriptor(
            config_key=config.key,
            endpoint=spec.endpoint.rstrip("/"),
            organization=spec.organization,
            username=username,
            secret=secret,
            auth_mode=auth_mode,
            tls_verify=spec.tls_verify,
        )


class DependencyResolver:
    """Checks that everything a resource references exists and is Ready."""

    def __init__(self, store: ResourceStore, configs: ConfigResolver) -> None:
        self.store = store
        self.configs = configs

    def lookup(self, key: ResourceKey) -> Optional[ManagedResource]:
        return self.store.get(key)

    def organization_of(self, resource: ManagedResource) -> Optional[Tuple[str, str]]:
        """(endpoint, organization) of the Config a resource belongs to."""

        config_key = resource.config_key if resource.kind is not ResourceKind.CONFIG else resource.key
        if config_key is None:
            return None
        config = self.store.get(config_key)
        if config is None:
            return None
        spec = config.spec
        assert isinstance(spec, ConfigSpec)
        return spec.endpoint.rstrip("/"), spec.organization

    def require(self, resource: ManagedResource, client: Optional[RemoteSyncClient] = None) -> None:
        """Raise ``DependencyMissingError`` for the first unusable reference.

        With a ``client`` the referenced objects are also confirmed to exist
        on the backend.
        """

        organization = self.organization_of(resource)
        for key in resource.spec.references(resource.namespace):
            label = f"{key.kind.value} {key.namespace}/{key.name}"
            dependency = self.store.get(key)
            if dependency is None:
                raise DependencyMissingError(f"{label} not found")
            if dependency.deletion_requested is not None:
                raise DependencyMissingError(f"{label} is being deleted")
            if not dependency.is_ready or not dependency.remote_id:
                raise DependencyMissingError(f"{label} is not Ready")
            if self.organization_of(dependency) != organization:
                raise DependencyMissingError(
                    f"{label} belongs to a different organization", reason="DependencyMismatch"
                )
            self._check_destination_kind(resource, dependency, label)
            if client is not None and client.get(dependency.kind, dependency.remote_id) is None:
                raise DependencyMissingError(f"{label} does not exist on the backend")

    @staticmethod
    def remote_name(resource: ManagedResource) -> str:
        route = KIND_ROUTES[resource.kind]
        return str(resource.spec.to_payload(resource.name).get(route.name_key) or resource.name)

    def name_holder(self, resource: ManagedResource) -> Optional[ManagedResource]:
        """Another resource owning the same remote name in the same organization.

        A resource that already carries a remote id holds the name until it is
        released; between two resources in the same situation the lower key wins.
        """

        if resource.kind not in KIND_ROUTES:
            return None
        organization = self.organization_of(resource)
        name = self.remote_name(resource)
        for other in self.store.list(resource.kind):
            if other.key == resource.key or self.remote_name(other) != name:
                continue
            if other.deletion_requested is not None and not other.remote_id:
                continue
            if self.organization_of(other) != organization:
                continue
            if bool(other.remote_id) != bool(resource.remote_id):
                if other.remote_id:
                    return other
                continue
            if (other.namespace, other.name) < (resource.namespace, resource.name):
                return other
        return None

    @staticmethod
    def _check_destination_kind(resource: ManagedResource, dependency: ManagedResource, label: str) -> None:
        if dependency.kind is not ResourceKind.DESTINATION:
            return
        spec = dependency.spec
        assert isinstance(spec, DestinationSpec)
        expected = "alert" if resource.kind is ResourceKind.ALERT else "pipeline"
        if spec.destination_kind != expected:
            raise DependencyMissingError(
                f"{label} is a {spec.destination_kind} destination, expected {expected}",
                reason="DependencyMismatch",
            )
