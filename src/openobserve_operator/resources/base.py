"""Shared resource definitions for the OpenObserve operator."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

API_GROUP = "openobserve.ai"
API_VERSION = "v1alpha1"
FINALIZER = "openobserve.ai/finalizer"


class ResourceKind(str, Enum):
    """Resource kinds managed by the operator."""

    CONFIG = "Config"
    ALERT = "Alert"
    PIPELINE = "Pipeline"
    FUNCTION = "Function"
    DESTINATION = "Destination"
    TEMPLATE = "Template"
    DASHBOARD = "Dashboard"

    @property
    def crd_kind(self) -> str:
        if self is ResourceKind.TEMPLATE:
            return "OpenObserveAlertTemplate"
        return f"OpenObserve{self.value}"

    @property
    def plural(self) -> str:
        return self.crd_kind.lower() + "s"

    @classmethod
    def from_crd_kind(cls, crd_kind: str) -> "ResourceKind":
        for kind in cls:
            if crd_kind in (kind.crd_kind, kind.value):
                return kind
        raise ValueError(f"Unknown resource kind {crd_kind!r}.")


class ResourceModel(BaseModel):
    """Shared base model for resource spec objects."""

    model_config = ConfigDict(populate_by_name=True)


class ObjectRef(ResourceModel):
    """Name and namespace pointer to another resource."""

    name: str
    namespace: Optional[str] = None

    def resolve(self, default_namespace: str) -> "ObjectRef":
        return ObjectRef(name=self.name, namespace=self.namespace or default_namespace)


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of a resource inside the declarative store."""

    kind: ResourceKind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"


class ResourceSpec(ResourceModel):
    """Base class for kind-specific specs."""

    config_ref: Optional[ObjectRef] = Field(default=None, alias="configRef")

    def to_payload(self, name: str) -> Dict[str, Any]:
        """Render the body sent to the remote backend."""

        raise NotImplementedError

    def references(self, namespace: str) -> List[ResourceKey]:
        """Keys of the non-Config resources this spec points at."""

        return []


class Condition(ResourceModel):
    """Status condition entry exposed to operators."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="lastTransitionTime",
    )

    @property
    def is_true(self) -> bool:
        return self.status == "True"


class Phase(str, Enum):
    PENDING = "Pending"
    SYNCING = "Syncing"
    READY = "Ready"
    ERROR = "Error"
    DELETING = "Deleting"


@dataclass
class ManagedResource:
    """Envelope around a kind-specific spec plus controller-owned state."""

    kind: ResourceKind
    name: str
    namespace: str
    spec: ResourceSpec
    generation: int = 1
    remote_id: str = ""
    deletion_requested: Optional[datetime] = None
    finalizer_present: bool = False
    conditions: List[Condition] = field(default_factory=list)
    observed_generation: int = 0
    last_sync_time: Optional[datetime] = None
    phase: Phase = Phase.PENDING

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.namespace, self.name)

    @property
    def config_ref(self) -> Optional[ObjectRef]:
        if self.kind is ResourceKind.CONFIG or self.spec.config_ref is None:
            return None
        return self.spec.config_ref.resolve(self.namespace)

    @property
    def config_key(self) -> Optional[ResourceKey]:
        ref = self.config_ref
        if ref is None:
            return None
        return ResourceKey(ResourceKind.CONFIG, ref.namespace or self.namespace, ref.name)

    def references(self) -> List[ResourceKey]:
        keys = list(self.spec.references(self.namespace))
        config_key = self.config_key
        if config_key is not None:
            keys.insert(0, config_key)
        return keys

    def condition(self, condition_type: str) -> Optional[Condition]:
        for entry in self.conditions:
            if entry.type == condition_type:
                return entry
        return None

    @property
    def is_ready(self) -> bool:
        ready = self.condition("Ready")
        return bool(ready and ready.is_true and self.observed_generation == self.generation)

    def copy(self) -> "ManagedResource":
        return copy.deepcopy(self)


@dataclass(frozen=True)
class ResourceDefinition:
    """Represents a Kubernetes custom resource manifest."""

    kind: ResourceKind
    metadata: Dict[str, Any]
    spec: Optional[Dict[str, Any]] = None
    status: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": self.kind.crd_kind,
            "metadata": self.metadata,
        }
        if self.spec is not None:
            body["spec"] = self.spec
        if self.status is not None:
            body["status"] = self.status
        return body

    @property
    def name(self) -> Optional[str]:
        return self.metadata.get("name")

    @property
    def namespace(self) -> Optional[str]:
        return self.metadata.get("namespace")
