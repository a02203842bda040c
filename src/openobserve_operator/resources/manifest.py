"""Conversion between Kubernetes-style manifests and ``ManagedResource`` envelopes."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from . import SPEC_MODELS
from .base import (
    API_GROUP,
    FINALIZER,
    Condition,
    ManagedResource,
    Phase,
    ResourceDefinition,
    ResourceKind,
)


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def from_manifest(body: Dict[str, Any], default_namespace: str = "default") -> ManagedResource:
    """Build a resource envelope from a manifest or a Kubernetes API object."""

    api_version = str(body.get("apiVersion", ""))
    if api_version and not api_version.startswith(f"{API_GROUP}/"):
        raise ValueError(f"Unsupported apiVersion {api_version!r}.")
    kind = ResourceKind.from_crd_kind(str(body.get("kind", "")))
    metadata: Dict[str, Any] = body.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        raise ValueError(f"{kind.crd_kind} manifest is missing metadata.name.")
    status: Dict[str, Any] = body.get("status") or {}
    spec = SPEC_MODELS[kind].model_validate(body.get("spec") or {})
    return ManagedResource(
        kind=kind,
        name=name,
        namespace=metadata.get("namespace") or default_namespace,
        spec=spec,
        generation=int(metadata.get("generation") or 1),
        remote_id=str(status.get("remoteID") or ""),
        deletion_requested=_parse_time(metadata.get("deletionTimestamp")),
        finalizer_present=FINALIZER in (metadata.get("finalizers") or []),
        conditions=[Condition.model_validate(entry) for entry in status.get("conditions") or []],
        observed_generation=int(status.get("observedGeneration") or 0),
        last_sync_time=_parse_time(status.get("lastSyncTime")),
        phase=Phase(status.get("phase") or Phase.PENDING.value),
    )


def to_definition(resource: ManagedResource) -> ResourceDefinition:
    metadata: Dict[str, Any] = {
        "name": resource.name,
        "namespace": resource.namespace,
        "generation": resource.generation,
    }
    if resource.finalizer_present:
        metadata["finalizers"] = [FINALIZER]
    if resource.deletion_requested is not None:
        metadata["deletionTimestamp"] = resource.deletion_requested.isoformat()
    return ResourceDefinition(
        kind=resource.kind,
        metadata=metadata,
        spec=resource.spec.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def load_manifests(path: str | Path, default_namespace: str = "default") -> List[ManagedResource]:
    """Read every resource document from a (multi-document) YAML file."""

    document_path = Path(path)
    resources: List[ManagedResource] = []
    for document in yaml.safe_load_all(document_path.read_text()):
        if document is None:
            continue
        if not isinstance(document, dict):
            raise ValueError(f"{document_path}: every document must be a mapping.")
        if document.get("kind") == "List":
            items = document.get("items") or []
        else:
            items = [document]
        for item in items:
            resources.append(from_manifest(item, default_namespace))
    return resources
