"""Operator settings and helpers to load them from files and the environment."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .resources.base import ResourceKind
from .utils import deep_merge

ENV_PREFIX = "O2_"

DEFAULT_CONCURRENCY: Dict[ResourceKind, int] = {
    ResourceKind.ALERT: 5,
    ResourceKind.PIPELINE: 5,
    ResourceKind.FUNCTION: 3,
    ResourceKind.DESTINATION: 3,
    ResourceKind.TEMPLATE: 3,
    ResourceKind.CONFIG: 2,
    ResourceKind.DASHBOARD: 3,
}


class KubeContext(BaseModel):
    """Connection context to interact with the Kubernetes cluster."""

    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    in_cluster: bool = False
    verify_ssl: bool = True


class LeaderElectionSettings(BaseModel):
    enabled: bool = True
    lease_name: str = "openobserve-operator-leader"
    lease_namespace: str = "o2operator"
    lease_duration_seconds: int = Field(default=15, gt=0)
    renew_interval_seconds: float = Field(default=5.0, gt=0)


class WebhookSettings(BaseModel):
    """Serving options for the admission webhook; the certificate is issued elsewhere."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=8443, gt=0, lt=65536)
    cert_dir: str = "/tmp/k8s-webhook-server/serving-certs"

    @property
    def cert_file(self) -> str:
        return str(Path(self.cert_dir) / "tls.crt")

    @property
    def key_file(self) -> str:
        return str(Path(self.cert_dir) / "tls.key")


class OperatorSettings(BaseModel):
    """Deployment-level knobs for worker pools and backend connections."""

    concurrency: Dict[ResourceKind, int] = Field(default_factory=lambda: dict(DEFAULT_CONCURRENCY))
    http_timeout: float = Field(default=30.0, gt=0)
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_initial_wait: float = Field(default=1.0, ge=0)
    rate_limit: float = Field(default=10.0, gt=0, description="Requests per second per Config.")
    rate_burst: int = Field(default=20, ge=1)
    connection_pool_size: int = Field(default=10, ge=1)
    backoff_base: float = Field(default=1.0, gt=0)
    backoff_cap: float = Field(default=300.0, gt=0)
    watch_namespaces: List[str] = Field(default_factory=list)
    shared_config_namespaces: List[str] = Field(default_factory=list)
    leader_election: LeaderElectionSettings = Field(default_factory=LeaderElectionSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    kube: KubeContext = Field(default_factory=KubeContext)

    @field_validator("concurrency")
    @classmethod
    def _fill_concurrency(cls, value: Dict[ResourceKind, int]) -> Dict[ResourceKind, int]:
        merged = dict(DEFAULT_CONCURRENCY)
        merged.update(value)
        for kind, workers in merged.items():
            if workers < 1:
                raise ValueError(f"Concurrency for {kind.value} must be at least 1.")
        return merged

    def workers_for(self, kind: ResourceKind) -> int:
        return self.concurrency.get(kind, 1)

    def config_namespace_allowed(self, resource_namespace: str, config_namespace: str) -> bool:
        """A Config is usable from its own namespace or from a shared one."""

        return config_namespace == resource_namespace or config_namespace in self.shared_config_namespaces

    @classmethod
    def from_file(cls, path: str | Path, environ: Optional[Mapping[str, str]] = None) -> "OperatorSettings":
        document_path = Path(path)
        data = yaml.safe_load(document_path.read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError("Settings file must contain a mapping at the top level.")
        return cls.load(data, environ)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "OperatorSettings":
        return cls.load({}, environ)

    @classmethod
    def load(cls, data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> "OperatorSettings":
        overrides = _env_overrides(os.environ if environ is None else environ)
        return cls.model_validate(deep_merge(data, overrides))


_SCALAR_ENV = {
    "HTTP_TIMEOUT": "http_timeout",
    "RETRY_MAX_ATTEMPTS": "retry_max_attempts",
    "RETRY_INITIAL_WAIT": "retry_initial_wait",
    "RATE_LIMIT": "rate_limit",
    "RATE_BURST": "rate_burst",
    "CONNECTION_POOL_SIZE": "connection_pool_size",
    "BACKOFF_BASE": "backoff_base",
    "BACKOFF_CAP": "backoff_cap",
}


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for suffix, field_name in _SCALAR_ENV.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value:
            overrides[field_name] = value
    concurrency: Dict[str, str] = {}
    for kind in ResourceKind:
        value = environ.get(f"{ENV_PREFIX}{kind.value.upper()}_CONCURRENCY")
        if value:
            concurrency[kind.value] = value
    if concurrency:
        overrides["concurrency"] = concurrency
    for suffix, field_name in (("WATCH_NAMESPACES", "watch_namespaces"), ("SHARED_CONFIG_NAMESPACES", "shared_config_namespaces")):
        value = environ.get(ENV_PREFIX + suffix)
        if value:
            overrides[field_name] = [item.strip() for item in value.split(",") if item.strip()]
    leader = environ.get(ENV_PREFIX + "LEADER_ELECTION")
    if leader:
        overrides["leader_election"] = {"enabled": leader.lower() in ("1", "true", "yes")}
    namespace = environ.get(ENV_PREFIX + "LEASE_NAMESPACE")
    if namespace:
        overrides.setdefault("leader_election", {})["lease_namespace"] = namespace
    webhook = environ.get(ENV_PREFIX + "WEBHOOK")
    if webhook:
        overrides["webhook"] = {"enabled": webhook.lower() in ("1", "true", "yes")}
    for suffix, field_name in (("WEBHOOK_PORT", "port"), ("WEBHOOK_CERT_DIR", "cert_dir")):
        value = environ.get(ENV_PREFIX + suffix)
        if value:
            overrides.setdefault("webhook", {})[field_name] = value
    return overrides
