"""OpenObserveDestination resource: where alerts and pipelines deliver data."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import Field, model_validator

from .base import ResourceKey, ResourceKind, ResourceSpec

DESTINATION_TYPES = (
    "custom",
    "openobserve",
    "splunk",
    "newrelic",
    "elasticsearch",
    "dynatrace",
    "datadog",
)

OUTPUT_FORMATS = ("json", "ndjson", "nestedevent", "esbulk")

# None means any known output format is accepted.
REQUIRED_OUTPUT_FORMAT: Dict[str, Optional[str]] = {
    "custom": None,
    "openobserve": "json",
    "splunk": "nestedevent",
    "newrelic": "json",
    "elasticsearch": "esbulk",
    "dynatrace": "json",
    "datadog": "json",
}

# (header name, required value prefix); an empty prefix only requires a value.
REQUIRED_HEADERS: Dict[str, Tuple[str, str]] = {
    "splunk": ("Authorization", "Splunk "),
    "datadog": ("DD-API-KEY", ""),
    "dynatrace": ("Authorization", "Api-Token "),
    "newrelic": ("Api-Key", ""),
    "openobserve": ("Authorization", "Basic "),
}

DATADOG_METADATA_KEYS = ("ddsource", "ddtags")


class DestinationSpec(ResourceSpec):
    """Alert or pipeline destination definition."""

    destination_kind: Literal["alert", "pipeline"] = Field(default="alert", alias="kind")
    transport_type: Literal["http", "email"] = Field(default="http", alias="transportType")
    template_ref: Optional[str] = Field(default=None, alias="templateRef")
    destination_type_name: Optional[str] = Field(default=None, alias="destinationTypeName")
    output_format: Optional[str] = Field(default=None, alias="outputFormat")
    url: Optional[str] = None
    method: Literal["get", "post", "put"] = "post"
    skip_tls_verify: bool = Field(default=False, alias="skipTlsVerify")
    emails: List[str] = Field(default_factory=list)
    headers: Dict[str, str] = Field(default_factory=dict)
    metadata: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _infer_kind(cls, data: Any) -> Any:
        # Only pipeline destinations carry a destinationTypeName.
        if isinstance(data, dict) and "kind" not in data and "destination_kind" not in data:
            if data.get("destinationTypeName") or data.get("destination_type_name"):
                return {**data, "kind": "pipeline"}
        return data

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""

        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def references(self, namespace: str) -> List[ResourceKey]:
        if self.destination_kind == "alert" and self.template_ref:
            return [ResourceKey(ResourceKind.TEMPLATE, namespace, self.template_ref)]
        return []

    def to_payload(self, name: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": name,
            "type": self.transport_type,
            "headers": dict(self.headers),
        }
        if self.transport_type == "email":
            payload["emails"] = list(self.emails)
        else:
            payload["url"] = self.url or ""
            payload["method"] = self.method
            payload["skip_tls_verify"] = self.skip_tls_verify
        if self.destination_kind == "alert":
            payload["template"] = self.template_ref or ""
        else:
            payload["destination_type_name"] = self.destination_type_name or "custom"
            payload["output_format"] = self.output_format or "json"
            if self.metadata:
                payload["metadata"] = dict(self.metadata)
        return payload
