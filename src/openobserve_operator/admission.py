"""Admission checks applied before a resource is accepted into the store.

Checks run in a fixed order and stop at the first failure:

1. ``configRef`` points at an existing, Ready Config in an allowed namespace.
2. The kind-specific structural rules from :func:`default_validators`.
3. Alerts reference at most :data:`MAX_DESTINATIONS` destinations.
4. No other resource of the same kind owns the remote name in the organization.

A rejection never touches the remote backend beyond read-only function tests.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib.parse import urlparse

import pydantic

from .errors import DependencyMissingError, OperatorError, ValidationError
from .graph import PipelineGraphError, PipelineGraphValidator
from .remote import ConnectionRegistry
from .resolver import ConfigResolver, DependencyResolver
from .resources.alert import MAX_DESTINATIONS, AlertSpec
from .resources.base import ManagedResource, ResourceKey, ResourceKind
from .resources.connection import ConfigSpec
from .resources.dashboard import DashboardSpec
from .resources.destination import (
    DATADOG_METADATA_KEYS,
    DESTINATION_TYPES,
    OUTPUT_FORMATS,
    REQUIRED_HEADERS,
    REQUIRED_OUTPUT_FORMAT,
    DestinationSpec,
)
from .resources.function import FunctionSpec, FunctionTestCase
from .resources.manifest import from_manifest
from .resources.pipeline import PipelineSpec
from .resources.template import TemplateSpec
from .utils import structurally_equal

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionResult:
    allowed: bool
    reason: str = ""
    code: str = ""

    @classmethod
    def accept(cls) -> "AdmissionResult":
        return cls(True)

    @classmethod
    def reject(cls, reason: str, code: str = "ValidationFailed") -> "AdmissionResult":
        return cls(False, reason, code)


class DependencyLookup(Protocol):
    def lookup(self, key: ResourceKey) -> Optional[ManagedResource]: ...

    def organization_of(self, resource: ManagedResource) -> Optional[tuple]: ...


class FunctionTester(Protocol):
    def run(self, resource: ManagedResource, case: FunctionTestCase) -> Any: ...


class RemoteFunctionTester:
    """Executes function test cases through the backend's test endpoint."""

    def __init__(self, configs: ConfigResolver, connections: ConnectionRegistry) -> None:
        self.configs = configs
        self.connections = connections

    def run(self, resource: ManagedResource, case: FunctionTestCase) -> Any:
        spec = resource.spec
        assert isinstance(spec, FunctionSpec)
        client = self.connections.client_for(self.configs.resolve(resource))
        return client.test_function(spec.transform_expr, case.input)


class KindValidator:
    """Structural rules for one resource kind."""

    kind: ResourceKind

    def validate(self, resource: ManagedResource, lookup: DependencyLookup) -> AdmissionResult:
        return AdmissionResult.accept()


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class ConfigValidator(KindValidator):
    kind = ResourceKind.CONFIG

    def validate(self, resource: ManagedResource, lookup: DependencyLookup) -> AdmissionResult:
        spec = resource.spec
        assert isinstance(spec, ConfigSpec)
        if not _is_http_url(spec.endpoint):
            return AdmissionResult.reject(f"endpoint {spec.endpoint!r} must be an http(s) URL")
        if not spec.organization.strip():
            return AdmissionResult.reject("organization is required")
        if not spec.credential_ref.name.strip():
            return AdmissionResult.reject("credentialRef.name is required")
        return AdmissionResult.accept()


class DestinationValidator(KindValidator):
    kind = ResourceKind.DESTINATION

    def validate(self, resource: ManagedResource, lookup: DependencyLookup) -> AdmissionResult:
        spec = resource.spec
        assert isinstance(spec, DestinationSpec)
        if spec.url and not _is_http_url(spec.url):
            return AdmissionResult.reject(f"url {spec.url!r} must be an http(s) URL")
        if spec.destination_kind == "alert":
            return self._validate_alert_destination(resource, spec, lookup)
        return self._validate_pipeline_destination(spec)

    @staticmethod
    def _validate_alert_destination(
        resource: ManagedResource, spec: DestinationSpec, lookup: DependencyLookup
    ) -> AdmissionResult:
        if not spec.template_ref:
            return AdmissionResult.reject("alert destinations require templateRef")
        if spec.destination_type_name:
            return AdmissionResult.reject("alert destinations must not set destinationTypeName")
        if spec.transport_type == "http" and not spec.url:
            return AdmissionResult.reject("http alert destinations require url")
        if spec.transport_type == "email" and not spec.emails:
            return AdmissionResult.reject("email alert destinations require at least one recipient")
        template = lookup.lookup(ResourceKey(ResourceKind.TEMPLATE, resource.namespace, spec.template_ref))
        if template is None or template.deletion_requested is not None:
            return AdmissionResult.reject(f"template {spec.template_ref} not found", "DependencyMissing")
        if lookup.organization_of(template) != lookup.organization_of(resource):
            return AdmissionResult.reject(
                f"template {spec.template_ref} belongs to a different organization", "DependencyMismatch"
            )
        return AdmissionResult.accept()

    @staticmethod
    def _validate_pipeline_destination(spec: DestinationSpec) -> AdmissionResult:
        if spec.template_ref:
            return AdmissionResult.reject("pipeline destinations must not set templateRef")
        type_name = spec.destination_type_name
        if not type_name:
            return AdmissionResult.reject("pipeline destinations require destinationTypeName")
        if type_name not in DESTINATION_TYPES:
            return AdmissionResult.reject(
                f"destinationTypeName {type_name!r} must be one of {', '.join(DESTINATION_TYPES)}"
            )
        if spec.transport_type != "http":
            return AdmissionResult.reject("pipeline destinations only support http transport")
        required_format = REQUIRED_OUTPUT_FORMAT[type_name]
        if required_format is not None and spec.output_format != required_format:
            return AdmissionResult.reject(f"{type_name} destinations require outputFormat {required_format}")
        if spec.output_format is not None and spec.output_format not in OUTPUT_FORMATS:
            return AdmissionResult.reject(
                f"outputFormat {spec.output_format!r} must be one of {', '.join(OUTPUT_FORMATS)}"
            )
        if type_name in REQUIRED_HEADERS:
            header, prefix = REQUIRED_HEADERS[type_name]
            value = spec.header(header)
            if not value or not value.startswith(prefix) or not value[len(prefix):].strip():
                expected = f"{header}: {prefix}<token>" if prefix else header
                return AdmissionResult.reject(f"{type_name} destinations require header '{expected}'")
        if type_name == "datadog" and not all(spec.metadata.get(key) for key in DATADOG_METADATA_KEYS):
            return AdmissionResult.reject("ddsource and ddtags required in metadata")
        return AdmissionResult.accept()


class TemplateValidator(KindValidator):
    kind = ResourceKind.TEMPLATE

    def validate(self, resource: ManagedResource, lookup: DependencyLookup) -> AdmissionResult:
        spec = resource.spec
        assert isinstance(spec, TemplateSpec)
        if not spec.body.strip():
            return AdmissionResult.reject("bodyExpr is required")
        if spec.transport_type == "email" and not (spec.title or "").strip():
            return AdmissionResult.reject("email templates require titleExpr")
        return AdmissionResult.accept()


class AlertValidator(KindValidator):
    kind = ResourceKind.ALERT

    def validate(self, resource: ManagedResource, lookup: DependencyLookup) -> AdmissionResult:
        spec = resource.spec
        assert isinstance(spec, AlertSpec)
        if not spec.stream_name.strip():
            return AdmissionResult.reject("streamName is required")
        if spec.is_real_time and spec.schedule is not None:
            return AdmissionResult.reject("real-time alerts must not define a schedule")
        if not spec.is_real_time:
            if spec.schedule is None:
                return AdmissionResult.reject("scheduled alerts require a schedule")
            if spec.schedule.period <= 0 or spec.schedule.frequency <= 0:
                return AdmissionResult.reject("schedule period and frequency must be positive")
        if not spec.destinations:
            return AdmissionResult.reject("at least one destination is required")
        if len(set(spec.destinations)) != len(spec.destinations):
            return AdmissionResult.reject("destinations must be unique")
        return AdmissionResult.accept()


class PipelineValidator(KindValidator):
    kind = ResourceKind.PIPELINE

    def validate(self, resource: ManagedResource, lookup: DependencyLookup) -> AdmissionResult:
        spec = resource.spec
        assert isinstance(spec, PipelineSpec)
        if spec.source.type == "realtime" and not spec.source.stream_name:
            return AdmissionResult.reject("realtime pipelines require source.streamName")
        if spec.source.type == "scheduled" and not spec.source.query:
            return AdmissionResult.reject("scheduled pipelines require source.query")
        for node in spec.nodes:
            if node.kind == "function" and not node.config.get("name"):
                return AdmissionResult.reject(f"function node {node.id} requires config.name")
        try:
            PipelineGraphValidator(spec.unmatched_records).validate(spec.nodes, spec.edges)
        except PipelineGraphError as exc:
            return AdmissionResult.reject(str(exc), "InvalidPipelineGraph")
        return AdmissionResult.accept()


class FunctionValidator(KindValidator):
    kind = ResourceKind.FUNCTION

    def __init__(self, tester: Optional[FunctionTester] = None) -> None:
        self.tester = tester

    def validate(self, resource: ManagedResource, lookup: DependencyLookup) -> AdmissionResult:
        spec = resource.spec
        assert isinstance(spec, FunctionSpec)
        if not spec.transform_expr.strip():
            return AdmissionResult.reject("transformExpr is required")
        return AdmissionResult.accept()

    def run_tests(self, resource: ManagedResource) -> AdmissionResult:
        """Execute every declared test case; all of them must pass."""

        spec = resource.spec
        assert isinstance(spec, FunctionSpec)
        if not spec.test_cases:
            return AdmissionResult.accept()
        if self.tester is None:
            _LOG.warning("No function tester configured; skipping %d test(s) for %s", len(spec.test_cases), resource.key)
            return AdmissionResult.accept()
        for number, case in enumerate(spec.test_cases, start=1):
            try:
                actual = self.tester.run(resource, case)
            except OperatorError as exc:
                return AdmissionResult.reject(f"test case {number} could not be executed: {exc.message}", exc.reason)
            if not structurally_equal(actual, case.expected_output):
                return AdmissionResult.reject(
                    f"test case {number} failed: expected {case.expected_output!r}, got {actual!r}",
                    "FunctionTestFailed",
                )
        return AdmissionResult.accept()


class DashboardValidator(KindValidator):
    kind = ResourceKind.DASHBOARD

    def validate(self, resource: ManagedResource, lookup: DependencyLookup) -> AdmissionResult:
        spec = resource.spec
        assert isinstance(spec, DashboardSpec)
        if not spec.title.strip():
            return AdmissionResult.reject("title is required")
        return AdmissionResult.accept()


def default_validators(tester: Optional[FunctionTester] = None) -> Dict[ResourceKind, KindValidator]:
    validators = [
        ConfigValidator(),
        DestinationValidator(),
        TemplateValidator(),
        AlertValidator(),
        PipelineValidator(),
        FunctionValidator(tester),
        DashboardValidator(),
    ]
    return {validator.kind: validator for validator in validators}


class AdmissionValidator:
    """Synchronous gate for create and update requests."""

    def __init__(
        self,
        configs: ConfigResolver,
        dependencies: DependencyResolver,
        validators: Optional[Mapping[ResourceKind, KindValidator]] = None,
        tester: Optional[FunctionTester] = None,
    ) -> None:
        self.configs = configs
        self.dependencies = dependencies
        self.validators: Dict[ResourceKind, KindValidator] = dict(validators or default_validators(tester))

    def validate(
        self,
        resource: ManagedResource,
        operation: str = "CREATE",
        run_function_tests: bool = True,
    ) -> AdmissionResult:
        if operation.upper() == "DELETE":
            return AdmissionResult.accept()
        try:
            self.configs.resolve_config(resource)
        except (ValidationError, DependencyMissingError) as exc:
            return AdmissionResult.reject(exc.message, exc.reason)

        validator = self.validators.get(resource.kind)
        if validator is not None:
            result = validator.validate(resource, self.dependencies)
            if not result.allowed:
                return result
            if run_function_tests and isinstance(validator, FunctionValidator):
                result = validator.run_tests(resource)
                if not result.allowed:
                    return result

        spec = resource.spec
        if isinstance(spec, AlertSpec) and len(spec.destinations) > MAX_DESTINATIONS:
            return AdmissionResult.reject(f"destinations exceed maximum of {MAX_DESTINATIONS}")

        holder = self.dependencies.name_holder(resource)
        if holder is not None:
            return AdmissionResult.reject(
                f"{resource.kind.value} {self.dependencies.remote_name(resource)!r} is already managed by "
                f"{holder.namespace}/{holder.name} in the same organization",
                "NameConflict",
            )
        return AdmissionResult.accept()

    def admit(self, resource: ManagedResource, operation: str = "UPDATE", run_function_tests: bool = True) -> None:
        """Raise the matching error when ``resource`` would be rejected."""

        result = self.validate(resource, operation, run_function_tests)
        if result.allowed:
            return
        if result.code in ("DependencyMissing", "DependencyMismatch", "NameConflict"):
            raise DependencyMissingError(result.reason, reason=result.code)
        raise ValidationError(result.reason, reason=result.code or None)

    def run_function_tests(self, resource: ManagedResource) -> None:
        validator = self.validators.get(ResourceKind.FUNCTION)
        if resource.kind is not ResourceKind.FUNCTION or not isinstance(validator, FunctionValidator):
            return
        result = validator.run_tests(resource)
        if not result.allowed:
            raise ValidationError(result.reason, reason=result.code)

    def review(self, admission_review: Dict[str, Any]) -> Dict[str, Any]:
        """Answer an ``admission.k8s.io/v1`` AdmissionReview."""

        request: Dict[str, Any] = admission_review.get("request") or {}
        uid = request.get("uid", "")
        operation = str(request.get("operation", "CREATE"))
        result = AdmissionResult.accept()
        if operation.upper() != "DELETE":
            body = request.get("object") or {}
            try:
                resource = from_manifest(body, request.get("namespace") or "default")
            except (pydantic.ValidationError, ValueError) as exc:
                result = AdmissionResult.reject(f"invalid resource: {exc}")
            else:
                result = self.validate(resource, operation)
            if not result.allowed:
                _LOG.info("Denied %s of %s: %s", operation, body.get("metadata", {}).get("name"), result.reason)
        response: Dict[str, Any] = {"uid": uid, "allowed": result.allowed}
        if not result.allowed:
            response["status"] = {"code": 403, "reason": "Forbidden", "message": result.reason}
        return {
            "apiVersion": admission_review.get("apiVersion", "admission.k8s.io/v1"),
            "kind": "AdmissionReview",
            "response": response,
        }
