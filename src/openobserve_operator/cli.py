"""Command line entry point for the OpenObserve operator."""
from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path
from typing import List, Optional

import pydantic
import typer
from rich import print as rich_print
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .admission import AdmissionResult
from .config import OperatorSettings
from .manager import build_operator, run_in_cluster
from .resolver import StaticSecretReader
from .resources.base import ManagedResource, ResourceKind
from .resources.manifest import load_manifests
from .status import StatusReporter
from .store import MemoryStore

app = typer.Typer(help="Reconcile OpenObserve resources declared as Kubernetes custom resources.")

ADMISSION_ORDER = [
    ResourceKind.CONFIG,
    ResourceKind.TEMPLATE,
    ResourceKind.FUNCTION,
    ResourceKind.DESTINATION,
    ResourceKind.ALERT,
    ResourceKind.PIPELINE,
    ResourceKind.DASHBOARD,
]


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, log_time_format="%X")],
    )


def _load_settings(settings_path: Optional[Path]) -> OperatorSettings:
    if settings_path:
        return OperatorSettings.from_file(settings_path)
    return OperatorSettings.from_env()


def validate_offline(resources: List[ManagedResource], settings: OperatorSettings) -> List[AdmissionResult]:
    """Admit resources in dependency order against an in-memory store.

    Configs declared alongside the resources are treated as Ready, and
    function test cases are not executed since no backend is reachable.
    """

    store = MemoryStore()
    operator = build_operator(settings, store, StaticSecretReader(), run_function_tests=False)
    reporter = StatusReporter()
    ranked = sorted(range(len(resources)), key=lambda index: ADMISSION_ORDER.index(resources[index].kind))
    results: List[Optional[AdmissionResult]] = [None] * len(resources)
    for index in ranked:
        resource = resources[index]
        result = operator.admission.validate(resource, "CREATE", run_function_tests=False)
        results[index] = result
        if not result.allowed:
            continue
        stored = store.apply(resource)
        if stored.kind is ResourceKind.CONFIG:
            store.update_status(reporter.synced(stored, "", changed=False))
    operator.close()
    return [result for result in results if result is not None]


@app.command("validate")
def validate(
    manifests: List[Path] = typer.Argument(..., help="Manifest files to check."),
    namespace: str = typer.Option("default", help="Namespace for manifests that do not set one."),
    settings_path: Optional[Path] = typer.Option(None, "--settings", help="Operator settings YAML."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """Run admission checks over manifest files without touching a cluster."""

    _configure_logging(verbose)
    settings = _load_settings(settings_path)
    resources: List[ManagedResource] = []
    for path in manifests:
        try:
            resources.extend(load_manifests(path, namespace))
        except (pydantic.ValidationError, ValueError) as exc:
            rich_print(f"[red]{escape(str(path))}: {escape(str(exc))}[/red]")
            raise typer.Exit(code=2)

    results = validate_offline(resources, settings)

    table = Table(title="Admission results")
    table.add_column("Kind")
    table.add_column("Namespace")
    table.add_column("Name")
    table.add_column("Result")
    table.add_column("Reason")
    for resource, result in zip(resources, results):
        table.add_row(
            resource.kind.value,
            resource.namespace,
            resource.name,
            "[green]allowed[/green]" if result.allowed else "[red]denied[/red]",
            escape(result.reason),
        )
    rich_print(table)
    if not all(result.allowed for result in results):
        raise typer.Exit(code=1)


@app.command("run")
def run(
    settings_path: Optional[Path] = typer.Option(None, "--settings", help="Operator settings YAML."),
    kube_context: Optional[str] = typer.Option(None, "--context", help="Override kubeconfig context."),
    kubeconfig: Optional[Path] = typer.Option(None, help="Path to kubeconfig file."),
    in_cluster: bool = typer.Option(False, "--in-cluster", help="Use the pod service account."),
    watch_namespace: List[str] = typer.Option([], "--namespace", help="Namespace to watch; repeatable."),
    leader_election: bool = typer.Option(True, "--leader-election/--no-leader-election"),
    webhook: bool = typer.Option(True, "--webhook/--no-webhook", help="Serve the admission webhook."),
    webhook_cert_dir: Optional[Path] = typer.Option(None, help="Directory holding the webhook tls.crt and tls.key."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """Start the reconcile loops against a Kubernetes cluster."""

    _configure_logging(verbose)
    settings = _load_settings(settings_path)
    if kube_context:
        settings.kube.context = kube_context
    if kubeconfig:
        settings.kube.kubeconfig = str(kubeconfig)
    if in_cluster:
        settings.kube.in_cluster = True
    if watch_namespace:
        settings.watch_namespaces = list(watch_namespace)
    settings.leader_election.enabled = leader_election
    settings.webhook.enabled = webhook
    if webhook_cert_dir:
        settings.webhook.cert_dir = str(webhook_cert_dir)

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    try:
        run_in_cluster(settings, stop)
    except KeyboardInterrupt:
        stop.set()


@app.command("status")
def status(
    kind: Optional[ResourceKind] = typer.Option(None, help="Only show one resource kind."),
    kube_context: Optional[str] = typer.Option(None, "--context", help="Override kubeconfig context."),
    kubeconfig: Optional[Path] = typer.Option(None, help="Path to kubeconfig file."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """Show the status of every managed resource."""

    from .kube import KubeClient, KubeStore

    _configure_logging(verbose)
    settings = OperatorSettings.from_env()
    if kube_context:
        settings.kube.context = kube_context
    if kubeconfig:
        settings.kube.kubeconfig = str(kubeconfig)
    store = KubeStore(KubeClient(settings.kube).custom, settings.watch_namespaces)

    table = Table(title="OpenObserve resources")
    for column in ("Kind", "Namespace", "Name", "Phase", "Ready", "Generation", "Remote ID", "Message"):
        table.add_column(column)
    for resource in store.list(kind):
        ready = resource.condition("Ready")
        table.add_row(
            resource.kind.value,
            resource.namespace,
            resource.name,
            resource.phase.value,
            ready.status if ready else "Unknown",
            f"{resource.observed_generation}/{resource.generation}",
            resource.remote_id or "-",
            escape(ready.message) if ready else "",
        )
    rich_print(table)
