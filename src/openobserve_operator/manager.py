"""Wires resolvers, validators and control loops into a runnable operator."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

import httpx

from .admission import AdmissionValidator, FunctionTester, RemoteFunctionTester
from .config import OperatorSettings
from .finalizer import FinalizerManager
from .kube import KubeClient, KubeEventSource, KubeSecretReader, KubeStore
from .leader import LeaderElector
from .reconciler import Controller, ReconcileLoop
from .remote import ConnectionRegistry
from .resolver import ConfigResolver, DependencyResolver, SecretReader
from .status import StatusReporter
from .store import ResourceStore
from .webhook import WebhookServer

_LOG = logging.getLogger(__name__)


@dataclass
class Operator:
    """All collaborators of the reconciliation core, built around one store."""

    settings: OperatorSettings
    store: ResourceStore
    connections: ConnectionRegistry
    configs: ConfigResolver
    dependencies: DependencyResolver
    admission: AdmissionValidator
    finalizers: FinalizerManager
    loop: ReconcileLoop
    controller: Controller

    def close(self) -> None:
        self.controller.stop()
        self.connections.close()


def build_operator(
    settings: OperatorSettings,
    store: ResourceStore,
    secrets: SecretReader,
    *,
    transport: Optional[httpx.BaseTransport] = None,
    tester: Optional[FunctionTester] = None,
    run_function_tests: bool = True,
) -> Operator:
    connections = ConnectionRegistry(settings, transport=transport)
    configs = ConfigResolver(store, secrets, settings)
    dependencies = DependencyResolver(store, configs)
    if tester is None and run_function_tests:
        tester = RemoteFunctionTester(configs, connections)
    admission = AdmissionValidator(configs, dependencies, tester=tester)
    finalizers = FinalizerManager(store, configs, connections)
    loop = ReconcileLoop(store, configs, dependencies, admission, finalizers, connections, StatusReporter())
    controller = Controller(loop, settings)
    return Operator(
        settings=settings,
        store=store,
        connections=connections,
        configs=configs,
        dependencies=dependencies,
        admission=admission,
        finalizers=finalizers,
        loop=loop,
        controller=controller,
    )


def run_in_cluster(settings: OperatorSettings, stop: Optional[threading.Event] = None) -> None:
    """Run the controller against a cluster until ``stop`` is set."""

    stop = stop or threading.Event()
    kube = KubeClient(settings.kube)
    store = KubeStore(kube.custom, settings.watch_namespaces)
    operator = build_operator(settings, store, KubeSecretReader(kube.core_v1))
    events = KubeEventSource(kube.custom, operator.controller.handle_event, settings.watch_namespaces)

    def start_leading() -> None:
        operator.controller.start()
        events.start()
        operator.controller.resync()

    def stop_leading() -> None:
        events.stop()
        operator.controller.stop()

    # Every replica answers admission requests; only the leader reconciles.
    webhook = WebhookServer(operator.admission, settings.webhook) if settings.webhook.enabled else None
    if webhook is not None:
        webhook.start()
    try:
        if settings.leader_election.enabled:
            LeaderElector(kube.coordination, settings.leader_election).run(start_leading, stop_leading, stop)
        else:
            start_leading()
            stop.wait()
            stop_leading()
    finally:
        if webhook is not None:
            webhook.stop()
        operator.connections.close()
        _LOG.info("Operator stopped")
