"""Per-kind control loops that converge the backend on the declared state."""
from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .admission import AdmissionValidator
from .config import OperatorSettings
from .errors import DependencyMissingError, OperatorError
from .finalizer import FinalizerManager
from .remote import ConnectionRegistry, RemoteSyncClient
from .resolver import ConfigResolver, DependencyResolver
from .resources.base import ManagedResource, Phase, ResourceKey, ResourceKind
from .status import StatusReporter
from .store import ResourceStore
from .utils import fingerprint, project
from .workqueue import Backoff, WorkQueue

_LOG = logging.getLogger(__name__)


class Outcome(str, Enum):
    CONVERGED = "Converged"
    READY = "Ready"
    REQUEUE = "Requeue"
    TERMINAL = "Terminal"
    RELEASED = "Released"
    GONE = "Gone"


class ReconcileLoop:
    """Reconciles a single resource key.

    Pending/Error resources move to Syncing on every attempt; a sync that
    resolves the Config, passes the admission re-check and converges the
    remote object marks the resource Ready. Deletion requests hand over to
    the finalizer manager. Writes happen only when the desired fingerprint
    differs from the fingerprint of the observed remote object.
    """

    def __init__(
        self,
        store: ResourceStore,
        configs: ConfigResolver,
        dependencies: DependencyResolver,
        admission: AdmissionValidator,
        finalizers: FinalizerManager,
        connections: ConnectionRegistry,
        status: Optional[StatusReporter] = None,
    ) -> None:
        self.store = store
        self.configs = configs
        self.dependencies = dependencies
        self.admission = admission
        self.finalizers = finalizers
        self.connections = connections
        self.status = status or StatusReporter()

    def reconcile(self, key: ResourceKey) -> Outcome:
        resource = self.store.get(key)
        if resource is None:
            _LOG.debug("%s no longer exists", key)
            return Outcome.GONE
        if resource.deletion_requested is not None:
            return self._reconcile_deletion(resource)

        was_ready = resource.is_ready
        self.finalizers.attach(resource)
        if resource.phase in (Phase.PENDING, Phase.ERROR):
            resource.phase = Phase.SYNCING
            self.store.update_status(resource)
        try:
            remote_id, changed = self._sync(resource)
        except OperatorError as exc:
            _LOG.warning("Reconcile of %s failed (%s): %s", key, exc.reason, exc.message)
            self.store.update_status(self.status.failed(resource, exc))
            return Outcome.REQUEUE if exc.retryable else Outcome.TERMINAL
        except Exception as exc:
            _LOG.exception("Unexpected error while reconciling %s", key)
            error = OperatorError(str(exc) or type(exc).__name__, reason="InternalError")
            self.store.update_status(self.status.failed(resource, error))
            return Outcome.REQUEUE

        self.store.update_status(self.status.synced(resource, remote_id, changed))
        if changed:
            _LOG.info("Synced %s (remote id %s, generation %s)", key, resource.remote_id or "-", resource.generation)
        else:
            _LOG.debug("%s already converged", key)
        return Outcome.CONVERGED if was_ready else Outcome.READY

    def _reconcile_deletion(self, resource: ManagedResource) -> Outcome:
        if not resource.finalizer_present:
            return Outcome.GONE
        if resource.phase is not Phase.DELETING:
            self.store.update_status(self.status.deleting(resource))
        try:
            self.finalizers.release(resource)
        except OperatorError as exc:
            _LOG.warning("Deletion of %s blocked (%s): %s", resource.key, exc.reason, exc.message)
            self.store.update_status(self.status.deleting(resource, exc))
            return Outcome.REQUEUE
        return Outcome.RELEASED

    def _sync(self, resource: ManagedResource) -> Tuple[str, bool]:
        self.admission.admit(resource, run_function_tests=False)
        descriptor = self.configs.resolve(resource)
        client = self.connections.client_for(descriptor)
        if resource.kind is ResourceKind.CONFIG:
            if not client.organization_exists():
                raise DependencyMissingError(f"organization {descriptor.organization} not found on {descriptor.endpoint}")
            return "", False

        self.dependencies.require(resource)

        desired = resource.spec.to_payload(resource.name)
        wanted = fingerprint(desired)
        remote_id = resource.remote_id
        observed = client.get(resource.kind, remote_id) if remote_id else None
        converged = observed is not None and fingerprint(project(observed, desired)) == wanted
        # Test cases are not part of the payload, so a new generation always reruns them.
        if converged and resource.generation == resource.observed_generation:
            return remote_id, False

        self.dependencies.require(resource, client)
        self.admission.run_function_tests(resource)
        if converged:
            return remote_id, False
        if observed is not None:
            client.update(resource.kind, remote_id, desired)
            return remote_id, True
        if remote_id:
            _LOG.warning("Remote %s %s for %s disappeared; recreating", resource.kind.value, remote_id, resource.key)
        return self._create(client, resource, desired, wanted), True

    @staticmethod
    def _create(client: RemoteSyncClient, resource: ManagedResource, desired: Dict, wanted: str) -> str:
        remote_id = client.create(resource.kind, desired)
        # An adopted object may predate this spec.
        adopted = client.get(resource.kind, remote_id)
        if adopted is not None and fingerprint(project(adopted, desired)) != wanted:
            _LOG.info("Adopted %s %s differs from the spec; updating", resource.kind.value, remote_id)
            client.update(resource.kind, remote_id, desired)
        return remote_id


class Controller:
    """One worker pool per resource kind feeding a shared ``ReconcileLoop``."""

    def __init__(self, loop: ReconcileLoop, settings: OperatorSettings) -> None:
        self.loop = loop
        self.settings = settings
        self.queues: Dict[ResourceKind, WorkQueue[ResourceKey]] = self._build_queues()
        self._threads: List[threading.Thread] = []
        self._stopped = False

    def _build_queues(self) -> Dict[ResourceKind, WorkQueue[ResourceKey]]:
        return {
            kind: WorkQueue(kind.value, Backoff(self.settings.backoff_base, self.settings.backoff_cap))
            for kind in ResourceKind
        }

    def enqueue(self, key: ResourceKey) -> None:
        self.queues[key.kind].add(key)

    def handle_event(self, event: str, resource: ManagedResource) -> None:
        """Store listener: every change is a reason to reconcile."""

        _LOG.debug("Event %s for %s", event, resource.key)
        self.enqueue(resource.key)
        # Releasing one resource may unblock the deletion of what it referenced.
        if event == "DELETED":
            for key in resource.references():
                self.enqueue(key)

    def resync(self) -> None:
        for resource in self.loop.store.list():
            self.enqueue(resource.key)

    def process(self, key: ResourceKey) -> Outcome:
        queue = self.queues[key.kind]
        outcome = self.loop.reconcile(key)
        if outcome is Outcome.REQUEUE:
            delay = queue.add_rate_limited(key)
            _LOG.debug("Requeued %s in %.2fs (failure %d)", key, delay, queue.backoff.failures(key))
        else:
            queue.forget(key)
        if outcome is Outcome.READY:
            for dependent in self.loop.store.dependents_of(key):
                self.enqueue(dependent)
        return outcome

    def _worker(self, queue: WorkQueue[ResourceKey]) -> None:
        while True:
            key = queue.get()
            if key is None:
                return
            try:
                self.process(key)
            except Exception:
                _LOG.exception("Worker for %s crashed while processing %s", queue.name, key)
                queue.add_rate_limited(key)
            finally:
                queue.done(key)

    def start(self) -> None:
        if self._stopped:
            self.queues = self._build_queues()
            self._stopped = False
        for kind, queue in self.queues.items():
            for index in range(self.settings.workers_for(kind)):
                thread = threading.Thread(
                    target=self._worker,
                    args=(queue,),
                    name=f"{kind.value.lower()}-worker-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        _LOG.info("Started %d reconcile workers", len(self._threads))

    def stop(self, timeout: float = 10.0) -> None:
        self._stopped = True
        for queue in self.queues.values():
            queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def drain(self, max_rounds: int = 100) -> None:
        """Process every immediately ready key on the calling thread.

        Delayed retries are left in place; kinds are visited in dependency
        order so Configs settle before the resources that use them.
        """

        order = [
            ResourceKind.CONFIG,
            ResourceKind.TEMPLATE,
            ResourceKind.FUNCTION,
            ResourceKind.DESTINATION,
            ResourceKind.ALERT,
            ResourceKind.PIPELINE,
            ResourceKind.DASHBOARD,
        ]
        for _ in range(max_rounds):
            progressed = False
            for kind in order:
                queue = self.queues[kind]
                while queue.pending():
                    key = queue.get(timeout=0)
                    if key is None:
                        break
                    progressed = True
                    try:
                        self.process(key)
                    finally:
                        queue.done(key)
            if not progressed:
                return
