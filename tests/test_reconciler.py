import threading
import time
from collections import Counter

import factories
from openobserve_operator.config import OperatorSettings
from openobserve_operator.reconciler import Controller, Outcome
from openobserve_operator.resources.base import Phase, ResourceKey, ResourceKind
from openobserve_operator.store import MemoryStore


def _apply_alert_stack(store):
    for resource in (
        factories.config(),
        factories.template(),
        factories.alert_destination(),
        factories.alert(),
    ):
        store.apply(resource)


def test_alert_stack_converges(operator, store, backend):
    _apply_alert_stack(store)
    operator.controller.drain()

    for resource in store.list():
        assert resource.phase is Phase.READY, resource.key
        assert resource.is_ready
        assert resource.finalizer_present
    alert = store.get(factories.alert().key)
    assert alert.remote_id in backend.objects[ResourceKind.ALERT]
    assert store.get(factories.template().key).remote_id == "slack-body"
    assert backend.writes == [
        ("POST", "/api/default/alerts/templates"),
        ("POST", "/api/default/alerts/destinations"),
        ("POST", "/api/v2/default/alerts"),
    ]


def test_second_reconcile_performs_no_writes(operator, store, backend):
    _apply_alert_stack(store)
    operator.controller.drain()
    writes = list(backend.writes)

    for resource in store.list():
        assert operator.loop.reconcile(resource.key) is Outcome.CONVERGED
    operator.controller.resync()
    operator.controller.drain()

    assert backend.writes == writes


def test_spec_change_updates_remote_object(operator, store, backend):
    _apply_alert_stack(store)
    operator.controller.drain()

    store.apply(factories.alert(description="page the on-call"))
    operator.controller.drain()

    alert = store.get(factories.alert().key)
    assert alert.generation == 2
    assert alert.observed_generation == 2
    assert backend.writes[-1] == ("PUT", f"/api/v2/default/alerts/{alert.remote_id}")
    assert backend.objects[ResourceKind.ALERT][alert.remote_id]["description"] == "page the on-call"


def test_server_side_drift_is_corrected(operator, store, backend):
    _apply_alert_stack(store)
    operator.controller.drain()
    backend.objects[ResourceKind.TEMPLATE]["slack-body"]["body"] = "edited in the UI"

    assert operator.loop.reconcile(factories.template().key) is Outcome.CONVERGED
    assert backend.writes[-1] == ("PUT", "/api/default/alerts/templates/slack-body")
    assert backend.objects[ResourceKind.TEMPLATE]["slack-body"]["body"] == factories.template().spec.body


def test_alert_waits_for_its_destination(operator, store, backend):
    store.apply(factories.config())
    store.apply(factories.alert())
    operator.controller.drain()

    alert = store.get(factories.alert().key)
    assert alert.phase is Phase.ERROR
    ready = alert.condition("Ready")
    assert ready.status == "False"
    assert ready.reason == "DependencyMissing"
    assert alert.observed_generation == 0
    assert backend.writes == []

    store.apply(factories.template())
    store.apply(factories.alert_destination())
    operator.controller.drain()

    assert store.get(factories.alert().key).is_ready


def test_invalid_resource_is_terminal(operator, store, backend):
    store.apply(factories.config())
    store.apply(factories.alert(destinations=[]))
    operator.controller.drain()

    alert = store.get(factories.alert().key)
    assert alert.phase is Phase.ERROR
    assert alert.condition("Error").reason == "ValidationFailed"
    assert operator.loop.reconcile(alert.key) is Outcome.TERMINAL
    assert backend.writes == []


def test_failing_function_tests_block_creation(operator, store, backend):
    backend.transforms['.env = "prod"'] = lambda record: record
    store.apply(factories.config())
    store.apply(factories.function(test_cases=[{"input": {"a": 1}, "expectedOutput": {"a": 1, "env": "prod"}}]))
    operator.controller.drain()

    function = store.get(factories.function().key)
    assert function.phase is Phase.ERROR
    assert function.condition("Ready").reason == "FunctionTestFailed"
    assert backend.writes == []


def test_passing_function_tests_allow_creation(operator, store, backend):
    backend.transforms['.env = "prod"'] = lambda record: {**record, "env": "prod"}
    store.apply(factories.config())
    store.apply(factories.function(test_cases=[{"input": {"a": 1}, "expectedOutput": {"a": 1, "env": "prod"}}]))
    operator.controller.drain()

    assert store.get(factories.function().key).is_ready
    assert backend.writes == [("POST", "/api/default/functions")]


def test_pipeline_with_function_and_destination(operator, store, backend):
    for resource in (factories.config(), factories.function(), factories.pipeline_destination(), factories.pipeline()):
        store.apply(resource)
    operator.controller.drain()

    pipeline = store.get(factories.pipeline().key)
    assert pipeline.is_ready
    stored = backend.objects[ResourceKind.PIPELINE][pipeline.remote_id]
    assert [node["data"]["node_type"] for node in stored["nodes"]] == ["function", "custom"]


def test_alert_rejects_pipeline_destination(operator, store, backend):
    for resource in (factories.config(), factories.pipeline_destination(name="slack"), factories.alert()):
        store.apply(resource)
    operator.controller.drain()

    alert = store.get(factories.alert().key)
    assert alert.condition("Ready").reason == "DependencyMismatch"
    assert ("POST", "/api/v2/default/alerts") not in backend.writes


def test_missing_remote_object_is_recreated(operator, store, backend):
    _apply_alert_stack(store)
    operator.controller.drain()
    old_id = store.get(factories.alert().key).remote_id
    backend.objects[ResourceKind.ALERT].clear()

    operator.loop.reconcile(factories.alert().key)

    new_id = store.get(factories.alert().key).remote_id
    assert new_id != old_id
    assert new_id in backend.objects[ResourceKind.ALERT]


def test_unknown_organization_leaves_config_not_ready(operator, store, backend):
    store.apply(factories.config(organization="missing-org"))
    operator.controller.drain()
    config = store.get(factories.config().key)
    assert config.phase is Phase.ERROR
    assert not config.is_ready


def test_transient_backend_failure_is_requeued(operator, store, backend):
    store.apply(factories.config())
    operator.controller.drain()
    store.apply(factories.template())
    backend.failures = [503, 503, 503]

    assert operator.loop.reconcile(factories.template().key) is Outcome.REQUEUE
    template = store.get(factories.template().key)
    assert template.condition("Error").reason == "RemoteUnavailable"

    assert operator.loop.reconcile(template.key) is Outcome.READY


def test_deletion_follows_dependency_order(operator, store, backend):
    _apply_alert_stack(store)
    operator.controller.drain()
    alert_id = store.get(factories.alert().key).remote_id

    for resource in store.list():
        store.request_deletion(resource.key)
    operator.controller.drain()

    assert store.list() == []
    assert [write for write in backend.writes if write[0] == "DELETE"] == [
        ("DELETE", f"/api/v2/default/alerts/{alert_id}"),
        ("DELETE", "/api/default/alerts/destinations/slack"),
        ("DELETE", "/api/default/alerts/templates/slack-body"),
    ]
    assert all(not objects for objects in backend.objects.values())
    assert factories.config().key not in operator.connections


def test_referenced_template_is_kept_until_dependents_go(operator, store, backend):
    _apply_alert_stack(store)
    operator.controller.drain()

    store.request_deletion(factories.template().key)
    operator.controller.drain()

    template = store.get(factories.template().key)
    assert template is not None
    assert template.phase is Phase.DELETING
    assert template.condition("Error").reason == "HasDependents"
    assert "slack-body" in backend.objects[ResourceKind.TEMPLATE]


def test_finalizer_stays_until_remote_delete_succeeds(operator, store, backend):
    _apply_alert_stack(store)
    operator.controller.drain()
    key = factories.alert().key

    store.request_deletion(key)
    backend.failures = [503, 503, 503]
    assert operator.loop.reconcile(key) is Outcome.REQUEUE
    pending = store.get(key)
    assert pending.finalizer_present
    assert pending.phase is Phase.DELETING

    assert operator.loop.reconcile(key) is Outcome.RELEASED
    assert store.get(key) is None
    assert not backend.objects[ResourceKind.ALERT]


def test_already_deleted_remote_object_counts_as_success(operator, store, backend):
    _apply_alert_stack(store)
    operator.controller.drain()
    backend.objects[ResourceKind.ALERT].clear()

    store.request_deletion(factories.alert().key)
    operator.controller.drain()

    assert store.get(factories.alert().key) is None


class _SlowLoop:
    """Stands in for ReconcileLoop and records overlapping calls per key."""

    def __init__(self):
        self.store = MemoryStore()
        self.active = Counter()
        self.peak = Counter()
        self.calls = Counter()
        self.lock = threading.Lock()

    def reconcile(self, key):
        with self.lock:
            self.active[key] += 1
            self.calls[key] += 1
            self.peak[key] = max(self.peak[key], self.active[key])
        time.sleep(0.005)
        with self.lock:
            self.active[key] -= 1
        return Outcome.CONVERGED


def test_one_reconcile_per_key_at_a_time():
    loop = _SlowLoop()
    controller = Controller(loop, OperatorSettings())
    keys = [ResourceKey(ResourceKind.ALERT, "observability", f"alert-{index}") for index in range(3)]
    controller.start()
    try:
        for _ in range(40):
            for key in keys:
                controller.enqueue(key)
            time.sleep(0.001)
        queue = controller.queues[ResourceKind.ALERT]
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if queue.pending() == 0 and not any(queue.in_flight(key) for key in keys):
                break
            time.sleep(0.01)
    finally:
        controller.stop()

    for key in keys:
        assert loop.calls[key] >= 1
        assert loop.peak[key] == 1


def test_controller_restarts_after_stop():
    loop = _SlowLoop()
    controller = Controller(loop, OperatorSettings())
    controller.start()
    controller.stop()
    controller.start()
    key = ResourceKey(ResourceKind.CONFIG, "observability", "o2")
    controller.enqueue(key)
    deadline = time.monotonic() + 5
    while not loop.calls[key] and time.monotonic() < deadline:
        time.sleep(0.01)
    controller.stop()
    assert loop.calls[key] == 1


def test_new_test_case_is_checked_even_when_remote_matches(operator, store, backend):
    backend.transforms['.env = "prod"'] = lambda record: {**record, "env": "prod"}
    store.apply(factories.config())
    store.apply(factories.function(test_cases=[{"input": {"a": 1}, "expectedOutput": {"a": 1, "env": "prod"}}]))
    operator.controller.drain()
    assert store.get(factories.function().key).is_ready

    store.apply(factories.function(test_cases=[{"input": {"a": 1}, "expectedOutput": {"a": 999}}]))
    operator.controller.drain()

    function = store.get(factories.function().key)
    assert not function.is_ready
    assert function.condition("Ready").reason == "FunctionTestFailed"
    assert backend.writes == [("POST", "/api/default/functions")]


def _team_function(namespace):
    spec = {"configRef": {"name": "o2", "namespace": factories.NAMESPACE}, "transformExpr": '.env = "prod"'}
    return factories.manifest("OpenObserveFunction", "enrich", spec, namespace=namespace)


def test_same_name_in_two_namespaces_keeps_a_single_owner(operator, settings, store, backend):
    settings.shared_config_namespaces = [factories.NAMESPACE]
    store.apply(factories.config())
    store.apply(_team_function("team-a"))
    operator.controller.drain()
    store.apply(_team_function("team-b"))
    operator.controller.drain()

    owner = store.get(_team_function("team-a").key)
    intruder = store.get(_team_function("team-b").key)
    assert owner.is_ready
    assert owner.remote_id == "enrich"
    assert not intruder.is_ready
    assert intruder.remote_id == ""
    assert intruder.condition("Ready").reason == "NameConflict"

    store.request_deletion(intruder.key)
    operator.controller.drain()

    assert store.get(intruder.key) is None
    assert "enrich" in backend.objects[ResourceKind.FUNCTION]
    assert store.get(owner.key).is_ready
    assert [write for write in backend.writes if write[0] == "DELETE"] == []


def test_config_is_rechecked_before_contacting_the_backend(operator, store, backend):
    store.apply(factories.config(endpoint="openobserve.test"))
    operator.controller.drain()

    config = store.get(factories.config().key)
    assert config.phase is Phase.ERROR
    assert config.condition("Ready").reason == "ValidationFailed"
    assert backend.requests == []
