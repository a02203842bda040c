import pytest

import factories
from openobserve_operator.store import MemoryStore


def _recording_store():
    store = MemoryStore()
    events = []
    store.subscribe(lambda event, resource: events.append((event, resource.name)))
    return store, events


def test_generation_only_moves_on_spec_change():
    store, events = _recording_store()
    store.apply(factories.template())
    store.apply(factories.template())
    updated = store.apply(factories.template(bodyExpr="changed"))
    assert updated.generation == 2
    assert events == [("ADDED", "slack-body"), ("MODIFIED", "slack-body")]


def test_deletion_without_finalizer_purges_immediately():
    store, events = _recording_store()
    key = store.apply(factories.template()).key
    assert store.request_deletion(key) is None
    assert store.get(key) is None
    assert events[-1] == ("DELETED", "slack-body")


def test_finalizer_holds_the_record_until_cleared():
    store, events = _recording_store()
    key = store.apply(factories.template()).key
    store.set_finalizer(key, True)
    pending = store.request_deletion(key)
    assert pending.deletion_requested is not None
    assert store.get(key) is not None
    with pytest.raises(ValueError):
        store.apply(factories.template(bodyExpr="too late"))

    assert store.set_finalizer(key, False) is None
    assert store.get(key) is None
    assert events[-1] == ("DELETED", "slack-body")


def test_dependents_are_found_through_references():
    store = MemoryStore()
    for resource in (factories.config(), factories.template(), factories.alert_destination(), factories.alert()):
        store.apply(resource)
    assert store.dependents_of(factories.template().key) == [factories.alert_destination().key]
    assert store.dependents_of(factories.alert_destination().key) == [factories.alert().key]
    assert len(store.dependents_of(factories.config().key)) == 3


def test_returned_records_are_copies():
    store = MemoryStore()
    stored = store.apply(factories.template())
    stored.remote_id = "changed"
    assert store.get(stored.key).remote_id == ""
