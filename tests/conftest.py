from __future__ import annotations

import pytest

from factories import NAMESPACE, FakeBackend
from openobserve_operator.config import OperatorSettings
from openobserve_operator.manager import build_operator
from openobserve_operator.resolver import StaticSecretReader
from openobserve_operator.store import MemoryStore


@pytest.fixture
def settings() -> OperatorSettings:
    return OperatorSettings(
        rate_limit=1000,
        rate_burst=1000,
        retry_initial_wait=0,
        backoff_base=0.01,
        backoff_cap=0.05,
    )


@pytest.fixture
def secrets() -> StaticSecretReader:
    return StaticSecretReader({(NAMESPACE, "o2-creds"): {"username": "root@example.com", "password": "Complexpass#123"}})


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def operator(settings, store, secrets, backend):
    built = build_operator(settings, store, secrets, transport=backend.transport)
    store.subscribe(built.controller.handle_event)
    yield built
    built.close()
