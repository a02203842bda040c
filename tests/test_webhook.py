from fastapi.testclient import TestClient

import factories
from openobserve_operator.admission import AdmissionValidator
from openobserve_operator.config import OperatorSettings, WebhookSettings
from openobserve_operator.resolver import ConfigResolver, DependencyResolver, StaticSecretReader
from openobserve_operator.resources.manifest import to_definition
from openobserve_operator.store import MemoryStore
from openobserve_operator.webhook import VALIDATE_PATH, create_webhook_app


def _client():
    store = MemoryStore()
    factories.mark_ready(store, factories.config())
    configs = ConfigResolver(store, StaticSecretReader(), OperatorSettings())
    return TestClient(create_webhook_app(AdmissionValidator(configs, DependencyResolver(store, configs))))


def _review(resource, uid="abc"):
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": uid,
            "operation": "CREATE",
            "namespace": resource.namespace,
            "object": to_definition(resource).to_dict(),
        },
    }


def test_webhook_denies_pipeline_with_cycle():
    pipeline = factories.pipeline(
        nodes=[{"id": "A", "kind": "query"}, {"id": "B", "kind": "query"}],
        edges=[
            {"sourceNodeId": "source", "targetNodeId": "A"},
            {"sourceNodeId": "A", "targetNodeId": "B"},
            {"sourceNodeId": "B", "targetNodeId": "A"},
        ],
    )
    resp = _client().post(VALIDATE_PATH, json=_review(pipeline, uid="p-1"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["kind"] == "AdmissionReview"
    assert body["response"]["uid"] == "p-1"
    assert body["response"]["allowed"] is False
    assert body["response"]["status"]["message"].startswith("cycle detected")


def test_webhook_allows_valid_resources():
    resp = _client().post(VALIDATE_PATH, json=_review(factories.template()))
    assert resp.json()["response"] == {"uid": "abc", "allowed": True}


def test_webhook_health_endpoint():
    assert _client().get("/healthz").json() == {"status": "ok"}


def test_webhook_certificate_paths_follow_cert_dir():
    settings = WebhookSettings(cert_dir="/etc/webhook/certs")
    assert settings.cert_file == "/etc/webhook/certs/tls.crt"
    assert settings.key_file == "/etc/webhook/certs/tls.key"
