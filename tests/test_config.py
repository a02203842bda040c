import pytest
from pydantic import ValidationError

from openobserve_operator.config import OperatorSettings
from openobserve_operator.resources.base import ResourceKind


def test_defaults_match_documented_pool_sizes():
    settings = OperatorSettings.from_env({})
    assert settings.workers_for(ResourceKind.ALERT) == 5
    assert settings.workers_for(ResourceKind.PIPELINE) == 5
    assert settings.workers_for(ResourceKind.FUNCTION) == 3
    assert settings.workers_for(ResourceKind.CONFIG) == 2
    assert settings.http_timeout == 30.0
    assert (settings.rate_limit, settings.rate_burst) == (10.0, 20)


def test_environment_overrides_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "http_timeout: 10\n"
        "concurrency:\n"
        "  Alert: 2\n"
        "leader_election:\n"
        "  lease_name: custom-lease\n"
    )
    environ = {
        "O2_HTTP_TIMEOUT": "5",
        "O2_PIPELINE_CONCURRENCY": "7",
        "O2_SHARED_CONFIG_NAMESPACES": "observability, platform",
        "O2_LEADER_ELECTION": "false",
    }
    settings = OperatorSettings.from_file(path, environ)
    assert settings.http_timeout == 5.0
    assert settings.workers_for(ResourceKind.ALERT) == 2
    assert settings.workers_for(ResourceKind.PIPELINE) == 7
    assert settings.workers_for(ResourceKind.TEMPLATE) == 3
    assert settings.shared_config_namespaces == ["observability", "platform"]
    assert settings.leader_election.enabled is False
    assert settings.leader_election.lease_name == "custom-lease"


def test_config_namespace_scope():
    settings = OperatorSettings(shared_config_namespaces=["platform"])
    assert settings.config_namespace_allowed("team-a", "team-a")
    assert settings.config_namespace_allowed("team-a", "platform")
    assert not settings.config_namespace_allowed("team-a", "team-b")


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        OperatorSettings(concurrency={"Alert": 0})
    with pytest.raises(ValidationError):
        OperatorSettings.from_env({"O2_RATE_BURST": "0"})


def test_settings_file_must_be_a_mapping(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("- not a mapping\n")
    with pytest.raises(ValueError):
        OperatorSettings.from_file(path, {})


def test_webhook_settings_from_environment():
    settings = OperatorSettings.from_env({"O2_WEBHOOK_PORT": "9443", "O2_WEBHOOK_CERT_DIR": "/certs"})
    assert settings.webhook.enabled
    assert settings.webhook.port == 9443
    assert settings.webhook.key_file == "/certs/tls.key"
    assert OperatorSettings.from_env({"O2_WEBHOOK": "no"}).webhook.enabled is False
