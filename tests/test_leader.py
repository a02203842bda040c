from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from kubernetes import client
from kubernetes.client import ApiException

from openobserve_operator.config import LeaderElectionSettings
from openobserve_operator.leader import LeaderElector

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _elector(identity="me"):
    return LeaderElector(MagicMock(), LeaderElectionSettings(), identity=identity, clock=lambda: NOW)


def _lease(holder, renewed):
    return client.V1Lease(
        metadata=client.V1ObjectMeta(name="openobserve-operator-leader", namespace="o2operator"),
        spec=client.V1LeaseSpec(holder_identity=holder, lease_duration_seconds=15, renew_time=renewed),
    )


def test_creates_missing_lease():
    elector = _elector()
    elector.coordination.read_namespaced_lease.side_effect = ApiException(status=404)
    assert elector.try_acquire_or_renew() is True
    lease = elector.coordination.create_namespaced_lease.call_args.args[1]
    assert lease.spec.holder_identity == "me"


def test_renews_own_lease():
    elector = _elector()
    elector.coordination.read_namespaced_lease.return_value = _lease("me", NOW - timedelta(seconds=5))
    assert elector.try_acquire_or_renew() is True
    replaced = elector.coordination.replace_namespaced_lease.call_args.args[2]
    assert replaced.spec.renew_time == NOW


def test_respects_live_lease_of_another_holder():
    elector = _elector()
    elector.coordination.read_namespaced_lease.return_value = _lease("other", NOW - timedelta(seconds=5))
    assert elector.try_acquire_or_renew() is False
    elector.coordination.replace_namespaced_lease.assert_not_called()


def test_takes_over_expired_lease():
    elector = _elector()
    elector.coordination.read_namespaced_lease.return_value = _lease("other", NOW - timedelta(seconds=60))
    assert elector.try_acquire_or_renew() is True
    replaced = elector.coordination.replace_namespaced_lease.call_args.args[2]
    assert replaced.spec.holder_identity == "me"
    assert replaced.spec.lease_transitions == 1


def test_conflicting_update_loses_the_race():
    elector = _elector()
    elector.coordination.read_namespaced_lease.return_value = _lease("other", NOW - timedelta(seconds=60))
    elector.coordination.replace_namespaced_lease.side_effect = ApiException(status=409)
    assert elector.try_acquire_or_renew() is False
