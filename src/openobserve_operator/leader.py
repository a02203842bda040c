"""Lease based leader election so only one replica runs the control loops."""
from __future__ import annotations

import logging
import os
import socket
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from kubernetes import client
from kubernetes.client import ApiException

from .config import LeaderElectionSettings

_LOG = logging.getLogger(__name__)


def default_identity() -> str:
    host = os.environ.get("POD_NAME") or socket.gethostname()
    return f"{host}_{uuid.uuid4().hex[:8]}"


class LeaderElector:
    """Acquires and renews a ``coordination.k8s.io/v1`` Lease."""

    def __init__(
        self,
        coordination: client.CoordinationV1Api,
        settings: LeaderElectionSettings,
        identity: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.coordination = coordination
        self.settings = settings
        self.identity = identity or default_identity()
        self._clock = clock

    def try_acquire_or_renew(self) -> bool:
        now = self._clock()
        name, namespace = self.settings.lease_name, self.settings.lease_namespace
        try:
            lease = self.coordination.read_namespaced_lease(name, namespace)
        except ApiException as exc:
            if exc.status != 404:
                raise
            return self._create(now)

        spec = lease.spec
        if spec.holder_identity == self.identity:
            spec.renew_time = now
            return self._replace(lease)

        duration = spec.lease_duration_seconds or self.settings.lease_duration_seconds
        renewed = spec.renew_time
        if renewed is not None and renewed + timedelta(seconds=duration) > now:
            return False

        _LOG.info("Lease %s/%s held by %s expired; taking over", namespace, name, spec.holder_identity)
        spec.holder_identity = self.identity
        spec.lease_duration_seconds = self.settings.lease_duration_seconds
        spec.acquire_time = now
        spec.renew_time = now
        spec.lease_transitions = (spec.lease_transitions or 0) + 1
        return self._replace(lease)

    def _create(self, now: datetime) -> bool:
        lease = client.V1Lease(
            metadata=client.V1ObjectMeta(name=self.settings.lease_name, namespace=self.settings.lease_namespace),
            spec=client.V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.settings.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )
        try:
            self.coordination.create_namespaced_lease(self.settings.lease_namespace, lease)
        except ApiException as exc:
            if exc.status == 409:
                return False
            raise
        return True

    def _replace(self, lease: client.V1Lease) -> bool:
        try:
            self.coordination.replace_namespaced_lease(
                self.settings.lease_name, self.settings.lease_namespace, lease
            )
        except ApiException as exc:
            if exc.status == 409:
                return False
            raise
        return True

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop: threading.Event,
    ) -> None:
        """Campaign until ``stop`` is set, invoking callbacks on transitions."""

        leading = False
        while not stop.is_set():
            try:
                acquired = self.try_acquire_or_renew()
            except ApiException as exc:
                _LOG.warning("Leader election request failed: %s", exc)
                acquired = False
            if acquired and not leading:
                _LOG.info("%s became leader", self.identity)
                leading = True
                on_started_leading()
            elif not acquired and leading:
                _LOG.warning("%s lost leadership", self.identity)
                leading = False
                on_stopped_leading()
            stop.wait(self.settings.renew_interval_seconds)
        if leading:
            on_stopped_leading()
