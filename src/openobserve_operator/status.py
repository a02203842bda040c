"""Condition bookkeeping for reconcile outcomes."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .errors import OperatorError
from .resources.base import Condition, ManagedResource, Phase

_LOG = logging.getLogger(__name__)

READY = "Ready"
SYNCED = "Synced"
ERROR = "Error"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StatusReporter:
    """Computes Ready/Synced/Error conditions from the last reconcile outcome.

    ``lastTransitionTime`` only moves when a condition's status flips, and
    ``observedGeneration`` only advances on a fully successful sync.
    """

    def __init__(self, clock: Callable[[], datetime] = _now) -> None:
        self._clock = clock

    def _set(self, resource: ManagedResource, condition_type: str, status: bool, reason: str, message: str) -> None:
        value = "True" if status else "False"
        existing = resource.condition(condition_type)
        if existing is not None and existing.status == value:
            existing.reason = reason
            existing.message = message
            return
        entry = Condition(type=condition_type, status=value, reason=reason, message=message, last_transition_time=self._clock())
        conditions: List[Condition] = [item for item in resource.conditions if item.type != condition_type]
        conditions.append(entry)
        order = {READY: 0, SYNCED: 1, ERROR: 2}
        resource.conditions = sorted(conditions, key=lambda item: order.get(item.type, len(order)))

    def synced(self, resource: ManagedResource, remote_id: str, changed: bool) -> ManagedResource:
        if resource.remote_id and remote_id and remote_id != resource.remote_id:
            _LOG.warning("Replacing remote id %s with %s for %s", resource.remote_id, remote_id, resource.key)
        if remote_id:
            resource.remote_id = remote_id
        message = "Remote object updated" if changed else "Remote object already up to date"
        self._set(resource, READY, True, "Synced", message)
        self._set(resource, SYNCED, True, "Synced", message)
        self._set(resource, ERROR, False, "NoError", "")
        resource.observed_generation = resource.generation
        resource.last_sync_time = self._clock()
        resource.phase = Phase.READY
        return resource

    def failed(self, resource: ManagedResource, error: OperatorError) -> ManagedResource:
        self._set(resource, READY, False, error.reason, error.message)
        self._set(resource, SYNCED, False, error.reason, error.message)
        self._set(resource, ERROR, True, error.reason, error.message)
        resource.phase = Phase.ERROR
        return resource

    def deleting(self, resource: ManagedResource, error: Optional[OperatorError] = None) -> ManagedResource:
        if error is None:
            self._set(resource, READY, False, "Deleting", "Removing remote object")
        else:
            self._set(resource, READY, False, error.reason, error.message)
            self._set(resource, ERROR, True, error.reason, error.message)
        resource.phase = Phase.DELETING
        return resource

    @staticmethod
    def project(resource: ManagedResource) -> Dict[str, Any]:
        """Read-only status view exposed to operators and tools."""

        return {
            "phase": resource.phase.value,
            "conditions": [entry.model_dump(mode="json", by_alias=True) for entry in resource.conditions],
            "observedGeneration": resource.observed_generation,
            "remoteID": resource.remote_id,
            "lastSyncTime": resource.last_sync_time.isoformat() if resource.last_sync_time else None,
        }
