"""Utility helpers shared across the operator package."""
from __future__ import annotations

import copy
import hashlib
import json
from typing import Any, Dict


def deep_merge(base: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Any]:
    """Return a deep merge of ``base`` with ``new`` without mutating the inputs."""

    merged: Dict[str, Any] = copy.deepcopy(base)
    for key, value in new.items():
        if isinstance(value, dict):
            base_sub = merged.get(key, {})
            if not isinstance(base_sub, dict):
                merged[key] = copy.deepcopy(value)
            else:
                merged[key] = deep_merge(base_sub, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def project(observed: Any, desired: Any) -> Any:
    """Restrict ``observed`` to the shape of ``desired``.

    The backend decorates objects with server-side fields (ids, owners,
    timestamps); only keys the operator manages take part in comparisons.
    """

    if isinstance(desired, dict) and isinstance(observed, dict):
        return {key: project(observed.get(key), value) for key, value in desired.items()}
    if isinstance(desired, list) and isinstance(observed, list) and len(desired) == len(observed):
        return [project(item, want) for item, want in zip(observed, desired)]
    return observed


def fingerprint(payload: Any) -> str:
    """SHA-256 of the canonical JSON form of ``payload``."""

    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def structurally_equal(left: Any, right: Any) -> bool:
    """Compare two values byte-for-byte, falling back to parsed JSON equality."""

    if left == right:
        return True
    return _as_json(left) == _as_json(right)


def _as_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value
