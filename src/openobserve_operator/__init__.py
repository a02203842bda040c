"""OpenObserve operator package."""

from .admission import AdmissionResult, AdmissionValidator  # noqa: F401
from .config import OperatorSettings  # noqa: F401
from .manager import Operator, build_operator  # noqa: F401
from .reconciler import Controller, Outcome, ReconcileLoop  # noqa: F401
from .store import MemoryStore  # noqa: F401

__all__ = [
    "AdmissionResult",
    "AdmissionValidator",
    "Controller",
    "MemoryStore",
    "Operator",
    "OperatorSettings",
    "Outcome",
    "ReconcileLoop",
    "build_operator",
]
