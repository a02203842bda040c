"""Kind-specific resource models."""
from __future__ import annotations

from typing import Dict, Type

from .alert import AlertSpec
from .base import ResourceKind, ResourceSpec
from .connection import ConfigSpec
from .dashboard import DashboardSpec
from .destination import DestinationSpec
from .function import FunctionSpec
from .pipeline import PipelineSpec
from .template import TemplateSpec

SPEC_MODELS: Dict[ResourceKind, Type[ResourceSpec]] = {
    ResourceKind.CONFIG: ConfigSpec,
    ResourceKind.ALERT: AlertSpec,
    ResourceKind.PIPELINE: PipelineSpec,
    ResourceKind.FUNCTION: FunctionSpec,
    ResourceKind.DESTINATION: DestinationSpec,
    ResourceKind.TEMPLATE: TemplateSpec,
    ResourceKind.DASHBOARD: DashboardSpec,
}

__all__ = [
    "AlertSpec",
    "ConfigSpec",
    "DashboardSpec",
    "DestinationSpec",
    "FunctionSpec",
    "PipelineSpec",
    "ResourceKind",
    "ResourceSpec",
    "SPEC_MODELS",
    "TemplateSpec",
]
