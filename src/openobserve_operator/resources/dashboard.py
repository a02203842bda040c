"""OpenObserveDashboard resource."""
from __future__ import annotations

from typing import Any, Dict, List

from pydantic import Field

from .base import ResourceSpec


class DashboardSpec(ResourceSpec):
    title: str = ""
    description: str = ""
    tabs: List[Dict[str, Any]] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)

    def to_payload(self, name: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "title": self.title,
            "description": self.description,
            "tabs": [dict(tab) for tab in self.tabs],
        }
        if self.variables:
            payload["variables"] = dict(self.variables)
        return payload
