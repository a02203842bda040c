"""OpenObserveAlertTemplate resource: notification body rendered by destinations."""
from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import Field

from .base import ResourceSpec


class TemplateSpec(ResourceSpec):
    """Alert notification template with ``{variable}`` placeholders."""

    transport_type: Literal["http", "email"] = Field(default="http", alias="transportType")
    title: Optional[str] = Field(default=None, alias="titleExpr")
    body: str = Field(default="", alias="bodyExpr")

    def to_payload(self, name: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": name,
            "type": self.transport_type,
            "body": self.body,
        }
        if self.title:
            payload["title"] = self.title
        return payload
