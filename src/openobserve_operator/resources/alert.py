"""OpenObserveAlert resource."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from .base import ResourceKey, ResourceKind, ResourceModel, ResourceSpec

MAX_DESTINATIONS = 10


class QueryCondition(ResourceModel):
    """Condition evaluated by the backend; passed through untouched."""

    type: Literal["custom", "sql", "promql"] = "custom"
    conditions: List[Dict[str, Any]] = Field(default_factory=list)
    sql: Optional[str] = None
    promql: Optional[str] = None
    promql_condition: Optional[Dict[str, Any]] = None
    aggregation: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Schedule(ResourceModel):
    period: int = 10
    frequency: int = 1
    frequency_type: Literal["minutes", "cron"] = Field(default="minutes", alias="frequencyType")
    cron: Optional[str] = None
    threshold: int = 1
    operator: str = ">="
    silence: int = 10
    timezone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Deduplication(ResourceModel):
    enabled: bool = False
    fingerprint_fields: List[str] = Field(default_factory=list, alias="fingerprintFields")
    time_window_minutes: Optional[int] = Field(default=None, alias="timeWindowMinutes")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AlertSpec(ResourceSpec):
    """Alert definition evaluated by the backend against a stream."""

    stream_name: str = Field(..., alias="streamName")
    stream_type: Literal["logs", "metrics", "traces"] = Field(default="logs", alias="streamType")
    is_real_time: bool = Field(default=False, alias="isRealTime")
    query_condition: QueryCondition = Field(default_factory=QueryCondition, alias="queryCondition")
    schedule: Optional[Schedule] = None
    destinations: List[str] = Field(default_factory=list)
    deduplication: Optional[Deduplication] = None
    enabled: bool = True
    description: str = ""
    context_attributes: Dict[str, str] = Field(default_factory=dict, alias="contextAttributes")

    def references(self, namespace: str) -> List[ResourceKey]:
        return [ResourceKey(ResourceKind.DESTINATION, namespace, name) for name in self.destinations]

    def to_payload(self, name: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": name,
            "stream_name": self.stream_name,
            "stream_type": self.stream_type,
            "is_real_time": self.is_real_time,
            "query_condition": self.query_condition.to_dict(),
            "destinations": list(self.destinations),
            "enabled": self.enabled,
            "description": self.description,
        }
        if self.schedule is not None and not self.is_real_time:
            payload["trigger_condition"] = self.schedule.to_dict()
        if self.deduplication is not None:
            payload["deduplication"] = self.deduplication.to_dict()
        if self.context_attributes:
            payload["context_attributes"] = dict(self.context_attributes)
        return payload
