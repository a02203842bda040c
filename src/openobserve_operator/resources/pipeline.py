"""OpenObservePipeline resource: a processing DAG fed by a stream or query."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from .base import ResourceKey, ResourceKind, ResourceModel, ResourceSpec

SOURCE_NODE_ID = "source"
SINK_NODE_KINDS = ("stream", "custom")


class PipelineSource(ResourceModel):
    type: Literal["realtime", "scheduled"] = "realtime"
    stream_name: Optional[str] = Field(default=None, alias="streamName")
    stream_type: Literal["logs", "metrics", "traces"] = Field(default="logs", alias="streamType")
    query: Optional[str] = None
    frequency: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"source_type": self.type, "stream_type": self.stream_type}
        if self.stream_name:
            data["stream_name"] = self.stream_name
        if self.query:
            data["query"] = self.query
        if self.frequency is not None:
            data["frequency"] = self.frequency
        return data


class PipelineNode(ResourceModel):
    id: str
    kind: Literal["stream", "condition", "query", "function", "custom"]
    config: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_sink(self) -> bool:
        return self.kind in SINK_NODE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "io_type": "output" if self.is_sink else "default",
            "data": {"node_type": self.kind, **self.config},
        }


class PipelineEdge(ResourceModel):
    source: str = Field(..., alias="sourceNodeId")
    target: str = Field(..., alias="targetNodeId")
    condition: Optional[bool] = Field(default=None, alias="conditionPredicate")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": f"e{self.source}-{self.target}",
            "source": self.source,
            "target": self.target,
        }
        if self.condition is not None:
            data["condition"] = self.condition
        return data


class PipelineSpec(ResourceSpec):
    """Pipeline definition; ``nodes`` and ``edges`` must form a DAG rooted at ``source``."""

    source: PipelineSource = Field(default_factory=PipelineSource)
    nodes: List[PipelineNode] = Field(default_factory=list)
    edges: List[PipelineEdge] = Field(default_factory=list)
    unmatched_records: Literal["drop", "error"] = Field(default="drop", alias="unmatchedRecords")
    enabled: bool = True
    description: str = ""

    def references(self, namespace: str) -> List[ResourceKey]:
        keys: List[ResourceKey] = []
        for node in self.nodes:
            if node.kind == "function" and node.config.get("name"):
                keys.append(ResourceKey(ResourceKind.FUNCTION, namespace, str(node.config["name"])))
            elif node.kind == "custom" and node.config.get("destination"):
                keys.append(ResourceKey(ResourceKind.DESTINATION, namespace, str(node.config["destination"])))
        return keys

    def to_payload(self, name: str) -> Dict[str, Any]:
        return {
            "name": name,
            "description": self.description,
            "enabled": self.enabled,
            "source": self.source.to_dict(),
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }
