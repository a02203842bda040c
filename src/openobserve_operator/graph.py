"""Structural validation of pipeline node/edge graphs.

Nodes are stored in a flat array and addressed by integer index; index 0 is
the virtual ``source`` node. Edges are index pairs, so the cycle and
reachability checks never chase object references.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .resources.pipeline import SOURCE_NODE_ID, PipelineEdge, PipelineNode

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass
class PipelineGraph:
    """Arena representation of a pipeline."""

    ids: List[str]
    kinds: List[str]
    edges: List[Tuple[int, int, Optional[bool]]] = field(default_factory=list)
    adjacency: List[List[int]] = field(default_factory=list)


class PipelineGraphError(ValueError):
    """Raised with a human readable reason for the first structural problem."""


class PipelineGraphValidator:
    """Checks that a pipeline forms a DAG rooted at ``source``."""

    def __init__(self, unmatched_records: str = "drop") -> None:
        if unmatched_records not in ("drop", "error"):
            raise ValueError(f"Unknown unmatched records policy {unmatched_records!r}.")
        self.unmatched_records = unmatched_records

    def validate(self, nodes: Sequence[PipelineNode], edges: Sequence[PipelineEdge]) -> PipelineGraph:
        graph = self.build(nodes, edges)
        self._check_acyclic(graph)
        self._check_reachable(graph)
        self._check_outbound(graph)
        self._check_conditions(graph)
        return graph

    def build(self, nodes: Sequence[PipelineNode], edges: Sequence[PipelineEdge]) -> PipelineGraph:
        ids = [SOURCE_NODE_ID]
        kinds = ["source"]
        positions: Dict[str, int] = {SOURCE_NODE_ID: 0}
        for node in nodes:
            if node.id == SOURCE_NODE_ID:
                continue
            if node.id in positions:
                raise PipelineGraphError(f"duplicate node id: {node.id}")
            positions[node.id] = len(ids)
            ids.append(node.id)
            kinds.append(node.kind)

        graph = PipelineGraph(ids=ids, kinds=kinds, adjacency=[[] for _ in ids])
        seen = set()
        for edge in edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in positions:
                    raise PipelineGraphError(f"dangling edge: {edge.source} -> {edge.target} (unknown node {endpoint})")
            source, target = positions[edge.source], positions[edge.target]
            if target == 0:
                raise PipelineGraphError(f"dangling edge: {edge.source} -> {edge.target} (source has no inputs)")
            if (source, target) in seen:
                raise PipelineGraphError(f"duplicate edge: {edge.source} -> {edge.target}")
            if edge.condition is not None and kinds[source] != "condition":
                raise PipelineGraphError(
                    f"edge {edge.source} -> {edge.target} carries a condition but {edge.source} is not a condition node"
                )
            seen.add((source, target))
            graph.edges.append((source, target, edge.condition))
            graph.adjacency[source].append(target)
        return graph

    @staticmethod
    def _check_acyclic(graph: PipelineGraph) -> None:
        color = [_WHITE] * len(graph.ids)
        for root in range(len(graph.ids)):
            if color[root] != _WHITE:
                continue
            stack: List[Tuple[int, int]] = [(root, 0)]
            color[root] = _GRAY
            while stack:
                node, next_child = stack[-1]
                children = graph.adjacency[node]
                if next_child == len(children):
                    color[node] = _BLACK
                    stack.pop()
                    continue
                stack[-1] = (node, next_child + 1)
                child = children[next_child]
                if color[child] == _GRAY:
                    path = [graph.ids[entry] for entry, _ in stack]
                    path = path[path.index(graph.ids[child]):] + [graph.ids[child]]
                    raise PipelineGraphError("cycle detected: " + " -> ".join(path))
                if color[child] == _WHITE:
                    color[child] = _GRAY
                    stack.append((child, 0))

    @staticmethod
    def _check_reachable(graph: PipelineGraph) -> None:
        reached = [False] * len(graph.ids)
        reached[0] = True
        pending = [0]
        while pending:
            node = pending.pop()
            for child in graph.adjacency[node]:
                if not reached[child]:
                    reached[child] = True
                    pending.append(child)
        for position, was_reached in enumerate(reached):
            if not was_reached:
                raise PipelineGraphError(f"unreachable node: {graph.ids[position]}")

    @staticmethod
    def _check_outbound(graph: PipelineGraph) -> None:
        if len(graph.ids) > 1 and not graph.adjacency[0]:
            raise PipelineGraphError("source has no outbound edge")
        for position in range(1, len(graph.ids)):
            if graph.kinds[position] in ("condition", "function", "query") and not graph.adjacency[position]:
                raise PipelineGraphError(
                    f"node {graph.ids[position]} ({graph.kinds[position]}) has no outbound edge"
                )

    def _check_conditions(self, graph: PipelineGraph) -> None:
        branches: Dict[int, set] = {}
        for source, _target, condition in graph.edges:
            if graph.kinds[source] == "condition":
                branches.setdefault(source, set()).add(True if condition is None else condition)
        for position in range(1, len(graph.ids)):
            if graph.kinds[position] != "condition":
                continue
            declared = branches.get(position, set())
            if True not in declared:
                raise PipelineGraphError(f"condition node {graph.ids[position]} needs a true edge")
            if self.unmatched_records == "error" and False not in declared:
                raise PipelineGraphError(
                    f"condition node {graph.ids[position]} needs a false edge when unmatched records are errors"
                )
