"""Workflow definition graph: typed nodes, edges and structural validation.

A definition is the data model produced by the visual editor:

{
    "id": "wf_incident",
    "name": "Incident response",
    "nodes": [
        {"id": "start", "kind": "start"},
        {"id": "assess", "kind": "task", "label": "Immediate Assessment",
         "configuration": {"assigned_role": "analyst", "due_hours": 1},
         "position": {"x": 120, "y": 40}},
        {"id": "end", "kind": "end"}
    ],
    "edges": [
        {"source": "start", "target": "assess"},
        {"source": "assess", "target": "end"}
    ]
}

Validation rules:
- node ids are unique
- exactly one ``start`` node and at least one ``end`` node
- every edge endpoint references an existing node
- every non-start node has at least one incoming edge
- every node is reachable from ``start``
- ``decision`` nodes have >= 2 outgoing edges with distinct, non-empty conditions
- ``end`` nodes have no outgoing edges

Mutations (add/remove node or edge) are applied to a copy first and
rejected if the copy would not validate, so a definition never leaves a
valid state through this API.

``decision``, ``parallel`` and ``merge`` are structural only. The engine
runs steps strictly one after another; :func:`linear_path` refuses any
definition that would need branching to execute.
"""

import copy
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from core.constants import BRANCHING_NODE_KINDS, NodeKind
from core.exceptions import ValidationError


# ─── Nodes & Edges ────────────────────────────────────────────

@dataclass
class WorkflowNode:
    """One node of a workflow definition."""
    id: str
    kind: NodeKind
    label: str = ""
    configuration: dict[str, Any] = field(default_factory=dict)
    position: Optional[dict[str, Any]] = None  # editor layout, opaque here

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowNode":
        raw_kind = data.get("kind") or data.get("type")
        try:
            kind = NodeKind(str(raw_kind).lower())
        except ValueError:
            raise ValidationError(
                f"Unknown node kind: {raw_kind!r}",
                details={"node_id": data.get("id")},
            )
        node_id = data.get("id")
        if not node_id:
            raise ValidationError("Node is missing an id")
        return cls(
            id=str(node_id),
            kind=kind,
            label=data.get("label") or "",
            configuration=dict(data.get("configuration") or data.get("config") or {}),
            position=data.get("position"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "label": self.label,
            "configuration": self.configuration,
            "position": self.position,
        }


@dataclass(frozen=True)
class WorkflowEdge:
    """Directed edge; ``condition`` tags a decision branch."""
    source: str
    target: str
    condition: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowEdge":
        source = data.get("source")
        target = data.get("target")
        if not source or not target:
            raise ValidationError("Edge needs both a source and a target", details={"edge": data})
        condition = data.get("condition")
        return cls(source=str(source), target=str(target), condition=condition)

    def to_dict(self) -> dict:
        return {"source": self.source, "target": self.target, "condition": self.condition}


# ─── Definition ───────────────────────────────────────────────

@dataclass
class WorkflowDefinition:
    """A workflow graph as drawn in the editor."""

    id: str
    nodes: list[WorkflowNode] = field(default_factory=list)
    edges: list[WorkflowEdge] = field(default_factory=list)
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowDefinition":
        return cls(
            id=str(data.get("id") or "definition"),
            name=data.get("name"),
            nodes=[WorkflowNode.from_dict(n) for n in data.get("nodes", [])],
            edges=[WorkflowEdge.from_dict(e) for e in data.get("edges", [])],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    # ─── Lookup ───────────────────────────────────────────

    def node(self, node_id: str) -> Optional[WorkflowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def entry_node(self) -> Optional[WorkflowNode]:
        """The start node, or None unless there is exactly one."""
        starts = [n for n in self.nodes if n.kind == NodeKind.START]
        return starts[0] if len(starts) == 1 else None

    def outgoing(self, node_id: str) -> list[WorkflowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def incoming(self, node_id: str) -> list[WorkflowEdge]:
        return [e for e in self.edges if e.target == node_id]

    def successors(self, node_id: str) -> list[str]:
        return [e.target for e in self.outgoing(node_id)]

    def predecessors(self, node_id: str) -> list[str]:
        return [e.source for e in self.incoming(node_id)]

    # ─── Validation ───────────────────────────────────────

    def problems(self) -> list[str]:
        """Every structural rule the definition breaks, in a stable order."""
        return collect_problems(self)

    def validate(self) -> bool:
        validate(self)
        return True

    # ─── Mutations (validated dry-run first) ──────────────

    def add_node(self, node: WorkflowNode, edges: Iterable[WorkflowEdge] = ()) -> None:
        """Add a node together with the edges that connect it."""
        def apply(candidate: "WorkflowDefinition") -> None:
            candidate.nodes.append(node)
            candidate.edges.extend(edges)

        self._mutate(apply)

    def remove_node(self, node_id: str) -> None:
        """Remove a node and every edge touching it."""
        if self.node(node_id) is None:
            raise ValidationError(f"Node not found: {node_id}")

        def apply(candidate: "WorkflowDefinition") -> None:
            candidate.nodes = [n for n in candidate.nodes if n.id != node_id]
            candidate.edges = [
                e for e in candidate.edges if e.source != node_id and e.target != node_id
            ]

        self._mutate(apply)

    def add_edge(self, edge: WorkflowEdge) -> None:
        self._mutate(lambda candidate: candidate.edges.append(edge))

    def remove_edge(self, source: str, target: str, condition: Optional[str] = None) -> None:
        edge = WorkflowEdge(source, target, condition)
        if edge not in self.edges:
            raise ValidationError(f"Edge not found: {source} -> {target}")

        def apply(candidate: "WorkflowDefinition") -> None:
            candidate.edges.remove(edge)

        self._mutate(apply)

    def _mutate(self, apply) -> None:
        candidate = copy.deepcopy(self)
        apply(candidate)
        validate(candidate)
        self.nodes = candidate.nodes
        self.edges = candidate.edges


# ─── Module-level API ─────────────────────────────────────────

def collect_problems(definition: WorkflowDefinition) -> list[str]:
    problems: list[str] = []
    node_ids = [n.id for n in definition.nodes]
    known = set(node_ids)

    seen: set[str] = set()
    for node_id in node_ids:
        if node_id in seen:
            problems.append(f"Duplicate node id: {node_id}")
        seen.add(node_id)

    starts = [n for n in definition.nodes if n.kind == NodeKind.START]
    if len(starts) != 1:
        problems.append(f"Definition must have exactly one start node (found {len(starts)})")
    if not any(n.kind == NodeKind.END for n in definition.nodes):
        problems.append("Definition must have at least one end node")

    seen_edges: set[WorkflowEdge] = set()
    for edge in definition.edges:
        if edge.source not in known or edge.target not in known:
            problems.append(f"Dangling edge: {edge.source} -> {edge.target}")
        if edge in seen_edges:
            problems.append(f"Duplicate edge: {edge.source} -> {edge.target}")
        seen_edges.add(edge)

    for node in definition.nodes:
        outgoing = definition.outgoing(node.id)
        if node.kind != NodeKind.START and not definition.incoming(node.id):
            problems.append(f"Node {node.id} has no incoming edge")
        if node.kind == NodeKind.END and outgoing:
            problems.append(f"End node {node.id} has outgoing edges")
        if node.kind == NodeKind.DECISION:
            conditions = [e.condition for e in outgoing]
            if len(outgoing) < 2:
                problems.append(f"Decision node {node.id} needs at least two outgoing edges")
            if any(not c for c in conditions):
                problems.append(f"Decision node {node.id} has an edge without a branch condition")
            present = [c for c in conditions if c]
            if len(set(present)) != len(present):
                problems.append(f"Decision node {node.id} has duplicate branch conditions")

    if len(starts) == 1:
        reachable = _reachable_from(definition, starts[0].id)
        for node_id in node_ids:
            if node_id not in reachable:
                problems.append(f"Node {node_id} is unreachable from start")

    return problems


def validate(definition: WorkflowDefinition) -> bool:
    """Return True for a valid definition, raise ValidationError otherwise.

    The error message is the first problem found; ``details["reasons"]``
    lists all of them.
    """
    problems = collect_problems(definition)
    if problems:
        raise ValidationError(problems[0], details={"reasons": problems})
    return True


def linear_path(definition: WorkflowDefinition) -> list[WorkflowNode]:
    """Nodes visited walking from start along single outgoing edges.

    Raises:
        ValidationError: if the definition is invalid or needs branching
    """
    validate(definition)
    current = definition.entry_node
    path: list[WorkflowNode] = []
    visited: set[str] = set()

    while current is not None:
        if current.id in visited:
            raise ValidationError(f"Cycle through node {current.id} cannot be linearised")
        visited.add(current.id)

        if current.kind in BRANCHING_NODE_KINDS:
            raise ValidationError(
                f"Node {current.id} ({current.kind.value}) requires branching, which the engine does not execute",
                details={"node_id": current.id, "kind": current.kind.value},
            )
        path.append(current)

        next_ids = definition.successors(current.id)
        if len(next_ids) > 1:
            raise ValidationError(
                f"Node {current.id} has {len(next_ids)} successors; only linear definitions execute",
                details={"node_id": current.id},
            )
        current = definition.node(next_ids[0]) if next_ids else None

    return path


def _reachable_from(definition: WorkflowDefinition, start_id: str) -> set[str]:
    reachable = {start_id}
    queue = deque([start_id])
    while queue:
        for target in definition.successors(queue.popleft()):
            if target not in reachable:
                reachable.add(target)
                queue.append(target)
    return reachable
