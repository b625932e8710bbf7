"""Tests for workflow definition graphs and structural validation."""

import pytest

from core.constants import NodeKind
from core.exceptions import ValidationError
from workflow.graph import (
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
    collect_problems,
    linear_path,
    validate,
)


def _linear() -> WorkflowDefinition:
    return WorkflowDefinition.from_dict(
        {
            "id": "wf-linear",
            "nodes": [
                {"id": "start", "kind": "start"},
                {"id": "assess", "kind": "task", "label": "Assess",
                 "configuration": {"assigned_role": "analyst", "due_hours": 2}},
                {"id": "approve", "type": "approval", "label": "Approve",
                 "config": {"assigned_role": "manager", "due_hours": 4}},
                {"id": "end", "kind": "end"},
            ],
            "edges": [
                {"source": "start", "target": "assess"},
                {"source": "assess", "target": "approve"},
                {"source": "approve", "target": "end"},
            ],
        }
    )


def _branching() -> WorkflowDefinition:
    return WorkflowDefinition.from_dict(
        {
            "id": "wf-branch",
            "nodes": [
                {"id": "start", "kind": "start"},
                {"id": "check", "kind": "decision"},
                {"id": "high", "kind": "task"},
                {"id": "low", "kind": "notification"},
                {"id": "end", "kind": "end"},
            ],
            "edges": [
                {"source": "start", "target": "check"},
                {"source": "check", "target": "high", "condition": "severity == high"},
                {"source": "check", "target": "low", "condition": "severity != high"},
                {"source": "high", "target": "end"},
                {"source": "low", "target": "end"},
            ],
        }
    )


@pytest.mark.unit
class TestParsing:
    def test_accepts_kind_or_type_and_config_alias(self):
        definition = _linear()
        approve = definition.node("approve")
        assert approve.kind == NodeKind.APPROVAL
        assert approve.configuration == {"assigned_role": "manager", "due_hours": 4}

    def test_unknown_node_kind_rejected(self):
        with pytest.raises(ValidationError, match="Unknown node kind"):
            WorkflowNode.from_dict({"id": "x", "kind": "teleport"})

    def test_edge_requires_endpoints(self):
        with pytest.raises(ValidationError):
            WorkflowEdge.from_dict({"source": "a"})

    def test_to_dict_keeps_layout(self):
        definition = WorkflowDefinition.from_dict(
            {
                "id": "wf",
                "nodes": [
                    {"id": "start", "kind": "start", "position": {"x": 10, "y": 20}},
                    {"id": "end", "kind": "end"},
                ],
                "edges": [{"source": "start", "target": "end"}],
            }
        )
        data = definition.to_dict()
        assert data["nodes"][0]["position"] == {"x": 10, "y": 20}
        assert data["edges"] == [{"source": "start", "target": "end", "condition": None}]


@pytest.mark.unit
class TestValidation:
    def test_valid_linear_definition(self):
        assert validate(_linear()) is True

    def test_valid_branching_definition(self):
        assert _branching().validate() is True

    def test_missing_start(self):
        definition = WorkflowDefinition.from_dict(
            {"id": "wf", "nodes": [{"id": "end", "kind": "end"}], "edges": []}
        )
        with pytest.raises(ValidationError, match="exactly one start"):
            validate(definition)

    def test_two_starts(self):
        definition = _linear()
        definition.nodes.append(WorkflowNode(id="start2", kind=NodeKind.START))
        problems = collect_problems(definition)
        assert any("exactly one start node (found 2)" in p for p in problems)

    def test_missing_end(self):
        definition = WorkflowDefinition.from_dict(
            {
                "id": "wf",
                "nodes": [{"id": "start", "kind": "start"}, {"id": "t", "kind": "task"}],
                "edges": [{"source": "start", "target": "t"}],
            }
        )
        with pytest.raises(ValidationError, match="at least one end node"):
            validate(definition)

    def test_dangling_edge(self):
        definition = _linear()
        definition.edges.append(WorkflowEdge("assess", "ghost"))
        assert "Dangling edge: assess -> ghost" in definition.problems()

    def test_orphan_node_has_no_incoming_edge(self):
        definition = _linear()
        definition.nodes.append(WorkflowNode(id="orphan", kind=NodeKind.TASK))
        problems = definition.problems()
        assert "Node orphan has no incoming edge" in problems
        assert "Node orphan is unreachable from start" in problems

    def test_unreachable_cycle(self):
        definition = _linear()
        definition.nodes += [
            WorkflowNode(id="a", kind=NodeKind.TASK),
            WorkflowNode(id="b", kind=NodeKind.TASK),
        ]
        definition.edges += [WorkflowEdge("a", "b"), WorkflowEdge("b", "a")]
        problems = definition.problems()
        assert "Node a is unreachable from start" in problems
        assert "Node b is unreachable from start" in problems

    def test_end_with_outgoing_edge(self):
        definition = _linear()
        definition.nodes.append(WorkflowNode(id="after", kind=NodeKind.TASK))
        definition.edges.append(WorkflowEdge("end", "after"))
        assert "End node end has outgoing edges" in definition.problems()

    def test_decision_needs_two_conditioned_branches(self):
        definition = _branching()
        definition.edges = [e for e in definition.edges if e.target != "low"]
        definition.edges.append(WorkflowEdge("check", "low"))
        problems = definition.problems()
        assert "Decision node check has an edge without a branch condition" in problems

    def test_decision_with_single_branch(self):
        definition = _branching()
        definition.edges = [
            e for e in definition.edges if not (e.source == "check" and e.target == "low")
        ]
        definition.edges.append(WorkflowEdge("start", "low"))
        assert "Decision node check needs at least two outgoing edges" in definition.problems()

    def test_duplicate_branch_conditions(self):
        definition = _branching()
        definition.edges = [
            WorkflowEdge(e.source, e.target, "same" if e.source == "check" else e.condition)
            for e in definition.edges
        ]
        assert "Decision node check has duplicate branch conditions" in definition.problems()

    def test_all_reasons_reported(self):
        definition = WorkflowDefinition.from_dict(
            {
                "id": "wf",
                "nodes": [{"id": "t", "kind": "task"}, {"id": "t", "kind": "task"}],
                "edges": [],
            }
        )
        with pytest.raises(ValidationError) as exc_info:
            validate(definition)
        reasons = exc_info.value.details["reasons"]
        assert "Duplicate node id: t" in reasons
        assert exc_info.value.message == reasons[0]
        assert len(reasons) >= 3


@pytest.mark.unit
class TestMutations:
    def test_remove_edge_rejected_when_node_orphaned(self):
        definition = _linear()
        with pytest.raises(ValidationError, match="no incoming edge"):
            definition.remove_edge("approve", "end")
        assert WorkflowEdge("approve", "end") in definition.edges

    def test_insert_step_between_nodes(self):
        definition = _linear()
        notify = WorkflowNode(id="notify", kind=NodeKind.NOTIFICATION, label="Notify")
        with pytest.raises(ValidationError):
            # end would still be reachable but "notify" needs an incoming edge
            definition.add_node(notify, edges=[WorkflowEdge("notify", "end")])
        assert definition.node("notify") is None

        definition.add_node(
            notify,
            edges=[WorkflowEdge("approve", "notify"), WorkflowEdge("notify", "end")],
        )
        assert definition.node("notify") is notify
        assert definition.successors("approve") == ["end", "notify"]

    def test_remove_node_rejected_when_graph_breaks(self):
        definition = _linear()
        with pytest.raises(ValidationError):
            definition.remove_node("assess")
        assert definition.node("assess") is not None

    def test_remove_unknown_node(self):
        with pytest.raises(ValidationError, match="Node not found"):
            _linear().remove_node("ghost")

    def test_add_edge_to_unknown_node_rejected(self):
        definition = _linear()
        with pytest.raises(ValidationError, match="Dangling edge"):
            definition.add_edge(WorkflowEdge("assess", "ghost"))
        assert WorkflowEdge("assess", "ghost") not in definition.edges

    def test_remove_unknown_edge(self):
        with pytest.raises(ValidationError, match="Edge not found"):
            _linear().remove_edge("start", "end")


@pytest.mark.unit
class TestLinearPath:
    def test_walks_from_start_to_end(self):
        path = linear_path(_linear())
        assert [n.id for n in path] == ["start", "assess", "approve", "end"]

    def test_branching_rejected(self):
        with pytest.raises(ValidationError, match="requires branching"):
            linear_path(_branching())

    def test_fan_out_rejected(self):
        definition = WorkflowDefinition.from_dict(
            {
                "id": "wf",
                "nodes": [
                    {"id": "start", "kind": "start"},
                    {"id": "a", "kind": "task"},
                    {"id": "b", "kind": "task"},
                    {"id": "end", "kind": "end"},
                ],
                "edges": [
                    {"source": "start", "target": "a"},
                    {"source": "start", "target": "b"},
                    {"source": "a", "target": "end"},
                    {"source": "b", "target": "end"},
                ],
            }
        )
        with pytest.raises(ValidationError, match="only linear definitions execute"):
            linear_path(definition)

    def test_cycle_rejected(self):
        definition = WorkflowDefinition.from_dict(
            {
                "id": "wf",
                "nodes": [
                    {"id": "start", "kind": "start"},
                    {"id": "a", "kind": "task"},
                    {"id": "b", "kind": "task"},
                    {"id": "end", "kind": "end"},
                ],
                "edges": [
                    {"source": "start", "target": "a"},
                    {"source": "a", "target": "b"},
                    {"source": "b", "target": "a"},
                    {"source": "b", "target": "end"},
                ],
            }
        )
        # b has two successors before the cycle is reached again
        with pytest.raises(ValidationError):
            linear_path(definition)
