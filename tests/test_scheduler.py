"""
Tests for the GraphScheduler and edge conditions.
"""

import pytest

from checkflow.engine.conditions import evaluate_condition, evaluate_expression, get_value_from_path
from checkflow.engine.errors import ErrorCode, GraphValidationError
from checkflow.engine.graph import EdgeCondition, EdgeDefinition, NodeDefinition, WorkflowDefinition
from checkflow.engine.node import NodeResult
from checkflow.engine.scheduler import GraphScheduler


def make_workflow(nodes, edges, **config) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate({
        "id": "test-workflow",
        "nodes": [{"id": n, "type": t} for n, t in nodes],
        "edges": [
            {"source": s, "target": t, **({"condition": c} if c else {})}
            for s, t, c in (e if len(e) == 3 else (*e, None) for e in edges)
        ],
        "config": config,
    })


# ============================================================
# Validation Tests
# ============================================================

class TestGraphValidation:
    """Tests for structural validation."""

    def setup_method(self):
        self.scheduler = GraphScheduler()

    def test_linear_graph_is_valid(self):
        """Test that a linear graph validates and reports its start node."""
        workflow = make_workflow(
            [("a", "start"), ("b", "work"), ("c", "end")],
            [("a", "b"), ("b", "c")],
        )
        assert self.scheduler.validate(workflow) == ["a"]

    def test_cycle_rejected_in_strict_mode(self):
        """Test that cycles fail validation unless allowed."""
        workflow = make_workflow(
            [("a", "start"), ("b", "work"), ("c", "work")],
            [("a", "b"), ("b", "c"), ("c", "b")],
        )
        with pytest.raises(GraphValidationError) as exc_info:
            self.scheduler.validate(workflow)

        assert exc_info.value.code == ErrorCode.VALIDATION
        assert set(exc_info.value.details["cycle_node_ids"]) == {"b", "c"}

    def test_cycle_allowed(self):
        """Test that allow_cycles reports loop nodes without raising."""
        workflow = make_workflow(
            [("a", "start"), ("b", "work"), ("c", "work")],
            [("a", "b"), ("b", "c"), ("c", "b")],
            allow_cycles=True,
        )
        report = self.scheduler.detect_cycles(workflow.nodes, workflow.edges, allow_cycles=True)

        assert report.has_cycle is True
        assert set(report.cycle_node_ids) == {"b", "c"}
        assert self.scheduler.validate(workflow) == ["a"]

    def test_self_loop_is_a_cycle(self):
        """Test that an edge from a node to itself is detected."""
        workflow = make_workflow([("a", "start"), ("b", "work")], [("a", "b"), ("b", "b")])
        report = self.scheduler.detect_cycles(workflow.nodes, workflow.edges, allow_cycles=True)
        assert report.cycle_node_ids == ["b"]

    def test_empty_workflow_rejected(self):
        """Test that a workflow needs at least one node."""
        with pytest.raises(GraphValidationError, match="at least one node"):
            self.scheduler.validate(WorkflowDefinition(id="empty"))

    def test_duplicate_node_ids_rejected(self):
        """Test that node ids must be unique."""
        workflow = make_workflow([("a", "start"), ("a", "work")], [])
        with pytest.raises(GraphValidationError, match="Duplicate"):
            self.scheduler.validate(workflow)

    def test_unknown_edge_endpoint_rejected(self):
        """Test that edges must reference existing nodes."""
        workflow = make_workflow([("a", "start")], [("a", "ghost")])
        with pytest.raises(GraphValidationError, match="ghost"):
            self.scheduler.validate(workflow)

    def test_no_start_nodes(self):
        """Test that a graph where every node has inputs has no start."""
        workflow = make_workflow(
            [("a", "work"), ("b", "work")],
            [("a", "b"), ("b", "a")],
            allow_cycles=True,
        )
        with pytest.raises(GraphValidationError, match="no start nodes"):
            self.scheduler.validate(workflow)

    def test_start_type_is_entry_even_with_incoming_edges(self):
        """Test that nodes of type 'start' are entry points in loops."""
        workflow = make_workflow(
            [("a", "start"), ("b", "work")],
            [("a", "b"), ("b", "a")],
            allow_cycles=True,
        )
        assert self.scheduler.find_start_nodes(workflow) == ["a"]


# ============================================================
# Graph Query Tests
# ============================================================

class TestGraphQueries:
    """Tests for start/end discovery and ordering."""

    def setup_method(self):
        self.scheduler = GraphScheduler()

    def test_find_end_nodes(self):
        """Test that nodes without outgoing edges are end nodes."""
        workflow = make_workflow(
            [("a", "start"), ("b", "work"), ("c", "end"), ("d", "end")],
            [("a", "b"), ("b", "c"), ("b", "d")],
        )
        assert self.scheduler.find_end_nodes(workflow) == ["c", "d"]

    def test_topological_sort(self):
        """Test that dependencies come before dependents."""
        workflow = make_workflow(
            [("d", "end"), ("b", "work"), ("a", "start"), ("c", "work")],
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        )
        order = self.scheduler.topological_sort(workflow)

        assert order[0] == "a"
        assert order[-1] == "d"
        assert order.index("b") < order.index("d")

    def test_topological_sort_rejects_cycles(self):
        """Test that sorting a cyclic graph fails."""
        workflow = make_workflow(
            [("a", "start"), ("b", "work")],
            [("a", "b"), ("b", "b")],
            allow_cycles=True,
        )
        with pytest.raises(GraphValidationError):
            self.scheduler.topological_sort(workflow)


# ============================================================
# Runtime Scheduling Tests
# ============================================================

class TestRuntimeScheduling:
    """Tests for executable and next node resolution."""

    def setup_method(self):
        self.scheduler = GraphScheduler()

    def test_join_waits_for_all_upstream(self):
        """Test that a join node runs only after every source completed."""
        workflow = make_workflow(
            [("a", "start"), ("b", "work"), ("c", "work"), ("join", "end")],
            [("a", "b"), ("a", "c"), ("b", "join"), ("c", "join")],
        )

        ready = self.scheduler.get_executable_nodes(workflow, ["c", "join"], ["a", "b"])
        assert ready == ["c"]

        ready = self.scheduler.get_executable_nodes(workflow, ["join"], ["a", "b", "c"])
        assert ready == ["join"]

    def test_cyclic_mode_runs_every_current_node(self):
        """Test that dependency checks are skipped when cycles are allowed."""
        workflow = make_workflow(
            [("a", "start"), ("b", "work")],
            [("a", "b"), ("b", "a")],
            allow_cycles=True,
        )
        assert self.scheduler.get_executable_nodes(workflow, ["b", "b"], []) == ["b"]

    def test_no_current_nodes(self):
        """Test that nothing is executable once current nodes are drained."""
        workflow = make_workflow([("a", "start")], [])
        assert self.scheduler.get_executable_nodes(workflow, [], ["a"]) == []

    def test_unconditional_edges_followed(self):
        """Test that edges without conditions are always followed."""
        workflow = make_workflow(
            [("a", "start"), ("b", "work"), ("c", "work")],
            [("a", "b"), ("a", "c")],
        )
        assert self.scheduler.get_next_nodes("a", NodeResult(), workflow) == ["b", "c"]

    def test_branch_condition(self):
        """Test routing on the result branch label."""
        workflow = make_workflow(
            [("review", "human"), ("yes", "end"), ("no", "end")],
            [
                ("review", "yes", {"type": "branch", "value": "approve"}),
                ("review", "no", {"type": "branch", "value": "reject"}),
            ],
        )
        result = NodeResult(branch="reject")
        assert self.scheduler.get_next_nodes("review", result, workflow) == ["no"]

    def test_expression_condition_against_state(self):
        """Test routing on an expression over state data."""
        workflow = make_workflow(
            [("a", "start"), ("fast", "work"), ("slow", "work")],
            [
                ("a", "fast", {"type": "expression", "value": "data.mode === 'fast'"}),
                ("a", "slow", {"type": "expression", "value": "data.mode !== 'fast'"}),
            ],
        )
        next_nodes = self.scheduler.get_next_nodes("a", NodeResult(), workflow, {"mode": "fast"})
        assert next_nodes == ["fast"]

    def test_path_ends_when_no_edge_matches(self):
        """Test that an unmatched conditional edge ends the path."""
        workflow = make_workflow(
            [("a", "start"), ("b", "work")],
            [("a", "b", {"type": "never"})],
        )
        assert self.scheduler.get_next_nodes("a", NodeResult(), workflow) == []


# ============================================================
# Condition Tests
# ============================================================

class TestConditions:
    """Tests for condition evaluation helpers."""

    def test_get_value_from_path(self):
        """Test dotted paths with list indexes."""
        context = {"result": {"items": [{"name": "first"}]}}
        assert get_value_from_path("result.items[0].name", context) == "first"
        assert get_value_from_path("result.items[3].name", context) is None
        assert get_value_from_path("result.missing.deep", context) is None

    def test_expression_literals(self):
        """Test comparison against numbers, booleans and null."""
        context = {"result": {"output": {"score": 3, "ok": True, "note": None}}}
        assert evaluate_expression("result.output.score === 3", context) is True
        assert evaluate_expression("result.output.score != 3", context) is False
        assert evaluate_expression("result.output.ok == true", context) is True
        assert evaluate_expression("result.output.note === null", context) is True
        assert evaluate_expression("result.output.ok", context) is True

    def test_equals_contains_exists(self):
        """Test the field-based condition types."""
        result = NodeResult(output={"tags": ["urgent", "bug"], "owner": "ops"})
        assert evaluate_condition(
            EdgeCondition(type="equals", field="result.output.owner", value="ops"), result
        )
        assert evaluate_condition(
            EdgeCondition(type="contains", field="result.output.tags", value="bug"), result
        )
        assert not evaluate_condition(
            EdgeCondition(type="exists", field="result.output.assignee"), result
        )

    def test_branch_falls_back_to_output(self):
        """Test that a branch inside the output is honored."""
        result = {"output": {"branch": "left"}}
        assert evaluate_condition(EdgeCondition(type="branch", value="left"), result)

    def test_node_results_in_context(self):
        """Test that earlier node results are reachable from conditions."""
        data = {"nodeResults": {"search": {"output": {"hits": 2}}}}
        condition = EdgeCondition(type="expression", value="nodeResults.search.output.hits == 2")
        assert evaluate_condition(condition, NodeResult(), data)

    def test_edge_definition_defaults(self):
        """Test that an edge without a condition is unconditional."""
        edge = EdgeDefinition(source="a", target="b")
        assert edge.condition is None
        assert NodeDefinition(id="a", type="start").execution.retries == 0
