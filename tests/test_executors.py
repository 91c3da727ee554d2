"""
Tests for the executor registry and the built-in node executors.
"""

import asyncio
import warnings

import pytest

from checkflow.engine.graph import NodeDefinition, WorkflowDefinition
from checkflow.engine.node import ExecutionContext, NodeResult, normalize_result
from checkflow.engine.state import ExecutionState
from checkflow.executors.base import BaseNodeExecutor, localized
from checkflow.executors.decision import DecisionNodeExecutor
from checkflow.executors.end import EndNodeExecutor
from checkflow.executors.human import HumanNodeExecutor
from checkflow.executors.registry import ExecutorRegistry, FunctionExecutor, create_default_registry
from checkflow.executors.start import StartNodeExecutor
from checkflow.executors.transform import TransformNodeExecutor


def make_state(data=None) -> ExecutionState:
    return ExecutionState(execution_id="exec-1", workflow_id="wf", data=data or {})


def make_context(node_id: str, state: ExecutionState, initial_data=None, language="en") -> ExecutionContext:
    return ExecutionContext(
        execution_id="exec-1",
        node_id=node_id,
        workflow=WorkflowDefinition(id="wf"),
        data=state.data,
        initial_data=initial_data or {},
        language=language,
    )


# ============================================================
# Registry Tests
# ============================================================

class TestExecutorRegistry:
    """Tests for ExecutorRegistry."""

    def test_register_executor_object(self):
        """Test registering an executor instance."""
        registry = ExecutorRegistry()
        executor = EndNodeExecutor()
        registry.register("end", executor)

        assert registry.get("end") is executor
        assert "end" in registry
        assert len(registry) == 1

    def test_register_function_with_decorator(self):
        """Test that plain functions are wrapped."""
        registry = ExecutorRegistry()

        @registry.register("upper", description="Uppercases text")
        def upper(node, state, context):
            return state.data["text"].upper()

        executor = registry.get("upper")
        assert isinstance(executor, FunctionExecutor)
        assert executor.description == "Uppercases text"
        assert upper(None, make_state({"text": "a"}), None) == "A"

    def test_register_invalid(self):
        """Test that non-callables are rejected."""
        with pytest.raises(TypeError):
            ExecutorRegistry().register("bad", 42)

    def test_remove_and_list(self):
        """Test removal and listing."""
        registry = create_default_registry()
        assert sorted(registry) == ["decision", "end", "human", "start", "transform"]
        assert {"type": "human", "executor": "HumanNodeExecutor"} in registry.list_types()

        assert registry.remove("human") is True
        assert registry.remove("human") is False
        assert "human" not in registry

    @pytest.mark.asyncio
    async def test_function_executor_sync_and_async(self):
        """Test that sync and async functions both run."""
        async def async_fn(node, state, context):
            await asyncio.sleep(0)
            return {"output": "async"}

        def sync_fn(node, state, context):
            return {"output": "sync"}

        state = make_state()
        assert FunctionExecutor(async_fn).is_async is True
        assert await FunctionExecutor(async_fn).execute(None, state, None) == {"output": "async"}
        assert await FunctionExecutor(sync_fn).execute(None, state, None) == {"output": "sync"}

    def test_coroutine_detection_emits_no_deprecation_warning(self):
        """Test that classifying functions stays quiet on current interpreters."""
        async def async_fn(node, state, context):
            return None

        def sync_fn(node, state, context):
            return None

        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            assert FunctionExecutor(async_fn).is_async is True
            assert FunctionExecutor(sync_fn).is_async is False


# ============================================================
# Result Normalization Tests
# ============================================================

class TestNormalizeResult:
    """Tests for normalize_result."""

    def test_raw_values_become_output(self):
        """Test wrapping of raw values."""
        assert normalize_result("text").output == "text"
        assert normalize_result({"plain": 1}).output == {"plain": 1}
        assert normalize_result(None).status is None

    def test_result_shaped_dicts(self):
        """Test dicts that look like results."""
        result = normalize_result({"status": "paused", "pause_reason": "wait"})
        assert result.is_paused
        assert result.pause_reason == "wait"

    def test_record_excludes_state_updates(self):
        """Test the stored form of a result."""
        record = NodeResult(output=1, state_updates={"a": 1}, branch="x").to_record()
        assert record == {"output": 1, "branch": "x", "is_terminal": False}


# ============================================================
# Base Executor Tests
# ============================================================

class TestBaseNodeExecutor:
    """Tests for variable resolution and helpers."""

    def setup_method(self):
        self.executor = BaseNodeExecutor()
        self.data = {
            "topic": "graphs",
            "nodeResults": {"search": {"output": {"hits": [{"title": "DAGs"}]}}},
        }

    def test_resolve_variable(self):
        """Test whole-value variables."""
        assert self.executor.resolve_variable("$.topic", self.data) == "graphs"
        assert self.executor.resolve_variable(
            "$.nodeResults.search.output.hits[0].title", self.data
        ) == "DAGs"
        assert self.executor.resolve_variable("literal", self.data) == "literal"
        assert self.executor.resolve_variable("$.missing", self.data) is None

    def test_resolve_variables_recursively(self):
        """Test templates inside strings, lists and dicts."""
        value = {"title": "About ${$.topic}", "items": ["$.topic", 3], "keep": "${$.nope}"}
        resolved = self.executor.resolve_variables(value, self.data)
        assert resolved == {"title": "About graphs", "items": ["graphs", 3], "keep": "${$.nope}"}

    def test_validate_config(self):
        """Test required config fields."""
        node = NodeDefinition(id="n", type="human", config={"message": ""})
        with pytest.raises(ValueError, match="message"):
            self.executor.validate_config(node, ["message"])

    def test_localized(self):
        """Test language selection."""
        assert localized({"en": "Hello", "de": "Hallo"}, "de") == "Hallo"
        assert localized({"en": "Hello"}, "fr") == "Hello"
        assert localized("Plain", "de") == "Plain"
        assert localized(None) == ""

    @pytest.mark.asyncio
    async def test_execute_not_implemented(self):
        """Test that the base class cannot execute."""
        node = NodeDefinition(id="n", type="custom")
        state = make_state()
        with pytest.raises(NotImplementedError):
            await self.executor.execute(node, state, make_context("n", state))


# ============================================================
# Start / End Executor Tests
# ============================================================

class TestStartAndEnd:
    """Tests for the start and end executors."""

    @pytest.mark.asyncio
    async def test_start_copies_inputs(self):
        """Test that inputs are copied into state by default."""
        node = NodeDefinition(id="start", type="start", config={"defaults": {"depth": 1}})
        state = make_state()
        result = await StartNodeExecutor().execute(
            node, state, make_context("start", state, {"topic": "graphs"})
        )

        assert result.state_updates == {"depth": 1, "topic": "graphs"}
        assert result.output["input_fields"] == ["topic"]

    @pytest.mark.asyncio
    async def test_start_input_mapping(self):
        """Test mapping inputs to new names."""
        node = NodeDefinition(
            id="start",
            type="start",
            config={"input_mapping": {"query": "$.input.topic", "mode": "fast"}},
        )
        state = make_state()
        result = await StartNodeExecutor().execute(
            node, state, make_context("start", state, {"topic": "graphs"})
        )
        assert result.state_updates == {"query": "graphs", "mode": "fast"}

    @pytest.mark.asyncio
    async def test_start_required_inputs(self):
        """Test that missing inputs fail the node."""
        node = NodeDefinition(id="start", type="start", config={"required_inputs": ["topic"]})
        state = make_state()
        result = await StartNodeExecutor().execute(node, state, make_context("start", state))

        assert result.is_failed
        assert "topic" in result.error

    @pytest.mark.asyncio
    async def test_end_output_variables_and_status(self):
        """Test output selection and the custom terminal label."""
        node = NodeDefinition(
            id="end",
            type="end",
            config={"output_variables": ["summary", "absent"], "status": "approved"},
        )
        state = make_state({"summary": "done", "other": 1})
        result = await EndNodeExecutor().execute(node, state, make_context("end", state))

        assert result.output == {"summary": "done"}
        assert result.is_terminal is True
        assert result.workflow_status == "approved"

    @pytest.mark.asyncio
    async def test_end_default_output_hides_internal_fields(self):
        """Test that bookkeeping keys never reach the output."""
        node = NodeDefinition(id="end", type="end")
        state = make_state({"summary": "done", "_workflow": {}, "nodeResults": {}})
        result = await EndNodeExecutor().execute(node, state, make_context("end", state))
        assert result.output == {"summary": "done"}

    @pytest.mark.asyncio
    async def test_end_output_mapping(self):
        """Test mapping output keys from state paths."""
        node = NodeDefinition(
            id="end",
            type="end",
            config={"output_mapping": {"answer": "$.result.text", "label": "Final: ${$.result.text}"}},
        )
        state = make_state({"result": {"text": "42"}})
        result = await EndNodeExecutor().execute(node, state, make_context("end", state))
        assert result.output == {"answer": "42", "label": "Final: 42"}


# ============================================================
# Decision Executor Tests
# ============================================================

class TestDecisionNodeExecutor:
    """Tests for expression and switch decisions."""

    async def decide(self, config, data):
        node = NodeDefinition(id="route", type="decision", config=config)
        state = make_state(data)
        return await DecisionNodeExecutor().execute(node, state, make_context("route", state))

    @pytest.mark.asyncio
    async def test_expression_branches(self):
        """Test that expressions pick the true and false branches."""
        data = {"score": 4, "draft": {"title": "Intro"}, "tags": []}

        result = await self.decide({"expression": "$.score >= 3 && exists($.draft.title)"}, data)
        assert result.status == "completed"
        assert result.branch == "true"
        assert result.output["value"] is True

        result = await self.decide({"expression": "!empty($.tags) || $.score == 1"}, data)
        assert result.branch == "false"

    @pytest.mark.asyncio
    async def test_expression_functions_and_grouping(self):
        """Test length(), string literals and parentheses."""
        data = {"items": [1, 2, 3], "mode": "fast"}
        expression = "(length($.items) > 2 && $.mode === 'fast') || $.missing"

        result = await self.decide({"type": "expression", "expression": expression}, data)
        assert result.branch == "true"

    @pytest.mark.asyncio
    async def test_unparseable_expression_takes_false_branch(self):
        """Test that a broken expression does not fail the node."""
        result = await self.decide({"expression": "$.a == (1"}, {"a": 1})
        assert result.status == "completed"
        assert result.branch == "false"
        assert "error" in result.output

        result = await self.decide({}, {})
        assert result.branch == "false"

    @pytest.mark.asyncio
    async def test_switch_first_match_wins(self):
        """Test matcher order and the default branch."""
        config = {
            "type": "switch",
            "variable": "$.doc.mime",
            "conditions": [
                {"branch": "pdf", "equals": "application/pdf"},
                {"branch": "image", "contains": "image/"},
                {"branch": "text", "matches": "^text/"},
            ],
            "default_branch": "unknown",
        }

        assert (await self.decide(config, {"doc": {"mime": "image/png"}})).branch == "image"
        assert (await self.decide(config, {"doc": {"mime": "text/plain"}})).branch == "text"
        assert (await self.decide(config, {"doc": {"mime": "audio/ogg"}})).branch == "unknown"

    @pytest.mark.asyncio
    async def test_switch_numeric_and_membership(self):
        """Test ordering matchers and in/not_in lists."""
        config = {
            "type": "switch",
            "variable": "$.score",
            "conditions": [
                {"branch": "high", "greater_than_or_equal": 8},
                {"branch": "listed", "in": [1, 2]},
            ],
        }

        assert (await self.decide(config, {"score": 9})).branch == "high"
        assert (await self.decide(config, {"score": 2})).branch == "listed"
        assert (await self.decide(config, {"score": None})).branch == "default"

    @pytest.mark.asyncio
    async def test_unknown_type_fails(self):
        """Test that unsupported decision types fail the node."""
        result = await self.decide({"type": "oracle"}, {})
        assert result.is_failed
        assert "oracle" in result.error


# ============================================================
# Transform Executor Tests
# ============================================================

class TestTransformNodeExecutor:
    """Tests for transform operations."""

    async def transform(self, operations, data):
        node = NodeDefinition(id="t", type="transform", config={"operations": operations})
        state = make_state(data)
        return await TransformNodeExecutor().execute(node, state, make_context("t", state))

    @pytest.mark.asyncio
    async def test_operations_see_earlier_updates(self):
        """Test that each operation reads the results of the ones before it."""
        operations = [
            {"set": "sources", "value": []},
            {"set": "research.round", "value": 0},
            {"increment": "research.round", "by": 2},
            {"copy": "draft.title", "to": "research.focus"},
            {"push": "draft", "to": "sources"},
            {"length_of": "sources", "to": "total"},
        ]
        result = await self.transform(operations, {"draft": {"title": "Intro"}, "research": {"keep": 1}})

        assert result.status == "completed"
        assert result.state_updates == {
            "sources": [{"title": "Intro"}],
            "research": {"round": 2, "focus": "Intro"},
            "total": 1,
        }
        assert result.output["transformed_variables"] == ["sources", "research", "total"]

    @pytest.mark.asyncio
    async def test_array_get_condition_and_merge(self):
        """Test indexed reads, conditional sets and object merges."""
        data = {"items": ["a", "b"], "cursor": 1, "settings": {"x": 1}, "extra": {"y": 2}}
        operations = [
            {"array_get": "items", "index": "cursor", "to": "item"},
            {"array_get": "items", "index": 5, "to": "missing"},
            {"condition": "cursor >= 1", "to": "done", "then": True, "else": False},
            {"merge": "extra", "into": "settings"},
            {"set": "label", "value": "Item ${$.item}"},
        ]
        result = await self.transform(operations, data)

        assert result.state_updates == {
            "item": "b",
            "missing": "",
            "done": True,
            "settings": {"x": 1, "y": 2},
            "label": "Item b",
        }

    @pytest.mark.asyncio
    async def test_set_values_are_copied(self):
        """Test that set does not share the configured value."""
        value = {"nested": [1]}
        result = await self.transform([{"set": "copy", "value": value}], {})
        result.state_updates["copy"]["nested"].append(2)
        assert value == {"nested": [1]}

    @pytest.mark.asyncio
    async def test_invalid_operation_fails(self):
        """Test that malformed operations fail the node."""
        result = await self.transform([{"rename": "a"}], {})
        assert result.is_failed
        assert "Transform execution failed" in result.error

        result = await self.transform([{"increment": "n", "by": "two"}], {"n": 1})
        assert result.is_failed


# ============================================================
# Human Executor Tests
# ============================================================

class TestHumanNodeExecutor:
    """Tests for human checkpoints."""

    def setup_method(self):
        self.node = NodeDefinition(
            id="review",
            type="human",
            name={"en": "Review", "de": "Prüfung"},
            config={
                "message": {"en": "Approve ${$.topic}?", "de": "${$.topic} freigeben?"},
                "options": [
                    {"value": "approve", "label": {"en": "Approve"}},
                    {"value": "reject", "label": "Reject", "style": "danger"},
                ],
                "show_data": ["$.draft.title"],
            },
        )

    @pytest.mark.asyncio
    async def test_first_entry_pauses_with_checkpoint(self):
        """Test that the node pauses and describes the request."""
        state = make_state({"topic": "graphs", "draft": {"title": "Intro"}})
        result = await HumanNodeExecutor().execute(
            self.node, state, make_context("review", state, language="de")
        )

        assert result.is_paused
        assert result.pause_reason == "human_input_required"
        checkpoint = result.checkpoint
        assert checkpoint["id"].startswith("hc-")
        assert checkpoint["node_id"] == "review"
        assert checkpoint["node_name"] == "Prüfung"
        assert checkpoint["message"] == "graphs freigeben?"
        assert [o["value"] for o in checkpoint["options"]] == ["approve", "reject"]
        assert checkpoint["options"][1]["style"] == "danger"
        assert checkpoint["display_data"] == {"draft_title": "Intro"}

    @pytest.mark.asyncio
    async def test_response_completes_with_branch(self):
        """Test that a valid response completes the node."""
        answer = {"checkpoint_id": "hc-1", "node_id": "review", "response": "approve", "data": {}}
        state = make_state({"_humanResponse": answer})
        result = await HumanNodeExecutor().execute(self.node, state, make_context("review", state))

        assert result.status == "completed"
        assert result.branch == "approve"
        assert result.state_updates["humanResponse_review"]["response"] == "approve"
        assert result.state_updates["_humanResponse"] is None

    @pytest.mark.asyncio
    async def test_invalid_response_fails(self):
        """Test that responses outside the options are rejected."""
        answer = {"checkpoint_id": "hc-1", "node_id": "review", "response": "maybe"}
        state = make_state({"_humanResponse": answer})
        result = await HumanNodeExecutor().execute(self.node, state, make_context("review", state))

        assert result.is_failed
        assert "maybe" in result.error

    @pytest.mark.asyncio
    async def test_input_schema_validation(self):
        """Test required fields of the response data."""
        node = NodeDefinition(
            id="form",
            type="human",
            config={"message": "Fill in", "input_schema": {"type": "object", "required": ["name"]}},
        )
        answer = {"node_id": "form", "response": "continue", "data": {"age": 3}}
        state = make_state({"_humanResponse": answer})
        result = await HumanNodeExecutor().execute(node, state, make_context("form", state))

        assert result.is_failed
        assert "name" in result.error

    @pytest.mark.asyncio
    async def test_response_for_other_node_is_ignored(self):
        """Test that an answer meant for another node does not complete this one."""
        answer = {"node_id": "elsewhere", "response": "approve"}
        state = make_state({"_humanResponse": answer, "topic": "x"})
        result = await HumanNodeExecutor().execute(self.node, state, make_context("review", state))
        assert result.is_paused

    @pytest.mark.asyncio
    async def test_message_is_required(self):
        """Test config validation on first entry."""
        node = NodeDefinition(id="h", type="human")
        state = make_state()
        with pytest.raises(ValueError, match="message"):
            await HumanNodeExecutor().execute(node, state, make_context("h", state))
