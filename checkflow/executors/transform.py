"""
Transform node: direct state manipulation without calling a model.

Each operation reads from the state data overlaid with the updates of the
operations before it, so later operations see earlier results. The node's
result carries the accumulated ``state_updates``; the engine deep-merges them
into state data when the node completes.

Operations (paths are dot-notation into state data, ``a.b[0].c``):

    {"set": "sources", "value": []}
    {"copy": "draft.title", "to": "summary.title"}
    {"increment": "round", "by": 1}
    {"push": "current", "to": "sources"}
    {"merge": "extra", "into": "settings"}
    {"array_get": "items", "index": "cursor", "to": "item"}
    {"length_of": "items", "to": "total"}
    {"condition": "cursor >= total", "to": "done", "then": true, "else": false}
"""

from copy import deepcopy
from typing import Any, Dict, List
import logging
import re

from checkflow.engine.conditions import get_value_from_path
from checkflow.engine.graph import NodeDefinition
from checkflow.engine.node import ExecutionContext, NodeResult
from checkflow.engine.state import ExecutionState, deep_merge
from checkflow.executors.base import BaseNodeExecutor
from checkflow.executors.decision import compare_values


logger = logging.getLogger(__name__)

_CONDITION_PATTERN = re.compile(r"^\s*([\w.\[\]]+)\s*(>=|<=|===|!==|==|!=|>|<)\s*([\w.\[\]-]+)\s*$")
_NUMBER_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")


class TransformNodeExecutor(BaseNodeExecutor):
    """
    Config:
        operations: Ordered list of operations, see the module docstring
    """

    async def execute(
        self,
        node: NodeDefinition,
        state: ExecutionState,
        context: ExecutionContext,
    ) -> NodeResult:
        operations: List[Dict[str, Any]] = node.config.get("operations") or []
        updates: Dict[str, Any] = {}

        try:
            for operation in operations:
                self.apply_operation(operation, state.data, updates)
        except (TypeError, ValueError, KeyError) as e:
            return self.create_error_result(
                f"Transform execution failed: {e}",
                {"node_id": node.id, "original_error": str(e)},
            )

        logger.info(
            f"[{context.execution_id}] Transform node '{node.id}' updated {sorted(updates)}"
        )
        return self.create_success_result(
            {"transformed_variables": list(updates)},
            state_updates=updates,
        )

    def apply_operation(self, operation: Dict[str, Any], data: Dict[str, Any], updates: Dict[str, Any]) -> None:
        """Apply one operation, accumulating its writes into ``updates``."""
        if not isinstance(operation, dict):
            raise TypeError(f"Transform operation must be an object, got {type(operation).__name__}")

        view = deep_merge(data, updates)

        if "set" in operation:
            value = deepcopy(operation.get("value"))
            if isinstance(value, str):
                value = self.resolve_variables(value, view)
            set_path(operation["set"], value, updates)

        elif "copy" in operation and "to" in operation:
            value = get_value_from_path(_strip(operation["copy"]), view)
            if value is None:
                logger.warning(f"COPY source not found: {operation['copy']}")
            else:
                set_path(operation["to"], deepcopy(value), updates)

        elif "increment" in operation:
            current = get_value_from_path(_strip(operation["increment"]), view)
            number = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
            set_path(operation["increment"], number + operation.get("by", 1), updates)

        elif "push" in operation and "to" in operation:
            item = get_value_from_path(_strip(operation["push"]), view)
            if item is None:
                logger.warning(f"PUSH item not found: {operation['push']}")
                return
            current = get_value_from_path(_strip(operation["to"]), view)
            items = list(current) if isinstance(current, list) else []
            items.append(deepcopy(item))
            set_path(operation["to"], items, updates)

        elif "merge" in operation and "into" in operation:
            source = get_value_from_path(_strip(operation["merge"]), view)
            if not isinstance(source, dict):
                logger.warning(f"MERGE source is not an object: {operation['merge']}")
                return
            target = get_value_from_path(_strip(operation["into"]), view)
            merged = dict(target) if isinstance(target, dict) else {}
            merged.update(deepcopy(source))
            set_path(operation["into"], merged, updates)

        elif "array_get" in operation and "index" in operation and "to" in operation:
            items = get_value_from_path(_strip(operation["array_get"]), view)
            index = operation["index"]
            if isinstance(index, str) and not _NUMBER_PATTERN.match(index):
                index = get_value_from_path(_strip(index), view)
            try:
                index = int(index)
            except (TypeError, ValueError):
                index = -1
            if isinstance(items, list) and 0 <= index < len(items):
                set_path(operation["to"], deepcopy(items[index]), updates)
            else:
                logger.warning(f"ARRAY_GET index out of bounds: {operation['array_get']}[{index}]")
                set_path(operation["to"], "", updates)

        elif "length_of" in operation and "to" in operation:
            items = get_value_from_path(_strip(operation["length_of"]), view)
            set_path(operation["to"], len(items) if isinstance(items, list) else 0, updates)

        elif "condition" in operation and "to" in operation:
            chosen = operation.get("then") if evaluate_condition(operation["condition"], view) else operation.get("else")
            set_path(operation["to"], deepcopy(chosen), updates)

        else:
            raise ValueError(f"Unknown transform operation: {sorted(operation)}")


def evaluate_condition(expression: str, data: Dict[str, Any]) -> bool:
    """Evaluate ``left <op> right`` where each side is a path or a literal."""
    match = _CONDITION_PATTERN.match(expression or "")
    if not match:
        logger.warning(f"Invalid condition expression: {expression}")
        return False
    left, operator, right = match.groups()
    return compare_values(_operand(left, data), operator, _operand(right, data))


def set_path(path: str, value: Any, target: Dict[str, Any]) -> None:
    """Set a dot-notation path in ``target``, creating intermediate dicts."""
    parts = _strip(path).split(".")
    if not parts[0]:
        raise ValueError(f"Invalid target path '{path}'")

    current = target
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = current[part] = {}
        current = child
    current[parts[-1]] = value


def _operand(raw: str, data: Dict[str, Any]) -> Any:
    value = get_value_from_path(raw, data)
    if value is not None:
        return value
    if _NUMBER_PATTERN.match(raw):
        return float(raw) if "." in raw else int(raw)
    if raw in ("true", "false"):
        return raw == "true"
    if raw == "null":
        return None
    return raw


def _strip(path: Any) -> str:
    path = str(path or "")
    return path[2:] if path.startswith("$.") else path
