"""
Edge Condition Evaluation.

Conditions are evaluated against a small, read-only context built from the
source node's result and the current state data:

    {"result": <node result>, "data": <state.data>, "nodeResults": <state.data.nodeResults>}

Supported condition types:
    always      follow the edge (also the default when no condition is set)
    never       never follow the edge
    expression  "result.approved", "result.score === 3", "data.mode !== 'fast'"
    equals      value at ``field`` equals ``value``
    contains    string or list at ``field`` contains ``value``
    exists      value at ``field`` is present and not None
    branch      the result's ``branch`` equals ``value``
"""

from typing import Any, Dict, Optional
import logging
import re

from checkflow.engine.graph import ConditionType, EdgeCondition


logger = logging.getLogger(__name__)

_INDEX_PATTERN = re.compile(r"^(\w+)\[(\d+)\]$")
_NUMBER_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")


def get_value_from_path(path: Optional[str], context: Any) -> Any:
    """
    Resolve a dot-notation path (``a.b[0].c``) against nested dicts/lists.

    Objects with attributes (e.g. pydantic models) are traversed too.

    Returns:
        The value, or None if any segment is missing
    """
    if not path or not isinstance(path, str):
        return None

    current = context
    for part in path.split("."):
        if current is None:
            return None
        match = _INDEX_PATTERN.match(part)
        if match:
            name, index = match.group(1), int(match.group(2))
            current = _get_attr(current, name)
            if not isinstance(current, (list, tuple)) or index >= len(current):
                return None
            current = current[index]
        else:
            current = _get_attr(current, part)
    return current


def _get_attr(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def build_condition_context(result: Any, state_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    data = state_data or {}
    return {
        "result": _result_as_dict(result),
        "data": data,
        "nodeResults": data.get("nodeResults") or {},
    }


def _result_as_dict(result: Any) -> Any:
    if hasattr(result, "model_dump"):
        return result.model_dump()
    return result


def evaluate_condition(
    condition: Optional[EdgeCondition],
    result: Any,
    state_data: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Decide whether an edge with this condition should be followed.

    Args:
        condition: The edge condition (None means always)
        result: The source node's result
        state_data: Current state.data

    Returns:
        True if the edge should be followed
    """
    if condition is None:
        return True

    context = build_condition_context(result, state_data)
    condition_type = condition.type

    if condition_type == ConditionType.ALWAYS:
        return True
    if condition_type == ConditionType.NEVER:
        return False
    if condition_type == ConditionType.EXPRESSION:
        return evaluate_expression(condition.value, context)
    if condition_type == ConditionType.EQUALS:
        return get_value_from_path(condition.field, context) == condition.value
    if condition_type == ConditionType.CONTAINS:
        container = get_value_from_path(condition.field, context)
        if isinstance(container, (str, list, tuple)):
            try:
                return condition.value in container
            except TypeError:
                return False
        return False
    if condition_type == ConditionType.EXISTS:
        return get_value_from_path(condition.field, context) is not None
    if condition_type == ConditionType.BRANCH:
        branch = get_value_from_path("result.branch", context)
        if branch is None:
            branch = get_value_from_path("result.output.branch", context)
        return branch == condition.value

    logger.warning(f"Unknown condition type '{condition_type}', treating as always")
    return True


def evaluate_expression(expression: Any, context: Dict[str, Any]) -> bool:
    """
    Evaluate the safe expression subset.

    Only path lookups and (in)equality against literals or other paths are
    supported; nothing is ever passed to ``eval``.
    """
    if not expression:
        return True
    if not isinstance(expression, str):
        return bool(expression)

    try:
        for operator, negate in (("!==", True), ("===", False), ("!=", True), ("==", False)):
            if operator in expression:
                parts = [p.strip() for p in expression.split(operator)]
                if len(parts) != 2:
                    return False
                left = get_value_from_path(parts[0], context)
                right = _parse_operand(parts[1], context)
                return (left != right) if negate else (left == right)

        return bool(get_value_from_path(expression.strip(), context))
    except Exception as e:
        logger.warning(f"Expression evaluation failed for '{expression}': {e}")
        return False


def _parse_operand(raw: str, context: Dict[str, Any]) -> Any:
    if raw in ("true", "True"):
        return True
    if raw in ("false", "False"):
        return False
    if raw in ("null", "None", "undefined"):
        return None
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        return raw[1:-1]
    if _NUMBER_PATTERN.match(raw):
        return float(raw) if "." in raw else int(raw)
    return get_value_from_path(raw, context)
