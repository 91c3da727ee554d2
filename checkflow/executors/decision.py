"""
Decision node: picks the branch the workflow follows next.

The node only reports a branch; routing happens on the outgoing edges, whose
``branch`` conditions compare against it.

Two decision types are supported:

    expression  "$.score >= 3 && !empty($.draft)" evaluates to branch
                "true" or "false"
    switch      the value of ``variable`` is matched against ``conditions``
                in order; the first match names the branch, otherwise
                ``default_branch`` is used

Expressions are parsed by a small evaluator (paths, literals, comparisons,
``&&``, ``||``, ``!``, parentheses and the ``exists``, ``empty`` and
``length`` functions); nothing is passed to ``eval``.
"""

from typing import Any, Dict, List, Optional, Tuple
import logging
import re

from checkflow.engine.graph import NodeDefinition
from checkflow.engine.node import ExecutionContext, NodeResult
from checkflow.engine.state import ExecutionState
from checkflow.executors.base import BaseNodeExecutor


logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "default"

_COMPARISONS = ("===", "!==", ">=", "<=", "==", "!=", ">", "<")
_FUNCTION_PATTERN = re.compile(r"^(exists|empty|length)\s*\((.*)\)$", re.DOTALL)
_NUMBER_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")


class ExpressionError(ValueError):
    """Raised for expressions the evaluator cannot parse."""


class DecisionNodeExecutor(BaseNodeExecutor):
    """
    Config:
        type: ``expression`` (default) or ``switch``
        expression: Boolean expression over ``$.path`` values
        variable: ``$.path`` whose value a switch matches
        conditions: ``[{"branch": ..., <matcher>: ...}]`` where matcher is one
            of equals, not_equals, greater_than, less_than,
            greater_than_or_equal, less_than_or_equal, contains, matches,
            in, not_in
        default_branch: Branch when no switch condition matches
    """

    async def execute(
        self,
        node: NodeDefinition,
        state: ExecutionState,
        context: ExecutionContext,
    ) -> NodeResult:
        config = node.config
        decision_type = config.get("type", "expression")

        if decision_type == "expression":
            decision = self.evaluate_expression(config.get("expression"), state.data, node.id)
        elif decision_type == "switch":
            decision = self.evaluate_switch(config, state.data, node.id)
        else:
            return self.create_error_result(
                f"Unknown decision type '{decision_type}' in node '{node.id}'",
                {"node_id": node.id, "decision_type": decision_type},
            )

        logger.info(
            f"[{context.execution_id}] Decision node '{node.id}' chose branch '{decision['branch']}'"
        )
        return self.create_success_result(decision, branch=decision["branch"])

    # ============================================================
    # Expression decisions
    # ============================================================

    def evaluate_expression(self, expression: Any, data: Dict[str, Any], node_id: str) -> Dict[str, Any]:
        if not expression or not isinstance(expression, str):
            logger.warning(f"No expression for decision node '{node_id}', taking the false branch")
            return {"branch": "false", "value": False}

        try:
            value = bool(self._value(expression, data))
        except ExpressionError as e:
            logger.error(f"Failed to evaluate expression in node '{node_id}': {e}")
            return {"branch": "false", "value": False, "expression": expression, "error": str(e)}

        return {"branch": "true" if value else "false", "value": value, "expression": expression}

    def _value(self, expression: str, data: Dict[str, Any]) -> Any:
        expr = expression.strip()
        if not expr:
            raise ExpressionError("empty operand")

        if expr.startswith("(") and _closing_paren(expr, 0) == len(expr) - 1:
            return self._value(expr[1:-1], data)

        for operator, combine in (("||", any), ("&&", all)):
            parts = _split_top_level(expr, operator)
            if len(parts) > 1:
                return combine(bool(self._value(part, data)) for part in parts)

        found = _find_comparison(expr)
        if found is not None:
            index, operator = found
            left = self._value(expr[:index], data)
            right = self._value(expr[index + len(operator):], data)
            return compare_values(left, operator, right)

        if expr.startswith("!"):
            return not self._value(expr[1:], data)

        match = _FUNCTION_PATTERN.match(expr)
        if match:
            name, argument = match.group(1), self._value(match.group(2), data)
            if name == "exists":
                return argument is not None
            if name == "empty":
                return argument is None or argument == "" or argument == [] or argument == {}
            return len(argument) if isinstance(argument, (str, list, tuple, dict)) else 0

        return self._operand(expr, data)

    def _operand(self, raw: str, data: Dict[str, Any]) -> Any:
        if raw.startswith("$"):
            return self.resolve_variable(raw, data)
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
        raise ExpressionError(f"unsupported operand '{raw}'")

    # ============================================================
    # Switch decisions
    # ============================================================

    def evaluate_switch(self, config: Dict[str, Any], data: Dict[str, Any], node_id: str) -> Dict[str, Any]:
        default_branch = config.get("default_branch") or DEFAULT_BRANCH
        variable = config.get("variable")
        if not variable:
            logger.warning(f"No variable specified for switch in node '{node_id}'")
            return {"branch": default_branch, "value": None, "matched": False}

        value = self.resolve_variable(variable, data)
        for condition in config.get("conditions") or []:
            if matches_condition(value, condition):
                return {"branch": condition["branch"], "value": value, "matched": True}

        return {"branch": default_branch, "value": value, "matched": False}


def matches_condition(value: Any, condition: Dict[str, Any]) -> bool:
    """Check a switch value against one condition; the first matcher key present decides."""
    if "equals" in condition:
        return value == condition["equals"]
    if "not_equals" in condition:
        return value != condition["not_equals"]
    for key, operator in (
        ("greater_than", ">"),
        ("less_than", "<"),
        ("greater_than_or_equal", ">="),
        ("less_than_or_equal", "<="),
    ):
        if key in condition:
            return compare_values(value, operator, condition[key])
    if "contains" in condition and isinstance(value, str):
        return str(condition["contains"]) in value
    if "matches" in condition and isinstance(value, str):
        try:
            return re.search(condition["matches"], value) is not None
        except re.error:
            return False
    if isinstance(condition.get("in"), list):
        return value in condition["in"]
    if isinstance(condition.get("not_in"), list):
        return value not in condition["not_in"]
    return False


def compare_values(left: Any, operator: str, right: Any) -> bool:
    if operator in ("==", "==="):
        return left == right
    if operator in ("!=", "!=="):
        return left != right
    try:
        if operator == ">":
            return left > right
        if operator == "<":
            return left < right
        if operator == ">=":
            return left >= right
        return left <= right
    except TypeError:
        return False


# ============================================================
# Scanning helpers
# ============================================================

def _scan(expr: str):
    """Yield (index, char) for characters outside quotes at paren depth 0."""
    depth = 0
    quote: Optional[str] = None
    for index, char in enumerate(expr):
        if quote:
            if char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise ExpressionError("unbalanced parentheses")
        elif depth == 0:
            yield index, char
    if depth != 0 or quote:
        raise ExpressionError("unbalanced parentheses or quotes")


def _closing_paren(expr: str, start: int) -> int:
    depth = 0
    quote: Optional[str] = None
    for index in range(start, len(expr)):
        char = expr[index]
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return index
    raise ExpressionError("unbalanced parentheses")


def _split_top_level(expr: str, operator: str) -> List[str]:
    parts: List[str] = []
    last = 0
    skip_until = -1
    for index, _ in _scan(expr):
        if index < skip_until:
            continue
        if expr.startswith(operator, index):
            parts.append(expr[last:index])
            last = skip_until = index + len(operator)
    parts.append(expr[last:])
    return parts


def _find_comparison(expr: str) -> Optional[Tuple[int, str]]:
    for index, char in _scan(expr):
        if char not in "=!<>":
            continue
        for operator in _COMPARISONS:
            if expr.startswith(operator, index):
                return index, operator
    return None
