"""
Base Node Executor.

Shared helpers for node executors: ``$.path`` variable resolution against
state data, config validation, and result constructors.
"""

from typing import Any, Dict, Iterable, Optional, Union
import logging
import re

from checkflow.engine.conditions import get_value_from_path
from checkflow.engine.graph import NodeDefinition
from checkflow.engine.node import ExecutionContext, NodeResult, NodeResultStatus
from checkflow.engine.state import ExecutionState


logger = logging.getLogger(__name__)

_TEMPLATE_PATTERN = re.compile(r"\$\{(\$\.[^}]+)\}")


class BaseNodeExecutor:
    """
    Base class for node executors.

    Subclasses implement ``execute(node, state, context)`` and return a
    NodeResult (or anything ``normalize_result`` accepts).

    Variables are written as ``$.path`` (the whole value) or embedded as
    ``${$.path}`` in strings, and resolve against ``state.data``:

        "$.topic"                       -> state.data["topic"]
        "$.nodeResults.search.output"   -> output of node "search"
        "Summary of ${$.topic}"         -> "Summary of graphs"
    """

    async def execute(
        self,
        node: NodeDefinition,
        state: ExecutionState,
        context: ExecutionContext,
    ) -> Any:
        raise NotImplementedError(
            f"Executor for node type '{node.type}' does not implement execute()"
        )

    @property
    def type_name(self) -> str:
        return type(self).__name__.replace("NodeExecutor", "").lower() or "base"

    # ============================================================
    # Variables
    # ============================================================

    def resolve_variable(self, path: Any, data: Dict[str, Any]) -> Any:
        """Resolve a single ``$.path``; non-variable values pass through."""
        if not isinstance(path, str) or not path.startswith("$"):
            return path
        normalized = path[2:] if path.startswith("$.") else path[1:]
        value = get_value_from_path(normalized, data)
        if value is None:
            logger.debug(f"Variable '{path}' resolved to nothing")
        return value

    def resolve_variables(self, value: Any, data: Dict[str, Any]) -> Any:
        """Recursively resolve variables in strings, lists and dicts."""
        if isinstance(value, str):
            if value.startswith("$."):
                return self.resolve_variable(value, data)

            def substitute(match: "re.Match") -> str:
                resolved = self.resolve_variable(match.group(1), data)
                return str(resolved) if resolved is not None else match.group(0)

            return _TEMPLATE_PATTERN.sub(substitute, value)

        if isinstance(value, list):
            return [self.resolve_variables(item, data) for item in value]
        if isinstance(value, dict):
            return {key: self.resolve_variables(item, data) for key, item in value.items()}
        return value

    # ============================================================
    # Validation and results
    # ============================================================

    def validate_config(self, node: NodeDefinition, required_fields: Iterable[str] = ()) -> None:
        """
        Raises:
            ValueError: If a required config field is missing or empty
        """
        missing = [
            name for name in required_fields
            if node.config.get(name) in (None, "")
        ]
        if missing:
            raise ValueError(
                f"Node '{node.id}' (type: {node.type}) is missing required config fields: "
                f"{', '.join(missing)}"
            )

    def create_success_result(
        self,
        output: Any,
        state_updates: Optional[Dict[str, Any]] = None,
        branch: Optional[str] = None,
        is_terminal: bool = False,
        workflow_status: Optional[str] = None,
    ) -> NodeResult:
        return NodeResult(
            status=NodeResultStatus.COMPLETED,
            output=output,
            state_updates=state_updates or None,
            branch=branch,
            is_terminal=is_terminal,
            workflow_status=workflow_status,
        )

    def create_error_result(self, message: str, details: Optional[Dict[str, Any]] = None) -> NodeResult:
        logger.error(f"{type(self).__name__}: {message}")
        return NodeResult(
            status=NodeResultStatus.FAILED,
            error=message,
            details=details or {},
        )


def localized(value: Union[str, Dict[str, str], None], language: str = "en") -> str:
    """Pick the language variant of a plain or localized value."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and value:
        return value.get(language) or value.get("en") or next(iter(value.values()))
    return ""
