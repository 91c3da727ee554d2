"""
Start node: validates run inputs and seeds state data.
"""

from typing import Any, Dict, List
import logging

from checkflow.engine.graph import NodeDefinition
from checkflow.engine.node import ExecutionContext, NodeResult
from checkflow.engine.state import ExecutionState, utcnow
from checkflow.executors.base import BaseNodeExecutor


logger = logging.getLogger(__name__)


class StartNodeExecutor(BaseNodeExecutor):
    """
    Config:
        required_inputs: Input names that must be present and non-empty
        defaults: Values merged into state data first
        input_mapping: ``{target: "$.input.field" | literal}``; without it
            all inputs are copied as is
    """

    async def execute(
        self,
        node: NodeDefinition,
        state: ExecutionState,
        context: ExecutionContext,
    ) -> NodeResult:
        config = node.config
        inputs = context.initial_data or {}

        missing = self._missing_inputs(config.get("required_inputs") or [], inputs)
        if missing:
            return self.create_error_result(
                f"Start node '{node.id}' is missing required inputs: {', '.join(missing)}",
                {"missing_inputs": missing},
            )

        updates: Dict[str, Any] = dict(config.get("defaults") or {})
        mapping = config.get("input_mapping")
        if isinstance(mapping, dict):
            scope = {**state.data, "input": inputs}
            for target, source in mapping.items():
                value = self.resolve_variable(source, scope)
                if value is not None:
                    updates[target] = value
        else:
            updates.update(inputs)

        logger.info(f"Start node '{node.id}' seeded {len(updates)} fields")
        return self.create_success_result(
            {
                "initialized": True,
                "timestamp": utcnow().isoformat(),
                "input_fields": list(inputs.keys()),
                "mapped_fields": list(updates.keys()),
            },
            state_updates=updates,
        )

    @staticmethod
    def _missing_inputs(required: List[str], inputs: Dict[str, Any]) -> List[str]:
        return [name for name in required if inputs.get(name) in (None, "")]
