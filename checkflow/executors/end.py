"""
End node: shapes the workflow output and ends the run.
"""

from typing import Any, Dict
import logging

from checkflow.engine.graph import NodeDefinition
from checkflow.engine.node import ExecutionContext, NodeResult
from checkflow.engine.state import ExecutionState
from checkflow.executors.base import BaseNodeExecutor


logger = logging.getLogger(__name__)

# state.data keys that never leak into the default output
INTERNAL_FIELDS = frozenset({"nodeResults", "pendingCheckpoint"})


class EndNodeExecutor(BaseNodeExecutor):
    """
    Config (first match wins):
        output_mapping: ``{key: "$.path" | value}``
        include_fields: Only these state data keys
        exclude_fields: All public keys except these
        output_variables: These state data keys, when present
    Without any of them the output is every public state data key.

        status: Custom terminal label reported as the run's workflow_status
    """

    async def execute(
        self,
        node: NodeDefinition,
        state: ExecutionState,
        context: ExecutionContext,
    ) -> NodeResult:
        config = node.config
        data = state.data

        if config.get("output_mapping"):
            output = {
                key: self.resolve_variables(source, data)
                for key, source in config["output_mapping"].items()
            }
        elif config.get("include_fields"):
            output = {key: data[key] for key in config["include_fields"] if key in data}
        elif config.get("exclude_fields"):
            excluded = set(config["exclude_fields"])
            output = {k: v for k, v in _public(data).items() if k not in excluded}
        elif config.get("output_variables"):
            output = {key: data[key] for key in config["output_variables"] if key in data}
        else:
            output = _public(data)

        workflow_status = config.get("status")
        logger.info(f"End node '{node.id}' reached (workflow_status={workflow_status})")

        return self.create_success_result(
            output,
            is_terminal=True,
            workflow_status=workflow_status,
        )


def _public(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value for key, value in data.items()
        if not key.startswith("_") and key not in INTERNAL_FIELDS
    }
