"""
Human node: pauses the workflow until a person responds.

On first entry the node creates a ``human_input`` checkpoint and returns a
paused result. The engine persists the checkpoint as the execution's pending
checkpoint; ``WorkflowEngine.respond_to_checkpoint`` stores the answer under
``data._humanResponse`` and resumes, which re-enters this node to validate
the answer and continue along the edge matching the response.
"""

from typing import Any, Dict, List, Optional
from datetime import timedelta
import logging
import uuid

from checkflow.engine.graph import NodeDefinition
from checkflow.engine.node import ExecutionContext, NodeResult, NodeResultStatus
from checkflow.engine.state import ExecutionState, utcnow
from checkflow.executors.base import BaseNodeExecutor, localized


logger = logging.getLogger(__name__)

PAUSE_REASON = "human_input_required"
DEFAULT_OPTIONS = [{"value": "continue", "label": "Continue", "style": "primary"}]


class HumanNodeExecutor(BaseNodeExecutor):
    """
    Config:
        message: Prompt shown to the person (plain or localized, may use ${$.path})
        options: ``[{"value", "label", "style", "description"}]`` allowed answers
        input_schema: ``{"type": "object", "required": [...]}`` for extra data
        show_data: ``$.path`` values to display alongside the prompt
        timeout_ms: Informational expiry of the checkpoint
    """

    async def execute(
        self,
        node: NodeDefinition,
        state: ExecutionState,
        context: ExecutionContext,
    ) -> NodeResult:
        answer = state.data.get("_humanResponse")
        if isinstance(answer, dict) and answer.get("node_id") == node.id:
            return self.resume(node, answer, context)

        self.validate_config(node, ["message"])
        checkpoint = self.create_checkpoint(node, state, context)

        logger.info(
            f"[{context.execution_id}] Human checkpoint {checkpoint['id']} created at node '{node.id}'"
        )
        return NodeResult(
            status=NodeResultStatus.PAUSED,
            output={"awaiting_human": True, "checkpoint_id": checkpoint["id"]},
            checkpoint=checkpoint,
            pause_reason=PAUSE_REASON,
        )

    def create_checkpoint(
        self,
        node: NodeDefinition,
        state: ExecutionState,
        context: ExecutionContext,
    ) -> Dict[str, Any]:
        config = node.config
        language = context.language
        now = utcnow()
        timeout_ms = config.get("timeout_ms")

        checkpoint: Dict[str, Any] = {
            "id": f"hc-{uuid.uuid4()}",
            "type": "human_input",
            "node_id": node.id,
            "node_name": localized(node.name, language) or node.id,
            "message": self.resolve_variables(localized(config["message"], language), state.data),
            "options": self._resolve_options(config.get("options"), language),
            "input_schema": config.get("input_schema"),
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(milliseconds=timeout_ms)).isoformat() if timeout_ms else None,
        }

        show_data = config.get("show_data")
        if isinstance(show_data, list):
            display = {}
            for path in show_data:
                value = self.resolve_variable(path, state.data)
                if value is not None:
                    display[path.replace("$.", "", 1).replace(".", "_")] = value
            checkpoint["display_data"] = display

        return checkpoint

    def resume(
        self,
        node: NodeDefinition,
        answer: Dict[str, Any],
        context: ExecutionContext,
    ) -> NodeResult:
        """Validate a human answer and complete the node with it."""
        response = answer.get("response")
        data = answer.get("data") or {}
        config = node.config

        options = config.get("options")
        if isinstance(options, list) and options:
            valid = [option.get("value") for option in options]
            if response not in valid:
                return self.create_error_result(
                    f"Invalid response '{response}'. Valid options: {', '.join(map(str, valid))}",
                    {"response": response, "valid_options": valid},
                )

        schema = config.get("input_schema")
        if schema:
            problem = _validate_input(data, schema)
            if problem:
                return self.create_error_result(f"Invalid input data: {problem}")

        output = {
            "checkpoint_id": answer.get("checkpoint_id"),
            "node_id": node.id,
            "response": response,
            "data": data or None,
            "responded_at": answer.get("responded_at"),
        }
        logger.info(f"[{context.execution_id}] Human responded '{response}' at node '{node.id}'")

        return self.create_success_result(
            {**output, "branch": response},
            state_updates={
                f"humanResponse_{node.id}": output,
                "_humanResponse": None,
            },
            branch=response,
        )

    @staticmethod
    def _resolve_options(options: Optional[List[Dict[str, Any]]], language: str) -> List[Dict[str, Any]]:
        if not isinstance(options, list) or not options:
            return [dict(option) for option in DEFAULT_OPTIONS]
        return [
            {
                "value": option.get("value"),
                "label": localized(option.get("label"), language) or option.get("value"),
                "style": option.get("style") or "secondary",
                "description": localized(option.get("description"), language) or None,
            }
            for option in options
        ]


def _validate_input(data: Any, schema: Dict[str, Any]) -> Optional[str]:
    if schema.get("type") == "object" and not isinstance(data, dict):
        return "Expected object type"
    required = schema.get("required") or []
    missing = [name for name in required if not isinstance(data, dict) or name not in data]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"
    return None
