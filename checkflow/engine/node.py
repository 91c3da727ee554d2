"""
Node Executor Contract.

Node executors are the pluggable units that perform the actual work of a
node (calling a model, a tool, asking a human, ...). The engine only knows
this contract: ``execute(node, state, context) -> result``.
"""

from typing import Any, Dict, Optional, Protocol, runtime_checkable
from pydantic import BaseModel, ConfigDict
from dataclasses import dataclass, field

from checkflow.engine.cancellation import CancellationToken
from checkflow.engine.graph import NodeDefinition, WorkflowDefinition
from checkflow.engine.state import ExecutionState


class NodeResultStatus:
    """Recognized values for NodeResult.status."""
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


# Keys that mark a returned dict as a NodeResult rather than raw output
RESULT_KEYS = frozenset({
    "status", "output", "state_updates", "workflow_status", "metrics",
    "checkpoint", "pause_reason", "branch", "error", "is_terminal",
})


class NodeResult(BaseModel):
    """
    The value an executor hands back to the engine.

    Attributes:
        status: "failed", "paused", or None/"completed" for success
        output: The node's output value
        state_updates: Deep-merged into state.data on completion (or pause)
        workflow_status: Custom terminal label, only meaningful from an end node
        metrics: Duration, token counts, ...
        checkpoint: Human-input request payload (only with status="paused")
        pause_reason: Why the node paused
        branch: Routing label for ``branch`` edge conditions
        error: Failure message when status="failed"
    """

    model_config = ConfigDict(extra="allow")

    status: Optional[str] = None
    output: Any = None
    state_updates: Optional[Dict[str, Any]] = None
    workflow_status: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None
    checkpoint: Optional[Dict[str, Any]] = None
    pause_reason: Optional[str] = None
    branch: Optional[str] = None
    error: Optional[str] = None
    is_terminal: bool = False

    @property
    def is_paused(self) -> bool:
        return self.status == NodeResultStatus.PAUSED

    @property
    def is_failed(self) -> bool:
        return self.status == NodeResultStatus.FAILED

    def to_record(self) -> Dict[str, Any]:
        """Serialized form stored under state.data['nodeResults']."""
        return self.model_dump(exclude_none=True, exclude={"state_updates"})


def normalize_result(value: Any) -> NodeResult:
    """
    Coerce whatever an executor returned into a NodeResult.

    - NodeResult: returned as is
    - dict containing any NodeResult key: validated as a NodeResult
    - None: an empty successful result
    - anything else: wrapped as ``output``
    """
    if isinstance(value, NodeResult):
        return value
    if value is None:
        return NodeResult()
    if isinstance(value, dict) and RESULT_KEYS.intersection(value.keys()):
        return NodeResult.model_validate(value)
    return NodeResult(output=value)


@dataclass
class ExecutionContext:
    """
    Everything an executor may need besides the node and the state.

    Attributes:
        execution_id: The run being executed
        node_id: The node being executed
        workflow: The run's workflow definition
        data: Copy of state.data at invocation time
        node_results: Results of previously completed nodes
        initial_data: Inputs the run was started with
        iteration: 1-based visit number of this node in the run
        attempt: 1-based attempt number within the retry envelope
        user: Caller identity, if any
        language: Preferred language for localized config values
        cancellation: Cooperative cancellation token
    """
    execution_id: str
    node_id: str
    workflow: WorkflowDefinition
    data: Dict[str, Any] = field(default_factory=dict)
    node_results: Dict[str, Any] = field(default_factory=dict)
    initial_data: Dict[str, Any] = field(default_factory=dict)
    iteration: int = 1
    attempt: int = 1
    user: Optional[Dict[str, Any]] = None
    language: str = "en"
    cancellation: Optional[CancellationToken] = None

    @property
    def cancelled(self) -> bool:
        return self.cancellation is not None and self.cancellation.cancelled


@runtime_checkable
class NodeExecutor(Protocol):
    """Interface every node executor implements."""

    async def execute(
        self,
        node: NodeDefinition,
        state: ExecutionState,
        context: ExecutionContext,
    ) -> Any:
        ...
