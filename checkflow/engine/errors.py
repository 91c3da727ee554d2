"""
Error taxonomy for the workflow engine.

Every error raised by the engine, scheduler or storage layer carries a stable
``code`` so that callers (and persisted ``state.errors`` entries) can react to
the failure kind without parsing messages.

Hierarchy:
- WorkflowError (base)
  - GraphValidationError          (VALIDATION, don't retry)
  - ExecutorNotFoundError         (EXECUTOR_NOT_FOUND, don't retry)
  - NodeTimeoutError              (NODE_TIMEOUT, retry)
  - NodeExecutionError            (NODE_EXECUTION_FAILED, retry)
  - MaxNodeIterationsExceeded     (MAX_NODE_ITERATIONS_EXCEEDED, don't retry)
  - ExecutionTimeExceeded         (MAX_EXECUTION_TIME_EXCEEDED)
  - MaxIterationsExceeded         (MAX_ITERATIONS_EXCEEDED)
  - InvalidStateError             (INVALID_STATE_FOR_*, INVALID_CHECKPOINT)
  - ExecutionNotFoundError        (EXECUTION_NOT_FOUND)
  - WorkflowNotAvailableError     (WORKFLOW_NOT_AVAILABLE)
  - StateSizeExceededError        (STATE_SIZE_EXCEEDED)
  - CheckpointNotFoundError       (CHECKPOINT_NOT_FOUND)
  - ExecutionCancelledError       (EXECUTION_CANCELLED, don't retry)
"""

from typing import Any, Dict, Optional
from enum import Enum


class ErrorCode(str, Enum):
    """Stable error codes recorded in state and events."""
    VALIDATION = "VALIDATION"
    EXECUTOR_NOT_FOUND = "EXECUTOR_NOT_FOUND"
    NODE_TIMEOUT = "NODE_TIMEOUT"
    NODE_EXECUTION_FAILED = "NODE_EXECUTION_FAILED"
    MAX_NODE_ITERATIONS_EXCEEDED = "MAX_NODE_ITERATIONS_EXCEEDED"
    MAX_EXECUTION_TIME_EXCEEDED = "MAX_EXECUTION_TIME_EXCEEDED"
    MAX_ITERATIONS_EXCEEDED = "MAX_ITERATIONS_EXCEEDED"
    INVALID_STATE_FOR_RESUME = "INVALID_STATE_FOR_RESUME"
    INVALID_STATE_FOR_PAUSE = "INVALID_STATE_FOR_PAUSE"
    INVALID_CHECKPOINT = "INVALID_CHECKPOINT"
    EXECUTION_NOT_FOUND = "EXECUTION_NOT_FOUND"
    WORKFLOW_NOT_AVAILABLE = "WORKFLOW_NOT_AVAILABLE"
    STATE_SIZE_EXCEEDED = "STATE_SIZE_EXCEEDED"
    CHECKPOINT_NOT_FOUND = "CHECKPOINT_NOT_FOUND"
    EXECUTION_CANCELLED = "EXECUTION_CANCELLED"
    EXECUTION_ERROR = "EXECUTION_ERROR"


class WorkflowError(Exception):
    """Base class for all workflow engine errors."""

    code: ErrorCode = ErrorCode.EXECUTION_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        node_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.node_id = node_id
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for state.errors and event payloads."""
        return {
            "message": self.message,
            "code": self.code.value,
            "node_id": self.node_id,
            "details": self.details,
        }


class GraphValidationError(WorkflowError):
    """Workflow structure is invalid (cycles in strict mode, no start node, ...)."""
    code = ErrorCode.VALIDATION


class ExecutorNotFoundError(WorkflowError):
    """No executor is registered for a node type."""
    code = ErrorCode.EXECUTOR_NOT_FOUND


class NodeTimeoutError(WorkflowError):
    """A node exceeded its bounded timeout."""
    code = ErrorCode.NODE_TIMEOUT
    retryable = True


class NodeExecutionError(WorkflowError):
    """An executor raised or returned a failed result."""
    code = ErrorCode.NODE_EXECUTION_FAILED
    retryable = True


class MaxNodeIterationsExceeded(WorkflowError):
    """A node was entered more often than ``max_iterations_per_node`` allows."""
    code = ErrorCode.MAX_NODE_ITERATIONS_EXCEEDED


class ExecutionTimeExceeded(WorkflowError):
    """The run passed its absolute deadline."""
    code = ErrorCode.MAX_EXECUTION_TIME_EXCEEDED


class MaxIterationsExceeded(WorkflowError):
    """The execution loop hit its global pass ceiling."""
    code = ErrorCode.MAX_ITERATIONS_EXCEEDED


class InvalidStateError(WorkflowError):
    """An operation was requested from the wrong execution status."""
    code = ErrorCode.INVALID_STATE_FOR_RESUME


class ExecutionNotFoundError(WorkflowError):
    """No execution state exists for the given id."""
    code = ErrorCode.EXECUTION_NOT_FOUND


class WorkflowNotAvailableError(WorkflowError):
    """The workflow definition needed to continue a run cannot be found."""
    code = ErrorCode.WORKFLOW_NOT_AVAILABLE


class StateSizeExceededError(WorkflowError):
    """A state mutation would exceed the serialized size ceiling."""
    code = ErrorCode.STATE_SIZE_EXCEEDED


class CheckpointNotFoundError(WorkflowError):
    """The requested checkpoint could not be read from disk."""
    code = ErrorCode.CHECKPOINT_NOT_FOUND


class ExecutionCancelledError(WorkflowError):
    """The execution was cancelled while a node was running."""
    code = ErrorCode.EXECUTION_CANCELLED


def error_from_exception(exc: BaseException, node_id: Optional[str] = None) -> WorkflowError:
    """
    Wrap an arbitrary exception into a WorkflowError.

    WorkflowErrors pass through unchanged (the node id is filled in if missing).

    Args:
        exc: The exception raised by an executor or the loop
        node_id: Node where the exception happened

    Returns:
        A WorkflowError carrying a code
    """
    if isinstance(exc, WorkflowError):
        if exc.node_id is None:
            exc.node_id = node_id
        return exc
    message = str(exc) or type(exc).__name__
    return NodeExecutionError(
        message,
        node_id=node_id,
        details={"exception_type": type(exc).__name__},
    )
