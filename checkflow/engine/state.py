"""
Execution State for the Workflow Engine.

This module defines the authoritative, versioned record of one workflow run.
The StateStore owns instances of ExecutionState; everything else receives
copies.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from copy import deepcopy
from enum import Enum


class ExecutionStatus(str, Enum):
    """Status of a workflow execution."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})

ACTIVE_STATUSES = frozenset({
    ExecutionStatus.RUNNING,
    ExecutionStatus.PAUSED,
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepRecord(BaseModel):
    """A single entry in the execution history."""

    type: str
    node_id: Optional[str] = None
    iteration: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class ErrorRecord(BaseModel):
    """An error recorded against an execution."""

    message: str
    code: Optional[str] = None
    node_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class CheckpointMeta(BaseModel):
    """Metadata for a persisted state snapshot."""

    checkpoint_id: str
    reason: str
    timestamp: datetime
    status: ExecutionStatus
    current_nodes: List[str] = Field(default_factory=list)


class ExecutionState(BaseModel):
    """
    The persisted state of one workflow execution.

    Attributes:
        execution_id: Unique run identifier
        workflow_id: Definition the run was started from
        status: Lifecycle status
        current_nodes: Node ids awaiting execution (disjoint from completed_nodes)
        completed_nodes: Ordered, de-duplicated ids used for dependency checks
        failed_nodes: Nodes that exhausted their retries
        data: Nested key/value store (inputs, nodeResults, engine bookkeeping)
        history: Append-only step log
        checkpoints: Ordered checkpoint metadata
        errors: Ordered error log
        invocation_count: Total node invocations, including loop revisits
        output: Final output once completed
        workflow_status: Optional custom terminal label set by an end node
    """

    execution_id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING

    current_nodes: List[str] = Field(default_factory=list)
    completed_nodes: List[str] = Field(default_factory=list)
    failed_nodes: List[str] = Field(default_factory=list)

    data: Dict[str, Any] = Field(default_factory=dict)
    history: List[StepRecord] = Field(default_factory=list)
    checkpoints: List[CheckpointMeta] = Field(default_factory=list)
    errors: List[ErrorRecord] = Field(default_factory=list)

    invocation_count: int = 0
    output: Any = None
    workflow_status: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Set only on states loaded through StateStore.restore()
    restored_at: Optional[datetime] = None
    restored_from: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def node_results(self) -> Dict[str, Any]:
        return self.data.get("nodeResults") or {}

    def copy_state(self) -> "ExecutionState":
        """Return a fully independent copy."""
        return self.model_copy(deep=True)

    def to_json(self) -> str:
        return self.model_dump_json()

    def summary(self) -> Dict[str, Any]:
        """Compact view used for listings."""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "current_nodes": len(self.current_nodes),
            "completed_nodes": len(self.completed_nodes),
            "failed_nodes": len(self.failed_nodes),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


def deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge ``updates`` into a copy of ``base``.

    Nested dicts are merged key by key; any other value (lists included)
    replaces the existing one. Neither argument is modified, and applying the
    same updates twice yields the same result as applying them once.

    Args:
        base: The existing mapping
        updates: The delta to apply

    Returns:
        A new merged dict
    """
    merged = deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged
