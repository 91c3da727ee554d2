"""
Engine package - Core workflow orchestration components.

The WorkflowEngine itself lives in ``checkflow.engine.executor``; it depends on
the storage package and is imported from there directly.
"""

from checkflow.engine.graph import (
    WorkflowDefinition,
    NodeDefinition,
    EdgeDefinition,
    EdgeCondition,
    WorkflowConfig,
)
from checkflow.engine.state import ExecutionState, ExecutionStatus
from checkflow.engine.node import NodeResult, ExecutionContext, NodeExecutor
from checkflow.engine.scheduler import GraphScheduler
from checkflow.engine.errors import ErrorCode, WorkflowError

__all__ = [
    "WorkflowDefinition",
    "NodeDefinition",
    "EdgeDefinition",
    "EdgeCondition",
    "WorkflowConfig",
    "ExecutionState",
    "ExecutionStatus",
    "NodeResult",
    "ExecutionContext",
    "NodeExecutor",
    "GraphScheduler",
    "ErrorCode",
    "WorkflowError",
]
