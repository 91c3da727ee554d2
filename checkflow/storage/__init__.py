"""Storage package: execution state checkpoints and the execution index."""

from checkflow.storage.state_store import StateStore
from checkflow.storage.execution_index import ExecutionIndex, ExecutionIndexEntry

__all__ = ["StateStore", "ExecutionIndex", "ExecutionIndexEntry"]
