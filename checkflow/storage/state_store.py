"""
State Store for Workflow Executions.

Owns the authoritative execution state of every run: an in-memory cache for
in-flight executions backed by file checkpoints for durability and crash
recovery.

One StateStore instance is constructed at composition time and injected into
every engine, so independently constructed engines observe the same
executions.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from pathlib import Path
import asyncio
import logging
import shutil
import uuid

from checkflow.config import Settings, settings as default_settings
from checkflow.engine.errors import (
    CheckpointNotFoundError,
    ErrorCode,
    ExecutionCancelledError,
    ExecutionNotFoundError,
    InvalidStateError,
    StateSizeExceededError,
    WorkflowError,
)
from checkflow.engine.node import NodeResult
from checkflow.engine.state import (
    CheckpointMeta,
    ErrorRecord,
    ExecutionState,
    ExecutionStatus,
    StepRecord,
    deep_merge,
    utcnow,
)
from checkflow.storage.files import atomic_write_text, read_json, run_blocking
from checkflow.storage.runs import RunRegistry


logger = logging.getLogger(__name__)

LATEST_CHECKPOINT = "latest"

# Top-level fields that may never be replaced through update()
_IMMUTABLE_FIELDS = frozenset({"execution_id", "workflow_id", "created_at"})


class StateStore:
    """
    Async store for execution state with checkpoint/restore.

    All mutations of one execution are serialized through a per-execution
    lock. Every mutation is applied to a candidate copy which is size-checked
    before it replaces the stored state, so a rejected mutation leaves the
    stored state untouched.

    Usage:
        store = StateStore(state_dir="contents/workflow-state")
        state = await store.create("exec-1", "my-workflow", data={"input": "x"})
        await store.update("exec-1", {"status": "running"})
        meta = await store.checkpoint("exec-1", "before_llm_call")
    """

    def __init__(
        self,
        state_dir: Optional[Union[str, Path]] = None,
        max_state_size: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.state_dir = Path(state_dir or self.settings.STATE_DIR)
        self.max_state_size = max_state_size or self.settings.MAX_STATE_SIZE_BYTES
        self._states: Dict[str, ExecutionState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Loop tokens and tasks, shared by every engine built on this store
        self.runs = RunRegistry()

    # ============================================================
    # Internals
    # ============================================================

    def _lock(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()
        return lock

    def checkpoint_dir(self, execution_id: str) -> Path:
        return self.state_dir / execution_id

    def checkpoint_path(self, execution_id: str, checkpoint_id: Optional[str] = None) -> Path:
        name = checkpoint_id or LATEST_CHECKPOINT
        return self.checkpoint_dir(execution_id) / f"{name}.json"

    def _validate_size(self, state: ExecutionState) -> str:
        """Serialize the state and check it against the ceiling."""
        serialized = state.model_dump_json()
        size = len(serialized.encode("utf-8"))
        if size > self.max_state_size:
            size_mb = size / (1024 * 1024)
            limit_mb = self.max_state_size / (1024 * 1024)
            raise StateSizeExceededError(
                f"Workflow state size ({size_mb:.2f}MB) exceeds limit ({limit_mb:.2f}MB). "
                "Consider checkpointing and cleaning up history.",
                details={"size": size, "limit": self.max_state_size},
            )
        return serialized

    async def _load_latest(self, execution_id: str) -> Optional[ExecutionState]:
        path = self.checkpoint_path(execution_id)
        try:
            raw = await run_blocking(read_json, path)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read checkpoint for {execution_id}: {e}")
            return None
        if raw is None:
            return None
        try:
            return ExecutionState.model_validate(raw)
        except ValueError as e:
            logger.warning(f"Corrupt checkpoint for {execution_id}: {e}")
            return None

    async def _require(self, execution_id: str) -> ExecutionState:
        """Return the cached state, recovering it from disk if needed."""
        state = self._states.get(execution_id)
        if state is None:
            state = await self._load_latest(execution_id)
            if state is None:
                raise ExecutionNotFoundError(f"Execution state not found: {execution_id}")
            self._states[execution_id] = state
            logger.info(f"Recovered execution {execution_id} from latest checkpoint")
        return state

    async def _mutate(
        self,
        execution_id: str,
        mutation: Callable[[ExecutionState], ExecutionState],
    ) -> ExecutionState:
        """Apply ``mutation`` to a copy, validate, then commit."""
        async with self._lock(execution_id):
            state = await self._require(execution_id)
            candidate = mutation(state.copy_state())
            _keep_disjoint(candidate)
            candidate.updated_at = utcnow()
            self._validate_size(candidate)
            self._states[execution_id] = candidate
            return candidate.copy_state()

    # ============================================================
    # Lifecycle
    # ============================================================

    async def create(
        self,
        execution_id: str,
        workflow_id: str,
        data: Optional[Dict[str, Any]] = None,
        current_nodes: Optional[List[str]] = None,
    ) -> ExecutionState:
        """
        Create the initial state for a new run.

        Raises:
            ValueError: If an id is missing or the execution already exists
            StateSizeExceededError: If the initial data is too large
        """
        if not execution_id:
            raise ValueError("execution_id is required to create workflow state")
        if not workflow_id:
            raise ValueError("workflow_id is required to create workflow state")

        async with self._lock(execution_id):
            if execution_id in self._states:
                raise ValueError(f"Execution state already exists: {execution_id}")

            state = ExecutionState(
                execution_id=execution_id,
                workflow_id=workflow_id,
                status=ExecutionStatus.PENDING,
                current_nodes=list(current_nodes or []),
                data=deep_merge({}, data or {}),
            )
            self._validate_size(state)
            self._states[execution_id] = state

        logger.info(f"Created execution state {execution_id} for workflow '{workflow_id}'")
        return state.copy_state()

    async def update(
        self,
        execution_id: str,
        updates: Optional[Dict[str, Any]] = None,
        /,
        **fields: Any,
    ) -> ExecutionState:
        """
        Apply partial updates to an execution.

        ``data`` is deep-merged; every other top-level field is replaced.

        Args:
            execution_id: The execution identifier
            updates: Field -> value mapping
            **fields: Same as ``updates``, as keyword arguments

        Returns:
            Copy of the updated state

        Raises:
            ExecutionNotFoundError: Unknown execution
            StateSizeExceededError: Update would exceed the size ceiling
            ValueError: Unknown or immutable field
        """
        changes = dict(updates or {})
        changes.update(fields)

        for key in changes:
            if key in _IMMUTABLE_FIELDS:
                raise ValueError(f"Field '{key}' cannot be updated")
            if key not in ExecutionState.model_fields:
                raise ValueError(f"Unknown execution state field '{key}'")

        def apply(state: ExecutionState) -> ExecutionState:
            dumped = state.model_dump()
            for key, value in changes.items():
                if key == "data":
                    dumped["data"] = deep_merge(dumped["data"], value or {})
                else:
                    dumped[key] = value
            return ExecutionState.model_validate(dumped)

        updated = await self._mutate(execution_id, apply)
        logger.debug(f"Updated execution {execution_id} (status={updated.status.value})")
        return updated

    async def get(self, execution_id: str) -> Optional[ExecutionState]:
        """
        Get a copy of the execution state.

        On a cache miss the latest checkpoint is loaded from disk (and
        cached) before giving up.

        Returns:
            The state, or None if it is unknown
        """
        state = self._states.get(execution_id)
        if state is None:
            async with self._lock(execution_id):
                state = self._states.get(execution_id)
                if state is None:
                    state = await self._load_latest(execution_id)
                    if state is None:
                        return None
                    self._states[execution_id] = state
                    logger.info(f"Loaded execution {execution_id} from latest checkpoint")
        return state.copy_state()

    # ============================================================
    # Checkpoints
    # ============================================================

    async def checkpoint(self, execution_id: str, reason: str = "auto") -> CheckpointMeta:
        """
        Persist a full snapshot of the execution.

        The snapshot is written to ``<checkpoint_id>.json`` and
        ``latest.json`` in the execution's directory, each atomically.

        Returns:
            The checkpoint metadata appended to state.checkpoints
        """
        async with self._lock(execution_id):
            state = await self._require(execution_id)
            timestamp = utcnow()
            meta = CheckpointMeta(
                checkpoint_id=f"ckpt-{uuid.uuid4()}",
                reason=reason,
                timestamp=timestamp,
                status=state.status,
                current_nodes=list(state.current_nodes),
            )

            candidate = state.copy_state()
            candidate.checkpoints.append(meta)
            candidate.updated_at = timestamp
            serialized = self._validate_size(candidate)

            await run_blocking(
                atomic_write_text,
                self.checkpoint_path(execution_id, meta.checkpoint_id),
                serialized,
            )
            await run_blocking(atomic_write_text, self.checkpoint_path(execution_id), serialized)

            self._states[execution_id] = candidate

        logger.info(f"Checkpoint {meta.checkpoint_id} saved for {execution_id} ({reason})")
        return meta

    async def restore(self, execution_id: str, checkpoint_id: Optional[str] = None) -> ExecutionState:
        """
        Replace the cached state with a persisted snapshot.

        Args:
            execution_id: The execution identifier
            checkpoint_id: Specific checkpoint (latest if omitted)

        Returns:
            The restored state, marked with restored_at / restored_from

        Raises:
            CheckpointNotFoundError: If the snapshot cannot be read
        """
        path = self.checkpoint_path(execution_id, checkpoint_id)
        try:
            raw = await run_blocking(read_json, path)
            if raw is None:
                raise CheckpointNotFoundError(
                    f"Checkpoint '{checkpoint_id or LATEST_CHECKPOINT}' not found for {execution_id}"
                )
            state = ExecutionState.model_validate(raw)
        except CheckpointNotFoundError:
            raise
        except (OSError, ValueError) as e:
            raise CheckpointNotFoundError(f"Failed to restore checkpoint: {e}") from e

        state.restored_at = utcnow()
        state.restored_from = checkpoint_id or LATEST_CHECKPOINT

        async with self._lock(execution_id):
            self._states[execution_id] = state

        logger.info(f"Restored {execution_id} from checkpoint {state.restored_from}")
        return state.copy_state()

    # ============================================================
    # History, errors and node bookkeeping
    # ============================================================

    async def add_step(self, execution_id: str, step: Union[StepRecord, Dict[str, Any]]) -> None:
        """Append an entry to the execution history."""
        record = step if isinstance(step, StepRecord) else StepRecord.model_validate(step)

        def apply(state: ExecutionState) -> ExecutionState:
            state.history.append(record)
            return state

        await self._mutate(execution_id, apply)
        logger.debug(f"[{execution_id}] step {record.type} node={record.node_id}")

    async def add_error(
        self,
        execution_id: str,
        error: Union[ErrorRecord, WorkflowError, Dict[str, Any]],
    ) -> None:
        """Append an entry to the execution's error log."""
        record = _to_error_record(error)

        def apply(state: ExecutionState) -> ExecutionState:
            state.errors.append(record)
            return state

        await self._mutate(execution_id, apply)
        logger.warning(
            f"[{execution_id}] recorded error {record.code} at node={record.node_id}: {record.message}"
        )

    async def mark_node_completed(
        self,
        execution_id: str,
        node_id: str,
        result: Any = None,
        iteration: Optional[int] = None,
    ) -> ExecutionState:
        """
        Record a node completion.

        Moves the node from current_nodes to completed_nodes (de-duplicated),
        increments the global invocation counter, stores the result under
        ``data.nodeResults[node_id]`` (tagged with the iteration) and
        deep-merges the result's ``state_updates`` into data.

        Raises:
            ExecutionCancelledError: The execution was cancelled meanwhile
            InvalidStateError: The execution already finished otherwise
        """
        record, state_updates = _split_result(result)
        if iteration is not None and isinstance(record, dict):
            record["iteration"] = iteration

        def apply(state: ExecutionState) -> ExecutionState:
            if state.status == ExecutionStatus.CANCELLED:
                raise ExecutionCancelledError(
                    f"Execution {execution_id} was cancelled before node '{node_id}' completed",
                    node_id=node_id,
                )
            if state.is_terminal:
                raise InvalidStateError(
                    f"Execution {execution_id} already {state.status.value}, "
                    f"not recording node '{node_id}'",
                    code=ErrorCode.EXECUTION_ERROR,
                    node_id=node_id,
                )
            state.current_nodes = [n for n in state.current_nodes if n != node_id]
            if node_id not in state.completed_nodes:
                state.completed_nodes.append(node_id)
            state.invocation_count += 1
            if state_updates:
                state.data = deep_merge(state.data, state_updates)
            if record is not None:
                results = dict(state.data.get("nodeResults") or {})
                results[node_id] = record
                state.data["nodeResults"] = results
            return state

        return await self._mutate(execution_id, apply)

    async def mark_node_failed(
        self,
        execution_id: str,
        node_id: str,
        error: Union[WorkflowError, Exception, Dict[str, Any]],
    ) -> ExecutionState:
        """Move a node to failed_nodes and record the error."""
        if isinstance(error, (WorkflowError, ErrorRecord, dict)):
            record = _to_error_record(error)
        else:
            record = ErrorRecord(message=str(error) or type(error).__name__)
        if record.node_id is None:
            record.node_id = node_id

        def apply(state: ExecutionState) -> ExecutionState:
            state.current_nodes = [n for n in state.current_nodes if n != node_id]
            if node_id not in state.failed_nodes:
                state.failed_nodes.append(node_id)
            state.errors.append(record)
            return state

        return await self._mutate(execution_id, apply)

    # ============================================================
    # Housekeeping
    # ============================================================

    async def cleanup(self, execution_id: str, keep_checkpoints: bool = False) -> None:
        """
        Drop an execution from the cache and optionally delete its checkpoints.
        """
        async with self._lock(execution_id):
            self._states.pop(execution_id, None)
        self._locks.pop(execution_id, None)

        if keep_checkpoints:
            logger.info(f"Cleaned up execution state {execution_id} (checkpoints preserved)")
            return

        directory = self.checkpoint_dir(execution_id)
        if directory.exists():
            try:
                await run_blocking(shutil.rmtree, directory)
            except OSError as e:
                logger.warning(f"Failed to remove checkpoint directory for {execution_id}: {e}")
                return
        logger.info(f"Cleaned up execution state and checkpoints for {execution_id}")

    async def list_active(self) -> List[str]:
        """Ids of all executions held in memory."""
        return list(self._states.keys())

    async def get_active_summaries(self) -> List[Dict[str, Any]]:
        """Summaries of all executions held in memory."""
        return [state.summary() for state in self._states.values()]

    def __contains__(self, execution_id: str) -> bool:
        return execution_id in self._states

    def __len__(self) -> int:
        return len(self._states)


# ============================================================
# Helpers
# ============================================================

def _keep_disjoint(state: ExecutionState) -> None:
    """A node that is current again (loop re-entry) is no longer completed."""
    if state.current_nodes and state.completed_nodes:
        current = set(state.current_nodes)
        state.completed_nodes = [n for n in state.completed_nodes if n not in current]


def _to_error_record(error: Union[ErrorRecord, WorkflowError, Dict[str, Any]]) -> ErrorRecord:
    if isinstance(error, ErrorRecord):
        return error
    if isinstance(error, WorkflowError):
        return ErrorRecord.model_validate(error.to_dict())
    if isinstance(error, dict):
        return ErrorRecord.model_validate(error)
    raise TypeError(f"Unsupported error type: {type(error).__name__}")


def _split_result(result: Any) -> Tuple[Any, Optional[Dict[str, Any]]]:
    """Separate the storable result record from its state updates."""
    if result is None:
        return None, None
    if isinstance(result, NodeResult):
        return result.to_record(), result.state_updates
    if isinstance(result, dict):
        record = {k: v for k, v in result.items() if k != "state_updates"}
        return record, result.get("state_updates")
    return result, None
