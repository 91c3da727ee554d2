"""
Async Workflow Engine.

The engine drives a workflow execution node by node: it asks the scheduler
which nodes are ready, dispatches each one to the executor registered for its
type (under a bounded timeout and retry envelope), records the outcome in the
StateStore, and handles pause, resume, cancellation and completion.

Each execution runs in its own asyncio task; nodes within one execution run
sequentially.
"""

from typing import Any, Dict, List, Mapping, Optional, Union
from dataclasses import dataclass
from datetime import datetime, timedelta
import asyncio
import functools
import inspect
import logging
import uuid

from pydantic import ValidationError

from checkflow.config import Settings, settings as default_settings
from checkflow.engine.cancellation import CancellationToken
from checkflow.engine.conditions import get_value_from_path
from checkflow.engine.errors import (
    ErrorCode,
    ExecutionCancelledError,
    ExecutionNotFoundError,
    ExecutionTimeExceeded,
    ExecutorNotFoundError,
    GraphValidationError,
    InvalidStateError,
    MaxIterationsExceeded,
    MaxNodeIterationsExceeded,
    NodeExecutionError,
    NodeTimeoutError,
    WorkflowError,
    WorkflowNotAvailableError,
    error_from_exception,
)
from checkflow.engine.events import EventSink, EventType, NullSink, WorkflowEvent, summarize_payload
from checkflow.engine.graph import EXIT_NODE_TYPES, ErrorPolicy, NodeDefinition, WorkflowDefinition
from checkflow.engine.node import ExecutionContext, NodeResult, normalize_result
from checkflow.engine.retry import RetryPolicy
from checkflow.engine.scheduler import GraphScheduler
from checkflow.engine.state import (
    CheckpointMeta,
    ExecutionState,
    ExecutionStatus,
    StepRecord,
    TERMINAL_STATUSES,
    deep_merge,
    utcnow,
)
from checkflow.storage.execution_index import ExecutionIndex
from checkflow.storage.runs import RunRegistry
from checkflow.storage.state_store import StateStore


logger = logging.getLogger(__name__)

# Outcomes of running one node inside the execution loop
_CONTINUE = "continue"
_PAUSED = "paused"
_FAILED = "failed"


@dataclass
class ExecutionOptions:
    """
    Per-run options.

    Attributes:
        execution_id: Use this id instead of generating one
        user: Caller identity (``{"id": ...}``)
        language: Preferred language for localized values
        timeout_ms: Default node timeout for this run
        checkpoint_on_node: Persist a checkpoint after every completed node
        workflow: Definition to continue with (resume only)
    """
    execution_id: Optional[str] = None
    user: Optional[Dict[str, Any]] = None
    language: str = "en"
    timeout_ms: Optional[int] = None
    checkpoint_on_node: bool = False
    workflow: Optional[WorkflowDefinition] = None

    @property
    def user_id(self) -> str:
        return str((self.user or {}).get("id") or "anonymous")


class WorkflowEngine:
    """
    Orchestrates workflow executions.

    Usage:
        store = StateStore()
        engine = WorkflowEngine(store, ExecutionIndex(), executors=create_default_registry())
        state = await engine.start(definition, {"topic": "graphs"})
        final = await engine.wait_for(state.execution_id)
    """

    def __init__(
        self,
        state_store: StateStore,
        execution_index: Optional[ExecutionIndex] = None,
        scheduler: Optional[GraphScheduler] = None,
        executors: Optional[Mapping[str, Any]] = None,
        event_sink: Optional[EventSink] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.state_store = state_store
        self.execution_index = execution_index
        self.scheduler = scheduler or GraphScheduler()
        self.event_sink = event_sink or NullSink()

        self._executors: Dict[str, Any] = {}
        for node_type, executor in (executors or {}).items():
            self.register_executor(node_type, executor)

        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._options: Dict[str, ExecutionOptions] = {}

    # ============================================================
    # Executor registry
    # ============================================================

    def register_executor(self, node_type: str, executor: Any) -> None:
        """
        Register the executor for a node type.

        Raises:
            TypeError: If the executor has no ``execute`` method
        """
        if not callable(getattr(executor, "execute", None)):
            raise TypeError(f"Executor for '{node_type}' must implement execute(node, state, context)")
        if node_type in self._executors:
            logger.info(f"Replacing executor for node type '{node_type}'")
        self._executors[node_type] = executor

    def get_executor(self, node_type: str) -> Optional[Any]:
        return self._executors.get(node_type)

    @property
    def node_types(self) -> List[str]:
        return list(self._executors.keys())

    @property
    def runs(self) -> RunRegistry:
        """Loop handles shared with every engine on the same store."""
        return self.state_store.runs

    # ============================================================
    # Public API
    # ============================================================

    async def start(
        self,
        definition: Union[WorkflowDefinition, Dict[str, Any]],
        initial_data: Optional[Dict[str, Any]] = None,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionState:
        """
        Start a new execution and return immediately.

        The graph is validated before any state is created; the execution
        loop then runs in a background task.

        Args:
            definition: The workflow to run
            initial_data: Run inputs, merged into state.data
            options: Per-run options

        Returns:
            The initial (pending) execution state

        Raises:
            GraphValidationError: If the graph is invalid
        """
        if isinstance(definition, dict):
            definition = WorkflowDefinition.model_validate(definition)
        definition = definition.model_copy(deep=True)
        options = options or ExecutionOptions()

        start_nodes = self.scheduler.validate(definition)

        execution_id = options.execution_id or f"wf-exec-{uuid.uuid4()}"
        now = utcnow()
        inputs = initial_data or {}

        data = deep_merge(inputs, {
            "_workflow": {
                "startedBy": options.user_id,
                "startedAt": now.isoformat(),
                "language": options.language,
            },
            "_workflowDefinition": definition.model_dump(mode="json"),
            "_initialData": inputs,
        })
        if definition.config.max_execution_time_ms:
            deadline = now + timedelta(milliseconds=definition.config.max_execution_time_ms)
            data["_deadline"] = deadline.isoformat()

        logger.info(
            f"Starting workflow '{definition.id}' as {execution_id} "
            f"({len(definition.nodes)} nodes, start={start_nodes})"
        )

        state = await self.state_store.create(
            execution_id,
            definition.id,
            data=data,
            current_nodes=start_nodes,
        )

        if self.execution_index is not None:
            self.execution_index.register(
                execution_id,
                user_id=options.user_id,
                workflow_id=definition.id,
                workflow_name=definition.name,
                status=ExecutionStatus.PENDING,
                started_at=now,
            )

        token = self.runs.issue_token(execution_id)
        self._workflows[execution_id] = definition
        self._options[execution_id] = options

        await self._emit(
            EventType.START,
            execution_id,
            workflow_id=definition.id,
            start_nodes=start_nodes,
        )

        self._launch(definition, execution_id, options, token)
        return state

    async def pause(self, execution_id: str, reason: str = "user_requested") -> ExecutionState:
        """
        Pause a running execution.

        The node currently executing (if any) finishes; the loop stops before
        the next one.

        Raises:
            ExecutionNotFoundError: Unknown execution
            InvalidStateError: Execution is not running
        """
        state = await self._require_state(execution_id)
        if state.status != ExecutionStatus.RUNNING:
            raise InvalidStateError(
                f"Cannot pause execution in status '{state.status.value}'",
                code=ErrorCode.INVALID_STATE_FOR_PAUSE,
                details={"status": state.status.value},
            )

        now = utcnow()
        state = await self.state_store.update(
            execution_id,
            status=ExecutionStatus.PAUSED,
            data={"_pausedAt": now.isoformat(), "_pauseReason": reason},
        )
        await self.state_store.add_step(
            execution_id, StepRecord(type="workflow_paused", data={"reason": reason})
        )
        if self.execution_index is not None:
            self.execution_index.update_status(execution_id, ExecutionStatus.PAUSED)

        await self._emit(EventType.PAUSED, execution_id, reason=reason)
        await self._safe_checkpoint(execution_id, "user_pause")

        logger.info(f"Paused execution {execution_id} ({reason})")
        return await self._require_state(execution_id)

    async def resume(
        self,
        execution_id: str,
        resume_data: Optional[Dict[str, Any]] = None,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionState:
        """
        Resume a paused execution from its persisted ``current_nodes``.

        Works across process restarts: the state is loaded from the latest
        checkpoint and the definition from the state itself if the engine no
        longer holds it.

        Args:
            execution_id: The execution to resume
            resume_data: Deep-merged into state.data before continuing
            options: Run options (those the run started with if omitted)

        Raises:
            ExecutionNotFoundError: Unknown execution
            InvalidStateError: Execution is not paused
            WorkflowNotAvailableError: The definition cannot be found
        """
        state = await self._require_state(execution_id)
        if state.status != ExecutionStatus.PAUSED:
            raise InvalidStateError(
                f"Cannot resume execution in status '{state.status.value}'",
                code=ErrorCode.INVALID_STATE_FOR_RESUME,
                details={"status": state.status.value},
            )

        options = options or self._options.get(execution_id) or _options_from_state(state)
        definition = self._resolve_definition(execution_id, state, options)

        # Let a loop that is finishing its last node observe the pause first
        previous = self.runs.task(execution_id)
        if previous is not None and not previous.done() and previous is not asyncio.current_task():
            await asyncio.shield(previous)
            state = await self._require_state(execution_id)
            if state.status != ExecutionStatus.PAUSED:
                raise InvalidStateError(
                    f"Execution {execution_id} became '{state.status.value}' before it could resume",
                    code=ErrorCode.INVALID_STATE_FOR_RESUME,
                    details={"status": state.status.value},
                )

        updates = deep_merge(resume_data or {}, {
            "_resumedAt": utcnow().isoformat(),
            "_pendingCheckpoint": None,
        })
        state = await self.state_store.update(
            execution_id,
            status=ExecutionStatus.RUNNING,
            data=updates,
        )
        await self.state_store.add_step(
            execution_id,
            StepRecord(type="workflow_resumed", data={"keys": sorted(resume_data or {})}),
        )

        if self.execution_index is not None:
            self.execution_index.clear_pending_checkpoint(execution_id)
            self.execution_index.update_status(execution_id, ExecutionStatus.RUNNING)

        token = self.runs.issue_token(execution_id)
        self._workflows[execution_id] = definition
        self._options[execution_id] = options

        logger.info(f"Resuming execution {execution_id} at {state.current_nodes}")
        self._launch(definition, execution_id, options, token)
        return state

    async def respond_to_checkpoint(
        self,
        execution_id: str,
        checkpoint_id: str,
        response: Any,
        data: Optional[Dict[str, Any]] = None,
    ) -> ExecutionState:
        """
        Answer a pending human checkpoint and resume the execution.

        Raises:
            InvalidStateError: Not paused, or ``checkpoint_id`` is not the
                pending checkpoint (INVALID_CHECKPOINT)
        """
        state = await self._require_state(execution_id)
        if state.status != ExecutionStatus.PAUSED:
            raise InvalidStateError(
                f"Cannot respond to checkpoint while execution is '{state.status.value}'",
                code=ErrorCode.INVALID_STATE_FOR_RESUME,
            )

        pending = state.data.get("_pendingCheckpoint") or {}
        if pending.get("id") != checkpoint_id:
            raise InvalidStateError(
                f"Checkpoint '{checkpoint_id}' is not pending for execution {execution_id}",
                code=ErrorCode.INVALID_CHECKPOINT,
                details={"pending_checkpoint": pending.get("id")},
            )

        human_response = {
            "checkpoint_id": checkpoint_id,
            "node_id": pending.get("node_id"),
            "response": response,
            "data": data or {},
            "responded_at": utcnow().isoformat(),
        }
        return await self.resume(execution_id, {"_humanResponse": human_response})

    async def cancel(self, execution_id: str, reason: str = "user_cancelled") -> ExecutionState:
        """
        Cancel an execution.

        Cancelling a finished execution is a no-op that returns its state.

        Raises:
            ExecutionNotFoundError: Unknown execution
        """
        state = await self._require_state(execution_id)
        if state.is_terminal:
            logger.info(f"Execution {execution_id} already {state.status.value}, nothing to cancel")
            return state

        self.runs.cancel(execution_id, reason)

        await self.state_store.update(
            execution_id,
            status=ExecutionStatus.CANCELLED,
            completed_at=utcnow(),
            data={"_cancelReason": reason},
        )
        await self.state_store.add_step(
            execution_id, StepRecord(type="workflow_cancelled", data={"reason": reason})
        )
        if self.execution_index is not None:
            self.execution_index.update_status(execution_id, ExecutionStatus.CANCELLED)

        await self._safe_checkpoint(execution_id, "workflow_cancelled")
        await self._emit(EventType.CANCELLED, execution_id, reason=reason)

        logger.info(f"Cancelled execution {execution_id} ({reason})")
        state = await self._require_state(execution_id)
        await self._finish(execution_id)
        return state

    async def get_state(self, execution_id: str) -> Optional[ExecutionState]:
        return await self.state_store.get(execution_id)

    async def list_active_executions(self) -> List[Dict[str, Any]]:
        """Summaries of executions in memory that have not finished."""
        terminal = {status.value for status in TERMINAL_STATUSES}
        summaries = await self.state_store.get_active_summaries()
        return [s for s in summaries if s["status"] not in terminal]

    async def wait_for(self, execution_id: str, timeout: Optional[float] = None) -> Optional[ExecutionState]:
        """
        Wait until the execution's background loop stops (finished or paused).

        Args:
            execution_id: The execution
            timeout: Seconds to wait at most

        Returns:
            The execution state at that point
        """
        task = self.runs.task(execution_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.state_store.get(execution_id)

    async def shutdown(self) -> None:
        """Signal the executions this engine is running and flush the index."""
        running = self.runs.running(owner=self)
        for execution_id, task in running:
            self.runs.cancel(execution_id, "shutdown")
            task.cancel()

        tasks = [task for _, task in running]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.execution_index is not None:
            await self.execution_index.flush()
        logger.info(f"Engine shut down ({len(tasks)} executions interrupted)")

    # ============================================================
    # Execution loop
    # ============================================================

    def _launch(
        self,
        definition: WorkflowDefinition,
        execution_id: str,
        options: ExecutionOptions,
        token: CancellationToken,
    ) -> None:
        task = asyncio.create_task(
            self._run_execution_loop(definition, execution_id, options, token),
            name=f"workflow-{execution_id}",
        )
        self.runs.track(execution_id, task, owner=self)

    async def _run_execution_loop(
        self,
        definition: WorkflowDefinition,
        execution_id: str,
        options: ExecutionOptions,
        token: CancellationToken,
    ) -> None:
        """
        Run passes until the execution completes, fails, pauses or is cancelled.

        Each pass re-reads the state, checks the deadline, and runs every
        executable node sequentially. The number of passes per loop is
        bounded by MAX_EXECUTION_ITERATIONS.
        """
        max_passes = self.settings.MAX_EXECUTION_ITERATIONS
        passes = 0

        try:
            state = await self._require_state(execution_id)
            if state.status == ExecutionStatus.PENDING:
                await self.state_store.update(
                    execution_id,
                    status=ExecutionStatus.RUNNING,
                    started_at=utcnow(),
                )
                if self.execution_index is not None:
                    self.execution_index.update_status(execution_id, ExecutionStatus.RUNNING)

            while True:
                if token.cancelled:
                    logger.info(f"Execution {execution_id} cancelled, stopping loop")
                    break

                state = await self._require_state(execution_id)
                if state.status != ExecutionStatus.RUNNING:
                    logger.info(f"Execution {execution_id} stopped (status={state.status.value})")
                    break

                if passes >= max_passes:
                    raise MaxIterationsExceeded(
                        f"Workflow exceeded maximum iterations ({max_passes})",
                        details={"max_iterations": max_passes},
                    )
                passes += 1

                self._check_deadline(state, definition)

                executable = self.scheduler.get_executable_nodes(
                    definition, state.current_nodes, state.completed_nodes
                )

                if not executable:
                    if not state.current_nodes:
                        await self._complete_workflow(execution_id, definition)
                        break
                    raise GraphValidationError(
                        f"Workflow has blocked nodes: {state.current_nodes}",
                        details={"blocked_nodes": state.current_nodes},
                    )

                outcome = _CONTINUE
                for node_id in executable:
                    if token.cancelled:
                        break
                    node = definition.get_node(node_id)
                    if node is None:
                        raise GraphValidationError(f"Node '{node_id}' not found in workflow")
                    outcome = await self._run_node(node, definition, execution_id, options)
                    if outcome != _CONTINUE:
                        break
                if outcome != _CONTINUE:
                    break

        except ExecutionCancelledError:
            logger.info(f"Execution {execution_id} cancelled while a node was running")
        except WorkflowError as e:
            logger.error(f"Execution {execution_id} failed: [{e.code.value}] {e.message}")
            await self._fail_workflow(execution_id, e)
        except Exception as e:
            logger.exception(f"Fatal error in execution loop for {execution_id}: {e}")
            await self._fail_workflow(
                execution_id,
                WorkflowError(
                    str(e) or type(e).__name__,
                    code=ErrorCode.EXECUTION_ERROR,
                    details={"exception_type": type(e).__name__},
                ),
            )
        finally:
            self.runs.release_token(execution_id, token)

    async def _run_node(
        self,
        node: NodeDefinition,
        definition: WorkflowDefinition,
        execution_id: str,
        options: ExecutionOptions,
    ) -> str:
        """Run one node and route the execution; returns the loop outcome."""
        try:
            result = await self.execute_node(node, definition, execution_id, options)
        except ExecutionCancelledError:
            raise
        except WorkflowError as e:
            await self._handle_node_error(execution_id, node, e)
            return _FAILED

        if result.is_paused:
            await self._pause_on_node(execution_id, node, result)
            return _PAUSED

        state = await self._require_state(execution_id)
        if result.is_terminal:
            next_nodes: List[str] = []
        else:
            next_nodes = self.scheduler.get_next_nodes(node.id, result, definition, state.data)

        current = [n for n in state.current_nodes if n != node.id]
        updates: Dict[str, Any] = {
            "current_nodes": list(dict.fromkeys(current + next_nodes)),
        }
        if result.workflow_status and (node.type in EXIT_NODE_TYPES or result.is_terminal):
            updates["workflow_status"] = result.workflow_status
        await self.state_store.update(execution_id, updates)

        if options.checkpoint_on_node:
            meta = await self.state_store.checkpoint(execution_id, f"after_node_{node.id}")
            await self._emit(
                EventType.CHECKPOINT_SAVED,
                execution_id,
                checkpoint_id=meta.checkpoint_id,
                node_id=node.id,
                reason=meta.reason,
            )

        return _CONTINUE

    async def execute_node(
        self,
        node: NodeDefinition,
        definition: WorkflowDefinition,
        execution_id: str,
        options: Optional[ExecutionOptions] = None,
    ) -> NodeResult:
        """
        Execute a single node inside its timeout and retry envelope.

        On success the node is marked completed; a paused result is returned
        untouched for the caller to handle.

        Raises:
            ExecutorNotFoundError: No executor for the node type
            MaxNodeIterationsExceeded: The node was entered too often
            NodeTimeoutError / NodeExecutionError: After the last attempt
            ExecutionCancelledError: The execution was cancelled
        """
        options = options or ExecutionOptions()
        executor = self.get_executor(node.type)
        if executor is None:
            raise ExecutorNotFoundError(
                f"No executor registered for node type: {node.type}",
                node_id=node.id,
            )

        iteration = await self._enter_node(execution_id, node, definition)
        token = self.runs.token(execution_id)

        await self._emit(
            EventType.NODE_START,
            execution_id,
            node_id=node.id,
            node_type=node.type,
            iteration=iteration,
        )
        await self.state_store.add_step(execution_id, StepRecord(
            type="node_start",
            node_id=node.id,
            iteration=iteration,
            data={"node_type": node.type, "config_keys": list(node.config.keys())},
        ))
        if self.execution_index is not None:
            self.execution_index.update_status(
                execution_id, ExecutionStatus.RUNNING, current_node=node.id
            )

        logger.info(f"[{execution_id}] Executing node '{node.id}' ({node.type}, iteration {iteration})")

        policy = RetryPolicy.for_node(node)
        timeout_ms = self._resolve_timeout(node, options)
        attempt = 1

        while True:
            if token is not None:
                token.raise_if_cancelled()

            state = await self._require_state(execution_id)
            context = ExecutionContext(
                execution_id=execution_id,
                node_id=node.id,
                workflow=definition,
                data=state.data,
                node_results=dict(state.node_results),
                initial_data=state.data.get("_initialData") or {},
                iteration=iteration,
                attempt=attempt,
                user=options.user,
                language=options.language,
                cancellation=token,
            )

            try:
                result = await self._attempt(executor, node, state, context, timeout_ms)
                break
            except WorkflowError as e:
                error = e

            if not error.retryable or not policy.should_retry(attempt) or (token and token.cancelled):
                raise error

            logger.warning(
                f"[{execution_id}] Node '{node.id}' attempt {attempt}/{policy.max_attempts} "
                f"failed: {error.message}"
            )
            await self.state_store.add_step(execution_id, StepRecord(
                type="node_retry",
                node_id=node.id,
                iteration=iteration,
                data={
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "error": error.message,
                    "code": error.code.value,
                },
            ))
            await self._emit(
                EventType.NODE_RETRY,
                execution_id,
                node_id=node.id,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error=error.to_dict(),
            )
            await policy.wait(attempt)
            attempt += 1

        if token is not None:
            token.raise_if_cancelled()

        if result.is_paused:
            return result

        await self.state_store.mark_node_completed(execution_id, node.id, result, iteration=iteration)
        await self.state_store.add_step(execution_id, StepRecord(
            type="node_complete",
            node_id=node.id,
            iteration=iteration,
            data={"attempts": attempt, "has_output": result.output is not None},
        ))
        await self._emit(
            EventType.NODE_COMPLETE,
            execution_id,
            node_id=node.id,
            iteration=iteration,
            result=self._summarize(result.to_record()),
        )

        logger.info(f"[{execution_id}] Node '{node.id}' completed")
        return result

    async def _attempt(
        self,
        executor: Any,
        node: NodeDefinition,
        state: ExecutionState,
        context: ExecutionContext,
        timeout_ms: int,
    ) -> NodeResult:
        """One bounded invocation; every failure comes out as a WorkflowError."""
        try:
            raw = await asyncio.wait_for(
                self._invoke(executor, node, state, context),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            raise NodeTimeoutError(
                f"Node {node.id} execution timed out after {timeout_ms}ms",
                node_id=node.id,
                details={"timeout_ms": timeout_ms},
            )
        except WorkflowError as e:
            raise error_from_exception(e, node.id)
        except Exception as e:
            raise error_from_exception(e, node.id) from e

        try:
            result = normalize_result(raw)
        except ValidationError as e:
            raise NodeExecutionError(
                f"Node {node.id} returned a malformed result: {e.error_count()} validation error(s)",
                node_id=node.id,
                details={"errors": [
                    {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                    for err in e.errors()
                ]},
            ) from e
        if result.is_failed:
            raise NodeExecutionError(
                result.error or f"Node {node.id} reported a failed result",
                node_id=node.id,
                details={"result": self._summarize(result.to_record())},
            )
        return result

    async def _invoke(
        self,
        executor: Any,
        node: NodeDefinition,
        state: ExecutionState,
        context: ExecutionContext,
    ) -> Any:
        if inspect.iscoroutinefunction(executor.execute):
            return await executor.execute(node, state, context)

        # Run sync executors in a thread to not block the loop
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            functools.partial(executor.execute, node, state, context),
        )
        if asyncio.iscoroutine(result):
            result = await result
        return result

    async def _enter_node(
        self,
        execution_id: str,
        node: NodeDefinition,
        definition: WorkflowDefinition,
    ) -> int:
        """
        Count a visit to ``node`` and enforce the per-node iteration cap.

        Re-entering the node that paused the execution continues the same
        visit.
        """
        state = await self._require_state(execution_id)
        counters = state.data.get("_nodeIterations") or {}

        if state.data.get("_pausedNode") == node.id and counters.get(node.id):
            await self.state_store.update(execution_id, data={"_pausedNode": None})
            return counters[node.id]

        max_iterations = (
            definition.config.max_iterations_per_node
            or self.settings.DEFAULT_MAX_ITERATIONS_PER_NODE
        )
        iteration = counters.get(node.id, 0) + 1
        if iteration > max_iterations:
            raise MaxNodeIterationsExceeded(
                f"Node '{node.id}' exceeded maximum iterations ({max_iterations})",
                node_id=node.id,
                details={"max_iterations": max_iterations, "iteration": iteration},
            )

        await self.state_store.update(execution_id, data={"_nodeIterations": {node.id: iteration}})
        if iteration > 1:
            await self._emit(
                EventType.ITERATION,
                execution_id,
                node_id=node.id,
                iteration=iteration,
                max_iterations=max_iterations,
            )
        return iteration

    def _resolve_timeout(self, node: NodeDefinition, options: ExecutionOptions) -> int:
        timeout_ms = (
            node.execution.timeout_ms
            or node.timeout_ms
            or options.timeout_ms
            or self.settings.DEFAULT_NODE_TIMEOUT_MS
        )
        return max(self.settings.MIN_NODE_TIMEOUT_MS, min(timeout_ms, self.settings.MAX_NODE_TIMEOUT_MS))

    def _check_deadline(self, state: ExecutionState, definition: WorkflowDefinition) -> None:
        deadline = state.data.get("_deadline")
        if not deadline:
            return
        if utcnow() > datetime.fromisoformat(deadline):
            raise ExecutionTimeExceeded(
                f"Workflow exceeded maximum execution time "
                f"({definition.config.max_execution_time_ms}ms)",
                details={"deadline": deadline},
            )

    # ============================================================
    # Outcomes
    # ============================================================

    async def _pause_on_node(self, execution_id: str, node: NodeDefinition, result: NodeResult) -> None:
        """A node asked to wait (e.g. for human input)."""
        reason = result.pause_reason or "node_paused"
        updates = deep_merge(result.state_updates or {}, {
            "_pausedNode": node.id,
            "_pausedAt": utcnow().isoformat(),
            "_pauseReason": reason,
            "_pendingCheckpoint": result.checkpoint,
        })
        await self.state_store.update(execution_id, status=ExecutionStatus.PAUSED, data=updates)
        await self.state_store.add_step(execution_id, StepRecord(
            type="node_paused",
            node_id=node.id,
            data={"reason": reason, "checkpoint_id": (result.checkpoint or {}).get("id")},
        ))

        if self.execution_index is not None:
            self.execution_index.update_status(
                execution_id,
                ExecutionStatus.PAUSED,
                current_node=node.id,
                pending_checkpoint=result.checkpoint or None,
            )

        await self._emit(
            EventType.PAUSED,
            execution_id,
            node_id=node.id,
            reason=reason,
            checkpoint=self._summarize(result.checkpoint),
        )
        await self._safe_checkpoint(execution_id, f"paused_at_{node.id}")
        logger.info(f"[{execution_id}] Paused at node '{node.id}' ({reason})")

    async def _handle_node_error(self, execution_id: str, node: NodeDefinition, error: WorkflowError) -> None:
        logger.error(f"[{execution_id}] Node '{node.id}' failed: [{error.code.value}] {error.message}")

        await self.state_store.mark_node_failed(execution_id, node.id, error)
        await self.state_store.add_step(execution_id, StepRecord(
            type="node_error",
            node_id=node.id,
            data={"message": error.message, "code": error.code.value},
        ))
        await self._emit(EventType.NODE_ERROR, execution_id, node_id=node.id, error=error.to_dict())

        if node.execution.on_error != ErrorPolicy.FAIL:
            logger.warning(
                f"on_error '{node.execution.on_error.value}' is not supported, "
                f"failing workflow at node '{node.id}'"
            )
        await self._fail_workflow(execution_id, error, record_error=False)

    async def _fail_workflow(self, execution_id: str, error: WorkflowError, record_error: bool = True) -> None:
        state = await self.state_store.get(execution_id)
        if state is None or state.is_terminal:
            return

        if record_error:
            await self.state_store.add_error(execution_id, error)
        await self.state_store.update(
            execution_id,
            status=ExecutionStatus.FAILED,
            completed_at=utcnow(),
        )
        if self.execution_index is not None:
            self.execution_index.update_status(execution_id, ExecutionStatus.FAILED)

        await self._emit(EventType.FAILED, execution_id, error=error.to_dict())
        await self._safe_checkpoint(execution_id, "workflow_failed")
        await self._finish(execution_id)

    async def _complete_workflow(self, execution_id: str, definition: WorkflowDefinition) -> None:
        state = await self._require_state(execution_id)
        output = _extract_output(state, definition)

        state = await self.state_store.update(
            execution_id,
            status=ExecutionStatus.COMPLETED,
            completed_at=utcnow(),
            output=output,
        )
        if self.execution_index is not None:
            self.execution_index.update_status(execution_id, ExecutionStatus.COMPLETED)

        logger.info(
            f"Execution {execution_id} completed ({len(state.completed_nodes)} nodes, "
            f"{state.invocation_count} invocations)"
        )
        await self._emit(
            EventType.COMPLETE,
            execution_id,
            output=self._summarize(output),
            workflow_status=state.workflow_status,
        )
        await self._safe_checkpoint(execution_id, "workflow_completed")
        await self._finish(execution_id)

    async def _finish(self, execution_id: str) -> None:
        """Release per-run resources of a finished execution."""
        self._workflows.pop(execution_id, None)
        self._options.pop(execution_id, None)
        if self.settings.EVICT_FINISHED_EXECUTIONS:
            await self.state_store.cleanup(execution_id, keep_checkpoints=True)

    # ============================================================
    # Helpers
    # ============================================================

    async def _require_state(self, execution_id: str) -> ExecutionState:
        state = await self.state_store.get(execution_id)
        if state is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        return state

    def _resolve_definition(
        self,
        execution_id: str,
        state: ExecutionState,
        options: ExecutionOptions,
    ) -> WorkflowDefinition:
        if options.workflow is not None:
            return options.workflow.model_copy(deep=True)
        cached = self._workflows.get(execution_id)
        if cached is not None:
            return cached
        stored = state.data.get("_workflowDefinition")
        if stored:
            return WorkflowDefinition.model_validate(stored)
        raise WorkflowNotAvailableError(
            f"Workflow definition for execution {execution_id} is not available",
            details={"workflow_id": state.workflow_id},
        )

    async def _safe_checkpoint(self, execution_id: str, reason: str) -> Optional[CheckpointMeta]:
        """Checkpoint without letting a storage failure mask the outcome."""
        try:
            return await self.state_store.checkpoint(execution_id, reason)
        except (WorkflowError, OSError) as e:
            logger.warning(f"Checkpoint '{reason}' failed for {execution_id}: {e}")
            return None

    def _summarize(self, value: Any) -> Any:
        return summarize_payload(
            value,
            limit=self.settings.EVENT_PAYLOAD_LIMIT,
            preview_length=self.settings.EVENT_PREVIEW_LENGTH,
        )

    async def _emit(self, event_type: str, execution_id: str, **payload: Any) -> None:
        event = WorkflowEvent(type=event_type, execution_id=execution_id, payload=payload)
        try:
            await self.event_sink.publish(event)
        except Exception as e:
            logger.warning(f"Failed to publish {event_type} for {execution_id}: {e}")


def _options_from_state(state: ExecutionState) -> ExecutionOptions:
    """Rebuild run options for an execution recovered from disk."""
    meta = state.data.get("_workflow") or {}
    user_id = meta.get("startedBy")
    return ExecutionOptions(
        execution_id=state.execution_id,
        user={"id": user_id} if user_id else None,
        language=meta.get("language") or "en",
    )


def _extract_output(state: ExecutionState, definition: WorkflowDefinition) -> Any:
    """
    Output of a completed run: the last completed node's
    ``config.output_variables`` read from state.data, else its stored result.
    """
    if not state.completed_nodes:
        return None

    last_node_id = state.completed_nodes[-1]
    node = definition.get_node(last_node_id)
    variables = node.config.get("output_variables") if node else None
    if variables:
        return {name: get_value_from_path(name, state.data) for name in variables}
    return state.node_results.get(last_node_id)
