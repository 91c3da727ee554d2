"""
Executor Registry for the Workflow Engine.

Maps node types to the executors that run them. Executors are objects with
an ``execute(node, state, context)`` method; plain functions with the same
signature can be registered too and are wrapped in a FunctionExecutor.
"""

from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import asyncio
import functools
import inspect
import logging

from checkflow.executors.decision import DecisionNodeExecutor
from checkflow.executors.end import EndNodeExecutor
from checkflow.executors.human import HumanNodeExecutor
from checkflow.executors.start import StartNodeExecutor
from checkflow.executors.transform import TransformNodeExecutor


logger = logging.getLogger(__name__)


class FunctionExecutor:
    """
    Adapts a plain (sync or async) function to the executor contract.

    Attributes:
        func: ``func(node, state, context) -> result``
        description: Human-readable description
    """

    def __init__(self, func: Callable, description: str = ""):
        self.func = func
        self.description = description or (func.__doc__ or "").strip()

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.func)

    async def execute(self, node, state, context) -> Any:
        if self.is_async:
            return await self.func(node, state, context)

        # Run sync function in executor to not block
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            functools.partial(self.func, node, state, context),
        )

    def __repr__(self) -> str:
        return f"FunctionExecutor({getattr(self.func, '__name__', self.func)!r})"


class ExecutorRegistry:
    """
    Registry of node executors keyed by node type.

    Usage:
        registry = ExecutorRegistry()
        registry.register("start", StartNodeExecutor())

        @registry.register("uppercase")
        def uppercase(node, state, context):
            return {"output": state.data["text"].upper()}

        engine = WorkflowEngine(store, executors=registry)
    """

    def __init__(self):
        self._executors: Dict[str, Any] = {}

    def register(self, node_type: str, executor: Any = None, description: str = ""):
        """
        Register an executor, or use as a decorator on a function.

        Args:
            node_type: The node type the executor handles
            executor: Executor object or function (omit to decorate)
            description: Description for function executors

        Raises:
            TypeError: If the executor is neither an executor nor a callable
        """
        if executor is None:
            def decorator(func: Callable) -> Callable:
                self.register(node_type, func, description)
                return func
            return decorator

        if not callable(getattr(executor, "execute", None)):
            if not callable(executor):
                raise TypeError(f"Executor for '{node_type}' must be callable or implement execute()")
            executor = FunctionExecutor(executor, description)

        if node_type in self._executors:
            logger.info(f"Replacing executor for node type: {node_type}")
        self._executors[node_type] = executor
        logger.debug(f"Registered executor for node type: {node_type}")
        return executor

    def get(self, node_type: str) -> Optional[Any]:
        """Get the executor for a node type."""
        return self._executors.get(node_type)

    def remove(self, node_type: str) -> bool:
        if node_type in self._executors:
            del self._executors[node_type]
            return True
        return False

    def list_types(self) -> List[Dict[str, Any]]:
        """List registered node types with their executor class."""
        return [
            {"type": node_type, "executor": type(executor).__name__}
            for node_type, executor in self._executors.items()
        ]

    def items(self) -> List[Tuple[str, Any]]:
        return list(self._executors.items())

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._executors

    def __len__(self) -> int:
        return len(self._executors)

    def __iter__(self) -> Iterator[str]:
        return iter(self._executors)


def create_default_registry() -> ExecutorRegistry:
    """Registry with the built-in start, end, human, decision and transform executors."""
    registry = ExecutorRegistry()
    registry.register("start", StartNodeExecutor())
    registry.register("end", EndNodeExecutor())
    registry.register("human", HumanNodeExecutor())
    registry.register("decision", DecisionNodeExecutor())
    registry.register("transform", TransformNodeExecutor())
    return registry
