"""
Checkflow - Composition Root.

Wires the settings, storage, executor registry and event sink into a
WorkflowEngine. One StateStore and one ExecutionIndex are shared by every
engine built here.

Usage:
    async with engine_lifespan() as engine:
        state = await engine.start(definition, {"topic": "graphs"})
        await engine.wait_for(state.execution_id)
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import logging

from checkflow.config import Settings, settings as default_settings
from checkflow.engine.events import EventSink
from checkflow.engine.executor import WorkflowEngine
from checkflow.executors.registry import ExecutorRegistry, create_default_registry
from checkflow.storage.execution_index import ExecutionIndex
from checkflow.storage.state_store import StateStore


logger = logging.getLogger(__name__)


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging once for the process."""
    settings = settings or default_settings
    level = "DEBUG" if settings.DEBUG else settings.LOG_LEVEL
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_engine(
    settings: Optional[Settings] = None,
    state_store: Optional[StateStore] = None,
    execution_index: Optional[ExecutionIndex] = None,
    executors: Optional[ExecutorRegistry] = None,
    event_sink: Optional[EventSink] = None,
) -> WorkflowEngine:
    """
    Build a WorkflowEngine with the default collaborators.

    Args:
        settings: Settings to use (the process settings if omitted)
        state_store: Shared store (a new one under STATE_DIR if omitted)
        execution_index: Shared index (a new one under STATE_DIR if omitted)
        executors: Executor registry (the built-in executors if omitted)
        event_sink: Where lifecycle events go (discarded if omitted)
    """
    settings = settings or default_settings
    state_store = state_store or StateStore(settings=settings)
    if execution_index is None:
        execution_index = ExecutionIndex(state_dir=state_store.state_dir, settings=settings)

    return WorkflowEngine(
        state_store,
        execution_index=execution_index,
        executors=executors if executors is not None else create_default_registry(),
        event_sink=event_sink,
        settings=settings,
    )


@asynccontextmanager
async def engine_lifespan(
    settings: Optional[Settings] = None,
    **kwargs,
) -> AsyncIterator[WorkflowEngine]:
    """Engine lifespan: load the index on startup, flush it on shutdown."""
    settings = settings or default_settings
    engine = create_engine(settings, **kwargs)

    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    if engine.execution_index is not None:
        await engine.execution_index.load_from_disk()

    try:
        yield engine
    finally:
        # Shutdown
        logger.info("Shutting down...")
        await engine.shutdown()
