"""
Shared fixtures for the Checkflow tests.
"""

import pytest

from checkflow.config import Settings
from checkflow.engine.events import RecordingSink
from checkflow.engine.executor import WorkflowEngine
from checkflow.executors.registry import create_default_registry
from checkflow.storage.execution_index import ExecutionIndex
from checkflow.storage.state_store import StateStore


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at a temporary state directory with fast timers."""
    return Settings(
        STATE_DIR=str(tmp_path / "workflow-state"),
        INDEX_SAVE_DELAY_MS=20,
        MIN_NODE_TIMEOUT_MS=10,
        DEFAULT_NODE_TIMEOUT_MS=5000,
    )


@pytest.fixture
def store(test_settings) -> StateStore:
    return StateStore(settings=test_settings)


@pytest.fixture
def index(test_settings) -> ExecutionIndex:
    return ExecutionIndex(settings=test_settings)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def engine(store, index, sink, test_settings) -> WorkflowEngine:
    return WorkflowEngine(
        store,
        execution_index=index,
        executors=create_default_registry(),
        event_sink=sink,
        settings=test_settings,
    )
