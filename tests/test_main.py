"""
Tests for the composition root.
"""

import pytest

from checkflow.engine.events import RecordingSink
from checkflow.engine.executor import WorkflowEngine
from checkflow.main import configure_logging, create_engine, engine_lifespan


class TestCompositionRoot:
    """Tests for create_engine and engine_lifespan."""

    def test_configure_logging(self, test_settings):
        """Test that logging can be configured from settings."""
        configure_logging(test_settings)

    def test_create_engine_defaults(self, test_settings):
        """Test that the factory wires the default collaborators."""
        engine = create_engine(test_settings)

        assert isinstance(engine, WorkflowEngine)
        assert sorted(engine.node_types) == ["decision", "end", "human", "start", "transform"]
        assert engine.execution_index.state_dir == engine.state_store.state_dir

    @pytest.mark.asyncio
    async def test_lifespan_runs_workflow(self, test_settings):
        """Test a run inside the lifespan context."""
        sink = RecordingSink()
        definition = {
            "id": "hello",
            "nodes": [{"id": "start", "type": "start"}, {"id": "end", "type": "end"}],
            "edges": [{"source": "start", "target": "end"}],
        }

        async with engine_lifespan(test_settings, event_sink=sink) as engine:
            assert engine.execution_index.loaded is True
            initial = await engine.start(definition, {"greeting": "hi"})
            state = await engine.wait_for(initial.execution_id, timeout=5)

        assert state.status.value == "completed"
        assert state.output["output"] == {"greeting": "hi"}
        assert engine.execution_index.registry_path.exists()
