"""
Tests for the ExecutionIndex.
"""

import asyncio
import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from checkflow.engine.state import ExecutionStatus
from checkflow.storage import execution_index as execution_index_module
from checkflow.storage.execution_index import ExecutionIndex


BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def register_many(index: ExecutionIndex) -> None:
    index.register("e1", "alice", "research", started_at=BASE_TIME)
    index.register("e2", "alice", "research", started_at=BASE_TIME + timedelta(minutes=1))
    index.register("e3", "alice", "review", started_at=BASE_TIME + timedelta(minutes=2))
    index.register("e4", "bob", "review", started_at=BASE_TIME + timedelta(minutes=3))


# ============================================================
# Registration Tests
# ============================================================

class TestRegistration:
    """Tests for register / update / remove."""

    @pytest.mark.asyncio
    async def test_register_and_get(self, index):
        """Test registering an execution."""
        entry = index.register("e1", "alice", "research", workflow_name={"en": "Research"})

        assert entry.status == ExecutionStatus.PENDING
        assert entry.pending_checkpoint is None
        assert index.get("e1").workflow_name == {"en": "Research"}
        assert index.get("missing") is None

    @pytest.mark.asyncio
    async def test_register_requires_ids(self, index):
        """Test that user and workflow ids are mandatory."""
        with pytest.raises(ValueError, match="user_id"):
            index.register("e1", "", "research")
        with pytest.raises(ValueError, match="workflow_id"):
            index.register("e1", "alice", "")

    @pytest.mark.asyncio
    async def test_default_workflow_name(self, index):
        """Test that the workflow id stands in for a missing name."""
        entry = index.register("e1", "alice", "research")
        assert entry.workflow_name == {"en": "research"}

    @pytest.mark.asyncio
    async def test_update_status_stamps_completion(self, index):
        """Test that terminal statuses set completed_at."""
        index.register("e1", "alice", "research")

        running = index.update_status("e1", ExecutionStatus.RUNNING, current_node="search")
        assert running.completed_at is None
        assert running.current_node == "search"

        done = index.update_status("e1", "completed")
        assert done.status == ExecutionStatus.COMPLETED
        assert done.completed_at is not None

    @pytest.mark.asyncio
    async def test_update_unknown_execution_is_ignored(self, index):
        """Test that updates for unindexed executions do nothing."""
        assert index.update_status("ghost", ExecutionStatus.RUNNING) is None
        index.set_pending_checkpoint("ghost", {"id": "hc-1"})
        assert len(index) == 0

    @pytest.mark.asyncio
    async def test_pending_checkpoints(self, index):
        """Test setting and clearing a human checkpoint."""
        index.register("e1", "alice", "research", status=ExecutionStatus.RUNNING)
        index.register("e2", "alice", "research", status=ExecutionStatus.RUNNING)

        index.set_pending_checkpoint("e1", {"id": "hc-1", "message": "Approve?"})

        pending = index.get_pending_checkpoints()
        assert [e.execution_id for e in pending] == ["e1"]
        assert pending[0].status == ExecutionStatus.PAUSED

        index.clear_pending_checkpoint("e1")
        assert index.get_pending_checkpoints() == []

    @pytest.mark.asyncio
    async def test_update_status_with_pending_checkpoint(self, index):
        """Test that update_status records a checkpoint alongside the node."""
        index.register("e1", "alice", "research", status=ExecutionStatus.RUNNING)

        entry = index.update_status(
            "e1",
            ExecutionStatus.PAUSED,
            current_node="approve",
            pending_checkpoint={"id": "hc-1", "message": "Approve?"},
        )

        assert entry.status == ExecutionStatus.PAUSED
        assert entry.current_node == "approve"
        assert entry.pending_checkpoint == {"id": "hc-1", "message": "Approve?"}
        assert [e.execution_id for e in index.get_pending_checkpoints()] == ["e1"]

        entry = index.update_status("e1", ExecutionStatus.RUNNING)
        assert entry.pending_checkpoint == {"id": "hc-1", "message": "Approve?"}

    @pytest.mark.asyncio
    async def test_remove(self, index):
        """Test removing an execution from the index."""
        index.register("e1", "alice", "research")

        assert index.remove("e1") is True
        assert index.remove("e1") is False
        assert index.get_by_user("alice") == []


# ============================================================
# Query Tests
# ============================================================

class TestQueries:
    """Tests for listings and stats."""

    @pytest.mark.asyncio
    async def test_get_by_user_sorted_newest_first(self, index):
        """Test that a user's executions come back newest first."""
        register_many(index)

        entries = index.get_by_user("alice")
        assert [e.execution_id for e in entries] == ["e3", "e2", "e1"]

    @pytest.mark.asyncio
    async def test_get_by_user_filters_and_pages(self, index):
        """Test status filtering, limit and offset."""
        register_many(index)
        index.update_status("e2", ExecutionStatus.RUNNING)
        index.update_status("e3", ExecutionStatus.RUNNING)

        running = index.get_by_user("alice", status=ExecutionStatus.RUNNING)
        assert [e.execution_id for e in running] == ["e3", "e2"]

        page = index.get_by_user("alice", limit=1, offset=1)
        assert [e.execution_id for e in page] == ["e2"]

    @pytest.mark.asyncio
    async def test_get_active(self, index):
        """Test that running and paused executions are active."""
        register_many(index)
        index.update_status("e1", ExecutionStatus.RUNNING)
        index.update_status("e2", ExecutionStatus.PAUSED)
        index.update_status("e3", ExecutionStatus.COMPLETED)

        assert sorted(e.execution_id for e in index.get_active()) == ["e1", "e2"]

    @pytest.mark.asyncio
    async def test_get_stats(self, index):
        """Test aggregate statistics."""
        register_many(index)
        index.update_status("e4", ExecutionStatus.FAILED)

        stats = index.get_stats()
        assert stats["total_executions"] == 4
        assert stats["total_users"] == 2
        assert stats["by_status"] == {"pending": 3, "failed": 1}

    @pytest.mark.asyncio
    async def test_returned_entries_are_copies(self, index):
        """Test that callers cannot mutate index entries."""
        index.register("e1", "alice", "research")
        entry = index.get("e1")
        entry.status = ExecutionStatus.FAILED
        assert index.get("e1").status == ExecutionStatus.PENDING


# ============================================================
# Persistence Tests
# ============================================================

class TestPersistence:
    """Tests for saving, loading and recovery."""

    @pytest.mark.asyncio
    async def test_flush_writes_index_file(self, index):
        """Test the persisted file layout."""
        index.register("e1", "alice", "research")
        await index.flush()

        payload = json.loads(index.registry_path.read_text())
        assert payload["version"] == 1
        assert "saved_at" in payload
        assert payload["executions"][0]["execution_id"] == "e1"

    @pytest.mark.asyncio
    async def test_writes_are_debounced(self, index):
        """Test that registration schedules a save instead of writing at once."""
        index.register("e1", "alice", "research")
        assert not index.registry_path.exists()

        for _ in range(100):
            if index.registry_path.exists():
                break
            await asyncio.sleep(0.02)

        assert index.registry_path.exists()

    @pytest.mark.asyncio
    async def test_timer_saves_do_not_overlap(self, index, monkeypatch):
        """Test that a timer save waits for the previous write to finish."""
        gate = threading.Event()
        lock = threading.Lock()
        written = []
        active = 0
        max_active = 0
        real_write = execution_index_module.atomic_write_json

        def slow_write(path, payload):
            nonlocal active, max_active
            with lock:
                active += 1
                max_active = max(max_active, active)
                first = not written
                written.append(None)
            if first:
                gate.wait(timeout=2)
            real_write(path, payload)
            with lock:
                written[written.index(None)] = len(payload["executions"])
                active -= 1

        monkeypatch.setattr(execution_index_module, "atomic_write_json", slow_write)

        index.register("e1", "alice", "research")
        await asyncio.sleep(0.08)
        index.register("e2", "alice", "research")
        await asyncio.sleep(0.08)

        # The second timer fired while the first write was still blocked
        assert len(written) == 1

        gate.set()
        await index.flush()

        assert max_active == 1
        assert written[-1] == 2
        payload = json.loads(index.registry_path.read_text())
        assert {e["execution_id"] for e in payload["executions"]} == {"e1", "e2"}

    def test_saves_immediately_without_event_loop(self, index):
        """Test that writes outside a running loop happen synchronously."""
        index.register("e1", "alice", "research")
        assert index.registry_path.exists()

    @pytest.mark.asyncio
    async def test_load_from_disk(self, index, test_settings):
        """Test that a new index loads the saved entries."""
        register_many(index)
        index.update_status("e1", ExecutionStatus.COMPLETED)
        await index.flush()

        reloaded = ExecutionIndex(settings=test_settings)
        count = await reloaded.load_from_disk()

        assert count == 4
        assert reloaded.loaded is True
        assert reloaded.get("e1").status == ExecutionStatus.COMPLETED
        assert [e.execution_id for e in reloaded.get_by_user("alice")] == ["e3", "e2", "e1"]

    @pytest.mark.asyncio
    async def test_recovers_executions_from_checkpoints(self, store, test_settings):
        """Test rebuilding entries from latest.json checkpoints."""
        await store.create(
            "exec-9",
            "research",
            data={"_workflow": {"startedBy": "carol"}},
            current_nodes=["review"],
        )
        await store.update("exec-9", status="paused")
        await store.checkpoint("exec-9", "pause")

        await store.create("exec-10", "research")
        await store.checkpoint("exec-10")

        index = ExecutionIndex(settings=test_settings)
        count = await index.load_from_disk()

        assert count == 2
        recovered = index.get("exec-9")
        assert recovered.user_id == "carol"
        assert recovered.status == ExecutionStatus.PAUSED
        assert recovered.current_node == "review"
        assert index.get("exec-10").user_id == "unknown"

        await index.flush()
