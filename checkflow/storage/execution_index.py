"""
Execution Index.

A per-user index of workflow executions, used to list a user's runs and find
runs waiting on a human checkpoint without scanning checkpoint files. The
index is derived data: it is persisted to a single JSON file on a debounce
timer and can be rebuilt from the ``latest.json`` checkpoints.
"""

from typing import Any, Dict, List, Optional, Set, Union
from pydantic import BaseModel, Field
from datetime import datetime
from pathlib import Path
import asyncio
import logging

from checkflow.config import Settings, settings as default_settings
from checkflow.engine.state import ACTIVE_STATUSES, ExecutionStatus, utcnow
from checkflow.storage.files import atomic_write_json, read_json, run_blocking


logger = logging.getLogger(__name__)

INDEX_FILE_VERSION = 1
UNKNOWN_USER = "unknown"


class ExecutionIndexEntry(BaseModel):
    """Index metadata for one execution."""

    execution_id: str
    user_id: str
    workflow_id: str
    workflow_name: Optional[Union[str, Dict[str, str]]] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    current_node: Optional[str] = None
    pending_checkpoint: Optional[Dict[str, Any]] = None


class ExecutionIndex:
    """
    In-memory execution index with debounced file persistence.

    Usage:
        index = ExecutionIndex(state_dir="contents/workflow-state")
        await index.load_from_disk()
        index.register("exec-1", user_id="user-1", workflow_id="research")
        index.update_status("exec-1", ExecutionStatus.RUNNING, current_node="search")
        index.get_by_user("user-1", status=ExecutionStatus.RUNNING, limit=10)
        await index.flush()
    """

    def __init__(
        self,
        state_dir: Optional[Union[str, Path]] = None,
        registry_file: Optional[str] = None,
        save_delay_ms: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.state_dir = Path(state_dir or self.settings.STATE_DIR)
        self.registry_file = registry_file or self.settings.REGISTRY_FILE
        self.save_delay_ms = (
            save_delay_ms if save_delay_ms is not None else self.settings.INDEX_SAVE_DELAY_MS
        )

        self._entries: Dict[str, ExecutionIndexEntry] = {}
        self._by_user: Dict[str, Set[str]] = {}
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._save_task: Optional[asyncio.Task] = None
        self.loaded = False

    @property
    def registry_path(self) -> Path:
        return self.state_dir / self.registry_file

    # ============================================================
    # Mutations
    # ============================================================

    def register(
        self,
        execution_id: str,
        user_id: str,
        workflow_id: str,
        workflow_name: Optional[Union[str, Dict[str, str]]] = None,
        status: ExecutionStatus = ExecutionStatus.PENDING,
        started_at: Optional[datetime] = None,
    ) -> ExecutionIndexEntry:
        """
        Register a new execution.

        Raises:
            ValueError: If a required identifier is missing
        """
        if not execution_id:
            raise ValueError("execution_id is required")
        if not user_id:
            raise ValueError("user_id is required")
        if not workflow_id:
            raise ValueError("workflow_id is required")

        entry = ExecutionIndexEntry(
            execution_id=execution_id,
            user_id=user_id,
            workflow_id=workflow_id,
            workflow_name=workflow_name or {"en": workflow_id},
            status=status,
            started_at=started_at or utcnow(),
        )
        self._store(entry)
        self._schedule_save()

        logger.debug(f"Registered execution {execution_id} for user {user_id}")
        return entry.model_copy(deep=True)

    def update_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        current_node: Optional[str] = None,
        pending_checkpoint: Optional[Dict[str, Any]] = None,
    ) -> Optional[ExecutionIndexEntry]:
        """
        Update the status of an execution.

        Terminal statuses stamp ``completed_at``. A ``pending_checkpoint``
        is recorded through set_pending_checkpoint, which leaves the entry
        paused. Unknown executions are ignored.
        """
        entry = self._entries.get(execution_id)
        if entry is None:
            logger.debug(f"Cannot update status of unindexed execution {execution_id}")
            return None

        status = ExecutionStatus(status)
        entry.status = status
        entry.updated_at = utcnow()
        if current_node is not None:
            entry.current_node = current_node
        if status.is_terminal:
            entry.completed_at = entry.updated_at
        if pending_checkpoint is not None:
            self.set_pending_checkpoint(execution_id, pending_checkpoint)
        else:
            self._schedule_save()
        return entry.model_copy(deep=True)

    def set_pending_checkpoint(self, execution_id: str, checkpoint: Dict[str, Any]) -> None:
        """Mark an execution as paused on a human checkpoint."""
        entry = self._entries.get(execution_id)
        if entry is None:
            logger.debug(f"Cannot set checkpoint on unindexed execution {execution_id}")
            return
        entry.status = ExecutionStatus.PAUSED
        entry.pending_checkpoint = dict(checkpoint)
        entry.updated_at = utcnow()
        self._schedule_save()

    def clear_pending_checkpoint(self, execution_id: str) -> None:
        entry = self._entries.get(execution_id)
        if entry is None or entry.pending_checkpoint is None:
            return
        entry.pending_checkpoint = None
        entry.updated_at = utcnow()
        self._schedule_save()

    def remove(self, execution_id: str) -> bool:
        """Remove an execution from the index."""
        entry = self._entries.pop(execution_id, None)
        if entry is None:
            return False
        user_ids = self._by_user.get(entry.user_id)
        if user_ids is not None:
            user_ids.discard(execution_id)
            if not user_ids:
                del self._by_user[entry.user_id]
        self._schedule_save()
        return True

    def _store(self, entry: ExecutionIndexEntry) -> None:
        self._entries[entry.execution_id] = entry
        self._by_user.setdefault(entry.user_id, set()).add(entry.execution_id)

    # ============================================================
    # Queries
    # ============================================================

    def get(self, execution_id: str) -> Optional[ExecutionIndexEntry]:
        entry = self._entries.get(execution_id)
        return entry.model_copy(deep=True) if entry else None

    def get_by_user(
        self,
        user_id: str,
        status: Optional[ExecutionStatus] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[ExecutionIndexEntry]:
        """
        List a user's executions, most recently started first.

        Args:
            user_id: The user
            status: Only executions with this status
            limit: Maximum number of entries
            offset: Number of entries to skip
        """
        entries = [self._entries[eid] for eid in self._by_user.get(user_id, ())]
        if status is not None:
            status = ExecutionStatus(status)
            entries = [e for e in entries if e.status == status]

        entries.sort(key=lambda e: e.started_at, reverse=True)

        start = offset or 0
        end = start + limit if limit is not None else None
        return [e.model_copy(deep=True) for e in entries[start:end]]

    def get_active(self) -> List[ExecutionIndexEntry]:
        """Executions that are running or paused."""
        return [
            e.model_copy(deep=True) for e in self._entries.values()
            if e.status in ACTIVE_STATUSES
        ]

    def get_pending_checkpoints(self) -> List[ExecutionIndexEntry]:
        """Paused executions waiting on a human checkpoint."""
        return [
            e.model_copy(deep=True) for e in self._entries.values()
            if e.status == ExecutionStatus.PAUSED and e.pending_checkpoint
        ]

    def get_stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {}
        for entry in self._entries.values():
            by_status[entry.status.value] = by_status.get(entry.status.value, 0) + 1
        return {
            "total_executions": len(self._entries),
            "total_users": len(self._by_user),
            "by_status": by_status,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, execution_id: str) -> bool:
        return execution_id in self._entries

    # ============================================================
    # Persistence
    # ============================================================

    async def load_from_disk(self) -> int:
        """
        Load the index file, then recover executions missing from it by
        scanning ``<state_dir>/*/latest.json``.

        Returns:
            Number of indexed executions after loading
        """
        try:
            raw = await run_blocking(read_json, self.registry_path)
        except (OSError, ValueError) as e:
            logger.warning(f"Error loading execution index, rebuilding from checkpoints: {e}")
            raw = None

        if isinstance(raw, dict):
            for item in raw.get("executions") or []:
                try:
                    self._store(ExecutionIndexEntry.model_validate(item))
                except ValueError as e:
                    logger.warning(f"Skipping invalid index entry: {e}")
            logger.info(f"Loaded execution index ({len(self._entries)} executions)")

        recovered = await run_blocking(self._scan_checkpoints)
        for entry in recovered:
            self._store(entry)
            logger.info(f"Recovered execution {entry.execution_id} from checkpoint")
        if recovered:
            self._schedule_save()

        self.loaded = True
        logger.info(
            f"Execution index ready: {len(self._entries)} total, {len(self.get_active())} active"
        )
        return len(self._entries)

    def _scan_checkpoints(self) -> List[ExecutionIndexEntry]:
        if not self.state_dir.is_dir():
            return []

        recovered = []
        for directory in sorted(self.state_dir.iterdir()):
            if not directory.is_dir() or directory.name in self._entries:
                continue
            try:
                state = read_json(directory / "latest.json")
            except (OSError, ValueError) as e:
                logger.warning(f"Unreadable checkpoint in {directory.name}: {e}")
                continue
            if not isinstance(state, dict):
                continue
            try:
                recovered.append(_entry_from_checkpoint(directory.name, state))
            except ValueError as e:
                logger.warning(f"Cannot index checkpoint in {directory.name}: {e}")
        return recovered

    def _payload(self) -> Dict[str, Any]:
        return {
            "version": INDEX_FILE_VERSION,
            "saved_at": utcnow().isoformat(),
            "executions": [e.model_dump(mode="json") for e in self._entries.values()],
        }

    async def save_to_disk(self) -> bool:
        """Write the index file atomically. Failures are logged."""
        try:
            await run_blocking(atomic_write_json, self.registry_path, self._payload())
        except OSError as e:
            logger.error(f"Failed to save execution index: {e}")
            return False
        logger.debug(f"Saved execution index ({len(self._entries)} executions)")
        return True

    def _schedule_save(self) -> None:
        """Debounce writes: each call restarts the save timer."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            try:
                atomic_write_json(self.registry_path, self._payload())
            except OSError as e:
                logger.error(f"Failed to save execution index: {e}")
            return

        if self._save_handle is not None:
            self._save_handle.cancel()
        self._save_handle = loop.call_later(self.save_delay_ms / 1000, self._on_save_timer)

    def _on_save_timer(self) -> None:
        self._save_handle = None
        self._save_task = asyncio.ensure_future(self._save_after(self._save_task))

    async def _save_after(self, previous: Optional[asyncio.Future]) -> bool:
        # One writer at a time, so the newest payload lands last
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        return await self.save_to_disk()

    async def flush(self) -> bool:
        """Cancel any pending debounce and save immediately."""
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        if self._save_task is not None and not self._save_task.done():
            await self._save_task
        return await self.save_to_disk()


def _entry_from_checkpoint(execution_id: str, state: Dict[str, Any]) -> ExecutionIndexEntry:
    data = state.get("data") or {}
    workflow_meta = data.get("_workflow") or {}
    definition = data.get("_workflowDefinition") or {}
    workflow_id = state.get("workflow_id") or "unknown"
    current_nodes = state.get("current_nodes") or []

    return ExecutionIndexEntry(
        execution_id=execution_id,
        user_id=workflow_meta.get("startedBy") or UNKNOWN_USER,
        workflow_id=workflow_id,
        workflow_name=definition.get("name") or {"en": workflow_id},
        status=state.get("status") or ExecutionStatus.PENDING,
        started_at=state.get("started_at") or state.get("created_at") or utcnow(),
        updated_at=state.get("updated_at") or utcnow(),
        completed_at=state.get("completed_at"),
        current_node=current_nodes[0] if current_nodes else None,
        pending_checkpoint=data.get("_pendingCheckpoint"),
    )
