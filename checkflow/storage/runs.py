"""
In-process handles of running executions.

Tracks the cancellation token and the background task of every execution
loop running in this process. The registry hangs off the StateStore, so
engines constructed around the same store signal and await the same runs.
"""

from typing import Any, Dict, List, Optional, Tuple
import asyncio
import logging

from checkflow.engine.cancellation import CancellationToken


logger = logging.getLogger(__name__)


class RunRegistry:
    """
    Tokens and loop tasks keyed by execution id.

    Usage:
        token = runs.issue_token("exec-1")
        runs.track("exec-1", asyncio.create_task(loop(token)), owner=engine)
        runs.cancel("exec-1", "user_cancelled")
    """

    def __init__(self):
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._owners: Dict[str, Any] = {}

    # ============================================================
    # Tokens
    # ============================================================

    def issue_token(self, execution_id: str) -> CancellationToken:
        """Create the token for a new loop, replacing any previous one."""
        token = CancellationToken(execution_id)
        self._tokens[execution_id] = token
        return token

    def token(self, execution_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(execution_id)

    def release_token(self, execution_id: str, token: CancellationToken) -> None:
        """Drop ``token`` unless a newer loop has already replaced it."""
        if self._tokens.get(execution_id) is token:
            del self._tokens[execution_id]

    def cancel(self, execution_id: str, reason: str) -> bool:
        """
        Signal the running loop of an execution.

        Returns:
            True if a loop was signalled
        """
        token = self._tokens.get(execution_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.debug(f"Signalled cancellation of {execution_id} ({reason})")
        return True

    # ============================================================
    # Tasks
    # ============================================================

    def track(self, execution_id: str, task: asyncio.Task, owner: Any = None) -> None:
        """Record the loop task of an execution until it finishes."""
        self._tasks[execution_id] = task
        self._owners[execution_id] = owner

        def _forget(done: asyncio.Task) -> None:
            if self._tasks.get(execution_id) is done:
                del self._tasks[execution_id]
                self._owners.pop(execution_id, None)

        task.add_done_callback(_forget)

    def task(self, execution_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(execution_id)

    def running(self, owner: Any = None) -> List[Tuple[str, asyncio.Task]]:
        """Unfinished loop tasks, optionally only those launched by ``owner``."""
        return [
            (execution_id, task)
            for execution_id, task in self._tasks.items()
            if not task.done() and (owner is None or self._owners.get(execution_id) is owner)
        ]

    def __contains__(self, execution_id: str) -> bool:
        task = self._tasks.get(execution_id)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return len(self.running())
