"""
Cooperative cancellation for workflow executions.
"""

from typing import Optional
import asyncio

from checkflow.engine.errors import ExecutionCancelledError


class CancellationToken:
    """
    Per-execution cancellation signal.

    The engine checks the token between nodes; executors receive it in their
    context and are expected to honor it for long-running work, e.g.:

        await context.cancellation.wait()          # park until cancelled
        context.cancellation.raise_if_cancelled()  # bail out between steps
    """

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self.reason: Optional[str] = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ExecutionCancelledError(
                f"Execution {self.execution_id} was cancelled: {self.reason}"
            )

    def __repr__(self) -> str:
        return f"CancellationToken(execution_id='{self.execution_id}', cancelled={self.cancelled})"
