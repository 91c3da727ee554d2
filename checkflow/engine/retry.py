"""
Retry policy for node execution.
"""

from dataclasses import dataclass
import asyncio

from checkflow.engine.graph import NodeDefinition


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry envelope.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1)
        delay_ms: Delay before the first retry
        backoff: Multiplier applied to the delay per retry (1.0 = fixed delay)
    """
    max_attempts: int = 1
    delay_ms: int = 0
    backoff: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_ms < 0:
            raise ValueError("delay_ms cannot be negative")

    @classmethod
    def for_node(cls, node: NodeDefinition) -> "RetryPolicy":
        """Build the policy from a node's execution config (fixed delay)."""
        return cls(
            max_attempts=node.execution.retries + 1,
            delay_ms=node.execution.retry_delay_ms,
        )

    def compute_delay(self, attempt: int) -> float:
        """Delay in seconds before the attempt following ``attempt``."""
        return (self.delay_ms * (self.backoff ** (attempt - 1))) / 1000

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    async def wait(self, attempt: int) -> None:
        """Sleep for the computed delay before retrying."""
        delay = self.compute_delay(attempt)
        if delay > 0:
            await asyncio.sleep(delay)
