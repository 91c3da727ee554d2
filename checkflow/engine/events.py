"""
Lifecycle Events for Workflow Executions.

The engine publishes events to a pluggable sink instead of a global bus, so
the transport (SSE bridge, WebSocket, message bus, logs) is chosen at
composition time.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone
import asyncio
import json
import logging


logger = logging.getLogger(__name__)


class EventType:
    """Names of the events emitted by the engine."""
    START = "workflow.start"
    NODE_START = "workflow.node.start"
    NODE_COMPLETE = "workflow.node.complete"
    NODE_ERROR = "workflow.node.error"
    NODE_RETRY = "workflow.node.retry"
    ITERATION = "workflow.iteration"
    PAUSED = "workflow.paused"
    CHECKPOINT_SAVED = "workflow.checkpoint.saved"
    COMPLETE = "workflow.complete"
    FAILED = "workflow.failed"
    CANCELLED = "workflow.cancelled"

    ALL = (
        START, NODE_START, NODE_COMPLETE, NODE_ERROR, NODE_RETRY, ITERATION,
        PAUSED, CHECKPOINT_SAVED, COMPLETE, FAILED, CANCELLED,
    )


# Fields kept verbatim when a large payload value is summarized
PRESERVED_FIELDS = ("status", "metrics", "tokens", "workflow_status", "error")


@dataclass
class WorkflowEvent:
    """A single lifecycle event."""
    type: str
    execution_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.type,
            "execution_id": self.execution_id,
            "timestamp": self.timestamp.isoformat(),
            **self.payload,
        }


def summarize_payload(value: Any, limit: int = 1024, preview_length: int = 200) -> Any:
    """
    Shrink a value for event transport.

    Values whose JSON form fits in ``limit`` characters pass through. Larger
    values become a summary with a truncated preview, keeping a few
    operationally useful fields (status, metrics, tokens, ...) when the value
    is a mapping.

    Args:
        value: The value to summarize
        limit: Maximum JSON length passed through unchanged
        preview_length: Length of the preview in the summary

    Returns:
        The value itself or its summary
    """
    if value is None:
        return None

    if hasattr(value, "model_dump"):
        value = value.model_dump(exclude_none=True)

    try:
        serialized = json.dumps(value, default=str)
    except (TypeError, ValueError):
        return {"_error": "Could not serialize value"}

    if len(serialized) <= limit:
        return value

    summary: Dict[str, Any] = {
        "_truncated": True,
        "_type": type(value).__name__,
        "_size": len(serialized),
        "_preview": serialized[:preview_length] + "...",
    }
    if isinstance(value, dict):
        for key in PRESERVED_FIELDS:
            if key in value:
                summary[key] = value[key]
    return summary


# ============================================================
# Sinks
# ============================================================

class EventSink:
    """Base sink: receives every event the engine emits."""

    async def publish(self, event: WorkflowEvent) -> None:
        raise NotImplementedError


class NullSink(EventSink):
    """Discards events."""

    async def publish(self, event: WorkflowEvent) -> None:
        return None


EventCallback = Callable[[WorkflowEvent], Union[None, Awaitable[None]]]


class CallbackSink(EventSink):
    """
    Forwards events to a sync or async callable.

    Callback errors are logged and never reach the engine.
    """

    def __init__(self, callback: EventCallback):
        self.callback = callback

    async def publish(self, event: WorkflowEvent) -> None:
        try:
            result = self.callback(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning(f"Event callback failed for {event.type}: {e}")


class QueueSink(EventSink):
    """
    Fans events out to per-execution subscriber queues.

    Subscribe with an execution id to receive that run's events, or with
    ``None`` to receive every event.
    """

    def __init__(self, maxsize: int = 0):
        self.maxsize = maxsize
        self._subscribers: Dict[Optional[str], Set[asyncio.Queue]] = {}

    def subscribe(self, execution_id: Optional[str] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.setdefault(execution_id, set()).add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue, execution_id: Optional[str] = None) -> None:
        queues = self._subscribers.get(execution_id)
        if queues is not None:
            queues.discard(queue)
            if not queues:
                del self._subscribers[execution_id]

    async def publish(self, event: WorkflowEvent) -> None:
        targets = list(self._subscribers.get(event.execution_id, ()))
        targets += list(self._subscribers.get(None, ()))
        for queue in targets:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full, dropping {event.type}")


class CompositeSink(EventSink):
    """Publishes each event to several sinks in order."""

    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self.sinks: List[EventSink] = list(sinks or [])

    def add(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    async def publish(self, event: WorkflowEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.publish(event)
            except Exception as e:
                logger.warning(f"Event sink {type(sink).__name__} failed: {e}")


class RecordingSink(EventSink):
    """Keeps every event in memory, for debugging and tests."""

    def __init__(self):
        self.events: List[WorkflowEvent] = []

    async def publish(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str, execution_id: Optional[str] = None) -> List[WorkflowEvent]:
        return [
            e for e in self.events
            if e.type == event_type and (execution_id is None or e.execution_id == execution_id)
        ]

    def types(self, execution_id: Optional[str] = None) -> List[str]:
        return [e.type for e in self.events if execution_id is None or e.execution_id == execution_id]
