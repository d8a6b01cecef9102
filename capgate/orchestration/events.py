"""
Workflow Events

Explicit event bus for workflow progress. Subscribers are either callbacks
(sync or async) or async streams. Events for one workflow carry a monotonic
per-workflow sequence number and are delivered in emission order. There is
no replay: a subscriber sees only events emitted after it subscribed.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class WorkflowEventType(str, Enum):
    WORKFLOW_STARTED = "workflowStarted"
    STEP_STARTED = "stepStarted"
    STEP_COMPLETED = "stepCompleted"
    STEP_FAILED = "stepFailed"
    WORKFLOW_COMPLETED = "workflowCompleted"
    WORKFLOW_FAILED = "workflowFailed"
    WORKFLOW_CANCELLED = "workflowCancelled"
    RECOVERY_ATTEMPTED = "recoveryAttempted"


@dataclass(frozen=True)
class WorkflowEvent:
    type: WorkflowEventType
    workflow_id: str
    sequence: int
    timestamp: datetime = field(default_factory=datetime.now)
    step_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "workflow_id": self.workflow_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "step_id": self.step_id,
            "data": self.data,
        }


EventCallback = Callable[[WorkflowEvent], Any]

_CLOSED = object()


class EventStream:
    """
    Async iterator over events, subscribed from construction.

    Ends when the bus closes the workflow it follows, or on close().
    """

    def __init__(self, bus: "EventBus", workflow_id: Optional[str]):
        self.workflow_id = workflow_id
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def _offer(self, item: Any) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> WorkflowEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self.close()
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._bus._remove_stream(self)


class EventBus:
    """Fan-out of workflow events to callbacks and streams."""

    def __init__(self):
        self._callbacks: List[EventCallback] = []
        self._streams: List[EventStream] = []
        self._sequences: Dict[str, int] = {}

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def stream(self, workflow_id: Optional[str] = None) -> EventStream:
        """Open a stream of events, optionally for one workflow only."""
        stream = EventStream(self, workflow_id)
        self._streams.append(stream)
        return stream

    def _remove_stream(self, stream: EventStream) -> None:
        if stream in self._streams:
            self._streams.remove(stream)

    async def emit(
        self,
        event_type: WorkflowEventType,
        workflow_id: str,
        step_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> WorkflowEvent:
        sequence = self._sequences.get(workflow_id, 0) + 1
        self._sequences[workflow_id] = sequence

        event = WorkflowEvent(
            type=event_type,
            workflow_id=workflow_id,
            sequence=sequence,
            step_id=step_id,
            data=data or {},
        )

        for callback in list(self._callbacks):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event subscriber failed on {event_type.value}: {e}")

        for stream in list(self._streams):
            if stream.workflow_id in (None, workflow_id):
                stream._offer(event)

        return event

    def close(self, workflow_id: str) -> None:
        """End every stream following ``workflow_id``. No more events will follow."""
        for stream in list(self._streams):
            if stream.workflow_id == workflow_id:
                stream._offer(_CLOSED)
