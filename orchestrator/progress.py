"""
Progress side channel.

The orchestrator publishes phase, status, cost and duration updates for
display. Publishing never blocks task execution:

- ProgressChannel is bounded; when full, the oldest event is dropped
- ProgressPump drains the channel to registered sinks in the background
- a failing sink is logged and skipped, it never reaches the orchestrator

Sinks:
- LoggingProgressSink: writes events to the "progress" logger
- WebhookProgressSink: POSTs each event as JSON (httpx)
"""

import asyncio
import collections
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Deque

import httpx

logger = logging.getLogger("progress")


class ProgressKind(str, Enum):
    """What a progress event reports."""
    QUEUED = "queued"
    PLANNING_STARTED = "planning_started"
    PLAN_READY = "plan_ready"
    PLAN_SUPERSEDED = "plan_superseded"
    EXECUTION_STARTED = "execution_started"
    EXECUTION_FINISHED = "execution_finished"
    QUEUE_ADVANCED = "queue_advanced"
    TOOL_ACTIVITY = "tool_activity"
    STATUS = "status"
    RESTART_REQUIRED = "restart_required"
    ERROR = "error"
    CANCELLED = "cancelled"
    LOOP_STARTED = "loop_started"
    LOOP_ITERATION = "loop_iteration"
    LOOP_PAUSED = "loop_paused"
    LOOP_FINISHED = "loop_finished"


@dataclass
class ProgressEvent:
    conversation_id: int
    kind: ProgressKind
    message: str
    phase: Optional[str] = None
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "kind": self.kind.value,
            "message": self.message,
            "phase": self.phase,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
        }


class ProgressChannel:
    """Bounded FIFO of progress events with drop-oldest backpressure."""

    def __init__(self, maxsize: int = 100):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._events: Deque[ProgressEvent] = collections.deque()
        self._maxsize = maxsize
        self._available = asyncio.Event()
        self.dropped = 0

    def publish(self, event: ProgressEvent) -> None:
        """Add an event without blocking. Drops the oldest event when full."""
        if len(self._events) >= self._maxsize:
            self._events.popleft()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"Progress channel full, dropped {self.dropped} events so far")
        self._events.append(event)
        self._available.set()

    def emit(
        self,
        conversation_id: int,
        kind: ProgressKind,
        message: str,
        **kwargs: Any,
    ) -> None:
        self.publish(ProgressEvent(conversation_id, kind, message, **kwargs))

    def drain_nowait(self) -> List[ProgressEvent]:
        """Take every buffered event."""
        events = list(self._events)
        self._events.clear()
        self._available.clear()
        return events

    async def get(self) -> ProgressEvent:
        """Wait for the next event."""
        while not self._events:
            self._available.clear()
            await self._available.wait()
        event = self._events.popleft()
        if not self._events:
            self._available.clear()
        return event

    def __len__(self) -> int:
        return len(self._events)


class ProgressSink:
    """Destination for progress events."""

    async def deliver(self, event: ProgressEvent) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LoggingProgressSink(ProgressSink):
    async def deliver(self, event: ProgressEvent) -> None:
        level = logging.WARNING if event.kind == ProgressKind.ERROR else logging.INFO
        logger.log(level, f"[{event.conversation_id}] {event.kind.value}: {event.message}")


class WebhookProgressSink(ProgressSink):
    """POST every event to a webhook URL."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def deliver(self, event: ProgressEvent) -> None:
        response = await self._client.post(self._url, json=event.to_dict())
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


class ProgressPump:
    """Background task that drains a ProgressChannel into sinks."""

    def __init__(self, channel: ProgressChannel, sinks: Optional[List[ProgressSink]] = None):
        self._channel = channel
        self._sinks: List[ProgressSink] = list(sinks or [])
        self._task: Optional[asyncio.Task] = None

    def add_sink(self, sink: ProgressSink) -> None:
        self._sinks.append(sink)

    async def start(self) -> None:
        if self._task is not None:
            logger.warning("Progress pump already running")
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        # Flush what is left, then release sink resources
        for event in self._channel.drain_nowait():
            await self._deliver(event)
        for sink in self._sinks:
            await sink.close()

    async def _run(self) -> None:
        while True:
            event = await self._channel.get()
            await self._deliver(event)

    async def _deliver(self, event: ProgressEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.deliver(event)
            except Exception as e:
                logger.error(f"Progress sink {type(sink).__name__} failed: {e}")
