"""
Bounded per-conversation task queue.

Work requests that arrive while a conversation is busy wait here in strict
arrival order. Each conversation holds at most MAX_QUEUE_PER_CONVERSATION
entries; beyond that enqueue is rejected with QueueFullError. Nothing is ever
dropped silently and there is no priority or reordering.

The queue is rewritten to its DurableStore after every mutation so queued
work can be surfaced after a restart. It is not auto-started on restart.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from .errors import QueueFullError
from .persistence import DurableStore, MemoryStore

logger = logging.getLogger("task_queue")

MAX_QUEUE_PER_CONVERSATION = 5


def _new_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


@dataclass
class QueuedTask:
    """A work request waiting for its conversation to become idle."""
    id: str
    conversation_id: int
    raw_message: str
    task: str
    context: str
    complexity: str
    working_dir: str
    memory_context: Optional[str] = None
    queued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "raw_message": self.raw_message,
            "task": self.task,
            "context": self.context,
            "complexity": self.complexity,
            "working_dir": self.working_dir,
            "memory_context": self.memory_context,
            "queued_at": self.queued_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedTask":
        return cls(
            id=data["id"],
            conversation_id=int(data["conversation_id"]),
            raw_message=data.get("raw_message", ""),
            task=data["task"],
            context=data.get("context", ""),
            complexity=data.get("complexity", "moderate"),
            working_dir=data["working_dir"],
            memory_context=data.get("memory_context"),
            queued_at=datetime.fromisoformat(data["queued_at"]),
        )


class TaskQueue:
    """FIFO queue per conversation, capped at MAX_QUEUE_PER_CONVERSATION."""

    def __init__(self, store: Optional[DurableStore] = None):
        self._store = store or MemoryStore()
        self._queues: Dict[int, List[QueuedTask]] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    def load(self) -> int:
        """
        Load queued tasks from the store. Call once at startup.

        Returns:
            Number of tasks loaded
        """
        raw = self._store.load({})
        queues: Dict[int, List[QueuedTask]] = {}
        if not isinstance(raw, dict):
            logger.warning(f"Queue state is not a dict (was {type(raw)}), resetting")
            raw = {}

        for key, entries in raw.items():
            tasks = []
            for entry in entries or []:
                try:
                    tasks.append(QueuedTask.from_dict(entry))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed queued task in conversation {key}: {e}")
            if tasks:
                queues[int(key)] = tasks

        with self._lock:
            self._queues = queues
        total = self.total_count()
        if total:
            logger.info(f"Loaded {total} queued tasks from disk")
        return total

    def _commit(self, queues: Dict[int, List[QueuedTask]]) -> None:
        """Persist a new queue map, then make it current. Caller holds the lock."""
        self._store.save({
            str(cid): [t.to_dict() for t in tasks]
            for cid, tasks in queues.items()
        })
        self._queues = queues

    def _without(self, conversation_id: int, index: int) -> Dict[int, List[QueuedTask]]:
        """Copy of the queue map with one entry removed."""
        queues = dict(self._queues)
        remaining = list(queues[conversation_id])
        del remaining[index]
        if remaining:
            queues[conversation_id] = remaining
        else:
            del queues[conversation_id]
        return queues

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------
    def enqueue(
        self,
        conversation_id: int,
        raw_message: str,
        task: str,
        context: str,
        complexity: str,
        working_dir: str,
        memory_context: Optional[str] = None,
    ) -> QueuedTask:
        """
        Append a work request to the conversation's queue.

        Returns:
            The queued task. Its position is len(peek(conversation_id)).

        Raises:
            QueueFullError: The conversation already holds the maximum
            OSError: The queue could not be persisted; nothing was queued
        """
        with self._lock:
            queue = self._queues.get(conversation_id, [])
            if len(queue) >= MAX_QUEUE_PER_CONVERSATION:
                logger.warning(f"Queue full for conversation {conversation_id}")
                raise QueueFullError(conversation_id, MAX_QUEUE_PER_CONVERSATION)

            queued = QueuedTask(
                id=_new_id("q"),
                conversation_id=conversation_id,
                raw_message=raw_message,
                task=task,
                context=context,
                complexity=complexity,
                working_dir=working_dir,
                memory_context=memory_context,
            )
            queues = dict(self._queues)
            queues[conversation_id] = queue + [queued]
            self._commit(queues)
            position = len(queues[conversation_id])

        logger.info(
            f"Task {queued.id} queued for conversation {conversation_id} "
            f"(position {position})"
        )
        return queued

    def dequeue(self, conversation_id: int) -> Optional[QueuedTask]:
        """Pop the oldest task, or None when empty."""
        with self._lock:
            queue = self._queues.get(conversation_id)
            if not queue:
                return None
            task = queue[0]
            self._commit(self._without(conversation_id, 0))

        logger.info(f"Task {task.id} dequeued for conversation {conversation_id}")
        return task

    def cancel_by_position(self, conversation_id: int, position: int) -> Optional[QueuedTask]:
        """
        Remove the task at a 1-based position.

        Returns:
            The removed task, or None if the position is out of range
        """
        with self._lock:
            queue = self._queues.get(conversation_id)
            if not queue or position < 1 or position > len(queue):
                return None
            task = queue[position - 1]
            self._commit(self._without(conversation_id, position - 1))

        logger.info(f"Task {task.id} cancelled at position {position}")
        return task

    def cancel(self, task_id: str) -> bool:
        """Remove a task by id from whichever conversation holds it."""
        with self._lock:
            for cid, queue in self._queues.items():
                for i, task in enumerate(queue):
                    if task.id == task_id:
                        self._commit(self._without(cid, i))
                        logger.info(f"Task {task_id} cancelled")
                        return True
        return False

    def clear(self, conversation_id: int) -> int:
        """Drop every queued task of the conversation and return how many."""
        with self._lock:
            queue = self._queues.get(conversation_id, [])
            if queue:
                queues = dict(self._queues)
                del queues[conversation_id]
                self._commit(queues)
        if queue:
            logger.info(f"Cleared {len(queue)} queued tasks for conversation {conversation_id}")
        return len(queue)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------
    def peek(self, conversation_id: int) -> List[QueuedTask]:
        """Ordered copy of the conversation's queue."""
        with self._lock:
            return list(self._queues.get(conversation_id, []))

    def length(self, conversation_id: int) -> int:
        with self._lock:
            return len(self._queues.get(conversation_id, []))

    def has_queued(self, conversation_id: int) -> bool:
        return self.length(conversation_id) > 0

    def total_count(self) -> int:
        with self._lock:
            return sum(len(q) for q in self._queues.values())

    def conversations_with_queued(self) -> List[int]:
        with self._lock:
            return [cid for cid, q in self._queues.items() if q]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total": sum(len(q) for q in self._queues.values()),
                "by_conversation": {cid: len(q) for cid, q in self._queues.items()},
                "capacity_per_conversation": MAX_QUEUE_PER_CONVERSATION,
            }
