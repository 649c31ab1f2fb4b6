"""
Active task tracker.

A record is written immediately before the external runner starts and removed
when it finishes. Whatever survives a restart was interrupted mid-run and is
surfaced for manual resume or discard; nothing is retried automatically since
the side effects of an interrupted run are of unknown completeness.

A record without an external session id cannot be resumed.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Set

from .persistence import DurableStore, MemoryStore

logger = logging.getLogger("active_task_tracker")


@dataclass
class ActiveTaskRecord:
    """An external runner invocation in flight."""
    id: str
    conversation_id: int
    task: str
    working_dir: str
    complexity: str = "moderate"
    external_session_id: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def resumable(self) -> bool:
        return bool(self.external_session_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "task": self.task,
            "working_dir": self.working_dir,
            "complexity": self.complexity,
            "external_session_id": self.external_session_id,
            "started_at": self.started_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActiveTaskRecord":
        return cls(
            id=data["id"],
            conversation_id=int(data["conversation_id"]),
            task=data["task"],
            working_dir=data["working_dir"],
            complexity=data.get("complexity", "moderate"),
            external_session_id=data.get("external_session_id") or None,
            started_at=datetime.fromisoformat(data["started_at"]),
        )


class ActiveTaskTracker:
    """Durable registry of in-flight runner invocations."""

    def __init__(self, store: Optional[DurableStore] = None):
        self._store = store or MemoryStore()
        self._tasks: Dict[str, ActiveTaskRecord] = {}
        # Records found on disk at startup, i.e. interrupted by the last shutdown
        self._interrupted_ids: Set[str] = set()
        self._lock = threading.Lock()

    def load(self) -> int:
        """
        Load surviving records. Call once at startup, before anything is tracked.

        Returns:
            Number of interrupted tasks found
        """
        raw = self._store.load([])
        tasks = {}
        for entry in raw if isinstance(raw, list) else []:
            try:
                record = ActiveTaskRecord.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed active task record: {e}")
                continue
            tasks[record.id] = record

        with self._lock:
            self._tasks = tasks
            self._interrupted_ids = set(tasks)
        if tasks:
            logger.warning(f"Found {len(tasks)} interrupted tasks from a previous run")
        return len(tasks)

    def _commit(self, tasks: Dict[str, ActiveTaskRecord]) -> None:
        """Persist a new record map, then make it current. Caller holds the lock."""
        self._store.save([t.to_dict() for t in tasks.values()])
        self._tasks = tasks

    def track(
        self,
        conversation_id: int,
        task: str,
        working_dir: str,
        complexity: str = "moderate",
    ) -> ActiveTaskRecord:
        """Record an invocation about to start. Durable before returning."""
        record = ActiveTaskRecord(
            id=f"task-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}",
            conversation_id=conversation_id,
            task=task,
            working_dir=working_dir,
            complexity=complexity,
        )
        with self._lock:
            tasks = dict(self._tasks)
            tasks[record.id] = record
            self._commit(tasks)
        logger.info(f"Tracking task {record.id} for conversation {conversation_id}")
        return record

    def update_session_id(self, task_id: str, session_id: str) -> bool:
        """Attach the runner's session id once it is reported."""
        with self._lock:
            record = self._tasks.get(task_id)
            if record is None or record.external_session_id == session_id:
                return False
            tasks = dict(self._tasks)
            tasks[task_id] = replace(record, external_session_id=session_id)
            self._commit(tasks)
        logger.debug(f"Task {task_id} bound to session {session_id}")
        return True

    def complete(self, task_id: str) -> None:
        """Remove the record of a finished invocation."""
        with self._lock:
            if task_id not in self._tasks:
                return
            tasks = dict(self._tasks)
            del tasks[task_id]
            self._commit(tasks)
            self._interrupted_ids.discard(task_id)
        logger.info(f"Task {task_id} completed")

    def get(self, task_id: str) -> Optional[ActiveTaskRecord]:
        with self._lock:
            return self._tasks.get(task_id)

    def get_all(self) -> List[ActiveTaskRecord]:
        with self._lock:
            return sorted(self._tasks.values(), key=lambda t: t.started_at)

    def get_for_conversation(self, conversation_id: int) -> List[ActiveTaskRecord]:
        return [t for t in self.get_all() if t.conversation_id == conversation_id]

    def get_interrupted(self, conversation_id: Optional[int] = None) -> List[ActiveTaskRecord]:
        """Records left over from the previous run, oldest first."""
        return [
            t for t in self.get_all()
            if t.id in self._interrupted_ids
            and (conversation_id is None or t.conversation_id == conversation_id)
        ]

    def has_interrupted(self) -> bool:
        with self._lock:
            return bool(self._interrupted_ids)

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._tasks)
            self._commit({})
            self._interrupted_ids = set()
        return count
