"""
Pending plan store.

Holds at most one presented-but-undecided plan per conversation. The store is
written through on every mutation so an approval that arrives after a restart
still resolves. consume() is the only mutating read: approval takes the plan
and deletes it in one step, which is what makes double approval impossible.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from .persistence import DurableStore, MemoryStore

logger = logging.getLogger("plan_store")


@dataclass
class PendingPlan:
    """A plan presented to the user and awaiting approve / revise / cancel."""
    conversation_id: int
    task: str
    context: str
    plan_text: str
    complexity: str
    working_dir: str
    raw_message: str
    memory_context: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    revision_count: int = 0

    def revised(self, plan_text: str) -> "PendingPlan":
        """Copy carrying a new plan text and the next revision number."""
        return replace(
            self,
            plan_text=plan_text,
            revision_count=self.revision_count + 1,
            created_at=datetime.now(timezone.utc),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "task": self.task,
            "context": self.context,
            "plan_text": self.plan_text,
            "complexity": self.complexity,
            "working_dir": self.working_dir,
            "raw_message": self.raw_message,
            "memory_context": self.memory_context,
            "created_at": self.created_at.isoformat(),
            "revision_count": self.revision_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingPlan":
        return cls(
            conversation_id=int(data["conversation_id"]),
            task=data["task"],
            context=data.get("context", ""),
            plan_text=data["plan_text"],
            complexity=data.get("complexity", "moderate"),
            working_dir=data["working_dir"],
            raw_message=data.get("raw_message", ""),
            memory_context=data.get("memory_context"),
            created_at=datetime.fromisoformat(data["created_at"]),
            revision_count=int(data.get("revision_count", 0)),
        )


class PlanStore:
    """Single-slot-per-conversation durable plan store."""

    def __init__(self, store: Optional[DurableStore] = None):
        self._store = store or MemoryStore()
        self._plans: Dict[int, PendingPlan] = {}
        self._lock = threading.Lock()

    def load(self) -> int:
        """Load pending plans from the store. Call once at startup."""
        raw = self._store.load([])
        plans = {}
        for entry in raw if isinstance(raw, list) else []:
            try:
                plan = PendingPlan.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed pending plan: {e}")
                continue
            plans[plan.conversation_id] = plan

        with self._lock:
            self._plans = plans
        if plans:
            logger.info(f"Loaded {len(plans)} pending plans from disk")
        return len(plans)

    def _commit(self, plans: Dict[int, PendingPlan]) -> None:
        """Persist a new plan map, then make it current. Caller holds the lock."""
        self._store.save([p.to_dict() for p in plans.values()])
        self._plans = plans

    def set(self, conversation_id: int, plan: PendingPlan) -> None:
        """
        Store a new or revised plan, replacing any existing one.

        Raises:
            OSError: The plan could not be persisted; the previous slot is kept
        """
        with self._lock:
            plans = dict(self._plans)
            plans[conversation_id] = plan
            self._commit(plans)
        logger.info(
            f"Plan stored for conversation {conversation_id} "
            f"(revision {plan.revision_count})"
        )

    def get(self, conversation_id: int) -> Optional[PendingPlan]:
        with self._lock:
            return self._plans.get(conversation_id)

    def consume(self, conversation_id: int) -> Optional[PendingPlan]:
        """Get and delete the pending plan. On a failed save the plan stays."""
        with self._lock:
            plan = self._plans.get(conversation_id)
            if plan is not None:
                plans = dict(self._plans)
                del plans[conversation_id]
                self._commit(plans)
        if plan is not None:
            logger.info(f"Plan consumed for conversation {conversation_id}")
        return plan

    def cancel(self, conversation_id: int) -> bool:
        """Delete the pending plan. Returns whether one existed."""
        return self.consume(conversation_id) is not None

    def has(self, conversation_id: int) -> bool:
        with self._lock:
            return conversation_id in self._plans

    def conversation_ids(self) -> List[int]:
        with self._lock:
            return list(self._plans)
