"""
Per-conversation execution lock.

Each conversation has at most one live CancellationToken. Acquiring a busy
conversation is a caller error (LockBusyError); callers enqueue instead.

The lock is released and re-acquired between the sub-phases of one task
(handoff). During that window the conversation reports idle but stays
reserved for the current holder, and a cancel request landing in the window
cancels the next phase before it starts.

All operations are synchronous and never suspend, except handoff() which
yields to the event loop exactly once.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Dict, List

from .errors import LockBusyError, TaskCancelledError

logger = logging.getLogger("execution_lock")


class CancellationToken:
    """One-shot cancellation signal shared with in-flight runner invocations."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        """Suspend until cancelled."""
        await self._event.wait()

    def raise_if_cancelled(self, conversation_id: Optional[int] = None) -> None:
        if self.cancelled:
            raise TaskCancelledError(conversation_id=conversation_id)


@dataclass
class _LockEntry:
    token: CancellationToken
    busy: bool = True


class ExecutionLock:
    """Busy/idle flag plus cancellation token registry, keyed by conversation."""

    def __init__(self):
        self._entries: Dict[int, _LockEntry] = {}

    def try_acquire(
        self,
        conversation_id: int,
        token: Optional[CancellationToken] = None,
    ) -> CancellationToken:
        """
        Mark the conversation busy and register a cancellation token.

        Args:
            conversation_id: Conversation to lock
            token: Re-use an existing token (a long-running holder keeps
                one token across several acquisitions)

        Returns:
            The live token

        Raises:
            LockBusyError: The conversation is busy, or reserved by a holder
                in the middle of a handoff
        """
        entry = self._entries.get(conversation_id)
        if entry is not None and (entry.busy or entry.token is not token):
            raise LockBusyError(conversation_id)

        token = token or CancellationToken()
        self._entries[conversation_id] = _LockEntry(token=token)
        logger.debug(f"Conversation {conversation_id} acquired")
        return token

    def release(self, conversation_id: int) -> None:
        """Mark the conversation idle and drop its token."""
        if self._entries.pop(conversation_id, None) is not None:
            logger.debug(f"Conversation {conversation_id} released")

    def is_busy(self, conversation_id: int) -> bool:
        entry = self._entries.get(conversation_id)
        return entry is not None and entry.busy

    def token(self, conversation_id: int) -> Optional[CancellationToken]:
        entry = self._entries.get(conversation_id)
        return entry.token if entry else None

    def cancel(self, conversation_id: int) -> bool:
        """
        Signal the conversation's live token.

        Returns:
            False if nothing was running (or it was already cancelled)
        """
        entry = self._entries.get(conversation_id)
        if entry is None or entry.token.cancelled:
            return False
        entry.token.cancel()
        logger.info(f"Cancellation requested for conversation {conversation_id}")
        return True

    async def handoff(self, conversation_id: int) -> CancellationToken:
        """
        Release and immediately re-acquire between two phases of one task.

        Raises:
            TaskCancelledError: A cancel landed before the next phase started
            RuntimeError: The caller does not hold the lock
        """
        entry = self._entries.get(conversation_id)
        if entry is None or not entry.busy:
            raise RuntimeError(
                f"handoff on conversation {conversation_id} without holding the lock"
            )

        entry.busy = False
        try:
            await asyncio.sleep(0)
        finally:
            entry.busy = True

        if self._entries.get(conversation_id) is not entry:
            # Released from outside while parked
            raise TaskCancelledError(conversation_id=conversation_id)
        entry.token.raise_if_cancelled(conversation_id)
        return entry.token

    def busy_conversations(self) -> List[int]:
        return [cid for cid, entry in self._entries.items() if entry.busy]
