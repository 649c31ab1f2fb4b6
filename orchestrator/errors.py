"""
Orchestrator error taxonomy.

Every rejection or failure surfaced by the orchestration layer maps onto one
ErrorKind so that synchronous failures and failures captured from supervised
background tasks are reported through the same path.

Propagation:
- QUEUE_FULL / NO_PENDING_PLAN: reported directly to the caller
- PLANNING_FAILED / EXECUTION_FAILED: reported, lock released, queue drained
- CANCELLED: normal early exit, never logged as an error
- CIRCUIT_BREAKER: improve loop paused until explicitly resumed
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Error categories reported to callers and progress sinks."""
    QUEUE_FULL = "queue_full"
    NO_PENDING_PLAN = "no_pending_plan"
    PLANNING_FAILED = "planning_failed"
    EXECUTION_FAILED = "execution_failed"
    CANCELLED = "cancelled"
    CIRCUIT_BREAKER = "circuit_breaker"
    BUSY = "busy"
    RUNNER = "runner"
    INTERNAL = "internal"


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""
    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, conversation_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.conversation_id = conversation_id


class QueueFullError(OrchestratorError):
    kind = ErrorKind.QUEUE_FULL

    def __init__(self, conversation_id: int, capacity: int):
        super().__init__(f"Queue is full (max {capacity} tasks)", conversation_id)
        self.capacity = capacity


class NoPendingPlanError(OrchestratorError):
    kind = ErrorKind.NO_PENDING_PLAN

    def __init__(self, conversation_id: int):
        super().__init__(
            "No pending plan found. It may have been lost during a restart, "
            "please resubmit the task.",
            conversation_id,
        )


class LockBusyError(OrchestratorError):
    """Raised when acquiring the execution lock of a busy conversation."""
    kind = ErrorKind.BUSY

    def __init__(self, conversation_id: int):
        super().__init__(f"Conversation {conversation_id} is busy", conversation_id)


class PlanningFailedError(OrchestratorError):
    kind = ErrorKind.PLANNING_FAILED


class ExecutionFailedError(OrchestratorError):
    kind = ErrorKind.EXECUTION_FAILED


class TaskCancelledError(OrchestratorError):
    """Explicit abort. Not a failure."""
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Cancelled", conversation_id: Optional[int] = None):
        super().__init__(message, conversation_id)


class CircuitBreakerTripped(OrchestratorError):
    kind = ErrorKind.CIRCUIT_BREAKER


class RunnerError(OrchestratorError):
    """
    The external runner could not produce a result.

    Attributes:
        transient: Failure looks temporary (overload, network), worth one retry
        rate_limited: Runner reported a rate limit
        session_error: Resuming the given session failed
    """
    kind = ErrorKind.RUNNER

    def __init__(
        self,
        message: str,
        transient: bool = False,
        rate_limited: bool = False,
        session_error: bool = False,
    ):
        super().__init__(message)
        self.transient = transient
        self.rate_limited = rate_limited
        self.session_error = session_error


class ImproveLoopError(OrchestratorError):
    """Improve loop command rejected (already running, nothing to resume, ...)."""
    kind = ErrorKind.BUSY
