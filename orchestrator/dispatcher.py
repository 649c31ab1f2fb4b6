"""
Orchestration Dispatcher.

Consumes classified intents and drives the per-conversation state machine:

    Idle -> Planning -> PlanPresented -> Executing -> Idle
                            |  revise -> Planning
                            |  cancel -> Idle

CRITICAL CONSTRAINTS:
- At most one runner invocation per conversation at a time (ExecutionLock)
- Work arriving while busy is queued (max 5); a full queue is rejected
  explicitly, never dropped
- Nothing executes without a plan the user approved, queued work included
- Approve / revise / cancel arriving while busy are reported, not queued
- Planning and execution run as supervised background tasks; a crash in one
  is reported through the same error path as a normal failure
- After execution, or a failed or cancelled planning pass, the lock is
  released and exactly one queued item starts its own planning pass
- A state write that fails after the lock was taken releases the lock and is
  reported as a planning or execution failure; the stores keep their
  previous contents

An ActiveTaskRecord is written before every read-write runner invocation and
removed when it returns. Records that survive a restart are offered for
manual resume (replaying the runner session) or discard.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, List, Set, Callable, Union

from pydantic import BaseModel

from .active_task_tracker import ActiveTaskTracker, ActiveTaskRecord
from .config import OrchestratorConfig
from .errors import (
    ErrorKind,
    OrchestratorError,
    LockBusyError,
    QueueFullError,
    NoPendingPlanError,
    PlanningFailedError,
    ExecutionFailedError,
    TaskCancelledError,
    RunnerError,
)
from .execution_lock import ExecutionLock, CancellationToken
from .intents import WorkRequest, ApprovePlan, RevisePlan, CancelPlan, parse_intent
from .plan_store import PlanStore, PendingPlan
from .progress import ProgressChannel, ProgressKind
from .prompts import (
    EXECUTOR_SYSTEM_PROMPT,
    PLANNER_SYSTEM_PROMPT,
    build_task_prompt,
    build_revision_prompt,
    build_resume_prompt,
    enrich_context_with_plan,
)
from .runner import TaskRunner, RunRequest, RunMode, RunResult
from .task_queue import TaskQueue, QueuedTask

logger = logging.getLogger("dispatcher")

# Failure details forwarded to the user are cut to this length
FAILURE_DETAIL_LIMIT = 500


class DispatchStatus(str, Enum):
    """Immediate outcome of a dispatcher call."""
    PLANNING_STARTED = "planning_started"
    QUEUED = "queued"
    QUEUE_FULL = "queue_full"
    EXECUTION_STARTED = "execution_started"
    NO_PENDING_PLAN = "no_pending_plan"
    BUSY = "busy"
    PLAN_CANCELLED = "plan_cancelled"
    CANCEL_REQUESTED = "cancel_requested"
    NOTHING_TO_CANCEL = "nothing_to_cancel"
    QUEUE_CANCELLED = "queue_cancelled"
    QUEUE_CLEARED = "queue_cleared"
    QUEUE_EMPTY = "queue_empty"
    NOT_FOUND = "not_found"
    RESUMED = "resumed"
    DISCARDED = "discarded"
    FAILED = "failed"
    NO_ACTION = "no_action"


@dataclass(frozen=True)
class DispatchOutcome:
    """What happened, plus the message to show the user."""
    status: DispatchStatus
    message: str
    position: Optional[int] = None
    task_id: Optional[str] = None
    count: Optional[int] = None
    error_kind: Optional[ErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "position": self.position,
            "task_id": self.task_id,
            "count": self.count,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


def format_plan_message(plan: PendingPlan) -> str:
    header = "Plan" if plan.revision_count == 0 else f"Revised plan (revision {plan.revision_count})"
    return f"{header}:\n\n{plan.plan_text}\n\nApprove, request changes, or cancel?"


class Dispatcher:
    """
    Per-conversation plan/approve/execute state machine.

    All collaborators are injected. The dispatcher is the only component that
    mutates the queue and the conversation busy state for interactive work.
    """

    def __init__(
        self,
        lock: ExecutionLock,
        queue: TaskQueue,
        plans: PlanStore,
        tracker: ActiveTaskTracker,
        runner: TaskRunner,
        progress: ProgressChannel,
        config: OrchestratorConfig,
        is_reserved: Optional[Callable[[int], bool]] = None,
    ):
        """
        Args:
            is_reserved: Returns True while something outside the dispatcher
                (the improve loop) owns the conversation; queued work is not
                started while it does
        """
        self._lock = lock
        self._queue = queue
        self._plans = plans
        self._tracker = tracker
        self._runner = runner
        self._progress = progress
        self._config = config
        self._is_reserved = is_reserved
        self._tasks: Dict[int, Set[asyncio.Task]] = {}

    # -------------------------------------------------------------------------
    # Intent entry point
    # -------------------------------------------------------------------------
    async def handle_intent(
        self,
        conversation_id: int,
        intent: Union[BaseModel, Dict[str, Any], None],
        raw_message: str = "",
        working_dir: str = ".",
        memory_context: Optional[str] = None,
    ) -> DispatchOutcome:
        """
        Route one classified intent.

        Args:
            conversation_id: Conversation the message came from
            intent: Typed intent, or the classifier's raw dict
            raw_message: The user's message as typed
            working_dir: Directory the work applies to
            memory_context: Optional memory block forwarded to the runner

        Returns:
            DispatchOutcome
        """
        if isinstance(intent, dict) or intent is None:
            intent = parse_intent(intent)

        if intent is None:
            return DispatchOutcome(DispatchStatus.NO_ACTION, "")
        if isinstance(intent, WorkRequest):
            return await self.submit_work(
                conversation_id,
                task=intent.task,
                context=intent.context,
                complexity=intent.complexity,
                working_dir=working_dir,
                raw_message=raw_message or intent.task,
                memory_context=memory_context,
            )
        if isinstance(intent, ApprovePlan):
            return await self.approve_plan(conversation_id)
        if isinstance(intent, RevisePlan):
            return await self.revise_plan(conversation_id, intent.feedback)
        if isinstance(intent, CancelPlan):
            return await self.cancel_plan(conversation_id)
        raise TypeError(f"Unsupported intent: {type(intent).__name__}")

    # -------------------------------------------------------------------------
    # State machine transitions
    # -------------------------------------------------------------------------
    async def submit_work(
        self,
        conversation_id: int,
        task: str,
        context: str,
        complexity: str,
        working_dir: str,
        raw_message: str,
        memory_context: Optional[str] = None,
    ) -> DispatchOutcome:
        """Start planning, or queue the request when the conversation is busy."""
        try:
            token = self._lock.try_acquire(conversation_id)
        except LockBusyError:
            return self._enqueue(
                conversation_id, raw_message, task, context,
                complexity, working_dir, memory_context,
            )

        draft = PendingPlan(
            conversation_id=conversation_id,
            task=task,
            context=context,
            plan_text="",
            complexity=complexity,
            working_dir=working_dir,
            raw_message=raw_message,
            memory_context=memory_context,
        )
        try:
            self._begin_planning(conversation_id, token, draft)
        except OSError as e:
            return self._state_write_failed(conversation_id, PlanningFailedError, e)
        return DispatchOutcome(DispatchStatus.PLANNING_STARTED, "Planning the task...")

    async def approve_plan(self, conversation_id: int) -> DispatchOutcome:
        """Consume the pending plan and start executing it."""
        if not self._plans.has(conversation_id):
            return self._no_pending_plan(conversation_id)

        try:
            token = self._lock.try_acquire(conversation_id)
        except LockBusyError:
            return self._busy(conversation_id, "approve")

        try:
            plan = self._plans.consume(conversation_id)
        except OSError as e:
            return self._state_write_failed(conversation_id, ExecutionFailedError, e)
        if plan is None:
            self._lock.release(conversation_id)
            return self._no_pending_plan(conversation_id)

        self._spawn(
            conversation_id,
            self._execute_phase(conversation_id, token, plan),
            phase="execution",
        )
        return DispatchOutcome(DispatchStatus.EXECUTION_STARTED, "Plan approved, executing...")

    async def revise_plan(self, conversation_id: int, feedback: str) -> DispatchOutcome:
        """Re-plan with the user's feedback and the previous plan text."""
        plan = self._plans.get(conversation_id)
        if plan is None:
            return self._no_pending_plan(conversation_id)

        try:
            token = self._lock.try_acquire(conversation_id)
        except LockBusyError:
            return self._busy(conversation_id, "revise")

        self._spawn(
            conversation_id,
            self._plan_phase(conversation_id, token, plan, feedback=feedback),
            phase="planning",
        )
        return DispatchOutcome(DispatchStatus.PLANNING_STARTED, "Revising the plan...")

    async def cancel_plan(self, conversation_id: int) -> DispatchOutcome:
        """Drop the pending plan. The conversation returns to idle."""
        if not self._plans.has(conversation_id):
            return self._no_pending_plan(conversation_id)
        if self._lock.is_busy(conversation_id):
            return self._busy(conversation_id, "cancel")

        if not self._plans.cancel(conversation_id):
            return self._no_pending_plan(conversation_id)

        logger.info(f"Plan cancelled for conversation {conversation_id}")
        self._start_next_queued(conversation_id)
        return DispatchOutcome(DispatchStatus.PLAN_CANCELLED, "Plan cancelled.")

    async def cancel_running(self, conversation_id: int) -> DispatchOutcome:
        """Abort whatever is running. Queued items are left alone."""
        if self._lock.cancel(conversation_id):
            return DispatchOutcome(DispatchStatus.CANCEL_REQUESTED, "Request cancelled.")
        return DispatchOutcome(DispatchStatus.NOTHING_TO_CANCEL, "Nothing to cancel.")

    # -------------------------------------------------------------------------
    # Queue surface
    # -------------------------------------------------------------------------
    def list_queue(self, conversation_id: int) -> List[QueuedTask]:
        return self._queue.peek(conversation_id)

    async def cancel_queued(self, conversation_id: int, position: int) -> DispatchOutcome:
        removed = self._queue.cancel_by_position(conversation_id, position)
        if removed is None:
            return DispatchOutcome(
                DispatchStatus.NOT_FOUND,
                f"No queued task at position {position}.",
            )
        return DispatchOutcome(
            DispatchStatus.QUEUE_CANCELLED,
            f"Removed #{position} from the queue: {removed.task[:80]}",
            position=position,
            task_id=removed.id,
        )

    async def clear_queue(self, conversation_id: int) -> DispatchOutcome:
        count = self._queue.clear(conversation_id)
        if count == 0:
            return DispatchOutcome(DispatchStatus.QUEUE_EMPTY, "Queue is already empty.", count=0)
        return DispatchOutcome(
            DispatchStatus.QUEUE_CLEARED,
            f"Cleared {count} queued task{'s' if count != 1 else ''}.",
            count=count,
        )

    async def resume_queue(self, conversation_id: int) -> DispatchOutcome:
        """Start the head of the queue. Used after a restart and when the improve loop ends."""
        if not self._queue.has_queued(conversation_id):
            return DispatchOutcome(DispatchStatus.QUEUE_EMPTY, "No queued tasks.", count=0)
        if self._plans.has(conversation_id):
            return DispatchOutcome(
                DispatchStatus.BUSY,
                "A plan is waiting for your decision. Approve or cancel it, "
                "then the queue continues.",
                error_kind=ErrorKind.BUSY,
            )
        if self._lock.is_busy(conversation_id) or (
            self._is_reserved is not None and self._is_reserved(conversation_id)
        ):
            return self._busy(conversation_id, "resume the queue")
        if not self._start_next_queued(conversation_id):
            # Only a failed queue write gets here; the item stays queued
            return DispatchOutcome(
                DispatchStatus.FAILED,
                "Could not start the queued task, it is still queued. Try again later.",
                error_kind=ErrorKind.PLANNING_FAILED,
            )
        return DispatchOutcome(DispatchStatus.PLANNING_STARTED, "Starting queued task...")

    # -------------------------------------------------------------------------
    # Interrupted tasks
    # -------------------------------------------------------------------------
    def interrupted_tasks(self, conversation_id: Optional[int] = None) -> List[ActiveTaskRecord]:
        return self._tracker.get_interrupted(conversation_id)

    async def resume_interrupted(self, conversation_id: int, position: int = 1) -> DispatchOutcome:
        """
        Replay an interrupted task by resuming its runner session.

        A record without a session id cannot be resumed; it is discarded and
        reported as such.
        """
        records = self._tracker.get_interrupted(conversation_id)
        if position < 1 or position > len(records):
            return DispatchOutcome(DispatchStatus.NOT_FOUND, "No interrupted task to resume.")

        record = records[position - 1]
        if not record.resumable:
            self._tracker.complete(record.id)
            logger.warning(f"Interrupted task {record.id} has no session, discarding")
            return DispatchOutcome(
                DispatchStatus.DISCARDED,
                f"Cannot resume \"{record.task[:80]}\": it was interrupted before the "
                "runner reported a session. Discarded, please resubmit it.",
                task_id=record.id,
                error_kind=ErrorKind.EXECUTION_FAILED,
            )

        try:
            token = self._lock.try_acquire(conversation_id)
        except LockBusyError:
            return self._busy(conversation_id, "resume")

        try:
            self._tracker.complete(record.id)
        except OSError as e:
            return self._state_write_failed(conversation_id, ExecutionFailedError, e)
        self._spawn(
            conversation_id,
            self._run_execution(
                conversation_id,
                token,
                prompt=build_resume_prompt(record.task),
                task=record.task,
                working_dir=record.working_dir,
                complexity=record.complexity,
                session_id=record.external_session_id,
            ),
            phase="execution",
        )
        return DispatchOutcome(
            DispatchStatus.RESUMED,
            f"Resuming: {record.task[:80]}",
            task_id=record.id,
        )

    async def discard_interrupted(
        self,
        conversation_id: int,
        position: Optional[int] = None,
    ) -> DispatchOutcome:
        """Forget one interrupted task (1-based), or all of them."""
        records = self._tracker.get_interrupted(conversation_id)
        if position is not None:
            if position < 1 or position > len(records):
                return DispatchOutcome(DispatchStatus.NOT_FOUND, "No such interrupted task.")
            records = [records[position - 1]]
        for record in records:
            self._tracker.complete(record.id)
        return DispatchOutcome(
            DispatchStatus.DISCARDED,
            f"Discarded {len(records)} interrupted task{'s' if len(records) != 1 else ''}.",
            count=len(records),
        )

    # -------------------------------------------------------------------------
    # Supervision
    # -------------------------------------------------------------------------
    async def join(self, conversation_id: Optional[int] = None) -> None:
        """Wait until no background work is left (including work it starts)."""
        while True:
            pending = [
                task
                for cid, tasks in self._tasks.items()
                if conversation_id is None or cid == conversation_id
                for task in tasks
                if not task.done()
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all background work. In-flight records stay on disk as interrupted."""
        tasks = [t for tasks in self._tasks.values() for t in tasks if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Dispatcher stopped ({len(tasks)} background tasks cancelled)")

    def _spawn(self, conversation_id: int, coro, phase: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{phase}-{conversation_id}")
        self._tasks.setdefault(conversation_id, set()).add(task)
        task.add_done_callback(
            lambda t: self._on_background_done(conversation_id, phase, t)
        )
        return task

    def _on_background_done(self, conversation_id: int, phase: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(conversation_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                del self._tasks[conversation_id]

        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return

        # Unexpected crash: map onto the phase's failure kind
        logger.error(
            f"Background {phase} for conversation {conversation_id} crashed: {exc}",
            exc_info=exc,
        )
        error_cls = PlanningFailedError if phase == "planning" else ExecutionFailedError
        self._report_failure(conversation_id, error_cls(f"Internal error: {exc}", conversation_id))

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------
    def _begin_planning(
        self,
        conversation_id: int,
        token: CancellationToken,
        draft: PendingPlan,
    ) -> None:
        if self._plans.cancel(conversation_id):
            self._progress.emit(
                conversation_id,
                ProgressKind.PLAN_SUPERSEDED,
                "The previous pending plan was discarded in favour of the new request.",
            )
        self._spawn(
            conversation_id,
            self._plan_phase(conversation_id, token, draft),
            phase="planning",
        )

    async def _plan_phase(
        self,
        conversation_id: int,
        token: CancellationToken,
        base: PendingPlan,
        feedback: Optional[str] = None,
    ) -> None:
        """
        Read-only planning pass.

        For a revision `base` is the stored plan and stays pending if the
        pass fails. On success the lock is released and the plan awaits a
        decision; on failure or cancel the next queued item starts.
        """
        revising = feedback is not None
        presented = False
        interrupted = False
        try:
            self._progress.emit(
                conversation_id,
                ProgressKind.PLANNING_STARTED,
                "Revising the plan..." if revising else "Planning...",
                phase="planning",
            )
            prompt = build_task_prompt(
                base.task, base.context, base.raw_message,
                base.working_dir, base.memory_context,
            )
            if revising:
                prompt = build_revision_prompt(prompt, base.plan_text, feedback)

            result = await self._invoke(
                conversation_id,
                RunRequest(
                    prompt=prompt,
                    working_dir=base.working_dir,
                    mode=RunMode.READ_ONLY,
                    system_prompt=PLANNER_SYSTEM_PROMPT,
                    timeout_seconds=self._config.planning_timeout(base.complexity),
                    cancel_token=token,
                ),
                phase="planning",
                error_cls=PlanningFailedError,
            )

            plan = base.revised(result.result_text) if revising else PendingPlan(
                conversation_id=conversation_id,
                task=base.task,
                context=base.context,
                plan_text=result.result_text,
                complexity=base.complexity,
                working_dir=base.working_dir,
                raw_message=base.raw_message,
                memory_context=base.memory_context,
            )
            try:
                self._plans.set(conversation_id, plan)
            except OSError as e:
                raise PlanningFailedError(f"Could not save the plan: {e}", conversation_id)
            presented = True
            self._progress.emit(
                conversation_id,
                ProgressKind.PLAN_READY,
                format_plan_message(plan),
                phase="planning",
                cost_usd=result.cost_usd,
                duration_ms=result.duration_ms,
                data={"revision_count": plan.revision_count},
            )

        except TaskCancelledError:
            logger.info(f"Planning cancelled for conversation {conversation_id}")
            self._progress.emit(
                conversation_id, ProgressKind.CANCELLED, "Planning cancelled.", phase="planning",
            )
        except PlanningFailedError as e:
            if revising:
                e.message += "\n\nThe previous plan is still pending."
            self._report_failure(conversation_id, e)
        except asyncio.CancelledError:
            interrupted = True
            raise
        finally:
            self._lock.release(conversation_id)
            if not presented and not interrupted:
                self._start_next_queued(conversation_id)

    async def _execute_phase(
        self,
        conversation_id: int,
        token: CancellationToken,
        plan: PendingPlan,
    ) -> None:
        context = enrich_context_with_plan(plan.context, plan.plan_text)
        prompt = build_task_prompt(
            plan.task, context, plan.raw_message, plan.working_dir, plan.memory_context,
        )
        await self._run_execution(
            conversation_id,
            token,
            prompt=prompt,
            task=plan.task,
            working_dir=plan.working_dir,
            complexity=plan.complexity,
        )

    async def _run_execution(
        self,
        conversation_id: int,
        token: CancellationToken,
        prompt: str,
        task: str,
        working_dir: str,
        complexity: str,
        session_id: Optional[str] = None,
    ) -> None:
        """
        Read-write pass. Always ends with the lock released and the queue advanced,
        except on shutdown, where the active record is kept as interrupted.
        """
        record: Optional[ActiveTaskRecord] = None
        interrupted = False
        try:
            self._progress.emit(
                conversation_id, ProgressKind.EXECUTION_STARTED, f"Executing: {task[:100]}",
                phase="executing",
            )
            await self._lock.handoff(conversation_id)

            try:
                record = self._tracker.track(conversation_id, task, working_dir, complexity)
                if session_id:
                    self._tracker.update_session_id(record.id, session_id)
            except OSError as e:
                raise ExecutionFailedError(f"Could not record the task: {e}", conversation_id)
            record_id = record.id

            result = await self._invoke(
                conversation_id,
                RunRequest(
                    prompt=prompt,
                    working_dir=working_dir,
                    mode=RunMode.READ_WRITE,
                    session_id=session_id,
                    system_prompt=EXECUTOR_SYSTEM_PROMPT,
                    timeout_seconds=self._config.execution_timeout(complexity),
                    cancel_token=token,
                    on_session=lambda sid: self._tracker.update_session_id(record_id, sid),
                ),
                phase="executing",
                error_cls=ExecutionFailedError,
            )

            self._progress.emit(
                conversation_id,
                ProgressKind.EXECUTION_FINISHED,
                result.result_text,
                phase="executing",
                cost_usd=result.cost_usd,
                duration_ms=result.duration_ms,
                data={"success": True},
            )
            if result.needs_restart:
                logger.warning(f"Conversation {conversation_id}: runner asked for a service restart")
                self._progress.emit(
                    conversation_id,
                    ProgressKind.RESTART_REQUIRED,
                    "The task reported that the service needs a restart.",
                )

        except TaskCancelledError:
            logger.info(f"Execution cancelled for conversation {conversation_id}")
            self._progress.emit(
                conversation_id, ProgressKind.CANCELLED, "Execution cancelled.", phase="executing",
            )
        except ExecutionFailedError as e:
            self._report_failure(conversation_id, e)
        except asyncio.CancelledError:
            interrupted = True
            raise
        finally:
            if not interrupted:
                if record is not None:
                    try:
                        self._tracker.complete(record.id)
                    except OSError as e:
                        # The record resurfaces as interrupted after a restart
                        logger.error(f"Could not clear active task {record.id}: {e}")
                self._lock.release(conversation_id)
                self._start_next_queued(conversation_id)

    async def _invoke(
        self,
        conversation_id: int,
        request: RunRequest,
        phase: str,
        error_cls: type,
    ) -> RunResult:
        """Run the runner, mapping runner failures onto the phase's error type."""
        request.on_event = self._activity_forwarder(conversation_id, phase)
        try:
            result = await self._runner.invoke(request)
        except RunnerError as e:
            raise error_cls(str(e), conversation_id)
        if not result.success:
            raise error_cls(result.result_text[:FAILURE_DETAIL_LIMIT], conversation_id)
        return result

    def _activity_forwarder(self, conversation_id: int, phase: str) -> Callable[[str, str], None]:
        def forward(activity: str, detail: str) -> None:
            kind = ProgressKind.STATUS if activity == "status" else ProgressKind.TOOL_ACTIVITY
            self._progress.emit(conversation_id, kind, detail, phase=phase, data={"activity": activity})
        return forward

    # -------------------------------------------------------------------------
    # Queue draining
    # -------------------------------------------------------------------------
    def _enqueue(
        self,
        conversation_id: int,
        raw_message: str,
        task: str,
        context: str,
        complexity: str,
        working_dir: str,
        memory_context: Optional[str],
    ) -> DispatchOutcome:
        try:
            queued = self._queue.enqueue(
                conversation_id, raw_message, task, context,
                complexity, working_dir, memory_context,
            )
        except QueueFullError as e:
            return DispatchOutcome(DispatchStatus.QUEUE_FULL, e.message, error_kind=e.kind)
        except OSError as e:
            logger.error(f"Could not queue task for conversation {conversation_id}: {e}")
            return DispatchOutcome(
                DispatchStatus.FAILED,
                "Could not queue the task, please resend it.",
                error_kind=ErrorKind.INTERNAL,
            )

        position = self._queue.length(conversation_id)
        message = f"Queued as #{position}. It will start after the current task."
        self._progress.emit(
            conversation_id, ProgressKind.QUEUED, message,
            data={"task_id": queued.id, "position": position},
        )
        return DispatchOutcome(DispatchStatus.QUEUED, message, position=position, task_id=queued.id)

    def _start_next_queued(self, conversation_id: int) -> bool:
        """
        Start planning the oldest queued item, if the conversation is free.

        Returns:
            True if an item was started
        """
        if self._is_reserved is not None and self._is_reserved(conversation_id):
            logger.info(f"Conversation {conversation_id} is reserved, not draining queue")
            return False
        if self._plans.has(conversation_id):
            # A plan awaits a decision; queued work waits until it is resolved
            return False
        if not self._queue.has_queued(conversation_id):
            return False
        try:
            token = self._lock.try_acquire(conversation_id)
        except LockBusyError:
            return False

        try:
            item = self._queue.dequeue(conversation_id)
        except OSError as e:
            self._state_write_failed(conversation_id, PlanningFailedError, e)
            return False
        if item is None:
            self._lock.release(conversation_id)
            return False

        remaining = self._queue.length(conversation_id)
        self._progress.emit(
            conversation_id,
            ProgressKind.QUEUE_ADVANCED,
            f"Starting queued task ({remaining} more in queue): {item.task[:80]}",
            data={"task_id": item.id, "remaining": remaining},
        )
        draft = PendingPlan(
            conversation_id=conversation_id,
            task=item.task,
            context=item.context,
            plan_text="",
            complexity=item.complexity,
            working_dir=item.working_dir,
            raw_message=item.raw_message,
            memory_context=item.memory_context,
        )
        try:
            self._begin_planning(conversation_id, token, draft)
        except OSError as e:
            self._state_write_failed(conversation_id, PlanningFailedError, e)
            return False
        return True

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------
    def _report_failure(self, conversation_id: int, error: OrchestratorError) -> None:
        logger.error(f"Conversation {conversation_id}: {error.kind.value}: {error.message}")
        prefix = {
            ErrorKind.PLANNING_FAILED: "Planning failed",
            ErrorKind.EXECUTION_FAILED: "Task failed",
        }.get(error.kind, "Error")
        self._progress.emit(
            conversation_id,
            ProgressKind.ERROR,
            f"{prefix}: {error.message}",
            data={"error_kind": error.kind.value},
        )

    def _state_write_failed(
        self,
        conversation_id: int,
        error_cls: type,
        exc: OSError,
    ) -> DispatchOutcome:
        """Release the lock taken for a transition whose state write failed."""
        self._lock.release(conversation_id)
        error = error_cls(f"Could not save orchestrator state: {exc}", conversation_id)
        self._report_failure(conversation_id, error)
        return DispatchOutcome(
            DispatchStatus.FAILED,
            f"{error.message}. Nothing was started, try again.",
            error_kind=error.kind,
        )

    def _no_pending_plan(self, conversation_id: int) -> DispatchOutcome:
        error = NoPendingPlanError(conversation_id)
        return DispatchOutcome(DispatchStatus.NO_PENDING_PLAN, error.message, error_kind=error.kind)

    def _busy(self, conversation_id: int, action: str) -> DispatchOutcome:
        logger.warning(f"Conversation {conversation_id} busy, rejecting {action}")
        return DispatchOutcome(
            DispatchStatus.BUSY,
            f"Cannot {action} right now, a task is still running. Try again once it finishes.",
            error_kind=ErrorKind.BUSY,
        )
