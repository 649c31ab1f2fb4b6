"""
Autonomous improve loop.

Runs N iterations against a working directory without per-iteration
approval; starting the loop is the approval. Iterations are grouped into
batches: a read-only strategic planning pass proposes one item per iteration
of the batch, then each iteration implements its item with full tool access.

CRITICAL CONSTRAINTS:
- The loop holds the conversation's ExecutionLock for its whole run and
  hands it off between phases so a cancel lands before the next phase starts
- State is persisted after every mutation; history length always equals
  completed_iterations
- Circuit breakers pause the loop (resumable):
    * cost: total_cost_usd >= max_cost_usd before a phase starts
    * failures: 3 consecutive failed iterations
- A failed strategic planning pass degrades to unguided iterations, it never
  aborts the loop
- A fixed delay separates iterations (not a plan from its first iteration)
"""

import asyncio
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Set, Callable, Awaitable

from .config import OrchestratorConfig
from .errors import (
    CircuitBreakerTripped,
    ImproveLoopError,
    LockBusyError,
    RunnerError,
    TaskCancelledError,
)
from .execution_lock import ExecutionLock, CancellationToken
from .persistence import DurableStore, MemoryStore
from .progress import ProgressChannel, ProgressKind
from .prompts import (
    IMPROVE_SYSTEM_PROMPT,
    PLANNER_SYSTEM_PROMPT,
    build_iteration_prompt,
    build_strategic_plan_prompt,
)
from .runner import TaskRunner, RunRequest, RunMode

logger = logging.getLogger("improve_loop")

CONSECUTIVE_FAILURE_LIMIT = 3
RECENT_HISTORY_ENTRIES = 3
SUMMARY_MAX_CHARS = 200

FILE_TREE_MAX_DEPTH = 4
FILE_TREE_MAX_ENTRIES = 200
FILE_TREE_SKIP = {
    ".git", "node_modules", "dist", "build", "data",
    "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache",
}
FILE_TREE_SKIP_EXT = {".log", ".pyc"}
# Iterations between file tree refreshes
FILE_TREE_REFRESH_INTERVAL = 5


class LoopStatus(str, Enum):
    """
    Loop lifecycle.

    RUNNING -> STOPPING -> STOPPED
    RUNNING -> PAUSED -> RUNNING (explicit resume)
    RUNNING -> COMPLETED | CANCELLED | FAILED
    """
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @classmethod
    def active_states(cls) -> Set["LoopStatus"]:
        return {cls.RUNNING, cls.STOPPING}

    @classmethod
    def resumable_states(cls) -> Set["LoopStatus"]:
        return {cls.PAUSED, cls.STOPPED}


class LoopPhase(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    IDLE = "idle"


@dataclass
class IterationRecord:
    iteration: int
    summary: str
    success: bool
    cost_usd: float
    duration_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "summary": self.summary,
            "success": self.success,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IterationRecord":
        return cls(
            iteration=int(data["iteration"]),
            summary=data.get("summary", ""),
            success=bool(data["success"]),
            cost_usd=float(data.get("cost_usd", 0.0)),
            duration_ms=int(data.get("duration_ms", 0)),
        )


@dataclass
class ImproveLoopState:
    """Persistent state of one conversation's improve loop."""
    conversation_id: int
    direction: Optional[str]
    total_iterations: int
    working_dir: str
    max_cost_usd: float
    batch_size: int = 1
    completed_iterations: int = 0
    status: LoopStatus = LoopStatus.RUNNING
    history: List[IterationRecord] = field(default_factory=list)
    total_cost_usd: float = 0.0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: Optional[datetime] = None
    current_phase: LoopPhase = LoopPhase.IDLE
    pause_reason: Optional[str] = None
    strategic_plan: Optional[str] = None
    strategic_plan_cost_usd: float = 0.0
    # First iteration index and size of the batch the strategic plan covers
    batch_start: Optional[int] = None
    batch_item_count: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in LoopStatus.active_states()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "direction": self.direction,
            "total_iterations": self.total_iterations,
            "working_dir": self.working_dir,
            "max_cost_usd": self.max_cost_usd,
            "batch_size": self.batch_size,
            "completed_iterations": self.completed_iterations,
            "status": self.status.value,
            "history": [h.to_dict() for h in self.history],
            "total_cost_usd": self.total_cost_usd,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "current_phase": self.current_phase.value,
            "pause_reason": self.pause_reason,
            "strategic_plan": self.strategic_plan,
            "strategic_plan_cost_usd": self.strategic_plan_cost_usd,
            "batch_start": self.batch_start,
            "batch_item_count": self.batch_item_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImproveLoopState":
        return cls(
            conversation_id=int(data["conversation_id"]),
            direction=data.get("direction"),
            total_iterations=int(data["total_iterations"]),
            working_dir=data["working_dir"],
            max_cost_usd=float(data["max_cost_usd"]),
            batch_size=int(data.get("batch_size", 1)),
            completed_iterations=int(data.get("completed_iterations", 0)),
            status=LoopStatus(data["status"]),
            history=[IterationRecord.from_dict(h) for h in data.get("history", [])],
            total_cost_usd=float(data.get("total_cost_usd", 0.0)),
            started_at=datetime.fromisoformat(data["started_at"]),
            ended_at=datetime.fromisoformat(data["ended_at"]) if data.get("ended_at") else None,
            current_phase=LoopPhase(data.get("current_phase", "idle")),
            pause_reason=data.get("pause_reason"),
            strategic_plan=data.get("strategic_plan"),
            strategic_plan_cost_usd=float(data.get("strategic_plan_cost_usd", 0.0)),
            batch_start=data.get("batch_start"),
            batch_item_count=int(data.get("batch_item_count", 0)),
        )


# -----------------------------------------------------------------------------
# Prompt context helpers
# -----------------------------------------------------------------------------
def compact_history(history: List[IterationRecord]) -> str:
    """
    Render iteration history for prompts.

    Older iterations become one-line markers; the most recent ones keep
    status, duration, cost and summary. The output stays bounded no matter
    how many iterations ran.
    """
    if not history:
        return "No previous iterations."

    lines = []
    older = history[:-RECENT_HISTORY_ENTRIES]
    if older:
        for h in older:
            lines.append(f"[{'+' if h.success else '-'}] #{h.iteration}: {h.summary}")
        lines.append("")

    for h in history[-RECENT_HISTORY_ENTRIES:]:
        status = "OK" if h.success else "FAIL"
        seconds = round(h.duration_ms / 1000)
        lines.append(f"#{h.iteration} [{status}] ({seconds}s, ${h.cost_usd:.4f}): {h.summary}")

    return "\n".join(lines)


def extract_summary(text: str) -> str:
    """First non-empty line of the runner's answer, capped at SUMMARY_MAX_CHARS."""
    for line in text.splitlines():
        line = line.strip().lstrip("#").strip()
        if line:
            if len(line) > SUMMARY_MAX_CHARS:
                return line[:SUMMARY_MAX_CHARS - 3] + "..."
            return line
    return "No summary"


def generate_file_tree(root_dir: str) -> str:
    """Indented listing of the project, skipping VCS, build output, data, env and log files."""
    lines: List[str] = []
    count = 0

    def walk(directory: Path, prefix: str, depth: int) -> bool:
        nonlocal count
        if depth > FILE_TREE_MAX_DEPTH:
            return True
        try:
            entries = sorted(os.listdir(directory))
        except OSError:
            return True

        for name in entries:
            if name in FILE_TREE_SKIP or name.startswith(".env"):
                continue
            if os.path.splitext(name)[1] in FILE_TREE_SKIP_EXT:
                continue
            if count >= FILE_TREE_MAX_ENTRIES:
                lines.append(f"{prefix}... (truncated)")
                return False

            path = directory / name
            is_dir = path.is_dir()
            lines.append(f"{prefix}{name}{'/' if is_dir else ''}")
            count += 1
            if is_dir and not walk(path, prefix + "  ", depth + 1):
                return False
        return True

    walk(Path(root_dir), "", 0)
    return "\n".join(lines) if lines else "(empty)"


def build_summary(state: ImproveLoopState, label: str) -> str:
    """Human-readable report sent when the loop finishes or pauses."""
    end = state.ended_at or datetime.now(timezone.utc)
    minutes = round((end - state.started_at).total_seconds() / 60)

    lines = [
        f"Improve loop {label}",
        f"{state.completed_iterations}/{state.total_iterations} iterations | "
        f"{minutes}m | ${state.total_cost_usd:.4f}",
    ]
    if state.direction:
        lines.append(f"Direction: {state.direction}")
    if state.strategic_plan_cost_usd > 0:
        lines.append(f"Planning cost: ${state.strategic_plan_cost_usd:.4f}")
    if state.batch_size > 1 and state.total_iterations > 1:
        lines.append(f"Batch size: {state.batch_size}")
    if state.pause_reason:
        lines.append(f"Reason: {state.pause_reason}")

    successes = sum(1 for h in state.history if h.success)
    lines.append("")
    lines.append(f"Results: {successes} succeeded, {len(state.history) - successes} failed")
    lines.append("")
    for h in state.history:
        lines.append(f"[{'OK' if h.success else 'FAIL'}] #{h.iteration}: {h.summary}")

    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------
class ImproveLoopStore:
    """
    One ImproveLoopState per conversation, written through on every save.

    get() returns the live state object; callers mutate it and call save().
    """

    def __init__(self, store: Optional[DurableStore] = None):
        self._store = store or MemoryStore()
        self._loops: Dict[int, ImproveLoopState] = {}
        self._lock = threading.Lock()

    def load(self) -> int:
        raw = self._store.load({})
        loops = {}
        for key, entry in (raw.items() if isinstance(raw, dict) else []):
            try:
                loops[int(key)] = ImproveLoopState.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed improve loop state for {key}: {e}")
        with self._lock:
            self._loops = loops
        return len(loops)

    def save(self, state: ImproveLoopState) -> None:
        with self._lock:
            loops = dict(self._loops)
            loops[state.conversation_id] = state
            self._store.save({str(cid): s.to_dict() for cid, s in loops.items()})
            self._loops = loops

    def get(self, conversation_id: int) -> Optional[ImproveLoopState]:
        with self._lock:
            return self._loops.get(conversation_id)

    def remove(self, conversation_id: int) -> bool:
        with self._lock:
            if conversation_id not in self._loops:
                return False
            loops = dict(self._loops)
            del loops[conversation_id]
            self._store.save({str(cid): s.to_dict() for cid, s in loops.items()})
            self._loops = loops
        return True

    def has_active(self, conversation_id: int) -> bool:
        state = self.get(conversation_id)
        return state is not None and state.is_active

    def get_all_active(self) -> List[ImproveLoopState]:
        with self._lock:
            return [s for s in self._loops.values() if s.is_active]

    def get_all(self) -> List[ImproveLoopState]:
        with self._lock:
            return list(self._loops.values())


# -----------------------------------------------------------------------------
# Controller
# -----------------------------------------------------------------------------
class ImproveLoopController:
    """Starts, stops, resumes and runs improve loops."""

    def __init__(
        self,
        lock: ExecutionLock,
        store: ImproveLoopStore,
        runner: TaskRunner,
        progress: ProgressChannel,
        config: OrchestratorConfig,
        on_finished: Optional[Callable[[int], Awaitable[Any]]] = None,
    ):
        """
        Args:
            on_finished: Awaited with the conversation id after the loop
                releases the conversation (used to start queued work)
        """
        self._lock = lock
        self._store = store
        self._runner = runner
        self._progress = progress
        self._config = config
        self._on_finished = on_finished
        self._tasks: Dict[int, asyncio.Task] = {}
        self._file_trees: Dict[int, str] = {}

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------
    async def start(
        self,
        conversation_id: int,
        total_iterations: int,
        working_dir: str,
        direction: Optional[str] = None,
        batch_size: Optional[int] = None,
        max_cost_usd: Optional[float] = None,
    ) -> ImproveLoopState:
        """
        Start a new loop in the background.

        Raises:
            ValueError: Invalid iteration count, batch size or cost limit
            ImproveLoopError: A loop is already active or the conversation is busy
        """
        if total_iterations < 1:
            raise ValueError("total_iterations must be at least 1")
        batch_size = batch_size or self._config.improve_batch_size
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        max_cost = max_cost_usd if max_cost_usd is not None else self._config.improve_max_cost_usd
        if max_cost <= 0:
            raise ValueError("max_cost_usd must be positive")

        if self._store.has_active(conversation_id):
            raise ImproveLoopError("An improve loop is already running.", conversation_id)
        token = self._acquire(conversation_id)

        state = ImproveLoopState(
            conversation_id=conversation_id,
            direction=direction,
            total_iterations=total_iterations,
            working_dir=working_dir,
            max_cost_usd=max_cost,
            batch_size=batch_size,
        )
        try:
            self._store.save(state)
        except OSError:
            self._lock.release(conversation_id)
            raise
        logger.info(
            f"Improve loop started for conversation {conversation_id}: "
            f"{total_iterations} iterations, batch {batch_size}, max ${max_cost:.2f}"
        )
        self._progress.emit(
            conversation_id,
            ProgressKind.LOOP_STARTED,
            f"Improve loop started: {total_iterations} iterations (max ${max_cost:.2f}).",
        )
        self._spawn(conversation_id, token)
        return state

    def stop(self, conversation_id: int) -> ImproveLoopState:
        """Finish the current iteration, then stop."""
        state = self._require_active(conversation_id)
        if state.status == LoopStatus.RUNNING:
            state.status = LoopStatus.STOPPING
            self._store.save(state)
            logger.info(f"Improve loop stopping for conversation {conversation_id}")
        return state

    def cancel(self, conversation_id: int) -> ImproveLoopState:
        """Abort immediately, including the running iteration."""
        state = self._require_active(conversation_id)
        state.status = LoopStatus.CANCELLED
        self._store.save(state)
        self._lock.cancel(conversation_id)
        logger.info(f"Improve loop cancelled for conversation {conversation_id}")
        return state

    async def resume(
        self,
        conversation_id: int,
        max_cost_usd: Optional[float] = None,
    ) -> ImproveLoopState:
        """
        Continue a paused or stopped loop at completed_iterations.

        Args:
            max_cost_usd: New cost limit; required to resume a loop paused
                by the cost breaker

        Raises:
            ImproveLoopError: Nothing to resume, still over the cost limit,
                or the conversation is busy
        """
        state = self._store.get(conversation_id)
        if state is None or state.status not in LoopStatus.resumable_states():
            raise ImproveLoopError("No paused improve loop to resume.", conversation_id)
        if state.completed_iterations >= state.total_iterations:
            raise ImproveLoopError("All iterations already ran.", conversation_id)
        if max_cost_usd is not None:
            state.max_cost_usd = max_cost_usd
        if state.total_cost_usd >= state.max_cost_usd:
            raise ImproveLoopError(
                f"Cost limit reached (${state.total_cost_usd:.4f} of "
                f"${state.max_cost_usd:.2f}). Raise the limit to resume.",
                conversation_id,
            )

        token = self._acquire(conversation_id)
        previous = (state.status, state.pause_reason, state.ended_at)
        state.status = LoopStatus.RUNNING
        state.pause_reason = None
        state.ended_at = None
        try:
            self._store.save(state)
        except OSError:
            state.status, state.pause_reason, state.ended_at = previous
            self._lock.release(conversation_id)
            raise
        logger.info(
            f"Improve loop resumed for conversation {conversation_id} at "
            f"iteration {state.completed_iterations + 1}"
        )
        self._progress.emit(
            conversation_id,
            ProgressKind.LOOP_STARTED,
            f"Improve loop resumed at iteration {state.completed_iterations + 1} "
            f"of {state.total_iterations}.",
        )
        self._spawn(conversation_id, token)
        return state

    def status(self, conversation_id: int) -> Optional[ImproveLoopState]:
        return self._store.get(conversation_id)

    def cleanup(self, conversation_id: int) -> bool:
        """Remove a finished loop's state. Active loops are kept."""
        state = self._store.get(conversation_id)
        if state is None or state.is_active:
            return False
        return self._store.remove(conversation_id)

    def recover_interrupted(self) -> List[ImproveLoopState]:
        """Pause loops that were running when the process died. Call once at startup."""
        recovered = []
        for state in self._store.get_all_active():
            state.status = LoopStatus.PAUSED
            state.pause_reason = "Process was interrupted"
            state.current_phase = LoopPhase.IDLE
            self._store.save(state)
            recovered.append(state)
            logger.warning(
                f"Improve loop for conversation {state.conversation_id} was interrupted "
                f"at {state.completed_iterations}/{state.total_iterations}, paused"
            )
        return recovered

    async def join(self, conversation_id: Optional[int] = None) -> None:
        tasks = [
            t for cid, t in list(self._tasks.items())
            if conversation_id is None or cid == conversation_id
        ]
        await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel running loops. Their persisted state stays active for recovery."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------
    def _acquire(self, conversation_id: int) -> CancellationToken:
        try:
            return self._lock.try_acquire(conversation_id)
        except LockBusyError:
            raise ImproveLoopError(
                "The conversation is busy. Wait for the current task to finish.",
                conversation_id,
            )

    def _require_active(self, conversation_id: int) -> ImproveLoopState:
        state = self._store.get(conversation_id)
        if state is None or not state.is_active:
            raise ImproveLoopError("No improve loop is running.", conversation_id)
        return state

    def _spawn(self, conversation_id: int, token: CancellationToken) -> None:
        task = asyncio.create_task(
            self._run(conversation_id, token), name=f"improve-{conversation_id}"
        )
        self._tasks[conversation_id] = task

        def done(t: asyncio.Task) -> None:
            if self._tasks.get(conversation_id) is t:
                del self._tasks[conversation_id]
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    f"Improve loop task for conversation {conversation_id} crashed: "
                    f"{t.exception()}",
                    exc_info=t.exception(),
                )

        task.add_done_callback(done)

    async def _run(self, conversation_id: int, token: CancellationToken) -> None:
        state = self._store.get(conversation_id)
        consecutive_failures = 0
        interrupted = False
        use_batches = state.batch_size > 1 and state.total_iterations > 1

        try:
            while state.completed_iterations < state.total_iterations:
                if state.status == LoopStatus.CANCELLED:
                    break
                if state.status == LoopStatus.STOPPING:
                    state.status = LoopStatus.STOPPED
                    break

                i = state.completed_iterations
                in_batch = (
                    state.batch_start is not None
                    and state.batch_start <= i < state.batch_start + state.batch_item_count
                )
                if not in_batch:
                    self._check_cost(state)
                    state.batch_start = i
                    state.batch_item_count = (
                        min(state.batch_size, state.total_iterations - i) if use_batches else 1
                    )
                    state.strategic_plan = None
                    if use_batches:
                        await self._plan_batch(state)
                    self._store.save(state)

                self._check_cost(state)
                success = await self._run_iteration(state, plan_item=i - state.batch_start + 1)
                consecutive_failures = 0 if success else consecutive_failures + 1

                if state.completed_iterations >= state.batch_start + state.batch_item_count:
                    state.strategic_plan = None
                    state.batch_start = None
                    state.batch_item_count = 0
                    self._store.save(state)

                if consecutive_failures >= CONSECUTIVE_FAILURE_LIMIT:
                    raise CircuitBreakerTripped(
                        f"{CONSECUTIVE_FAILURE_LIMIT} consecutive failures", conversation_id
                    )

                if (
                    state.completed_iterations < state.total_iterations
                    and state.status == LoopStatus.RUNNING
                ):
                    await self._delay(token)
            else:
                state.status = LoopStatus.COMPLETED

        except CircuitBreakerTripped as e:
            state.status = LoopStatus.PAUSED
            state.pause_reason = e.message
            logger.warning(f"Improve loop for conversation {conversation_id} paused: {e.message}")
        except TaskCancelledError:
            state.status = LoopStatus.CANCELLED
            logger.info(f"Improve loop for conversation {conversation_id} cancelled")
        except asyncio.CancelledError:
            interrupted = True
            raise
        except Exception as e:
            state.status = LoopStatus.FAILED
            state.pause_reason = str(e)
            logger.exception(f"Improve loop for conversation {conversation_id} failed: {e}")
        finally:
            state.current_phase = LoopPhase.IDLE
            self._file_trees.pop(conversation_id, None)
            if not interrupted:
                if state.status not in LoopStatus.resumable_states():
                    state.ended_at = datetime.now(timezone.utc)
                try:
                    self._store.save(state)
                except OSError as e:
                    logger.error(f"Could not save improve loop state for {conversation_id}: {e}")
                self._lock.release(conversation_id)
                self._report_end(state)

        if self._on_finished is not None:
            await self._on_finished(conversation_id)

    def _check_cost(self, state: ImproveLoopState) -> None:
        if state.total_cost_usd >= state.max_cost_usd:
            raise CircuitBreakerTripped(
                f"Cost limit reached (${state.total_cost_usd:.4f} of ${state.max_cost_usd:.2f})",
                state.conversation_id,
            )

    async def _plan_batch(self, state: ImproveLoopState) -> None:
        """Read-only strategic planning for the current batch. Failure degrades to no plan."""
        conversation_id = state.conversation_id
        state.current_phase = LoopPhase.PLANNING
        self._store.save(state)
        token = await self._lock.handoff(conversation_id)

        file_tree = await asyncio.to_thread(generate_file_tree, state.working_dir)
        prompt = build_strategic_plan_prompt(
            state.batch_item_count,
            state.direction,
            compact_history(state.history),
            file_tree,
        )

        try:
            result = await self._runner.invoke(RunRequest(
                prompt=prompt,
                working_dir=state.working_dir,
                mode=RunMode.READ_ONLY,
                system_prompt=PLANNER_SYSTEM_PROMPT,
                timeout_seconds=self._config.planning_timeout("complex"),
                cancel_token=token,
            ))
        except RunnerError as e:
            logger.warning(f"Strategic planning failed for conversation {conversation_id}: {e}")
            result = None

        if result is not None:
            state.strategic_plan_cost_usd += result.cost_usd
            state.total_cost_usd += result.cost_usd

        if result is not None and result.success:
            state.strategic_plan = result.result_text
            message = f"Strategic plan ready for {state.batch_item_count} iterations."
        else:
            state.strategic_plan = None
            message = "Strategic planning failed, continuing unguided for this batch."

        state.current_phase = LoopPhase.IDLE
        self._store.save(state)
        self._progress.emit(
            conversation_id,
            ProgressKind.STATUS,
            message,
            phase=LoopPhase.PLANNING.value,
            cost_usd=result.cost_usd if result else None,
        )

    async def _run_iteration(self, state: ImproveLoopState, plan_item: int) -> bool:
        """Run one read-write iteration and record it. Returns whether it succeeded."""
        conversation_id = state.conversation_id
        token = await self._lock.handoff(conversation_id)
        iteration = state.completed_iterations + 1

        state.current_phase = LoopPhase.EXECUTING
        self._store.save(state)

        prompt = build_iteration_prompt(
            iteration,
            state.total_iterations,
            state.direction,
            compact_history(state.history),
            state.strategic_plan,
            plan_item if state.strategic_plan else None,
            file_tree=await self._file_tree(state, iteration),
        )

        started = time.monotonic()
        try:
            result = await self._runner.invoke(RunRequest(
                prompt=prompt,
                working_dir=state.working_dir,
                mode=RunMode.READ_WRITE,
                system_prompt=IMPROVE_SYSTEM_PROMPT,
                timeout_seconds=self._config.execution_timeout("complex"),
                cancel_token=token,
            ))
            record = IterationRecord(
                iteration=iteration,
                summary=extract_summary(result.result_text),
                success=result.success,
                cost_usd=result.cost_usd,
                duration_ms=result.duration_ms,
            )
        except RunnerError as e:
            record = IterationRecord(
                iteration=iteration,
                summary=f"Failed: {str(e)[:100]}",
                success=False,
                cost_usd=0.0,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        state.history.append(record)
        state.completed_iterations = iteration
        state.total_cost_usd += record.cost_usd
        state.current_phase = LoopPhase.IDLE
        self._store.save(state)

        logger.info(
            f"Improve loop {conversation_id} iteration {iteration}/{state.total_iterations} "
            f"{'succeeded' if record.success else 'failed'} (${record.cost_usd:.4f})"
        )
        self._progress.emit(
            conversation_id,
            ProgressKind.LOOP_ITERATION,
            f"#{iteration}/{state.total_iterations} "
            f"[{'OK' if record.success else 'FAIL'}]: {record.summary}",
            phase=LoopPhase.EXECUTING.value,
            cost_usd=record.cost_usd,
            duration_ms=record.duration_ms,
            data={"iteration": iteration, "success": record.success},
        )
        return record.success

    async def _file_tree(self, state: ImproveLoopState, iteration: int) -> str:
        """Project layout for the iteration prompt, rebuilt on the first iteration and every few after."""
        conversation_id = state.conversation_id
        if (
            conversation_id not in self._file_trees
            or iteration == 1
            or iteration % FILE_TREE_REFRESH_INTERVAL == 0
        ):
            self._file_trees[conversation_id] = await asyncio.to_thread(
                generate_file_tree, state.working_dir
            )
        return self._file_trees[conversation_id]

    async def _delay(self, token: CancellationToken) -> None:
        """Inter-iteration pause. A cancel cuts it short."""
        delay = self._config.improve_iteration_delay
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(token.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise TaskCancelledError()

    def _report_end(self, state: ImproveLoopState) -> None:
        labels = {
            LoopStatus.COMPLETED: "completed",
            LoopStatus.STOPPED: "stopped",
            LoopStatus.PAUSED: "paused",
            LoopStatus.CANCELLED: "cancelled",
            LoopStatus.FAILED: "failed",
        }
        kind = ProgressKind.LOOP_PAUSED if state.status == LoopStatus.PAUSED else ProgressKind.LOOP_FINISHED
        self._progress.emit(
            state.conversation_id,
            kind,
            build_summary(state, labels.get(state.status, state.status.value)),
            cost_usd=state.total_cost_usd,
            data={"status": state.status.value, "completed_iterations": state.completed_iterations},
        )
