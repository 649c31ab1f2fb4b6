"""
Orchestrator service wiring.

Builds every component from one OrchestratorConfig and injects the shared
lock, queue and stores into the dispatcher and the improve loop controller.
On start it loads durable state and reports what the previous run left
behind; nothing is resumed automatically.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from .active_task_tracker import ActiveTaskTracker, ActiveTaskRecord
from .config import OrchestratorConfig
from .dispatcher import Dispatcher
from .execution_lock import ExecutionLock
from .improve_loop import ImproveLoopController, ImproveLoopStore, ImproveLoopState
from .persistence import open_store
from .plan_store import PlanStore
from .progress import (
    ProgressChannel,
    ProgressPump,
    LoggingProgressSink,
    WebhookProgressSink,
)
from .runner import TaskRunner, ClaudeCliRunner
from .task_queue import TaskQueue

logger = logging.getLogger("service")

ACTIVE_TASKS_FILE = "active-tasks.json"
TASK_QUEUE_FILE = "task-queue.json"
PENDING_PLANS_FILE = "pending-plans.json"
IMPROVE_LOOPS_FILE = "improve-loops.json"


@dataclass
class RecoveryReport:
    """What the previous process left behind, grouped per conversation."""
    interrupted_tasks: Dict[int, List[ActiveTaskRecord]] = field(default_factory=dict)
    queued_counts: Dict[int, int] = field(default_factory=dict)
    pending_plans: List[int] = field(default_factory=list)
    paused_loops: List[ImproveLoopState] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.interrupted_tasks or self.queued_counts
            or self.pending_plans or self.paused_loops
        )

    def messages(self) -> Dict[int, List[str]]:
        """User-facing notices per conversation."""
        notices: Dict[int, List[str]] = {}

        for cid, records in self.interrupted_tasks.items():
            lines = [f"{len(records)} task(s) were interrupted by a restart:"]
            for i, record in enumerate(records, 1):
                suffix = "" if record.resumable else " (cannot be resumed)"
                lines.append(f"{i}. {record.task[:80]}{suffix}")
            lines.append("Resume or discard them explicitly.")
            notices.setdefault(cid, []).append("\n".join(lines))

        for cid, count in self.queued_counts.items():
            notices.setdefault(cid, []).append(
                f"{count} queued task(s) are waiting. Resume the queue to start them."
            )

        for cid in self.pending_plans:
            notices.setdefault(cid, []).append("A plan is still waiting for your decision.")

        for state in self.paused_loops:
            notices.setdefault(state.conversation_id, []).append(
                f"Improve loop paused at {state.completed_iterations}/"
                f"{state.total_iterations}: {state.pause_reason}. Resume it explicitly."
            )

        return notices

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interrupted_tasks": {
                cid: [r.to_dict() for r in records]
                for cid, records in self.interrupted_tasks.items()
            },
            "queued_counts": self.queued_counts,
            "pending_plans": self.pending_plans,
            "paused_loops": [s.to_dict() for s in self.paused_loops],
        }


class OrchestratorService:
    """Owns every component for the lifetime of the process."""

    def __init__(
        self,
        config: OrchestratorConfig,
        runner: Optional[TaskRunner] = None,
        durable: bool = True,
    ):
        """
        Args:
            config: Resolved configuration
            runner: Runner to use; defaults to the Claude CLI runner
            durable: Keep state under config.data_dir; False keeps it in memory
        """
        self.config = config
        data_dir = config.data_dir if durable else None

        self.lock = ExecutionLock()
        self.queue = TaskQueue(open_store(data_dir, TASK_QUEUE_FILE))
        self.plans = PlanStore(open_store(data_dir, PENDING_PLANS_FILE))
        self.tracker = ActiveTaskTracker(open_store(data_dir, ACTIVE_TASKS_FILE))
        self.loops = ImproveLoopStore(open_store(data_dir, IMPROVE_LOOPS_FILE))

        self.progress = ProgressChannel(config.progress_buffer_size)
        self.pump = ProgressPump(self.progress, [LoggingProgressSink()])
        if config.progress_webhook_url:
            self.pump.add_sink(WebhookProgressSink(config.progress_webhook_url))

        self.runner = runner or ClaudeCliRunner(config)

        self.dispatcher = Dispatcher(
            lock=self.lock,
            queue=self.queue,
            plans=self.plans,
            tracker=self.tracker,
            runner=self.runner,
            progress=self.progress,
            config=config,
            is_reserved=self.loops.has_active,
        )
        self.improve = ImproveLoopController(
            lock=self.lock,
            store=self.loops,
            runner=self.runner,
            progress=self.progress,
            config=config,
            on_finished=self.dispatcher.resume_queue,
        )
        self._started = False

    async def start(self, run_pump: bool = True) -> RecoveryReport:
        """Load durable state, pause interrupted loops and report leftovers."""
        if self._started:
            logger.warning("Orchestrator already started")
            return RecoveryReport()

        self.tracker.load()
        self.queue.load()
        self.plans.load()
        self.loops.load()

        report = RecoveryReport()
        for record in self.tracker.get_interrupted():
            report.interrupted_tasks.setdefault(record.conversation_id, []).append(record)
        for cid in self.queue.conversations_with_queued():
            report.queued_counts[cid] = self.queue.length(cid)
        report.pending_plans = self.plans.conversation_ids()
        report.paused_loops = self.improve.recover_interrupted()

        if run_pump:
            await self.pump.start()
        self._started = True

        if report.is_empty:
            logger.info("Orchestrator started, nothing to recover")
        else:
            logger.warning(
                f"Orchestrator started with leftovers: "
                f"{sum(len(r) for r in report.interrupted_tasks.values())} interrupted tasks, "
                f"{sum(report.queued_counts.values())} queued tasks, "
                f"{len(report.pending_plans)} pending plans, "
                f"{len(report.paused_loops)} interrupted improve loops"
            )
        return report

    async def stop(self) -> None:
        """Cancel background work and flush progress. Durable state is kept for the next start."""
        await self.improve.shutdown()
        await self.dispatcher.shutdown()
        await self.pump.stop()
        self._started = False
        logger.info("Orchestrator stopped")
