"""
Pytest configuration for orchestrator tests.

This module provides:
1. A scripted runner standing in for the Claude CLI, and a store that can fail writes
2. Common fixtures wiring the orchestration components together
3. Test constants
"""

import asyncio
from typing import Optional, List, Any

import pytest

from orchestrator.active_task_tracker import ActiveTaskTracker
from orchestrator.config import OrchestratorConfig
from orchestrator.dispatcher import Dispatcher
from orchestrator.errors import TaskCancelledError
from orchestrator.execution_lock import ExecutionLock
from orchestrator.improve_loop import ImproveLoopController, ImproveLoopStore
from orchestrator.persistence import MemoryStore
from orchestrator.plan_store import PlanStore
from orchestrator.progress import ProgressChannel
from orchestrator.runner import TaskRunner, RunRequest, RunResult, detect_restart_need
from orchestrator.task_queue import TaskQueue


# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
CONV = 1001
OTHER_CONV = 2002
TEST_TASK = "Add input validation to the signup form"
TEST_CONTEXT = "User reported empty emails being accepted"


def ok(text: str = "Done", cost: float = 0.01, session_id: str = "sess-1") -> RunResult:
    return RunResult(
        result_text=text,
        success=True,
        cost_usd=cost,
        duration_ms=1000,
        session_id=session_id,
        needs_restart=detect_restart_need(text),
    )


def fail(text: str = "Something broke", cost: float = 0.0) -> RunResult:
    return RunResult(result_text=text, success=False, cost_usd=cost, duration_ms=500)


# -----------------------------------------------------------------------------
# Scripted Runner
# -----------------------------------------------------------------------------
class ScriptedRunner(TaskRunner):
    """
    Fake runner returning queued responses in order.

    A response may be a RunResult, an exception instance to raise, or a
    callable taking the RunRequest. When `gate` is set, each invocation waits
    for it (or for its cancel token) before answering.
    """

    def __init__(self, responses: Optional[List[Any]] = None):
        self.requests: List[RunRequest] = []
        self.responses: List[Any] = list(responses or [])
        self.default = ok()
        self.gate: Optional[asyncio.Event] = None
        self.report_session: Optional[str] = "sess-1"
        self.active = 0
        self.max_active = 0

    def add(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def invoke(self, request: RunRequest) -> RunResult:
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if request.on_session and self.report_session:
                request.on_session(self.report_session)

            if self.gate is not None:
                waiters = [asyncio.ensure_future(self.gate.wait())]
                if request.cancel_token is not None:
                    waiters.append(asyncio.ensure_future(request.cancel_token.wait()))
                try:
                    await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    for waiter in waiters:
                        waiter.cancel()
            else:
                await asyncio.sleep(0)

            if request.cancel_token is not None and request.cancel_token.cancelled:
                raise TaskCancelledError()

            response = self.responses.pop(0) if self.responses else self.default
            if isinstance(response, BaseException):
                raise response
            if callable(response):
                return response(request)
            return response
        finally:
            self.active -= 1


class FailingStore(MemoryStore):
    """In-memory store whose writes raise OSError while `fail` is set."""

    def __init__(self):
        super().__init__()
        self.fail = False

    def save(self, document: Any) -> None:
        if self.fail:
            raise OSError(28, "No space left on device")
        super().save(document)


async def wait_for_requests(runner: ScriptedRunner, count: int, timeout: float = 2.0) -> None:
    """Yield to the loop until the runner has seen `count` requests."""
    async def poll():
        while len(runner.requests) < count:
            await asyncio.sleep(0.001)
    await asyncio.wait_for(poll(), timeout)


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def config(tmp_path) -> OrchestratorConfig:
    return OrchestratorConfig(
        data_dir=tmp_path / "data",
        nice_value=0,
        improve_iteration_delay=0,
        improve_batch_size=3,
        improve_max_cost_usd=5.0,
    )


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def lock() -> ExecutionLock:
    return ExecutionLock()


@pytest.fixture
def queue_store() -> FailingStore:
    return FailingStore()


@pytest.fixture
def plan_store_backend() -> FailingStore:
    return FailingStore()


@pytest.fixture
def tracker_store() -> FailingStore:
    return FailingStore()


@pytest.fixture
def queue(queue_store) -> TaskQueue:
    return TaskQueue(queue_store)


@pytest.fixture
def plans(plan_store_backend) -> PlanStore:
    return PlanStore(plan_store_backend)


@pytest.fixture
def tracker(tracker_store) -> ActiveTaskTracker:
    return ActiveTaskTracker(tracker_store)


@pytest.fixture
def progress() -> ProgressChannel:
    return ProgressChannel(maxsize=500)


@pytest.fixture
def loop_store() -> ImproveLoopStore:
    return ImproveLoopStore()


@pytest.fixture
def dispatcher(lock, queue, plans, tracker, runner, progress, config, loop_store) -> Dispatcher:
    return Dispatcher(
        lock=lock,
        queue=queue,
        plans=plans,
        tracker=tracker,
        runner=runner,
        progress=progress,
        config=config,
        is_reserved=loop_store.has_active,
    )


@pytest.fixture
def controller(lock, loop_store, runner, progress, config) -> ImproveLoopController:
    return ImproveLoopController(
        lock=lock,
        store=loop_store,
        runner=runner,
        progress=progress,
        config=config,
    )
