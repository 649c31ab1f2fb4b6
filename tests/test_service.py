"""
End-to-end tests for the orchestrator service

Test coverage for:
- Startup recovery of interrupted tasks, queued work, pending plans and loops
- Improve loop and interactive work sharing one conversation
"""

import asyncio

import pytest

from orchestrator.dispatcher import DispatchStatus
from orchestrator.improve_loop import LoopStatus
from orchestrator.service import OrchestratorService
from orchestrator.runner import RunMode

from tests.conftest import CONV, OTHER_CONV, ScriptedRunner, wait_for_requests


async def submit(service, task, conversation_id=CONV):
    return await service.dispatcher.submit_work(
        conversation_id,
        task=task,
        context="",
        complexity="moderate",
        working_dir="/srv/app",
        raw_message=task,
    )


class TestStartupRecovery:
    """Restart with state left on disk."""

    def test_restart_surfaces_leftovers(self, config, tmp_path):
        """Simulates a crash mid-execution, then restarts on the same data dir."""

        async def run_test():
            runner = ScriptedRunner()
            first = OrchestratorService(config, runner=runner)
            report = await first.start(run_pump=False)
            assert report.is_empty

            # Conversation 2 ends with a plan presented and no decision yet
            await submit(first, "migrate settings")
            await submit(first, "rename module", conversation_id=OTHER_CONV)
            await first.dispatcher.join()

            # Conversation 1 is executing when the process dies, one item queued
            runner.gate = asyncio.Event()
            runner.report_session = "sess-crash"
            await first.dispatcher.approve_plan(CONV)
            await wait_for_requests(runner, 3)
            assert (await submit(first, "follow-up")).status == DispatchStatus.QUEUED

            # Improve loop mid-run on a third conversation
            await first.improve.start(3003, total_iterations=3, working_dir=str(tmp_path), batch_size=1)
            await wait_for_requests(runner, 4)

            await first.stop()

            second_runner = ScriptedRunner()
            second = OrchestratorService(config, runner=second_runner)
            report = await second.start(run_pump=False)

            assert not report.is_empty
            interrupted = report.interrupted_tasks[CONV]
            assert [r.task for r in interrupted] == ["migrate settings"]
            assert interrupted[0].external_session_id == "sess-crash"
            assert report.queued_counts == {CONV: 1}
            assert report.pending_plans == [OTHER_CONV]
            assert [s.conversation_id for s in report.paused_loops] == [3003]
            assert report.paused_loops[0].status == LoopStatus.PAUSED

            notices = report.messages()
            assert "interrupted by a restart" in notices[CONV][0]
            assert "queued task(s) are waiting" in notices[CONV][1]
            assert notices[OTHER_CONV] == ["A plan is still waiting for your decision."]
            assert "Resume it explicitly" in notices[3003][0]

            # Nothing was restarted automatically
            assert second_runner.requests == []

            # The pending plan from before the restart can still be approved
            outcome = await second.dispatcher.approve_plan(OTHER_CONV)
            assert outcome.status == DispatchStatus.EXECUTION_STARTED

            # The interrupted task resumes its runner session
            outcome = await second.dispatcher.resume_interrupted(CONV)
            assert outcome.status == DispatchStatus.RESUMED
            await second.dispatcher.join()

            resumed = [r for r in second_runner.requests if r.session_id == "sess-crash"]
            assert len(resumed) == 1
            assert resumed[0].mode == RunMode.READ_WRITE
            # Once the resumed run ends, the queued follow-up gets planned
            assert second.plans.get(CONV).task == "follow-up"

            await second.stop()

        asyncio.run(run_test())

    def test_to_dict(self, config):
        async def run_test():
            service = OrchestratorService(config, runner=ScriptedRunner())
            report = await service.start(run_pump=False)
            assert report.to_dict() == {
                "interrupted_tasks": {},
                "queued_counts": {},
                "pending_plans": [],
                "paused_loops": [],
            }
            await service.stop()

        asyncio.run(run_test())


class TestImproveLoopAndDispatcher:
    """The loop owns the conversation until it ends."""

    @pytest.mark.asyncio
    async def test_work_queued_during_loop_starts_after_it(self, config, tmp_path):
        runner = ScriptedRunner()
        service = OrchestratorService(config, runner=runner, durable=False)
        await service.start()

        runner.gate = asyncio.Event()
        await service.improve.start(CONV, total_iterations=2, working_dir=str(tmp_path), batch_size=1)
        await wait_for_requests(runner, 1)

        outcome = await submit(service, "small fix")
        assert outcome.status == DispatchStatus.QUEUED

        runner.gate.set()
        await service.improve.join()
        await service.dispatcher.join()

        assert service.improve.status(CONV).status == LoopStatus.COMPLETED
        assert service.plans.get(CONV).task == "small fix"
        assert [r.mode for r in runner.requests] == [
            RunMode.READ_WRITE, RunMode.READ_WRITE, RunMode.READ_ONLY,
        ]
        assert runner.max_active == 1

        await service.stop()

    @pytest.mark.asyncio
    async def test_cancel_running_reaches_the_loop(self, config, tmp_path):
        runner = ScriptedRunner()
        service = OrchestratorService(config, runner=runner, durable=False)
        await service.start(run_pump=False)

        runner.gate = asyncio.Event()
        await service.improve.start(CONV, total_iterations=3, working_dir=str(tmp_path), batch_size=1)
        await wait_for_requests(runner, 1)

        outcome = await service.dispatcher.cancel_running(CONV)
        assert outcome.status == DispatchStatus.CANCEL_REQUESTED
        await service.improve.join()

        assert service.improve.status(CONV).status == LoopStatus.CANCELLED
        assert not service.lock.is_busy(CONV)
        await service.stop()
