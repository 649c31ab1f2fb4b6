"""
Unit Tests for the Claude CLI runner

Test coverage for:
- Command construction per mode
- Result event parsing and restart detection
- Tool activity mapping
- Subprocess integration against a stub CLI script
"""

import asyncio
import json
import stat
from dataclasses import replace
from unittest.mock import AsyncMock, patch

import pytest

from orchestrator.errors import RunnerError, TaskCancelledError
from orchestrator.execution_lock import CancellationToken
from orchestrator.runner import (
    ClaudeCliRunner,
    RunMode,
    RunRequest,
    RunResult,
    READ_ONLY_TOOLS,
    describe_tool_use,
    detect_restart_need,
    is_transient_error,
    parse_stream_line,
    result_from_event,
)


def write_stub_cli(tmp_path, body: str):
    """Create an executable shell script standing in for the CLI."""
    script = tmp_path / "claude-stub.sh"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


def json_line(event) -> str:
    return "echo '" + json.dumps(event) + "'\n"


class TestBuildCommand:
    """CLI arguments per run mode."""

    def test_read_only_restricts_tools(self, config):
        runner = ClaudeCliRunner(config)
        cmd = runner.build_command(RunRequest(prompt="plan it", working_dir="/srv", mode=RunMode.READ_ONLY))

        assert cmd[0] == config.claude_cli_path
        assert cmd[cmd.index("-p") + 1] == "plan it"
        assert cmd[cmd.index("--permission-mode") + 1] == "plan"
        assert cmd[cmd.index("--allowedTools") + 1] == READ_ONLY_TOOLS
        assert "stream-json" in cmd

    def test_read_write_uses_configured_permission_mode(self, config):
        config.permission_mode = "bypassPermissions"
        runner = ClaudeCliRunner(config)
        cmd = runner.build_command(RunRequest(prompt="do it", working_dir="/srv"))

        assert cmd[cmd.index("--permission-mode") + 1] == "bypassPermissions"
        assert "--allowedTools" not in cmd

    def test_optional_flags(self, config):
        config.claude_model = "opus"
        config.nice_value = 10
        runner = ClaudeCliRunner(config)
        cmd = runner.build_command(RunRequest(
            prompt="do it",
            working_dir="/srv",
            session_id="sess-7",
            system_prompt="be careful",
        ))

        assert cmd[:3] == ["nice", "-n", "10"]
        assert cmd[cmd.index("--model") + 1] == "opus"
        assert cmd[cmd.index("--system-prompt") + 1] == "be careful"
        assert cmd[cmd.index("--resume") + 1] == "sess-7"


class TestOutputParsing:
    """stream-json helpers."""

    def test_parse_stream_line_ignores_noise(self):
        assert parse_stream_line("") is None
        assert parse_stream_line("warning: something") is None
        assert parse_stream_line("[1, 2]") is None
        assert parse_stream_line('{"type": "system"}') == {"type": "system"}

    def test_successful_result(self):
        result = result_from_event({
            "type": "result",
            "subtype": "success",
            "result": "All done",
            "total_cost_usd": 0.042,
            "duration_ms": 5300,
            "session_id": "sess-1",
        })
        assert result.success
        assert result.cost_usd == 0.042
        assert result.duration_ms == 5300
        assert result.session_id == "sess-1"
        assert not result.needs_restart

    def test_error_result_without_text(self):
        result = result_from_event({"type": "result", "subtype": "error_max_turns", "is_error": True})
        assert not result.success
        assert "error_max_turns" in result.result_text

    def test_empty_result_is_failure(self):
        result = result_from_event({"type": "result", "subtype": "success", "result": ""})
        assert not result.success

    def test_restart_detection(self):
        assert detect_restart_need("Config updated, restart needed for it to apply")
        assert detect_restart_need("Please restart chatbot.service", service_name="chatbot.service")
        assert not detect_restart_need("Please restart chatbot.service")
        assert not detect_restart_need("All tests pass")

    def test_restart_flag_on_result(self):
        result = result_from_event({"type": "result", "result": "Done. Service restart required."})
        assert result.needs_restart

    def test_transient_classification(self):
        assert is_transient_error("API Error: 529 Overloaded")
        assert is_transient_error("read ECONNRESET")
        assert not is_transient_error("SyntaxError in module")

    @pytest.mark.parametrize("block, expected", [
        ({"type": "tool_use", "name": "Read", "input": {"file_path": "a.py"}}, ("file_read", "a.py")),
        ({"type": "tool_use", "name": "MultiEdit", "input": {"file_path": "b.py"}}, ("file_edit", "b.py")),
        ({"type": "tool_use", "name": "Write", "input": {"file_path": "c.py"}}, ("file_write", "c.py")),
        ({"type": "tool_use", "name": "Bash", "input": {"command": "pytest -q"}}, ("command", "pytest -q")),
        ({"type": "tool_use", "name": "Grep", "input": {}}, ("tool", "Grep")),
        ({"type": "text", "text": "hi"}, None),
    ])
    def test_describe_tool_use(self, block, expected):
        assert describe_tool_use(block) == expected


class TestSubprocess:
    """End-to-end against a stub CLI script."""

    @pytest.mark.asyncio
    async def test_streams_session_tools_and_result(self, config, tmp_path):
        script = write_stub_cli(
            tmp_path,
            json_line({"type": "system", "subtype": "init", "session_id": "sess-abc"})
            + json_line({
                "type": "assistant",
                "session_id": "sess-abc",
                "message": {"content": [
                    {"type": "tool_use", "name": "Edit", "input": {"file_path": "app.py"}},
                ]},
            })
            + json_line({
                "type": "result",
                "subtype": "success",
                "result": "Edited app.py",
                "total_cost_usd": 0.12,
                "duration_ms": 900,
                "session_id": "sess-abc",
            }),
        )
        config.claude_cli_path = str(script)
        sessions, events = [], []

        result = await ClaudeCliRunner(config).invoke(RunRequest(
            prompt="edit it",
            working_dir=str(tmp_path),
            on_session=sessions.append,
            on_event=lambda kind, detail: events.append((kind, detail)),
        ))

        assert result.success
        assert result.result_text == "Edited app.py"
        assert result.cost_usd == 0.12
        assert sessions == ["sess-abc"]
        assert events == [("file_edit", "app.py")]

    @pytest.mark.asyncio
    async def test_nonzero_exit_without_result(self, config, tmp_path):
        script = write_stub_cli(tmp_path, "echo 'fatal: bad flag' >&2\nexit 2\n")
        config.claude_cli_path = str(script)

        with pytest.raises(RunnerError) as exc_info:
            await ClaudeCliRunner(config).invoke(RunRequest(prompt="x", working_dir=str(tmp_path)))

        assert "code 2" in exc_info.value.message
        assert "bad flag" in exc_info.value.message
        assert not exc_info.value.transient

    @pytest.mark.asyncio
    async def test_cancel_terminates_process(self, config, tmp_path):
        script = write_stub_cli(
            tmp_path,
            json_line({"type": "system", "subtype": "init", "session_id": "sess-long"})
            + "exec sleep 30\n",
        )
        config.claude_cli_path = str(script)
        token = CancellationToken()
        request = RunRequest(
            prompt="long job",
            working_dir=str(tmp_path),
            cancel_token=token,
            on_session=lambda sid: token.cancel(),
        )
        with pytest.raises(TaskCancelledError):
            await asyncio.wait_for(ClaudeCliRunner(config).invoke(request), 10)

    @pytest.mark.asyncio
    async def test_timeout(self, config, tmp_path):
        script = write_stub_cli(tmp_path, "exec sleep 30\n")
        config.claude_cli_path = str(script)

        with pytest.raises(RunnerError, match="timed out"):
            await asyncio.wait_for(
                ClaudeCliRunner(config).invoke(RunRequest(
                    prompt="slow", working_dir=str(tmp_path), timeout_seconds=1,
                )),
                10,
            )

    @pytest.mark.asyncio
    async def test_already_cancelled_token_never_spawns(self, config, tmp_path):
        marker = tmp_path / "spawned"
        script = write_stub_cli(tmp_path, f"touch {marker}\n")
        config.claude_cli_path = str(script)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(TaskCancelledError):
            await ClaudeCliRunner(config).invoke(RunRequest(
                prompt="x", working_dir=str(tmp_path), cancel_token=token,
            ))
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_failed_resume_retries_without_session(self, config, tmp_path):
        # Fails whenever --resume is passed, succeeds otherwise
        script = write_stub_cli(
            tmp_path,
            'for arg in "$@"; do\n'
            '  if [ "$arg" = "--resume" ]; then\n'
            "    echo 'Error: session not found' >&2\n"
            "    exit 1\n"
            "  fi\n"
            "done\n"
            + json_line({"type": "result", "subtype": "success", "result": "fresh run", "session_id": "sess-new"}),
        )
        config.claude_cli_path = str(script)
        base = RunRequest(prompt="x", working_dir=str(tmp_path))

        result = await ClaudeCliRunner(config).invoke(replace(base, session_id="sess-gone"))

        assert result.success
        assert result.session_id == "sess-new"


class TestRetries:
    """Transient failures retry once."""

    @pytest.mark.asyncio
    async def test_transient_error_retried_once(self, config):
        runner = ClaudeCliRunner(config)
        expected = RunResult(result_text="ok", success=True)
        statuses = []
        attempts = AsyncMock(side_effect=[RunnerError("overloaded", transient=True), expected])

        with patch.object(runner, "_invoke_with_resume", attempts), \
                patch.object(runner, "_sleep", AsyncMock()) as sleep:
            result = await runner.invoke(RunRequest(
                prompt="x", working_dir="/srv", on_event=lambda k, d: statuses.append(k),
            ))

        assert result is expected
        assert attempts.await_count == 2
        sleep.assert_awaited_once()
        assert statuses == ["status"]

    @pytest.mark.asyncio
    async def test_second_transient_error_propagates(self, config):
        runner = ClaudeCliRunner(config)
        attempts = AsyncMock(side_effect=[
            RunnerError("overloaded", transient=True),
            RunnerError("overloaded again", transient=True),
        ])

        with patch.object(runner, "_invoke_with_resume", attempts), \
                patch.object(runner, "_sleep", AsyncMock()):
            with pytest.raises(RunnerError, match="again"):
                await runner.invoke(RunRequest(prompt="x", working_dir="/srv"))

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, config):
        runner = ClaudeCliRunner(config)
        attempts = AsyncMock(side_effect=RunnerError("timed out"))

        with patch.object(runner, "_invoke_with_resume", attempts):
            with pytest.raises(RunnerError):
                await runner.invoke(RunRequest(prompt="x", working_dir="/srv"))
        assert attempts.await_count == 1
