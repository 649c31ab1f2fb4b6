"""
External task runner.

The orchestrator treats the runner as one opaque async call per phase:

    result = await runner.invoke(RunRequest(prompt, working_dir, mode, ...))

TaskRunner is the contract. ClaudeCliRunner implements it on top of the
Claude CLI as a subprocess with stream-json output:

- read-only mode (planning) restricts the CLI to investigation tools
- read-write mode (execution) runs with the configured permission mode
- a cancellation token terminates the subprocess (grace period, then kill)
- the session id is reported as soon as the CLI announces it, so an
  interrupted run can be resumed
- a failed resume retries once without the session
- transient failures (overload, network, 5xx) retry once after a short delay
"""

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Dict, Any, List, Callable, Tuple

from .config import OrchestratorConfig
from .errors import RunnerError, TaskCancelledError
from .execution_lock import CancellationToken

logger = logging.getLogger("runner")

READ_ONLY_TOOLS = "Read,Grep,Glob,WebFetch,WebSearch,Task"
TRANSIENT_RETRY_DELAY = 3.0
TERMINATE_GRACE_SECONDS = 2.0
STREAM_LINE_LIMIT = 16 * 1024 * 1024

TRANSIENT_ERROR_PATTERNS = [
    "rate limit",
    "429",
    "econnreset",
    "econnrefused",
    "etimedout",
    "socket hang up",
    "network error",
    "overloaded",
    "503",
    "502",
]

SESSION_ERROR_PATTERNS = ["session", "resume", "not found", "invalid"]

RESTART_PATTERNS = ["restart needed", "needs a restart", "service restart"]


class RunMode(str, Enum):
    READ_ONLY = "read_only"
    READ_WRITE = "read_write"


@dataclass
class RunRequest:
    """
    One runner invocation.

    on_session is called with the runner's session id as soon as it is known.
    on_event is called with (kind, detail) for tool activity and status text.
    Both run on the event loop and must not block.
    """
    prompt: str
    working_dir: str
    mode: RunMode = RunMode.READ_WRITE
    session_id: Optional[str] = None
    system_prompt: Optional[str] = None
    timeout_seconds: int = 0
    cancel_token: Optional[CancellationToken] = None
    on_session: Optional[Callable[[str], None]] = None
    on_event: Optional[Callable[[str, str], None]] = None


@dataclass
class RunResult:
    result_text: str
    success: bool
    cost_usd: float = 0.0
    duration_ms: int = 0
    session_id: Optional[str] = None
    needs_restart: bool = False


class TaskRunner:
    """Contract for the external runner."""

    async def invoke(self, request: RunRequest) -> RunResult:
        """
        Run one prompt to completion.

        Raises:
            TaskCancelledError: The request's cancel token fired
            RunnerError: No usable result could be obtained
        """
        raise NotImplementedError


# -----------------------------------------------------------------------------
# Output helpers
# -----------------------------------------------------------------------------
def is_transient_error(message: str) -> bool:
    lower = message.lower()
    return any(p in lower for p in TRANSIENT_ERROR_PATTERNS)


def is_session_error(message: str) -> bool:
    lower = message.lower()
    return any(p in lower for p in SESSION_ERROR_PATTERNS)


def detect_restart_need(text: str, service_name: str = "") -> bool:
    """Whether the runner's answer asks for the hosting service to be restarted."""
    lower = text.lower()
    if any(p in lower for p in RESTART_PATTERNS):
        return True
    if service_name:
        return f"restart {service_name.lower()}" in lower
    return False


def parse_stream_line(line: str) -> Optional[Dict[str, Any]]:
    """Parse one stream-json line. Non-JSON noise returns None."""
    line = line.strip()
    if not line:
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def describe_tool_use(block: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    """Map a tool_use content block to a (kind, detail) progress pair."""
    if block.get("type") != "tool_use" or not block.get("name"):
        return None
    name = block["name"]
    params = block.get("input") or {}
    if name == "Read":
        return "file_read", str(params.get("file_path", ""))
    if name in ("Edit", "MultiEdit"):
        return "file_edit", str(params.get("file_path", ""))
    if name == "Write":
        return "file_write", str(params.get("file_path", ""))
    if name == "Bash":
        return "command", str(params.get("command", ""))[:200]
    return "tool", name


def result_from_event(event: Dict[str, Any], service_name: str = "") -> RunResult:
    """Build a RunResult from the CLI's final `result` event."""
    text = event.get("result")
    if not isinstance(text, str):
        text = ""
    subtype = str(event.get("subtype") or "")
    is_error = bool(event.get("is_error")) or subtype.startswith("error")

    if is_error and not text:
        text = f"Runner reported an error ({subtype or 'unknown'}). The task may be partially complete."
    elif not text:
        text = "No readable response from the runner."
        is_error = True

    return RunResult(
        result_text=text,
        success=not is_error,
        cost_usd=float(event.get("total_cost_usd") or 0.0),
        duration_ms=int(event.get("duration_ms") or 0),
        session_id=event.get("session_id") or None,
        needs_restart=not is_error and detect_restart_need(text, service_name),
    )


# -----------------------------------------------------------------------------
# Claude CLI runner
# -----------------------------------------------------------------------------
class ClaudeCliRunner(TaskRunner):
    """Runs the Claude CLI as a subprocess per invocation."""

    def __init__(self, config: OrchestratorConfig):
        self._config = config

    def build_command(self, request: RunRequest) -> List[str]:
        cmd = []
        if self._config.nice_value > 0:
            # Lower CPU priority for runner processes
            cmd += ["nice", "-n", str(self._config.nice_value)]
        cmd += [
            self._config.claude_cli_path,
            "-p", request.prompt,
            "--output-format", "stream-json",
            "--verbose",
        ]
        if self._config.claude_model:
            cmd += ["--model", self._config.claude_model]
        if request.system_prompt:
            cmd += ["--system-prompt", request.system_prompt]
        if request.mode == RunMode.READ_ONLY:
            cmd += ["--permission-mode", "plan", "--allowedTools", READ_ONLY_TOOLS]
        else:
            cmd += ["--permission-mode", self._config.permission_mode]
        if request.session_id:
            cmd += ["--resume", request.session_id]
        return cmd

    async def invoke(self, request: RunRequest) -> RunResult:
        try:
            return await self._invoke_with_resume(request)
        except RunnerError as e:
            if not e.transient:
                raise
            logger.warning(f"Transient runner error, retrying in {TRANSIENT_RETRY_DELAY}s: {e}")
            if request.on_event:
                request.on_event("status", "Hit a transient error, retrying...")
            await self._sleep(TRANSIENT_RETRY_DELAY, request.cancel_token)
            return await self._invoke_with_resume(request)

    async def _invoke_with_resume(self, request: RunRequest) -> RunResult:
        try:
            return await self._invoke_once(request)
        except RunnerError as e:
            if request.session_id and e.session_error:
                logger.warning(f"Resume of session {request.session_id} failed, retrying without it")
                return await self._invoke_once(replace(request, session_id=None))
            raise

    async def _invoke_once(self, request: RunRequest) -> RunResult:
        token = request.cancel_token
        if token is not None:
            token.raise_if_cancelled()

        cmd = self.build_command(request)
        logger.info(
            f"Invoking runner ({request.mode.value}) in {request.working_dir}"
            + (f" resuming {request.session_id}" if request.session_id else "")
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=request.working_dir,
                limit=STREAM_LINE_LIMIT,
            )
        except OSError as e:
            raise RunnerError(f"Failed to start runner: {e}")

        reader = asyncio.create_task(self._collect_output(process, request))
        waiters = {reader}
        cancel_waiter = None
        if token is not None:
            cancel_waiter = asyncio.create_task(token.wait())
            waiters.add(cancel_waiter)

        timeout = request.timeout_seconds if request.timeout_seconds > 0 else None
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            await self._terminate(process)
            reader.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if reader not in done:
            await self._terminate(process)
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
            if token is not None and token.cancelled:
                logger.info("Runner cancelled")
                raise TaskCancelledError()
            logger.warning(f"Runner timed out after {timeout}s")
            raise RunnerError(f"Runner timed out after {timeout}s")

        events, stderr_text = reader.result()
        returncode = await process.wait()

        result_event = None
        for event in reversed(events):
            if event.get("type") == "result":
                result_event = event
                break

        if result_event is None:
            lower = stderr_text.lower()
            if "rate limit" in lower or "429" in lower:
                raise RunnerError("Runner is rate limited", transient=True, rate_limited=True)
            detail = stderr_text.strip()[:500] or "no output"
            raise RunnerError(
                f"Runner exited with code {returncode}: {detail}",
                transient=is_transient_error(stderr_text),
                session_error=bool(request.session_id) and is_session_error(stderr_text),
            )

        result = result_from_event(result_event, self._config.service_name)
        if not result.session_id:
            result.session_id = request.session_id
        logger.info(
            f"Runner finished: success={result.success} "
            f"cost=${result.cost_usd:.4f} duration={result.duration_ms}ms"
        )
        return result

    async def _collect_output(
        self,
        process: asyncio.subprocess.Process,
        request: RunRequest,
    ) -> Tuple[List[Dict[str, Any]], str]:
        """Read stdout events and stderr concurrently until the process closes them."""
        events: List[Dict[str, Any]] = []
        session_reported = False

        async def read_stdout() -> None:
            nonlocal session_reported
            async for raw in process.stdout:
                event = parse_stream_line(raw.decode(errors="replace"))
                if event is None:
                    continue
                events.append(event)

                session_id = event.get("session_id")
                if session_id and not session_reported and request.on_session:
                    session_reported = True
                    request.on_session(session_id)

                if request.on_event and event.get("type") == "assistant":
                    content = (event.get("message") or {}).get("content") or []
                    for block in content:
                        if not isinstance(block, dict):
                            continue
                        described = describe_tool_use(block)
                        if described:
                            request.on_event(*described)

        _, stderr = await asyncio.gather(read_stdout(), process.stderr.read())
        return events, stderr.decode(errors="replace")

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate, then kill after the grace period."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass

    async def _sleep(self, seconds: float, token: Optional[CancellationToken]) -> None:
        if token is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(token.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise TaskCancelledError()
