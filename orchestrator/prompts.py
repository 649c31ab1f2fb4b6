"""
Prompt builders for the external runner.

Planning prompts run in read-only mode and must not change anything.
Execution and improve-loop prompts run with full tool access.
"""

from typing import Optional

EXECUTOR_SYSTEM_PROMPT = """You are an autonomous software engineering agent working inside the given directory.
You receive tasks that a human has already approved. Complete them end to end.

Rules:
- Do the work, do not just describe it.
- Keep changes focused on the task. Do not refactor unrelated code.
- Run the relevant tests or checks when they exist and report the outcome.
- If the task needs the hosting service to be restarted, say "restart needed" in your final answer.
- Finish with a short summary of what changed and anything left undone."""

PLANNER_SYSTEM_PROMPT = """You are a planning agent. You investigate a codebase and propose a plan. You MUST NOT modify anything:
no file edits, no commits, no commands with side effects.

Investigate with read-only tools, then answer with a concise plan using these sections:

What needs to change:
Files involved:
Approach:
Risks:

Keep the plan under 2000 characters. The user will approve, revise or cancel it."""

IMPROVE_SYSTEM_PROMPT = """You are running one iteration of an autonomous improvement loop on this codebase.
Nobody reviews individual iterations, so be conservative.

Rules:
- Make exactly one focused, self-contained improvement.
- Do not repeat work recorded in the iteration history.
- Verify the change (tests, type checks, build) before finishing.
- Commit your changes with git before you finish. An iteration without a commit counts as failed.
- Start your final answer with a one-line summary of the improvement."""


def _memory_block(memory_context: Optional[str]) -> str:
    if not memory_context:
        return ""
    return f"[MEMORY CONTEXT]\n{memory_context}\n[/MEMORY CONTEXT]\n\n"


def build_task_prompt(
    task: str,
    context: str,
    raw_message: str,
    working_dir: str,
    memory_context: Optional[str] = None,
) -> str:
    """Prompt body shared by planning and execution."""
    parts = [_memory_block(memory_context) + f"## Task\n{task}"]
    if context:
        parts.append(f"## Context\n{context}")
    if raw_message and raw_message != task:
        parts.append(f"## Original User Message\n{raw_message}")
    parts.append(f"## Working Directory\n{working_dir}")
    return "\n\n".join(parts)


def build_revision_prompt(base_prompt: str, previous_plan: str, feedback: str) -> str:
    """Planning prompt for a revision: the previous plan plus what to change."""
    return (
        f"{base_prompt}\n\n"
        f"## Previous Plan\n{previous_plan}\n\n"
        f"## Requested Changes\n{feedback}\n\n"
        "Produce a complete revised plan that addresses the requested changes."
    )


def enrich_context_with_plan(context: str, plan_text: str) -> str:
    """Execution context: the original context followed by the approved plan."""
    return f"{context}\n\n## Approved Plan\n{plan_text}"


def build_resume_prompt(task: str) -> str:
    return (
        "The process running this task was interrupted before it finished.\n"
        f"Original task: {task}\n\n"
        "Check what was already done, then continue from where you left off. "
        "Do not redo completed steps."
    )


def build_strategic_plan_prompt(
    item_count: int,
    direction: Optional[str],
    history: str,
    file_tree: str,
) -> str:
    """Read-only batch planning pass for the improve loop."""
    focus = direction or "general code quality, reliability and maintainability"
    return (
        f"Investigate this codebase and propose exactly {item_count} improvements "
        "for upcoming autonomous iterations.\n\n"
        f"## Focus\n{focus}\n\n"
        f"## Previous Iterations\n{history}\n\n"
        f"## File Tree\n{file_tree}\n\n"
        "Requirements:\n"
        "- Order items by priority, most valuable first.\n"
        "- Items must not conflict with each other or touch the same code.\n"
        "- Each item must be completable in a single iteration.\n"
        "- Number the items 1 to "
        f"{item_count}, one short paragraph each."
    )


def build_iteration_prompt(
    iteration: int,
    total_iterations: int,
    direction: Optional[str],
    history: str,
    strategic_plan: Optional[str] = None,
    plan_item: Optional[int] = None,
    file_tree: Optional[str] = None,
) -> str:
    """Read-write prompt for one improve-loop iteration."""
    parts = [f"## Iteration {iteration} of {total_iterations}"]
    if direction:
        parts.append(f"## Focus\n{direction}")
    if strategic_plan and plan_item:
        parts.append(
            f"## Strategic Plan\n{strategic_plan}\n\n"
            f"Implement item {plan_item} of the plan above, and only that item."
        )
    else:
        parts.append("Pick the single most valuable improvement not yet covered by the history.")
    parts.append(f"## Iteration History\n{history}")
    if file_tree:
        parts.append(f"## File Tree\n{file_tree}")
    return "\n\n".join(parts)
