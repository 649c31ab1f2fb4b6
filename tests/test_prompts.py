"""
Unit Tests for runner prompt builders
"""

from orchestrator.prompts import (
    build_task_prompt,
    build_revision_prompt,
    enrich_context_with_plan,
    build_iteration_prompt,
)


class TestTaskPrompts:

    def test_task_prompt_sections(self):
        prompt = build_task_prompt(
            "Add retries", "Flaky upstream", "can you add retries?", "/srv/app", "User prefers small PRs",
        )
        assert prompt.startswith("[MEMORY CONTEXT]\nUser prefers small PRs")
        assert "## Task\nAdd retries" in prompt
        assert "## Context\nFlaky upstream" in prompt
        assert "## Original User Message\ncan you add retries?" in prompt
        assert "## Working Directory\n/srv/app" in prompt

    def test_raw_message_equal_to_task_is_omitted(self):
        prompt = build_task_prompt("Add retries", "", "Add retries", "/srv/app")
        assert "Original User Message" not in prompt
        assert "MEMORY CONTEXT" not in prompt

    def test_revision_prompt_carries_previous_plan(self):
        prompt = build_revision_prompt("base", "1. old step", "drop step 1")
        assert prompt.startswith("base")
        assert "## Previous Plan\n1. old step" in prompt
        assert "## Requested Changes\ndrop step 1" in prompt

    def test_enrich_context_with_plan(self):
        assert enrich_context_with_plan("ctx", "1. do") == "ctx\n\n## Approved Plan\n1. do"


class TestIterationPrompt:

    def test_guided_by_plan(self):
        prompt = build_iteration_prompt(2, 5, "performance", "history", "1. a\n2. b", 2)
        assert prompt.startswith("## Iteration 2 of 5")
        assert "## Focus\nperformance" in prompt
        assert "Implement item 2 of the plan above" in prompt

    def test_unguided(self):
        prompt = build_iteration_prompt(1, 1, None, "No previous iterations.")
        assert "Strategic Plan" not in prompt
        assert "## Iteration History\nNo previous iterations." in prompt

    def test_file_tree_appended_when_given(self):
        prompt = build_iteration_prompt(1, 3, None, "No previous iterations.", file_tree="app.py\nsrc/")
        assert prompt.endswith("## File Tree\napp.py\nsrc/")
        assert "File Tree" not in build_iteration_prompt(1, 3, None, "No previous iterations.")
