"""
Unit Tests for classified intent parsing
"""

import pytest
from pydantic import ValidationError

from orchestrator.intents import (
    parse_intent,
    WorkRequest,
    ApprovePlan,
    RevisePlan,
    CancelPlan,
)


class TestParseIntent:
    """Classifier output is validated into typed intents."""

    def test_work_request_defaults(self):
        intent = parse_intent({"type": "work_request", "task": "add tests"})
        assert isinstance(intent, WorkRequest)
        assert intent.complexity == "moderate"
        assert intent.urgency == "normal"
        assert intent.context == ""

    def test_work_request_full(self):
        intent = parse_intent({
            "type": "work_request",
            "task": "rewrite billing",
            "context": "legacy module",
            "complexity": "complex",
            "urgency": "quick",
        })
        assert intent.complexity == "complex"
        assert intent.urgency == "quick"

    @pytest.mark.parametrize("payload, cls", [
        ({"type": "approve_plan"}, ApprovePlan),
        ({"type": "cancel_plan"}, CancelPlan),
        ({"type": "revise_plan", "feedback": "skip the migration"}, RevisePlan),
    ])
    def test_plan_decisions(self, payload, cls):
        assert isinstance(parse_intent(payload), cls)

    def test_none_is_plain_chat(self):
        assert parse_intent(None) is None

    @pytest.mark.parametrize("payload", [
        {"type": "launch_rockets"},
        {"type": "work_request"},
        {"type": "work_request", "task": ""},
        {"type": "work_request", "task": "x", "complexity": "epic"},
        {"type": "revise_plan"},
        {"task": "no type"},
    ])
    def test_invalid_payloads_rejected(self, payload):
        with pytest.raises(ValidationError):
            parse_intent(payload)
