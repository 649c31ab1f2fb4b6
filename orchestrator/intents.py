"""
Classified intent shapes.

The front end's classifier turns free-form chat input into one of four
actions; the orchestrator only ever consumes these validated shapes.
"""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

Complexity = Literal["trivial", "moderate", "complex"]


class WorkRequest(BaseModel):
    """New work. Always goes through plan and approval before it executes."""
    type: Literal["work_request"] = "work_request"
    task: str = Field(..., min_length=1)
    context: str = ""
    complexity: Complexity = "moderate"
    urgency: Literal["normal", "quick"] = "normal"


class ApprovePlan(BaseModel):
    type: Literal["approve_plan"] = "approve_plan"


class RevisePlan(BaseModel):
    type: Literal["revise_plan"] = "revise_plan"
    feedback: str = Field(..., min_length=1)


class CancelPlan(BaseModel):
    type: Literal["cancel_plan"] = "cancel_plan"


Intent = Annotated[
    Union[WorkRequest, ApprovePlan, RevisePlan, CancelPlan],
    Field(discriminator="type"),
]

_intent_adapter: TypeAdapter = TypeAdapter(Intent)


def parse_intent(payload: Optional[Dict[str, Any]]) -> Optional[BaseModel]:
    """
    Validate a classifier action.

    Args:
        payload: Classifier output, or None when the message carried no action

    Returns:
        The typed intent, or None for a plain chat reply

    Raises:
        pydantic.ValidationError: Unknown type or missing fields
    """
    if payload is None:
        return None
    return _intent_adapter.validate_python(payload)
