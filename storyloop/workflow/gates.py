"""
Gate requests and responses.

A gate pauses a step until the caller answers. Three kinds:

    external_deps {deps}       -> skip | submit(report)
    validation    {questions}  -> skip | auto | clarify(clarification)
    pr_review     {review_url} -> merge | feedback(feedback)
"""

from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, Field, ValidationError, model_validator


class GateKind(str, Enum):
    EXTERNAL_DEPS = "external_deps"
    VALIDATION = "validation"
    PR_REVIEW = "pr_review"


class GateRequest(BaseModel):
    """What the caller must answer before the next step can proceed."""
    kind: GateKind
    item_id: str
    deps: list[dict] = Field(default_factory=list)
    questions: list[str] = Field(default_factory=list)
    review_url: str | None = None


class ExternalDepsResponse(BaseModel):
    action: Literal["skip", "submit"]
    report: str = ""

    @model_validator(mode="after")
    def _report_required(self):
        if self.action == "submit" and not self.report.strip():
            raise ValueError("submit requires a report")
        return self


class ValidationResponse(BaseModel):
    action: Literal["skip", "auto", "clarify"]
    clarification: str = ""

    @model_validator(mode="after")
    def _clarification_required(self):
        if self.action == "clarify" and not self.clarification.strip():
            raise ValueError("clarify requires a clarification")
        return self


class ReviewResponse(BaseModel):
    action: Literal["merge", "feedback"]
    feedback: str = ""

    @model_validator(mode="after")
    def _feedback_required(self):
        if self.action == "feedback" and not self.feedback.strip():
            raise ValueError("feedback requires feedback text")
        return self


GateResponse = Union[ExternalDepsResponse, ValidationResponse, ReviewResponse]

RESPONSE_MODELS = {
    GateKind.EXTERNAL_DEPS: ExternalDepsResponse,
    GateKind.VALIDATION: ValidationResponse,
    GateKind.PR_REVIEW: ReviewResponse,
}


class GateResponseError(Exception):
    """A gate response does not fit the pending gate."""

    def __init__(self, kind: GateKind, message: str):
        self.kind = kind
        super().__init__(f"Invalid {kind.value} response: {message}")


def parse_gate_response(kind: GateKind, response) -> GateResponse:
    """Build the response model for kind from a dict (or accept a model).

    Raises:
        GateResponseError: If the response does not validate for kind
    """
    model = RESPONSE_MODELS[kind]
    if isinstance(response, model):
        return response
    if isinstance(response, BaseModel):
        response = response.model_dump()
    try:
        return model.model_validate(response)
    except ValidationError as e:
        errors = "; ".join(err["msg"] for err in e.errors())
        raise GateResponseError(kind, errors) from None
