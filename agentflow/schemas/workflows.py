from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..workflows.pipeline import WorkflowOutcome
from ..workflows.query import WorkflowDetail
from ..workflows.state import WorkflowRecord, WorkflowStep


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkflowSubmission(CamelModel):
    action: str = Field(..., min_length=1, max_length=255)
    text: str = Field(..., min_length=1)
    context: str | None = None


class WorkflowSubmissionResponse(CamelModel):
    workflow_id: str
    final_output: str
    agreement: bool
    validation_passed: bool
    steps_executed: int
    total_tokens: int = 0

    @classmethod
    def from_outcome(cls, outcome: WorkflowOutcome) -> "WorkflowSubmissionResponse":
        return cls(
            workflow_id=outcome.workflow_id,
            final_output=outcome.final_output,
            agreement=outcome.agreement,
            validation_passed=outcome.validation_passed,
            steps_executed=outcome.steps_executed,
            total_tokens=outcome.total_tokens,
        )


class WorkflowRecordModel(CamelModel):
    id: UUID
    action: str
    status: str
    input_text: str
    context: str | None = None
    final_output: str | None = None
    agreement: bool | None = None
    validation_passed: bool | None = None
    failed_stage: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, record: WorkflowRecord) -> "WorkflowRecordModel":
        return cls(**record.model_dump(exclude={"status"}), status=record.status.value)


class WorkflowStepModel(CamelModel):
    id: UUID
    workflow_id: UUID
    step_number: int
    agent: str
    stage: str
    input: str
    output: str
    tokens_used: int
    created_at: datetime

    @classmethod
    def from_domain(cls, step: WorkflowStep) -> "WorkflowStepModel":
        return cls(
            id=step.id,
            workflow_id=step.workflow_id,
            step_number=step.step_number,
            agent=step.agent.value,
            stage=step.stage.value,
            input=step.input,
            output=step.output,
            tokens_used=step.tokens_used,
            created_at=step.created_at,
        )


class WorkflowDetailResponse(CamelModel):
    workflow: WorkflowRecordModel
    steps: list[WorkflowStepModel] = Field(default_factory=list)
    total_tokens: int = 0

    @classmethod
    def from_domain(cls, detail: WorkflowDetail) -> "WorkflowDetailResponse":
        return cls(
            workflow=WorkflowRecordModel.from_domain(detail.workflow),
            steps=[WorkflowStepModel.from_domain(step) for step in detail.steps],
            total_tokens=detail.total_tokens,
        )


class HealthResponse(BaseModel):
    status: Literal["healthy", "unhealthy"]
    service: str
    database: Literal["connected", "disconnected"]
    timestamp: datetime


__all__ = [
    "HealthResponse",
    "WorkflowDetailResponse",
    "WorkflowRecordModel",
    "WorkflowStepModel",
    "WorkflowSubmission",
    "WorkflowSubmissionResponse",
]
