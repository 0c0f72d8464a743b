from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class WorkflowStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not WorkflowStatus.IN_PROGRESS


class AgentRole(str, Enum):
    DELEGATOR = "delegator"
    PROCESSOR = "processor"
    REVIEWER = "reviewer"


class WorkflowStage(str, Enum):
    DELEGATION = "delegation"
    PROCESSING = "processing"
    RESEARCH = "research"
    REFLECTION = "reflection"
    CONCLUSION = "conclusion"
    PEER_REVIEW = "peer_review"
    REFINEMENT = "refinement"


STAGE_AGENTS: dict[WorkflowStage, AgentRole] = {
    WorkflowStage.DELEGATION: AgentRole.DELEGATOR,
    WorkflowStage.PROCESSING: AgentRole.PROCESSOR,
    WorkflowStage.RESEARCH: AgentRole.PROCESSOR,
    WorkflowStage.REFLECTION: AgentRole.PROCESSOR,
    WorkflowStage.CONCLUSION: AgentRole.PROCESSOR,
    WorkflowStage.PEER_REVIEW: AgentRole.REVIEWER,
    WorkflowStage.REFINEMENT: AgentRole.PROCESSOR,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRecord(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    action: str = Field(min_length=1)
    status: WorkflowStatus = Field(default=WorkflowStatus.IN_PROGRESS)
    input_text: str
    context: str | None = None
    final_output: str | None = None
    agreement: bool | None = None
    validation_passed: bool | None = None
    failed_stage: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class WorkflowStep(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    workflow_id: UUID
    step_number: int = Field(ge=1)
    agent: AgentRole
    stage: WorkflowStage
    input: str = ""
    output: str = ""
    tokens_used: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)


def new_workflow(action: str, input_text: str, context: str | None = None) -> WorkflowRecord:
    return WorkflowRecord(action=action, input_text=input_text, context=context)
