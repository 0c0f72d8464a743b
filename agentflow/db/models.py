from __future__ import annotations

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from ..workflows.state import AgentRole, WorkflowStage, WorkflowStatus

metadata = MetaData()

_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in WorkflowStatus)
_AGENT_VALUES = ", ".join(f"'{role.value}'" for role in AgentRole)
_STAGE_VALUES = ", ".join(f"'{stage.value}'" for stage in WorkflowStage)

workflows = Table(
    "workflows",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True),
    Column("action", String(length=255), nullable=False),
    Column("status", String(length=32), nullable=False, server_default=WorkflowStatus.IN_PROGRESS.value),
    Column("input_text", Text(), nullable=False),
    Column("context", Text(), nullable=True),
    Column("final_output", Text(), nullable=True),
    Column("agreement", Boolean(), nullable=True),
    Column("validation_passed", Boolean(), nullable=True),
    Column("failed_stage", String(length=32), nullable=True),
    Column("error", Text(), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint(f"status IN ({_STATUS_VALUES})", name="ck_workflows_status"),
)
Index("ix_workflows_status", workflows.c.status)

workflow_steps = Table(
    "workflow_steps",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True),
    Column("workflow_id", UUID(as_uuid=True), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False),
    Column("step_number", Integer(), nullable=False),
    Column("agent", String(length=32), nullable=False),
    Column("stage", String(length=32), nullable=False),
    Column("input", Text(), nullable=False, server_default=""),
    Column("output", Text(), nullable=False, server_default=""),
    Column("tokens_used", Integer(), nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("workflow_id", "step_number", name="uq_workflow_steps_workflow_step"),
    CheckConstraint("step_number >= 1", name="ck_workflow_steps_step_number"),
    CheckConstraint("tokens_used >= 0", name="ck_workflow_steps_tokens_used"),
    CheckConstraint(f"agent IN ({_AGENT_VALUES})", name="ck_workflow_steps_agent"),
    CheckConstraint(f"stage IN ({_STAGE_VALUES})", name="ck_workflow_steps_stage"),
)
Index("ix_workflow_steps_workflow_id", workflow_steps.c.workflow_id)

__all__ = ["metadata", "workflow_steps", "workflows"]
