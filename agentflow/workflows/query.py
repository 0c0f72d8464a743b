from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from ..core.errors import WorkflowNotFound
from .state import WorkflowRecord, WorkflowStep
from .store import WorkflowStore


@dataclass(slots=True)
class WorkflowDetail:
    workflow: WorkflowRecord
    steps: list[WorkflowStep]

    @property
    def total_tokens(self) -> int:
        return sum(step.tokens_used for step in self.steps)


class WorkflowQueryService:
    """Read-only view over the workflow store."""

    def __init__(self, store: WorkflowStore) -> None:
        self._store = store

    async def get(self, workflow_id: UUID | str) -> WorkflowDetail:
        if not isinstance(workflow_id, UUID):
            try:
                workflow_id = UUID(str(workflow_id))
            except ValueError as exc:
                raise WorkflowNotFound(f"workflow {workflow_id} not found") from exc
        record = await self._store.get_workflow(workflow_id)
        if record is None:
            raise WorkflowNotFound(f"workflow {workflow_id} not found")
        steps = await self._store.list_steps(workflow_id)
        return WorkflowDetail(workflow=record, steps=sorted(steps, key=lambda step: step.step_number))
