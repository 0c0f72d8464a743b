from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Iterator, Mapping
from uuid import UUID

import asyncpg

from ..core.config import Settings
from ..core.errors import PersistenceFailure
from ..core.logging import get_logger
from .state import AgentRole, WorkflowRecord, WorkflowStage, WorkflowStatus, WorkflowStep, new_workflow

logger = get_logger(name=__name__)

TimestampFactory = Callable[[], datetime]


class WorkflowStore:
    """Durable workflow summaries plus an append-only step log.

    Step rows are only ever inserted. The summary row changes exactly once after
    creation, when it moves to a terminal status; every later write is refused.
    """

    def __init__(self, *, now: TimestampFactory | None = None) -> None:
        self._now: TimestampFactory = now or (lambda: datetime.now(timezone.utc))

    async def create_workflow(self, action: str, input_text: str, context: str | None = None) -> WorkflowRecord:
        record = new_workflow(action, input_text, context)
        record.created_at = record.updated_at = self._now()
        return await self._insert_workflow(record)

    async def append_step(self, step: WorkflowStep) -> WorkflowStep:
        step = step.model_copy(update={"created_at": self._now()})
        return await self._insert_step(step)

    async def commit_workflow(
        self,
        workflow_id: UUID,
        *,
        final_output: str,
        agreement: bool,
        validation_passed: bool,
    ) -> WorkflowRecord:
        return await self._finalize(
            workflow_id,
            {
                "status": WorkflowStatus.COMPLETED,
                "final_output": final_output,
                "agreement": agreement,
                "validation_passed": validation_passed,
            },
        )

    async def fail_workflow(self, workflow_id: UUID, *, stage: str, error: str) -> WorkflowRecord:
        return await self._finalize(
            workflow_id,
            {
                "status": WorkflowStatus.FAILED,
                "failed_stage": stage,
                "error": error,
            },
        )

    async def get_workflow(self, workflow_id: UUID) -> WorkflowRecord | None:
        raise NotImplementedError

    async def list_steps(self, workflow_id: UUID) -> list[WorkflowStep]:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["WorkflowStore"]:
        try:
            yield self
        finally:
            await self.close()

    # Storage hooks ------------------------------------------------------------------

    async def _insert_workflow(self, record: WorkflowRecord) -> WorkflowRecord:
        raise NotImplementedError

    async def _insert_step(self, step: WorkflowStep) -> WorkflowStep:
        raise NotImplementedError

    async def _finalize(self, workflow_id: UUID, changes: Mapping[str, Any]) -> WorkflowRecord:
        raise NotImplementedError


class InMemoryWorkflowStore(WorkflowStore):
    def __init__(self, *, now: TimestampFactory | None = None) -> None:
        super().__init__(now=now)
        self._workflows: dict[UUID, WorkflowRecord] = {}
        self._steps: dict[UUID, list[WorkflowStep]] = {}
        self._lock = asyncio.Lock()
        self.available = True

    async def get_workflow(self, workflow_id: UUID) -> WorkflowRecord | None:
        async with self._lock:
            record = self._workflows.get(workflow_id)
            return None if record is None else record.model_copy()

    async def list_steps(self, workflow_id: UUID) -> list[WorkflowStep]:
        async with self._lock:
            steps = self._steps.get(workflow_id, [])
            return [step.model_copy() for step in sorted(steps, key=lambda item: item.step_number)]

    async def ping(self) -> bool:
        return self.available

    async def _insert_workflow(self, record: WorkflowRecord) -> WorkflowRecord:
        async with self._lock:
            if record.id in self._workflows:
                raise PersistenceFailure(f"workflow {record.id} already exists")
            self._workflows[record.id] = record.model_copy()
            self._steps[record.id] = []
        return record

    async def _insert_step(self, step: WorkflowStep) -> WorkflowStep:
        async with self._lock:
            record = self._workflows.get(step.workflow_id)
            if record is None:
                raise PersistenceFailure(f"workflow {step.workflow_id} does not exist")
            if record.status.is_terminal:
                raise PersistenceFailure(f"workflow {step.workflow_id} is already {record.status.value}")
            steps = self._steps[step.workflow_id]
            if any(existing.step_number == step.step_number for existing in steps):
                raise PersistenceFailure(
                    f"step {step.step_number} already recorded for workflow {step.workflow_id}"
                )
            steps.append(step.model_copy())
            self._workflows[step.workflow_id] = record.model_copy(update={"updated_at": step.created_at})
        return step

    async def _finalize(self, workflow_id: UUID, changes: Mapping[str, Any]) -> WorkflowRecord:
        async with self._lock:
            record = self._workflows.get(workflow_id)
            if record is None:
                raise PersistenceFailure(f"workflow {workflow_id} does not exist")
            if record.status.is_terminal:
                raise PersistenceFailure(f"workflow {workflow_id} is already {record.status.value}")
            updated = record.model_copy(update={**changes, "updated_at": self._now()})
            self._workflows[workflow_id] = updated
            return updated.model_copy()


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
        logger.error("workflow_store_error", operation=operation, error=str(exc))
        raise PersistenceFailure(f"{operation} failed: {exc}") from exc


class PostgresWorkflowStore(WorkflowStore):
    _WORKFLOW_COLUMNS = """
        id, action, status, input_text, context, final_output, agreement,
        validation_passed, failed_stage, error, created_at, updated_at
    """

    _INSERT_WORKFLOW = """
        INSERT INTO workflows (id, action, status, input_text, context, created_at, updated_at)
        VALUES ($1, $2, $3, $4, $5, $6, $6)
    """

    _TOUCH_WORKFLOW = """
        UPDATE workflows
        SET updated_at = $2
        WHERE id = $1 AND status = 'in_progress'
    """

    _INSERT_STEP = """
        INSERT INTO workflow_steps (id, workflow_id, step_number, agent, stage, input, output, tokens_used, created_at)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
    """

    _FINALIZE_WORKFLOW = f"""
        UPDATE workflows
        SET status = $2,
            final_output = $3,
            agreement = $4,
            validation_passed = $5,
            failed_stage = $6,
            error = $7,
            updated_at = $8
        WHERE id = $1 AND status = 'in_progress'
        RETURNING {_WORKFLOW_COLUMNS}
    """

    _FETCH_WORKFLOW = f"""
        SELECT {_WORKFLOW_COLUMNS}
        FROM workflows
        WHERE id = $1
    """

    _FETCH_STEPS = """
        SELECT id, workflow_id, step_number, agent, stage, input, output, tokens_used, created_at
        FROM workflow_steps
        WHERE workflow_id = $1
        ORDER BY step_number ASC
    """

    def __init__(self, pool: Any, *, now: TimestampFactory | None = None) -> None:
        super().__init__(now=now)
        self._pool_or_coroutine = pool
        self._pool: Any | None = None
        self._pool_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresWorkflowStore":
        pool = asyncpg.create_pool(
            dsn=str(settings.postgres.dsn),
            min_size=settings.postgres.pool_min_size,
            max_size=settings.postgres.pool_max_size,
        )
        return cls(pool)

    async def get_workflow(self, workflow_id: UUID) -> WorkflowRecord | None:
        with _storage_errors("get_workflow"):
            pool = await self._ensure_pool()
            async with pool.acquire() as connection:
                row = await connection.fetchrow(self._FETCH_WORKFLOW, workflow_id)
        return None if row is None else self._record_from_row(row)

    async def list_steps(self, workflow_id: UUID) -> list[WorkflowStep]:
        with _storage_errors("list_steps"):
            pool = await self._ensure_pool()
            async with pool.acquire() as connection:
                rows = await connection.fetch(self._FETCH_STEPS, workflow_id)
        return [self._step_from_row(row) for row in rows]

    async def ping(self) -> bool:
        try:
            with _storage_errors("ping"):
                pool = await self._ensure_pool()
                async with pool.acquire() as connection:
                    await connection.fetchval("SELECT 1")
        except PersistenceFailure:
            return False
        return True

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _insert_workflow(self, record: WorkflowRecord) -> WorkflowRecord:
        with _storage_errors("create_workflow"):
            pool = await self._ensure_pool()
            async with pool.acquire() as connection:
                await connection.execute(
                    self._INSERT_WORKFLOW,
                    record.id,
                    record.action,
                    record.status.value,
                    record.input_text,
                    record.context,
                    record.created_at,
                )
        return record

    async def _insert_step(self, step: WorkflowStep) -> WorkflowStep:
        with _storage_errors("append_step"):
            pool = await self._ensure_pool()
            async with pool.acquire() as connection:
                async with connection.transaction():
                    touched = await connection.execute(self._TOUCH_WORKFLOW, step.workflow_id, step.created_at)
                    if _affected_rows(touched) == 0:
                        raise PersistenceFailure(f"workflow {step.workflow_id} is missing or no longer in progress")
                    await connection.execute(
                        self._INSERT_STEP,
                        step.id,
                        step.workflow_id,
                        step.step_number,
                        step.agent.value,
                        step.stage.value,
                        step.input,
                        step.output,
                        step.tokens_used,
                        step.created_at,
                    )
        return step

    async def _finalize(self, workflow_id: UUID, changes: Mapping[str, Any]) -> WorkflowRecord:
        status: WorkflowStatus = changes["status"]
        with _storage_errors("finalize_workflow"):
            pool = await self._ensure_pool()
            async with pool.acquire() as connection:
                row = await connection.fetchrow(
                    self._FINALIZE_WORKFLOW,
                    workflow_id,
                    status.value,
                    changes.get("final_output"),
                    changes.get("agreement"),
                    changes.get("validation_passed"),
                    changes.get("failed_stage"),
                    changes.get("error"),
                    self._now(),
                )
        if row is None:
            raise PersistenceFailure(f"workflow {workflow_id} is missing or no longer in progress")
        return self._record_from_row(row)

    async def _ensure_pool(self) -> Any:
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool is None:
                candidate = self._pool_or_coroutine
                if inspect.isawaitable(candidate):
                    candidate = await candidate
                self._pool = candidate
            return self._pool

    @staticmethod
    def _record_from_row(row: Mapping[str, Any]) -> WorkflowRecord:
        return WorkflowRecord(
            id=row["id"],
            action=row["action"],
            status=WorkflowStatus(row["status"]),
            input_text=row["input_text"],
            context=row["context"],
            final_output=row["final_output"],
            agreement=row["agreement"],
            validation_passed=row["validation_passed"],
            failed_stage=row["failed_stage"],
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _step_from_row(row: Mapping[str, Any]) -> WorkflowStep:
        return WorkflowStep(
            id=row["id"],
            workflow_id=row["workflow_id"],
            step_number=row["step_number"],
            agent=AgentRole(row["agent"]),
            stage=WorkflowStage(row["stage"]),
            input=row["input"] or "",
            output=row["output"] or "",
            tokens_used=row["tokens_used"] or 0,
            created_at=row["created_at"],
        )


def _affected_rows(command_tag: str) -> int:
    try:
        return int(str(command_tag).rsplit(" ", 1)[-1])
    except ValueError:
        return 0


def build_workflow_store(settings: Settings) -> WorkflowStore:
    if settings.environment == "test":
        logger.info("workflow_store_in_memory", reason="test_environment")
        return InMemoryWorkflowStore()
    if settings.storage.backend == "memory":
        logger.info("workflow_store_in_memory", reason="configured")
        return InMemoryWorkflowStore()
    store = PostgresWorkflowStore.from_settings(settings)
    logger.info("workflow_store_postgres_enabled", environment=settings.environment)
    return store


__all__ = [
    "InMemoryWorkflowStore",
    "PostgresWorkflowStore",
    "WorkflowStore",
    "build_workflow_store",
]
