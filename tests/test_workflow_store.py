from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

import asyncpg
import pytest

from agentflow.core.config import get_settings
from agentflow.core.errors import PersistenceFailure
from agentflow.workflows.state import AgentRole, WorkflowStage, WorkflowStatus, WorkflowStep
from agentflow.workflows.store import InMemoryWorkflowStore, PostgresWorkflowStore, build_workflow_store


class SteppingClock:
    def __init__(self) -> None:
        self.current = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


def _step(workflow_id: uuid.UUID, number: int, stage: WorkflowStage = WorkflowStage.DELEGATION) -> WorkflowStep:
    return WorkflowStep(
        workflow_id=workflow_id,
        step_number=number,
        agent=AgentRole.DELEGATOR,
        stage=stage,
        input="in",
        output="out",
        tokens_used=5,
    )


@pytest.mark.asyncio
async def test_in_memory_store_round_trip() -> None:
    clock = SteppingClock()
    store = InMemoryWorkflowStore(now=clock)
    record = await store.create_workflow("SUMMARIZE", "some text", "ctx")

    await store.append_step(_step(record.id, 2, WorkflowStage.PROCESSING))
    await store.append_step(_step(record.id, 1))
    committed = await store.commit_workflow(
        record.id,
        final_output="final",
        agreement=True,
        validation_passed=True,
    )

    fetched = await store.get_workflow(record.id)
    steps = await store.list_steps(record.id)
    assert fetched is not None
    assert fetched.status is WorkflowStatus.COMPLETED
    assert fetched.final_output == "final"
    assert committed.updated_at > record.created_at
    assert [step.step_number for step in steps] == [1, 2]


@pytest.mark.asyncio
async def test_step_append_bumps_updated_at() -> None:
    store = InMemoryWorkflowStore(now=SteppingClock())
    record = await store.create_workflow("SUMMARIZE", "text")

    step = await store.append_step(_step(record.id, 1))

    fetched = await store.get_workflow(record.id)
    assert fetched is not None
    assert fetched.updated_at == step.created_at
    assert fetched.status is WorkflowStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_duplicate_step_number_is_rejected() -> None:
    store = InMemoryWorkflowStore()
    record = await store.create_workflow("SUMMARIZE", "text")
    await store.append_step(_step(record.id, 1))

    with pytest.raises(PersistenceFailure):
        await store.append_step(_step(record.id, 1))


@pytest.mark.asyncio
async def test_terminal_workflow_refuses_further_writes() -> None:
    store = InMemoryWorkflowStore()
    record = await store.create_workflow("SUMMARIZE", "text")
    await store.fail_workflow(record.id, stage="processing", error="UpstreamFailure: boom")

    with pytest.raises(PersistenceFailure):
        await store.append_step(_step(record.id, 1))
    with pytest.raises(PersistenceFailure):
        await store.commit_workflow(record.id, final_output="x", agreement=True, validation_passed=True)

    fetched = await store.get_workflow(record.id)
    assert fetched is not None
    assert fetched.status is WorkflowStatus.FAILED
    assert fetched.failed_stage == "processing"
    assert fetched.final_output is None


@pytest.mark.asyncio
async def test_unknown_workflow_reads_and_writes() -> None:
    store = InMemoryWorkflowStore()
    missing = uuid.uuid4()

    assert await store.get_workflow(missing) is None
    assert await store.list_steps(missing) == []
    with pytest.raises(PersistenceFailure):
        await store.append_step(_step(missing, 1))


@pytest.mark.asyncio
async def test_returned_records_are_copies() -> None:
    store = InMemoryWorkflowStore()
    record = await store.create_workflow("SUMMARIZE", "text")

    fetched = await store.get_workflow(record.id)
    assert fetched is not None
    fetched.final_output = "tampered"

    again = await store.get_workflow(record.id)
    assert again is not None
    assert again.final_output is None


def test_build_workflow_store_uses_memory_for_tests() -> None:
    settings = get_settings({"environment": "test"})

    assert isinstance(build_workflow_store(settings), InMemoryWorkflowStore)


class FakeConnection:
    def __init__(self, *, execute_results: list[str] | None = None, fetchrow_result: Any = None) -> None:
        self.execute_results = list(execute_results or [])
        self.fetchrow_result = fetchrow_result
        self.executed: list[tuple[str, tuple[Any, ...]]] = []
        self.fetchval_error: BaseException | None = None

    async def execute(self, query: str, *args: Any) -> str:
        self.executed.append((query, args))
        return self.execute_results.pop(0) if self.execute_results else "INSERT 0 1"

    async def fetchrow(self, query: str, *args: Any) -> Any:
        self.executed.append((query, args))
        return self.fetchrow_result

    async def fetchval(self, query: str, *args: Any) -> Any:
        if self.fetchval_error is not None:
            raise self.fetchval_error
        return 1

    @asynccontextmanager
    async def transaction(self):
        yield self


class FakePool:
    def __init__(self, connection: FakeConnection) -> None:
        self.connection = connection
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield self.connection

    async def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_postgres_finalize_without_row_is_a_persistence_failure() -> None:
    store = PostgresWorkflowStore(FakePool(FakeConnection(fetchrow_result=None)))

    with pytest.raises(PersistenceFailure):
        await store.commit_workflow(uuid.uuid4(), final_output="x", agreement=True, validation_passed=True)


@pytest.mark.asyncio
async def test_postgres_step_on_closed_workflow_is_refused() -> None:
    connection = FakeConnection(execute_results=["UPDATE 0"])
    store = PostgresWorkflowStore(FakePool(connection))

    with pytest.raises(PersistenceFailure):
        await store.append_step(_step(uuid.uuid4(), 1))

    assert len(connection.executed) == 1


@pytest.mark.asyncio
async def test_postgres_step_insert_runs_after_touch() -> None:
    connection = FakeConnection(execute_results=["UPDATE 1", "INSERT 0 1"])
    store = PostgresWorkflowStore(FakePool(connection))
    workflow_id = uuid.uuid4()

    await store.append_step(_step(workflow_id, 3, WorkflowStage.RESEARCH))

    insert_args = connection.executed[1][1]
    assert insert_args[1] == workflow_id
    assert insert_args[2] == 3
    assert insert_args[3] == "delegator"
    assert insert_args[4] == "research"


@pytest.mark.asyncio
async def test_postgres_driver_errors_become_persistence_failures() -> None:
    class BrokenConnection(FakeConnection):
        async def execute(self, query: str, *args: Any) -> str:
            raise asyncpg.InterfaceError("connection is closed")

    store = PostgresWorkflowStore(FakePool(BrokenConnection()))

    with pytest.raises(PersistenceFailure):
        await store.create_workflow("SUMMARIZE", "text")


@pytest.mark.asyncio
async def test_postgres_ping_reports_unreachable_database() -> None:
    connection = FakeConnection()
    pool = FakePool(connection)
    store = PostgresWorkflowStore(pool)
    assert await store.ping() is True

    connection.fetchval_error = asyncio.TimeoutError()
    assert await store.ping() is False

    await store.close()
    assert pool.closed is True


class SlowPoolStartup:
    """Awaitable pool factory that refuses to be started twice."""

    def __init__(self, pool: FakePool) -> None:
        self.pool = pool
        self.starts = 0

    def __await__(self):
        return self._start().__await__()

    async def _start(self) -> FakePool:
        self.starts += 1
        if self.starts > 1:
            raise asyncpg.InterfaceError("pool is already being initialized")
        await asyncio.sleep(0.01)
        return self.pool


@pytest.mark.asyncio
async def test_postgres_concurrent_first_calls_share_one_pool() -> None:
    startup = SlowPoolStartup(FakePool(FakeConnection(fetchrow_result=None)))
    store = PostgresWorkflowStore(startup)

    healthy, record = await asyncio.gather(store.ping(), store.get_workflow(uuid.uuid4()))

    assert healthy is True
    assert record is None
    assert startup.starts == 1
    assert await store.ping() is True
    assert startup.starts == 1
