from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends

from .agents.delegator import DelegatorClient
from .agents.processor import ProcessorClient
from .agents.reviewer import ReviewerClient
from .core.config import Settings, get_app_settings
from .core.logging import get_logger
from .workflows.pipeline import PipelineOrchestrator
from .workflows.query import WorkflowQueryService
from .workflows.store import WorkflowStore, build_workflow_store

logger = get_logger(name=__name__)

_workflow_store_singleton: WorkflowStore | None = None
_orchestrator_singleton: PipelineOrchestrator | None = None
_agent_clients: tuple[DelegatorClient, ProcessorClient, ReviewerClient] | None = None


def get_workflow_store_singleton(settings: Settings) -> WorkflowStore:
    global _workflow_store_singleton
    if _workflow_store_singleton is None:
        _workflow_store_singleton = build_workflow_store(settings)
    return _workflow_store_singleton


def get_orchestrator_singleton(settings: Settings) -> PipelineOrchestrator:
    global _orchestrator_singleton, _agent_clients
    if _orchestrator_singleton is None:
        delegator = DelegatorClient.from_settings(settings.agents)
        processor = ProcessorClient.from_settings(settings.agents)
        reviewer = ReviewerClient.from_settings(settings.agents)
        _agent_clients = (delegator, processor, reviewer)
        _orchestrator_singleton = PipelineOrchestrator.from_settings(
            settings,
            store=get_workflow_store_singleton(settings),
            delegator=delegator,
            processor=processor,
            reviewer=reviewer,
        )
    return _orchestrator_singleton


async def shutdown_dependencies(settings: Settings) -> None:
    global _workflow_store_singleton, _orchestrator_singleton, _agent_clients
    if _orchestrator_singleton is not None:
        await _orchestrator_singleton.drain(settings.pipeline.drain_timeout_seconds)
        _orchestrator_singleton = None
    if _agent_clients is not None:
        for client in _agent_clients:
            await client.aclose()
        _agent_clients = None
    if _workflow_store_singleton is not None:
        await _workflow_store_singleton.close()
        _workflow_store_singleton = None
    logger.info("dependencies_shutdown")


async def get_workflow_store(
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[WorkflowStore]:
    yield get_workflow_store_singleton(settings)


async def get_orchestrator(
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[PipelineOrchestrator]:
    yield get_orchestrator_singleton(settings)


async def get_query_service(
    store: WorkflowStore = Depends(get_workflow_store),
) -> AsyncIterator[WorkflowQueryService]:
    yield WorkflowQueryService(store)
