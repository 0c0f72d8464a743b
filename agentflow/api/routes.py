from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from ..core.admission import admission_dependency
from ..core.config import Settings, get_app_settings
from ..core.errors import PersistenceFailure, WorkflowExecutionError, WorkflowNotFound
from ..core.logging import get_logger
from ..dependencies import get_orchestrator, get_query_service, get_workflow_store
from ..schemas.workflows import (
    HealthResponse,
    WorkflowDetailResponse,
    WorkflowSubmission,
    WorkflowSubmissionResponse,
)
from ..workflows.pipeline import PipelineOrchestrator
from ..workflows.query import WorkflowQueryService
from ..workflows.store import WorkflowStore

logger = get_logger(name=__name__)

router = APIRouter()
health_router = APIRouter()

admission_gate = admission_dependency()


@router.post(
    "/workflow",
    response_model=WorkflowSubmissionResponse,
    dependencies=[Depends(admission_gate)],
    tags=["workflow"],
)
async def submit_workflow(
    payload: WorkflowSubmission,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> WorkflowSubmissionResponse:
    try:
        outcome = await orchestrator.submit(payload.action, payload.text, payload.context)
    except WorkflowExecutionError as exc:
        logger.error(
            "workflow_submission_failed",
            workflow_id=exc.workflow_id,
            action=exc.action,
            stage=exc.stage,
            error=exc.message,
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "error": "Workflow execution failed",
                "workflowId": exc.workflow_id,
                "action": exc.action,
                "stage": exc.stage,
                "status": "failed",
            },
        ) from exc
    except PersistenceFailure as exc:
        logger.error("workflow_submission_not_started", action=payload.action, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "Workflow could not be started"},
        ) from exc
    return WorkflowSubmissionResponse.from_outcome(outcome)


@router.get("/workflow/{workflow_id}", response_model=WorkflowDetailResponse, tags=["workflow"])
async def get_workflow(
    workflow_id: str,
    queries: WorkflowQueryService = Depends(get_query_service),
) -> WorkflowDetailResponse:
    try:
        detail = await queries.get(workflow_id)
    except WorkflowNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workflow not found") from exc
    except PersistenceFailure as exc:
        logger.error("workflow_query_failed", workflow_id=workflow_id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "Workflow store unavailable"},
        ) from exc
    return WorkflowDetailResponse.from_domain(detail)


@health_router.get("/health", response_model=HealthResponse, tags=["health"])
async def healthcheck(
    store: WorkflowStore = Depends(get_workflow_store),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    connected = await store.ping()
    body = HealthResponse(
        status="healthy" if connected else "unhealthy",
        service=settings.service_name,
        database="connected" if connected else "disconnected",
        timestamp=datetime.now(timezone.utc),
    )
    if not connected:
        logger.warning("healthcheck_store_disconnected")
    return JSONResponse(
        status_code=status.HTTP_200_OK if connected else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body.model_dump(mode="json"),
    )
