from __future__ import annotations


class AgentflowError(RuntimeError):
    """Base class for orchestrator failures."""


class UpstreamError(AgentflowError):
    """Raised when an agent call does not produce a usable response."""


class UpstreamRateLimited(UpstreamError):
    """Raised when an agent rejects a call with a rate-limit signature."""


class UpstreamFailure(UpstreamError):
    """Raised for any other agent error: transport failures, non-2xx responses, bad payloads."""


class MalformedAgentResponse(UpstreamFailure):
    """Raised when an agent response is missing a required key."""


class AdmissionRejected(AgentflowError):
    """Raised when the admission gate refuses a new submission."""

    def __init__(self, message: str = "Too many requests", *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PersistenceFailure(AgentflowError):
    """Raised when a workflow store write or read cannot be confirmed."""


class WorkflowNotFound(AgentflowError):
    """Raised when a workflow id is unknown to the store."""


class WorkflowExecutionError(AgentflowError):
    """Raised when a pipeline run aborts after its workflow record was created."""

    def __init__(self, *, workflow_id: str, action: str, stage: str, message: str) -> None:
        super().__init__(f"workflow {workflow_id} failed during {stage}: {message}")
        self.workflow_id = workflow_id
        self.action = action
        self.stage = stage
        self.message = message


class WorkflowCancelled(WorkflowExecutionError):
    """Raised when a run is stopped through its cancellation event."""


__all__ = [
    "AdmissionRejected",
    "AgentflowError",
    "MalformedAgentResponse",
    "PersistenceFailure",
    "UpstreamError",
    "UpstreamFailure",
    "UpstreamRateLimited",
    "WorkflowCancelled",
    "WorkflowExecutionError",
    "WorkflowNotFound",
]
