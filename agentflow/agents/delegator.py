from __future__ import annotations

from ..core.config import AgentEndpointSettings
from ..workflows.state import AgentRole
from .contracts import DelegationResult, Usage
from .http import AgentHTTPClient


class DelegatorClient(AgentHTTPClient):
    """Turns a submission into a task plan for the processing agent."""

    role = AgentRole.DELEGATOR

    @classmethod
    def from_settings(cls, settings: AgentEndpointSettings) -> "DelegatorClient":
        return cls(settings.delegator_url, timeout_seconds=settings.timeout_seconds, headers=settings.extra_headers)

    async def delegate(self, text: str, action: str, context: str | None = None) -> DelegationResult:
        data = await self._post("/delegate", {"text": text, "action": action, "context": context})
        task_plan = self._require(data, "taskPlan", "/delegate")
        return DelegationResult(task_plan=task_plan, usage=Usage.from_payload(data.get("usage")))
