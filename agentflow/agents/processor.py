from __future__ import annotations

from typing import Any

from ..core.config import AgentEndpointSettings
from ..workflows.state import AgentRole
from .contracts import (
    ConclusionResult,
    ProcessingResult,
    RefinementResult,
    ReflectionResult,
    ResearchResult,
    Usage,
)
from .http import AgentHTTPClient


class ProcessorClient(AgentHTTPClient):
    role = AgentRole.PROCESSOR

    @classmethod
    def from_settings(cls, settings: AgentEndpointSettings) -> "ProcessorClient":
        return cls(settings.processor_url, timeout_seconds=settings.timeout_seconds, headers=settings.extra_headers)

    async def process(
        self,
        text: str,
        action: str,
        task_plan: Any,
        context: str | None = None,
    ) -> ProcessingResult:
        data = await self._post(
            "/process",
            {"text": text, "action": action, "taskPlan": task_plan, "context": context},
        )
        return ProcessingResult(
            result=self._require_text(data, "result", "/process"),
            usage=Usage.from_payload(data.get("usage")),
        )

    async def research(self, topic: str, context: str | None = None) -> ResearchResult:
        data = await self._post("/research", {"topic": topic, "context": context})
        return ResearchResult(
            research=self._require_text(data, "research", "/research"),
            usage=Usage.from_payload(data.get("usage")),
        )

    async def reflect(self, content: str, question: str | None = None) -> ReflectionResult:
        data = await self._post("/reflect", {"content": content, "question": question})
        return ReflectionResult(
            reflection=self._require_text(data, "reflection", "/reflect"),
            usage=Usage.from_payload(data.get("usage")),
        )

    async def conclude(self, content: str) -> ConclusionResult:
        data = await self._post("/conclude", {"content": content})
        return ConclusionResult(
            conclusion=self._require_text(data, "conclusion", "/conclude"),
            usage=Usage.from_payload(data.get("usage")),
        )

    async def refine(self, content: str, feedback: str | None = None) -> RefinementResult:
        data = await self._post("/refine", {"content": content, "feedback": feedback})
        return RefinementResult(
            refined_content=self._require_text(data, "refinedContent", "/refine"),
            usage=Usage.from_payload(data.get("usage")),
        )
