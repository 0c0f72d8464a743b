from __future__ import annotations

from typing import Any, Mapping, Protocol, runtime_checkable

from pydantic import BaseModel, Field


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))
    if isinstance(value, str):
        try:
            return max(0, int(float(value)))
        except ValueError:
            return 0
    return 0


class Usage(BaseModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    @classmethod
    def from_payload(cls, payload: Any) -> "Usage":
        """Normalise both agent usage shapes.

        The reviewer reports ``input_tokens``/``output_tokens``; the other agents
        report ``prompt_tokens``/``completion_tokens``/``total_tokens``.
        """
        if not isinstance(payload, Mapping):
            return cls()
        input_tokens = _as_int(payload.get("input_tokens", payload.get("prompt_tokens")))
        output_tokens = _as_int(payload.get("output_tokens", payload.get("completion_tokens")))
        total = _as_int(payload.get("total_tokens")) or input_tokens + output_tokens
        return cls(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total)


class DelegationResult(BaseModel):
    task_plan: Any = None
    usage: Usage = Field(default_factory=Usage)


class ProcessingResult(BaseModel):
    result: str
    usage: Usage = Field(default_factory=Usage)


class ResearchResult(BaseModel):
    research: str
    usage: Usage = Field(default_factory=Usage)


class ReflectionResult(BaseModel):
    reflection: str
    usage: Usage = Field(default_factory=Usage)


class ConclusionResult(BaseModel):
    conclusion: str
    usage: Usage = Field(default_factory=Usage)


class RefinementResult(BaseModel):
    refined_content: str
    usage: Usage = Field(default_factory=Usage)


class ReviewResult(BaseModel):
    approved: bool
    reviewed_content: str
    feedback: str = ""
    improvements: list[str] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    score: int = Field(default=0, ge=0, le=100)
    usage: Usage = Field(default_factory=Usage)


@runtime_checkable
class Delegator(Protocol):
    async def delegate(self, text: str, action: str, context: str | None = None) -> DelegationResult:
        ...


@runtime_checkable
class Processor(Protocol):
    async def process(
        self,
        text: str,
        action: str,
        task_plan: Any,
        context: str | None = None,
    ) -> ProcessingResult:
        ...

    async def research(self, topic: str, context: str | None = None) -> ResearchResult:
        ...

    async def reflect(self, content: str, question: str | None = None) -> ReflectionResult:
        ...

    async def conclude(self, content: str) -> ConclusionResult:
        ...

    async def refine(self, content: str, feedback: str | None = None) -> RefinementResult:
        ...


@runtime_checkable
class Reviewer(Protocol):
    async def review(
        self,
        text: str,
        action: str,
        context: str | None = None,
        root_instruction: str | None = None,
    ) -> ReviewResult:
        ...


__all__ = [
    "ConclusionResult",
    "DelegationResult",
    "Delegator",
    "ProcessingResult",
    "Processor",
    "RefinementResult",
    "ReflectionResult",
    "ResearchResult",
    "ReviewResult",
    "Reviewer",
    "Usage",
]
