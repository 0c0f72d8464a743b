from __future__ import annotations

from collections import deque
from typing import Any, Iterable

from agentflow.agents.contracts import (
    ConclusionResult,
    DelegationResult,
    ProcessingResult,
    RefinementResult,
    ReflectionResult,
    ResearchResult,
    ReviewResult,
    Usage,
)
from agentflow.workflows.store import InMemoryWorkflowStore


def usage(total: int) -> Usage:
    return Usage(input_tokens=total // 2, output_tokens=total - total // 2, total_tokens=total)


class StubDelegator:
    """Deterministic delegation agent recording every call."""

    def __init__(self, *, task_plan: Any = None, tokens: int = 10) -> None:
        self.task_plan = task_plan or {"steps": ["analyse", "answer"]}
        self.tokens = tokens
        self.calls: list[dict[str, Any]] = []

    async def delegate(self, text: str, action: str, context: str | None = None) -> DelegationResult:
        self.calls.append({"text": text, "action": action, "context": context})
        return DelegationResult(task_plan=self.task_plan, usage=usage(self.tokens))


class StubProcessor:
    def __init__(
        self,
        *,
        result: str = "processed result",
        research: str = "research notes",
        reflection: str = "reflection notes",
        conclusion: str = "concluded draft",
        refined: Iterable[str] = ("refined draft",),
        tokens: int = 20,
    ) -> None:
        self.result = result
        self.research_text = research
        self.reflection = reflection
        self.conclusion = conclusion
        self._refined = deque(refined)
        self.tokens = tokens
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def process(self, text: str, action: str, task_plan: Any, context: str | None = None) -> ProcessingResult:
        self.calls.append(("process", {"text": text, "action": action, "task_plan": task_plan, "context": context}))
        return ProcessingResult(result=self.result, usage=usage(self.tokens))

    async def research(self, topic: str, context: str | None = None) -> ResearchResult:
        self.calls.append(("research", {"topic": topic, "context": context}))
        return ResearchResult(research=self.research_text, usage=usage(self.tokens))

    async def reflect(self, content: str, question: str | None = None) -> ReflectionResult:
        self.calls.append(("reflect", {"content": content, "question": question}))
        return ReflectionResult(reflection=self.reflection, usage=usage(self.tokens))

    async def conclude(self, content: str) -> ConclusionResult:
        self.calls.append(("conclude", {"content": content}))
        return ConclusionResult(conclusion=self.conclusion, usage=usage(self.tokens))

    async def refine(self, content: str, feedback: str | None = None) -> RefinementResult:
        self.calls.append(("refine", {"content": content, "feedback": feedback}))
        refined = self._refined.popleft() if len(self._refined) > 1 else self._refined[0]
        return RefinementResult(refined_content=refined, usage=usage(self.tokens))

    def called(self, name: str) -> list[dict[str, Any]]:
        return [payload for method, payload in self.calls if method == name]


class StubReviewer:
    """Returns queued verdicts in order, repeating the last one."""

    def __init__(self, *verdicts: ReviewResult) -> None:
        self._verdicts = deque(verdicts or (review_verdict(approved=True, score=92),))
        self.calls: list[dict[str, Any]] = []

    async def review(
        self,
        text: str,
        action: str,
        context: str | None = None,
        root_instruction: str | None = None,
    ) -> ReviewResult:
        self.calls.append(
            {"text": text, "action": action, "context": context, "root_instruction": root_instruction}
        )
        if len(self._verdicts) > 1:
            return self._verdicts.popleft()
        return self._verdicts[0]


def review_verdict(
    *,
    approved: bool,
    score: int,
    content: str = "reviewed draft",
    feedback: str = "tighten the summary",
    tokens: int = 30,
) -> ReviewResult:
    return ReviewResult(
        approved=approved,
        reviewed_content=content,
        feedback=feedback,
        improvements=["be concise"],
        issues=[] if approved else ["too vague"],
        score=score,
        usage=usage(tokens),
    )


class FlakyProcessor(StubProcessor):
    """Fails ``process`` with queued errors before answering normally."""

    def __init__(self, errors: Iterable[BaseException], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._errors = deque(errors)
        self.process_attempts = 0

    async def process(self, text: str, action: str, task_plan: Any, context: str | None = None) -> ProcessingResult:
        self.process_attempts += 1
        if self._errors:
            raise self._errors.popleft()
        return await super().process(text, action, task_plan, context)


class FailingStore(InMemoryWorkflowStore):
    """In-memory store whose selected operations raise the given error."""

    def __init__(
        self,
        error: BaseException,
        *,
        fail_on: Iterable[str] = ("create_workflow",),
        fail_from_step: int = 1,
    ) -> None:
        super().__init__()
        self.error = error
        self.fail_on = set(fail_on)
        self.fail_from_step = fail_from_step

    async def create_workflow(self, action: str, input_text: str, context: str | None = None):
        if "create_workflow" in self.fail_on:
            raise self.error
        return await super().create_workflow(action, input_text, context)

    async def append_step(self, step):
        if "append_step" in self.fail_on and step.step_number >= self.fail_from_step:
            raise self.error
        return await super().append_step(step)

    async def commit_workflow(self, workflow_id, *, final_output: str, agreement: bool, validation_passed: bool):
        if "commit_workflow" in self.fail_on:
            raise self.error
        return await super().commit_workflow(
            workflow_id,
            final_output=final_output,
            agreement=agreement,
            validation_passed=validation_passed,
        )

    async def fail_workflow(self, workflow_id, *, stage: str, error: str):
        if "fail_workflow" in self.fail_on:
            raise self.error
        return await super().fail_workflow(workflow_id, stage=stage, error=error)


async def no_sleep(delay: float) -> None:  # noqa: ARG001
    return None


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class RecordingLogger:
    """Captures structured log calls made through a module-level logger."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def _record(self, level: str, event: str, **kwargs: Any) -> None:
        self.records.append((level, event, kwargs))

    def debug(self, event: str, **kwargs: Any) -> None:
        self._record("debug", event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._record("info", event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._record("warning", event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._record("error", event, **kwargs)

    def events(self, level: str | None = None) -> list[str]:
        return [event for lvl, event, _ in self.records if level is None or lvl == level]
