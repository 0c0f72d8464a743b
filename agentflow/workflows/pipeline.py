from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from ..agents.contracts import Delegator, Processor, ReviewResult, Reviewer, Usage
from ..core import metrics
from ..core.config import PipelineSettings, Settings
from ..core.errors import WorkflowCancelled, WorkflowExecutionError
from ..core.logging import get_logger
from ..core.retry import RetryPolicy
from .state import STAGE_AGENTS, WorkflowRecord, WorkflowStage, WorkflowStep
from .store import WorkflowStore

logger = get_logger(name=__name__)

T = TypeVar("T")

AGREEMENT_THRESHOLD = 80
DEFAULT_COMPLEX_ACTIONS = frozenset({"MAKE_ACTIONABLE", "BUILD_A_SKILL", "COMPREHENSIVE_ANALYSIS"})
COMMIT_STAGE = "commit"
_ERROR_SUMMARY_CHARS = 300


class PipelineState(str, Enum):
    SUBMITTED = "submitted"
    DELEGATED = "delegated"
    PROCESSED = "processed"
    RESEARCHED = "researched"
    REFLECTED = "reflected"
    CONCLUDED = "concluded"
    REVIEWED = "reviewed"
    REFINED = "refined"
    COMMITTED = "committed"
    FAILED = "failed"


def agreement_reached(approved: bool, score: int, threshold: int = AGREEMENT_THRESHOLD) -> bool:
    return bool(approved) and score >= threshold


@dataclass(frozen=True, slots=True)
class PipelinePolicy:
    complex_actions: frozenset[str] = DEFAULT_COMPLEX_ACTIONS
    agreement_threshold: int = AGREEMENT_THRESHOLD
    max_refinement_rounds: int = 1
    persist_failures: bool = True
    step_text_limit: int = 200_000

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "PipelinePolicy":
        return cls(
            complex_actions=frozenset(settings.complex_actions),
            agreement_threshold=settings.agreement_threshold,
            max_refinement_rounds=settings.max_refinement_rounds,
            persist_failures=settings.persist_failures,
            step_text_limit=settings.step_text_limit,
        )


@dataclass(slots=True)
class PipelineRun:
    """In-memory context for one workflow; never persisted as a whole."""

    record: WorkflowRecord
    state: PipelineState = PipelineState.SUBMITTED
    current: str | None = None
    next_step: int = 1
    total_tokens: int = 0
    task_plan: Any = None
    result: str | None = None
    research: str | None = None
    reflection: str | None = None
    conclusion: str | None = None
    review: ReviewResult | None = None
    review_subject: str | None = None
    refined_content: str | None = None
    refinement_rounds: int = 0
    agreement: bool = False

    @property
    def workflow_id(self) -> str:
        return str(self.record.id)

    @property
    def action(self) -> str:
        return self.record.action

    @property
    def steps_executed(self) -> int:
        return self.next_step - 1


Guard = Callable[[PipelineRun, PipelinePolicy], bool]


@dataclass(frozen=True, slots=True)
class Transition:
    target: PipelineState
    stage: WorkflowStage | None = None
    guard: Guard | None = None


def requires_research(run: PipelineRun, policy: PipelinePolicy) -> bool:
    return run.action in policy.complex_actions


def needs_refinement(run: PipelineRun, policy: PipelinePolicy) -> bool:
    return not run.agreement and run.refinement_rounds < policy.max_refinement_rounds


def refinement_rounds_remaining(run: PipelineRun, policy: PipelinePolicy) -> bool:
    return run.refinement_rounds < policy.max_refinement_rounds


# Candidates are tried in order; the first whose guard passes is taken. A
# transition without a stage is the commit.
TRANSITIONS: dict[PipelineState, tuple[Transition, ...]] = {
    PipelineState.SUBMITTED: (Transition(PipelineState.DELEGATED, WorkflowStage.DELEGATION),),
    PipelineState.DELEGATED: (Transition(PipelineState.PROCESSED, WorkflowStage.PROCESSING),),
    PipelineState.PROCESSED: (
        Transition(PipelineState.RESEARCHED, WorkflowStage.RESEARCH, requires_research),
        Transition(PipelineState.REFLECTED, WorkflowStage.REFLECTION),
    ),
    PipelineState.RESEARCHED: (Transition(PipelineState.REFLECTED, WorkflowStage.REFLECTION),),
    PipelineState.REFLECTED: (Transition(PipelineState.CONCLUDED, WorkflowStage.CONCLUSION),),
    PipelineState.CONCLUDED: (Transition(PipelineState.REVIEWED, WorkflowStage.PEER_REVIEW),),
    PipelineState.REVIEWED: (
        Transition(PipelineState.REFINED, WorkflowStage.REFINEMENT, needs_refinement),
        Transition(PipelineState.COMMITTED),
    ),
    PipelineState.REFINED: (
        Transition(PipelineState.REVIEWED, WorkflowStage.PEER_REVIEW, refinement_rounds_remaining),
        Transition(PipelineState.COMMITTED),
    ),
}


def next_transition(run: PipelineRun, policy: PipelinePolicy) -> Transition:
    for candidate in TRANSITIONS.get(run.state, ()):
        if candidate.guard is None or candidate.guard(run, policy):
            return candidate
    raise RuntimeError(f"no transition out of pipeline state {run.state.value}")


@dataclass(slots=True)
class StageOutput:
    input: Any
    output: Any
    usage: Usage = field(default_factory=Usage)


@dataclass(slots=True)
class WorkflowOutcome:
    workflow_id: str
    final_output: str
    agreement: bool
    validation_passed: bool
    steps_executed: int
    total_tokens: int


def _serialize(value: Any, limit: int) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    if len(text) > limit:
        return text[:limit]
    return text


def _reviewed(run: PipelineRun) -> ReviewResult:
    if run.review is None:
        raise RuntimeError(f"workflow {run.workflow_id} has not been reviewed")
    return run.review


def _summarise_error(exc: BaseException) -> str:
    message = str(exc) or exc.__class__.__name__
    if len(message) > _ERROR_SUMMARY_CHARS:
        message = message[:_ERROR_SUMMARY_CHARS] + "..."
    return f"{exc.__class__.__name__}: {message}"


class PipelineOrchestrator:
    """Drives one workflow at a time per task through the fixed stage sequence.

    Every executed stage is written to the store before the next one starts, so
    the step log is always a prefix of the run. The summary record is only
    written at the end, either by the commit or by the failure path.
    """

    def __init__(
        self,
        *,
        store: WorkflowStore,
        delegator: Delegator,
        processor: Processor,
        reviewer: Reviewer,
        retry: RetryPolicy | None = None,
        policy: PipelinePolicy | None = None,
    ) -> None:
        self._store = store
        self._delegator = delegator
        self._processor = processor
        self._reviewer = reviewer
        self._retry = retry or RetryPolicy()
        self.policy = policy or PipelinePolicy()
        self._inflight: set[asyncio.Task[WorkflowOutcome]] = set()
        self._stage_handlers: dict[WorkflowStage, Callable[[PipelineRun], Awaitable[StageOutput]]] = {
            WorkflowStage.DELEGATION: self._delegate,
            WorkflowStage.PROCESSING: self._process,
            WorkflowStage.RESEARCH: self._research,
            WorkflowStage.REFLECTION: self._reflect,
            WorkflowStage.CONCLUSION: self._conclude,
            WorkflowStage.PEER_REVIEW: self._review,
            WorkflowStage.REFINEMENT: self._refine,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: WorkflowStore,
        delegator: Delegator,
        processor: Processor,
        reviewer: Reviewer,
    ) -> "PipelineOrchestrator":
        return cls(
            store=store,
            delegator=delegator,
            processor=processor,
            reviewer=reviewer,
            retry=RetryPolicy.from_settings(settings.retry),
            policy=PipelinePolicy.from_settings(settings.pipeline),
        )

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def submit(self, action: str, text: str, context: str | None = None) -> WorkflowOutcome:
        """Run a workflow as its own task so an abandoned caller does not cancel it."""
        task = asyncio.create_task(self.execute(action, text, context))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def drain(self, timeout: float) -> None:
        pending = set(self._inflight)
        if not pending:
            return
        logger.info("workflow_drain_started", inflight=len(pending), timeout=timeout)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("workflow_drain_cancelled", cancelled=len(still_running))

    async def execute(
        self,
        action: str,
        text: str,
        context: str | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> WorkflowOutcome:
        record = await self._store.create_workflow(action, text, context)
        run = PipelineRun(record=record)
        started = time.perf_counter()
        metrics.mark_workflow_started(action=action)
        logger.info("workflow_started", workflow_id=run.workflow_id, action=action)

        try:
            while run.state is not PipelineState.COMMITTED:
                if cancel_event is not None and cancel_event.is_set():
                    raise WorkflowCancelled(
                        workflow_id=run.workflow_id,
                        action=action,
                        stage=run.state.value,
                        message="cancelled before next stage",
                    )
                await self._advance(run, next_transition(run, self.policy))
        except asyncio.CancelledError:
            await self._fail(run, "cancelled", started)
            raise
        except Exception as exc:
            message = exc.message if isinstance(exc, WorkflowExecutionError) else _summarise_error(exc)
            await self._fail(run, message, started)
            if isinstance(exc, WorkflowExecutionError):
                raise
            raise WorkflowExecutionError(
                workflow_id=run.workflow_id,
                action=action,
                stage=run.current or run.state.value,
                message=message,
            ) from exc

        metrics.mark_workflow_finished(action=action, status="completed", latency=time.perf_counter() - started)
        review = _reviewed(run)
        return WorkflowOutcome(
            workflow_id=run.workflow_id,
            final_output=self._final_output(run),
            agreement=run.agreement,
            validation_passed=review.approved,
            steps_executed=run.steps_executed,
            total_tokens=run.total_tokens,
        )

    async def _advance(self, run: PipelineRun, transition: Transition) -> None:
        if transition.stage is None:
            run.current = COMMIT_STAGE
            await self._commit(run)
            run.state = transition.target
            return

        stage = transition.stage
        run.current = stage.value
        started = time.perf_counter()
        output = await self._stage_handlers[stage](run)
        tokens = output.usage.total_tokens
        step = WorkflowStep(
            workflow_id=run.record.id,
            step_number=run.next_step,
            agent=STAGE_AGENTS[stage],
            stage=stage,
            input=_serialize(output.input, self.policy.step_text_limit),
            output=_serialize(output.output, self.policy.step_text_limit),
            tokens_used=tokens,
        )
        await self._store.append_step(step)
        run.next_step += 1
        run.total_tokens += tokens
        run.state = transition.target
        metrics.observe_stage(stage=stage.value, latency=time.perf_counter() - started, tokens=tokens)
        logger.info(
            "workflow_stage_completed",
            workflow_id=run.workflow_id,
            stage=stage.value,
            step_number=step.step_number,
            tokens=tokens,
            state=run.state.value,
        )

    async def _call(self, operation: str, work: Callable[[], Awaitable[T]]) -> T:
        return await self._retry.run(work, operation=operation)

    # Stage handlers -----------------------------------------------------------------

    async def _delegate(self, run: PipelineRun) -> StageOutput:
        record = run.record
        delegation = await self._call(
            "delegator.delegate",
            lambda: self._delegator.delegate(record.input_text, record.action, record.context),
        )
        run.task_plan = delegation.task_plan
        return StageOutput(
            input=record.input_text,
            output={"taskPlan": delegation.task_plan, "usage": delegation.usage.model_dump()},
            usage=delegation.usage,
        )

    async def _process(self, run: PipelineRun) -> StageOutput:
        record = run.record
        processing = await self._call(
            "processor.process",
            lambda: self._processor.process(record.input_text, record.action, run.task_plan, record.context),
        )
        run.result = processing.result
        return StageOutput(
            input=json.dumps(run.task_plan, default=str),
            output=processing.result,
            usage=processing.usage,
        )

    async def _research(self, run: PipelineRun) -> StageOutput:
        topic = run.result or ""
        research = await self._call(
            "processor.research",
            lambda: self._processor.research(topic, run.record.context),
        )
        run.research = research.research
        return StageOutput(input=topic, output=research.research, usage=research.usage)

    async def _reflect(self, run: PipelineRun) -> StageOutput:
        content = run.result or ""
        reflection = await self._call("processor.reflect", lambda: self._processor.reflect(content))
        run.reflection = reflection.reflection
        return StageOutput(input=content, output=reflection.reflection, usage=reflection.usage)

    async def _conclude(self, run: PipelineRun) -> StageOutput:
        content = run.reflection or ""
        conclusion = await self._call("processor.conclude", lambda: self._processor.conclude(content))
        run.conclusion = conclusion.conclusion
        run.review_subject = conclusion.conclusion
        return StageOutput(input=content, output=conclusion.conclusion, usage=conclusion.usage)

    async def _review(self, run: PipelineRun) -> StageOutput:
        record = run.record
        subject = run.review_subject or ""
        review = await self._call(
            "reviewer.review",
            lambda: self._reviewer.review(subject, record.action, record.context, record.action),
        )
        run.review = review
        run.agreement = agreement_reached(review.approved, review.score, self.policy.agreement_threshold)
        metrics.record_agreement(agreement=run.agreement)
        logger.info(
            "workflow_agreement_checked",
            workflow_id=run.workflow_id,
            approved=review.approved,
            score=review.score,
            threshold=self.policy.agreement_threshold,
            agreement=run.agreement,
        )
        return StageOutput(input=subject, output=review.reviewed_content, usage=review.usage)

    async def _refine(self, run: PipelineRun) -> StageOutput:
        content = run.review_subject or ""
        feedback = run.review.feedback if run.review is not None else None
        refinement = await self._call(
            "processor.refine",
            lambda: self._processor.refine(content, feedback),
        )
        run.refinement_rounds += 1
        run.refined_content = refinement.refined_content
        run.review_subject = refinement.refined_content
        return StageOutput(input=feedback, output=refinement.refined_content, usage=refinement.usage)

    # Terminal writes ----------------------------------------------------------------

    def _final_output(self, run: PipelineRun) -> str:
        review = _reviewed(run)
        if run.agreement or run.refined_content is None:
            return review.reviewed_content
        return run.refined_content

    async def _commit(self, run: PipelineRun) -> None:
        review = _reviewed(run)
        await self._store.commit_workflow(
            run.record.id,
            final_output=self._final_output(run),
            agreement=run.agreement,
            validation_passed=review.approved,
        )
        logger.info(
            "workflow_committed",
            workflow_id=run.workflow_id,
            action=run.action,
            agreement=run.agreement,
            validation_passed=review.approved,
            steps=run.steps_executed,
            total_tokens=run.total_tokens,
        )

    async def _fail(self, run: PipelineRun, message: str, started: float) -> None:
        stage = run.current or run.state.value
        run.state = PipelineState.FAILED
        metrics.mark_workflow_finished(action=run.action, status="failed", latency=time.perf_counter() - started)
        logger.error(
            "workflow_failed",
            workflow_id=run.workflow_id,
            action=run.action,
            stage=stage,
            steps=run.steps_executed,
            error=message,
        )
        if not self.policy.persist_failures:
            return
        try:
            await self._store.fail_workflow(run.record.id, stage=stage, error=message)
        except Exception as exc:
            logger.error("workflow_failure_not_recorded", workflow_id=run.workflow_id, error=str(exc))


__all__ = [
    "AGREEMENT_THRESHOLD",
    "PipelineOrchestrator",
    "PipelinePolicy",
    "PipelineRun",
    "PipelineState",
    "TRANSITIONS",
    "Transition",
    "WorkflowOutcome",
    "agreement_reached",
    "next_transition",
]
