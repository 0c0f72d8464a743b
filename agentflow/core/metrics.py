from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

WORKFLOW_RUNS_TOTAL = Counter(
    "agentflow_workflow_runs_total",
    "Workflow runs grouped by action and lifecycle status",
    labelnames=("action", "status"),
)

WORKFLOW_RUN_LATENCY_SECONDS = Histogram(
    "agentflow_workflow_run_latency_seconds",
    "End-to-end pipeline runtime",
    labelnames=("status",),
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 900, float("inf")),
)

WORKFLOW_ACTIVE_GAUGE = Gauge(
    "agentflow_workflow_runs_active",
    "Pipelines currently in flight",
)

STAGE_LATENCY_SECONDS = Histogram(
    "agentflow_stage_latency_seconds",
    "Latency of a pipeline stage including retries and persistence",
    labelnames=("stage",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

STAGE_TOKENS_TOTAL = Counter(
    "agentflow_stage_tokens_total",
    "Tokens reported by agents per pipeline stage",
    labelnames=("stage",),
)

AGREEMENT_TOTAL = Counter(
    "agentflow_agreement_total",
    "Agreement verdicts computed after peer review",
    labelnames=("outcome",),
)

UPSTREAM_RETRIES_TOTAL = Counter(
    "agentflow_upstream_retries_total",
    "Retries triggered by rate-limited agent calls",
    labelnames=("operation",),
)

ADMISSION_REJECTIONS_TOTAL = Counter(
    "agentflow_admission_rejections_total",
    "Submissions refused by the sliding window admission gate",
)


def mark_workflow_started(*, action: str) -> None:
    WORKFLOW_ACTIVE_GAUGE.inc()
    WORKFLOW_RUNS_TOTAL.labels(action=action, status="started").inc()


def mark_workflow_finished(*, action: str, status: str, latency: float) -> None:
    WORKFLOW_ACTIVE_GAUGE.dec()
    WORKFLOW_RUNS_TOTAL.labels(action=action, status=status).inc()
    WORKFLOW_RUN_LATENCY_SECONDS.labels(status=status).observe(latency)


def observe_stage(*, stage: str, latency: float, tokens: int) -> None:
    STAGE_LATENCY_SECONDS.labels(stage=stage).observe(latency)
    if tokens > 0:
        STAGE_TOKENS_TOTAL.labels(stage=stage).inc(tokens)


def record_agreement(*, agreement: bool) -> None:
    AGREEMENT_TOTAL.labels(outcome="agreed" if agreement else "needs_refinement").inc()


def increment_upstream_retry(*, operation: str) -> None:
    UPSTREAM_RETRIES_TOTAL.labels(operation=operation).inc()


def increment_admission_rejection() -> None:
    ADMISSION_REJECTIONS_TOTAL.inc()
