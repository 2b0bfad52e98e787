"""Prometheus metrics for the scan pipeline."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("subscan", "Subscription scan pipeline application info")
app_info.info({"version": "0.1.0", "name": "subscan"})

# Stage machine
stage_transitions_total = Counter(
    "scan_stage_transitions_total",
    "Scan job stage transitions applied",
    ["from_stage", "to_stage"],
)

stage_conflicts_total = Counter(
    "scan_stage_conflicts_total",
    "Conditional stage updates that lost the race (zero rows affected)",
    ["from_stage", "to_stage"],
)

# Ingestion
emails_ingested_total = Counter(
    "emails_ingested_total",
    "Messages persisted by the ingestion worker",
    ["status"],
)

mailbox_requests_total = Counter(
    "mailbox_requests_total",
    "Mailbox provider API calls",
    ["operation", "status"],
)

# Classification
analysis_tasks_total = Counter(
    "analysis_tasks_total",
    "Analysis task outcomes recorded by the classification worker",
    ["outcome"],
)

llm_requests_total = Counter(
    "llm_requests_total",
    "LLM provider calls by result",
    ["result"],
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "Time spent waiting for the LLM provider",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0],
)

rate_limit_denials_total = Counter(
    "rate_limit_denials_total",
    "Calls denied by the process-local sliding window limiter",
    ["limiter"],
)

# Dispatch
dispatch_attempts_total = Counter(
    "dispatch_attempts_total",
    "Submissions to the classification worker",
    ["status"],
)

# Promotion
subscriptions_promoted_total = Counter(
    "subscriptions_promoted_total",
    "Auto-detected subscriptions created by the sweeper",
)

# Watchdog
watchdog_actions_total = Counter(
    "watchdog_actions_total",
    "Repairs applied by the liveness watchdog",
    ["action"],
)

active_scans = Gauge(
    "active_scans",
    "Non-terminal scan jobs observed by the last watchdog run",
    ["stage"],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)

decryption_failures_total = Counter(
    "decryption_failures_total",
    "Failed decryptions of stored mailbox tokens",
    ["exception_type"],
)


def record_transition(from_stage: str, to_stage: str, applied: bool):
    """Record a conditional stage update and whether it won."""
    if applied:
        stage_transitions_total.labels(from_stage=from_stage, to_stage=to_stage).inc()
    else:
        stage_conflicts_total.labels(from_stage=from_stage, to_stage=to_stage).inc()


def record_email_ingested(success: bool):
    status = "stored" if success else "error"
    emails_ingested_total.labels(status=status).inc()


def record_mailbox_request(operation: str, status: str):
    mailbox_requests_total.labels(operation=operation, status=status).inc()


def record_task_outcome(outcome: str):
    analysis_tasks_total.labels(outcome=outcome).inc()


def record_llm_request(result: str):
    llm_requests_total.labels(result=result).inc()


def record_llm_duration(duration: float):
    llm_request_duration_seconds.observe(duration)


def record_rate_limit_denial(limiter: str):
    rate_limit_denials_total.labels(limiter=limiter).inc()


def record_dispatch_attempt(success: bool):
    status = "success" if success else "error"
    dispatch_attempts_total.labels(status=status).inc()


def record_subscription_promoted(count: int = 1):
    if count:
        subscriptions_promoted_total.inc(count)


def record_watchdog_action(action: str, count: int = 1):
    if count:
        watchdog_actions_total.labels(action=action).inc(count)


def update_active_scans(stage_counts: dict[str, int]):
    """Update the active_scans gauge with current counts."""
    for stage, count in stage_counts.items():
        active_scans.labels(stage=stage).set(count)


def record_decryption_failure(exception_type: str):
    decryption_failures_total.labels(exception_type=exception_type).inc()


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())
