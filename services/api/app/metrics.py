"""Prometheus metric definitions for Chaser.

Single source of truth for all custom metrics. Import from here in API and Celery code.
"""

from prometheus_client import Counter, Histogram

# --- Celery task metrics ---

celery_task_total = Counter(
    "chaser_celery_task_total",
    "Total Celery tasks executed",
    ["task_name", "status"],
)

celery_task_duration_seconds = Histogram(
    "chaser_celery_task_duration_seconds",
    "Celery task execution duration in seconds",
    ["task_name"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

# --- Business metrics ---

follow_ups_created_total = Counter(
    "chaser_followups_created_total",
    "Total follow-ups created by type",
    ["type"],
)

reminders_processed_total = Counter(
    "chaser_reminders_processed_total",
    "Total reminders dispatched by outcome",
    ["status"],
)

executions_total = Counter(
    "chaser_executions_total",
    "Automation executions reaching a status",
    ["status"],
)

approvals_total = Counter(
    "chaser_approvals_total",
    "Approval decisions recorded",
    ["decision"],
)

sweep_duration_seconds = Histogram(
    "chaser_sweep_duration_seconds",
    "Duration of one follow-up sweep in seconds",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)
