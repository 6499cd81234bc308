"""Celery application configuration."""

import time

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun, task_retry, worker_process_init

from app.config import get_settings
from app.metrics import celery_task_duration_seconds, celery_task_total

settings = get_settings()

celery_app = Celery(
    "chaser",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.tasks.follow_up_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "app.tasks.follow_up_tasks.run_followup_sweep": {"queue": "sweep"},
        "app.tasks.follow_up_tasks.*": {"queue": "default"},
    },
    beat_schedule={
        # Status derivation, reminders, automation and approval expiry
        "followup-sweep": {
            "task": "app.tasks.follow_up_tasks.run_followup_sweep",
            "schedule": settings.sweep_interval_seconds,
            # A tick that waited longer than one interval is superseded by the next
            "options": {"expires": settings.sweep_interval_seconds},
        },
    },
)

# task_id -> monotonic start time, filled by task_prerun
_task_start_times: dict[str, float] = {}


def _setup_task_signals() -> None:
    """Connect Celery signals that feed the task metrics."""

    @task_prerun.connect(weak=False)
    def _on_prerun(task_id=None, **kwargs):
        _task_start_times[task_id] = time.monotonic()

    @task_postrun.connect(weak=False)
    def _on_postrun(task_id=None, task=None, state=None, **kwargs):
        start = _task_start_times.pop(task_id, None)
        name = task.name if task is not None else "unknown"
        if start is not None:
            celery_task_duration_seconds.labels(task_name=name).observe(time.monotonic() - start)
        if state == "SUCCESS":
            celery_task_total.labels(task_name=name, status="success").inc()

    @task_failure.connect(weak=False)
    def _on_failure(sender=None, **kwargs):
        name = sender.name if sender is not None else "unknown"
        celery_task_total.labels(task_name=name, status="failure").inc()

    @task_retry.connect(weak=False)
    def _on_retry(sender=None, **kwargs):
        name = sender.name if sender is not None else "unknown"
        celery_task_total.labels(task_name=name, status="retry").inc()

    @worker_process_init.connect(weak=False)
    def _on_worker_init(**kwargs):
        from app.middleware.logging import setup_logging

        setup_logging(debug=get_settings().debug)


_setup_task_signals()

celery_app.autodiscover_tasks(["app.tasks"])
