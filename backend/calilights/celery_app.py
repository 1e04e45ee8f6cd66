"""
Celery application setup for CaliLights.

Configures Celery using environment-driven settings so workers and the API
share the same broker/result backend. Tasks live in calilights.tasks.

Queue Architecture:
- missions: Per-entry work triggered by user actions (metadata analysis)
- maintenance: Periodic sweeps (auto-start schedules, job polling, expired windows)

The sweeps are idempotent under overlapping runs, so beat intervals can be
shortened freely; the HTTP cron endpoints drive the same work for deployments
without a beat process.
"""
import logging
import os

from celery import Celery
from celery.signals import worker_ready
from kombu import Queue


def _bool(val: str, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

app = Celery(
    "calilights",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=["calilights.tasks"],
)

app.conf.task_queues = (
    Queue("missions", routing_key="missions"),
    Queue("maintenance", routing_key="maintenance"),
)

# Core settings with sensible defaults, overridable via env
app.conf.update(
    task_acks_late=_bool(os.getenv("CELERY_ACKS_LATE", "true"), True),
    worker_prefetch_multiplier=int(os.getenv("CELERY_PREFETCH_MULTIPLIER", "1")),
    worker_max_tasks_per_child=int(os.getenv("CELERY_MAX_TASKS_PER_CHILD", "200")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "240")),
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "300")),
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "86400")),  # 1 day
    task_default_queue=os.getenv("CELERY_DEFAULT_QUEUE", "missions"),
    task_routes={
        "calilights.tasks.analyze_entry_metadata": {"queue": "missions"},
        "calilights.tasks.check_mission_schedules": {"queue": "maintenance"},
        "calilights.tasks.poll_generation_jobs": {"queue": "maintenance"},
        "calilights.tasks.lock_expired_missions": {"queue": "maintenance"},
    },
)

# ============================================================================
# Celery Beat Schedule (for periodic tasks)
# ============================================================================

beat_schedule = {}

# Auto-start schedules are evaluated within a +/- tolerance of their target
# time, so the interval must stay below twice SCHEDULE_TOLERANCE_MINUTES
schedule_check_enabled = _bool(os.getenv("SCHEDULE_CHECK_ENABLED", "true"), True)
schedule_check_interval = int(os.getenv("SCHEDULE_CHECK_INTERVAL", "300"))  # 5 minutes

if schedule_check_enabled:
    beat_schedule["check-mission-schedules"] = {
        "task": "calilights.tasks.check_mission_schedules",
        "schedule": schedule_check_interval,
        "options": {"queue": "maintenance"},
    }

job_poll_enabled = _bool(os.getenv("JOB_POLL_ENABLED", "true"), True)
job_poll_interval = int(os.getenv("JOB_POLL_INTERVAL", "60"))

if job_poll_enabled:
    beat_schedule["poll-generation-jobs"] = {
        "task": "calilights.tasks.poll_generation_jobs",
        "schedule": job_poll_interval,
        "options": {"queue": "maintenance"},
    }

expire_sweep_enabled = _bool(os.getenv("MISSION_EXPIRE_ENABLED", "true"), True)
expire_sweep_interval = int(os.getenv("MISSION_EXPIRE_INTERVAL", "60"))

if expire_sweep_enabled:
    beat_schedule["lock-expired-missions"] = {
        "task": "calilights.tasks.lock_expired_missions",
        "schedule": expire_sweep_interval,
        "options": {"queue": "maintenance"},
    }

app.conf.beat_schedule = beat_schedule

app.conf.timezone = "UTC"


# ============================================================================
# WORKER STARTUP CATCH-UP
# ============================================================================
# Windows that elapsed and jobs that finished while no worker was running are
# picked up as soon as a worker comes back, without waiting for the first beat.

_startup_logger = logging.getLogger("calilights.celery.startup")


@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    if not _bool(os.getenv("CELERY_STARTUP_SWEEP_ENABLED", "true"), True):
        _startup_logger.info("Startup sweep disabled via CELERY_STARTUP_SWEEP_ENABLED")
        return

    from .tasks import lock_expired_missions, poll_generation_jobs

    lock_expired_missions.apply_async(countdown=10)
    poll_generation_jobs.apply_async(countdown=10)
    _startup_logger.info("Worker ready - scheduled expired-window and job poll sweeps")
