"""
Celery app for the filing pipeline.

Beat drives the pipeline: it enqueues filing checks, triggers queue
processing and runs the daily cleanup. The actual work lives in the
`jobs` table; Celery tasks are thin triggers around `JobProcessor`.
"""

from celery import Celery
from celery.schedules import crontab
import os

from filing_pipeline.config import configure_logging, load_config

configure_logging()

_always_eager = os.getenv("CELERY_ALWAYS_EAGER", "").strip() in {"1", "true", "True", "yes", "YES"}
redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
_broker_url = "memory://" if _always_eager else redis_url
_result_backend = "cache+memory://" if _always_eager else redis_url
celery_app = Celery("filing_pipeline", broker=_broker_url, backend=_result_backend)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # 10 minutes
    task_soft_time_limit=540,  # 9 minutes
)

from filing_pipeline.worker import tasks as _tasks  # noqa: F401,E402

if _always_eager:
    # Run tasks inline when no broker is available.
    celery_app.conf.update(task_always_eager=True, task_eager_propagates=False, task_store_eager_result=False)

# Same interval the filing check idempotency key is bucketed by.
_check_every = load_config().filing_check_interval_minutes
_process_every = int(os.getenv("JOB_PROCESS_INTERVAL_MINUTES", "5"))
_cleanup_hour = int(os.getenv("PIPELINE_CLEANUP_HOUR", "3"))
_cleanup_minute = int(os.getenv("PIPELINE_CLEANUP_MINUTE", "15"))
celery_app.conf.beat_schedule = {
    "enqueue_filing_check": {
        "task": "enqueue_filing_check",
        "schedule": crontab(minute=f"*/{_check_every}"),
    },
    "process_jobs": {
        "task": "process_jobs",
        "schedule": crontab(minute=f"*/{_process_every}"),
    },
    "cleanup_pipeline_daily": {
        "task": "cleanup_pipeline",
        "schedule": crontab(minute=_cleanup_minute, hour=_cleanup_hour),
    },
}

if __name__ == "__main__":
    celery_app.start()
