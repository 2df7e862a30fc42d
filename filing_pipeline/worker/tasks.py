"""
Celery tasks for the filing pipeline.

Each task opens its own session and delegates to the service layer, so the
same work can be triggered from beat, from the HTTP cron routes or by hand.
"""

from typing import Optional

from filing_pipeline.database import SessionLocal
from filing_pipeline.services.job_queue import JobQueueService
from filing_pipeline.worker.main import celery_app
from filing_pipeline.worker.processor import JobProcessor, cleanup_pipeline_data, schedule_filing_check


@celery_app.task(bind=True, name="process_jobs")
def process_jobs(self, job_type: Optional[str] = None):
    """Run one processor pass over due jobs, optionally for a single job type."""
    db = SessionLocal()
    try:
        return JobProcessor(db).run(job_type).to_dict()
    finally:
        db.close()


@celery_app.task(bind=True, name="enqueue_filing_check")
def enqueue_filing_check(self, form_type: Optional[str] = None):
    """
    Enqueue a CHECK job for `form_type`.

    The idempotency key carries the check interval bucket, so overlapping
    beat ticks within one interval collapse into one job.
    """
    db = SessionLocal()
    try:
        job = schedule_filing_check(JobQueueService(db), form_type)
        return {"success": True, "jobId": job.id, "jobType": job.job_type.value}
    finally:
        db.close()


@celery_app.task(bind=True, name="cleanup_pipeline")
def cleanup_pipeline(self):
    """Daily retention sweep; also enqueues the filing archive job."""
    db = SessionLocal()
    try:
        return cleanup_pipeline_data(db)
    finally:
        db.close()
