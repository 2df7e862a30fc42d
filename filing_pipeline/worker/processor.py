"""
Job processor: one lock-guarded pass over the queue.

Per run:
1. Acquire the lock for the requested scope (`process-<type>` or
   `process-all-jobs`). If another instance holds it, report success with
   nothing processed.
2. Pull a batch of due jobs.
3. Claim, dispatch and record each job independently.
4. Release the lock on every exit path.

Failures increment the job's attempts. Once attempts reach the job's limit
(or the error cannot succeed on retry) the job is dead-lettered and marked
FAILED; otherwise it is rescheduled with backoff.

Before selecting work, jobs left in PROCESSING by a dead worker (claimed
longer ago than the lock lease) are recorded as failed attempts, so they
retry or reach the dead letter queue like any other failure.
"""

from __future__ import annotations

import logging
import time
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from filing_pipeline.config import PipelineConfig, load_config
from filing_pipeline.errors import ApiError, ErrorCode, ExternalServiceError, StaleJobError, classify_error
from filing_pipeline.models import Job, JobStatus, JobType
from filing_pipeline.parsers.chunker import ChunkingConfigError
from filing_pipeline.services.dead_letter_queue import DeadLetterQueueService
from filing_pipeline.services.job_queue import JobQueueService
from filing_pipeline.services.lock_service import LockService
from filing_pipeline.services.sec_edgar_client import SecEdgarClient
from filing_pipeline.services.summarizer import ExtractiveSummarizer, Summarizer
from filing_pipeline.worker.handlers import CHECK_FORM_TYPES, registry as default_registry
from filing_pipeline.worker.registry import JobContext, JobRegistry

logger = logging.getLogger(__name__)

ALL_JOBS_LOCK = "process-all-jobs"

# Trigger `type` values that name a form rather than a job type.
FORM_TYPE_JOB_TYPES = {
    "10-K": JobType.CHECK_10K_FILINGS,
    "10-Q": JobType.CHECK_10Q_FILINGS,
    "8-K": JobType.CHECK_8K_FILINGS,
    "4": JobType.CHECK_FORM4_FILINGS,
    "FORM4": JobType.CHECK_FORM4_FILINGS,
    "FORM 4": JobType.CHECK_FORM4_FILINGS,
}


def resolve_job_type(value: Optional[Union[str, JobType]]) -> Optional[JobType]:
    """Map a trigger `type` value (job type or form type) to a JobType."""
    if value is None or value == "":
        return None
    if isinstance(value, JobType):
        return value
    key = value.strip().upper()
    if key in FORM_TYPE_JOB_TYPES:
        return FORM_TYPE_JOB_TYPES[key]
    try:
        return JobType(key)
    except ValueError:
        raise ApiError(ErrorCode.BAD_REQUEST, f"Unsupported job type: {value}", {"type": value})


def lock_name_for(job_type: Optional[JobType]) -> str:
    if job_type is None:
        return ALL_JOBS_LOCK
    return f"process-{job_type.value.lower()}"


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ApiError):
        return False
    if isinstance(exc, ExternalServiceError):
        return exc.retryable
    if isinstance(exc, ChunkingConfigError):
        return False
    return True


@dataclass
class ProcessResult:
    success: bool
    message: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: int = 0
    jobs: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration": self.duration_ms,
            "jobs": self.jobs,
        }


class JobProcessor:
    def __init__(
        self,
        db: Session,
        registry: Optional[JobRegistry] = None,
        config: Optional[PipelineConfig] = None,
        sec_client: Optional[SecEdgarClient] = None,
        summarizer: Optional[Summarizer] = None,
        process_id: Optional[str] = None,
    ) -> None:
        self.db = db
        self.config = config or load_config()
        self.registry = registry or default_registry
        self.sec_client = sec_client
        self.summarizer = summarizer or ExtractiveSummarizer()
        self.process_id = process_id or f"job-processor-{uuid.uuid4()}"
        self.queue = JobQueueService(db, self.config)
        self.dlq = DeadLetterQueueService(db)
        self.locks = LockService(db, ttl_minutes=self.config.lock_ttl_minutes)

    def run(self, job_type: Optional[Union[str, JobType]] = None) -> ProcessResult:
        t0 = time.perf_counter()
        job_type = resolve_job_type(job_type)
        lock_name = lock_name_for(job_type)
        scope = job_type.value if job_type else "all job types"

        def elapsed_ms() -> int:
            return int((time.perf_counter() - t0) * 1000)

        with self.locks.hold_lock(lock_name, self.process_id) as lock:
            if lock is None:
                logger.info("processor_lock_unavailable", extra={"lock_name": lock_name, "holder_id": self.process_id})
                return ProcessResult(
                    success=True,
                    message=f"Another instance is already processing jobs for {scope}",
                    duration_ms=elapsed_ms(),
                )

            self.recover_stale_jobs(job_type)
            jobs = self.queue.get_jobs_to_process(self.config.batch_size, job_type)
            if not jobs:
                return ProcessResult(success=True, message="No pending jobs found for processing", duration_ms=elapsed_ms())

            result = ProcessResult(success=True, message="")
            for job in jobs:
                outcome = self.process_job(job)
                result.jobs.append(outcome)
                if outcome["status"] == "completed":
                    result.processed += 1
                elif outcome["status"] == "failed":
                    result.failed += 1
                else:
                    result.skipped += 1

            result.message = f"Processed {result.processed} out of {len(jobs)} jobs"
            result.duration_ms = elapsed_ms()
            logger.info(
                "processor_batch_done",
                extra={
                    "lock_name": lock_name,
                    "processed": result.processed,
                    "failed": result.failed,
                    "skipped": result.skipped,
                    "duration_ms": result.duration_ms,
                },
            )
            return result

    def process_job(self, job: Job) -> Dict[str, Any]:
        """Claim, dispatch and record one job. Never raises."""
        job_id = job.id
        job_type = job.job_type
        if not self.queue.claim_job(job):
            return {"id": job_id, "jobType": job_type.value, "status": "skipped"}

        t0 = time.perf_counter()
        try:
            handler = self.registry.get(job_type)
            ctx = JobContext(
                db=self.db,
                job=job,
                queue=self.queue,
                config=self.config,
                summarizer=self.summarizer,
                sec_client=self.sec_client,
            )
            output = handler(ctx)
        except Exception as e:
            elapsed = int((time.perf_counter() - t0) * 1000)
            self.db.rollback()
            self._record_failure(job_id, job_type, e, traceback.format_exc(), elapsed)
            return {"id": job_id, "jobType": job_type.value, "status": "failed", "error": str(e)}

        elapsed = int((time.perf_counter() - t0) * 1000)
        if self.queue.update_job_status(job_id, JobStatus.COMPLETED, output, execution_time_ms=elapsed) is None:
            logger.warning("job_completion_not_recorded", extra={"job_id": job_id})
        logger.info("job_completed", extra={"job_id": job_id, "job_type": job_type.value, "duration_ms": elapsed})
        return {"id": job_id, "jobType": job_type.value, "status": "completed", "duration": elapsed}

    def recover_stale_jobs(self, job_type: Optional[JobType] = None, now: Optional[datetime] = None) -> int:
        """Fail the attempt of every job whose claim outlived the lock lease. Returns how many were recovered."""
        minutes = self.config.lock_ttl_minutes
        recovered = 0
        # Commits below expire loaded rows; keep the versions seen by the scan.
        stale = [(j.id, j.job_type, j.version) for j in self.queue.get_stale_jobs(minutes, job_type, now)]
        for job_id, stale_type, version in stale:
            logger.warning("job_claim_expired", extra={"job_id": job_id, "job_type": stale_type.value})
            exc = StaleJobError(f"Job was not completed within {minutes} minutes of being claimed")
            if self._record_failure(job_id, stale_type, exc, "", 0, expected_version=version):
                recovered += 1
        return recovered

    def _record_failure(
        self,
        job_id: str,
        job_type: JobType,
        exc: Exception,
        stack: str,
        elapsed: int,
        expected_version: Optional[int] = None,
    ) -> bool:
        """Record a failed attempt; dead-letter the job if that attempt was its last. False on a lost update."""
        code = classify_error(exc)
        logger.error(
            "job_failed",
            extra={"job_id": job_id, "job_type": job_type.value, "error_code": code.value, "duration_ms": elapsed},
            exc_info=exc,
        )

        job = self.queue.update_job_status(
            job_id,
            JobStatus.FAILED,
            {"error": str(exc), "stack": stack, "code": code.value},
            execution_time_ms=elapsed,
            final=not is_retryable(exc),
            expected_version=expected_version,
        )
        if job is None:
            # Missing, or another process moved it on first.
            return False

        if job.status == JobStatus.FAILED:
            self.dlq.add_to_dead_letter_queue(
                job_id,
                job_type.value,
                job.payload,
                exc,
                job.attempts,
                stack=stack,
            )
        return True


def filing_check_key(job_type: JobType, now: Optional[datetime] = None, interval_minutes: int = 60) -> str:
    """
    One check per form per schedule interval.

    Intervals of an hour or more keep the hourly key
    `check-filings-<form>-<YYYY-MM-DD-HH>`; shorter ones append the start minute
    of the interval bucket, e.g. `check-filings-8-k-2024-01-29-16-15` for a
    15 minute schedule at 16:22.
    """
    now = now or datetime.now(timezone.utc)
    form = CHECK_FORM_TYPES.get(job_type) or "all"
    key = f"check-filings-{form.lower()}-{now.strftime('%Y-%m-%d-%H')}"
    if 0 < interval_minutes < 60:
        bucket = (now.minute // interval_minutes) * interval_minutes
        key = f"{key}-{bucket:02d}"
    return key


def schedule_filing_check(
    queue: JobQueueService,
    form_type: Optional[Union[str, JobType]] = None,
    now: Optional[datetime] = None,
) -> Job:
    """Enqueue the CHECK job for `form_type` (all forms when None), once per check interval."""
    job_type = resolve_job_type(form_type) or JobType.CHECK_FILINGS
    if job_type not in CHECK_FORM_TYPES:
        raise ApiError(ErrorCode.BAD_REQUEST, f"Not a filing check type: {form_type}", {"type": str(form_type)})
    key = filing_check_key(job_type, now, queue.config.filing_check_interval_minutes)
    return queue.add_job(job_type, {}, idempotency_key=key)


def cleanup_pipeline_data(db: Session, config: Optional[PipelineConfig] = None) -> Dict[str, Any]:
    """
    Nightly housekeeping.

    Enqueues the day's archive job, removes expired locks and old reprocessed
    DLQ entries. Jobs are only deleted when `JOB_RETENTION_DAYS` is set.
    """
    config = config or load_config()
    queue = JobQueueService(db, config)
    today = datetime.now(timezone.utc).date().isoformat()
    archive_job = queue.add_job(
        JobType.ARCHIVE_FILINGS,
        {"older_than_days": config.archive_after_days},
        priority=1,
        idempotency_key=f"archive-filings-{today}",
    )
    result = {
        "archiveJobId": archive_job.id,
        "dlqDeleted": DeadLetterQueueService(db).cleanup_old_entries(config.dlq_retention_days),
        "jobsDeleted": queue.cleanup_old_jobs(config.job_retention_days),
        "locksDeleted": LockService(db).cleanup_expired_locks(),
    }
    logger.info("pipeline_cleanup_done", extra=result)
    return result


def requeue_dead_letter(db: Session, dlq_id: str, config: Optional[PipelineConfig] = None) -> Optional[str]:
    """Put a DLQ entry back on the job queue as a fresh job. Returns the new job id."""
    queue = JobQueueService(db, config)
    return DeadLetterQueueService(db).requeue_dead_letter_entry(
        dlq_id,
        lambda job_type, payload: queue.add_job(job_type, payload or {}).id,
    )
