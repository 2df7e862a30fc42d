"""
Durable job queue on top of the `jobs` table.

Responsibilities:
- Idempotent enqueue (same key on the same scheduling day is one job)
- Priority-ordered selection of due work
- Status transitions guarded by the row `version` (compare-and-swap)
- Retry bookkeeping with exponential backoff on `scheduled_for`
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from filing_pipeline.config import PipelineConfig, load_config
from filing_pipeline.models import (
    ACTIVE_STATUSES,
    RUNNABLE_STATUSES,
    Job,
    JobStatus,
    JobType,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def retry_delay_seconds(attempts: int, base_seconds: int, max_seconds: int) -> int:
    """Backoff before retry number `attempts` (1-based): base * 2^(attempts-1), capped."""
    if base_seconds <= 0:
        return 0
    return min(base_seconds * (2 ** max(0, attempts - 1)), max_seconds)


class JobQueueService:
    def __init__(self, db: Session, config: Optional[PipelineConfig] = None) -> None:
        self.db = db
        self.config = config or load_config()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def add_job(
        self,
        job_type: Union[JobType, str],
        payload: Optional[Dict[str, Any]] = None,
        priority: Optional[int] = None,
        scheduled_for: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> Job:
        """
        Insert a PENDING job, or return the job already requested under
        `idempotency_key`.

        A key collides with a job scheduled on the same UTC day, or with any
        job for that key that is still outstanding.
        """
        job_type = JobType(job_type)
        when = _as_naive_utc(scheduled_for) if scheduled_for else _utcnow()
        day = when.date() if idempotency_key else None

        if idempotency_key:
            existing = self._find_duplicate(idempotency_key, day)
            if existing is not None:
                logger.info(
                    "job_duplicate",
                    extra={"job_id": existing.id, "job_type": job_type.value, "idempotency_key": idempotency_key},
                )
                return existing

        job = Job(
            job_type=job_type,
            payload=payload or {},
            status=JobStatus.PENDING,
            priority=self.config.default_priority if priority is None else priority,
            scheduled_for=when,
            idempotency_key=idempotency_key,
            idempotency_day=day,
            attempts=0,
            max_attempts=max_attempts or self.config.max_attempts,
            version=0,
        )
        self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent enqueue of the same key won the unique constraint.
            self.db.rollback()
            existing = self._find_duplicate(idempotency_key, day) if idempotency_key else None
            if existing is None:
                raise
            return existing
        self.db.refresh(job)
        logger.info(
            "job_enqueued",
            extra={"job_id": job.id, "job_type": job_type.value, "priority": job.priority},
        )
        return job

    def _find_duplicate(self, idempotency_key: str, day: Optional[date]) -> Optional[Job]:
        return (
            self.db.query(Job)
            .filter(
                Job.idempotency_key == idempotency_key,
                or_(Job.idempotency_day == day, Job.status.in_(ACTIVE_STATUSES)),
            )
            .order_by(Job.created_at.desc())
            .first()
        )

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def get_jobs_to_process(
        self,
        batch_size: Optional[int] = None,
        job_type: Optional[Union[JobType, str]] = None,
        now: Optional[datetime] = None,
    ) -> List[Job]:
        """Due jobs, highest priority first, then oldest schedule, then insertion order."""
        now = now or _utcnow()
        q = self.db.query(Job).filter(
            Job.status.in_(RUNNABLE_STATUSES),
            Job.scheduled_for <= now,
            Job.attempts < Job.max_attempts,
        )
        if job_type is not None:
            q = q.filter(Job.job_type == JobType(job_type))
        return (
            q.order_by(Job.priority.desc(), Job.scheduled_for.asc(), Job.created_at.asc(), Job.id.asc())
            .limit(batch_size or self.config.batch_size)
            .all()
        )

    def claim_job(self, job: Job) -> bool:
        """
        Move a selected job to PROCESSING.

        False means another process changed the row since it was read.
        """
        now = _utcnow()
        try:
            updated = (
                self.db.query(Job)
                .filter(
                    Job.id == job.id,
                    Job.version == job.version,
                    Job.status.in_(RUNNABLE_STATUSES),
                )
                .update(
                    {
                        Job.status: JobStatus.PROCESSING,
                        Job.started_at: now,
                        Job.version: Job.version + 1,
                    },
                    synchronize_session=False,
                )
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("job_claim_failed", extra={"job_id": job.id}, exc_info=True)
            return False
        if not updated:
            logger.info("job_already_claimed", extra={"job_id": job.id})
            return False
        self.db.refresh(job)
        return True

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def update_job_status(
        self,
        job_id: str,
        status: Union[JobStatus, str],
        result_data: Optional[Dict[str, Any]] = None,
        execution_time_ms: Optional[int] = None,
        final: bool = False,
        expected_version: Optional[int] = None,
    ) -> Optional[Job]:
        """
        Apply a status transition and return the updated job.

        FAILED increments `attempts`. While attempts remain the job goes to
        RETRYING with `scheduled_for` pushed back. Otherwise, or when `final`
        is set, it is terminal FAILED.

        `expected_version` pins the transition to the row version the caller
        last saw.

        Returns None when the job is missing, was changed by another process
        or the write failed.
        """
        status = JobStatus(status)
        now = _utcnow()
        try:
            job = self.get_job_by_id(job_id)
            if job is None:
                logger.warning("job_not_found", extra={"job_id": job_id, "status": status.value})
                return None

            version = job.version if expected_version is None else expected_version
            values: Dict[Any, Any] = {Job.status: status, Job.version: version + 1}
            if status == JobStatus.PROCESSING:
                values[Job.started_at] = now
            elif status == JobStatus.COMPLETED:
                values[Job.completed_at] = now
                values[Job.result] = result_data
                values[Job.execution_time_ms] = execution_time_ms
            elif status == JobStatus.FAILED:
                data = result_data or {}
                attempts = (job.attempts or 0) + 1
                values[Job.attempts] = attempts
                values[Job.last_error] = data.get("error")
                values[Job.last_error_stack] = data.get("stack")
                values[Job.result] = data
                values[Job.execution_time_ms] = execution_time_ms
                if attempts < job.max_attempts and not final:
                    delay = retry_delay_seconds(
                        attempts, self.config.retry_base_seconds, self.config.retry_max_seconds
                    )
                    values[Job.status] = JobStatus.RETRYING
                    values[Job.scheduled_for] = now + timedelta(seconds=delay)
                else:
                    values[Job.failed_at] = now

            updated = (
                self.db.query(Job)
                .filter(Job.id == job_id, Job.version == version)
                .update(values, synchronize_session=False)
            )
            self.db.commit()
            if not updated:
                logger.warning("job_status_conflict", extra={"job_id": job_id, "status": status.value})
                return None
            self.db.refresh(job)
            return job
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("job_status_update_failed", extra={"job_id": job_id, "status": status.value}, exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Reads and maintenance
    # ------------------------------------------------------------------

    def get_job_by_id(self, job_id: str) -> Optional[Job]:
        return self.db.query(Job).filter(Job.id == job_id).first()

    def find_job_by_idempotency_key(self, idempotency_key: str) -> Optional[Job]:
        """Most recent job ever enqueued under `idempotency_key`, in any status."""
        return (
            self.db.query(Job)
            .filter(Job.idempotency_key == idempotency_key)
            .order_by(Job.created_at.desc())
            .first()
        )

    def get_job_stats(self) -> Dict[str, int]:
        rows = self.db.query(Job.status, func.count(Job.id)).group_by(Job.status).all()
        stats = {s.value.lower(): 0 for s in JobStatus}
        for status, count in rows:
            stats[status.value.lower()] = count
        stats["total"] = sum(stats.values())
        return stats

    def get_failed_jobs(self, limit: int = 100) -> List[Job]:
        return (
            self.db.query(Job)
            .filter(Job.status == JobStatus.FAILED)
            .order_by(Job.failed_at.desc())
            .limit(limit)
            .all()
        )

    def get_stale_jobs(
        self,
        older_than_minutes: Optional[int] = None,
        job_type: Optional[Union[JobType, str]] = None,
        now: Optional[datetime] = None,
    ) -> List[Job]:
        """PROCESSING jobs whose claim is older than the lock lease, i.e. whose worker died."""
        minutes = self.config.lock_ttl_minutes if older_than_minutes is None else older_than_minutes
        cutoff = (now or _utcnow()) - timedelta(minutes=minutes)
        q = self.db.query(Job).filter(Job.status == JobStatus.PROCESSING, Job.started_at < cutoff)
        if job_type is not None:
            q = q.filter(Job.job_type == JobType(job_type))
        return q.order_by(Job.started_at.asc()).all()

    def cleanup_old_jobs(self, older_than_days: Optional[int] = None) -> int:
        """
        Delete COMPLETED jobs older than the retention window. FAILED jobs are kept.

        Jobs are kept for audit unless a retention window is configured
        (`JOB_RETENTION_DAYS`); with none, this deletes nothing.
        """
        days = self.config.job_retention_days if older_than_days is None else older_than_days
        if days is None:
            return 0
        cutoff = _utcnow() - timedelta(days=days)
        try:
            deleted = (
                self.db.query(Job)
                .filter(Job.status == JobStatus.COMPLETED, Job.completed_at < cutoff)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("job_cleanup_failed", exc_info=True)
            return 0
        logger.info("jobs_cleaned_up", extra={"count": deleted, "older_than_days": days})
        return deleted
