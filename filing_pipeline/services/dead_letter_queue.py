"""
Dead letter queue for jobs that exhausted their retry budget.

Writing to the DLQ is itself a failure-handling path, so insertion never
raises: storage errors are logged and an empty id is returned.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from filing_pipeline.models import DeadLetterEntry

logger = logging.getLogger(__name__)

# Callback used to put a payload back on a queue: (job_type, payload) -> new job id.
AddJobFn = Callable[[str, Any], Optional[str]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class DeadLetterItem:
    """A DLQ entry with its payload deserialized."""

    id: str
    original_job_id: str
    job_type: str
    payload: Any
    error: str
    attempts: int
    reprocessed: bool
    processed_at: Optional[datetime]
    created_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "originalJobId": self.original_job_id,
            "jobType": self.job_type,
            "payload": self.payload,
            "error": self.error,
            "attempts": self.attempts,
            "reprocessed": self.reprocessed,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def _deserialize(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        # Unreadable payloads are returned raw.
        return raw


def _to_item(entry: DeadLetterEntry) -> DeadLetterItem:
    return DeadLetterItem(
        id=entry.id,
        original_job_id=entry.original_job_id,
        job_type=entry.job_type,
        payload=_deserialize(entry.payload),
        error=entry.error,
        attempts=entry.attempts,
        reprocessed=bool(entry.reprocessed),
        processed_at=entry.processed_at,
        created_at=entry.created_at,
    )


def format_error(error: Any, stack: Optional[str] = None) -> str:
    """Message plus stack, as stored in the `error` column."""
    message = str(error) if error is not None else "Unknown error"
    if stack:
        return f"{message}\n{stack}"
    return message


class DeadLetterQueueService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def add_to_dead_letter_queue(
        self,
        original_job_id: str,
        job_type: str,
        payload: Any,
        error: Any,
        attempts: int,
        stack: Optional[str] = None,
    ) -> str:
        """Record a permanently failed job. Returns the new entry id, or "" on failure."""
        try:
            entry = DeadLetterEntry(
                original_job_id=original_job_id,
                job_type=getattr(job_type, "value", job_type),
                payload=json.dumps(payload, default=str),
                error=format_error(error, stack),
                attempts=attempts,
                reprocessed=False,
            )
            self.db.add(entry)
            self.db.commit()
            self.db.refresh(entry)
        except (SQLAlchemyError, TypeError, ValueError):
            self.db.rollback()
            logger.error(
                "dlq_insert_failed",
                extra={"original_job_id": original_job_id, "job_type": str(job_type)},
                exc_info=True,
            )
            return ""
        logger.warning(
            "job_dead_lettered",
            extra={"dlq_id": entry.id, "original_job_id": original_job_id, "attempts": attempts},
        )
        return entry.id

    def get_dead_letter_entries(
        self, limit: int = 100, offset: int = 0, include_reprocessed: bool = False
    ) -> List[DeadLetterItem]:
        q = self.db.query(DeadLetterEntry)
        if not include_reprocessed:
            q = q.filter(DeadLetterEntry.reprocessed.is_(False))
        rows = (
            q.order_by(DeadLetterEntry.created_at.desc(), DeadLetterEntry.id.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [_to_item(r) for r in rows]

    def get_dead_letter_count(self, include_reprocessed: bool = False) -> int:
        q = self.db.query(DeadLetterEntry)
        if not include_reprocessed:
            q = q.filter(DeadLetterEntry.reprocessed.is_(False))
        return q.count()

    def get_entry(self, dlq_id: str) -> Optional[DeadLetterItem]:
        entry = self.db.query(DeadLetterEntry).filter(DeadLetterEntry.id == dlq_id).first()
        return _to_item(entry) if entry else None

    def mark_as_reprocessed(self, dlq_id: str) -> bool:
        try:
            updated = (
                self.db.query(DeadLetterEntry)
                .filter(DeadLetterEntry.id == dlq_id, DeadLetterEntry.reprocessed.is_(False))
                .update(
                    {DeadLetterEntry.reprocessed: True, DeadLetterEntry.processed_at: _utcnow()},
                    synchronize_session=False,
                )
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("dlq_mark_reprocessed_failed", extra={"dlq_id": dlq_id}, exc_info=True)
            return False
        return bool(updated)

    def requeue_dead_letter_entry(self, dlq_id: str, add_job_fn: AddJobFn) -> Optional[str]:
        """
        Put the entry's payload back on a queue via `add_job_fn`.

        Returns the new job id, or None when the entry is missing, already
        reprocessed, or re-enqueue failed.
        """
        entry = self.db.query(DeadLetterEntry).filter(DeadLetterEntry.id == dlq_id).first()
        if entry is None:
            logger.info("dlq_entry_not_found", extra={"dlq_id": dlq_id})
            return None
        if entry.reprocessed:
            logger.info("dlq_entry_already_reprocessed", extra={"dlq_id": dlq_id})
            return None

        try:
            new_job_id = add_job_fn(entry.job_type, _deserialize(entry.payload))
        except Exception:
            self.db.rollback()
            logger.error("dlq_requeue_failed", extra={"dlq_id": dlq_id, "job_type": entry.job_type}, exc_info=True)
            return None
        if not new_job_id:
            return None

        if not self.mark_as_reprocessed(dlq_id):
            logger.warning("dlq_requeued_but_not_marked", extra={"dlq_id": dlq_id, "job_id": new_job_id})
        logger.info("dlq_entry_requeued", extra={"dlq_id": dlq_id, "job_id": new_job_id})
        return new_job_id

    def cleanup_old_entries(self, older_than_days: int = 30) -> int:
        """Delete reprocessed entries whose processed_at is older than the cutoff."""
        cutoff = _utcnow() - timedelta(days=older_than_days)
        try:
            deleted = (
                self.db.query(DeadLetterEntry)
                .filter(
                    DeadLetterEntry.reprocessed.is_(True),
                    DeadLetterEntry.processed_at < cutoff,
                )
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("dlq_cleanup_failed", extra={"older_than_days": older_than_days}, exc_info=True)
            return 0
        logger.info("dlq_cleaned_up", extra={"count": deleted, "older_than_days": older_than_days})
        return deleted
