"""
Named lock leases stored in the database.

Only one process across the deployment may hold a given lock name at a time.
Every lease carries an expiry so a crashed holder cannot starve the work:
an expired lease is treated as absent by the next `acquire_lock` call.

Storage failures never propagate to callers. They are logged and reported
as "not acquired" / "not released".
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from filing_pipeline.models import JobLock

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_MINUTES = 15


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LockService:
    def __init__(self, db: Session, ttl_minutes: int = DEFAULT_LOCK_TTL_MINUTES) -> None:
        self.db = db
        self.ttl_minutes = ttl_minutes

    def acquire_lock(self, name: str, holder_id: str, ttl_minutes: Optional[int] = None) -> Optional[JobLock]:
        """
        Try to take the lease for `name`.

        Returns the lock row on success and None when another live lease
        exists. None is the normal "someone else is doing this" outcome.
        """
        now = _utcnow()
        expires_at = now + timedelta(minutes=ttl_minutes or self.ttl_minutes)
        try:
            existing = self.db.query(JobLock).filter(JobLock.name == name).first()
            if existing is None:
                lock = JobLock(
                    name=name,
                    holder_id=holder_id,
                    acquired_at=now,
                    expires_at=expires_at,
                    refreshed_at=None,
                    released=False,
                )
                self.db.add(lock)
                try:
                    self.db.commit()
                except IntegrityError:
                    # Another process inserted the row first.
                    self.db.rollback()
                    logger.info("lock_contended", extra={"lock_name": name, "holder_id": holder_id})
                    return None
                self.db.refresh(lock)
                logger.info("lock_acquired", extra={"lock_name": name, "holder_id": holder_id})
                return lock

            # Compare-and-swap: only a released or expired lease can be taken over.
            updated = (
                self.db.query(JobLock)
                .filter(
                    JobLock.name == name,
                    or_(JobLock.released.is_(True), JobLock.expires_at <= now),
                )
                .update(
                    {
                        JobLock.holder_id: holder_id,
                        JobLock.acquired_at: now,
                        JobLock.expires_at: expires_at,
                        JobLock.refreshed_at: None,
                        JobLock.released: False,
                    },
                    synchronize_session=False,
                )
            )
            self.db.commit()
            if updated != 1:
                logger.info("lock_contended", extra={"lock_name": name, "holder_id": holder_id})
                return None
            self.db.refresh(existing)
            logger.info("lock_acquired", extra={"lock_name": name, "holder_id": holder_id})
            return existing
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("lock_acquire_failed", extra={"lock_name": name, "holder_id": holder_id}, exc_info=True)
            return None

    def release_lock(self, name: str, holder_id: str) -> bool:
        """Release the lease if `holder_id` holds it. Otherwise a no-op."""
        try:
            updated = (
                self.db.query(JobLock)
                .filter(
                    JobLock.name == name,
                    JobLock.holder_id == holder_id,
                    JobLock.released.is_(False),
                )
                .update({JobLock.released: True}, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("lock_release_failed", extra={"lock_name": name, "holder_id": holder_id}, exc_info=True)
            return False
        if updated:
            logger.info("lock_released", extra={"lock_name": name, "holder_id": holder_id})
        return bool(updated)

    def refresh_lock(self, name: str, holder_id: str, extend_minutes: Optional[int] = None) -> bool:
        """Push the expiry of a live lease forward for its current holder."""
        now = _utcnow()
        try:
            updated = (
                self.db.query(JobLock)
                .filter(
                    JobLock.name == name,
                    JobLock.holder_id == holder_id,
                    JobLock.released.is_(False),
                    JobLock.expires_at > now,
                )
                .update(
                    {
                        JobLock.expires_at: now + timedelta(minutes=extend_minutes or self.ttl_minutes),
                        JobLock.refreshed_at: now,
                    },
                    synchronize_session=False,
                )
            )
            self.db.commit()
            return bool(updated)
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("lock_refresh_failed", extra={"lock_name": name, "holder_id": holder_id}, exc_info=True)
            return False

    def force_release_lock(self, name: str) -> bool:
        """Release a lease regardless of holder (operator use only)."""
        try:
            updated = (
                self.db.query(JobLock)
                .filter(JobLock.name == name, JobLock.released.is_(False))
                .update({JobLock.released: True}, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("lock_force_release_failed", extra={"lock_name": name}, exc_info=True)
            return False
        if updated:
            logger.warning("lock_force_released", extra={"lock_name": name})
        return bool(updated)

    def check_lock(self, name: str) -> Optional[JobLock]:
        """Return the live lease for `name`, if any."""
        return (
            self.db.query(JobLock)
            .filter(
                JobLock.name == name,
                JobLock.released.is_(False),
                JobLock.expires_at > _utcnow(),
            )
            .first()
        )

    def list_active_locks(self) -> List[JobLock]:
        return (
            self.db.query(JobLock)
            .filter(JobLock.released.is_(False), JobLock.expires_at > _utcnow())
            .order_by(JobLock.acquired_at.asc())
            .all()
        )

    def cleanup_expired_locks(self) -> int:
        """Delete released or expired lease rows. Returns the number removed."""
        try:
            deleted = (
                self.db.query(JobLock)
                .filter(or_(JobLock.released.is_(True), JobLock.expires_at <= _utcnow()))
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("lock_cleanup_failed", exc_info=True)
            return 0
        if deleted:
            logger.info("locks_cleaned_up", extra={"count": deleted})
        return deleted

    @contextmanager
    def hold_lock(self, name: str, holder_id: str, ttl_minutes: Optional[int] = None) -> Iterator[Optional[JobLock]]:
        """
        Acquire `name` for the duration of a `with` block.

        Yields None when the lease is held elsewhere; the block must check.
        Release runs on every exit path, including exceptions.
        """
        lock = self.acquire_lock(name, holder_id, ttl_minutes=ttl_minutes)
        try:
            yield lock
        finally:
            if lock is not None:
                self.release_lock(name, holder_id)
