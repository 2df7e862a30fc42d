from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from filing_pipeline.database import Base
from filing_pipeline.models import JobLock
from filing_pipeline.services.lock_service import LockService


@pytest.fixture()
def db_session(tmp_path):
    db_path = tmp_path / "test.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()


def _expire(db, name):
    db.query(JobLock).filter(JobLock.name == name).update(
        {JobLock.expires_at: datetime.utcnow() - timedelta(minutes=1)}, synchronize_session=False
    )
    db.commit()


def test_only_one_holder_at_a_time(db_session):
    locks = LockService(db_session)

    first = locks.acquire_lock("process-all-jobs", "worker-a")
    second = locks.acquire_lock("process-all-jobs", "worker-b")

    assert first is not None
    assert first.holder_id == "worker-a"
    assert second is None
    assert locks.check_lock("process-all-jobs").holder_id == "worker-a"


def test_release_by_non_holder_is_a_noop(db_session):
    locks = LockService(db_session)
    locks.acquire_lock("process-all-jobs", "worker-a")

    assert locks.release_lock("process-all-jobs", "worker-b") is False
    assert locks.check_lock("process-all-jobs").holder_id == "worker-a"

    assert locks.release_lock("process-all-jobs", "worker-a") is True
    assert locks.check_lock("process-all-jobs") is None
    # Releasing twice does nothing.
    assert locks.release_lock("process-all-jobs", "worker-a") is False


def test_released_lock_can_be_reacquired(db_session):
    locks = LockService(db_session)
    locks.acquire_lock("process-check_8k_filings", "worker-a")
    locks.release_lock("process-check_8k_filings", "worker-a")

    lock = locks.acquire_lock("process-check_8k_filings", "worker-b")
    assert lock is not None
    assert lock.holder_id == "worker-b"
    assert db_session.query(JobLock).count() == 1


def test_expired_lease_is_taken_over(db_session):
    locks = LockService(db_session)
    locks.acquire_lock("process-all-jobs", "crashed-worker")
    _expire(db_session, "process-all-jobs")

    assert locks.check_lock("process-all-jobs") is None
    lock = locks.acquire_lock("process-all-jobs", "worker-b")
    assert lock is not None
    assert lock.holder_id == "worker-b"
    assert lock.expires_at > datetime.utcnow()

    # The crashed holder cannot release the new lease.
    assert locks.release_lock("process-all-jobs", "crashed-worker") is False
    assert locks.check_lock("process-all-jobs").holder_id == "worker-b"


def test_refresh_extends_only_for_holder(db_session):
    locks = LockService(db_session, ttl_minutes=1)
    lock = locks.acquire_lock("process-all-jobs", "worker-a")
    before = lock.expires_at

    assert locks.refresh_lock("process-all-jobs", "worker-b", extend_minutes=30) is False
    assert locks.refresh_lock("process-all-jobs", "worker-a", extend_minutes=30) is True

    refreshed = locks.check_lock("process-all-jobs")
    assert refreshed.expires_at > before
    assert refreshed.refreshed_at is not None


def test_force_release_and_listing(db_session):
    locks = LockService(db_session)
    locks.acquire_lock("a", "worker-a")
    locks.acquire_lock("b", "worker-b")

    assert {l.name for l in locks.list_active_locks()} == {"a", "b"}
    assert locks.force_release_lock("a") is True
    assert {l.name for l in locks.list_active_locks()} == {"b"}


def test_cleanup_removes_released_and_expired(db_session):
    locks = LockService(db_session)
    locks.acquire_lock("released", "w")
    locks.release_lock("released", "w")
    locks.acquire_lock("expired", "w")
    _expire(db_session, "expired")
    locks.acquire_lock("live", "w")

    assert locks.cleanup_expired_locks() == 2
    assert [l.name for l in db_session.query(JobLock).all()] == ["live"]


def test_hold_lock_releases_on_exception(db_session):
    locks = LockService(db_session)

    with pytest.raises(RuntimeError):
        with locks.hold_lock("process-all-jobs", "worker-a") as lock:
            assert lock is not None
            assert locks.acquire_lock("process-all-jobs", "worker-b") is None
            raise RuntimeError("boom")

    assert locks.check_lock("process-all-jobs") is None
    assert locks.acquire_lock("process-all-jobs", "worker-b") is not None


def test_hold_lock_yields_none_when_contended(db_session):
    locks = LockService(db_session)
    locks.acquire_lock("process-all-jobs", "worker-a")

    with locks.hold_lock("process-all-jobs", "worker-b") as lock:
        assert lock is None

    # The contender's exit did not release the holder's lease.
    assert locks.check_lock("process-all-jobs").holder_id == "worker-a"
