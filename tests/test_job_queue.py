from dataclasses import replace
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from filing_pipeline.config import load_config
from filing_pipeline.database import Base
from filing_pipeline.models import Job, JobStatus, JobType
from filing_pipeline.services.job_queue import JobQueueService, retry_delay_seconds


@pytest.fixture()
def session_factory(tmp_path):
    db_path = tmp_path / "test.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _queue(db, **overrides):
    settings = {"max_attempts": 3, "retry_base_seconds": 60, "retry_max_seconds": 3600}
    settings.update(overrides)
    config = replace(load_config(), **settings)
    return JobQueueService(db, config)


def test_add_job_defaults(db_session):
    job = _queue(db_session).add_job(JobType.PROCESS_FILING, {"filing_id": 1})

    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.priority == 5
    assert job.version == 0
    assert job.payload == {"filing_id": 1}
    assert job.idempotency_day is None


def test_same_key_same_day_is_one_job(db_session):
    queue = _queue(db_session)
    first = queue.add_job(JobType.PROCESS_FILING, {"filing_id": 1}, idempotency_key="process-filing-1")
    second = queue.add_job(JobType.PROCESS_FILING, {"filing_id": 1}, idempotency_key="process-filing-1")

    assert first.id == second.id
    assert db_session.query(Job).count() == 1


def test_key_is_reusable_on_a_later_day_once_finished(db_session):
    queue = _queue(db_session)
    today = datetime.utcnow()
    first = queue.add_job(JobType.CHECK_FILINGS, idempotency_key="check-filings-all", scheduled_for=today)
    queue.claim_job(first)
    queue.update_job_status(first.id, JobStatus.COMPLETED, {"ok": True})

    # A finished job still holds its key for the rest of that day.
    assert queue.add_job(JobType.CHECK_FILINGS, idempotency_key="check-filings-all", scheduled_for=today).id == first.id

    tomorrow = queue.add_job(
        JobType.CHECK_FILINGS, idempotency_key="check-filings-all", scheduled_for=today + timedelta(days=1)
    )
    assert tomorrow.id != first.id
    assert db_session.query(Job).count() == 2


def test_outstanding_job_blocks_key_on_any_day(db_session):
    queue = _queue(db_session)
    first = queue.add_job(JobType.PROCESS_FILING, idempotency_key="process-filing-9")
    later = queue.add_job(
        JobType.PROCESS_FILING,
        idempotency_key="process-filing-9",
        scheduled_for=datetime.utcnow() + timedelta(days=3),
    )
    assert later.id == first.id


def test_selection_order_and_filters(db_session):
    queue = _queue(db_session)
    now = datetime.utcnow()
    low = queue.add_job(JobType.PROCESS_FILING, priority=1, scheduled_for=now - timedelta(minutes=5))
    high_late = queue.add_job(JobType.PROCESS_FILING, priority=8, scheduled_for=now - timedelta(minutes=1))
    high_early = queue.add_job(JobType.PROCESS_FILING, priority=8, scheduled_for=now - timedelta(minutes=3))
    queue.add_job(JobType.PROCESS_FILING, priority=9, scheduled_for=now + timedelta(hours=1))
    other_type = queue.add_job(JobType.SUMMARIZE_FILING, priority=10, scheduled_for=now - timedelta(minutes=2))

    jobs = queue.get_jobs_to_process(batch_size=10, job_type=JobType.PROCESS_FILING, now=now)
    assert [j.id for j in jobs] == [high_early.id, high_late.id, low.id]

    all_jobs = queue.get_jobs_to_process(batch_size=2, now=now)
    assert [j.id for j in all_jobs] == [other_type.id, high_early.id]


def test_claim_moves_to_processing_and_bumps_version(db_session):
    queue = _queue(db_session)
    job = queue.add_job(JobType.PROCESS_FILING)

    assert queue.claim_job(job) is True
    assert job.status == JobStatus.PROCESSING
    assert job.version == 1
    assert job.started_at is not None
    assert queue.get_jobs_to_process(now=datetime.utcnow() + timedelta(minutes=1)) == []


def test_only_one_of_two_concurrent_claims_wins(session_factory):
    setup = session_factory()
    job_id = _queue(setup).add_job(JobType.PROCESS_FILING).id
    setup.close()

    a, b = session_factory(), session_factory()
    try:
        job_a = _queue(a).get_jobs_to_process()[0]
        job_b = _queue(b).get_jobs_to_process()[0]
        assert job_a.id == job_b.id == job_id

        results = [_queue(a).claim_job(job_a), _queue(b).claim_job(job_b)]
        assert sorted(results) == [False, True]
    finally:
        a.close()
        b.close()


def test_stale_status_update_is_rejected(session_factory):
    setup = session_factory()
    job_id = _queue(setup).add_job(JobType.PROCESS_FILING).id
    setup.close()

    a, b = session_factory(), session_factory()
    try:
        stale = _queue(b).get_job_by_id(job_id)
        assert stale.version == 0
        assert _queue(a).update_job_status(job_id, JobStatus.PROCESSING) is not None

        # b still holds version 0 in its identity map.
        assert _queue(b).update_job_status(job_id, JobStatus.COMPLETED) is None
    finally:
        a.close()
        b.close()


def test_failure_schedules_retry_with_backoff(db_session):
    queue = _queue(db_session)
    job = queue.add_job(JobType.PROCESS_FILING)
    queue.claim_job(job)
    before = datetime.utcnow()

    updated = queue.update_job_status(job.id, JobStatus.FAILED, {"error": "boom", "stack": "trace"})

    assert updated.status == JobStatus.RETRYING
    assert updated.attempts == 1
    assert updated.last_error == "boom"
    assert updated.last_error_stack == "trace"
    assert updated.failed_at is None
    assert updated.scheduled_for >= before + timedelta(seconds=59)

    assert queue.get_jobs_to_process(now=before) == []
    assert [j.id for j in queue.get_jobs_to_process(now=before + timedelta(minutes=2))] == [job.id]


def test_failure_on_last_attempt_is_terminal(db_session):
    queue = _queue(db_session, retry_base_seconds=0)
    job = queue.add_job(JobType.PROCESS_FILING)

    for _ in range(3):
        assert queue.claim_job(job) is True
        queue.update_job_status(job.id, JobStatus.FAILED, {"error": "boom"})

    job = queue.get_job_by_id(job.id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert job.failed_at is not None
    assert queue.get_jobs_to_process() == []
    assert [j.id for j in queue.get_failed_jobs()] == [job.id]


def test_final_failure_skips_retry(db_session):
    queue = _queue(db_session)
    job = queue.add_job(JobType.PROCESS_FILING)
    queue.claim_job(job)

    updated = queue.update_job_status(job.id, JobStatus.FAILED, {"error": "bad payload"}, final=True)
    assert updated.status == JobStatus.FAILED
    assert updated.attempts == 1


def test_update_missing_job_returns_none(db_session):
    assert _queue(db_session).update_job_status("missing", JobStatus.COMPLETED) is None


def test_stats_and_cleanup(db_session):
    queue = _queue(db_session)
    done = queue.add_job(JobType.PROCESS_FILING)
    queue.claim_job(done)
    queue.update_job_status(done.id, JobStatus.COMPLETED, {"ok": True}, execution_time_ms=12)
    queue.add_job(JobType.PROCESS_FILING)

    stats = queue.get_job_stats()
    assert stats["completed"] == 1
    assert stats["pending"] == 1
    assert stats["total"] == 2

    db_session.query(Job).filter(Job.id == done.id).update(
        {Job.completed_at: datetime.utcnow() - timedelta(days=40)}, synchronize_session=False
    )
    db_session.commit()
    assert queue.cleanup_old_jobs(older_than_days=30) == 1
    assert queue.get_job_stats()["total"] == 1


def test_retry_delay_is_exponential_and_capped():
    assert retry_delay_seconds(1, 60, 3600) == 60
    assert retry_delay_seconds(2, 60, 3600) == 120
    assert retry_delay_seconds(3, 60, 3600) == 240
    assert retry_delay_seconds(10, 60, 3600) == 3600
    assert retry_delay_seconds(3, 0, 3600) == 0
