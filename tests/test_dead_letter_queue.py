from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from filing_pipeline.database import Base
from filing_pipeline.models import DeadLetterEntry
from filing_pipeline.services.dead_letter_queue import DeadLetterQueueService, format_error


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


def test_add_and_read_back_entry(db_session):
    dlq = DeadLetterQueueService(db_session)
    dlq_id = dlq.add_to_dead_letter_queue(
        "job-1", "PROCESS_FILING", {"filing_id": 42}, ValueError("bad document"), 3, stack="Traceback ..."
    )

    assert dlq_id
    item = dlq.get_entry(dlq_id)
    assert item.original_job_id == "job-1"
    assert item.job_type == "PROCESS_FILING"
    assert item.payload == {"filing_id": 42}
    assert item.attempts == 3
    assert item.reprocessed is False
    assert item.error.startswith("bad document")
    assert "Traceback" in item.error

    data = item.to_dict()
    assert data["originalJobId"] == "job-1"
    assert data["processedAt"] is None


def test_requeue_marks_entry_reprocessed(db_session):
    dlq = DeadLetterQueueService(db_session)
    dlq_id = dlq.add_to_dead_letter_queue("job-1", "PROCESS_FILING", {"filing_id": 42}, "boom", 3)
    calls = []

    def add_job(job_type, payload):
        calls.append((job_type, payload))
        return "job-123"

    assert dlq.requeue_dead_letter_entry(dlq_id, add_job) == "job-123"
    assert calls == [("PROCESS_FILING", {"filing_id": 42})]

    item = dlq.get_entry(dlq_id)
    assert item.reprocessed is True
    assert item.processed_at is not None
    assert dlq.get_dead_letter_entries() == []
    assert [e.id for e in dlq.get_dead_letter_entries(include_reprocessed=True)] == [dlq_id]

    # A reprocessed entry cannot be requeued again.
    assert dlq.requeue_dead_letter_entry(dlq_id, add_job) is None
    assert len(calls) == 1


def test_failed_requeue_leaves_entry_untouched(db_session):
    dlq = DeadLetterQueueService(db_session)
    dlq_id = dlq.add_to_dead_letter_queue("job-1", "PROCESS_FILING", {}, "boom", 3)

    def raising(job_type, payload):
        raise RuntimeError("queue unavailable")

    assert dlq.requeue_dead_letter_entry(dlq_id, raising) is None
    assert dlq.requeue_dead_letter_entry(dlq_id, lambda t, p: None) is None
    assert dlq.get_entry(dlq_id).reprocessed is False


def test_requeue_rolls_back_a_failed_insert(db_session):
    dlq = DeadLetterQueueService(db_session)
    dlq_id = dlq.add_to_dead_letter_queue("job-1", "PROCESS_FILING", {"filing_id": 5}, "boom", 3)

    def broken_insert(job_type, payload):
        # Missing NOT NULL columns: the flush fails mid-transaction.
        db_session.add(DeadLetterEntry(original_job_id="job-2"))
        db_session.flush()

    assert dlq.requeue_dead_letter_entry(dlq_id, broken_insert) is None

    # The session is usable again and the entry can still be requeued.
    assert dlq.get_entry(dlq_id).reprocessed is False
    assert dlq.requeue_dead_letter_entry(dlq_id, lambda t, p: "job-9") == "job-9"
    assert db_session.query(DeadLetterEntry).count() == 1


def test_requeue_unknown_entry(db_session):
    assert DeadLetterQueueService(db_session).requeue_dead_letter_entry("missing", lambda t, p: "x") is None


def test_count_and_pagination(db_session):
    dlq = DeadLetterQueueService(db_session)
    ids = [dlq.add_to_dead_letter_queue(f"job-{i}", "PROCESS_FILING", {}, "boom", 3) for i in range(5)]
    dlq.mark_as_reprocessed(ids[0])

    assert dlq.get_dead_letter_count() == 4
    assert dlq.get_dead_letter_count(include_reprocessed=True) == 5
    page1 = dlq.get_dead_letter_entries(limit=2, offset=0)
    page2 = dlq.get_dead_letter_entries(limit=2, offset=2)
    assert len(page1) == 2
    assert len(page2) == 2
    assert not {e.id for e in page1} & {e.id for e in page2}


def test_cleanup_only_removes_old_reprocessed_entries(db_session):
    dlq = DeadLetterQueueService(db_session)
    old = dlq.add_to_dead_letter_queue("job-1", "PROCESS_FILING", {}, "boom", 3)
    recent = dlq.add_to_dead_letter_queue("job-2", "PROCESS_FILING", {}, "boom", 3)
    pending = dlq.add_to_dead_letter_queue("job-3", "PROCESS_FILING", {}, "boom", 3)
    dlq.mark_as_reprocessed(old)
    dlq.mark_as_reprocessed(recent)
    db_session.query(DeadLetterEntry).filter(DeadLetterEntry.id.in_([old, pending])).update(
        {DeadLetterEntry.processed_at: datetime.utcnow() - timedelta(days=45)}, synchronize_session=False
    )
    db_session.commit()

    assert dlq.cleanup_old_entries(older_than_days=30) == 1
    remaining = {e.id for e in dlq.get_dead_letter_entries(include_reprocessed=True)}
    assert remaining == {recent, pending}


def test_unserializable_payload_is_stored_as_text(db_session):
    dlq = DeadLetterQueueService(db_session)
    when = datetime(2024, 1, 2, 3, 4, 5)
    dlq_id = dlq.add_to_dead_letter_queue("job-1", "PROCESS_FILING", {"at": when}, "boom", 1)
    assert dlq.get_entry(dlq_id).payload == {"at": str(when)}


def test_format_error():
    assert format_error(None) == "Unknown error"
    assert format_error("boom") == "boom"
    assert format_error(RuntimeError("boom"), "stack") == "boom\nstack"
