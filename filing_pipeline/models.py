"""
Database models for the filing ingestion pipeline.
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Enum as SQLEnum,
    Text,
    ForeignKey,
    JSON,
    Index,
    Boolean,
    UniqueConstraint,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from filing_pipeline.database import Base
import enum
import uuid


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------


class JobType(enum.Enum):
    CHECK_FILINGS = "CHECK_FILINGS"
    CHECK_10K_FILINGS = "CHECK_10K_FILINGS"
    CHECK_10Q_FILINGS = "CHECK_10Q_FILINGS"
    CHECK_8K_FILINGS = "CHECK_8K_FILINGS"
    CHECK_FORM4_FILINGS = "CHECK_FORM4_FILINGS"
    PROCESS_FILING = "PROCESS_FILING"
    SUMMARIZE_FILING = "SUMMARIZE_FILING"
    ARCHIVE_FILINGS = "ARCHIVE_FILINGS"


class JobStatus(enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    RETRYING = "RETRYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Statuses a job can be picked up from.
RUNNABLE_STATUSES = (JobStatus.PENDING, JobStatus.RETRYING)
# Statuses that still represent outstanding work for idempotency checks.
ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.RETRYING)


class Job(Base):
    """
    A persisted unit of deferred, retryable work.

    `version` is bumped on every status transition; writers use it as a
    compare-and-swap guard so two processes cannot both claim one job.
    """

    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    job_type = Column(SQLEnum(JobType), nullable=False, index=True)
    payload = Column(JSON, nullable=True)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.PENDING, index=True)
    priority = Column(Integer, nullable=False, default=5)
    scheduled_for = Column(DateTime(timezone=True), nullable=False, index=True)

    idempotency_key = Column(String(255), nullable=True, index=True)
    idempotency_day = Column(Date, nullable=True)

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    last_error_stack = Column(Text, nullable=True)

    result = Column(JSON, nullable=True)
    execution_time_ms = Column(Integer, nullable=True)
    version = Column(Integer, nullable=False, default=0)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        # Same logical unit of work cannot be queued twice on the same day.
        UniqueConstraint("idempotency_key", "idempotency_day", name="uq_jobs_idempotency_key_day"),
        Index("ix_jobs_status_scheduled_for", "status", "scheduled_for"),
        Index("ix_jobs_job_type_status", "job_type", "status"),
    )

    def __repr__(self):
        return f"<Job(id={self.id}, type={self.job_type}, status={self.status}, attempts={self.attempts})>"


class DeadLetterEntry(Base):
    """Frozen snapshot of a job that exhausted its retry budget."""

    __tablename__ = "dead_letter_queue"

    id = Column(String(36), primary_key=True, default=_new_id)
    original_job_id = Column(String(36), nullable=False, index=True)
    job_type = Column(String(64), nullable=False, index=True)
    payload = Column(Text, nullable=False)  # JSON-serialized job payload
    error = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)

    reprocessed = Column(Boolean, nullable=False, default=False, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<DeadLetterEntry(id={self.id}, job={self.original_job_id}, reprocessed={self.reprocessed})>"


class JobLock(Base):
    """Named, time-bounded mutual-exclusion lease."""

    __tablename__ = "job_locks"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(128), nullable=False, unique=True, index=True)
    holder_id = Column(String(128), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    refreshed_at = Column(DateTime(timezone=True), nullable=True)
    released = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<JobLock(name={self.name}, holder={self.holder_id}, expires_at={self.expires_at})>"


# ---------------------------------------------------------------------------
# Companies, watch lists, filings, summaries
# ---------------------------------------------------------------------------


class Company(Base):
    """SEC filer keyed by its 10-digit zero-padded CIK."""

    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True)
    cik = Column(String(10), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    ticker = Column(String(16), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    filings = relationship("Filing", back_populates="company")


class Ticker(Base):
    """A ticker on a user's watch list."""

    __tablename__ = "tickers"

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String(16), nullable=False, index=True)
    company_name = Column(String(255), nullable=True)
    user_id = Column(String(128), nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("symbol", "user_id", name="uq_tickers_symbol_user"),
    )


class Filing(Base):
    """A filing discovered in the SEC feed, plus its parsed content."""

    __tablename__ = "filings"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)

    ticker = Column(String(16), nullable=True, index=True)
    company_name = Column(String(255), nullable=False)
    cik = Column(String(10), nullable=False)
    filing_type = Column(String(16), nullable=False)
    filing_date = Column(DateTime(timezone=True), nullable=False)
    filing_url = Column(String(1000), nullable=False)
    description = Column(Text, nullable=True)

    document_format = Column(String(16), nullable=True)
    content_text = Column(Text, nullable=True)
    chunks = Column(JSON, nullable=True)
    important_sections = Column(JSON, nullable=True)  # section name -> text, per the form's registry entry
    parsed_at = Column(DateTime(timezone=True), nullable=True)

    archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    company = relationship("Company", back_populates="filings")

    __table_args__ = (
        Index("ix_filings_cik_type_date", "cik", "filing_type", "filing_date"),
    )

    def __repr__(self):
        return f"<Filing(id={self.id}, cik={self.cik}, type={self.filing_type}, date={self.filing_date})>"


class SummaryStatus(enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Summary(Base):
    """Summary of a filing; delivery to users is handled elsewhere."""

    __tablename__ = "summaries"

    id = Column(Integer, primary_key=True, index=True)
    filing_id = Column(Integer, ForeignKey("filings.id", ondelete="CASCADE"), nullable=False, index=True)

    ticker = Column(String(16), nullable=True, index=True)
    filing_type = Column(String(16), nullable=False)
    filing_date = Column(DateTime(timezone=True), nullable=False)
    filing_url = Column(String(1000), nullable=False)

    summary_text = Column(Text, nullable=True)
    summary_json = Column(JSON, nullable=True)
    status = Column(SQLEnum(SummaryStatus), nullable=False, default=SummaryStatus.PENDING, index=True)
    sent_to_user = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    filing = relationship("Filing")
