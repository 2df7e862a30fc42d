"""
Job handlers, one per job type.

- CHECK_*_FILINGS: fetch the SEC feed, record new filings, enqueue PROCESS_FILING
- PROCESS_FILING: download, parse and chunk a filing, enqueue SUMMARIZE_FILING
- SUMMARIZE_FILING: run the summarizer and store the result
- ARCHIVE_FILINGS: retire old filings' stored chunks

Handlers raise on failure; the processor turns exceptions into retries.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from filing_pipeline.errors import ApiError, ErrorCode
from filing_pipeline.models import Filing, JobType, Summary, SummaryStatus
from filing_pipeline.parsers.chunker import ChunkOptions, DocumentChunk
from filing_pipeline.parsers.document import UnsupportedDocumentError, parse_filing_document
from filing_pipeline.services.feed_parser import parse_rss_feed, process_filing_entries
from filing_pipeline.worker.registry import JobContext, JobRegistry

logger = logging.getLogger(__name__)

registry = JobRegistry()

# Form type passed to the SEC feed for each check job type (None = all forms).
CHECK_FORM_TYPES: Dict[JobType, Optional[str]] = {
    JobType.CHECK_FILINGS: None,
    JobType.CHECK_10K_FILINGS: "10-K",
    JobType.CHECK_10Q_FILINGS: "10-Q",
    JobType.CHECK_8K_FILINGS: "8-K",
    JobType.CHECK_FORM4_FILINGS: "4",
}

FILING_PRIORITY = {"8-K": 8, "10-K": 7, "10-Q": 6}
DEFAULT_FILING_PRIORITY = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def filing_priority(filing_type: Optional[str]) -> int:
    return FILING_PRIORITY.get(filing_type or "", DEFAULT_FILING_PRIORITY)


def process_filing_key(filing_id: int) -> str:
    return f"process-filing-{filing_id}"


def summarize_filing_key(summary_id: int) -> str:
    return f"summarize-filing-{summary_id}"


def _edgar_form(filing_type: Optional[str]) -> Optional[str]:
    return "4" if filing_type == "Form4" else filing_type


def _require(payload: Dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value is None:
        raise ApiError(ErrorCode.VALIDATION_ERROR, f"Job payload is missing '{key}'", {"field": key})
    return value


@registry.register(*CHECK_FORM_TYPES)
def check_filings(ctx: JobContext) -> Dict[str, Any]:
    payload = ctx.payload
    form_type = payload.get("form_type") or CHECK_FORM_TYPES[ctx.job.job_type]
    feed_xml = ctx.client.get_recent_filings(form_type=form_type, count=int(payload.get("count") or 100))
    feed = parse_rss_feed(feed_xml)
    classification = process_filing_entries(feed.entries, ctx.db)

    enqueued = []
    for filing in classification.new_filings:
        job = ctx.queue.add_job(
            JobType.PROCESS_FILING,
            {"filing_id": filing.id},
            priority=filing_priority(filing.filing_type),
            idempotency_key=process_filing_key(filing.id),
        )
        enqueued.append(job.id)

    # Known filings that were stored but never queued (e.g. a crash between
    # the two writes) get their processing job now.
    for filing in classification.existing_filings:
        key = process_filing_key(filing.id)
        if filing.parsed_at is None and ctx.queue.find_job_by_idempotency_key(key) is None:
            job = ctx.queue.add_job(
                JobType.PROCESS_FILING,
                {"filing_id": filing.id},
                priority=filing_priority(filing.filing_type),
                idempotency_key=key,
            )
            enqueued.append(job.id)

    logger.info(
        "filings_checked",
        extra={
            "form_type": form_type,
            "entries": len(feed.entries),
            "new_filings": len(classification.new_filings),
            "existing_filings": len(classification.existing_filings),
        },
    )
    return {
        "formType": form_type,
        "entries": len(feed.entries),
        "newFilings": len(classification.new_filings),
        "existingFilings": len(classification.existing_filings),
        "skipped": classification.skipped,
        "enqueuedJobIds": enqueued,
    }


@registry.register(JobType.PROCESS_FILING)
def process_filing(ctx: JobContext) -> Dict[str, Any]:
    filing_id = _require(ctx.payload, "filing_id")
    filing = ctx.db.query(Filing).filter(Filing.id == filing_id).first()
    if filing is None:
        raise ApiError(ErrorCode.NOT_FOUND, f"Filing {filing_id} not found")

    content = ctx.client.get_filing_document(filing.filing_url, form_type=_edgar_form(filing.filing_type))
    try:
        parsed = parse_filing_document(
            content,
            chunk_threshold=ctx.config.chunk_threshold,
            chunk_options=ChunkOptions(
                max_chunk_size=ctx.config.chunk_max_size,
                chunk_overlap=ctx.config.chunk_overlap,
            ),
            form_type=filing.filing_type,
        )
    except UnsupportedDocumentError as e:
        filing.document_format = e.document_format.value
        filing.parsed_at = _utcnow()
        ctx.db.commit()
        logger.warning(
            "filing_unsupported_format",
            extra={"filing_id": filing.id, "document_format": e.document_format.value},
        )
        return {"filingId": filing.id, "status": "unsupported_format", "documentFormat": e.document_format.value}

    filing.document_format = parsed.document_format.value
    filing.content_text = parsed.text
    filing.chunks = [c.to_dict() for c in parsed.chunks] or None
    filing.important_sections = parsed.important_sections or None
    filing.parsed_at = _utcnow()

    summary = (
        ctx.db.query(Summary)
        .filter(Summary.filing_id == filing.id)
        .order_by(Summary.id.desc())
        .first()
    )
    if summary is None:
        summary = Summary(
            filing_id=filing.id,
            ticker=filing.ticker,
            filing_type=filing.filing_type,
            filing_date=filing.filing_date,
            filing_url=filing.filing_url,
            status=SummaryStatus.PENDING,
        )
        ctx.db.add(summary)
    ctx.db.commit()
    ctx.db.refresh(summary)

    job = ctx.queue.add_job(
        JobType.SUMMARIZE_FILING,
        {"summary_id": summary.id, "filing_id": filing.id},
        priority=filing_priority(filing.filing_type),
        idempotency_key=summarize_filing_key(summary.id),
    )
    return {
        "filingId": filing.id,
        "status": "parsed",
        "documentFormat": parsed.document_format.value,
        "textLength": len(parsed.text),
        "chunkCount": len(parsed.chunks),
        "importantSections": list(parsed.important_sections),
        "summaryId": summary.id,
        "summarizeJobId": job.id,
    }


@registry.register(JobType.SUMMARIZE_FILING)
def summarize_filing(ctx: JobContext) -> Dict[str, Any]:
    summary_id = _require(ctx.payload, "summary_id")
    summary = ctx.db.query(Summary).filter(Summary.id == summary_id).first()
    if summary is None:
        raise ApiError(ErrorCode.NOT_FOUND, f"Summary {summary_id} not found")
    if summary.status == SummaryStatus.COMPLETED:
        return {"summaryId": summary.id, "status": "already_summarized"}

    filing = summary.filing
    if filing is None or not filing.content_text:
        raise ApiError(ErrorCode.NOT_FOUND, f"Filing content for summary {summary_id} not found")

    chunks = [DocumentChunk.from_dict(c) for c in (filing.chunks or [])]
    result = ctx.summarizer.summarize(
        filing.content_text,
        chunks,
        {
            "filing_type": filing.filing_type,
            "company_name": filing.company_name,
            "ticker": filing.ticker,
            "filing_date": filing.filing_date.date().isoformat() if filing.filing_date else None,
            "filing_url": filing.filing_url,
        },
        filing.important_sections,
    )
    summary.summary_text = result.text
    summary.summary_json = result.data
    summary.status = SummaryStatus.COMPLETED
    ctx.db.commit()
    return {"summaryId": summary.id, "status": "summarized", "summaryLength": len(result.text)}


@registry.register(JobType.ARCHIVE_FILINGS)
def archive_filings(ctx: JobContext) -> Dict[str, Any]:
    days = int(ctx.payload.get("older_than_days") or ctx.config.archive_after_days)
    now = _utcnow()
    cutoff = now - timedelta(days=days)
    filings = (
        ctx.db.query(Filing)
        .filter(Filing.archived.is_(False), Filing.filing_date < cutoff)
        .all()
    )
    for filing in filings:
        filing.archived = True
        filing.archived_at = now
        # Chunks can be rebuilt from content_text.
        filing.chunks = None
    ctx.db.commit()
    logger.info("filings_archived", extra={"count": len(filings), "older_than_days": days})
    return {"archived": len(filings), "olderThanDays": days}
