"""
FastAPI application for the filing pipeline.

Exposes the cron triggers (for schedulers that call HTTP instead of running
Celery beat), queue statistics and the dead letter queue admin routes.
"""

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import Optional
import logging
import os
import time

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from filing_pipeline.api_schemas import (
    CheckFilingsResponse,
    DeadLetterCleanupResponse,
    DeadLetterListResponse,
    JobStatsResponse,
    ProcessJobsResponse,
    RequeueRequest,
    RequeueResponse,
)
from filing_pipeline.config import configure_logging, load_config
from filing_pipeline.database import get_db, init_db
from filing_pipeline.errors import ApiError, ErrorCode
from filing_pipeline.services.dead_letter_queue import DeadLetterQueueService
from filing_pipeline.services.job_queue import JobQueueService
from filing_pipeline.worker.processor import JobProcessor, requeue_dead_letter, schedule_filing_check

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Filing Pipeline",
    description="SEC filing ingestion, parsing and summarization jobs",
    version="0.1.0",
)

_cors_origins_env = os.getenv("CORS_ALLOW_ORIGINS")
if _cors_origins_env and _cors_origins_env.strip() != "*":
    _cors_origins = [o.strip() for o in _cors_origins_env.split(",") if o.strip()]
else:
    _cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize logging and database on startup."""
    configure_logging()
    init_db()


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    logger.warning(
        "api_error",
        extra={"path": request.url.path, "error_code": exc.code.value, "error_message": exc.message},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", extra={"path": request.url.path}, exc_info=exc)
    error = ApiError(ErrorCode.INTERNAL_ERROR, "Internal server error")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def require_api_key(x_api_key: Optional[str] = Header(None)) -> None:
    """Admin routes are open when ADMIN_API_KEY is unset."""
    expected = load_config().admin_api_key
    if expected and x_api_key != expected:
        raise ApiError(ErrorCode.FORBIDDEN, "Invalid or missing API key")


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "filing-pipeline",
        "version": "0.1.0",
    }


@app.get("/api/health/liveness")
async def liveness():
    return {"status": "alive"}


@app.get("/api/health/readiness")
def readiness(db: Session = Depends(get_db)):
    """Ready once the database answers a trivial query."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.error("readiness_check_failed", exc_info=True)
        return JSONResponse(status_code=503, content={"status": "unavailable", "database": "unreachable"})
    return {"status": "ready", "database": "ok"}



@app.get("/api/cron/process-jobs", response_model=ProcessJobsResponse, dependencies=[Depends(require_api_key)])
def process_jobs(type: Optional[str] = Query(None), db: Session = Depends(get_db)):
    """Run one processor pass, optionally restricted to one job type or form type."""
    return JobProcessor(db).run(type).to_dict()


@app.get("/api/cron/check-filings", response_model=CheckFilingsResponse, dependencies=[Depends(require_api_key)])
def check_filings(type: Optional[str] = Query(None), db: Session = Depends(get_db)):
    job = schedule_filing_check(JobQueueService(db), type)
    return {"success": True, "jobId": job.id, "jobType": job.job_type.value}


@app.get("/api/jobs/stats", response_model=JobStatsResponse)
async def job_stats(db: Session = Depends(get_db)):
    return {
        "success": True,
        "stats": JobQueueService(db).get_job_stats(),
        "deadLetterCount": DeadLetterQueueService(db).get_dead_letter_count(),
    }


@app.get("/api/dlq", response_model=DeadLetterListResponse, dependencies=[Depends(require_api_key)])
async def list_dead_letter_entries(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    include_reprocessed: bool = Query(False),
    db: Session = Depends(get_db),
):
    t0 = time.perf_counter()
    entries = DeadLetterQueueService(db).get_dead_letter_entries(
        limit=limit, offset=offset, include_reprocessed=include_reprocessed
    )
    return {
        "success": True,
        "count": len(entries),
        "entries": [e.to_dict() for e in entries],
        "limit": limit,
        "offset": offset,
        "includeReprocessed": include_reprocessed,
        "duration": int((time.perf_counter() - t0) * 1000),
    }


@app.post("/api/dlq", response_model=RequeueResponse, dependencies=[Depends(require_api_key)])
async def requeue_dead_letter_entry(request: Optional[RequeueRequest] = None, db: Session = Depends(get_db)):
    """Re-enqueue a dead-lettered job as a fresh job."""
    dlq_id = (request.id or "").strip() if request else ""
    if not dlq_id:
        raise ApiError(ErrorCode.BAD_REQUEST, "Missing dead letter entry id", {"field": "id"})
    job_id = requeue_dead_letter(db, dlq_id)
    if not job_id:
        raise ApiError(
            ErrorCode.NOT_FOUND,
            "Dead letter entry not found, already reprocessed, or could not be requeued",
            {"id": dlq_id},
        )
    return {"success": True, "jobId": job_id}


@app.delete("/api/dlq", response_model=DeadLetterCleanupResponse, dependencies=[Depends(require_api_key)])
async def cleanup_dead_letter_entries(
    older_than_days: int = Query(30, ge=0),
    db: Session = Depends(get_db),
):
    deleted = DeadLetterQueueService(db).cleanup_old_entries(older_than_days)
    return {
        "success": True,
        "deletedCount": deleted,
        "olderThanDays": older_than_days,
        "message": f"Deleted {deleted} reprocessed dead letter entries older than {older_than_days} days",
    }
