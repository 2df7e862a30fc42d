"""
API request/response schemas for the cron and dead letter queue routes.

Response fields are camelCase, as read by schedulers and operator scripts.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProcessedJob(BaseModel):
    id: str
    jobType: str
    status: str
    duration: Optional[int] = None
    error: Optional[str] = None


class ProcessJobsResponse(BaseModel):
    success: bool
    message: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    duration: int = Field(0, description="Wall time of the run in milliseconds")
    jobs: List[ProcessedJob] = Field(default_factory=list)


class CheckFilingsResponse(BaseModel):
    success: bool = True
    jobId: str
    jobType: str


class JobStatsResponse(BaseModel):
    success: bool = True
    stats: Dict[str, int]
    deadLetterCount: int


class DeadLetterEntryResponse(BaseModel):
    id: str
    originalJobId: str
    jobType: str
    payload: Any = None
    error: str
    attempts: int
    reprocessed: bool
    processedAt: Optional[str] = None
    createdAt: Optional[str] = None


class DeadLetterListResponse(BaseModel):
    success: bool = True
    count: int
    entries: List[DeadLetterEntryResponse]
    limit: int
    offset: int
    includeReprocessed: bool
    duration: int


class RequeueRequest(BaseModel):
    id: Optional[str] = Field(None, description="Dead letter entry id")


class RequeueResponse(BaseModel):
    success: bool = True
    jobId: str


class DeadLetterCleanupResponse(BaseModel):
    success: bool = True
    deletedCount: int
    olderThanDays: int
    message: str
