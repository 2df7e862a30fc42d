"""
Job-type dispatch table.

Handlers register for one or more job types at import time; the processor
looks them up by the job's type. Adding a job type means adding a handler
and registering it here, nothing else.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from filing_pipeline.config import PipelineConfig
from filing_pipeline.errors import UnsupportedJobTypeError
from filing_pipeline.models import Job, JobType
from filing_pipeline.services.job_queue import JobQueueService
from filing_pipeline.services.sec_edgar_client import SecEdgarClient
from filing_pipeline.services.summarizer import Summarizer


@dataclass
class JobContext:
    """Everything a handler may touch while running one job."""

    db: Session
    job: Job
    queue: JobQueueService
    config: PipelineConfig
    summarizer: Summarizer
    sec_client: Optional[SecEdgarClient] = None

    @property
    def client(self) -> SecEdgarClient:
        # SEC config is only required once a handler actually calls SEC.
        if self.sec_client is None:
            self.sec_client = SecEdgarClient()
        return self.sec_client

    @property
    def payload(self) -> Dict[str, Any]:
        return self.job.payload or {}


Handler = Callable[[JobContext], Optional[Dict[str, Any]]]


class JobRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[JobType, Handler] = {}

    def register(self, *job_types: JobType) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            for job_type in job_types:
                self._handlers[JobType(job_type)] = fn
            return fn

        return decorator

    def get(self, job_type: Union[JobType, str]) -> Handler:
        try:
            return self._handlers[JobType(job_type)]
        except (KeyError, ValueError):
            raise UnsupportedJobTypeError(job_type)

    def job_types(self) -> List[JobType]:
        return list(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        try:
            return JobType(job_type) in self._handlers
        except ValueError:
            return False
