"""
Runtime configuration for the filing pipeline.

All values come from environment variables so the web process, the Celery
worker and the beat scheduler share one source of truth.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class PipelineConfig:
    batch_size: int
    max_attempts: int
    default_priority: int
    retry_base_seconds: int
    retry_max_seconds: int
    lock_ttl_minutes: int
    dlq_retention_days: int
    job_retention_days: Optional[int]
    archive_after_days: int
    chunk_threshold: int
    chunk_max_size: int
    chunk_overlap: int
    filing_check_interval_minutes: int
    admin_api_key: Optional[str]


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)) or str(default))


def _env_optional_int(name: str) -> Optional[int]:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else None


def load_config() -> PipelineConfig:
    admin_api_key = (os.getenv("ADMIN_API_KEY") or "").strip() or None
    return PipelineConfig(
        batch_size=_env_int("JOB_BATCH_SIZE", 10),
        max_attempts=_env_int("JOB_MAX_ATTEMPTS", 3),
        default_priority=_env_int("JOB_DEFAULT_PRIORITY", 5),
        retry_base_seconds=_env_int("JOB_RETRY_BASE_SECONDS", 60),
        retry_max_seconds=_env_int("JOB_RETRY_MAX_SECONDS", 3600),
        lock_ttl_minutes=_env_int("LOCK_TTL_MINUTES", 15),
        dlq_retention_days=_env_int("DLQ_RETENTION_DAYS", 30),
        job_retention_days=_env_optional_int("JOB_RETENTION_DAYS"),
        archive_after_days=_env_int("FILING_ARCHIVE_DAYS", 90),
        chunk_threshold=_env_int("CHUNK_THRESHOLD", 4000),
        chunk_max_size=_env_int("CHUNK_MAX_SIZE", 4000),
        chunk_overlap=_env_int("CHUNK_OVERLAP", 500),
        filing_check_interval_minutes=_env_int("FILING_CHECK_INTERVAL_MINUTES", 15),
        admin_api_key=admin_api_key,
    )


def configure_logging() -> None:
    """Configure root logging from LOG_LEVEL (idempotent)."""
    level_name = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
