"""
SEC EDGAR client for the filing feed and filing documents.

Implements:
- "Latest filings" Atom feed fetch (optionally filtered by form type)
- Filing document download, resolving EDGAR index pages to the primary document

Complies with SEC guidance on automated access:
- User-Agent header with contact info (required)
- Global request rate limiting (default 10 rps)
- Backoff + retry on 429/403/5xx and network errors

References:
- Accessing EDGAR Data: https://www.sec.gov/search-filings/edgar-search-assistance/accessing-edgar-data
- Rate control limits (10 requests/sec): https://www.sec.gov/filergroup/announcements-old/new-rate-control-limits
"""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode, urljoin

import requests
from bs4 import BeautifulSoup

from filing_pipeline.errors import ExternalServiceError

logger = logging.getLogger(__name__)

_rate_lock = threading.Lock()
_last_request_ts: float = 0.0

RETRYABLE_STATUS = (429, 403, 500, 502, 503, 504)
MAX_BACKOFF_SECONDS = 30.0


class SECErrorCode(enum.Enum):
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    NOT_FOUND = "NOT_FOUND"
    PARSING_ERROR = "PARSING_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class SecEdgarError(ExternalServiceError):
    """Domain error for SEC EDGAR operations."""

    def __init__(self, message: str, code: SECErrorCode = SECErrorCode.UNKNOWN_ERROR, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)
        self.code = code


def _rate_limited_sleep(max_rps: int) -> None:
    """
    Simple per-process rate limiter.

    Ensures at most `max_rps` requests per second by sleeping when needed.
    """
    global _last_request_ts
    if max_rps <= 0:
        return
    min_interval = 1.0 / float(max_rps)
    with _rate_lock:
        now = time.time()
        elapsed = now - _last_request_ts
        if elapsed < min_interval:
            time.sleep(min_interval - elapsed)
            now = time.time()
        _last_request_ts = now


@dataclass
class SecClientConfig:
    max_rps: int = 10
    retry_max: int = 3
    timeout_seconds: float = 30.0
    retry_delay_seconds: float = 1.0
    user_agent: str = ""


def find_primary_document_url(index_html: str, index_url: str, form_type: Optional[str] = None) -> Optional[str]:
    """
    Pick the primary document from an EDGAR filing index page.

    Prefers the row whose Type column matches `form_type`; falls back to the
    first .htm/.xml document listed.
    """
    soup = BeautifulSoup(index_html, "lxml")
    table = soup.find("table", class_="tableFile") or soup.find("table")
    if table is None:
        return None

    fallback: Optional[str] = None
    wanted = (form_type or "").upper().replace("FORM", "").strip()
    for row in table.find_all("tr"):
        cells = row.find_all("td")
        link = row.find("a", href=True)
        if not cells or link is None:
            continue
        href = link["href"]
        # Inline XBRL viewer links wrap the real document path.
        if href.startswith("/ix?doc="):
            href = href[len("/ix?doc="):]
        if not href.lower().endswith((".htm", ".html", ".xml", ".txt")) or "-index" in href:
            continue
        url = urljoin(index_url, href)
        if fallback is None:
            fallback = url
        row_type = cells[3].get_text(strip=True).upper() if len(cells) > 3 else ""
        if wanted and row_type == wanted:
            return url
    return fallback


class SecEdgarClient:
    """Lightweight client for www.sec.gov with rate limiting and retries."""

    FEED_URL = "https://www.sec.gov/cgi-bin/browse-edgar"

    def __init__(self, config: Optional[SecClientConfig] = None) -> None:
        cfg = config or self._from_env()
        if not cfg.user_agent:
            raise SecEdgarError("SEC_EDGAR_USER_AGENT is required for SEC EDGAR access", retryable=False)
        self._config = cfg

    @staticmethod
    def _from_env() -> SecClientConfig:
        max_rps = int(os.getenv("SEC_MAX_REQUEST_RATE", "10") or "10")
        retry_max = int(os.getenv("SEC_RETRY_MAX_ATTEMPTS", "3") or "3")
        timeout_seconds = float(os.getenv("SEC_REQUEST_TIMEOUT", "30") or "30")
        user_agent = os.getenv("SEC_EDGAR_USER_AGENT", "").strip()
        return SecClientConfig(
            max_rps=max_rps,
            retry_max=retry_max,
            timeout_seconds=timeout_seconds,
            user_agent=user_agent,
        )

    # ------------------------------------------------------------------
    # Low-level HTTP helper
    # ------------------------------------------------------------------

    def _request(self, url: str, accept: str) -> requests.Response:
        """GET with rate limiting and retries; returns the 200 response."""
        headers = {
            "User-Agent": self._config.user_agent,
            "Accept": accept,
        }
        last_err: Optional[SecEdgarError] = None
        for attempt in range(1, self._config.retry_max + 1):
            try:
                _rate_limited_sleep(self._config.max_rps)
                resp = requests.get(url, headers=headers, timeout=self._config.timeout_seconds)
                if resp.status_code == 200:
                    return resp
                if resp.status_code == 404:
                    raise SecEdgarError(f"SEC resource not found: {url}", SECErrorCode.NOT_FOUND, retryable=False)
                if resp.status_code in RETRYABLE_STATUS:
                    code = SECErrorCode.RATE_LIMIT_EXCEEDED if resp.status_code in (429, 403) else SECErrorCode.NETWORK_ERROR
                    last_err = SecEdgarError(f"SEC error {resp.status_code}: {resp.text[:200]}", code)
                else:
                    raise SecEdgarError(
                        f"Unexpected SEC status {resp.status_code}: {resp.text[:200]}",
                        SECErrorCode.UNKNOWN_ERROR,
                        retryable=False,
                    )
            except requests.Timeout as e:
                last_err = SecEdgarError(f"Timed out fetching {url}: {e}", SECErrorCode.TIMEOUT)
            except requests.RequestException as e:
                last_err = SecEdgarError(f"Network error fetching {url}: {e}", SECErrorCode.NETWORK_ERROR)

            logger.warning(
                "sec_request_retry",
                extra={"url": url, "attempt": attempt, "error": str(last_err)},
            )
            # Exponential backoff
            if attempt < self._config.retry_max:
                time.sleep(min(self._config.retry_delay_seconds * (2 ** (attempt - 1)), MAX_BACKOFF_SECONDS))

        assert last_err is not None
        raise last_err

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_recent_filings(self, form_type: Optional[str] = None, count: int = 100, start: int = 0) -> str:
        """Fetch the "latest filings" Atom feed as text."""
        params = {
            "action": "getcurrent",
            "owner": "include",
            "start": start or "",
            "count": count,
            "type": form_type or "",
            "output": "atom",
        }
        url = f"{self.FEED_URL}?{urlencode(params)}"
        resp = self._request(url, accept="application/atom+xml, application/xml, text/xml")
        return resp.text

    def get_filing_document(self, url: str, form_type: Optional[str] = None) -> bytes:
        """
        Download a filing document.

        EDGAR index pages are resolved to their primary document first.
        """
        resp = self._request(url, accept="*/*")
        if "-index.htm" not in url:
            return resp.content

        primary_url = find_primary_document_url(resp.text, url, form_type=form_type)
        if not primary_url:
            raise SecEdgarError(
                f"No primary document found in filing index {url}",
                SECErrorCode.PARSING_ERROR,
                retryable=False,
            )
        logger.info("sec_primary_document_resolved", extra={"index_url": url, "document_url": primary_url})
        return self._request(primary_url, accept="*/*").content
