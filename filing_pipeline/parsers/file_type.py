"""Content sniffing for downloaded filing documents."""

from __future__ import annotations

import enum
import re
from typing import Optional, Union

SAMPLE_SIZE = 1000

_HTML_MARKERS = re.compile(r"<html|<!DOCTYPE html|<body|<head", re.IGNORECASE)
_XBRL_MARKERS = re.compile(r"<(?:xbrli:)?xbrl[\s>]|xmlns:xbrli", re.IGNORECASE)
_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)

# Checked against the document <title> first, then the body; first match wins.
_FILING_TYPE_PATTERNS = (
    ("10-K", re.compile(r"Form 10-K|Annual Report|10-K", re.IGNORECASE)),
    ("10-Q", re.compile(r"Form 10-Q|Quarterly Report|10-Q", re.IGNORECASE)),
    ("8-K", re.compile(r"Form 8-K|Current Report|8-K", re.IGNORECASE)),
    ("Form4", re.compile(r"Form 4\b|Statement of Changes|beneficial ownership", re.IGNORECASE)),
    ("DEFA14A", re.compile(r"DEFA\s?14A|Additional Proxy (?:Materials|Soliciting)", re.IGNORECASE)),
    ("SC 13D", re.compile(r"Schedule 13D|SC 13D", re.IGNORECASE)),
    ("144", re.compile(r"Form 144|Notice of Proposed Sale", re.IGNORECASE)),
)
_BODY_FILING_TYPE_PATTERNS = (
    ("10-K", re.compile(r"Form 10-K", re.IGNORECASE)),
    ("10-Q", re.compile(r"Form 10-Q", re.IGNORECASE)),
    ("8-K", re.compile(r"Form 8-K", re.IGNORECASE)),
    ("DEFA14A", re.compile(r"DEFA\s?14A|Additional Proxy Materials", re.IGNORECASE)),
)


class DocumentFormat(enum.Enum):
    PDF = "pdf"
    HTML = "html"
    XBRL = "xbrl"
    UNKNOWN = "unknown"


def _sample(content: Union[bytes, str], size: int = SAMPLE_SIZE) -> str:
    if isinstance(content, bytes):
        return content[:size].decode("utf-8", errors="ignore")
    return content[:size]


def is_pdf(content: Union[bytes, str]) -> bool:
    if isinstance(content, bytes):
        return content[:5] == b"%PDF-"
    return content.startswith("%PDF-")


def is_html(content: Union[bytes, str]) -> bool:
    return bool(_HTML_MARKERS.search(_sample(content)))


def is_xbrl_instance(content: Union[bytes, str]) -> bool:
    """Standalone XBRL instance documents. Inline XBRL is HTML and is not matched."""
    sample = _sample(content)
    return bool(_XBRL_MARKERS.search(sample)) and not _HTML_MARKERS.search(sample)


def detect_document_format(content: Union[bytes, str]) -> DocumentFormat:
    if not content:
        return DocumentFormat.UNKNOWN
    if is_pdf(content):
        return DocumentFormat.PDF
    if is_xbrl_instance(content):
        return DocumentFormat.XBRL
    if is_html(content):
        return DocumentFormat.HTML
    return DocumentFormat.UNKNOWN


def detect_filing_type(content: Union[bytes, str]) -> Optional[str]:
    """Guess the SEC form type of an HTML document from its title, then its text."""
    if is_pdf(content):
        return None
    html = _sample(content, 2000)
    m = _TITLE_RE.search(html)
    title = m.group(1).strip() if m else ""
    if title:
        for filing_type, pattern in _FILING_TYPE_PATTERNS:
            if pattern.search(title):
                return filing_type
    for filing_type, pattern in _BODY_FILING_TYPE_PATTERNS:
        if pattern.search(html):
            return filing_type
    return None
