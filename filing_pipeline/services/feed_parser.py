"""
SEC filing feed parsing and deduplication.

The feed may arrive as Atom (`feed/entry`) or RSS (`rss/channel/item`).
Both are normalized to `FeedEntry`; filing metadata is then derived from the
entry title/link by a `FilingMetadataExtractor` and matched against known
companies and filings.
"""

from __future__ import annotations

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Iterable, List, Optional, Sequence

from bs4 import BeautifulSoup
from sqlalchemy.orm import Session

from filing_pipeline.models import Company, Filing

logger = logging.getLogger(__name__)

SUPPORTED_FILING_TYPES = ("10-K", "10-Q", "8-K", "Form4")

# Substring markers checked in order; first hit wins.
FILING_TYPE_MARKERS = (
    ("10-K", "10-K"),
    ("10-Q", "10-Q"),
    ("8-K", "8-K"),
    ("Form 4", "Form4"),
)

TICKER_RE = re.compile(r"\(([A-Z]+)\)")
# EDGAR "latest filings" titles: "10-K - TESLA INC (0001318605) (Filer)"
EDGAR_TITLE_RE = re.compile(r"^\s*([\w\-/ ]+?)\s+-\s+(.+?)\s+\((\d+)\)")
COMPANY_NAME_PATTERNS = (
    re.compile(r"Form [\w-]+ for ([^(]+)"),
    re.compile(r"^([^(]+)\("),
)
CIK_PARAM_RE = re.compile(r"CIK=(\d+)", re.IGNORECASE)
CIK_PATH_RE = re.compile(r"/edgar/data/(\d+)/", re.IGNORECASE)
CIK_TITLE_RE = re.compile(r"\((\d+)\)")


class FeedParseError(ValueError):
    """The feed document has no usable Atom or RSS structure."""

    code = "PARSING_ERROR"


@dataclass
class FeedEntry:
    title: str
    link: str
    summary: str
    updated: str
    id: str
    category: Optional[str] = None


@dataclass
class FeedParseResult:
    entries: List[FeedEntry]
    next_page: Optional[str] = None


@dataclass
class FilingTitle:
    form_type: str
    company_name: str
    cik: str


@dataclass
class FilingMetadata:
    form_type: str
    company_name: str
    cik: str
    filing_date: datetime
    filing_url: str
    ticker: Optional[str] = None
    description: Optional[str] = None


@dataclass
class FilingClassification:
    new_filings: List[Filing] = field(default_factory=list)
    existing_filings: List[Filing] = field(default_factory=list)
    skipped: int = 0


# ---------------------------------------------------------------------------
# Feed parsing
# ---------------------------------------------------------------------------


def _text(node, name: str) -> str:
    child = node.find(name)
    if child is None:
        return ""
    return child.get_text().strip()


def _synthetic_id(title: str, link: str, updated: str) -> str:
    digest = hashlib.sha1(f"{title}|{link}|{updated}".encode("utf-8")).hexdigest()
    return f"urn:filing-entry:{digest[:20]}"


def _rfc822_to_iso(value: str) -> str:
    if not value:
        return ""
    try:
        return parsedate_to_datetime(value).isoformat()
    except (TypeError, ValueError):
        return value


def _atom_entry(entry) -> FeedEntry:
    title = _text(entry, "title")
    link = ""
    for link_el in entry.find_all("link"):
        if link_el.get("rel") in (None, "alternate") and link_el.get("href"):
            link = link_el["href"].strip()
            break
    summary = _text(entry, "summary") or _text(entry, "content")
    updated = _text(entry, "updated") or _text(entry, "published")
    category_el = entry.find("category")
    category = category_el.get("term") if category_el is not None else None
    entry_id = _text(entry, "id") or _synthetic_id(title, link, updated)
    return FeedEntry(title=title, link=link, summary=summary, updated=updated, id=entry_id, category=category)


def _rss_item(item) -> FeedEntry:
    title = _text(item, "title")
    link = _text(item, "link")
    summary = _text(item, "description")
    updated = _rfc822_to_iso(_text(item, "pubDate"))
    category = _text(item, "category") or None
    entry_id = _text(item, "guid") or _synthetic_id(title, link, updated)
    return FeedEntry(title=title, link=link, summary=summary, updated=updated, id=entry_id, category=category)


def parse_rss_feed(xml) -> FeedParseResult:
    """
    Parse an Atom or RSS document into normalized entries.

    Raises FeedParseError when the document is neither.
    """
    if not xml:
        raise FeedParseError("Empty feed document")
    soup = BeautifulSoup(xml, "xml")
    root = soup.find(True)
    if root is None:
        raise FeedParseError("Feed document has no root element")

    if root.name == "feed":
        entries = [_atom_entry(e) for e in root.find_all("entry")]
        next_page = None
        for link_el in root.find_all("link", recursive=False):
            if link_el.get("rel") == "next" and link_el.get("href"):
                next_page = link_el["href"]
                break
        return FeedParseResult(entries=entries, next_page=next_page)

    if root.name == "rss":
        channel = root.find("channel")
        if channel is None:
            raise FeedParseError("RSS document has no channel")
        return FeedParseResult(entries=[_rss_item(i) for i in channel.find_all("item")])

    raise FeedParseError(f"Unsupported feed format: <{root.name}>")


# ---------------------------------------------------------------------------
# Title / link heuristics
# ---------------------------------------------------------------------------


def extract_ticker_from_title(title: str) -> Optional[str]:
    m = TICKER_RE.search(title or "")
    return m.group(1) if m else None


def determine_filing_type(title: str) -> Optional[str]:
    for marker, filing_type in FILING_TYPE_MARKERS:
        if marker in (title or ""):
            return filing_type
    return None


def extract_company_name(title: str) -> Optional[str]:
    title = title or ""
    m = EDGAR_TITLE_RE.match(title)
    if m:
        return m.group(2).strip()
    for pattern in COMPANY_NAME_PATTERNS:
        m = pattern.search(title)
        if m and m.group(1).strip():
            return m.group(1).strip()
    return None


def normalize_cik(cik) -> Optional[str]:
    digits = str(cik or "").strip()
    if not digits.isdigit():
        return None
    return digits.zfill(10)


def extract_cik(link: str = "", title: str = "") -> Optional[str]:
    """CIK from a `CIK=` parameter or archive path in the link, else from a `(digits)` title segment."""
    for pattern in (CIK_PARAM_RE, CIK_PATH_RE):
        m = pattern.search(link or "")
        if m:
            return normalize_cik(m.group(1))
    m = CIK_TITLE_RE.search(title or "")
    if m:
        return normalize_cik(m.group(1))
    return None


def normalize_form_type(form: str) -> str:
    form = (form or "").strip().upper()
    if form in ("4", "FORM 4", "FORM4"):
        return "Form4"
    return form


def parse_filing_title(title: str) -> Optional[FilingTitle]:
    """Split an EDGAR feed title into form type, company name and CIK."""
    m = EDGAR_TITLE_RE.match(title or "")
    if not m:
        return None
    return FilingTitle(
        form_type=normalize_form_type(m.group(1)),
        company_name=m.group(2).strip(),
        cik=m.group(3).zfill(10),
    )


def _parse_timestamp(value: str) -> Optional[datetime]:
    """ISO-8601 timestamp to naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class FilingMetadataExtractor(ABC):
    """Derives filing metadata from a feed entry. Returns None for irrelevant entries."""

    @abstractmethod
    def extract(self, entry: FeedEntry) -> Optional[FilingMetadata]:
        ...


class TitleFilingMetadataExtractor(FilingMetadataExtractor):
    """Regex heuristics over EDGAR entry titles and links."""

    def extract(self, entry: FeedEntry) -> Optional[FilingMetadata]:
        parsed = parse_filing_title(entry.title)
        if parsed is not None:
            form_type, company_name, cik = parsed.form_type, parsed.company_name, parsed.cik
        else:
            form_type = determine_filing_type(entry.title)
            company_name = extract_company_name(entry.title)
            cik = extract_cik(entry.link, entry.title)
        if not form_type or not company_name or not cik:
            return None

        filing_date = _parse_timestamp(entry.updated)
        if filing_date is None:
            return None
        return FilingMetadata(
            form_type=form_type,
            company_name=company_name,
            cik=cik,
            filing_date=filing_date,
            filing_url=entry.link,
            ticker=extract_ticker_from_title(entry.title),
            description=entry.summary or entry.title,
        )


# ---------------------------------------------------------------------------
# Classification against known filings
# ---------------------------------------------------------------------------


def find_existing_filing(db: Session, cik: str, filing_type: str, filing_date: datetime) -> Optional[Filing]:
    """A filing of this type for this CIK on the same UTC calendar day."""
    day_start = datetime(filing_date.year, filing_date.month, filing_date.day)
    day_end = day_start + timedelta(days=1)
    return (
        db.query(Filing)
        .filter(
            Filing.cik == cik,
            Filing.filing_type == filing_type,
            Filing.filing_date >= day_start,
            Filing.filing_date < day_end,
        )
        .first()
    )


def process_filing_entries(
    entries: Iterable[FeedEntry],
    db: Session,
    extractor: Optional[FilingMetadataExtractor] = None,
    supported_types: Sequence[str] = SUPPORTED_FILING_TYPES,
) -> FilingClassification:
    """
    Persist newly seen filings for known companies.

    Entries that cannot be parsed, have an unsupported form type, or belong
    to an unknown company are skipped. An error on one entry is logged and
    the rest of the batch continues.
    """
    extractor = extractor or TitleFilingMetadataExtractor()
    result = FilingClassification()

    for entry in entries:
        try:
            meta = extractor.extract(entry)
            if meta is None:
                logger.info("feed_entry_unrecognized", extra={"entry_id": entry.id, "title": entry.title})
                result.skipped += 1
                continue
            if meta.form_type not in supported_types:
                logger.debug("feed_entry_unsupported_form", extra={"entry_id": entry.id, "form_type": meta.form_type})
                result.skipped += 1
                continue

            company = db.query(Company).filter(Company.cik == meta.cik).first()
            if company is None:
                logger.debug("feed_entry_unknown_company", extra={"entry_id": entry.id, "cik": meta.cik})
                result.skipped += 1
                continue

            existing = find_existing_filing(db, meta.cik, meta.form_type, meta.filing_date)
            if existing is not None:
                result.existing_filings.append(existing)
                continue

            filing = Filing(
                company_id=company.id,
                ticker=company.ticker or meta.ticker,
                company_name=company.name or meta.company_name,
                cik=meta.cik,
                filing_type=meta.form_type,
                filing_date=meta.filing_date,
                filing_url=meta.filing_url,
                description=meta.description,
            )
            db.add(filing)
            db.commit()
            db.refresh(filing)
            result.new_filings.append(filing)
            logger.info(
                "filing_discovered",
                extra={"filing_id": filing.id, "cik": meta.cik, "form_type": meta.form_type, "ticker": filing.ticker},
            )
        except Exception:
            db.rollback()
            logger.error("feed_entry_failed", extra={"entry_id": getattr(entry, "id", None)}, exc_info=True)
            result.skipped += 1

    return result
