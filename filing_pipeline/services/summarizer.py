"""
Filing summarization.

The pipeline treats the summarizer as an opaque collaborator: it receives
the filing text (and chunks, for long filings) plus metadata and returns a
summary text and a JSON payload. Provider-backed implementations plug in by
subclassing `Summarizer`.

`ExtractiveSummarizer` is the built-in implementation. It only quotes the
filing's own sentences, so it never invents facts or numbers.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from filing_pipeline.errors import ExternalServiceError
from filing_pipeline.parsers.chunker import DocumentChunk, split_paragraphs

logger = logging.getLogger(__name__)

_SENTENCE_RE = re.compile(r"^(.+?[.!?])(?:\s|$)", re.DOTALL)
_WS = re.compile(r"\s+")


class SummarizationError(ExternalServiceError):
    """Summarization provider failed or returned unusable output."""


@dataclass
class SummaryResult:
    text: str
    data: Dict[str, Any] = field(default_factory=dict)


class Summarizer(ABC):
    @abstractmethod
    def summarize(
        self,
        text: str,
        chunks: Optional[List[DocumentChunk]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        important_sections: Optional[Dict[str, str]] = None,
    ) -> SummaryResult:
        """Summarize a filing. `important_sections` maps the form's key section names to their text."""


def _first_sentence(paragraph: str, limit: int) -> str:
    flat = _WS.sub(" ", paragraph).strip()
    m = _SENTENCE_RE.match(flat)
    sentence = m.group(1) if m else flat
    if len(sentence) > limit:
        sentence = sentence[:limit].rsplit(" ", 1)[0] + "..."
    return sentence


class ExtractiveSummarizer(Summarizer):
    """
    Heading-anchored lead sentences of the filing.

    Lead sentences of the form's important sections come first, then one
    per heading of the full text that is not already covered.
    """

    def __init__(self, max_points: int = 8, max_sentence_chars: int = 300) -> None:
        self.max_points = max_points
        self.max_sentence_chars = max_sentence_chars

    def summarize(
        self,
        text: str,
        chunks: Optional[List[DocumentChunk]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        important_sections: Optional[Dict[str, str]] = None,
    ) -> SummaryResult:
        metadata = metadata or {}
        important_sections = important_sections or {}
        if not (text or "").strip():
            raise SummarizationError("No filing content to summarize", retryable=False)

        points: List[Dict[str, Optional[str]]] = []
        for name, section in important_sections.items():
            if len(points) >= self.max_points:
                break
            if section.strip():
                points.append({"heading": name, "text": _first_sentence(section, self.max_sentence_chars)})
        seen = {p["text"] for p in points}

        heading: Optional[str] = None
        taken_for_heading = False
        for para in split_paragraphs(text):
            if len(points) >= self.max_points:
                break
            if para.heading:
                heading = _WS.sub(" ", para.text).strip()
                taken_for_heading = False
                continue
            if taken_for_heading:
                continue
            taken_for_heading = True
            sentence = _first_sentence(para.text, self.max_sentence_chars)
            if sentence in seen:
                continue
            points.append({"heading": heading, "text": sentence})
            seen.add(sentence)

        form = metadata.get("filing_type") or "Filing"
        company = metadata.get("company_name") or "the company"
        ticker = metadata.get("ticker")
        lead = f"{form} filed by {company}" + (f" ({ticker})" if ticker else "")
        if metadata.get("filing_date"):
            lead += f" on {metadata['filing_date']}"
        lines = [lead + "."]
        for p in points:
            lines.append(f"- {p['heading']}: {p['text']}" if p["heading"] else f"- {p['text']}")

        data = {
            "filingType": metadata.get("filing_type"),
            "companyName": metadata.get("company_name"),
            "ticker": ticker,
            "keyPoints": points,
            "sourceLength": len(text),
            "chunkCount": len(chunks or []),
            "importantSections": list(important_sections),
            "method": "extractive",
        }
        logger.debug("summary_generated", extra={"points": len(points), "source_length": len(text)})
        return SummaryResult(text="\n".join(lines), data=data)
