"""
Raw filing bytes -> structured sections, full text and (when long) chunks.

The form type (given by the caller, or detected from the document) selects
the HTML parser options and the important sections pulled out for the
summarizer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from filing_pipeline.parsers.chunker import ChunkOptions, DocumentChunk, chunk_text
from filing_pipeline.parsers.file_type import DocumentFormat, detect_document_format, detect_filing_type
from filing_pipeline.parsers.filing_types import FilingTypeRegistry, extract_important_sections, filing_type_registry
from filing_pipeline.parsers.html_parser import FilingSection, HtmlParserOptions, parse_html, sections_to_text
from filing_pipeline.parsers.xbrl_parser import parse_xbrl, xbrl_to_sections

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_THRESHOLD = 4000


class UnsupportedDocumentError(ValueError):
    """The document format has no text extractor (PDF, unknown)."""

    def __init__(self, document_format: DocumentFormat) -> None:
        super().__init__(f"Unsupported document format: {document_format.value}")
        self.document_format = document_format


@dataclass
class ParsedDocument:
    document_format: DocumentFormat
    title: Optional[str]
    filing_type: Optional[str]
    sections: List[FilingSection]
    text: str
    chunks: List[DocumentChunk] = field(default_factory=list)
    important_sections: Dict[str, str] = field(default_factory=dict)

    @property
    def is_chunked(self) -> bool:
        return bool(self.chunks)


def _decode(content: Union[bytes, str]) -> str:
    if isinstance(content, str):
        return content
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError:
        return content.decode("latin-1", errors="ignore")


def parse_filing_document(
    content: Union[bytes, str],
    chunk_threshold: int = DEFAULT_CHUNK_THRESHOLD,
    chunk_options: Optional[ChunkOptions] = None,
    html_options: Optional[HtmlParserOptions] = None,
    form_type: Optional[str] = None,
    registry: Optional[FilingTypeRegistry] = None,
) -> ParsedDocument:
    """
    Detect the format, extract sections and text, and chunk text longer
    than `chunk_threshold`.

    `form_type` overrides the form detected from the document. Explicit
    `html_options` override the form's registered parser options.

    Raises UnsupportedDocumentError for PDF and unrecognized content.
    """
    registry = registry or filing_type_registry
    fmt = detect_document_format(content)
    if fmt in (DocumentFormat.PDF, DocumentFormat.UNKNOWN):
        raise UnsupportedDocumentError(fmt)

    raw = _decode(content)
    if fmt == DocumentFormat.XBRL:
        xbrl = parse_xbrl(raw)
        sections = xbrl_to_sections(xbrl)
        title = " ".join(p for p in (xbrl.registrant_name, xbrl.document_type) if p) or None
        filing_type = form_type or xbrl.document_type
    else:
        filing_type = form_type or detect_filing_type(raw)
        parsed = parse_html(raw, html_options or registry.parser_options(filing_type))
        sections = parsed.sections
        title = parsed.title

    text = sections_to_text(sections)
    chunks: List[DocumentChunk] = []
    if len(text) > chunk_threshold:
        chunks = chunk_text(text, chunk_options).chunks
    important = extract_important_sections(sections, filing_type, registry)

    logger.info(
        "document_parsed",
        extra={
            "document_format": fmt.value,
            "filing_type": filing_type,
            "section_count": len(sections),
            "important_section_count": len(important),
            "text_length": len(text),
            "chunk_count": len(chunks),
        },
    )
    return ParsedDocument(
        document_format=fmt,
        title=title,
        filing_type=filing_type,
        sections=sections,
        text=text,
        chunks=chunks,
        important_sections=important,
    )
