"""
Splits long filing text into size-bounded, overlapping chunks.

Two modes:
- Semantic (default): paragraphs are accumulated into chunks; a chunk closes
  when the next paragraph would push it past `max_chunk_size`. A chunk opened
  by a heading starts clean. Any other chunk is seeded with the heading in
  scope plus the preceding body paragraphs that fit in `chunk_overlap`.
- Sliding window: fixed windows of `max_chunk_size` characters stepping by
  `max_chunk_size - chunk_overlap`.

No content is ever truncated. A single paragraph longer than
`max_chunk_size` becomes its own oversized chunk.

Chunk content joins paragraphs with `ChunkOptions.separator`, the same string
`reconstruct_document` joins chunks with.

`metadata.start` / `metadata.end` are character offsets into the source text.
In semantic mode `start` is where the chunk's new (non-overlap) material
begins, so starts increase with chunk ids.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

PARAGRAPH_BREAK = "\n\n"

HEADING_PATTERNS = (
    re.compile(r"^PART [IVX]+\s*$", re.IGNORECASE),
    re.compile(r"^ITEM\s+\d+[A-Z]?\.\s+[A-Z]", re.IGNORECASE),
    re.compile(r"^[A-Z][A-Z\s]+\s*$"),
)
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


class ChunkingConfigError(ValueError):
    """Invalid chunking configuration."""


@dataclass
class ChunkOptions:
    max_chunk_size: int = 4000
    chunk_overlap: int = 500
    respect_semantic_boundaries: bool = True
    separator: str = PARAGRAPH_BREAK

    def validate(self) -> None:
        if self.max_chunk_size <= 0:
            raise ChunkingConfigError(f"max_chunk_size must be positive, got {self.max_chunk_size}")
        if self.chunk_overlap < 0:
            raise ChunkingConfigError(f"chunk_overlap must not be negative, got {self.chunk_overlap}")
        if self.chunk_overlap >= self.max_chunk_size:
            raise ChunkingConfigError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than max_chunk_size ({self.max_chunk_size})"
            )


@dataclass
class ChunkMetadata:
    start: int
    end: int
    char_count: int
    headings: List[str] = field(default_factory=list)


@dataclass
class DocumentChunk:
    id: int
    content: str
    metadata: ChunkMetadata

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentChunk":
        return cls(id=data["id"], content=data["content"], metadata=ChunkMetadata(**data["metadata"]))


@dataclass
class ChunkingResult:
    chunks: List[DocumentChunk]
    total_chunks: int
    original_length: int
    chunk_lengths: List[int]
    average_chunk_size: int
    options: ChunkOptions


@dataclass
class _Paragraph:
    text: str
    start: int
    end: int
    heading: bool


def is_heading(paragraph: str) -> bool:
    text = paragraph.strip()
    return any(p.match(text) for p in HEADING_PATTERNS)


def split_paragraphs(text: str) -> List[_Paragraph]:
    """Non-blank paragraphs with their source offsets."""
    out: List[_Paragraph] = []
    pos = 0
    for m in _PARAGRAPH_SPLIT.finditer(text):
        piece = text[pos:m.start()]
        if piece.strip():
            out.append(_Paragraph(piece, pos, m.start(), is_heading(piece)))
        pos = m.end()
    piece = text[pos:]
    if piece.strip():
        out.append(_Paragraph(piece, pos, len(text), is_heading(piece)))
    return out


def _joined_length(paragraphs: List[_Paragraph], idxs: Iterable[int], separator: str) -> int:
    idxs = list(idxs)
    if not idxs:
        return 0
    return sum(len(paragraphs[i].text) for i in idxs) + len(separator) * (len(idxs) - 1)


def _overlap_seed(
    paragraphs: List[_Paragraph],
    i: int,
    lower_bound: int,
    context_heading: Optional[int],
    options: ChunkOptions,
) -> List[int]:
    """
    Paragraph indexes that open the chunk started by paragraph `i`.

    Body paragraphs are taken walking back from `i - 1` until a heading, the
    previous chunk's start, or the overlap budget is reached. The heading in
    scope goes first. Seed paragraphs are dropped oldest-first (heading last)
    until the seed plus paragraph `i` fits in `max_chunk_size`.
    """
    overlap: List[int] = []
    size = 0
    j = i - 1
    while j >= lower_bound and not paragraphs[j].heading:
        extra = len(paragraphs[j].text) + (len(options.separator) if overlap else 0)
        if size + extra > options.chunk_overlap:
            break
        overlap.insert(0, j)
        size += extra
        j -= 1

    seed = overlap
    if context_heading is not None:
        seed = [context_heading] + overlap

    while seed and _joined_length(paragraphs, seed + [i], options.separator) > options.max_chunk_size:
        if seed[0] == context_heading and len(seed) > 1:
            seed.pop(1)
        else:
            seed.pop(0)
    return seed


def _chunk_semantic(text: str, options: ChunkOptions) -> List[DocumentChunk]:
    paragraphs = split_paragraphs(text)
    chunks: List[DocumentChunk] = []

    current: List[int] = []
    seed_count = 0
    current_len = 0
    headings: List[str] = []
    last_heading: Optional[int] = None

    def close() -> None:
        fresh = current[seed_count:]
        content = options.separator.join(paragraphs[k].text for k in current)
        chunks.append(
            DocumentChunk(
                id=len(chunks),
                content=content,
                metadata=ChunkMetadata(
                    start=paragraphs[fresh[0]].start,
                    end=paragraphs[current[-1]].end,
                    char_count=len(content),
                    headings=list(headings),
                ),
            )
        )

    for i, para in enumerate(paragraphs):
        candidate_len = len(para.text) if not current else current_len + len(options.separator) + len(para.text)
        if current and candidate_len > options.max_chunk_size:
            lower_bound = current[seed_count]
            close()
            if para.heading:
                seed: List[int] = []
                headings = []
            else:
                seed = _overlap_seed(paragraphs, i, lower_bound, last_heading, options)
                headings = [paragraphs[last_heading].text.strip()] if last_heading is not None else []
            current = seed + [i]
            seed_count = len(seed)
            current_len = _joined_length(paragraphs, current, options.separator)
        else:
            current.append(i)
            current_len = candidate_len

        if para.heading:
            headings.append(para.text.strip())
            last_heading = i

    if current:
        close()
    return chunks


def _chunk_sliding(text: str, options: ChunkOptions) -> List[DocumentChunk]:
    step = options.max_chunk_size - options.chunk_overlap
    chunks: List[DocumentChunk] = []
    start = 0
    while start < len(text):
        end = min(start + options.max_chunk_size, len(text))
        content = text[start:end]
        chunks.append(
            DocumentChunk(
                id=len(chunks),
                content=content,
                metadata=ChunkMetadata(start=start, end=end, char_count=len(content)),
            )
        )
        if end >= len(text):
            break
        start += step
    return chunks


def chunk_text(text: str, options: Optional[ChunkOptions] = None) -> ChunkingResult:
    """Split `text` into chunks. Raises ChunkingConfigError for invalid options."""
    options = options or ChunkOptions()
    options.validate()
    text = text or ""

    if options.respect_semantic_boundaries:
        chunks = _chunk_semantic(text, options)
    else:
        chunks = _chunk_sliding(text, options)

    lengths = [len(c.content) for c in chunks]
    return ChunkingResult(
        chunks=chunks,
        total_chunks=len(chunks),
        original_length=len(text),
        chunk_lengths=lengths,
        average_chunk_size=round(sum(lengths) / len(lengths)) if lengths else 0,
        options=options,
    )


def reconstruct_document(chunks: Iterable[DocumentChunk], options: Optional[ChunkOptions] = None) -> str:
    """
    Rejoin chunks in id order with the configured separator.

    Overlap is not removed, so the result is a readable superset of the
    original text rather than an exact copy.
    """
    separator = (options or ChunkOptions()).separator
    ordered = sorted(chunks, key=lambda c: c.id)
    return separator.join(c.content for c in ordered)
