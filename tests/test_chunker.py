import pytest

from filing_pipeline.parsers.chunker import (
    ChunkOptions,
    ChunkingConfigError,
    DocumentChunk,
    chunk_text,
    is_heading,
    reconstruct_document,
    split_paragraphs,
)


def _filing_text(sections=6, paragraphs=5):
    parts = []
    for s in range(1, sections + 1):
        parts.append(f"ITEM {s}. SECTION NUMBER {s}")
        for p in range(1, paragraphs + 1):
            parts.append(
                f"Paragraph {p} of section {s}. "
                + "The company reported results consistent with prior guidance. " * 4
            )
    return "\n\n".join(parts)


def test_split_paragraphs_tracks_offsets_and_headings():
    text = "PART I\n\nItem 1. Business overview\n\n  \n\nBody text here."
    paragraphs = split_paragraphs(text)

    assert [p.text for p in paragraphs] == ["PART I", "Item 1. Business overview", "Body text here."]
    assert [p.heading for p in paragraphs] == [True, True, False]
    for p in paragraphs:
        assert text[p.start:p.end] == p.text


def test_heading_patterns():
    assert is_heading("PART II")
    assert is_heading("Item 7. Management's Discussion")
    assert is_heading("RISK FACTORS")
    assert not is_heading("Revenue grew 12% year over year.")


def test_short_text_is_one_chunk():
    result = chunk_text("One paragraph.\n\nTwo paragraph.", ChunkOptions(max_chunk_size=1000, chunk_overlap=100))

    assert result.total_chunks == 1
    assert result.chunks[0].content == "One paragraph.\n\nTwo paragraph."
    assert result.chunks[0].metadata.start == 0
    assert result.chunks[0].metadata.end == result.original_length


def test_semantic_chunks_respect_size_and_order():
    text = _filing_text()
    options = ChunkOptions(max_chunk_size=1000, chunk_overlap=300)
    result = chunk_text(text, options)

    assert result.total_chunks > 3
    assert [c.id for c in result.chunks] == list(range(result.total_chunks))
    assert all(len(c.content) <= options.max_chunk_size for c in result.chunks)
    starts = [c.metadata.start for c in result.chunks]
    assert starts == sorted(starts)
    assert len(set(starts)) == len(starts)
    assert result.chunk_lengths == [len(c.content) for c in result.chunks]
    assert result.original_length == len(text)


def test_semantic_chunks_cover_every_paragraph():
    text = _filing_text()
    result = chunk_text(text, ChunkOptions(max_chunk_size=1000, chunk_overlap=300))
    rebuilt = reconstruct_document(result.chunks)

    for para in split_paragraphs(text):
        assert para.text in rebuilt
    assert len(rebuilt) >= 0.95 * len(text)


def test_every_chunk_opens_with_its_section_heading():
    text = _filing_text()
    result = chunk_text(text, ChunkOptions(max_chunk_size=1000, chunk_overlap=300))

    for chunk in result.chunks:
        first = chunk.content.split("\n\n", 1)[0]
        assert first.startswith("ITEM ")
        assert chunk.metadata.headings[0] == first


def test_oversized_paragraph_is_not_truncated():
    big = "x" * 2500
    result = chunk_text(f"Intro.\n\n{big}\n\nOutro.", ChunkOptions(max_chunk_size=1000, chunk_overlap=100))

    assert any(c.content == big for c in result.chunks)
    assert "Outro." in reconstruct_document(result.chunks)


def test_sliding_window_reconstructs_exactly():
    text = "".join(chr(ord("a") + i % 26) for i in range(5003))
    options = ChunkOptions(max_chunk_size=1000, chunk_overlap=200, respect_semantic_boundaries=False)
    chunks = chunk_text(text, options).chunks

    assert all(len(c.content) <= 1000 for c in chunks)
    assert [c.metadata.start for c in chunks] == list(range(0, 800 * len(chunks), 800))
    rebuilt = chunks[0].content + "".join(c.content[200:] for c in chunks[1:])
    assert rebuilt == text


@pytest.mark.parametrize(
    "options",
    [
        ChunkOptions(max_chunk_size=0, chunk_overlap=0),
        ChunkOptions(max_chunk_size=100, chunk_overlap=-1),
        ChunkOptions(max_chunk_size=100, chunk_overlap=100),
    ],
)
def test_invalid_options_raise(options):
    with pytest.raises(ChunkingConfigError):
        chunk_text("text", options)


def test_empty_text_has_no_chunks():
    result = chunk_text("")
    assert result.total_chunks == 0
    assert result.average_chunk_size == 0


def test_chunk_dict_round_trip():
    chunk = chunk_text(_filing_text(1, 2)).chunks[0]
    assert DocumentChunk.from_dict(chunk.to_dict()) == chunk


def test_configured_separator_joins_paragraphs_and_chunks():
    separator = "\n<SEP>\n"
    text = "\n\n".join(f"Paragraph {i}. " + "Segment revenue was flat. " * 3 for i in range(20))
    options = ChunkOptions(max_chunk_size=300, chunk_overlap=50, separator=separator)
    chunks = chunk_text(text, options).chunks

    assert len(chunks) > 1
    assert all(len(c.content) <= 300 for c in chunks)
    assert any(separator in c.content for c in chunks)
    assert "\n\n" not in "".join(c.content for c in chunks)

    rebuilt = reconstruct_document(chunks, options)
    assert rebuilt.count(separator) >= len(chunks) - 1
    for para in split_paragraphs(text):
        assert para.text in rebuilt
