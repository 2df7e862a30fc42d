"""
Structural extraction for HTML filing documents.

Produces an ordered list of typed sections:
- TITLE: the document <title>
- SECTION: a heading plus the prose that follows it, nested by heading level
- TABLE: caption (or nearest heading), header row and data rows
- LIST: list items, ordered or not

Tables and lists are emitted at the top level in document order. When their
extraction is turned off their text stays in the surrounding section prose.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Union

from bs4 import BeautifulSoup
from bs4.element import Comment, Declaration, Doctype, NavigableString, ProcessingInstruction, Tag

logger = logging.getLogger(__name__)

HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
BLOCK_TAGS = HEADING_TAGS + [
    "p", "div", "section", "article", "main", "table", "ul", "ol",
    "blockquote", "center", "header", "footer", "pre", "form",
]
NOISE_TAGS = ["script", "style", "meta", "link", "noscript", "head"]
BOILERPLATE_SELECTORS = (
    ".edgar-header",
    ".edgar-footer",
    ".filer-info",
    ".nav",
    ".navigation",
    ".menu",
    ".header",
    ".footer",
)
_HIDDEN_STYLE = re.compile(r"display\s*:\s*none", re.IGNORECASE)
_WS = re.compile(r"\s+")
_SKIPPED_STRINGS = (Comment, Declaration, Doctype, ProcessingInstruction)


class SectionType(enum.Enum):
    TITLE = "title"
    SECTION = "section"
    TABLE = "table"
    LIST = "list"


@dataclass
class FilingSection:
    type: SectionType
    title: Optional[str] = None
    content: str = ""
    level: int = 0
    children: List["FilingSection"] = field(default_factory=list)
    # TABLE
    header: List[str] = field(default_factory=list)
    rows: List[List[str]] = field(default_factory=list)
    # LIST
    items: List[str] = field(default_factory=list)
    ordered: bool = False

    def add_paragraph(self, text: str) -> None:
        self.content = f"{self.content}\n\n{text}" if self.content else text

    def to_dict(self) -> dict:
        out = {"type": self.type.value, "title": self.title, "content": self.content}
        if self.type == SectionType.SECTION:
            out["level"] = self.level
            out["children"] = [c.to_dict() for c in self.children]
        elif self.type == SectionType.TABLE:
            out["header"] = self.header
            out["rows"] = self.rows
        elif self.type == SectionType.LIST:
            out["items"] = self.items
            out["ordered"] = self.ordered
        return out


@dataclass
class HtmlParserOptions:
    extract_sections: bool = True
    extract_tables: bool = True
    extract_lists: bool = True
    remove_boilerplate: bool = True
    preserve_whitespace: bool = False


@dataclass
class ParsedHtml:
    title: Optional[str]
    sections: List[FilingSection]

    @property
    def text(self) -> str:
        return sections_to_text(self.sections)


def render_table(header: List[str], rows: List[List[str]]) -> str:
    lines = [header] + rows if header else rows
    return "\n".join(" | ".join(cells) for cells in lines)


def render_list(items: List[str], ordered: bool) -> str:
    if ordered:
        return "\n".join(f"{i}. {item}" for i, item in enumerate(items, start=1))
    return "\n".join(f"• {item}" for item in items)


class _SectionBuilder:
    """Walks the body in document order and assembles sections."""

    def __init__(self, options: HtmlParserOptions) -> None:
        self.options = options
        self.output: List[FilingSection] = []
        self._open: List[FilingSection] = []
        self._preamble: Optional[FilingSection] = None
        self._last_heading: Optional[str] = None

    def clean(self, text: str) -> str:
        if self.options.preserve_whitespace:
            return text.replace("\xa0", " ").strip()
        return _WS.sub(" ", text).strip()

    # -- tree walk -------------------------------------------------------

    def walk(self, node: Tag) -> None:
        inline: List[str] = []
        for child in node.children:
            if isinstance(child, _SKIPPED_STRINGS):
                continue
            if isinstance(child, NavigableString):
                inline.append(str(child))
                continue
            if not isinstance(child, Tag):
                continue
            if not self._is_block(child):
                inline.append(child.get_text(" "))
                continue
            self._flush(inline)
            inline = []
            self._handle_block(child)
        self._flush(inline)

    def _is_block(self, tag: Tag) -> bool:
        return tag.name in BLOCK_TAGS or tag.find(BLOCK_TAGS) is not None

    def _flush(self, pieces: List[str]) -> None:
        if pieces:
            self.add_text(" ".join(pieces))

    def _handle_block(self, tag: Tag) -> None:
        if tag.name in HEADING_TAGS:
            self.open_section(int(tag.name[1]), self.clean(tag.get_text(" ")))
        elif tag.name == "table":
            self.add_table(tag)
        elif tag.name in ("ul", "ol"):
            self.add_list(tag)
        elif tag.find(BLOCK_TAGS) is None:
            self.add_text(tag.get_text(" "))
        else:
            self.walk(tag)

    # -- section assembly ------------------------------------------------

    def open_section(self, level: int, title: str) -> None:
        if not title:
            return
        self._last_heading = title
        section = FilingSection(type=SectionType.SECTION, title=title, level=level)
        while self._open and self._open[-1].level >= level:
            self._open.pop()
        if self._open:
            self._open[-1].children.append(section)
        elif self.options.extract_sections:
            self.output.append(section)
        self._open.append(section)

    def add_text(self, text: str) -> None:
        text = self.clean(text)
        if not text:
            return
        self._target().add_paragraph(text)

    def _target(self) -> FilingSection:
        if self._open:
            return self._open[-1]
        if self._preamble is None:
            # Prose before the first heading.
            self._preamble = FilingSection(type=SectionType.SECTION, level=0)
            if self.options.extract_sections:
                self.output.append(self._preamble)
        return self._preamble

    def add_table(self, table: Tag) -> None:
        grid: List[List[str]] = []
        for tr in table.find_all("tr"):
            cells = [self.clean(c.get_text(" ")) for c in tr.find_all(["th", "td"], recursive=False)]
            cells = [c for c in cells if c]
            if cells:
                grid.append(cells)
        if not grid:
            return
        header, rows = grid[0], grid[1:]
        rendered = render_table(header, rows)
        if not self.options.extract_tables:
            self.add_text_block(rendered)
            return
        caption = table.find("caption")
        title = self.clean(caption.get_text(" ")) if caption is not None else None
        self.output.append(
            FilingSection(
                type=SectionType.TABLE,
                title=title or self._last_heading,
                content=rendered,
                header=header,
                rows=rows,
            )
        )

    def add_list(self, tag: Tag) -> None:
        items = [self.clean(li.get_text(" ")) for li in tag.find_all("li", recursive=False)]
        items = [i for i in items if i]
        if not items:
            return
        ordered = tag.name == "ol"
        rendered = render_list(items, ordered)
        if not self.options.extract_lists:
            self.add_text_block(rendered)
            return
        self.output.append(
            FilingSection(
                type=SectionType.LIST,
                title=self._last_heading,
                content=rendered,
                items=items,
                ordered=ordered,
            )
        )

    def add_text_block(self, text: str) -> None:
        """Add pre-rendered multi-line text without collapsing its line breaks."""
        self._target().add_paragraph(text)


def parse_html(html: Union[str, bytes], options: Optional[HtmlParserOptions] = None) -> ParsedHtml:
    """Extract the typed section list from an HTML document."""
    options = options or HtmlParserOptions()
    soup = BeautifulSoup(html, "lxml")

    title_el = soup.find("title")
    title = _WS.sub(" ", title_el.get_text()).strip() if title_el is not None else None

    for el in soup(NOISE_TAGS):
        el.decompose()
    if options.remove_boilerplate:
        for selector in BOILERPLATE_SELECTORS:
            for el in soup.select(selector):
                el.decompose()
        # Hidden blocks such as the inline XBRL header.
        for el in soup.find_all(style=_HIDDEN_STYLE):
            el.decompose()

    builder = _SectionBuilder(options)
    root = soup.body or soup
    builder.walk(root)

    sections: List[FilingSection] = []
    if title:
        sections.append(FilingSection(type=SectionType.TITLE, content=title))
    sections.extend(builder.output)
    logger.debug(
        "html_parsed",
        extra={"title": title, "section_count": len(sections)},
    )
    return ParsedHtml(title=title, sections=sections)


def _render_section(section: FilingSection, parts: List[str]) -> None:
    if section.type == SectionType.SECTION:
        if section.title:
            parts.append(section.title)
        if section.content:
            parts.append(section.content)
        for child in section.children:
            _render_section(child, parts)
    elif section.content:
        parts.append(section.content)


def section_text(section: FilingSection) -> str:
    """Body text of one section and its subsections, without its own heading."""
    parts: List[str] = []
    if section.type == SectionType.SECTION:
        if section.content:
            parts.append(section.content)
        for child in section.children:
            _render_section(child, parts)
    else:
        _render_section(section, parts)
    return "\n\n".join(parts)


def sections_to_text(sections: List[FilingSection]) -> str:
    """Concatenate sections into paragraph-separated text for chunking."""
    parts: List[str] = []
    for section in sections:
        _render_section(section, parts)
    return "\n\n".join(parts)
