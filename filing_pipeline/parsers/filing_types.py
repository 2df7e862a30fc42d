"""
Per-form parsing configuration.

Each supported form names the sections worth pulling out on their own
(`important_sections`, handed to the summarizer ahead of the full text), a
cap on how much of each section is kept, and the HTML parser options used
for documents of that form. Form 4 is registered as both "Form4" and "4".
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Pattern, Tuple

from filing_pipeline.parsers.html_parser import FilingSection, HtmlParserOptions, section_text

logger = logging.getLogger(__name__)

_CURLY_APOSTROPHES = str.maketrans({"’": "'", "‘": "'"})


@dataclass(frozen=True)
class FilingTypeConfig:
    form_type: str
    important_sections: Tuple[str, ...]
    description: str = ""
    max_section_length: Optional[int] = None
    parser_options: HtmlParserOptions = field(default_factory=HtmlParserOptions)


def _key(form_type: str) -> str:
    return re.sub(r"\s+", "", form_type or "").upper()


class FilingTypeRegistry:
    def __init__(self) -> None:
        self._types: Dict[str, FilingTypeConfig] = {}
        self._names: List[str] = []

    def register(self, config: FilingTypeConfig, *aliases: str) -> FilingTypeConfig:
        for name in (config.form_type,) + aliases:
            self._types[_key(name)] = config
            self._names.append(name)
        return config

    def get(self, form_type: Optional[str]) -> Optional[FilingTypeConfig]:
        if not form_type:
            return None
        return self._types.get(_key(form_type))

    def is_supported(self, form_type: Optional[str]) -> bool:
        return self.get(form_type) is not None

    def get_important_sections(self, form_type: Optional[str]) -> List[str]:
        config = self.get(form_type)
        return list(config.important_sections) if config else []

    def parser_options(self, form_type: Optional[str]) -> HtmlParserOptions:
        config = self.get(form_type)
        return config.parser_options if config else HtmlParserOptions()

    def all_types(self) -> List[str]:
        return list(self._names)

    def descriptions(self) -> Dict[str, str]:
        return {name: self._types[_key(name)].description or f"{name} SEC Filing" for name in self._names}


filing_type_registry = FilingTypeRegistry()

_TEN_K_SECTIONS = (
    "Management's Discussion and Analysis",
    "Risk Factors",
    "Financial Statements",
    "Notes to Financial Statements",
    "Controls and Procedures",
    "Quantitative and Qualitative Disclosures about Market Risk",
    "Executive Compensation",
    "Business",
)

filing_type_registry.register(
    FilingTypeConfig(
        form_type="10-K",
        important_sections=_TEN_K_SECTIONS,
        description="Annual report providing a comprehensive overview of a company's business and financial condition",
        max_section_length=100000,
    )
)
filing_type_registry.register(
    FilingTypeConfig(
        form_type="10-Q",
        important_sections=_TEN_K_SECTIONS[:6],
        description="Quarterly report providing ongoing view of a company's financial position",
        max_section_length=75000,
    )
)
filing_type_registry.register(
    FilingTypeConfig(
        form_type="8-K",
        important_sections=("Item 1.01", "Item 2.01", "Item 5.02", "Item 7.01", "Item 8.01", "Item 9.01"),
        description="Current report disclosing material events that shareholders should know about",
        max_section_length=50000,
    )
)
filing_type_registry.register(
    FilingTypeConfig(
        form_type="Form4",
        important_sections=("Table I", "Table II", "Reporting Owner", "Transactions"),
        description="Statement of changes in beneficial ownership of securities by insiders",
        max_section_length=25000,
    ),
    "4",
)


# ---------------------------------------------------------------------------
# Section lookup
# ---------------------------------------------------------------------------


def _name_pattern(name: str, ignore_case: bool) -> Pattern[str]:
    # "Table I" must not match inside "Table II".
    body = r"\s+".join(re.escape(word) for word in name.translate(_CURLY_APOSTROPHES).split())
    return re.compile(rf"(?<!\w){body}(?!\w)", re.IGNORECASE if ignore_case else 0)


def _walk(sections: List[FilingSection]) -> Iterator[FilingSection]:
    for section in sections:
        yield section
        yield from _walk(section.children)


def find_section_content(sections: List[FilingSection], name: str) -> Optional[str]:
    """
    Text of the section called `name`.

    A heading containing the name wins (case-insensitive, anywhere in the
    tree). Otherwise the first prose mention of the name is taken, and the
    section's text from that point on is returned.
    """
    by_title = _name_pattern(name, ignore_case=True)
    for section in _walk(sections):
        if section.title and by_title.search(section.title.translate(_CURLY_APOSTROPHES)):
            return section_text(section)

    in_prose = _name_pattern(name, ignore_case=False)
    for section in _walk(sections):
        # Translation is one character for one, so offsets carry over.
        m = in_prose.search(section.content.translate(_CURLY_APOSTROPHES))
        if m:
            return section.content[m.start():]
    return None


def extract_important_sections(
    sections: List[FilingSection],
    form_type: Optional[str],
    registry: Optional[FilingTypeRegistry] = None,
) -> Dict[str, str]:
    """Important section name -> text for the form, in registry order. Empty for unregistered forms."""
    config = (registry or filing_type_registry).get(form_type)
    if config is None:
        return {}

    found: Dict[str, str] = {}
    for name in config.important_sections:
        content = (find_section_content(sections, name) or "").strip()
        if not content:
            continue
        if config.max_section_length and len(content) > config.max_section_length:
            content = content[: config.max_section_length]
        found[name] = content
    logger.debug("important_sections_found", extra={"form_type": form_type, "sections": list(found)})
    return found
