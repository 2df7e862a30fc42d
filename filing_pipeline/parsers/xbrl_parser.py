"""
XBRL instance parsing.

Extracts contexts, units and facts from a standalone XBRL instance, reads
the dei cover-page facts, and picks out a small set of standard financial
metrics. `xbrl_to_sections` turns the result into the same section types the
HTML parser produces so XBRL filings share the text and chunking path.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from bs4 import BeautifulSoup

from filing_pipeline.parsers.html_parser import FilingSection, SectionType, render_table

logger = logging.getLogger(__name__)

_WS = re.compile(r"\s+")

# Metric name -> candidate concept names, most specific first.
STANDARD_FINANCIAL_METRICS: Dict[str, List[str]] = {
    "Revenue": [
        "Revenues",
        "RevenueFromContractWithCustomerExcludingAssessedTax",
        "SalesRevenueNet",
        "Revenue",
    ],
    "NetIncome": ["NetIncomeLoss", "ProfitLoss", "NetIncome"],
    "TotalAssets": ["Assets"],
    "TotalLiabilities": ["Liabilities"],
    "EPS": ["EarningsPerShareBasic", "EarningsPerShareDiluted", "EarningsPerShare"],
    "OperatingIncome": ["OperatingIncomeLoss", "OperatingIncome"],
    "CashAndEquivalents": [
        "CashAndCashEquivalentsAtCarryingValue",
        "CashCashEquivalentsRestrictedCashAndRestrictedCashEquivalents",
        "CashAndCashEquivalents",
    ],
}

FACTS_TABLE_HEADER = ["Concept", "Value", "Context", "Unit", "Decimals"]


class XbrlParseError(ValueError):
    """Content is not an XBRL instance."""


@dataclass
class XbrlContext:
    id: str
    entity: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    instant: Optional[str] = None

    @property
    def period_label(self) -> str:
        if self.instant:
            return f"as of {self.instant}"
        if self.start_date or self.end_date:
            return f"{self.start_date or '?'} to {self.end_date or '?'}"
        return ""


@dataclass
class XbrlUnit:
    id: str
    measure: str


@dataclass
class XbrlFact:
    concept: str
    value: str
    context_ref: Optional[str] = None
    unit_ref: Optional[str] = None
    decimals: Optional[str] = None

    @property
    def local_name(self) -> str:
        return self.concept.split(":", 1)[-1]


@dataclass
class XbrlDocument:
    document_type: Optional[str] = None
    registrant_name: Optional[str] = None
    period_end_date: Optional[str] = None
    fiscal_year: Optional[str] = None
    fiscal_period: Optional[str] = None
    contexts: Dict[str, XbrlContext] = field(default_factory=dict)
    units: Dict[str, XbrlUnit] = field(default_factory=dict)
    facts: List[XbrlFact] = field(default_factory=list)

    def fact(self, local_name: str) -> Optional[XbrlFact]:
        for f in self.facts:
            if f.local_name == local_name:
                return f
        return None


def _text(node, name: str) -> Optional[str]:
    child = node.find(name)
    if child is None:
        return None
    value = child.get_text().strip()
    return value or None


def _concept_name(tag) -> str:
    return f"{tag.prefix}:{tag.name}" if tag.prefix else tag.name


def _unit_measure(unit) -> str:
    divide = unit.find("divide")
    if divide is not None:
        num = _text(divide.find("unitNumerator") or divide, "measure") or "?"
        den = _text(divide.find("unitDenominator") or divide, "measure") or "?"
        return f"{num}/{den}"
    measures = [m.get_text().strip() for m in unit.find_all("measure")]
    return "*".join(m for m in measures if m)


def parse_xbrl(content: Union[str, bytes]) -> XbrlDocument:
    soup = BeautifulSoup(content, "xml")
    root = soup.find("xbrl")
    if root is None:
        raise XbrlParseError("No <xbrl> root element found")

    doc = XbrlDocument()
    for ctx in root.find_all("context"):
        ctx_id = ctx.get("id")
        if not ctx_id:
            continue
        doc.contexts[ctx_id] = XbrlContext(
            id=ctx_id,
            entity=_text(ctx, "identifier"),
            start_date=_text(ctx, "startDate"),
            end_date=_text(ctx, "endDate"),
            instant=_text(ctx, "instant"),
        )

    for unit in root.find_all("unit"):
        unit_id = unit.get("id")
        if unit_id:
            doc.units[unit_id] = XbrlUnit(id=unit_id, measure=_unit_measure(unit))

    for tag in root.find_all(attrs={"contextRef": True}):
        doc.facts.append(
            XbrlFact(
                concept=_concept_name(tag),
                value=_WS.sub(" ", tag.get_text()).strip(),
                context_ref=tag.get("contextRef"),
                unit_ref=tag.get("unitRef"),
                decimals=tag.get("decimals"),
            )
        )

    dei = {f.local_name: f.value for f in doc.facts if f.concept.startswith("dei:")}
    doc.document_type = dei.get("DocumentType")
    doc.registrant_name = dei.get("EntityRegistrantName")
    doc.period_end_date = dei.get("DocumentPeriodEndDate")
    doc.fiscal_year = dei.get("DocumentFiscalYearFocus")
    doc.fiscal_period = dei.get("DocumentFiscalPeriodFocus")

    logger.debug(
        "xbrl_parsed",
        extra={"contexts": len(doc.contexts), "units": len(doc.units), "facts": len(doc.facts)},
    )
    return doc


def _is_numeric(value: str) -> bool:
    try:
        float(value.replace(",", ""))
    except ValueError:
        return False
    return True


def extract_financial_metrics(doc: XbrlDocument) -> Dict[str, XbrlFact]:
    """
    Map each standard metric to the first numeric fact that matches it.

    Exact concept names win over case-insensitive substring matches.
    """
    numeric = [f for f in doc.facts if _is_numeric(f.value)]
    found: Dict[str, XbrlFact] = {}
    for metric, candidates in STANDARD_FINANCIAL_METRICS.items():
        match = None
        for candidate in candidates:
            match = next((f for f in numeric if f.local_name == candidate), None)
            if match:
                break
        if match is None:
            for candidate in candidates:
                needle = candidate.lower()
                match = next((f for f in numeric if needle in f.local_name.lower()), None)
                if match:
                    break
        if match is not None:
            found[metric] = match
    return found


def xbrl_to_sections(doc: XbrlDocument) -> List[FilingSection]:
    sections: List[FilingSection] = []
    title = " ".join(p for p in (doc.registrant_name, doc.document_type) if p)
    if title:
        sections.append(FilingSection(type=SectionType.TITLE, content=title))

    metadata = [
        ("Document Type", doc.document_type),
        ("Registrant", doc.registrant_name),
        ("Period End Date", doc.period_end_date),
        ("Fiscal Year", doc.fiscal_year),
        ("Fiscal Period", doc.fiscal_period),
    ]
    lines = [f"{label}: {value}" for label, value in metadata if value]
    if lines:
        sections.append(FilingSection(type=SectionType.SECTION, title="Metadata", content="\n".join(lines), level=1))

    for metric, fact in extract_financial_metrics(doc).items():
        unit = doc.units.get(fact.unit_ref or "")
        ctx = doc.contexts.get(fact.context_ref or "")
        parts = [f"{fact.concept}: {fact.value}"]
        if unit is not None and unit.measure:
            parts.append(f"({unit.measure})")
        if ctx is not None and ctx.period_label:
            parts.append(ctx.period_label)
        sections.append(
            FilingSection(
                type=SectionType.SECTION,
                title=f"Financial Metric: {metric}",
                content=" ".join(parts),
                level=2,
            )
        )

    rows = [
        [f.concept, f.value, f.context_ref or "", f.unit_ref or "", f.decimals or ""]
        for f in doc.facts
        if f.value
    ]
    if rows:
        sections.append(
            FilingSection(
                type=SectionType.TABLE,
                title="XBRL Facts",
                content=render_table(FACTS_TABLE_HEADER, rows),
                header=list(FACTS_TABLE_HEADER),
                rows=rows,
            )
        )
    return sections
