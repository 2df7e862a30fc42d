from filing_pipeline.parsers.document import parse_filing_document
from filing_pipeline.parsers.filing_types import (
    FilingTypeConfig,
    FilingTypeRegistry,
    extract_important_sections,
    filing_type_registry,
    find_section_content,
)
from filing_pipeline.parsers.html_parser import HtmlParserOptions, parse_html
from filing_pipeline.services.summarizer import ExtractiveSummarizer

ANNUAL_REPORT = """<html><head><title>Annual Report</title></head><body>
<h1>Item 1. Business</h1><p>We build batteries for grid storage.</p>
<h1>Item 1A. Risk Factors</h1><p>Supply of lithium may tighten. Prices may rise.</p>
<h1>Item 7. Management’s Discussion and Analysis of Financial Condition</h1><p>Revenue grew 12%.</p>
<h2>Liquidity</h2><p>Cash was ample.</p>
</body></html>"""

FORM_4 = """<html><head><title>Statement of Changes in Beneficial Ownership</title></head><body>
<h2>Table II - Derivative Securities</h2><p>Options exercised: 10,000.</p>
<h2>Table I - Non-Derivative Securities</h2><p>Common stock sold: 5,000 shares.</p>
</body></html>"""


def test_registry_lookups():
    assert filing_type_registry.is_supported("10-K")
    assert filing_type_registry.get("4") is filing_type_registry.get("Form4")
    assert filing_type_registry.get("form 4") is filing_type_registry.get("Form4")
    assert not filing_type_registry.is_supported("S-1")
    assert not filing_type_registry.is_supported(None)

    assert filing_type_registry.get_important_sections("10-Q") == [
        "Management's Discussion and Analysis",
        "Risk Factors",
        "Financial Statements",
        "Notes to Financial Statements",
        "Controls and Procedures",
        "Quantitative and Qualitative Disclosures about Market Risk",
    ]
    assert filing_type_registry.get_important_sections("8-K")[0] == "Item 1.01"
    assert filing_type_registry.get_important_sections("S-1") == []
    assert filing_type_registry.get("8-K").max_section_length == 50000

    assert filing_type_registry.all_types() == ["10-K", "10-Q", "8-K", "Form4", "4"]
    descriptions = filing_type_registry.descriptions()
    assert descriptions["4"] == descriptions["Form4"]
    assert descriptions["10-K"].startswith("Annual report")
    assert filing_type_registry.parser_options("S-1") == HtmlParserOptions()


def test_heading_match_returns_section_body_with_subsections():
    sections = parse_html(ANNUAL_REPORT).sections

    content = find_section_content(sections, "Management's Discussion and Analysis")

    assert content == "Revenue grew 12%.\n\nLiquidity\n\nCash was ample."
    assert find_section_content(sections, "risk factors").startswith("Supply of lithium")
    assert find_section_content(sections, "Executive Compensation") is None


def test_heading_match_respects_word_boundaries():
    sections = parse_html(FORM_4).sections

    assert find_section_content(sections, "Table I") == "Common stock sold: 5,000 shares."
    assert find_section_content(sections, "Table II") == "Options exercised: 10,000."


def test_prose_mention_returns_text_from_the_mention():
    html = (
        "<html><body><p>Cover page. Item 2.01 Completion of Acquisition. "
        "The company closed the purchase of Acme Corp.</p></body></html>"
    )
    sections = parse_html(html).sections

    content = find_section_content(sections, "Item 2.01")

    assert content.startswith("Item 2.01 Completion of Acquisition.")
    assert "Cover page" not in content
    assert find_section_content(sections, "Item 2.0") is None


def test_important_sections_follow_registry_order_and_length_cap():
    sections = parse_html(ANNUAL_REPORT).sections

    found = extract_important_sections(sections, "10-K")
    assert list(found) == ["Management's Discussion and Analysis", "Risk Factors", "Business"]
    assert found["Business"] == "We build batteries for grid storage."

    registry = FilingTypeRegistry()
    registry.register(FilingTypeConfig(form_type="10-K", important_sections=("Business",), max_section_length=9))
    assert extract_important_sections(sections, "10-K", registry) == {"Business": "We build "}
    assert extract_important_sections(sections, "S-1") == {}


def test_parsed_document_carries_important_sections():
    parsed = parse_filing_document(ANNUAL_REPORT)

    assert parsed.filing_type == "10-K"
    assert list(parsed.important_sections) == ["Management's Discussion and Analysis", "Risk Factors", "Business"]

    # An explicit form type wins over detection.
    quarterly = parse_filing_document(ANNUAL_REPORT, form_type="10-Q")
    assert quarterly.filing_type == "10-Q"
    assert list(quarterly.important_sections) == ["Management's Discussion and Analysis", "Risk Factors"]


def test_form_parser_options_apply_unless_overridden():
    registry = FilingTypeRegistry()
    registry.register(
        FilingTypeConfig(
            form_type="10-K",
            important_sections=(),
            parser_options=HtmlParserOptions(extract_tables=False),
        )
    )
    html = "<html><head><title>Form 10-K</title></head><body><table><tr><td>Revenue</td><td>10</td></tr></table></body></html>"

    from_registry = parse_filing_document(html, registry=registry)
    assert [s.type.value for s in from_registry.sections] == ["title", "section"]

    overridden = parse_filing_document(html, html_options=HtmlParserOptions(), registry=registry)
    assert "table" in [s.type.value for s in overridden.sections]


def test_summary_leads_with_important_sections():
    parsed = parse_filing_document(ANNUAL_REPORT)

    result = ExtractiveSummarizer().summarize(
        parsed.text,
        parsed.chunks,
        {"filing_type": "10-K", "company_name": "Volt Corp"},
        parsed.important_sections,
    )

    lines = result.text.split("\n")
    assert lines[0] == "10-K filed by Volt Corp."
    assert lines[1] == "- Management's Discussion and Analysis: Revenue grew 12%."
    assert lines[2] == "- Risk Factors: Supply of lithium may tighten."
    assert lines[3] == "- Business: We build batteries for grid storage."
    # Sentences already quoted are not repeated under their own headings.
    assert result.text.count("Supply of lithium may tighten.") == 1
    assert lines[4] == "- Annual Report"
    assert len(lines) == 5
    assert result.data["importantSections"] == list(parsed.important_sections)
