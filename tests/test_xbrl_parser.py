import pytest

from filing_pipeline.parsers.html_parser import SectionType
from filing_pipeline.parsers.xbrl_parser import (
    XbrlParseError,
    extract_financial_metrics,
    parse_xbrl,
    xbrl_to_sections,
)

XBRL_INSTANCE = """<?xml version="1.0" encoding="UTF-8"?>
<xbrl xmlns="http://www.xbrl.org/2003/instance"
      xmlns:xbrli="http://www.xbrl.org/2003/instance"
      xmlns:iso4217="http://www.xbrl.org/2003/iso4217"
      xmlns:us-gaap="http://fasb.org/us-gaap/2023"
      xmlns:dei="http://xbrl.sec.gov/dei/2023">
  <context id="FY2023">
    <entity><identifier scheme="http://www.sec.gov/CIK">0001318605</identifier></entity>
    <period><startDate>2023-01-01</startDate><endDate>2023-12-31</endDate></period>
  </context>
  <context id="I2023">
    <entity><identifier scheme="http://www.sec.gov/CIK">0001318605</identifier></entity>
    <period><instant>2023-12-31</instant></period>
  </context>
  <unit id="usd"><measure>iso4217:USD</measure></unit>
  <unit id="usdPerShare">
    <divide>
      <unitNumerator><measure>iso4217:USD</measure></unitNumerator>
      <unitDenominator><measure>xbrli:shares</measure></unitDenominator>
    </divide>
  </unit>
  <dei:DocumentType contextRef="FY2023">10-K</dei:DocumentType>
  <dei:EntityRegistrantName contextRef="FY2023">Tesla, Inc.</dei:EntityRegistrantName>
  <dei:DocumentPeriodEndDate contextRef="FY2023">2023-12-31</dei:DocumentPeriodEndDate>
  <dei:DocumentFiscalYearFocus contextRef="FY2023">2023</dei:DocumentFiscalYearFocus>
  <dei:DocumentFiscalPeriodFocus contextRef="FY2023">FY</dei:DocumentFiscalPeriodFocus>
  <us-gaap:RevenueFromContractWithCustomerExcludingAssessedTax contextRef="FY2023" unitRef="usd" decimals="-6">96773000000</us-gaap:RevenueFromContractWithCustomerExcludingAssessedTax>
  <us-gaap:NetIncomeLoss contextRef="FY2023" unitRef="usd" decimals="-6">14997000000</us-gaap:NetIncomeLoss>
  <us-gaap:Assets contextRef="I2023" unitRef="usd" decimals="-6">106618000000</us-gaap:Assets>
  <us-gaap:EarningsPerShareBasic contextRef="FY2023" unitRef="usdPerShare" decimals="2">4.73</us-gaap:EarningsPerShareBasic>
  <us-gaap:LiabilitiesDescription contextRef="FY2023">See note 12.</us-gaap:LiabilitiesDescription>
</xbrl>
"""


def test_parse_contexts_units_and_facts():
    doc = parse_xbrl(XBRL_INSTANCE)

    assert doc.document_type == "10-K"
    assert doc.registrant_name == "Tesla, Inc."
    assert doc.period_end_date == "2023-12-31"
    assert doc.fiscal_year == "2023"
    assert doc.fiscal_period == "FY"

    assert doc.contexts["FY2023"].entity == "0001318605"
    assert doc.contexts["FY2023"].period_label == "2023-01-01 to 2023-12-31"
    assert doc.contexts["I2023"].period_label == "as of 2023-12-31"
    assert doc.units["usd"].measure == "iso4217:USD"
    assert doc.units["usdPerShare"].measure == "iso4217:USD/xbrli:shares"

    assets = doc.fact("Assets")
    assert assets.concept == "us-gaap:Assets"
    assert assets.value == "106618000000"
    assert assets.context_ref == "I2023"
    assert assets.unit_ref == "usd"
    assert assets.decimals == "-6"
    assert len(doc.facts) == 10


def test_standard_metrics_use_numeric_facts_only():
    metrics = extract_financial_metrics(parse_xbrl(XBRL_INSTANCE))

    assert metrics["Revenue"].local_name == "RevenueFromContractWithCustomerExcludingAssessedTax"
    assert metrics["NetIncome"].value == "14997000000"
    assert metrics["TotalAssets"].value == "106618000000"
    assert metrics["EPS"].value == "4.73"
    # The only liabilities fact is text.
    assert "TotalLiabilities" not in metrics
    assert "OperatingIncome" not in metrics


def test_sections_mirror_html_section_types():
    sections = xbrl_to_sections(parse_xbrl(XBRL_INSTANCE))

    assert sections[0].type == SectionType.TITLE
    assert sections[0].content == "Tesla, Inc. 10-K"
    assert sections[1].title == "Metadata"
    assert "Registrant: Tesla, Inc." in sections[1].content

    metric_titles = [s.title for s in sections if s.title and s.title.startswith("Financial Metric:")]
    assert "Financial Metric: Revenue" in metric_titles
    revenue = next(s for s in sections if s.title == "Financial Metric: Revenue")
    assert revenue.content == (
        "us-gaap:RevenueFromContractWithCustomerExcludingAssessedTax: 96773000000 "
        "(iso4217:USD) 2023-01-01 to 2023-12-31"
    )

    facts = sections[-1]
    assert facts.type == SectionType.TABLE
    assert facts.title == "XBRL Facts"
    assert facts.header == ["Concept", "Value", "Context", "Unit", "Decimals"]
    assert ["us-gaap:Assets", "106618000000", "I2023", "usd", "-6"] in facts.rows


def test_non_xbrl_content_raises():
    with pytest.raises(XbrlParseError):
        parse_xbrl("<?xml version='1.0'?><feed></feed>")
