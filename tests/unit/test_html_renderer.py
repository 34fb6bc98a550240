"""
Unit tests for the HTML preview and printable document.
"""

import pytest

from taskmode.html_renderer import (
    paragraph_item_html,
    render_report_html,
    render_sheets_html,
    sheet_anchor,
    style_css,
)
from taskmode.models import ParagraphItem, Style


class TestStyleCss:
    """Tests for style_css."""

    def test_style_properties(self):
        css = style_css(Style.model_validate({"bold": True, "bg": "D9E2F3", "border": "all", "align": "center"}))
        assert "font-weight: 700;" in css
        assert "background: #D9E2F3;" in css
        assert "border: 1px solid #000;" in css
        assert "text-align: center;" in css

    def test_numbers_right_aligned_by_default(self):
        assert "text-align: right;" in style_css(Style(), numeric=True)
        assert style_css(Style()) == ""


class TestRenderSheets:
    """Tests for render_sheets_html."""

    def test_merged_title_and_numbers(self):
        html = render_sheets_html([{
            "sheetName": "BS",
            "rows": [
                {"rowType": "title", "values": ["ABC Ltd"]},
                {"rowType": "header", "values": ["Particulars", "Amount", "Note"]},
                {"values": ["Cash", 5000]},
            ],
        }])
        assert 'colspan="3"' in html
        assert "<th" in html
        assert "5,000" in html
        assert 'id="sheet-BS"' in html

    def test_merge_across_count(self):
        html = render_sheets_html([{"rows": [
            {"values": ["Schedule III"], "style": {"mergeAcross": 2}},
            {"values": ["a", "b", "c", "d"]},
        ]}])
        assert 'colspan="3"' in html

    def test_short_rows_padded(self):
        html = render_sheets_html([{"rows": [{"values": ["a", "b", "c"]}, {"values": ["x"]}]}])
        second_row = html.split("<tr>")[2]
        assert second_row.count("<td") == 3

    def test_text_is_escaped(self):
        html = render_sheets_html([{"sheetName": "X", "rows": [{"values": ["<script>alert(1)</script>"]}]}])
        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    def test_indian_grouping(self):
        html = render_sheets_html([{"rows": [{"values": ["Revenue", 1234567]}]}], grouping="indian")
        assert "12,34,567" in html

    def test_internal_link_points_at_anchor(self):
        html = render_sheets_html([
            {"sheetName": "BS", "rows": [{"values": [{"hyperlink": "#Notes!A1", "display": "Note 1"}]}]},
            {"sheetName": "Notes", "rows": [{"values": ["Details"]}]},
        ])
        assert f'href="#{sheet_anchor("Notes")}"' in html
        assert 'id="sheet-Notes"' in html

    @pytest.mark.parametrize("url", ["https://www.incometax.gov.in", "mailto:ca@example.com"])
    def test_external_link(self, url):
        html = render_sheets_html([{"rows": [{"values": [{"hyperlink": url, "display": "Link"}]}]}])
        assert f'<a href="{url}">Link</a>' in html

    @pytest.mark.parametrize("url", ["javascript:alert(1)", " JavaScript:alert(1)", "data:text/html,x", "vbscript:x"])
    def test_unsafe_link_rendered_as_text(self, url):
        html = render_sheets_html([{"rows": [{"values": [{"hyperlink": url, "display": "click"}]}]}])
        assert "<a " not in html
        assert "click" in html

    def test_paragraph_sheet(self):
        html = render_sheets_html([{
            "sheetName": "Memo",
            "sheetType": "paragraph",
            "orientation": "landscape",
            "content": [
                {"type": "heading", "text": "Summary"},
                {"type": "bullet_list", "items": ["First", "Second"]},
            ],
        }])
        assert "<h3" in html and "Summary" in html
        assert "<li>First</li>" in html
        assert "<table" not in html
        assert 'class="landscape"' in html

    def test_unknown_sheet_type_renders_table(self):
        html = render_sheets_html([{"sheetType": "mystery", "rows": [{"values": [1, 2]}]}])
        assert "<table" in html

    def test_empty_rows(self):
        html = render_sheets_html([{"rows": [{"values": ["a", "b"]}, {"rowType": "empty", "values": []}]}])
        assert "&nbsp;" in html


class TestParagraphItems:
    """Tests for paragraph_item_html."""

    @pytest.mark.parametrize("item,fragment", [
        ({"type": "subheading", "text": "Scope"}, "<h4>Scope</h4>"),
        ({"type": "numbered_list", "items": ["a"]}, "<ol><li>a</li></ol>"),
        ({"type": "quote", "text": "q"}, "<blockquote"),
        ({"type": "signature_block", "text": "For ABC"}, "text-align: right"),
        ({"type": "table", "items": [["k", "v"]]}, ">k</td>"),
        ({"type": "whatever", "text": "plain"}, "<p>plain</p>"),
    ])
    def test_item_types(self, item, fragment):
        assert fragment in paragraph_item_html(ParagraphItem.model_validate(item))


class TestRenderReport:
    """Tests for render_report_html."""

    @pytest.fixture
    def document(self):
        return {
            "replyText": "Computation of income prepared.",
            "metadata": {"reportTitle": "Income Computation", "entityName": "ABC & Co", "financialYear": "2024-25"},
            "highlights": ["Taxable income 8,50,000", {"text": "Refund due"}],
            "assumptions": ["Old regime"],
            "sheets": [{"sheetName": "Computation", "rows": [{"values": ["Salary", 900000]}]}],
            "workingNotes": [{"noteNumber": "W1", "title": "HRA", "steps": [
                {"description": "Rent paid", "formula": "12 x 20,000", "amount": 240000}
            ], "result": 120000}],
            "validation_checks": [{"check": "Totals agree", "leftSide": 100, "rightSide": 100, "result": "PASSED"}],
            "observations": [{"category": "Compliance", "priority": "High", "observation": "File before due date"}],
            "paragraphContent": [{"type": "heading", "text": "Notes"}],
            "legalDocument": {"title": "Engagement Letter", "clauses": [{"number": "1", "title": "Scope", "content": "Audit"}]},
        }

    def test_sections(self, document):
        html = render_report_html(document)
        assert html.startswith("<!DOCTYPE html>")
        assert "<title>Income Computation</title>" in html
        assert "ABC &amp; Co" in html
        for section in ("Highlights", "Assumptions", "Contents", "Agreement",
                        "Working Notes", "Validation Checks", "Observations"):
            assert section in html
        assert "Refund due" in html
        assert "900,000" in html
        assert "240,000" in html
        assert "PASSED" in html
        assert "ENGAGEMENT LETTER" in html or "Engagement Letter" in html

    def test_page_orientation_rules(self, document):
        html = render_report_html(document)
        assert "@page landscape" in html

    def test_error_banner(self):
        html = render_report_html({"replyText": "Cut", "error": True, "errorMessage": "Response was incomplete"})
        assert "Response was incomplete" in html

    def test_empty_document(self):
        html = render_report_html({})
        assert "<title>Report</title>" in html
        assert "Highlights" not in html
