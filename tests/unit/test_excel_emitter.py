"""
Unit tests for the workbook emitter.

Workbooks are read back with openpyxl to check what Excel would see.
"""

import io
from unittest.mock import patch

import pytest
from openpyxl import load_workbook
from xlsxwriter.exceptions import XlsxInputError

from taskmode.excel_emitter import MergeTracker, WorkbookEmitter, build_workbook, format_props, parse_range
from taskmode.models import Style, TextCell
from taskmode.observer import RequestObserver


def read_back(data: bytes, data_only: bool = False):
    return load_workbook(io.BytesIO(data), data_only=data_only)


class TestHelpers:
    """Tests for range parsing, merge tracking and formats."""

    @pytest.mark.parametrize("ref,expected", [
        ("A1:D1", (0, 0, 0, 3)),
        ("B2", (1, 1, 1, 1)),
        ("$A$1:$B$10", (0, 0, 9, 1)),
        ("C3:A1", (0, 0, 2, 2)),
        ("BS!A1:B2", (0, 0, 1, 1)),
    ])
    def test_parse_range(self, ref, expected):
        assert parse_range(ref) == expected

    @pytest.mark.parametrize("ref", ["", "A1:", "1A", None, "A1:B2:C3"])
    def test_parse_range_invalid(self, ref):
        assert parse_range(ref) is None

    def test_merge_tracker(self):
        tracker = MergeTracker()
        tracker.add(0, 0, 0, 2, "row 1")
        assert tracker.overlaps(0, 1, 1, 1) == "row 1"
        assert tracker.overlaps(1, 0, 1, 2) is None

    def test_format_props(self):
        props = format_props(Style.model_validate({"bold": True, "bg": "#ffff00", "border": "double", "valign": "middle"}))
        assert props == {
            "bold": True,
            "bg_color": "#FFFF00",
            "pattern": 1,
            "top": 1,
            "bottom": 6,
            "valign": "vcenter",
        }


class TestBuildWorkbook:
    """Tests for build_workbook."""

    @pytest.fixture
    def observer(self):
        return RequestObserver(name="test")

    def test_balance_sheet(self):
        data = build_workbook([{
            "sheetName": "BS",
            "rows": [
                {"rowType": "header", "values": ["Particulars", "Amount"]},
                {"values": ["Cash", "5,000"]},
            ],
        }])
        wb = read_back(data)
        assert wb.sheetnames == ["BS"]
        ws = wb["BS"]
        assert ws.max_row == 2
        assert ws["A1"].value == "Particulars"
        assert ws["A1"].font.bold
        assert ws["B2"].value == 5000
        assert ws["B2"].number_format == "#,##0"

    def test_merged_title(self):
        data = build_workbook([{
            "sheetName": "PL",
            "rows": [
                {"rowType": "title", "values": ["ABC Ltd"]},
                {"values": ["Revenue", 100, 200]},
            ],
        }])
        ws = read_back(data)["PL"]
        assert [str(r) for r in ws.merged_cells.ranges] == ["A1:C1"]
        assert ws["A1"].value == "ABC Ltd"

    def test_merge_across_count(self):
        data = build_workbook([{"sheetName": "M", "rows": [
            {"values": ["Schedule III"], "style": {"mergeAcross": 2}},
            {"values": ["a", "b", "c", "d"]},
        ]}])
        ws = read_back(data)["M"]
        assert [str(r) for r in ws.merged_cells.ranges] == ["A1:C1"]

    def test_formula_keeps_cached_result(self):
        sheet = {
            "sheetName": "Calc",
            "rows": [
                {"values": ["A", 100]},
                {"values": ["B", 200]},
                {"rowType": "total", "values": ["Total", {"formula": "=SUM(B1:B2)", "result": 300}]},
            ],
        }
        data = build_workbook([sheet])
        assert read_back(data)["Calc"]["B3"].value == "=SUM(B1:B2)"
        assert read_back(data, data_only=True)["Calc"]["B3"].value == 300

    def test_text_that_looks_like_formula_stays_text(self):
        ws = read_back(build_workbook([{"rows": [{"values": ["=not a formula", "007"]}]}]))["Sheet"]
        assert ws["A1"].value == "=not a formula"
        assert ws["A1"].data_type == "s"
        assert ws["B1"].value == "007"

    def test_hyperlinks(self):
        data = build_workbook([
            {"sheetName": "BS", "rows": [{"values": [
                {"hyperlink": "#Notes!A1", "display": "Note 1"},
                {"hyperlink": "https://www.incometax.gov.in", "display": "Portal"},
            ]}]},
            {"sheetName": "Notes", "rows": [{"values": ["Note 1 details"]}]},
        ])
        ws = read_back(data)["BS"]
        assert ws["A1"].value == "Note 1"
        assert "Notes" in ws["A1"].hyperlink.location
        assert ws["B1"].hyperlink.target == "https://www.incometax.gov.in"

    def test_overlapping_merge_skipped(self, observer):
        data = build_workbook([{
            "sheetName": "S",
            "merges": ["A1:B1", "C2:D3", "Z"],
            "rows": [
                {"rowType": "title", "values": ["Title"]},
                {"values": ["a", "b", "c"]},
            ],
        }], observer=observer)
        ws = read_back(data)["S"]
        assert sorted(str(r) for r in ws.merged_cells.ranges) == ["A1:C1", "C2:D3"]
        assert len(observer.find("XLSX_MERGE_SKIPPED")) == 2
        assert ws["C2"].value == "c"

    def test_rejected_merged_anchor_keeps_workbook(self, observer):
        write_cell = WorkbookEmitter.write_cell

        def rejecting(emitter, ws, row, col, cell, fmt):
            if isinstance(cell, TextCell) and cell.text == "Bad title":
                raise XlsxInputError("value rejected")
            return write_cell(emitter, ws, row, col, cell, fmt)

        with patch.object(WorkbookEmitter, "write_cell", rejecting):
            data = build_workbook([{"sheetName": "S", "rows": [
                {"rowType": "title", "values": ["Bad title"]},
                {"values": ["Revenue", 100, 200]},
            ]}], observer=observer)

        ws = read_back(data)["S"]
        assert [str(r) for r in ws.merged_cells.ranges] == ["A1:C1"]
        assert ws["A2"].value == "Revenue"
        assert ws["C2"].value == 200
        assert len(observer.find("XLSX_CELL_SKIPPED")) == 1

    def test_freeze_pane_and_print_area(self):
        data = build_workbook([{
            "sheetName": "BS",
            "freezePane": {"row": 3, "col": 1},
            "printArea": "A1:B2",
            "orientation": "landscape",
            "pageSize": "A3",
            "rows": [{"values": ["a", 1]}, {"values": ["b", 2]}],
        }])
        ws = read_back(data)["BS"]
        assert ws.freeze_panes == "B4"
        assert "$A$1:$B$2" in ws.print_area
        assert ws.page_setup.orientation == "landscape"
        assert int(ws.page_setup.paperSize) == 8

    def test_column_widths(self):
        data = build_workbook([{
            "sheetName": "W",
            "columns": [{"header": "Particulars", "width": 35}],
            "rows": [{"values": ["Cash", "A much longer description here"]}],
        }])
        ws = read_back(data)["W"]
        assert ws.column_dimensions["A"].width == pytest.approx(35, abs=1)
        assert ws.column_dimensions["B"].width > 20

    def test_paragraph_sheet(self):
        data = build_workbook([{
            "sheetName": "Memo",
            "sheetType": "paragraph",
            "content": [
                {"type": "heading", "text": "Engagement"},
                {"type": "bullet_list", "items": ["Scope", "Fees"]},
            ],
        }])
        ws = read_back(data)["Memo"]
        assert ws["A1"].value == "Engagement"
        assert ws["A1"].font.bold
        assert ws["A2"].value == "• Scope"
        assert ws["A3"].value == "• Fees"

    def test_conditional_format_and_validation(self, observer):
        data = build_workbook([{
            "sheetName": "Rules",
            "rows": [{"values": ["x", -5]}],
            "conditionalFormatting": [
                {"range": "B1:B10", "type": "lessThan", "value": 0, "style": {"color": "FF0000"}},
                {"range": "B1:B10", "type": "colorScale"},
            ],
            "dataValidation": [{"range": "C1:C10", "type": "list", "values": ["Yes", "No"]}],
        }], observer=observer)
        ws = read_back(data)["Rules"]
        assert len(ws.conditional_formatting) == 1
        assert len(ws.data_validations.dataValidation) == 1
        assert len(observer.find("XLSX_RULE_SKIPPED")) == 1

    def test_named_ranges(self, observer):
        data = build_workbook(
            [{"sheetName": "BS", "rows": [{"values": ["Total", 10]}]}],
            observer=observer,
            named_ranges=[
                {"name": "TotalAssets", "range": "BS!B1"},
                {"name": "Missing", "range": "Nowhere!A1"},
            ],
        )
        wb = read_back(data)
        assert "TotalAssets" in wb.defined_names
        assert len(observer.find("XLSX_NAME_SKIPPED")) == 1

    def test_duplicate_tab_names(self):
        data = build_workbook([{"sheetName": "Tax"}, {"sheetName": "TAX"}])
        assert read_back(data).sheetnames == ["Tax", "TAX_2"]

    def test_no_sheets(self, observer):
        wb = read_back(build_workbook([], observer=observer))
        assert wb.sheetnames == ["Report"]
        assert observer.find("XLSX_EMPTY")
