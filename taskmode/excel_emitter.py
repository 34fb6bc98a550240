"""
Native .xlsx workbook emitter (XlsxWriter).

One worksheet per sheet view. Numbers stay numbers, formulas become native
formulas carrying the generator's result as the cached value, hyperlinks
become real links (internal ones point at the target tab).

A malformed element (bad merge, overlapping range, unsupported rule) is
skipped and reported through the observer; the workbook is still produced.
"""

import io
import logging
import re
from typing import Any, Dict, Optional, Sequence, Tuple

import xlsxwriter
from xlsxwriter.exceptions import OverlappingRange, XlsxInputError
from xlsxwriter.utility import quote_sheetname

from .interpreter import (
    ReportView,
    SheetView,
    display_value,
    interpret_report,
    is_numeric,
)
from .models import (
    BorderStyle,
    Cell,
    EmptyCell,
    FormulaCell,
    HyperlinkCell,
    NumberCell,
    Style,
    TextCell,
    a1_to_row_col,
)
from .observer import RequestObserver, ensure_observer


logger = logging.getLogger(__name__)

PAPER_SIZES = {"a4": 9, "a3": 8, "legal": 5, "letter": 1}

# XlsxWriter border indices: 1 thin, 5 thick, 6 double
_BORDERS = {
    BorderStyle.ALL: {"border": 1},
    BorderStyle.TOP: {"top": 1},
    BorderStyle.BOTTOM: {"bottom": 1},
    BorderStyle.LEFT: {"left": 1},
    BorderStyle.RIGHT: {"right": 1},
    BorderStyle.DOUBLE: {"top": 1, "bottom": 6},
    BorderStyle.THICK: {"border": 5},
    BorderStyle.NONE: {},
}

_CRITERIA = {
    "lessthan": "<",
    "greaterthan": ">",
    "equal": "==",
    "equalto": "==",
    "notequal": "!=",
    "lessthanorequal": "<=",
    "greaterthanorequal": ">=",
    "between": "between",
}

_RANGE = re.compile(r"^\s*(\$?[A-Za-z]{1,3}\$?\d+)\s*(?::\s*(\$?[A-Za-z]{1,3}\$?\d+))?\s*$")

DEFAULT_INT_FORMAT = "#,##0"
DEFAULT_FLOAT_FORMAT = "#,##0.00"
PARAGRAPH_COLUMN_WIDTH = 100
MAX_AUTO_WIDTH = 60
MIN_AUTO_WIDTH = 10


def parse_range(ref: str) -> Optional[Tuple[int, int, int, int]]:
    """'A1:D1' -> (0, 0, 0, 3); a single cell gives a 1x1 range; None if invalid."""
    if not isinstance(ref, str):
        return None
    match = _RANGE.match(ref.split("!")[-1])
    if not match:
        return None
    first = a1_to_row_col(match.group(1))
    last = a1_to_row_col(match.group(2)) if match.group(2) else first
    if first is None or last is None:
        return None
    return (
        min(first[0], last[0]), min(first[1], last[1]),
        max(first[0], last[0]), max(first[1], last[1]),
    )


class MergeTracker:
    """Cells already covered by a merge on one worksheet."""

    def __init__(self):
        self._cells: Dict[Tuple[int, int], str] = {}

    def overlaps(self, first_row, first_col, last_row, last_col) -> Optional[str]:
        for r in range(first_row, last_row + 1):
            for c in range(first_col, last_col + 1):
                if (r, c) in self._cells:
                    return self._cells[(r, c)]
        return None

    def add(self, first_row, first_col, last_row, last_col, label: str):
        for r in range(first_row, last_row + 1):
            for c in range(first_col, last_col + 1):
                self._cells[(r, c)] = label


class _FormatCache:
    """One xlsxwriter Format per distinct property set."""

    def __init__(self, workbook):
        self.workbook = workbook
        self._formats: Dict[Tuple, Any] = {}

    def get(self, props: Dict[str, Any]):
        key = tuple(sorted(props.items()))
        if key not in self._formats:
            self._formats[key] = self.workbook.add_format(dict(props))
        return self._formats[key]


def format_props(style: Style, number_format: Optional[str] = None) -> Dict[str, Any]:
    """XlsxWriter format properties for a style."""
    props: Dict[str, Any] = {}
    if style.bold:
        props["bold"] = True
    if style.italic:
        props["italic"] = True
    if style.underline:
        props["underline"] = 1
    if style.font_size:
        props["font_size"] = style.font_size
    if style.font_name:
        props["font_name"] = style.font_name
    if style.color:
        props["font_color"] = "#" + style.color
    if style.bg:
        props["bg_color"] = "#" + style.bg
        props["pattern"] = 1
    if style.align:
        props["align"] = style.align
    if style.valign:
        props["valign"] = "vcenter" if style.valign == "middle" else style.valign
    if style.border:
        props.update(_BORDERS[style.border])
    if style.indent:
        props["indent"] = style.indent
    if style.wrap_text:
        props["text_wrap"] = True
    if number_format:
        props["num_format"] = number_format
    return props


def _number_format(cell: Cell, style: Style, column_format: Optional[str]) -> Optional[str]:
    if not is_numeric(cell):
        return None
    if style.number_format:
        return style.number_format
    if column_format:
        return column_format
    value = cell.value if isinstance(cell, NumberCell) else cell.result
    if isinstance(value, float) and not value.is_integer():
        return DEFAULT_FLOAT_FORMAT
    return DEFAULT_INT_FORMAT


def _internal_target(url: str, tab_names: Dict[str, str]) -> str:
    """'#Notes!A1' -> "internal:'Notes'!A1" using the workbook's actual tab name."""
    target = url[1:]
    sheet, _, cell = target.partition("!")
    sheet = sheet.strip().strip("'")
    tab = tab_names.get(sheet.lower(), sheet)
    return f"internal:{quote_sheetname(tab)}!{cell or 'A1'}"


class WorkbookEmitter:
    """Writes sheet views into one in-memory workbook."""

    def __init__(self, observer: Optional[RequestObserver] = None, grouping: str = "international"):
        self.obs = ensure_observer(observer, "xlsx")
        self.grouping = grouping
        self.output = io.BytesIO()
        self.workbook = xlsxwriter.Workbook(self.output, {"in_memory": True})
        self.formats = _FormatCache(self.workbook)
        self.tab_names: Dict[str, str] = {}

    def _fmt(self, style: Style, cell: Cell = None, column_format: Optional[str] = None):
        number_format = _number_format(cell, style, column_format) if cell is not None else None
        props = format_props(style, number_format)
        return self.formats.get(props) if props else None

    def write_cell(self, ws, row: int, col: int, cell: Cell, fmt) -> None:
        """Typed write of one cell; every variant is handled explicitly."""
        if isinstance(cell, EmptyCell):
            if fmt is not None:
                ws.write_blank(row, col, None, fmt)
        elif isinstance(cell, NumberCell):
            ws.write_number(row, col, cell.value, fmt)
        elif isinstance(cell, TextCell):
            # write_string so text like "=x" or "1e5" is never reinterpreted
            ws.write_string(row, col, cell.text, fmt)
        elif isinstance(cell, FormulaCell):
            result = cell.result if cell.result is not None else ""
            ws.write_formula(row, col, "=" + cell.expression, fmt, result)
        elif isinstance(cell, HyperlinkCell):
            url = _internal_target(cell.url, self.tab_names) if cell.is_internal else cell.url
            status = ws.write_url(row, col, url, fmt, cell.display or cell.url)
            if status not in (0, None):
                self.obs.warn("XLSX_LINK_SKIPPED", "Hyperlink could not be written; kept as text", {
                    "url": cell.url, "status": status,
                })
                ws.write_string(row, col, display_value(cell, self.grouping), fmt)
        else:
            raise TypeError(f"Unsupported cell type: {type(cell).__name__}")

    def write_guarded(self, ws, row: int, col: int, cell: Cell, fmt) -> bool:
        """write_cell, but a rejected value becomes a warning instead of failing the workbook."""
        try:
            self.write_cell(ws, row, col, cell, fmt)
        except (XlsxInputError, TypeError, ValueError) as e:
            self.obs.warn("XLSX_CELL_SKIPPED", f"Cell {row + 1}:{col + 1} could not be written", str(e))
            return False
        return True

    def _merge(self, ws, tracker: MergeTracker, bounds, anchor: Cell, fmt, label: str) -> bool:
        first_row, first_col, last_row, last_col = bounds
        if first_row == last_row and first_col == last_col:
            return False
        previous = tracker.overlaps(*bounds)
        if previous:
            self.obs.warn("XLSX_MERGE_SKIPPED", f"Merge {label} overlaps {previous}", {"sheet": ws.name})
            return False
        try:
            ws.merge_range(first_row, first_col, last_row, last_col, "", fmt)
        except OverlappingRange as e:
            self.obs.warn("XLSX_MERGE_SKIPPED", f"Merge {label} rejected", str(e))
            return False
        tracker.add(*bounds, label)
        self.write_guarded(ws, first_row, first_col, anchor, fmt)
        return True

    def _column_widths(self, ws, view: SheetView):
        if view.is_paragraph:
            ws.set_column(0, 0, PARAGRAPH_COLUMN_WIDTH)
            return
        for index in range(view.column_count):
            column = view.sheet.columns[index] if index < len(view.sheet.columns) else None
            if column is not None and column.width:
                ws.set_column(index, index, column.width)
                continue
            longest = max(
                (len(display_value(row.cells[index], self.grouping))
                 for row in view.rows if not row.merged and index < len(row.cells)),
                default=0,
            )
            ws.set_column(index, index, min(max(longest + 2, MIN_AUTO_WIDTH), MAX_AUTO_WIDTH))

    def _page_setup(self, ws, view: SheetView):
        if view.landscape:
            ws.set_landscape()
        paper = PAPER_SIZES.get((view.sheet.page_size or "").strip().lower())
        if paper:
            ws.set_paper(paper)

    def _write_rows(self, ws, view: SheetView, tracker: MergeTracker) -> Dict[Tuple[int, int], Tuple[Cell, Any]]:
        written: Dict[Tuple[int, int], Tuple[Cell, Any]] = {}
        columns = view.sheet.columns
        for r, row in enumerate(view.rows):
            if row.style.row_height:
                ws.set_row(r, row.style.row_height)

            if row.merged:
                anchor = row.cells[0]
                fmt = self._fmt(row.style, anchor)
                bounds = (r, 0, r, max(row.span, 1) - 1)
                if not self._merge(ws, tracker, bounds, anchor, fmt, f"row {r + 1}"):
                    self.write_guarded(ws, r, 0, anchor, fmt)
                written[(r, 0)] = (anchor, fmt)
                continue

            for c, cell in enumerate(row.cells):
                column_format = columns[c].format if c < len(columns) else None
                fmt = self._fmt(row.style, cell, column_format)
                if not self.write_guarded(ws, r, c, cell, fmt):
                    continue
                written[(r, c)] = (cell, fmt)
        return written

    def _write_paragraphs(self, ws, view: SheetView):
        wrap = {"text_wrap": True, "valign": "top"}
        styles = {
            "heading": self.formats.get({**wrap, "bold": True, "font_size": 14}),
            "subheading": self.formats.get({**wrap, "bold": True, "font_size": 12}),
            "quote": self.formats.get({**wrap, "italic": True, "indent": 1}),
            "signature_block": self.formats.get({**wrap, "align": "right"}),
        }
        plain = self.formats.get(wrap)
        r = 0
        for item in view.paragraph_items(self.grouping):
            fmt = styles.get(item.type, plain)
            if item.text:
                ws.write_string(r, 0, item.text, fmt)
                r += 1
            for n, entry in enumerate(item.items, 1):
                if item.type == "table" and isinstance(entry, (list, tuple)):
                    for c, value in enumerate(entry):
                        ws.write_string(r, c, "" if value is None else str(value), plain)
                else:
                    prefix = f"{n}. " if item.type == "numbered_list" else "• "
                    ws.write_string(r, 0, prefix + str(entry), plain)
                r += 1
            r += 1

    def _apply_explicit_merges(self, ws, view: SheetView, tracker, written):
        for ref in view.sheet.merges:
            bounds = parse_range(ref)
            if bounds is None:
                self.obs.warn("XLSX_MERGE_SKIPPED", f"Merge '{ref}' is not a valid range", {"sheet": ws.name})
                continue
            anchor, fmt = written.get((bounds[0], bounds[1]), (EmptyCell(), None))
            self._merge(ws, tracker, bounds, anchor, fmt, ref)

    def _apply_rules(self, ws, view: SheetView):
        for rule in view.sheet.conditional_formatting:
            ref = rule.get("range")
            criteria = _CRITERIA.get(str(rule.get("type", "")).replace("_", "").lower())
            if parse_range(ref) is None or criteria is None:
                self.obs.warn("XLSX_RULE_SKIPPED", "Unsupported conditional format", rule)
                continue
            style = Style.model_validate(rule.get("style") if isinstance(rule.get("style"), dict) else {})
            options = {"type": "cell", "criteria": criteria, "format": self.formats.get(format_props(style))}
            if criteria == "between":
                options["minimum"] = rule.get("minimum", rule.get("value"))
                options["maximum"] = rule.get("maximum", rule.get("maxValue"))
            else:
                options["value"] = rule.get("value")
            try:
                ws.conditional_format(ref.split("!")[-1], options)
            except (XlsxInputError, TypeError, ValueError) as e:
                self.obs.warn("XLSX_RULE_SKIPPED", "Conditional format rejected", str(e))

        for rule in view.sheet.data_validation:
            ref = rule.get("range")
            values = rule.get("values")
            if parse_range(ref) is None or str(rule.get("type", "list")).lower() != "list" or not isinstance(values, list):
                self.obs.warn("XLSX_RULE_SKIPPED", "Unsupported data validation", rule)
                continue
            status = ws.data_validation(ref.split("!")[-1], {
                "validate": "list",
                "source": [str(v) for v in values],
            })
            if status not in (0, None):
                self.obs.warn("XLSX_RULE_SKIPPED", "Data validation rejected", rule)

    def add_sheet(self, view: SheetView):
        ws = self.workbook.add_worksheet(view.tab_name)
        self._page_setup(ws, view)
        self._column_widths(ws, view)

        if view.is_paragraph:
            self._write_paragraphs(ws, view)
            self.obs.debug("XLSX_SHEET", "Wrote paragraph sheet", {"sheet": view.tab_name})
            return ws

        tracker = MergeTracker()
        written = self._write_rows(ws, view, tracker)
        self._apply_explicit_merges(ws, view, tracker, written)
        self._apply_rules(ws, view)

        freeze = view.sheet.freeze_pane
        if freeze is not None and (freeze.row or freeze.col):
            ws.freeze_panes(freeze.row, freeze.col)

        if view.sheet.print_area:
            bounds = parse_range(view.sheet.print_area)
            if bounds is None:
                self.obs.warn("XLSX_PRINT_AREA", "Print area is not a valid range", view.sheet.print_area)
            else:
                ws.print_area(*bounds)

        self.obs.debug("XLSX_SHEET", "Wrote sheet", {"sheet": view.tab_name, "rows": len(view.rows)})
        return ws

    def define_names(self, named_ranges: Sequence[Dict[str, Any]]):
        for item in named_ranges:
            name, ref = item.get("name"), item.get("range")
            if not isinstance(name, str) or not isinstance(ref, str) or "!" not in ref:
                self.obs.warn("XLSX_NAME_SKIPPED", "Named range needs a name and Sheet!Range", item)
                continue
            sheet, _, cells = ref.rpartition("!")
            tab = self.tab_names.get(sheet.strip().strip("'").lower())
            if tab is None or parse_range(cells) is None:
                self.obs.warn("XLSX_NAME_SKIPPED", f"Named range '{name}' points at an unknown sheet or range", item)
                continue
            if self.workbook.define_name(name, f"={quote_sheetname(tab)}!{cells}") == -1:
                self.obs.warn("XLSX_NAME_SKIPPED", f"Named range '{name}' rejected", item)

    def close(self) -> bytes:
        self.workbook.close()
        return self.output.getvalue()


def build_workbook(
    sheets,
    observer: Optional[RequestObserver] = None,
    named_ranges: Sequence[Dict[str, Any]] = (),
    grouping: str = "international",
) -> bytes:
    """Workbook bytes for a report view, a list of sheet views, or raw sheet dicts."""
    obs = ensure_observer(observer, "xlsx")
    if isinstance(sheets, ReportView):
        named_ranges = named_ranges or sheets.document.named_ranges
        views = sheets.sheets
    else:
        sheets = list(sheets or [])
        if all(isinstance(s, SheetView) for s in sheets):
            views = sheets
        else:
            views = interpret_report({"sheets": sheets}, observer=obs).sheets

    emitter = WorkbookEmitter(observer=obs, grouping=grouping)
    for view in views:
        emitter.tab_names[view.tab_name.lower()] = view.tab_name
        emitter.tab_names.setdefault(view.sheet.sheet_name.lower(), view.tab_name)

    if not views:
        # a workbook needs at least one worksheet
        obs.warn("XLSX_EMPTY", "No sheets to write; adding an empty worksheet")
        emitter.workbook.add_worksheet("Report")

    for view in views:
        emitter.add_sheet(view)
    emitter.define_names(named_ranges)

    data = emitter.close()
    obs.log("XLSX_BUILT", "Workbook built", {"sheets": len(views), "bytes": len(data)})
    return data
