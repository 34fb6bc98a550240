"""
Report model interpreter.

Turns a recovered ReportDocument dict into typed views shared by the HTML
renderer and the spreadsheet emitter, so both agree on:
- which sheets exist and what their tab names are
- how every raw value maps onto the cell variant
- how numbers are displayed
- the effective style of each row (row-type defaults + explicit style)
- which rows collapse into one spanning cell
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from .models import (
    MAX_TAB_NAME,
    Cell,
    EmptyCell,
    FormulaCell,
    HyperlinkCell,
    NumberCell,
    ParagraphItem,
    ReportDocument,
    RowType,
    Sheet,
    SheetType,
    Style,
    TextCell,
)
from .observer import RequestObserver, ensure_observer


logger = logging.getLogger(__name__)

# "1,234.50", "12,34,567", "-5000", "(5,000)" count as numbers; "007", "18%" and
# mixed groupings like "12,345,67" do not
_NUMERIC = re.compile(r"^[+-]?(?:\d{1,3}(?:,\d{3})+|\d{1,2}(?:,\d{2})*,\d{3}|\d+)(?:\.\d+)?$")
_PARENTHESIZED = re.compile(r"^\((.+)\)$")
_FORBIDDEN_TAB_CHARS = re.compile(r"[\[\]:*?/\\]")

# Presentation defaults per row type; explicit style keys always win
DEFAULT_ROW_STYLES: Dict[RowType, Dict[str, Any]] = {
    RowType.TITLE: {"bold": True, "font_size": 14, "align": "center", "bg": "1F4E79", "color": "FFFFFF", "merge_across": True},
    RowType.SUBTITLE: {"italic": True, "align": "center", "merge_across": True},
    RowType.HEADER: {"bold": True, "bg": "D9E2F3", "border": "all", "align": "center"},
    RowType.SECTION_HEADER: {"bold": True, "bg": "F2F2F2"},
    RowType.SUBSECTION: {"bold": True, "indent": 1},
    RowType.GROUP_HEADER: {"indent": 2},
    RowType.SUBTOTAL: {"bold": True, "border": "top"},
    RowType.TOTAL: {"bold": True, "border": "double"},
    RowType.GRAND_TOTAL: {"bold": True, "bg": "FFF2CC", "border": "thick"},
    RowType.NOTE: {"italic": True, "font_size": 9, "color": "666666", "merge_across": True},
    RowType.WORKING_TITLE: {"bold": True, "underline": True},
    RowType.RESULT: {"bold": True, "border": "double"},
}


# =============================================================================
# Values
# =============================================================================

def coerce_number(text: str) -> Optional[Union[int, float]]:
    """Number for a numeric-looking string, else None."""
    s = text.strip()
    negative = False
    match = _PARENTHESIZED.match(s)
    if match:
        s = match.group(1).strip()
        negative = True
    if not _NUMERIC.match(s):
        return None
    digits = s.lstrip("+-")
    if len(digits) > 1 and digits[0] == "0" and digits[1] != ".":
        return None  # account codes, PINs
    s = s.replace(",", "")
    try:
        number = float(s) if "." in s else int(s)
    except ValueError:
        return None  # past the int conversion digit limit
    if not _is_finite(number):
        return None
    return -number if negative else number


def _is_finite(number: Union[int, float]) -> bool:
    """True when the number fits a spreadsheet cell (a finite double)."""
    try:
        return math.isfinite(number)
    except OverflowError:
        return False


def to_cell(raw: Any) -> Cell:
    """Map one raw JSON value onto the cell variant."""
    if raw is None:
        return EmptyCell()
    if isinstance(raw, bool):
        return TextCell("TRUE" if raw else "FALSE")
    if isinstance(raw, (int, float)):
        if not _is_finite(raw):
            return TextCell(str(raw))
        return NumberCell(raw)
    if isinstance(raw, str):
        if not raw.strip():
            return EmptyCell()
        number = coerce_number(raw)
        return NumberCell(number) if number is not None else TextCell(raw)
    if isinstance(raw, dict):
        if "formula" in raw:
            formula = raw.get("formula")
            result = _result_value(raw.get("result"))
            if not isinstance(formula, str) or not formula.strip().lstrip("="):
                return to_cell(result)
            return FormulaCell(formula=formula, result=result)
        if "hyperlink" in raw:
            url = raw.get("hyperlink")
            display = raw.get("display")
            display = str(display) if display is not None and not isinstance(display, (dict, list)) else None
            if not isinstance(url, str) or not url.strip():
                return TextCell(display) if display else EmptyCell()
            return HyperlinkCell(url=url.strip(), display=display)
        if "value" in raw:
            return to_cell(raw["value"])
        return TextCell(json.dumps(raw, ensure_ascii=False))
    if isinstance(raw, (list, tuple)):
        return TextCell(", ".join(display_value(to_cell(item)) for item in raw))
    return TextCell(str(raw))


def _result_value(result: Any) -> Union[int, float, str, None]:
    if result is None or isinstance(result, bool):
        return None if result is None else str(result).upper()
    if isinstance(result, (int, float)):
        return result if _is_finite(result) else None
    if isinstance(result, str):
        number = coerce_number(result)
        return number if number is not None else result
    return None


def _group_indian(digits: str) -> str:
    if len(digits) <= 3:
        return digits
    head, last3 = digits[:-3], digits[-3:]
    pairs = []
    while len(head) > 2:
        pairs.insert(0, head[-2:])
        head = head[:-2]
    if head:
        pairs.insert(0, head)
    return ",".join(pairs) + "," + last3


def format_number(value: Union[int, float], grouping: str = "international") -> str:
    """Digit-grouped display: 1234567 -> '1,234,567' (or '12,34,567' for indian)."""
    if isinstance(value, float):
        if not math.isfinite(value):
            return str(value)
        if value.is_integer():
            value = int(value)
    negative = value < 0
    if isinstance(value, int):
        whole, fraction = str(abs(value)), ""
    else:
        whole, fraction = f"{abs(value):.2f}".split(".")
        fraction = "." + fraction
    grouped = _group_indian(whole) if grouping == "indian" else f"{int(whole):,}"
    return ("-" if negative else "") + grouped + fraction


def display_value(cell: Cell, grouping: str = "international") -> str:
    """Text shown for a cell in the preview."""
    if isinstance(cell, EmptyCell):
        return ""
    if isinstance(cell, NumberCell):
        return format_number(cell.value, grouping)
    if isinstance(cell, TextCell):
        return cell.text
    if isinstance(cell, FormulaCell):
        if cell.result is None or cell.result == "":
            return cell.formula
        if isinstance(cell.result, (int, float)):
            return format_number(cell.result, grouping)
        return str(cell.result)
    if isinstance(cell, HyperlinkCell):
        return cell.display or cell.url
    raise TypeError(f"Unsupported cell type: {type(cell).__name__}")


def is_numeric(cell: Cell) -> bool:
    if isinstance(cell, NumberCell):
        return True
    return isinstance(cell, FormulaCell) and isinstance(cell.result, (int, float))


# =============================================================================
# Views
# =============================================================================

@dataclass
class RowView:
    """A row as both renderers see it."""
    row_type: RowType
    cells: List[Cell]
    style: Style
    span: Optional[int] = None  # columns covered when the row is merged

    @property
    def merged(self) -> bool:
        return self.span is not None


@dataclass
class SheetView:
    tab_name: str
    title: str
    kind: SheetType
    sheet: Sheet
    rows: List[RowView] = field(default_factory=list)
    column_count: int = 1

    @property
    def is_paragraph(self) -> bool:
        return self.kind == SheetType.PARAGRAPH

    @property
    def landscape(self) -> bool:
        return self.sheet.orientation == "landscape"

    def paragraph_items(self, grouping: str = "international") -> List[ParagraphItem]:
        """Content items of a paragraph sheet; rows stand in when no content was sent."""
        if self.sheet.content:
            return list(self.sheet.content)
        items = []
        for row in self.rows:
            text = " ".join(filter(None, (display_value(c, grouping) for c in row.cells)))
            if not text:
                continue
            kind = "heading" if row.row_type in (RowType.TITLE, RowType.HEADER, RowType.SECTION_HEADER) else "paragraph"
            items.append(ParagraphItem(type=kind, text=text))
        return items


@dataclass
class ReportView:
    document: ReportDocument
    sheets: List[SheetView] = field(default_factory=list)

    @property
    def reply_text(self) -> Optional[str]:
        return self.document.reply_text

    @property
    def title(self) -> str:
        title = self.document.metadata.get("reportTitle")
        return str(title) if title else "Report"


def effective_style(row_type: RowType, style: Style) -> Style:
    """Row-type defaults overlaid with the keys the generator actually sent."""
    defaults = DEFAULT_ROW_STYLES.get(row_type)
    if not defaults:
        return style
    explicit = style.model_dump(exclude_unset=True)
    return Style.model_validate({**defaults, **explicit})


def merge_span(merge_across: Union[bool, int, None], column_count: int) -> Optional[int]:
    """Columns a merged row covers: N + 1 for an explicit count, all columns for True."""
    if merge_across is True:
        return max(column_count, 1)
    if isinstance(merge_across, int) and not isinstance(merge_across, bool) and merge_across > 0:
        return merge_across + 1
    return None


def sanitize_tab_name(name: str) -> str:
    cleaned = _FORBIDDEN_TAB_CHARS.sub("_", name or "").strip().strip("'").strip()
    return (cleaned or "Sheet")[:MAX_TAB_NAME]


def unique_tab_names(names: Sequence[str]) -> List[str]:
    """Sanitized, 31-character, case-insensitively unique worksheet names."""
    seen = set()
    result = []
    for name in names:
        base = sanitize_tab_name(name)
        candidate = base
        n = 2
        while candidate.lower() in seen:
            suffix = f"_{n}"
            candidate = base[:MAX_TAB_NAME - len(suffix)] + suffix
            n += 1
        seen.add(candidate.lower())
        result.append(candidate)
    return result


def _column_count(sheet: Sheet) -> int:
    widest = max((len(row.values) for row in sheet.rows), default=0)
    return max(len(sheet.columns), widest, 1)


def interpret_sheet(sheet: Sheet, tab_name: Optional[str] = None) -> SheetView:
    tab_name = tab_name or sanitize_tab_name(sheet.sheet_name)
    column_count = _column_count(sheet)
    rows = []
    for row in sheet.rows:
        row_type = RowType.parse(row.row_type)
        style = effective_style(row_type, row.style)
        cells = [to_cell(value) for value in row.values]
        span = merge_span(style.merge_across, column_count)
        if span is not None:
            cells = cells[:1] or [EmptyCell()]
        rows.append(RowView(row_type=row_type, cells=cells, style=style, span=span))
    return SheetView(
        tab_name=tab_name,
        title=sheet.sheet_title or tab_name,
        kind=sheet.kind,
        sheet=sheet,
        rows=rows,
        column_count=column_count,
    )


def _structured_table_sheet(table: List[Any]) -> Optional[Dict[str, Any]]:
    """Legacy 2-D table output: first row is the header."""
    rows = [r for r in table if isinstance(r, (list, tuple))]
    if not rows:
        return None
    header = list(rows[0])
    return {
        "sheetName": "Report",
        "columns": [{"header": str(h), "key": f"col{i}", "width": 20} for i, h in enumerate(header)],
        "rows": [{"rowType": "header", "values": header}] + [{"rowType": "data", "values": list(r)} for r in rows[1:]],
    }


def iter_sheets(document: Optional[Dict[str, Any]], observer: Optional[RequestObserver] = None) -> List[Sheet]:
    """Ordered sheets of a document; empty when there are none."""
    obs = ensure_observer(observer, "interpret")
    if not isinstance(document, dict):
        return []

    raw_sheets = document.get("sheets")
    if not isinstance(raw_sheets, list):
        raw_sheets = []
    if not raw_sheets and isinstance(document.get("structuredTableData"), list):
        fallback = _structured_table_sheet(document["structuredTableData"])
        if fallback:
            obs.log("SHEETS_FALLBACK", "Built sheet from structuredTableData")
            raw_sheets = [fallback]

    sheets = []
    for index, raw in enumerate(raw_sheets):
        if not isinstance(raw, dict):
            obs.warn("SHEET_SKIPPED", f"Sheet {index + 1} is not an object", type(raw).__name__)
            continue
        try:
            sheets.append(Sheet.from_raw(raw))
        except ValidationError as e:
            obs.warn("SHEET_SKIPPED", f"Sheet {index + 1} could not be read", str(e))
    return sheets


def interpret_report(document: Optional[Dict[str, Any]], observer: Optional[RequestObserver] = None) -> ReportView:
    """Typed view of a recovered document; never raises on missing structure."""
    obs = ensure_observer(observer, "interpret")
    try:
        model = ReportDocument.model_validate(document if isinstance(document, dict) else {})
    except ValidationError as e:
        obs.warn("DOCUMENT_FIELDS", "Top-level report fields could not be read", str(e))
        model = ReportDocument()

    sheets = iter_sheets(document, obs)
    names = unique_tab_names([s.sheet_name for s in sheets])
    views = [interpret_sheet(sheet, name) for sheet, name in zip(sheets, names)]
    obs.debug("INTERPRETED", "Report interpreted", {"sheets": len(views)})
    return ReportView(document=model, sheets=views)
