"""
Data models for recovered task-mode reports.

The recovering parser produces plain dicts; these models are the typed,
lenient view the interpreter and both renderers work from:
- Enums for the sheet and row vocabularies
- Pydantic models whose aliases match the generator's JSON keys
- A tagged cell variant (EmptyCell | NumberCell | TextCell | FormulaCell | HyperlinkCell)

Bad field values degrade to defaults instead of raising, because the
generator is not guaranteed to respect its own schema.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Excel's hard limit on worksheet names
MAX_TAB_NAME = 31

_HEX_COLOR = re.compile(r"^[0-9A-Fa-f]{6}$")
_A1_CELL = re.compile(r"^\$?([A-Za-z]{1,3})\$?(\d+)$")


class SheetType(str, Enum):
    """Layout families a sheet can declare."""
    TABLE = "table"
    VERTICAL_STATEMENT = "vertical_statement"
    HORIZONTAL_STATEMENT = "horizontal_statement"
    SIDE_BY_SIDE = "side_by_side"
    LEGAL_DOCUMENT = "legal_document"
    PARAGRAPH = "paragraph"
    NOTES = "notes"
    WORKING = "working"
    SCHEDULE = "schedule"
    COMPUTATION = "computation"

    @classmethod
    def parse(cls, value: Any) -> "SheetType":
        """Unknown or missing values fall back to the tabular layout."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.TABLE


class RowType(str, Enum):
    """Semantic role of a row within a sheet."""
    TITLE = "title"
    SUBTITLE = "subtitle"
    HEADER = "header"
    SECTION_HEADER = "section_header"
    SUBSECTION = "subsection"
    GROUP_HEADER = "group_header"
    DATA = "data"
    SUBTOTAL = "subtotal"
    TOTAL = "total"
    GRAND_TOTAL = "grand_total"
    EMPTY = "empty"
    NOTE = "note"
    FORMULA_ROW = "formula_row"
    WORKING_TITLE = "working_title"
    RESULT = "result"
    SIGNATURE = "signature"

    @classmethod
    def parse(cls, value: Any) -> "RowType":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.DATA


class BorderStyle(str, Enum):
    ALL = "all"
    TOP = "top"
    BOTTOM = "bottom"
    LEFT = "left"
    RIGHT = "right"
    DOUBLE = "double"
    THICK = "thick"
    NONE = "none"


# =============================================================================
# Cell variant
# =============================================================================

@dataclass(frozen=True)
class EmptyCell:
    """A null value."""


@dataclass(frozen=True)
class NumberCell:
    value: Union[int, float]


@dataclass(frozen=True)
class TextCell:
    text: str


@dataclass(frozen=True)
class FormulaCell:
    """A formula together with the result the generator computed for it."""
    formula: str
    result: Union[int, float, str, None] = None

    @property
    def expression(self) -> str:
        """The formula without any leading '=' markers."""
        return self.formula.strip().lstrip("=").strip()


@dataclass(frozen=True)
class HyperlinkCell:
    url: str
    display: Optional[str] = None

    @property
    def is_internal(self) -> bool:
        """Links such as '#Notes!A1' point inside the workbook."""
        return self.url.startswith("#")


Cell = Union[EmptyCell, NumberCell, TextCell, FormulaCell, HyperlinkCell]


# =============================================================================
# Lenient coercion helpers (used as "before" validators)
# =============================================================================

def _loose_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1", "y")
    return False


def _loose_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _loose_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return None


def normalize_hex_color(value: Any) -> Optional[str]:
    """'#d9e2f3' -> 'D9E2F3'; anything that is not 6 hex digits -> None."""
    if not isinstance(value, str):
        return None
    cleaned = value.strip().lstrip("#")
    if len(cleaned) == 8 and _HEX_COLOR.match(cleaned[2:]):
        cleaned = cleaned[2:]  # ARGB
    if not _HEX_COLOR.match(cleaned):
        return None
    return cleaned.upper()


def a1_to_row_col(ref: str) -> Optional[tuple]:
    """'B3' -> (2, 1) zero-based (row, col); None when not an A1 reference."""
    match = _A1_CELL.match(ref.strip())
    if not match:
        return None
    letters, digits = match.groups()
    col = 0
    for ch in letters.upper():
        col = col * 26 + (ord(ch) - ord("A") + 1)
    return int(digits) - 1, col - 1


# =============================================================================
# Report models (Pydantic)
# =============================================================================

class _Lenient(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Style(_Lenient):
    """Presentation hints for a row."""
    bold: bool = False
    italic: bool = False
    underline: bool = False
    font_size: Optional[float] = Field(default=None, alias="fontSize")
    font_name: Optional[str] = Field(default=None, alias="fontName")
    align: Optional[str] = None
    valign: Optional[str] = None
    bg: Optional[str] = None
    color: Optional[str] = None
    border: Optional[BorderStyle] = None
    indent: int = 0
    merge_across: Union[bool, int, None] = Field(default=None, alias="mergeAcross")
    wrap_text: bool = Field(default=False, alias="wrapText")
    number_format: Optional[str] = Field(default=None, alias="numberFormat")
    row_height: Optional[float] = Field(default=None, alias="rowHeight")

    @field_validator("bold", "italic", "underline", "wrap_text", mode="before")
    @classmethod
    def _bools(cls, v):
        return _loose_bool(v)

    @field_validator("font_size", "row_height", mode="before")
    @classmethod
    def _numbers(cls, v):
        number = _loose_number(v)
        return number if number and number > 0 else None

    @field_validator("bg", "color", mode="before")
    @classmethod
    def _colors(cls, v):
        return normalize_hex_color(v)

    @field_validator("align", mode="before")
    @classmethod
    def _align(cls, v):
        v = _loose_str(v)
        v = v.strip().lower() if v else None
        if v == "centre":
            v = "center"
        return v if v in ("left", "center", "right", "justify") else None

    @field_validator("valign", mode="before")
    @classmethod
    def _valign(cls, v):
        v = _loose_str(v)
        v = v.strip().lower() if v else None
        if v in ("middle", "vcenter", "center"):
            return "middle"
        return v if v in ("top", "bottom") else None

    @field_validator("border", mode="before")
    @classmethod
    def _border(cls, v):
        if isinstance(v, BorderStyle):
            return v
        v = _loose_str(v)
        try:
            return BorderStyle(v.strip().lower()) if v else None
        except ValueError:
            return None

    @field_validator("indent", mode="before")
    @classmethod
    def _indent(cls, v):
        number = _loose_number(v)
        return max(0, int(number)) if number else 0

    @field_validator("merge_across", mode="before")
    @classmethod
    def _merge_across(cls, v):
        if isinstance(v, bool) or v is None:
            return v
        if isinstance(v, str) and v.strip().lower() in ("true", "false"):
            return v.strip().lower() == "true"
        number = _loose_number(v)
        if number is None or number < 1:
            return None
        return int(number)

    @field_validator("font_name", "number_format", mode="before")
    @classmethod
    def _strings(cls, v):
        return _loose_str(v)


class Column(_Lenient):
    """Width/key metadata for one column. Never a source of header text."""
    header: Optional[str] = None
    key: Optional[str] = None
    width: Optional[float] = None
    data_type: Optional[str] = Field(default=None, alias="dataType")
    format: Optional[str] = None
    align: Optional[str] = None

    @field_validator("header", "key", "data_type", "format", "align", mode="before")
    @classmethod
    def _strings(cls, v):
        return _loose_str(v)

    @field_validator("width", mode="before")
    @classmethod
    def _width(cls, v):
        number = _loose_number(v)
        return number if number and number > 0 else None


class Row(_Lenient):
    row_type: str = Field(default="data", alias="rowType")
    values: List[Any] = Field(default_factory=list)
    style: Style = Field(default_factory=Style)

    @field_validator("row_type", mode="before")
    @classmethod
    def _row_type(cls, v):
        return v if isinstance(v, str) else "data"

    @field_validator("values", mode="before")
    @classmethod
    def _values(cls, v):
        if v is None:
            return []
        if isinstance(v, (list, tuple)):
            return list(v)
        return [v]

    @field_validator("style", mode="before")
    @classmethod
    def _style(cls, v):
        return v if isinstance(v, (dict, Style)) else {}


class FreezePane(_Lenient):
    """Rows above `row` and columns left of `col` stay visible."""
    row: int = 0
    col: int = 0

    @field_validator("row", "col", mode="before")
    @classmethod
    def _index(cls, v):
        number = _loose_number(v)
        return max(0, int(number)) if number else 0


class ParagraphItem(_Lenient):
    """One block of a paragraph-style sheet."""
    type: str = "paragraph"
    text: Optional[str] = None
    items: List[Any] = Field(default_factory=list)
    style: Style = Field(default_factory=Style)

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v):
        return v.strip().lower() if isinstance(v, str) else "paragraph"

    @field_validator("text", mode="before")
    @classmethod
    def _text(cls, v):
        return _loose_str(v)

    @field_validator("items", mode="before")
    @classmethod
    def _items(cls, v):
        return list(v) if isinstance(v, (list, tuple)) else []

    @field_validator("style", mode="before")
    @classmethod
    def _style(cls, v):
        return v if isinstance(v, (dict, Style)) else {}


class Sheet(_Lenient):
    """One tabular or paragraph-style section of a report."""
    sheet_name: str = Field(default="Sheet", alias="sheetName")
    sheet_title: Optional[str] = Field(default=None, alias="sheetTitle")
    sheet_type: str = Field(default="table", alias="sheetType")
    orientation: str = "portrait"
    page_size: Optional[str] = Field(default=None, alias="pageSize")
    columns: List[Column] = Field(default_factory=list)
    rows: List[Row] = Field(default_factory=list)
    merges: List[str] = Field(default_factory=list)
    freeze_pane: Optional[FreezePane] = Field(default=None, alias="freezePane")
    print_area: Optional[str] = Field(default=None, alias="printArea")
    content: List[ParagraphItem] = Field(default_factory=list)
    conditional_formatting: List[Dict[str, Any]] = Field(default_factory=list, alias="conditionalFormatting")
    data_validation: List[Dict[str, Any]] = Field(default_factory=list, alias="dataValidation")

    @field_validator("sheet_name", mode="before")
    @classmethod
    def _name(cls, v):
        v = _loose_str(v)
        return v if v and v.strip() else "Sheet"

    @field_validator("sheet_title", "print_area", "page_size", mode="before")
    @classmethod
    def _strings(cls, v):
        return _loose_str(v)

    @field_validator("sheet_type", mode="before")
    @classmethod
    def _sheet_type(cls, v):
        return v if isinstance(v, str) else "table"

    @field_validator("orientation", mode="before")
    @classmethod
    def _orientation(cls, v):
        return "landscape" if isinstance(v, str) and v.strip().lower() == "landscape" else "portrait"

    @field_validator("columns", mode="before")
    @classmethod
    def _columns(cls, v):
        if not isinstance(v, (list, tuple)):
            return []
        columns = []
        for col in v:
            if isinstance(col, dict):
                columns.append(col)
            elif isinstance(col, str):
                columns.append({"header": col})
        return columns

    @field_validator("rows", mode="before")
    @classmethod
    def _rows(cls, v):
        if not isinstance(v, (list, tuple)):
            return []
        rows = []
        for row in v:
            if isinstance(row, dict):
                rows.append(row)
            elif isinstance(row, (list, tuple)):
                rows.append({"values": list(row)})
            elif row is not None:
                rows.append({"values": [row]})
        return rows

    @field_validator("merges", mode="before")
    @classmethod
    def _merges(cls, v):
        if not isinstance(v, (list, tuple)):
            return []
        return [m.strip() for m in v if isinstance(m, str) and m.strip()]

    @field_validator("freeze_pane", mode="before")
    @classmethod
    def _freeze(cls, v):
        if isinstance(v, str):
            cell = a1_to_row_col(v)
            return {"row": cell[0], "col": cell[1]} if cell else None
        return v if isinstance(v, (dict, FreezePane)) else None

    @field_validator("content", mode="before")
    @classmethod
    def _content(cls, v):
        if not isinstance(v, (list, tuple)):
            return []
        return [item if isinstance(item, dict) else {"text": _loose_str(item)} for item in v]

    @field_validator("conditional_formatting", "data_validation", mode="before")
    @classmethod
    def _rules(cls, v):
        if not isinstance(v, (list, tuple)):
            return []
        return [rule for rule in v if isinstance(rule, dict)]

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "Sheet":
        """Accept either `content` or `paragraphContent` for paragraph items."""
        if isinstance(raw, dict) and "content" not in raw and "paragraphContent" in raw:
            raw = {**raw, "content": raw["paragraphContent"]}
        return cls.model_validate(raw)

    @property
    def kind(self) -> SheetType:
        return SheetType.parse(self.sheet_type)


class ReportDocument(_Lenient):
    """The recovered structured report. Every field is optional."""
    reply_text: Optional[str] = Field(default=None, alias="replyText")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    highlights: List[Any] = Field(default_factory=list)
    assumptions: List[Any] = Field(default_factory=list)
    observations: List[Any] = Field(default_factory=list)
    working_notes: List[Any] = Field(default_factory=list, alias="workingNotes")
    validation_checks: List[Any] = Field(default_factory=list)
    paragraph_content: List[ParagraphItem] = Field(default_factory=list, alias="paragraphContent")
    legal_document: Optional[Dict[str, Any]] = Field(default=None, alias="legalDocument")
    named_ranges: List[Dict[str, Any]] = Field(default_factory=list, alias="namedRanges")
    error: bool = False
    error_message: Optional[str] = Field(default=None, alias="errorMessage")

    @field_validator("reply_text", "error_message", mode="before")
    @classmethod
    def _strings(cls, v):
        return _loose_str(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, v):
        return v if isinstance(v, dict) else {}

    @field_validator(
        "highlights", "assumptions", "observations", "working_notes", "validation_checks",
        mode="before"
    )
    @classmethod
    def _sequences(cls, v):
        if v is None:
            return []
        return list(v) if isinstance(v, (list, tuple)) else [v]

    @field_validator("paragraph_content", mode="before")
    @classmethod
    def _paragraphs(cls, v):
        if not isinstance(v, (list, tuple)):
            return []
        return [item if isinstance(item, dict) else {"text": _loose_str(item)} for item in v]

    @field_validator("legal_document", mode="before")
    @classmethod
    def _legal(cls, v):
        return v if isinstance(v, dict) else None

    @field_validator("named_ranges", mode="before")
    @classmethod
    def _named(cls, v):
        if not isinstance(v, (list, tuple)):
            return []
        return [item for item in v if isinstance(item, dict)]

    @field_validator("error", mode="before")
    @classmethod
    def _error(cls, v):
        return _loose_bool(v)
