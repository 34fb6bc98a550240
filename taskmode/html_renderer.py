"""
HTML rendering of recovered reports.

render_sheets_html() gives the sheet fragment used by the live preview;
render_report_html() wraps it in a complete printable document that also
serves as the source for the Word and PDF exports.

All text coming from the report is escaped. Missing fields render as
nothing rather than raising.
"""

import html
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Union

from .interpreter import (
    ReportView,
    RowView,
    SheetView,
    display_value,
    format_number,
    interpret_report,
    is_numeric,
)
from .models import (
    BorderStyle,
    Cell,
    EmptyCell,
    HyperlinkCell,
    ParagraphItem,
    RowType,
    Style,
)


logger = logging.getLogger(__name__)

INDENT_PX = 20
_ANCHOR_CHARS = re.compile(r"[^A-Za-z0-9_-]+")
# External link schemes allowed into href; anything else renders as text
_SAFE_LINK = re.compile(r"^(?:https?://|mailto:)", re.IGNORECASE)

_BORDER_CSS = {
    BorderStyle.ALL: "border: 1px solid #000;",
    BorderStyle.TOP: "border-top: 1px solid #000;",
    BorderStyle.BOTTOM: "border-bottom: 1px solid #000;",
    BorderStyle.LEFT: "border-left: 1px solid #000;",
    BorderStyle.RIGHT: "border-right: 1px solid #000;",
    BorderStyle.DOUBLE: "border-top: 1px solid #000; border-bottom: 3px double #000;",
    BorderStyle.THICK: "border: 2px solid #000;",
    BorderStyle.NONE: "",
}

_TABLE_CSS = "border-collapse: collapse; width: 100%; font-size: 12px; margin-bottom: 16px;"
_CELL_CSS = "padding: 4px 8px; border: 1px solid #e5e7eb;"


def _esc(value: Any) -> str:
    return html.escape("" if value is None else str(value))


def sheet_anchor(tab_name: str) -> str:
    return "sheet-" + (_ANCHOR_CHARS.sub("-", tab_name).strip("-") or "sheet")


def style_css(style: Style, numeric: bool = False) -> str:
    """Inline CSS for one cell."""
    parts = []
    if style.bg:
        parts.append(f"background: #{style.bg};")
    if style.color:
        parts.append(f"color: #{style.color};")
    if style.bold:
        parts.append("font-weight: 700;")
    if style.italic:
        parts.append("font-style: italic;")
    if style.underline:
        parts.append("text-decoration: underline;")
    if style.font_size:
        parts.append(f"font-size: {style.font_size:g}pt;")
    if style.font_name:
        parts.append(f"font-family: '{_esc(style.font_name)}';")
    align = style.align or ("right" if numeric else None)
    if align:
        parts.append(f"text-align: {align};")
    if style.valign:
        parts.append(f"vertical-align: {style.valign};")
    if style.border:
        parts.append(_BORDER_CSS[style.border])
    if style.wrap_text:
        parts.append("white-space: pre-wrap;")
    return " ".join(p for p in parts if p)


def _cell_content(cell: Cell, grouping: str) -> str:
    text = display_value(cell, grouping)
    if isinstance(cell, HyperlinkCell):
        if cell.is_internal:
            target = cell.url[1:].split("!", 1)[0].strip("'")
            href = "#" + sheet_anchor(target)
        elif _SAFE_LINK.match(cell.url.strip()):
            href = cell.url.strip()
        else:
            return _esc(text)
        return f'<a href="{_esc(href)}">{_esc(text)}</a>'
    return _esc(text)


def _row_html(row: RowView, column_count: int, grouping: str) -> str:
    if row.row_type == RowType.EMPTY and all(isinstance(c, EmptyCell) for c in row.cells):
        return f'<tr><td colspan="{column_count}" style="height: 14px;">&nbsp;</td></tr>'

    tag = "th" if row.row_type == RowType.HEADER else "td"
    height = f' style="height: {row.style.row_height:g}px;"' if row.style.row_height else ""

    if row.merged:
        cell = row.cells[0]
        css = style_css(row.style, is_numeric(cell))
        if row.style.indent:
            css += f" padding-left: {row.style.indent * INDENT_PX}px;"
        return (
            f'<tr{height}><{tag} colspan="{row.span}" style="{_CELL_CSS} {css}">'
            f"{_cell_content(cell, grouping)}</{tag}></tr>"
        )

    cells = list(row.cells) + [EmptyCell()] * (column_count - len(row.cells))
    out = []
    for index, cell in enumerate(cells):
        css = style_css(row.style, is_numeric(cell))
        if index == 0 and row.style.indent:
            css += f" padding-left: {row.style.indent * INDENT_PX}px;"
        out.append(f'<{tag} style="{_CELL_CSS} {css}">{_cell_content(cell, grouping)}</{tag}>')
    return f"<tr{height}>" + "".join(out) + "</tr>"


def _list_items(items: Iterable[Any]) -> str:
    return "".join(f"<li>{_esc(item)}</li>" for item in items if item is not None)


def paragraph_item_html(item: ParagraphItem) -> str:
    """One paragraph block by type; unknown types render as a paragraph."""
    css = style_css(item.style)
    attr = f' style="{css}"' if css else ""
    text = _esc(item.text)
    kind = item.type
    if kind == "heading":
        return f"<h3{attr}>{text}</h3>"
    if kind == "subheading":
        return f"<h4{attr}>{text}</h4>"
    if kind == "bullet_list":
        lead = f"<p{attr}>{text}</p>" if item.text else ""
        return f"{lead}<ul{attr}>{_list_items(item.items)}</ul>"
    if kind == "numbered_list":
        lead = f"<p{attr}>{text}</p>" if item.text else ""
        return f"{lead}<ol{attr}>{_list_items(item.items)}</ol>"
    if kind == "quote":
        return f'<blockquote style="border-left: 3px solid #9ca3af; padding-left: 12px; color: #4b5563; {css}">{text}</blockquote>'
    if kind == "signature_block":
        return f'<p style="text-align: right; margin-top: 32px; {css}">{text}</p>'
    if kind == "table":
        rows = [r for r in item.items if isinstance(r, (list, tuple))]
        body = "".join(
            "<tr>" + "".join(f'<td style="{_CELL_CSS}">{_esc(v)}</td>' for v in r) + "</tr>"
            for r in rows
        )
        return f'<table style="{_TABLE_CSS}">{body}</table>'
    return f"<p{attr}>{text}</p>"


def render_sheet_html(view: SheetView, grouping: str = "international") -> str:
    """Header block plus either paragraph content or a styled table."""
    header = (
        f'<div style="background: #1e3a8a; color: white; padding: 8px 12px; font-weight: 600;">'
        f"{_esc(view.title)}</div>"
    )
    if view.is_paragraph:
        body = "".join(paragraph_item_html(item) for item in view.paragraph_items(grouping))
        body = f'<div style="padding: 12px; line-height: 1.6;">{body}</div>'
    else:
        rows = "".join(_row_html(row, view.column_count, grouping) for row in view.rows)
        body = f'<table style="{_TABLE_CSS}">{rows}</table>'

    page = ' class="landscape"' if view.landscape else ""
    return (
        f'<section id="{sheet_anchor(view.tab_name)}"{page} '
        f'style="margin-bottom: 24px;">{header}{body}</section>'
    )


def _as_views(sheets: Iterable[Union[SheetView, Dict[str, Any]]]) -> List[SheetView]:
    sheets = list(sheets or [])
    if all(isinstance(s, SheetView) for s in sheets):
        return sheets
    raw = [s.sheet.model_dump(by_alias=True) if isinstance(s, SheetView) else s for s in sheets]
    return interpret_report({"sheets": raw}).sheets


def render_sheets_html(sheets, grouping: str = "international") -> str:
    """HTML fragment for a sequence of sheets (views or raw sheet dicts)."""
    return "\n".join(render_sheet_html(view, grouping) for view in _as_views(sheets))


# =============================================================================
# Full document
# =============================================================================

def _section(title: str, body: str) -> str:
    if not body:
        return ""
    return (
        f'<div style="margin-bottom: 24px;">'
        f'<h2 style="font-size: 16px; color: #111827; border-bottom: 2px solid #e5e7eb; '
        f'padding-bottom: 6px; margin-bottom: 10px;">{_esc(title)}</h2>{body}</div>'
    )


def _text_of(item: Any, keys: Iterable[str]) -> str:
    if isinstance(item, dict):
        for key in keys:
            if item.get(key):
                return str(item[key])
        return ", ".join(f"{k}: {v}" for k, v in item.items() if not isinstance(v, (dict, list)))
    return "" if item is None else str(item)


def _metadata_html(metadata: Dict[str, Any]) -> str:
    labels = [
        ("entityName", "Entity"),
        ("entityType", "Entity type"),
        ("financialYear", "Financial year"),
        ("assessmentYear", "Assessment year"),
        ("basis", "Basis"),
        ("currency", "Currency"),
        ("preparedBy", "Prepared by"),
        ("preparedDate", "Date"),
    ]
    cells = "".join(
        f'<div><span style="opacity: 0.7;">{label}:</span> {_esc(metadata[key])}</div>'
        for key, label in labels if metadata.get(key)
    )
    return f'<div style="display: grid; grid-template-columns: 1fr 1fr; gap: 4px; font-size: 13px;">{cells}</div>' if cells else ""


def _observations_html(observations: List[Any]) -> str:
    out = []
    for obs in observations:
        if isinstance(obs, dict):
            head = " | ".join(_esc(obs[k]) for k in ("category", "priority") if obs.get(k))
            rec = f'<p style="margin: 4px 0 0 0; color: #4b5563;">Recommendation: {_esc(obs["recommendation"])}</p>' if obs.get("recommendation") else ""
            out.append(
                f'<div style="border-left: 3px solid #3b82f6; padding: 6px 12px; margin-bottom: 8px;">'
                f'{"<strong>" + head + "</strong><br>" if head else ""}'
                f'{_esc(_text_of(obs, ("observation", "text")))}{rec}</div>'
            )
        elif obs:
            out.append(f"<p>{_esc(obs)}</p>")
    return "".join(out)


def _working_notes_html(notes: List[Any], grouping: str) -> str:
    out = []
    for note in notes:
        if not isinstance(note, dict):
            if note:
                out.append(f"<p>{_esc(note)}</p>")
            continue
        title = " ".join(str(note[k]) for k in ("noteNumber", "title") if note.get(k))
        rows = ""
        for step in note.get("steps") or []:
            if not isinstance(step, dict):
                continue
            amount = step.get("amount")
            shown = format_number(amount, grouping) if isinstance(amount, (int, float)) and not isinstance(amount, bool) else _esc(amount)
            rows += (
                f'<tr><td style="{_CELL_CSS}">{_esc(step.get("description"))}</td>'
                f'<td style="{_CELL_CSS} color: #6b7280;">{_esc(step.get("formula"))}</td>'
                f'<td style="{_CELL_CSS} text-align: right;">{shown}</td></tr>'
            )
        result = note.get("result")
        if isinstance(result, (int, float)) and not isinstance(result, bool):
            result = format_number(result, grouping)
        tail = f'<p style="font-weight: 700;">Result: {_esc(result)}</p>' if result is not None else ""
        table = f'<table style="{_TABLE_CSS}">{rows}</table>' if rows else ""
        out.append(f"<h4>{_esc(title)}</h4>{table}{tail}")
    return "".join(out)


def _validation_html(checks: List[Any], grouping: str) -> str:
    rows = ""
    for check in checks:
        if not isinstance(check, dict):
            rows += f'<tr><td style="{_CELL_CSS}" colspan="4">{_esc(check)}</td></tr>'
            continue
        cells = []
        for key in ("leftSide", "rightSide"):
            value = check.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                value = format_number(value, grouping)
            cells.append(f'<td style="{_CELL_CSS} text-align: right;">{_esc(value)}</td>')
        result = str(check.get("result") or "")
        color = "#16a34a" if result.upper() == "PASSED" else "#dc2626" if result else "#111827"
        rows += (
            f'<tr><td style="{_CELL_CSS}">{_esc(check.get("check"))}</td>{"".join(cells)}'
            f'<td style="{_CELL_CSS} color: {color}; font-weight: 600;">{_esc(result)}</td></tr>'
        )
    return f'<table style="{_TABLE_CSS}">{rows}</table>' if rows else ""


def _legal_html(legal: Optional[Dict[str, Any]]) -> str:
    if not legal:
        return ""
    parts = []
    if legal.get("title"):
        parts.append(f'<h2 style="text-align: center; text-transform: uppercase;">{_esc(legal["title"])}</h2>')
    if legal.get("preamble"):
        parts.append(f'<p style="text-align: justify;">{_esc(legal["preamble"])}</p>')
    parties = [p for p in legal.get("parties") or [] if isinstance(p, dict)]
    if parties:
        parts.append("<ol>" + "".join(
            f'<li><strong>{_esc(p.get("name"))}</strong> {_esc(p.get("designation"))}</li>' for p in parties
        ) + "</ol>")
    for clause in legal.get("clauses") or []:
        if not isinstance(clause, dict):
            continue
        heading = " ".join(_esc(clause[k]) for k in ("number", "title") if clause.get(k))
        parts.append(f"<h4>{heading}</h4><p>{_esc(clause.get('content'))}</p>")
        for sub in clause.get("subClauses") or []:
            if isinstance(sub, dict):
                parts.append(
                    f'<p style="padding-left: {INDENT_PX * 2}px;">'
                    f'{_esc(sub.get("number"))} {_esc(sub.get("content"))}</p>'
                )
    signatures = [s for s in legal.get("signatures") or [] if isinstance(s, dict)]
    if signatures:
        blocks = "".join(
            f'<div style="flex: 1; padding-top: 48px;">______________________<br>'
            f'{_esc(s.get("name") or s.get("party"))}<br>'
            f'<span style="color: #6b7280;">{_esc(s.get("designation") or s.get("party"))}</span></div>'
            for s in signatures
        )
        parts.append(f'<div style="display: flex; gap: 32px;">{blocks}</div>')
    return "".join(parts)


_PAGE_CSS = """
        @page { size: A4 portrait; margin: 12mm; }
        @page landscape { size: A4 landscape; margin: 12mm; }
        section.landscape { page: landscape; }
        @media print {
            body { background: white; }
            section { page-break-before: always; }
            section:first-of-type { page-break-before: auto; }
        }"""


def render_report_html(report, grouping: str = "international") -> str:
    """Complete printable HTML document for a report view or a raw document dict."""
    if not isinstance(report, ReportView):
        report = interpret_report(report if isinstance(report, dict) else None)
    doc = report.document
    metadata = doc.metadata

    highlights = _list_items(_text_of(h, ("text", "highlight")) for h in doc.highlights)
    assumptions = _list_items(_text_of(a, ("text", "assumption")) for a in doc.assumptions)
    paragraphs = "".join(paragraph_item_html(item) for item in doc.paragraph_content)
    error = (
        f'<div style="background: #fef2f2; color: #991b1b; padding: 12px; border-radius: 8px; margin-bottom: 24px;">'
        f"{_esc(doc.error_message or 'The report could not be fully recovered.')}</div>"
        if doc.error else ""
    )
    subtitle = metadata.get("reportTitleHindi") or metadata.get("reportType")

    return f'''<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{_esc(report.title)}</title>
    <style>
        * {{ box-sizing: border-box; }}
        body {{
            font-family: Calibri, -apple-system, 'Segoe UI', Roboto, sans-serif;
            color: #1e293b;
            line-height: 1.5;
            margin: 0;
        }}{_PAGE_CSS}
    </style>
</head>
<body>
    <div style="max-width: 1100px; margin: 0 auto; padding: 24px;">
        <div style="background: #1e3a8a; border-radius: 8px; padding: 24px; margin-bottom: 24px; color: white;">
            <h1 style="font-size: 24px; margin: 0 0 4px 0;">{_esc(report.title)}</h1>
            {f'<p style="margin: 0 0 12px 0; opacity: 0.85;">{_esc(subtitle)}</p>' if subtitle else ""}
            {_metadata_html(metadata)}
        </div>
        {error}
        {f'<p style="font-size: 15px; margin-bottom: 24px;">{_esc(doc.reply_text)}</p>' if doc.reply_text else ""}
        {_section("Highlights", f"<ul>{highlights}</ul>" if highlights else "")}
        {_section("Assumptions", f"<ul>{assumptions}</ul>" if assumptions else "")}
        {render_sheets_html(report.sheets, grouping)}
        {_section("Contents", paragraphs)}
        {_section("Agreement", _legal_html(doc.legal_document))}
        {_section("Working Notes", _working_notes_html(doc.working_notes, grouping))}
        {_section("Validation Checks", _validation_html(doc.validation_checks, grouping))}
        {_section("Observations", _observations_html(doc.observations))}
        <div style="text-align: center; padding: 16px; color: #6b7280; font-size: 11px; border-top: 1px solid #e5e7eb;">
            {_esc(metadata.get("preparedBy") or "Virtual CA")}
        </div>
    </div>
</body>
</html>'''
