"""
Export of a recovered report to downloadable files.

Formats: html, word (HTML served as an msword document), pdf (weasyprint),
xlsx (native workbook) and json (the recovered document itself).
"""

import html
import io
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .excel_emitter import build_workbook
from .html_renderer import render_report_html
from .interpreter import ReportView, interpret_report
from .observer import RequestObserver, ensure_observer


logger = logging.getLogger(__name__)

# format -> (extension, media type)
EXPORT_FORMATS = {
    "html": ("html", "text/html; charset=utf-8"),
    "word": ("doc", "application/msword"),
    "pdf": ("pdf", "application/pdf"),
    "xlsx": ("xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
    "json": ("json", "application/json"),
}

_UNSAFE_FILENAME = re.compile(r'[\\/:*?"<>|\x00-\x1f]+')


class ExportError(Exception):
    """Raised when a report cannot be exported in the requested format."""
    pass


@dataclass
class ExportFile:
    filename: str
    media_type: str
    content: bytes


def safe_filename(name: Optional[str], default: str = "Report") -> str:
    cleaned = _UNSAFE_FILENAME.sub("", name or "").strip().replace(" ", "_")
    # callers add the extension
    cleaned = re.sub(r"\.(xlsx|html?|docx?|pdf|json)$", "", cleaned, flags=re.IGNORECASE)
    return cleaned or default


def export_html(report: ReportView, grouping: str = "international") -> bytes:
    return render_report_html(report, grouping).encode("utf-8")


def export_word(report: ReportView, grouping: str = "international") -> bytes:
    """HTML wrapped for Word; Word opens it as a document."""
    page = render_report_html(report, grouping)
    body = page.split("<body>", 1)[-1].rsplit("</body>", 1)[0]
    wrapped = (
        "<html xmlns:o='urn:schemas-microsoft-com:office:office' "
        "xmlns:w='urn:schemas-microsoft-com:office:word' "
        "xmlns='http://www.w3.org/TR/REC-html40'>"
        f"<head><meta charset='utf-8'><title>{html.escape(report.title)}</title></head>"
        f"<body>{body}</body></html>"
    )
    return wrapped.encode("utf-8")


def export_pdf(report: ReportView, grouping: str = "international") -> bytes:
    """Render the printable HTML to PDF with weasyprint."""
    try:
        from weasyprint import HTML
    except ImportError as e:
        raise ExportError("PDF export requires weasyprint (pip install 'virtual-ca-taskmode[pdf]')") from e

    html_content = render_report_html(report, grouping)
    pdf_buffer = io.BytesIO()
    HTML(string=html_content).write_pdf(pdf_buffer)
    return pdf_buffer.getvalue()


def export_xlsx(report: ReportView, observer: Optional[RequestObserver] = None, grouping: str = "international") -> bytes:
    if not report.sheets:
        raise ExportError("Report has no sheets to export")
    return build_workbook(report, observer=observer, grouping=grouping)


def export_json(document: Dict[str, Any]) -> bytes:
    return json.dumps(document, indent=2, ensure_ascii=False, default=str).encode("utf-8")


def export_report(
    document: Optional[Dict[str, Any]],
    fmt: str,
    name: Optional[str] = None,
    observer: Optional[RequestObserver] = None,
    grouping: str = "international",
) -> ExportFile:
    """Export one recovered document in the requested format."""
    fmt = (fmt or "").strip().lower()
    if fmt not in EXPORT_FORMATS:
        raise ExportError(f"Unsupported format '{fmt}'. Use one of: {', '.join(EXPORT_FORMATS)}")
    if not isinstance(document, dict):
        raise ExportError("Nothing to export: the report could not be recovered")

    obs = ensure_observer(observer, "export")
    extension, media_type = EXPORT_FORMATS[fmt]
    report = interpret_report(document, observer=obs)
    filename = f"{safe_filename(name, safe_filename(report.title))}.{extension}"

    if fmt == "html":
        content = export_html(report, grouping)
    elif fmt == "word":
        content = export_word(report, grouping)
    elif fmt == "pdf":
        content = export_pdf(report, grouping)
    elif fmt == "xlsx":
        content = export_xlsx(report, observer=obs, grouping=grouping)
    else:
        content = export_json(document)

    obs.log("EXPORTED", f"Exported {fmt}", {"filename": filename, "bytes": len(content)})
    return ExportFile(filename=filename, media_type=media_type, content=content)
