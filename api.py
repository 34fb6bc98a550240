#!/usr/bin/env python3
"""
Virtual CA Task Mode API Server

FastAPI application that recovers streamed task-mode reports and exports
them as files. Designed to be called from the task-mode front end.

Usage:
    # Start the server
    uvicorn api:app --host 0.0.0.0 --port 8000 --reload

    # Or run directly
    python api.py

Endpoints:
    POST /api/parse          - Recover a report from raw response text
    POST /api/stream-excel   - Build an .xlsx workbook from sheets
    POST /api/export/{fmt}   - Export a report as html, word, pdf, xlsx or json
    GET  /health             - Health check endpoint
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field

# Load environment variables
load_dotenv()

from taskmode.config import Settings
from taskmode.excel_emitter import build_workbook
from taskmode.exporters import EXPORT_FORMATS, ExportError, export_report, safe_filename
from taskmode.interpreter import interpret_report
from taskmode.json_recovery import recover_report
from taskmode.observer import RequestObserver

settings = Settings.from_env()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("taskmode.api")

VERSION = "1.0.0"
XLSX_MEDIA_TYPE = EXPORT_FORMATS["xlsx"][1]


class ParseRequest(BaseModel):
    """Raw response text as received from the task endpoint."""
    text: str
    strict: Optional[bool] = None


class ParseResponse(BaseModel):
    tier: str
    recovered: bool
    degraded: bool
    document: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    warnings: List[Dict[str, Any]] = Field(default_factory=list)


class StreamExcelRequest(BaseModel):
    """Body the front end posts to /api/stream-excel."""
    model_config = ConfigDict(populate_by_name=True)

    sheets: List[Dict[str, Any]] = Field(default_factory=list)
    file_name: Optional[str] = Field(default=None, alias="fileName")
    named_ranges: List[Dict[str, Any]] = Field(default_factory=list, alias="namedRanges")


class ExportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document: Optional[Dict[str, Any]] = None
    file_name: Optional[str] = Field(default=None, alias="fileName")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting Task Mode API Server (grouping=%s, strict_repair=%s)",
                settings.number_grouping, settings.strict_repair)
    yield
    logger.info("Shutting down Task Mode API Server")


# Create FastAPI app
app = FastAPI(
    title="Virtual CA Task Mode API",
    description="Recover streamed AI reports and export them as HTML, Word, PDF, Excel or JSON",
    version=VERSION,
    lifespan=lifespan
)

# Configure CORS for front-end access
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def content_disposition(filename: str) -> str:
    """Attachment header with an ASCII fallback name plus the UTF-8 name (RFC 5987)."""
    stem, ext = os.path.splitext(filename)
    fallback = stem.encode("ascii", "ignore").decode("ascii").strip("_") or "Report"
    header = f'attachment; filename="{fallback}{ext}"'
    if not filename.isascii():
        header += f"; filename*=UTF-8''{quote(filename, safe='')}"
    return header


def _attachment(content: bytes, media_type: str, filename: str, observer: RequestObserver) -> Response:
    headers = {"Content-Disposition": content_disposition(filename)}
    if observer.warnings:
        headers["X-Export-Warnings"] = str(len(observer.warnings))
    return Response(content=content, media_type=media_type, headers=headers)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": VERSION,
        "task_endpoint": settings.api_url,
        "number_grouping": settings.number_grouping,
        "formats": list(EXPORT_FORMATS),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.post("/api/parse", response_model=ParseResponse)
async def parse_response(request: ParseRequest):
    """Recover a ReportDocument from raw (possibly truncated) response text."""
    observer = RequestObserver(name="parse")
    strict = settings.strict_repair if request.strict is None else request.strict
    result = recover_report(request.text, observer=observer, strict=strict)

    return ParseResponse(
        tier=result.tier.value,
        recovered=result.recovered,
        degraded=result.degraded,
        document=result.document,
        error_message=result.error_message,
        warnings=[c.to_dict() for c in observer.warnings],
    )


@app.post("/api/stream-excel")
async def stream_excel(request: StreamExcelRequest):
    """Build a native workbook from the sheets of a recovered report."""
    if not request.sheets:
        raise HTTPException(status_code=400, detail="No sheets to export")

    observer = RequestObserver(name="stream-excel")
    report = interpret_report({"sheets": request.sheets, "namedRanges": request.named_ranges}, observer=observer)
    if not report.sheets:
        raise HTTPException(status_code=422, detail="None of the sheets could be read")

    try:
        content = build_workbook(report, observer=observer, grouping=settings.number_grouping)
    except Exception as e:
        logger.exception("Workbook generation failed")
        raise HTTPException(status_code=500, detail=f"Workbook generation failed: {str(e)}")

    filename = f"{safe_filename(request.file_name)}.xlsx"
    return _attachment(content, XLSX_MEDIA_TYPE, filename, observer)


@app.post("/api/export/{fmt}")
async def export_document(fmt: str, request: ExportRequest):
    """Export a recovered document in one of the supported formats."""
    if fmt not in EXPORT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid format. Must be one of: {', '.join(EXPORT_FORMATS)}"
        )
    if request.document is None:
        raise HTTPException(status_code=400, detail="Request has no document to export")

    observer = RequestObserver(name=f"export-{fmt}")
    try:
        exported = export_report(
            request.document,
            fmt,
            name=request.file_name,
            observer=observer,
            grouping=settings.number_grouping,
        )
    except ExportError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return _attachment(exported.content, exported.media_type, exported.filename, observer)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("TASKMODE_API_PORT", 8000))
    host = os.getenv("TASKMODE_API_HOST", "0.0.0.0")

    print(f"""
    ╔══════════════════════════════════════════════════════════════╗
    ║              Virtual CA Task Mode API v{VERSION}                 ║
    ║            Report Recovery & Export Service                  ║
    ╚══════════════════════════════════════════════════════════════╝

    Starting server at http://{host}:{port}

    Endpoints:
      POST /api/parse          - Recover report from raw text
      POST /api/stream-excel   - Sheets to .xlsx
      POST /api/export/{{fmt}}   - html | word | pdf | xlsx | json
      GET  /health             - Health check

    Documentation: http://{host}:{port}/docs
    """)

    uvicorn.run(app, host=host, port=port)
