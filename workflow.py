#!/usr/bin/env python3
"""
Task Mode Workflow - recover a streamed report and export it

Recovers a ReportDocument from a saved raw response, or sends a task to the
task-mode endpoint and consumes the streamed reply live, then writes the
requested export files.

Usage:
    # Recover a saved (possibly truncated) response
    python workflow.py --input responses/balance_sheet.txt

    # Send a live task with attached data files
    python workflow.py --message "Prepare a balance sheet" --data tb.csv --ref notes.txt

    # Choose formats and output location
    python workflow.py --input raw.txt --formats xlsx,html,pdf --output-dir output/ --name BS_2024

Pipeline Steps:
    1. Input - raw text file, or live stream from the task endpoint
    2. Recovery - tiered JSON recovery (direct, extracted, repaired, reply only)
    3. Interpretation - sheets, typed cells, row styles, tab names
    4. Export - html, word, pdf, xlsx, json files
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from taskmode.config import Settings
from taskmode.exporters import EXPORT_FORMATS, ExportError, export_report
from taskmode.json_recovery import recover_report
from taskmode.observer import RequestObserver
from taskmode.stream_consumer import ProgressUpdate, StreamOutcome
from taskmode.task_client import SourceFile, run_task

logger = logging.getLogger("taskmode.workflow")

DEFAULT_FORMATS = "xlsx,html,json"


@dataclass
class WorkflowResult:
    """Result of one recovery/export run."""
    source: str
    success: bool
    tier: str = ""
    reply_text: str = ""
    sheets: int = 0
    output_files: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0


class TaskWorkflow:
    """Recovery and export pipeline for one report."""

    def __init__(self, settings: Settings, output_dir: Path = None, verbose: bool = True):
        self.settings = settings
        self.output_dir = output_dir or Path("output")
        self.verbose = verbose

    def _print(self, message: str):
        if self.verbose:
            print(message)

    def _on_progress(self, update: ProgressUpdate):
        if self.verbose:
            preview = (update.live_text or "").replace("\n", " ")[-60:]
            print(f"\r  [{update.percent:5.1f}%] {update.phase:<28} {preview}", end="", flush=True)

    def export(self, document, formats: Sequence[str], name: Optional[str], result: WorkflowResult,
               observer: RequestObserver):
        """Write each requested format; a failed format is recorded, not fatal."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        for fmt in formats:
            try:
                exported = export_report(
                    document, fmt, name=name, observer=observer,
                    grouping=self.settings.number_grouping,
                )
            except ExportError as e:
                result.errors.append(f"{fmt}: {e}")
                self._print(f"  ✗ {fmt}: {e}")
                continue
            path = self.output_dir / exported.filename
            path.write_bytes(exported.content)
            result.output_files.append(str(path))
            self._print(f"  ✓ {path} ({len(exported.content):,} bytes)")

    def _finish(self, result: WorkflowResult, document, formats, name, observer, start: datetime) -> WorkflowResult:
        if document is not None:
            sheets = document.get("sheets")
            result.sheets = len(sheets) if isinstance(sheets, list) else 0
            result.reply_text = str(document.get("replyText") or "")
            self.export(document, formats, name, result, observer)
        result.warnings = [f"{c.checkpoint}: {c.message}" for c in observer.warnings]
        result.success = document is not None and not result.errors
        result.duration_seconds = round((datetime.now() - start).total_seconds(), 2)
        return result

    def process_file(self, path: Path, formats: Sequence[str], name: Optional[str] = None) -> WorkflowResult:
        """Recover a saved raw response and export it."""
        start = datetime.now()
        observer = RequestObserver(name=path.name)
        result = WorkflowResult(source=str(path), success=False)

        self._print(f"\n📄 Recovering {path}")
        text = path.read_text(encoding="utf-8", errors="replace")
        recovery = recover_report(text, observer=observer, strict=self.settings.strict_repair)
        result.tier = recovery.tier.value
        self._print(f"  Recovery tier: {result.tier}")
        if not recovery.recovered:
            result.errors.append(recovery.error_message)

        return self._finish(result, recovery.document, formats, name or path.stem, observer, start)

    async def process_live(self, message: str, data_files: Sequence[Path], ref_files: Sequence[Path],
                           formats: Sequence[str], name: Optional[str] = None) -> WorkflowResult:
        """Send a task, consume the stream and export the recovered report."""
        start = datetime.now()
        observer = RequestObserver(name="live")
        result = WorkflowResult(source="live", success=False)

        raw = [SourceFile(p.name, p.read_text(encoding="utf-8", errors="replace")) for p in data_files]
        refs = [SourceFile(p.name, p.read_text(encoding="utf-8", errors="replace")) for p in ref_files]

        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler not available; Ctrl+C will abort without cleanup")

        self._print(f"\n🤖 Sending task to {self.settings.api_url}")
        try:
            stream = await run_task(
                message, raw, refs,
                settings=self.settings,
                on_progress=self._on_progress,
                cancel_event=cancel_event,
                observer=observer,
            )
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass
        self._print("")

        if stream.outcome != StreamOutcome.COMPLETED:
            result.errors.append(stream.display_text)
            return self._finish(result, None, formats, name, observer, start)

        # keep the raw body so the run can be replayed with --input
        self.output_dir.mkdir(parents=True, exist_ok=True)
        raw_path = self.output_dir / f"{name or 'response'}.raw.txt"
        raw_path.write_text(stream.raw_text, encoding="utf-8")
        result.output_files.append(str(raw_path))

        result.tier = stream.recovery.tier.value if stream.recovery else ""
        if stream.document is None:
            result.errors.append(stream.display_text)
        self._print(f"  {stream.display_text}")
        return self._finish(result, stream.document, formats, name, observer, start)


def parse_formats(value: str) -> List[str]:
    formats = [f.strip().lower() for f in value.split(",") if f.strip()]
    unknown = [f for f in formats if f not in EXPORT_FORMATS]
    if unknown:
        raise argparse.ArgumentTypeError(
            f"unknown format(s) {', '.join(unknown)}; choose from {', '.join(EXPORT_FORMATS)}"
        )
    return formats


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for workflow."""
    parser = argparse.ArgumentParser(
        description="Task Mode Workflow - recover a streamed report and export it",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python workflow.py --input raw.txt                      # Recover saved response
    python workflow.py --message "Prepare P&L" --data tb.csv  # Live task
    python workflow.py --input raw.txt --formats xlsx,pdf   # Pick formats
        """
    )

    # Input options
    input_group = parser.add_mutually_exclusive_group(required=True)
    input_group.add_argument("--input", type=Path, help="Saved raw response text to recover")
    input_group.add_argument("--message", help="Task to send to the task-mode endpoint")

    parser.add_argument("--data", type=Path, action="append", default=[],
                        help="Data file attached to a live task (repeatable)")
    parser.add_argument("--ref", type=Path, action="append", default=[],
                        help="Reference file attached to a live task (repeatable)")

    # Output options
    parser.add_argument("--formats", type=parse_formats, default=parse_formats(DEFAULT_FORMATS),
                        help=f"Comma-separated export formats (default: {DEFAULT_FORMATS})")
    parser.add_argument("--output-dir", type=Path, default=Path("output"),
                        help="Output directory (default: output/)")
    parser.add_argument("--name", help="Base name for output files")

    # Processing options
    parser.add_argument("--strict", action="store_true", help="Enable stack-based structural repair")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--quiet", action="store_true", help="Suppress progress output")

    args = parser.parse_args(argv)

    settings = Settings.from_env()
    if args.strict:
        settings.strict_repair = True
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    workflow = TaskWorkflow(settings, output_dir=args.output_dir, verbose=not args.quiet)

    if args.input:
        if not args.input.exists():
            print(f"Error: input not found: {args.input}")
            return 1
        result = workflow.process_file(args.input, args.formats, args.name)
    else:
        missing = [p for p in args.data + args.ref if not p.exists()]
        if missing:
            print(f"Error: attached file not found: {missing[0]}")
            return 1
        result = asyncio.run(
            workflow.process_live(args.message, args.data, args.ref, args.formats, args.name)
        )

    summary_path = args.output_dir / f"{args.name or 'workflow'}_summary.json"
    args.output_dir.mkdir(parents=True, exist_ok=True)
    summary_path.write_text(json.dumps(asdict(result), indent=2, ensure_ascii=False), encoding="utf-8")

    if not args.quiet:
        print(f"\n{'=' * 60}")
        print(f"  Status:   {'SUCCESS' if result.success else 'FAILED'}")
        print(f"  Tier:     {result.tier or 'n/a'}")
        print(f"  Sheets:   {result.sheets}")
        print(f"  Files:    {len(result.output_files)}")
        print(f"  Warnings: {len(result.warnings)}")
        for error in result.errors:
            print(f"  Error:    {error}")
        print(f"  Duration: {result.duration_seconds}s")
        print(f"{'=' * 60}")

    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
