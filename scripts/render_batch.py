#!/usr/bin/env python3
"""
CLI entry point for rendering a batch from files.

Usage:
    python -m scripts.render_batch template.json recipients.csv --format postcard_4x6
    python -m scripts.render_batch template.json recipients.csv --merged --concurrency 8
    python -m scripts.render_batch --list-formats
"""

import argparse
import asyncio
import csv
import json
import sys
from pathlib import Path
from typing import Dict, List

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def load_template(path: Path):
    from dm_render.models import Template

    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if "id" not in data:
        data["id"] = Path(path).stem
    return Template.from_dict(data)


def load_recipients(path: Path) -> List[Dict[str, str]]:
    """Read a CSV with a header row; blank rows are skipped, order kept."""
    with open(path, newline="", encoding="utf-8-sig") as f:
        rows = [
            {key.strip(): (value or "").strip() for key, value in row.items() if key}
            for row in csv.DictReader(f)
        ]
    return [row for row in rows if any(row.values())]


async def run(args) -> int:
    from dm_render.batch import BatchOrchestrator, LocalOutputStore, SQLiteBatchRepository
    from dm_render.config.settings import settings
    from dm_render.models import OutputMode
    from dm_render.render_engine import build_surface_provider

    template = load_template(args.template)
    recipients = load_recipients(args.recipients)
    mode = OutputMode.MERGED if args.merged else OutputMode.ONE_FILE_PER_RECIPIENT

    store = SQLiteBatchRepository() if args.persist else None
    output_store = LocalOutputStore(output_dir=args.output_dir) if args.output_dir else None

    async with build_surface_provider(settings) as pool:
        orchestrator = BatchOrchestrator(
            pool,
            store=store,
            output_store=output_store,
            zip_outputs=args.zip or None,
        )
        try:
            job = await orchestrator.run_batch(
                template,
                recipients,
                args.format,
                mode=mode,
                concurrency=args.concurrency,
                callback_url=args.callback_url,
            )
        finally:
            await orchestrator.shutdown()

    print(f"Batch {job.id}: {job.state.value}")
    print(f"  succeeded: {job.completed_count}/{job.total_recipients}")
    print(f"  failed:    {job.failed_count}")
    for document in job.documents:
        print(f"  -> {document.path}")
    if job.archive_path:
        print(f"  archive: {job.archive_path}")

    failures = [r for r in job.results if r is not None and not r.success]
    if failures:
        print(f"\nFailures ({len(failures)}):")
        for result in failures:
            print(f"  - #{result.recipient_index}: {result.error_kind.value}: {result.error_message}")

    return 0 if job.failed_count == 0 else 1


def main():
    parser = argparse.ArgumentParser(description="dm-render - Batch personalized PDF rendering")
    parser.add_argument("template", nargs="?", type=Path, help="Template JSON file")
    parser.add_argument("recipients", nargs="?", type=Path, help="Recipients CSV file")
    parser.add_argument("--format", default="postcard_4x6", help="Print format name")
    parser.add_argument("--merged", action="store_true", help="One merged PDF instead of one per recipient")
    parser.add_argument("--concurrency", type=int, default=None, help="Work items in flight")
    parser.add_argument("--output-dir", type=Path, default=None, help="Output directory")
    parser.add_argument("--zip", action="store_true", help="Also write a ZIP of per-recipient PDFs")
    parser.add_argument("--persist", action="store_true", help="Record batch progress in SQLite")
    parser.add_argument("--callback-url", default=None, help="Webhook for the completion event")
    parser.add_argument("--list-formats", action="store_true", help="List print formats and exit")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    args = parser.parse_args()

    from dm_render.config import settings, setup_logging
    from dm_render.errors import RenderEngineError
    from dm_render.print_formats import default_registry

    setup_logging(args.log_level or settings.log_level, settings.log_file)

    if args.list_formats:
        registry = default_registry()
        for name in registry.names():
            fmt = registry.lookup(name)
            width, height = fmt.pixel_size
            print(f"{name:16} {fmt.width}x{fmt.height}in  bleed {fmt.bleed}in  {fmt.dpi}dpi  ({width}x{height}px)")
        return

    if not args.template or not args.recipients:
        parser.error("template and recipients are required")

    try:
        sys.exit(asyncio.run(run(args)))
    except RenderEngineError as e:
        print(f"Error [{e.kind.value}]: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
