from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Union

from packages.core.config import ReconcilerSettings
from packages.core.render.markdown import render_partial_md, render_summary_md
from packages.core.schemas.result import PartialSummary, PatientSummary
from packages.ingest.extraction.loader import load_extraction_dir
from packages.pipeline.reconciler import RecordReconciler
from packages.pipeline.store import FileSnapshotStore


def _render_markdown(result: Union[PatientSummary, PartialSummary]) -> str:
    if isinstance(result, PartialSummary):
        return render_partial_md(result)
    return render_summary_md(result)


def _write_markdown_report(path: Path, result: Union[PatientSummary, PartialSummary]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_render_markdown(result), encoding="utf-8")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Reconcile extraction results for one patient into a snapshot."
    )
    parser.add_argument("path", type=Path, help="Extraction JSON file or directory of files.")
    parser.add_argument("--patient-id", required=True, help="Patient the documents belong to.")
    parser.add_argument("--format", choices=["json", "md"], default="json")
    parser.add_argument("--out", type=Path, help="Output path for markdown report.")
    parser.add_argument(
        "--snapshot-dir",
        type=Path,
        help="Persist snapshots under this directory (defaults to RECONCILER_SNAPSHOT_DIR).",
    )
    parser.add_argument("--verbose", action="store_true", help="Log pipeline progress.")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.format == "md" and args.out is None:
        print("Error: --out is required when --format md is used.", file=sys.stderr)
        return 2

    try:
        settings = ReconcilerSettings.from_env()
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    try:
        fetchers = load_extraction_dir(args.path)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    snapshot_dir: Optional[Path] = args.snapshot_dir or settings.snapshot_dir
    snapshot_store = FileSnapshotStore(snapshot_dir) if snapshot_dir else None
    reconciler = RecordReconciler(settings, snapshot_store=snapshot_store)

    reconciler.ingest_documents(args.patient_id, fetchers)
    result = reconciler.aggregate(args.patient_id)

    if args.format == "json":
        print(result.model_dump_json())
    else:
        _write_markdown_report(args.out, result)
        print(f"Markdown report written to {args.out}")

    return 1 if isinstance(result, PartialSummary) else 0


if __name__ == "__main__":
    raise SystemExit(main())
