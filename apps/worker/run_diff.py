from __future__ import annotations

import argparse
import sys
from pathlib import Path

from packages.core.errors import SnapshotNotFound
from packages.core.render.markdown import render_diff_md
from packages.pipeline.reconciler import RecordReconciler
from packages.pipeline.store import FileSnapshotStore


def main() -> int:
    parser = argparse.ArgumentParser(description="Show what changed between two snapshots.")
    parser.add_argument("snapshot_dir", type=Path, help="Directory holding stored snapshots.")
    parser.add_argument("patient_id", help="Patient whose snapshots to compare.")
    parser.add_argument("from_version", type=int)
    parser.add_argument("to_version", type=int)
    parser.add_argument("--format", choices=["json", "md"], default="json")
    args = parser.parse_args()

    if not args.snapshot_dir.is_dir():
        print(f"Error: snapshot directory not found: {args.snapshot_dir}", file=sys.stderr)
        return 2

    reconciler = RecordReconciler(snapshot_store=FileSnapshotStore(args.snapshot_dir))
    try:
        diff = reconciler.get_diff(args.patient_id, args.from_version, args.to_version)
    except (SnapshotNotFound, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    if args.format == "json":
        print(diff.model_dump_json())
    else:
        print(render_diff_md(diff), end="")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
