"""
Legacy stage report - count specimens per stage from a JSON export of the
legacy vl_samples or dbs_samples tables.

Rows are normalized through the legacy adapters and counted with the same
resolver the API uses, so the numbers match the dashboard.
"""

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from specimen_tracking.adapters.legacy_rows import (
    LegacyRowError,
    from_eid_row,
    from_viral_load_row,
    parse_program,
)
from specimen_tracking.domain.counters import count_by_stage
from specimen_tracking.domain.model import Program, Stage
from specimen_tracking.domain.status import stage_label

logger = logging.getLogger(__name__)

ROW_ADAPTERS = {
    Program.VIRAL_LOAD: from_viral_load_row,
    Program.EID: from_eid_row,
}


def load_rows(path: Path) -> List[Dict[str, Any]]:
    """Load exported rows; accepts a JSON list or {"rows": [...]}."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("rows", [])
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list of rows")
    return data


def build_report(rows: List[Dict[str, Any]], program: Program, strict: bool = False) -> Dict[str, Any]:
    """
    Normalize rows and count them per stage.

    Rows without an identifier or request date are skipped (and counted as
    skipped) unless strict is set.
    """
    adapter = ROW_ADAPTERS[program]
    specimens = []
    skipped = 0

    for row in rows:
        try:
            specimens.append(adapter(row))
        except LegacyRowError as e:
            if strict:
                raise
            logger.warning(f"Skipping legacy row: {e}")
            skipped += 1

    counts = count_by_stage(specimens)
    return {
        "program": program.value,
        "total": len(specimens),
        "skipped": skipped,
        "counts": {stage.value: count for stage, count in counts.items()},
    }


def _print_report(report: Dict[str, Any]) -> None:
    print("\n" + "=" * 60)
    print(f"Stage counts for {report['program']}")
    print("=" * 60)
    for stage_value, count in report["counts"].items():
        print(f"  {stage_label(Stage(stage_value)):<26} {count}")
    print(f"  {'Total':<26} {report['total']}")
    if report["skipped"]:
        print(f"  {'Skipped rows':<26} {report['skipped']}")
    print("=" * 60 + "\n")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Count legacy specimens per workflow stage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Viral load export
  %(prog)s --program viral-load vl_samples.json

  # EID export as JSON for a dashboard import
  %(prog)s --program eid dbs_samples.json --json
        """
    )

    parser.add_argument("export", type=Path, help="JSON export of legacy sample rows")
    parser.add_argument(
        "-p", "--program",
        required=True,
        help="Testing program of the export: viral-load or eid"
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail on the first row that cannot be normalized"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON"
    )

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    program = parse_program(args.program)
    if program is None:
        parser.error(f"unknown program: {args.program}")
    if not args.export.exists():
        parser.error(f"export file not found: {args.export}")

    try:
        report = build_report(load_rows(args.export), program, strict=args.strict)
    except (LegacyRowError, ValueError) as e:
        logger.error(f"Failed to build report: {e}")
        return 1

    if args.json:
        print(json.dumps(report, indent=2))
    else:
        _print_report(report)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
