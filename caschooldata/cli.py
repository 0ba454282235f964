#!/usr/bin/env python3
"""
Command-line interface for caschooldata

Usage:
    caschooldata fetch enrollment 2024 --output enr_2024.csv
    caschooldata fetch assessment 2019 2021 2022 --wide --output caaspp.parquet
    caschooldata fetch directory --output directory.csv
    caschooldata years graduation
    caschooldata cache status
    caschooldata cache clear --dataset enrollment --year 2024
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import pandas as pd

from caschooldata.common import get_settings, setup_logging
from caschooldata.errors import CaSchoolDataError
from caschooldata.pipeline import DATASETS, available_years, cache_status, clear_cache, fetch, fetch_multi

logger = logging.getLogger(__name__)


def write_output(df: pd.DataFrame, output: Optional[Path]):
    """Write to CSV or parquet by extension, or print a preview."""
    if output is None:
        print(df.head(20).to_string())
        print(f"\n{len(df):,} rows x {len(df.columns)} columns")
        return

    output.parent.mkdir(parents=True, exist_ok=True)
    if output.suffix == '.parquet':
        df.to_parquet(output, index=False)
    else:
        df.to_csv(output, index=False)
    logger.info(f"✓ Wrote {len(df):,} rows to {output}")


def cmd_fetch(args) -> int:
    options = {}
    if args.dataset == 'assessment':
        options = {'subject': args.subject, 'student_group': args.student_group}

    if not args.years or DATASETS[args.dataset].yearless:
        df = fetch(args.dataset, None, tidy=not args.wide, use_cache=not args.no_cache, **options)
        write_output(df, args.output)
        return 0

    result = fetch_multi(args.dataset, args.years, tidy=not args.wide,
                         use_cache=not args.no_cache, **options)
    for year, error in sorted(result.failed_years.items()):
        print(f"✗ {year}: {error}", file=sys.stderr)
    if result.data.empty:
        return 1
    write_output(result.data, args.output)
    return 0 if result.ok else 2


def cmd_years(args) -> int:
    years = available_years(args.dataset)
    if not years:
        print(f"{args.dataset}: current snapshot only")
    else:
        print(" ".join(str(y) for y in years))
    return 0


def cmd_cache(args) -> int:
    if args.cache_command == 'status':
        status = cache_status()
        if status.empty:
            print("Cache is empty")
        else:
            print(status.to_string(index=False))
        return 0

    removed = clear_cache(dataset=args.dataset, year=args.year)
    print(f"Removed {removed} cache file(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="caschooldata",
        description="Download and tidy California school data (CDE, CAASPP)",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "--log-level",
        help="DEBUG, INFO, WARNING or ERROR (default: CASCHOOLDATA_LOG_LEVEL or INFO)"
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Save log to file"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    fetch_parser = subparsers.add_parser("fetch", help="Fetch a dataset")
    fetch_parser.add_argument("dataset", choices=sorted(DATASETS))
    fetch_parser.add_argument(
        "years",
        nargs="*",
        type=int,
        help="School year end(s), e.g. 2024 for 2023-24 (omit for the directory)"
    )
    fetch_parser.add_argument(
        "--wide",
        action="store_true",
        help="Return the canonical wide table instead of the tidy one"
    )
    fetch_parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Bypass the local cache"
    )
    fetch_parser.add_argument(
        "--subject",
        choices=["Both", "ELA", "Math"],
        default="Both",
        help="Assessment subject (default: Both)"
    )
    fetch_parser.add_argument(
        "--student-group",
        choices=["ALL", "GROUPS"],
        default="ALL",
        help="Assessment student groups (default: ALL)"
    )
    fetch_parser.add_argument(
        "--output",
        type=Path,
        help="Write to .csv or .parquet instead of printing a preview"
    )
    fetch_parser.set_defaults(func=cmd_fetch)

    years_parser = subparsers.add_parser("years", help="List available years")
    years_parser.add_argument("dataset", choices=sorted(DATASETS))
    years_parser.set_defaults(func=cmd_years)

    cache_parser = subparsers.add_parser("cache", help="Inspect or clear the cache")
    cache_sub = cache_parser.add_subparsers(dest="cache_command", required=True)
    cache_sub.add_parser("status", help="Show cached files")
    clear_parser = cache_sub.add_parser("clear", help="Remove cached files")
    clear_parser.add_argument("--dataset", choices=sorted(DATASETS))
    clear_parser.add_argument("--year", type=int)
    cache_parser.set_defaults(func=cmd_cache)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Setup logging
    setup_logging(args.log_level or get_settings().log_level, log_file=args.log_file)

    try:
        return args.func(args)
    except CaSchoolDataError as e:
        logger.error(f"✗ {type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
