#!/usr/bin/env python3
"""
role_check.py: fetch the internships README and print what the watcher would
extract, without touching state or sending email. Needs the package installed
(`pip install -e .`).

    python scripts/role_check.py
    python scripts/role_check.py --since https://example.com/apply/123 --max 20
    python scripts/role_check.py --file README.md --json
"""

import argparse
import json
import sys
from pathlib import Path

from modules.role_watch.lib.config import DEFAULT_SOURCE_URL
from modules.role_watch.lib.errors import SourceFetchError
from modules.role_watch.lib.extractor import MAX_ROLES, scan
from modules.role_watch.lib.http_client import HttpClient


# ----------------------------------------------------------------------
def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Print the roles the watcher would extract from the README",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--url", default=DEFAULT_SOURCE_URL, help="README URL to fetch")
    source.add_argument("--file", type=Path, help="Read a local copy instead of fetching")
    parser.add_argument("--since", default="", help="Previously sent head link; stop when reached")
    parser.add_argument("--max", type=int, default=MAX_ROLES, help="Maximum roles to keep")
    parser.add_argument("--timeout", type=float, default=15.0, help="Fetch timeout in seconds")
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of a table")
    return parser.parse_args()


# ----------------------------------------------------------------------
def load_document(args: argparse.Namespace) -> str:
    if args.file:
        return args.file.read_text(encoding="utf-8")
    with HttpClient(timeout=args.timeout) as client:
        return client.fetch_text(args.url)


# ----------------------------------------------------------------------
def main() -> int:
    args = parse_args()
    try:
        text = load_document(args)
    except (SourceFetchError, OSError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    report = scan(text, args.since, max_roles=args.max)

    if args.json:
        print(
            json.dumps(
                {
                    "section": report.section,
                    "rows_seen": report.rows_seen,
                    "rows_failed": report.rows_failed,
                    "stopped_at_marker": report.stopped_at_marker,
                    "filtered_out": report.filtered_out,
                    "truncated": report.truncated,
                    "roles": [r.as_dict() for r in report.roles],
                },
                indent=2,
                ensure_ascii=False,
            )
        )
        return 0

    if report.section is None:
        print("No table body found in the document.")
        return 0

    for i, role in enumerate(report.roles, 1):
        print(f"{i:>3}. {role.company:<28.28} {role.title:<48.48} {role.apply_link}")

    print()
    print(
        f"{len(report.roles)} role(s) | rows seen: {report.rows_seen} | failed: {len(report.rows_failed)}"
        f" | filtered: {report.filtered_out} | truncated: {report.truncated}"
        f" | stopped at marker: {report.stopped_at_marker}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
