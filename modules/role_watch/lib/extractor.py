"""
Row extraction for the watched README table.

The README keeps its listings inside one HTML ``<table>`` with one ``<tr>`` per
posting, newest first. We only look at the first ``<tbody>`` block, parse each
row on its own, and stop as soon as we reach the row we notified about last
time.

Checkpoint logging is left to the caller: ``scan`` returns a ``ScanReport``
with everything worth recording.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator

from bs4 import BeautifulSoup

from .errors import RowParseError
from .models import Role, ScanReport

LOG = logging.getLogger(__name__)

MAX_ROLES = 100

# Company cell used by the README for "same company as the row above".
CONTINUATION_MARK = "↳"
NOT_AVAILABLE = "N/A"

_SECTION_OPEN = re.compile(r"<tbody\b[^>]*>", re.IGNORECASE)
_SECTION_CLOSE = re.compile(r"</tbody\s*>", re.IGNORECASE)
_ROW_OPEN = re.compile(r"<tr\b[^>]*>", re.IGNORECASE)
_ROW_CLOSE = re.compile(r"</tr\s*>", re.IGNORECASE)


# ---- Public API -------------------------------------------------------------


def extract(document_text: str, previous_link: str = "", *, max_roles: int = MAX_ROLES) -> list[Role]:
    """
    Return the roles newer than `previous_link`, in document order.

    Never raises: an unexpected failure yields an empty list so a bad document
    cannot take down the run.
    """
    try:
        return scan(document_text, previous_link, max_roles=max_roles).roles
    except Exception:
        LOG.exception("Role extraction failed; treating document as empty")
        return []


def scan(document_text: str, previous_link: str = "", *, max_roles: int = MAX_ROLES) -> ScanReport:
    """
    Same algorithm as `extract`, but returns the full ScanReport and lets
    unexpected errors propagate.
    """
    report = ScanReport()
    lines = document_text.splitlines()

    section = find_section(lines)
    if section is None:
        return report
    report.section = section
    start, end = section

    accumulated: list[Role] = []
    for index, fragment in enumerate(iter_row_fragments(lines[start:end])):
        try:
            role = parse_row(fragment)
        except RowParseError as e:
            report.rows_failed.append((index, str(e)))
            continue
        report.rows_seen += 1

        if previous_link and role.apply_link == previous_link:
            report.stopped_at_marker = True
            break
        accumulated.append(role)

    valid = filter_valid(accumulated)
    report.filtered_out = len(accumulated) - len(valid)
    report.roles = valid[:max_roles]
    report.truncated = len(valid) - len(report.roles)
    return report


def find_section(lines: list[str]) -> tuple[int, int] | None:
    """
    Return the half-open (start, end) line range of the table body.

    The most recent ``<tbody>`` seen wins; the range closes at the first
    ``</tbody>`` after it. An unclosed body runs to the end of the document.
    """
    start: int | None = None
    for i, line in enumerate(lines):
        if _SECTION_OPEN.search(line):
            start = i
        if start is not None and _SECTION_CLOSE.search(line):
            return (start, i)
    if start is None:
        return None
    return (start, len(lines))


def iter_row_fragments(lines: list[str]) -> Iterator[str]:
    """Yield each ``<tr> ... </tr>`` block (inclusive) as one markup string."""
    open_at: int | None = None
    for i, line in enumerate(lines):
        if _ROW_OPEN.search(line):
            open_at = i
        if open_at is not None and _ROW_CLOSE.search(line):
            yield "\n".join(lines[open_at : i + 1])
            open_at = None


def parse_row(fragment: str) -> Role:
    """
    Map one row to a Role by position:
    column 1 = company, column 2 = title, first link in column 4 = apply link.
    """
    try:
        soup = BeautifulSoup(fragment, "html.parser")
        tr = soup.find("tr")
        if tr is None:
            raise RowParseError("no <tr> element in row fragment")

        company_td = tr.select_one("td:nth-child(1)")
        title_td = tr.select_one("td:nth-child(2)")
        link_a = tr.select_one("td:nth-child(4) a")
    except RowParseError:
        raise
    except Exception as e:
        raise RowParseError(f"unparseable row: {e!r}") from e

    company = company_td.get_text().strip() if company_td else ""
    title = title_td.get_text().strip() if title_td else ""
    href = link_a.get("href") if link_a else None
    apply_link = href if isinstance(href, str) else ""
    return Role(company=company, title=title, apply_link=apply_link)


def is_valid_role(role: Role) -> bool:
    if not role.company or role.company == NOT_AVAILABLE:
        return False
    if "utm_source" in role.company or role.company == CONTINUATION_MARK:
        return False
    if not role.title or role.title == NOT_AVAILABLE or CONTINUATION_MARK in role.title:
        return False
    return bool(role.apply_link) and role.apply_link != NOT_AVAILABLE


def filter_valid(roles: Iterable[Role]) -> list[Role]:
    return [r for r in roles if is_valid_role(r)]
