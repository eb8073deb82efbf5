from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from . import utils
from .models import Role

DEFAULT_SUBJECT = "🚀 Top {count} Software Engineering Internships - Summer 2026"
DEFAULT_HEADING = "🚀 Software Engineering Internship Roles - Summer 2026"
DEFAULT_SOURCE_LABEL = "SimplifyJobs Summer 2026 Internships"
DEFAULT_SOURCE_PAGE = "https://github.com/SimplifyJobs/Summer2026-Internships"

_STYLE = """
    body { font-family: Arial, sans-serif; margin: 20px; line-height: 1.6; }
    h1 { color: #333; margin-bottom: 10px; }
    .summary { background-color: #e7f3ff; padding: 15px; border-radius: 5px; margin-bottom: 20px; font-size: 14px; }
    .job-item { margin: 8px 0; font-size: 16px; }
    .job-link { color: #0066cc; text-decoration: underline; }
    .footer { margin-top: 30px; color: #666; font-size: 14px; }
"""


def build_subject(roles: Sequence[Role], template: str | None = None) -> str:
    """`template` may reference {count}; anything else is used verbatim."""
    tpl = template or DEFAULT_SUBJECT
    try:
        return tpl.format(count=len(roles))
    except (KeyError, IndexError, ValueError):
        return tpl


def build_list(roles: Sequence[Role]) -> str:
    """
    One line per role:
      <div class="job-item"><span class="company">Acme:</span> <a href="...">SWE Intern</a></div>
    """
    items: list[str] = []
    for r in roles:
        if r.apply_link:
            job = f'<a href="{utils.esc(r.apply_link)}" target="_blank" class="job-link">{utils.esc(r.title)}</a>'
        else:
            job = utils.esc(r.title)
        items.append(f'<div class="job-item"><span class="company">{utils.esc(r.company)}:</span> {job}</div>')
    return '<div class="job-list">\n' + "\n".join(items) + "\n</div>"


def wrap_document(
    content_html: str,
    *,
    count: int,
    heading: str = DEFAULT_HEADING,
    source_label: str = DEFAULT_SOURCE_LABEL,
    source_page: str = DEFAULT_SOURCE_PAGE,
    generated_at: datetime | None = None,
) -> str:
    stamp = (generated_at or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><style>{_STYLE}</style></head>
<body>
  <h1>{utils.esc(heading)}</h1>
  <div class="summary">
    <strong>📊 Summary:</strong> Showing top {count} software engineering internship roles
    <br><strong>🕐 Last Updated:</strong> {utils.esc(stamp)}
  </div>
  {content_html}
  <div class="footer">
    This is an automated email from role-watch.
    <br>Source: <a href="{utils.esc(source_page)}" class="job-link">{utils.esc(source_label)}</a>
  </div>
</body>
</html>"""


def build_email(roles: Sequence[Role], *, subject_template: str | None = None) -> tuple[str, str]:
    """Return (subject, html) for a notification about `roles`."""
    return build_subject(roles, subject_template), wrap_document(build_list(roles), count=len(roles))
