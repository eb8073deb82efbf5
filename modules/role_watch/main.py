from __future__ import annotations

from typing import Any

from .lib.config import Settings
from .lib.engine import run_once as _run_engine
from .lib.logging_bridge import activity as log_activity


def run(**kwargs: Any) -> dict[str, Any]:
    """
    Entry point for the 'role_watch' module.

    Accepts kwargs (from scheduler/runner/HTTP trigger), including:
      source_url: str = SimplifyJobs Summer 2026 README (raw)
      sqlite_path: str = "/app/local/state/rolewatch.db"
      state_key: str = "last_sent_data"
      max_roles: int = 100
      email_to / email_cc / email_bcc: list[str] | str
      subject: str  (may reference {count})
      dry_run: bool = False

    Returns:
      meta dict (no HTML): the module sends its own notification so that the
      marker is only persisted after a successful send.
    """
    settings = Settings.from_env_and_kwargs(kwargs)

    log_activity({
        "component": "role_watch.main",
        "op": "start",
        "source_url": settings.source_url,
        "state_key": settings.state_key,
        "recipients": len(settings.email_to) + len(settings.email_cc) + len(settings.email_bcc),
        "dry_run": settings.dry_run,
    })

    return _run_engine(settings)
