"""
Engine for one role_watch cycle: fetch the README, extract new rows, decide,
notify, persist.

Features:
  - Single state read per run; read failures degrade to first-run behavior
  - Notification failures abort the run before the marker is written
  - Marker write failures are logged, never raised (the email already went out)
  - Dry-run mode: extract + decide only
  - Dependency injection for testability (`fetch`, `notifier`)
  - Checkpoint logging via `logging_bridge`
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from . import detector, extractor, logging_bridge, state
from .config import Settings
from .errors import NotificationDispatchError, StateReadError, StateWriteError
from .http_client import HttpClient
from .models import MarkerState, ScanReport
from .notifier import Notifier

_COMPONENT = "role_watch.engine"

_MESSAGES = {
    "no_roles": "No roles found. Skipping email send.",
    "unchanged_head": "No changes detected in first job. Skipping email send.",
}


# =============================================================================
# DEFAULT COLLABORATORS (PRODUCTION)
# =============================================================================
def _default_fetch(settings: Settings) -> Callable[[str], str]:
    def _fetch(url: str) -> str:
        with HttpClient(timeout=settings.fetch_timeout, retries=settings.fetch_retries) as client:
            return client.fetch_text(url)

    return _fetch


def _default_notifier(settings: Settings) -> Notifier:
    return Notifier(
        recipients=list(settings.email_to),
        cc=list(settings.email_cc),
        bcc=list(settings.email_bcc),
        subject_template=settings.subject,
    )


# =============================================================================
# MAIN ORCHESTRATOR
# =============================================================================
def run_once(
    settings: Settings,
    fetch: Callable[[str], str] | None = None,
    notifier: Notifier | None = None,
) -> dict[str, Any]:
    """
    Run one complete cycle.

    Args:
        settings: validated Settings.
        fetch: optional override returning the document text for a URL (tests).
        notifier: optional override for the email dispatcher (tests).

    Returns:
        meta dict (no HTML; the notification is sent here, not by the runner).

    Raises:
        ConfigError, SourceFetchError, NotificationDispatchError.
    """
    t0 = time.perf_counter_ns()
    fetch_func = fetch or _default_fetch(settings)
    notifier = notifier or _default_notifier(settings)

    if not settings.dry_run:
        notifier.check_ready()

    prior = _read_state(settings)
    previous_link = prior.first_role_link if prior else ""

    # -------------------------------------------------------------------------
    # FETCH
    # -------------------------------------------------------------------------
    document = fetch_func(settings.source_url)
    logging_bridge.checkpoint(
        _COMPONENT, "fetched", url=settings.source_url, chars=len(document), previous_link=previous_link or None
    )

    # -------------------------------------------------------------------------
    # EXTRACT
    # -------------------------------------------------------------------------
    report = _scan(document, previous_link, settings)
    roles = report.roles

    # -------------------------------------------------------------------------
    # DECIDE
    # -------------------------------------------------------------------------
    decision = detector.decide(roles, prior)
    logging_bridge.checkpoint(
        _COMPONENT,
        "decision",
        notify=decision.notify,
        reason=decision.reason,
        head_link=decision.head_link,
        stored_link=previous_link or None,
    )

    meta: dict[str, Any] = {
        "outcome": decision.reason,
        "prior_state": _state_dict(prior),
        "role_count": len(roles),
        "head_link": decision.head_link,
        "notified": False,
        "state_written": False,
        "dry_run": settings.dry_run,
    }

    if not decision.notify:
        meta["message"] = _MESSAGES[decision.reason]
        meta["duration_us"] = _elapsed_us(t0)
        return meta

    if settings.dry_run:
        logging_bridge.checkpoint(_COMPONENT, "dry_run", role_count=len(roles), head_link=decision.head_link)
        meta["message"] = f"Dry run: would notify about {len(roles)} roles."
        meta["duration_us"] = _elapsed_us(t0)
        return meta

    # -------------------------------------------------------------------------
    # NOTIFY (fatal on failure; marker left untouched so the next tick retries)
    # -------------------------------------------------------------------------
    try:
        message_id = notifier.send(roles)
    except NotificationDispatchError as e:
        logging_bridge.error({
            "component": _COMPONENT,
            "op": "notify",
            "role_count": len(roles),
            "error": repr(e),
        })
        raise
    logging_bridge.checkpoint(
        _COMPONENT, "notified", role_count=len(roles), recipients=len(notifier.recipients), message_id=message_id
    )

    # -------------------------------------------------------------------------
    # PERSIST
    # -------------------------------------------------------------------------
    new_state = detector.next_state(roles)
    meta["state_written"] = _write_state(settings, new_state)
    meta.update({
        "notified": True,
        "message_id": message_id,
        "message": f"Email sent with {len(roles)} roles.",
        "duration_us": _elapsed_us(t0),
    })
    return meta


# =============================================================================
# HELPERS
# =============================================================================
def _scan(document: str, previous_link: str, settings: Settings) -> ScanReport:
    """Run the extractor and emit its checkpoints. Never raises."""
    try:
        report = extractor.scan(document, previous_link, max_roles=settings.max_roles)
    except Exception as e:
        logging_bridge.error({"component": _COMPONENT, "op": "scan", "error": repr(e)})
        return ScanReport()

    if report.section is None:
        logging_bridge.checkpoint(_COMPONENT, "section", found=False)
    else:
        logging_bridge.checkpoint(_COMPONENT, "section", found=True, start=report.section[0], end=report.section[1])

    for index, err in report.rows_failed:
        logging_bridge.error({"component": _COMPONENT, "op": "row_failed", "row": index, "error": err})

    logging_bridge.checkpoint(
        _COMPONENT,
        "scan",
        rows_seen=report.rows_seen,
        rows_failed=len(report.rows_failed),
        stopped_at_marker=report.stopped_at_marker,
        filtered_out=report.filtered_out,
        truncated=report.truncated,
        roles=len(report.roles),
    )
    return report


def _read_state(settings: Settings) -> MarkerState | None:
    try:
        return state.get_state(settings.sqlite_path, settings.state_key)
    except StateReadError as e:
        logging_bridge.error({
            "component": _COMPONENT,
            "op": "state_read_failed",
            "sqlite_path": settings.sqlite_path,
            "key": settings.state_key,
            "error": repr(e),
        })
        return None


def _write_state(settings: Settings, marker: MarkerState) -> bool:
    try:
        state.put_state(settings.sqlite_path, settings.state_key, marker)
    except StateWriteError as e:
        logging_bridge.error({
            "component": _COMPONENT,
            "op": "state_write_failed",
            "sqlite_path": settings.sqlite_path,
            "key": settings.state_key,
            "error": repr(e),
        })
        return False
    logging_bridge.checkpoint(
        _COMPONENT, "state_written", key=settings.state_key, head_link=marker.first_role_link, role_count=marker.role_count
    )
    return True


def _state_dict(marker: MarkerState | None) -> dict[str, Any] | None:
    if marker is None:
        return None
    return {
        "first_role_link": marker.first_role_link,
        "last_updated": marker.last_updated,
        "role_count": marker.role_count,
    }


def _elapsed_us(t0: int) -> int:
    return int((time.perf_counter_ns() - t0) // 1000)
