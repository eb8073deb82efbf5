from __future__ import annotations

import logging
from typing import Any

from service import logging_utils as _svc_logging

# Key substrings redacted (case-insensitive, at any depth) before a record is logged
_REDACT_KEYS = {
    "password",
    "token",
    "apikey",
    "api_key",
    "secret",
    "smtp_",
    "authorization",
    "bearer",
}


def _redact_record(record: dict[str, Any]) -> dict[str, Any]:
    return _svc_logging.redact(record, _REDACT_KEYS)


def activity(record: dict[str, Any]) -> None:
    """
    Write an activity record to the JSONL activity log.
    Falls back to stdlib logging if the write fails for any reason; logging
    never interrupts a run.
    """
    payload = _redact_record(record)
    try:
        _svc_logging.write_activity_log(payload)
        return
    except Exception:
        logging.getLogger(__name__).debug("activity JSONL write failed", exc_info=True)
    logging.getLogger("role_watch.activity").info(payload)


def error(record: dict[str, Any]) -> None:
    """
    Write an error record to the JSONL error log.
    Falls back to stdlib logging if the write fails for any reason.
    """
    payload = _redact_record(record)
    try:
        _svc_logging.write_error_log(payload)
        return
    except Exception:
        logging.getLogger(__name__).debug("error JSONL write failed", exc_info=True)
    logging.getLogger("role_watch.error").error(payload)


def checkpoint(component: str, op: str, **fields: Any) -> None:
    """Shorthand for activity({"component": ..., "op": ..., **fields})."""
    activity({"component": component, "op": op, **fields})
