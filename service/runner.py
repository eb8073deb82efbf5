# service/runner.py
from __future__ import annotations

import importlib
import json
import logging
import os
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from service.logging_utils import write_activity_log

# -----------------------------------------------------------------------------
# Config / Environment
# -----------------------------------------------------------------------------
# Local JSONL sink used only if the structured activity log cannot be written
ACTIVITY_LOG_PATH = os.getenv("ACTIVITY_LOG_PATH", "/app/local/activity.log")

_TRUE = {"1", "true", "yes", "on"}

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
log = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Single-flight locks: one in-flight run per job key (scheduler tick vs. HTTP trigger)
# -----------------------------------------------------------------------------
_locks_guard = threading.Lock()
_locks: dict[str, threading.Lock] = {}


def _lock_for(key: str) -> threading.Lock:
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.Lock()
        return lock


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def now_iso() -> str:
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


def _env_flag(name: str, default: str = "") -> bool:
    return str(os.getenv(name, default)).strip().lower() in _TRUE


def _maybe_bool(v: Any) -> Any:
    if isinstance(v, str):
        low = v.strip().lower()
        if low in ("true", "t", "yes", "y", "1"):
            return True
        if low in ("false", "f", "no", "n", "0"):
            return False
    return v


def _maybe_number(v: Any) -> Any:
    if isinstance(v, str):
        s = v.strip()
        if s and (s.isdigit() or (s.startswith("-") and s[1:].isdigit())):
            return int(s)
        try:
            return float(s)
        except ValueError:
            pass
    return v


def _normalize_kwargs_types(kwargs: dict[str, object] | None) -> dict[str, object]:
    """
    Normalize job kwargs:

      • For keys ending with "_env":
          - Treat the string value as an ENV VAR NAME (e.g., "ROLE_WATCH_TO").
          - Replace with os.getenv(<name>, "") under the key without the suffix
            (email_to_env -> email_to), unless that key is already set.

      • For all other keys:
          - If a string looks like JSON ({...} or [...]), parse it.
          - Else coerce common bool/number string forms.
          - URL-ish strings and addresses are left alone.
          - Leave non-strings unchanged.
    """
    if not kwargs:
        return {}

    normalized: dict[str, object] = {}
    resolved_env: dict[str, object] = {}
    for k, v in kwargs.items():
        if isinstance(k, str) and k.endswith("_env") and isinstance(v, str):
            resolved_env[k[: -len("_env")]] = os.getenv(v.strip(), "")
            continue

        if isinstance(v, str):
            s = v.strip()
            if (s.startswith("{") and s.endswith("}")) or (s.startswith("[") and s.endswith("]")):
                try:
                    normalized[k] = json.loads(s)
                    continue
                except json.JSONDecodeError:
                    pass
            nv = _maybe_bool(s)
            nv = _maybe_number(nv)
            normalized[k] = nv
        else:
            normalized[k] = v

    for k, v in resolved_env.items():
        normalized.setdefault(k, v)
    return normalized


def _resolve_callable(module_path: str) -> Callable[..., Any]:
    """Import module and return its `run` callable."""
    mod = importlib.import_module(module_path)
    if not hasattr(mod, "run") or not callable(mod.run):
        raise AttributeError(f"Module {module_path!r} does not define a callable `run(**kwargs)`.")
    return mod.run  # type: ignore[no-any-return]


def _emit_activity_jsonl(record: dict[str, Any]) -> None:
    """Write a structured activity record via logging_utils, or to a local JSONL file."""
    try:
        write_activity_log(record)
        return
    except Exception as e:
        log.warning("logging_utils.write_activity_log failed: %s", e)
    try:
        os.makedirs(os.path.dirname(ACTIVITY_LOG_PATH), exist_ok=True)
        with open(ACTIVITY_LOG_PATH, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
    except OSError as e:
        log.error("Failed to write activity JSONL: %s", e)


@dataclass
class RunResult:
    ok: bool
    message: str
    run_id: str = ""
    meta: dict[str, Any] = field(default_factory=dict)


def _coerce_result(value: Any) -> RunResult:
    """
    Normalize module return into a RunResult.

    Acceptable shapes:
      - dict  -> meta (may include 'message')
      - None  -> no output
      - str   -> message
    """
    if isinstance(value, dict):
        return RunResult(ok=True, message=str(value.get("message", "OK")), meta=value)
    if value is None:
        return RunResult(ok=True, message="OK")
    if isinstance(value, str):
        return RunResult(ok=True, message=value)
    raise TypeError("Module return must be one of: dict, None, or str")


def _delivery_kwargs(
    kw: dict[str, object],
    *,
    email_to: list[str] | None,
    cc: list[str] | None,
    bcc: list[str] | None,
    subject: str | None,
    send_email: bool | None,
) -> dict[str, object]:
    """
    Fold job-level email fields and the send/dry-run switches into module kwargs.
    Explicit module kwargs win over job-level fields.
    """
    out = dict(kw)
    for key, value in (("email_to", email_to), ("email_cc", cc), ("email_bcc", bcc), ("subject", subject)):
        if value and not out.get(key):
            out[key] = value

    # Hard override: DRY_RUN disables sending no matter what.
    env_send_default = _env_flag("SEND_EMAIL", "1")
    effective_send = send_email if send_email is not None else env_send_default
    if _env_flag("DRY_RUN") or not env_send_default:
        effective_send = False
    if not effective_send:
        out["dry_run"] = True
    return out


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def run_module_once(
    module: str,
    kwargs: dict[str, object] | None = None,
    email_to: list[str] | None = None,
    subject: str | None = None,
    send_email: bool | None = True,
    trigger_type: str = "scheduled",
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    job_context: dict[str, object] | None = None,  # e.g., {"job_id": "...", "module": "...", "now_iso": "..."}
    timeout_sec: int | None = None,
    lock_key: str | None = None,
) -> RunResult:
    """
    Execute a module's run(**kwargs) once.

    Runs sharing a `lock_key` (default: job_id from job_context, else the module
    path) never overlap; a second caller waits for the first to finish.

    Returns:
        RunResult with the module's meta and this run's id.
    Raises:
        Propagates exceptions from module execution (caller/CLI/HTTP will catch and log).
    """
    run_id = uuid.uuid4().hex
    started_at = now_iso()

    context: dict[str, Any] = {
        "run_id": run_id,
        "module": module,
        "trigger_type": trigger_type,
        "started_at": started_at,
    }
    if job_context:
        context.update({k: v for k, v in job_context.items() if k not in context})

    key = lock_key or str(context.get("job_id") or module)
    kw = _delivery_kwargs(
        _normalize_kwargs_types(kwargs),
        email_to=email_to,
        cc=cc,
        bcc=bcc,
        subject=subject,
        send_email=send_email,
    )

    run_callable = _resolve_callable(module)
    lock = _lock_for(key)

    def _invoke() -> Any:
        with lock:
            return run_callable(**kw)

    result: RunResult
    exc: BaseException | None = None
    t0 = datetime.now()
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="runner")
    try:
        fut = pool.submit(_invoke)
        value = fut.result(timeout=timeout_sec) if timeout_sec else fut.result()
        result = _coerce_result(value)
    except FutureTimeout:
        exc = TimeoutError(f"Module run timed out after {timeout_sec}s")
        result = RunResult(ok=False, message=str(exc), meta={"timeout_sec": timeout_sec})
    except Exception as e:
        exc = e
        result = RunResult(ok=False, message=str(e), meta={"exception_type": type(e).__name__})
    finally:
        # Don't block on a timed-out worker; it still holds the job lock until it finishes.
        pool.shutdown(wait=False)
        duration_ms = int((datetime.now() - t0).total_seconds() * 1000)

    result.run_id = run_id

    record: dict[str, Any] = {
        "ts": now_iso(),
        "run_id": run_id,
        "module": module,
        "trigger_type": trigger_type,
        "ok": result.ok,
        "message": result.message,
        "duration_ms": duration_ms,
        "dry_run": bool(kw.get("dry_run")),
        "email_to": kw.get("email_to") or [],
        "context": context,
        "kwargs": kw,
        "meta": result.meta,
    }
    _emit_activity_jsonl(record)

    if exc:
        raise exc

    return result
