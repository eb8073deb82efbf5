# service/cli.py
"""
User-facing command-line entrypoints for the container.

Subcommands
-----------
serve
    - Starts the APScheduler service loop via service.scheduler.start()
    - Starts the manual HTTP trigger in a secondary thread via service.http_trigger.start()
    - Registers signal handlers for graceful shutdown of both components

run MODULE [--kwargs k=v ...] [--no-email] [--json]
    - Executes a module ad-hoc via runner.run_module_once(...)
    - Prints a concise outcome summary (or the full meta as JSON)

list-jobs
    - Loads config via config_schema.load_config() and prints configured jobs

validate-config
    - Loads/validates config and returns nonzero on error

show-state [--job ID | --db PATH] [--key KEY]
    - Prints the stored last-sent marker
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Iterable
from datetime import datetime
from types import SimpleNamespace
from typing import Any

from modules.role_watch.lib import config as rw_config
from modules.role_watch.lib import state as rw_state
from modules.role_watch.lib.errors import StateReadError
from service import config_schema as _config_schema
from service import http_trigger as _http
from service import logging_utils as L
from service import runner as _runner
from service import scheduler as _scheduler

LOG = logging.getLogger("service.cli")


# -------------------------- Utility / glue code ------------------------------
def _parse_kv_pairs(pairs: Iterable[str]) -> dict[str, Any]:
    """
    Parse key=value strings into a dict.
    - Values that look like JSON (true/false/null/number/object/array) are parsed.
    - Otherwise keep as raw strings.
    """
    out: dict[str, Any] = {}
    for raw in pairs:
        if "=" not in raw:
            raise argparse.ArgumentTypeError(f"--kwargs item must be key=value (got {raw!r})")
        k, v = raw.split("=", 1)
        k = k.strip()
        v = v.strip()
        if not k:
            raise argparse.ArgumentTypeError(f"Invalid key in --kwargs item {raw!r}")
        try:
            out[k] = json.loads(v)
        except json.JSONDecodeError:
            out[k] = v
    return out


def _print_table(rows: Iterable[tuple[str, str]], headers: tuple[str, str] = ("ID", "DETAILS")) -> None:
    """Very simple two-column table printer."""
    rows = list(rows)
    w0 = max(len(headers[0]), *(len(r[0]) for r in rows)) if rows else len(headers[0])
    w1 = max(len(headers[1]), *(len(r[1]) for r in rows)) if rows else len(headers[1])
    sep = f"+-{'-' * w0}-+-{'-' * w1}-+"
    print(sep)
    print(f"| {headers[0].ljust(w0)} | {headers[1].ljust(w1)} |")
    print(sep)
    for c0, c1 in rows:
        print(f"| {c0.ljust(w0)} | {c1.ljust(w1)} |")
    print(sep)


def _describe_job(job: dict[str, Any]) -> str:
    trigger = job.get("trigger") or {}
    when = ", ".join(f"{k}={v}" for k, v in trigger.items() if v is not None) or "no trigger"
    summary = job.get("summary") or job.get("description")
    desc = f"{job.get('module')} [{when}]"
    return f"{desc} - {summary}" if summary else desc


def _now_iso() -> str:
    return datetime.now().astimezone().isoformat()


def _load_config(path: str | None) -> dict[str, Any]:
    cfg = _config_schema.load_config(path)
    _config_schema.validate(cfg)
    return cfg


# ------------------------------ Subcommands ----------------------------------
def cmd_validate_config(args: argparse.Namespace) -> int:
    try:
        cfg = _load_config(args.config)
    except _config_schema.ConfigError as e:
        LOG.error("Configuration validation failed: %s", e)
        print(f"ERROR: configuration invalid: {e}", file=sys.stderr)
        return 1
    print(f"OK: configuration is valid ({len(cfg['jobs'])} job(s)).")
    return 0


def cmd_list_jobs(args: argparse.Namespace) -> int:
    try:
        cfg = _load_config(args.config)
    except _config_schema.ConfigError as e:
        print(f"ERROR: failed to list jobs: {e}", file=sys.stderr)
        return 1
    rows = [(str(j["id"]), _describe_job(j)) for j in cfg["jobs"]]
    if not rows:
        print("No jobs found in config.")
        return 0
    _print_table(rows, headers=("JOB", "DETAILS"))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    start_time = time.monotonic()
    try:
        kwargs = _parse_kv_pairs(args.kwargs or [])
    except argparse.ArgumentTypeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    LOG.debug("Run module %s with kwargs=%s", args.module, kwargs)

    try:
        result = _runner.run_module_once(
            module=args.module,
            kwargs=kwargs,
            send_email=not args.no_email,
            trigger_type="adhoc",
        )
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        print(f"FAILURE: {e}", file=sys.stderr)
        L.write_error_log({
            "ts": _now_iso(),
            "where": "cli.run",
            "module": args.module,
            "kwargs": kwargs,
            "error": repr(e),
            "duration_ms": int((time.monotonic() - start_time) * 1000),
        })
        return 1

    if args.json:
        print(json.dumps(result.meta, indent=2, default=str))
    else:
        meta = result.meta
        print(f"SUCCESS: {result.message}")
        if "outcome" in meta:
            print(f"  outcome:   {meta.get('outcome')}")
            print(f"  roles:     {meta.get('role_count')}")
            print(f"  head link: {meta.get('head_link') or '-'}")
            print(f"  notified:  {meta.get('notified')}  state written: {meta.get('state_written')}")
        print(f"  run id:    {result.run_id}")
    return 0


def cmd_show_state(args: argparse.Namespace) -> int:
    sqlite_path, key = _state_location(args)
    try:
        marker = rw_state.get_state(sqlite_path, key)
    except StateReadError as e:
        print(f"ERROR: could not read state from {sqlite_path}: {e}", file=sys.stderr)
        return 1

    if marker is None:
        print("No stored data found (first run)")
        return 0
    if args.json:
        print(marker.to_json())
        return 0
    print("Stored Data:")
    print(f"- First Job Link: {marker.first_role_link}")
    print(f"- Last Updated: {marker.last_updated}")
    print(f"- Role Count: {marker.role_count}")
    return 0


def _state_location(args: argparse.Namespace) -> tuple[str, str]:
    """--db/--key win; else the job's kwargs (with --job); else env/defaults."""
    job_kwargs: dict[str, Any] = {}
    if args.job:
        job = _config_schema.find_job(_config_schema.load_config(args.config), args.job)
        if job is not None:
            job_kwargs = dict(job.get("kwargs") or {})
    sqlite_path = (
        args.db
        or job_kwargs.get("sqlite_path")
        or os.getenv("ROLE_WATCH_DB")
        or rw_config.DEFAULT_SQLITE_PATH
    )
    key = args.key or job_kwargs.get("state_key") or rw_state.DEFAULT_STATE_KEY
    return str(sqlite_path), str(key)


def cmd_serve(args: argparse.Namespace) -> int:
    """
    Run the scheduler loop + HTTP trigger until a termination signal is
    received. Both services are stopped cleanly.
    """
    L.write_activity_log({"ts": _now_iso(), "event": "serve_start"})

    stop_event = threading.Event()
    running = SimpleNamespace(sched=None, http=None)

    def _graceful_shutdown(signum=None, frame=None):
        LOG.info("Signal %s received; initiating shutdown...", signum)
        stop_event.set()
        _safe_stop("scheduler", running.sched)
        _safe_stop("http_trigger", running.http)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _graceful_shutdown)

    try:
        cfg = _load_config(args.config)

        def cfg_getter() -> dict[str, Any]:
            return cfg

        running.sched = _scheduler.start(cfg=cfg)
        if cfg["http_trigger"].get("enabled", True):
            running.http = _http.start(cfg_getter)
        else:
            LOG.info("HTTP trigger disabled by config.")

        while not stop_event.is_set():
            time.sleep(0.3)

        _safe_stop("scheduler", running.sched)
        _safe_stop("http_trigger", running.http)
        L.write_activity_log({"ts": _now_iso(), "event": "serve_stop"})
        return 0

    except KeyboardInterrupt:
        _graceful_shutdown("KeyboardInterrupt")
        return 130
    except Exception as e:
        LOG.exception("Fatal error in serve: %s", e)
        _graceful_shutdown("UnhandledException")
        return 1


def _safe_stop(name: str, handle: Any) -> None:
    """Stop and join a controller; errors are logged, not raised, during shutdown."""
    if handle is None:
        return
    try:
        handle.stop()
        handle.join(timeout=10.0)
    except Exception:  # pragma: no cover
        LOG.exception("Error stopping %s", name)


# ------------------------------- Argparse ------------------------------------
def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="python -m service.cli",
        description="Role watch service command-line tools",
    )
    p.add_argument(
        "--config",
        help="Path to config file (fallbacks to CONFIG_PATH env or an empty default).",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("serve", help="Run the scheduler loop and the manual HTTP trigger.")
    sp.set_defaults(func=cmd_serve)

    sp = sub.add_parser("run", help="Execute a module ad-hoc via runner.run_module_once().")
    sp.add_argument("module", help="Module path to run (e.g., modules.role_watch).")
    sp.add_argument(
        "--kwargs",
        metavar="k=v",
        nargs="*",
        help="Extra keyword arguments for the module (JSON values supported).",
    )
    sp.add_argument(
        "--no-email",
        action="store_true",
        help="Extract and decide, but neither send email nor update state (dry-run).",
    )
    sp.add_argument("--json", action="store_true", help="Print the run meta as JSON.")
    sp.set_defaults(func=cmd_run)

    sp = sub.add_parser("list-jobs", help="Print all jobs from config.")
    sp.set_defaults(func=cmd_list_jobs)

    sp = sub.add_parser("validate-config", help="Verify configuration correctness.")
    sp.set_defaults(func=cmd_validate_config)

    sp = sub.add_parser("show-state", help="Print the stored last-sent marker.")
    sp.add_argument("--job", help="Read sqlite_path/state_key from this job's kwargs.")
    sp.add_argument("--db", help="SQLite state file (overrides --job and ROLE_WATCH_DB).")
    sp.add_argument("--key", help="State key (default: last_sent_data).")
    sp.add_argument("--json", action="store_true", help="Print the stored JSON value.")
    sp.set_defaults(func=cmd_show_state)

    return p


# --------------------------------- Main --------------------------------------
def main(argv: Iterable[str] | None = None) -> int:
    L.configure_logging()
    parser = _build_parser()
    args = parser.parse_args(args=list(argv) if argv is not None else None)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
