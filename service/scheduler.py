# service/scheduler.py
from __future__ import annotations

import logging
import os
import threading
import time as _time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from datetime import tzinfo as _dt_tzinfo
from typing import Any
from zoneinfo import ZoneInfo

import pytz
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from . import config_schema, runner
from .logging_utils import write_activity_log

LOG = logging.getLogger(__name__)

_JOB_DEFAULTS = {
    "coalesce": True,  # a backlog of missed ticks collapses into one run
    "max_instances": 1,
}


# ---- Internal structures ----------------------------------------------------


@dataclass(frozen=True, slots=True)
class JobSpec:
    id: str
    trigger: Any  # apscheduler.triggers.base.BaseTrigger
    module: str
    kwargs: dict[str, Any]
    send_email: bool | None
    timeout_sec: int | None
    max_instances: int
    coalesce: bool
    misfire_grace_time: int | None
    summary: str | None
    email_to: list[str] | None = None
    email_cc: list[str] | None = None
    email_bcc: list[str] | None = None
    subject: str | None = None


# ---- Public controller ------------------------------------------------------


class SchedulerController:
    """
    A small façade around APScheduler so the CLI can manage lifecycle cleanly.
    """

    def __init__(self, scheduler: BackgroundScheduler) -> None:
        self._scheduler = scheduler
        self._stopped_evt = threading.Event()

    def stop(self) -> None:
        """Shut down APScheduler without waiting; in-flight runs finish on their own."""
        if self._scheduler.running:
            LOG.info("Shutting down scheduler...")
            self._scheduler.shutdown(wait=False)
        self._stopped_evt.set()
        LOG.info("Scheduler shut down complete.")

    def join(self, timeout: float | None = None) -> bool:
        """
        Block until the scheduler is fully stopped (or timeout).
        Returns True if stopped before timeout, else False.
        """
        return self._stopped_evt.wait(timeout=timeout)

    def get_job_ids(self) -> Iterable[str]:
        return [job.id for job in self._scheduler.get_jobs()]


# ---- Module API -------------------------------------------------------------


def build_scheduler(cfg: dict[str, Any]) -> BackgroundScheduler:
    """
    Build (but do not start) a BackgroundScheduler with every valid job from `cfg`.
    Jobs whose trigger cannot be built are logged and skipped.
    """
    tz = _resolve_timezone(cfg)
    scheduler = BackgroundScheduler(
        timezone=tz,
        job_defaults=dict(_JOB_DEFAULTS),
        executors={"default": ThreadPoolExecutor(_int_or(cfg.get("executor_workers"), 10))},
        jobstores={"default": MemoryJobStore()},
    )

    jobs_cfg = cfg.get("jobs", [])
    if not isinstance(jobs_cfg, list):
        raise ValueError("config.jobs must be a list")

    for raw in jobs_cfg:
        try:
            spec = make_job_spec(raw, tz=tz)
        except Exception:
            LOG.exception("Skipping job due to config error: %r", raw)
            continue
        _add_job(scheduler, spec)
    return scheduler


def start(config_path: str | None = None, cfg: dict[str, Any] | None = None) -> SchedulerController:
    """
    Load configuration (unless `cfg` is given), schedule its jobs, and start.
    Returns a SchedulerController that exposes stop() and join().

    APScheduler 3.x prefers a pytz scheduler timezone; per-trigger zones may be
    zoneinfo and APScheduler coerces them.
    """
    if cfg is None:
        cfg = config_schema.load_config(config_path)
    scheduler = build_scheduler(cfg)
    scheduler.start()
    LOG.info("Scheduler started with %d job(s).", len(scheduler.get_jobs()))
    return SchedulerController(scheduler)


def preview_trigger(trigger: Any, tz: Any, count: int = 6, start: datetime | None = None) -> list[datetime]:
    """
    Return the next `count` fire times of `trigger`, starting at `start` (or now in tz).
    The first lookup has no previous fire time; each later one advances 1µs past
    the previous hit so the sequence moves forward.
    """
    now = start or datetime.now(tz=tz)
    prev: datetime | None = None
    times: list[datetime] = []
    for _ in range(count):
        nxt = trigger.get_next_fire_time(prev, now)
        if nxt is None:
            break
        times.append(nxt)
        prev = nxt
        now = nxt + timedelta(microseconds=1)
    return times


def make_job_spec(raw: dict[str, Any], tz: Any) -> JobSpec:
    """Convert a normalized config job dict into a JobSpec with a built trigger."""
    module = _require(raw, "module")
    jid = str(raw.get("id") or raw.get("name") or module)

    return JobSpec(
        id=jid,
        trigger=build_trigger(_require(raw, "trigger"), tz),
        module=module,
        kwargs=dict(raw.get("kwargs") or {}),
        send_email=raw.get("send_email"),
        timeout_sec=_int_or(raw.get("timeout_sec"), None),
        max_instances=_int_or(raw.get("max_instances"), _JOB_DEFAULTS["max_instances"]) or 1,
        coalesce=bool(raw.get("coalesce", _JOB_DEFAULTS["coalesce"])),
        misfire_grace_time=_int_or(raw.get("misfire_grace_time"), None),
        summary=raw.get("summary") or raw.get("description"),
        email_to=raw.get("email_to"),
        email_cc=raw.get("email_cc"),
        email_bcc=raw.get("email_bcc"),
        subject=raw.get("subject"),
    )


def build_trigger(trig_def: dict[str, Any], tz: Any) -> Any:
    """
    Build an APScheduler trigger from a dict.

    Supported shapes:
      {"interval": {weeks|days|hours|minutes|seconds, jitter?, start_date?, end_date?, timezone?}}
      {"cron":     "*/30 * * * *"}  # crontab, scheduler tz
      {"cron":     {second?, minute?, hour?, day?, day_of_week?, month?, jitter?, start_date?, end_date?, timezone?}}
      {"date":     {"run_at": ISO|epoch|datetime, "timezone"?: "..."}} or a bare ISO|epoch|datetime
      {"daily_time": {"time": "HH:MM[:SS]" | [...], "day_of_week"?: "...", "timezone"?: "..."}}

    A trigger block's own 'timezone' wins over the scheduler tz; a naive
    'date.run_at' is read in the scheduler tz.
    """
    if not isinstance(trig_def, dict):
        raise ValueError("trigger spec must be a dict")

    present = [k for k in _BUILDERS if trig_def.get(k) is not None]
    if len(present) != 1:
        raise ValueError(f"exactly one of {sorted(_BUILDERS)} must be provided")
    kind = present[0]
    return _BUILDERS[kind](trig_def[kind], _tz(tz))


# ---- Trigger builders -------------------------------------------------------


def _tz(z: Any) -> Any:
    if not z:
        return None
    if isinstance(z, _dt_tzinfo):
        return z
    return ZoneInfo(str(z))


def _check_keys(name: str, spec: dict[str, Any], allowed: set[str]) -> None:
    unknown = set(spec) - allowed
    if unknown:
        raise ValueError(f"{name} has unknown field(s): {sorted(unknown)}")


def _interval(spec: Any, default_tz: Any) -> IntervalTrigger:
    if not isinstance(spec, dict):
        raise ValueError("interval must be an object with time fields")
    units = ("weeks", "days", "hours", "minutes", "seconds")
    _check_keys("interval", spec, {*units, "jitter", "timezone", "start_date", "end_date"})

    def _ge0(name: str) -> int:
        try:
            v = int(spec.get(name, 0))
        except (TypeError, ValueError) as err:
            raise ValueError(f"interval.{name} must be an integer") from err
        if v < 0:
            raise ValueError(f"interval.{name} must be >= 0")
        return v

    kwargs: dict[str, Any] = {u: _ge0(u) for u in units if _ge0(u)}
    if not kwargs:
        raise ValueError("interval must be greater than 0 (provide at least one nonzero time field)")
    if _ge0("jitter"):
        kwargs["jitter"] = _ge0("jitter")
    for k in ("start_date", "end_date"):
        if k in spec:
            kwargs[k] = spec[k]
    return IntervalTrigger(timezone=_tz(spec.get("timezone")) or default_tz, **kwargs)


def _cron(spec: Any, default_tz: Any) -> CronTrigger:
    if isinstance(spec, str):
        fields = spec.split()
        if len(fields) not in (5, 6):
            raise ValueError(f"cron string must have 5 or 6 fields (got {len(fields)}): {spec!r}")
        return CronTrigger.from_crontab(spec, timezone=default_tz)
    if not isinstance(spec, dict):
        raise ValueError("cron must be a crontab string or an object")
    _check_keys(
        "cron",
        spec,
        {"second", "minute", "hour", "day", "day_of_week", "month", "timezone", "start_date", "end_date", "jitter"},
    )
    return CronTrigger(
        second=spec.get("second", 0),
        minute=spec.get("minute", 0),
        hour=spec.get("hour", 0),
        day=spec.get("day"),
        day_of_week=spec.get("day_of_week"),
        month=spec.get("month"),
        start_date=spec.get("start_date"),
        end_date=spec.get("end_date"),
        jitter=spec.get("jitter"),
        timezone=_tz(spec.get("timezone")) or default_tz,
    )


def _date(spec: Any, default_tz: Any) -> DateTrigger:
    if isinstance(spec, dict):
        run_at = spec.get("run_at")
        tzinfo = _tz(spec.get("timezone")) or default_tz
    else:
        run_at, tzinfo = spec, default_tz
    if run_at in (None, ""):
        raise ValueError("date trigger requires 'run_at' (or non-empty scalar value)")

    if isinstance(run_at, (int, float)):
        dt = datetime.fromtimestamp(run_at, tz=tzinfo)
    elif isinstance(run_at, datetime):
        dt = run_at if run_at.tzinfo else run_at.replace(tzinfo=tzinfo)
    else:
        try:
            dt = datetime.fromisoformat(_zulu(str(run_at)))
        except ValueError as e:
            raise ValueError(f"Invalid date.run_at: {run_at!r}") from e
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=tzinfo)
    return DateTrigger(run_date=dt, timezone=dt.tzinfo or tzinfo)


def _zulu(s: str) -> str:
    # fromisoformat() only accepts a trailing "Z" from Python 3.11 on
    s = s.strip()
    return s[:-1] + "+00:00" if s.endswith(("Z", "z")) else s


def _daily_time(spec: Any, default_tz: Any) -> Any:
    if isinstance(spec, (str, list)):
        spec = {"time": spec}
    if not isinstance(spec, dict):
        raise ValueError("daily_time must be an object")
    _check_keys("daily_time", spec, {"time", "day_of_week", "timezone"})

    times = spec.get("time")
    if times is None:
        raise ValueError("daily_time requires 'time'")
    if isinstance(times, str):
        times = [times]

    tzinfo = _tz(spec.get("timezone")) or default_tz
    triggers = [
        CronTrigger(second=s, minute=m, hour=h, day_of_week=spec.get("day_of_week"), timezone=tzinfo)
        for h, m, s in sorted({_parse_hhmm(str(t)) for t in times})
    ]
    return triggers[0] if len(triggers) == 1 else OrTrigger(triggers)


def _parse_hhmm(s: str) -> tuple[int, int, int]:
    parts = s.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"daily_time.time must be 'HH:MM' or 'HH:MM:SS', got {s!r}")
    try:
        hh, mm, ss = int(parts[0]), int(parts[1]), int(parts[2]) if len(parts) == 3 else 0
    except ValueError as err:
        raise ValueError(f"daily_time.time must contain integers: {s!r}") from err
    time(hh, mm, ss)  # range check
    return hh, mm, ss


_BUILDERS = {
    "interval": _interval,
    "cron": _cron,
    "date": _date,
    "daily_time": _daily_time,
}


# ---- Job registration -------------------------------------------------------


def _add_job(scheduler: BackgroundScheduler, spec: JobSpec) -> None:
    """
    Register `spec` with a wrapper that runs the module through
    ``runner.run_module_once()`` under the job's single-flight lock
    (shared with the HTTP trigger) and records a job_run activity line.
    """

    def _job_wrapper() -> None:
        started = _time.monotonic()
        LOG.info("Job[%s] starting (module=%s)", spec.id, spec.module)
        try:
            result = runner.run_module_once(
                spec.module,
                kwargs=dict(spec.kwargs),
                email_to=spec.email_to,
                subject=spec.subject,
                send_email=spec.send_email if spec.send_email is not None else True,
                trigger_type="scheduled",
                cc=spec.email_cc,
                bcc=spec.email_bcc,
                job_context=_build_job_context(spec),
                timeout_sec=spec.timeout_sec,
                lock_key=spec.id,
            )
        except Exception:
            LOG.exception("Job[%s] raised an exception.", spec.id)
            _write_activity(spec, status="error", duration_s=_time.monotonic() - started)
            return

        duration = _time.monotonic() - started
        LOG.info("Job[%s] finished in %.3fs: %s", spec.id, duration, result.message)
        _write_activity(spec, status="ok", duration_s=duration, message=result.message)

    scheduler.add_job(
        func=_job_wrapper,
        trigger=spec.trigger,
        id=spec.id,
        name=spec.summary or spec.id,
        max_instances=spec.max_instances,
        coalesce=spec.coalesce,
        misfire_grace_time=spec.misfire_grace_time,
        replace_existing=True,
    )

    if os.getenv("SCHEDULER_PREVIEW") == "1":
        count = _int_or(os.getenv("SCHEDULER_PREVIEW_COUNT"), 6) or 6
        upcoming = preview_trigger(spec.trigger, scheduler.timezone, count=count)
        LOG.info("Preview job[%s]: %s", spec.id, ", ".join(t.isoformat() for t in upcoming) or "(none)")

    LOG.debug(
        "Registered job[%s] (module=%s, summary=%r, trigger=%s, max_instances=%s, coalesce=%s, misfire_grace_time=%s)",
        spec.id,
        spec.module,
        spec.summary,
        spec.trigger,
        spec.max_instances,
        spec.coalesce,
        spec.misfire_grace_time,
    )


def _write_activity(spec: JobSpec, status: str, duration_s: float, message: str | None = None) -> None:
    """Activity logging for scheduled runs; failures here never kill the job thread."""
    try:
        write_activity_log({
            "ts": datetime.now(timezone.utc).isoformat(),
            "source": "scheduler",
            "event": "job_run",
            "fields": {
                "job_id": spec.id,
                "module": spec.module,
                "status": status,
                "duration_ms": int(duration_s * 1000),
                "summary": spec.summary,
                "message": message,
            },
        })
    except Exception:
        LOG.debug("write_activity_log failed for job[%s]", spec.id, exc_info=True)


# ---- Small helpers ----------------------------------------------------------


def _resolve_timezone(cfg: dict[str, Any]) -> Any:
    """config['timezone'], else env TZ, else UTC; as a pytz zone for APScheduler 3.x."""
    tz_name = cfg.get("timezone") or os.getenv("TZ") or "UTC"
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        LOG.warning("Falling back to UTC timezone (invalid or missing tz '%s')", tz_name)
        return pytz.UTC


def _require(d: dict[str, Any], key: str) -> Any:
    if key not in d or d[key] in (None, ""):
        raise ValueError(f"Missing required key: {key}")
    return d[key]


def _int_or(v: Any, default: int | None) -> int | None:
    """Return int(v) or default if v is None/invalid (lenient for config)."""
    try:
        return int(v) if v is not None else default
    except (TypeError, ValueError):
        return default


def _build_job_context(spec: JobSpec) -> dict[str, Any]:
    return {
        "job_id": spec.id,
        "module": spec.module,
        "now_iso": datetime.now(timezone.utc).isoformat(),
    }
