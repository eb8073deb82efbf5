from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any

import yaml

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the config is invalid."""


@dataclass
class _LoadResult:
    """Internal convenience container (not required by callers)."""

    cfg: dict[str, Any]
    source: str


_EMAIL_FIELDS = ("email_to", "email_cc", "email_bcc")
_EMAIL_ENV_FIELDS = {
    "email_to": "email_to_env",
    "email_cc": "email_cc_env",
    "email_bcc": "email_bcc_env",
}
_TRIGGER_FIELDS = ("cron", "interval", "date", "daily_time")
_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")

DEFAULT_HTTP_HOST = "0.0.0.0"
DEFAULT_HTTP_PORT = 8787
DEFAULT_WATCH_MODULE = "modules.role_watch"


def load_config(path: str | None = None) -> dict[str, Any]:
    """
    Load the service configuration.

    Resolution order:
      1) Explicit `path` argument (if provided)
      2) os.environ['CONFIG_PATH'] (if set)
      3) Internal default (empty config with empty jobs list)

    Returns:
        dict with at least {"jobs": [...], "timezone": str, "http_trigger": {...}}.
    """
    resolved_path = path or os.environ.get("CONFIG_PATH")
    if not resolved_path:
        logger.info("CONFIG_PATH not provided; using empty default config.")
        cfg: dict[str, Any] = {"jobs": []}
        _apply_top_level_defaults(cfg)
        return cfg

    cfg = _read_any(resolved_path).cfg
    _apply_top_level_defaults(cfg)
    return cfg


def validate(cfg: dict[str, Any]) -> None:
    """
    Validate a loaded configuration. Raise ConfigError on any problem.
    No prints, no sys.exit().
    """
    if not isinstance(cfg, dict):
        raise ConfigError("Config must be a dict.")

    jobs = cfg.get("jobs")
    if not isinstance(jobs, list):
        raise ConfigError("'jobs' must be a list.")

    tz = cfg.get("timezone")
    if tz is not None and not isinstance(tz, str):
        raise ConfigError("'timezone' must be a string if provided.")

    workers = cfg.get("executor_workers")
    if workers is not None:
        _to_int(workers, field="executor_workers", job_id="<top-level>", allow_zero=False)

    seen_ids: set[str] = set()
    for idx, job in enumerate(jobs):
        if not isinstance(job, dict):
            raise ConfigError(f"Job at index {idx} must be an object/dict.")

        module = job.get("module")
        if not isinstance(module, str) or not module.strip():
            raise ConfigError(f"Job {idx}: 'module' is required and must be a non-empty string.")

        job_id = _derive_job_id(job, idx)
        if job_id in seen_ids:
            raise ConfigError(f"Duplicate job id '{job_id}'.")
        seen_ids.add(job_id)

        trigger = job.get("trigger")
        if not isinstance(trigger, dict):
            raise ConfigError(f"Job '{job_id}': 'trigger' must be an object.")
        present = [k for k in _TRIGGER_FIELDS if trigger.get(k) is not None]
        if len(present) != 1:
            raise ConfigError(f"Job '{job_id}': exactly one trigger required among {', '.join(_TRIGGER_FIELDS)}.")
        _validate_trigger(present[0], trigger[present[0]], job_id)

        _require_optional_bool(job, "coalesce", job_id)
        _require_optional_bool(job, "send_email", job_id)
        _require_optional_int(job, "timeout_sec", job_id, allow_zero=True)
        _require_optional_int(job, "max_instances", job_id, allow_zero=False)
        _require_optional_int(job, "misfire_grace_time", job_id, allow_zero=True)

        if "kwargs" in job and not isinstance(job["kwargs"], dict):
            raise ConfigError(f"Job '{job_id}': 'kwargs' must be a dict if provided.")

        for f in _EMAIL_FIELDS:
            if f in job:
                job[f] = _as_str_list(job[f], field=f, job_id=job_id)

        for opt_str in ("subject", "summary", "description"):
            if opt_str in job and not isinstance(job[opt_str], str):
                raise ConfigError(f"Job '{job_id}': '{opt_str}' must be a string if provided.")

    _validate_http_trigger(cfg.get("http_trigger"), seen_ids)


def find_job(cfg: dict[str, Any], job_id: str) -> dict[str, Any] | None:
    """Return the (normalized) job dict with this id, or None."""
    for job in cfg.get("jobs", []):
        if isinstance(job, dict) and job.get("id") == job_id:
            return job
    return None


def default_http_job(cfg: dict[str, Any]) -> dict[str, Any] | None:
    """
    Job run by a bare `GET /`: http_trigger.job_id if set, else the first
    job running modules.role_watch, else the first job.
    """
    http_cfg = cfg.get("http_trigger") or {}
    wanted = http_cfg.get("job_id")
    if wanted:
        return find_job(cfg, str(wanted))
    jobs = [j for j in cfg.get("jobs", []) if isinstance(j, dict)]
    for job in jobs:
        if job.get("module") == DEFAULT_WATCH_MODULE:
            return job
    return jobs[0] if jobs else None


# ---- Normalization -----------------------------------------------------------


def _apply_top_level_defaults(cfg: dict[str, Any]) -> None:
    if "jobs" not in cfg or not isinstance(cfg["jobs"], list):
        cfg["jobs"] = []

    tz = cfg.get("timezone")
    if not isinstance(tz, str) or not tz.strip():
        cfg["timezone"] = os.environ.get("TZ", "UTC")

    http_cfg = cfg.get("http_trigger")
    if not isinstance(http_cfg, dict):
        http_cfg = {}
    cfg["http_trigger"] = {
        "enabled": _to_bool(http_cfg.get("enabled", True), field="http_trigger.enabled", job_id="<top-level>"),
        "host": str(http_cfg.get("host") or os.getenv("HTTP_TRIGGER_HOST") or DEFAULT_HTTP_HOST),
        "port": _to_int(
            http_cfg.get("port") or os.getenv("HTTP_TRIGGER_PORT") or DEFAULT_HTTP_PORT,
            field="http_trigger.port",
            job_id="<top-level>",
            allow_zero=False,
        ),
        "job_id": http_cfg.get("job_id"),
    }

    normalized_jobs: list[dict[str, Any]] = []
    for idx, job in enumerate(cfg["jobs"]):
        if not isinstance(job, dict):
            raise ConfigError(f"Job at index {idx} must be an object/dict.")

        job_copy = dict(job)
        job_copy["id"] = _derive_job_id(job_copy, idx)

        # Accept top-level trigger keys as sugar for a nested "trigger" block.
        if "trigger" not in job_copy:
            lifted = {k: job_copy.pop(k) for k in _TRIGGER_FIELDS if k in job_copy}
            if lifted:
                job_copy["trigger"] = lifted

        # Resolve email_*_env -> email_* and drop the env var name
        for target, env_key in _EMAIL_ENV_FIELDS.items():
            if env_key in job_copy:
                raw = job_copy.pop(env_key)
                if isinstance(raw, str):
                    value = os.getenv(raw.strip(), "")
                    job_copy[target] = [e.strip() for e in value.split(",") if e.strip()]

        for b in ("coalesce", "send_email"):
            if b in job_copy:
                job_copy[b] = _to_bool(job_copy[b], field=b, job_id=job_copy["id"])

        for n, allow_zero in (("timeout_sec", True), ("max_instances", False), ("misfire_grace_time", True)):
            if n in job_copy:
                job_copy[n] = _to_int(job_copy[n], field=n, job_id=job_copy["id"], allow_zero=allow_zero)

        for f in _EMAIL_FIELDS:
            if f in job_copy:
                job_copy[f] = _as_str_list(job_copy[f], field=f, job_id=job_copy["id"])

        normalized_jobs.append(job_copy)

    cfg["jobs"] = normalized_jobs


def _derive_job_id(job: dict[str, Any], idx: int) -> str:
    # id | name | module -> id
    for key in ("id", "name", "module"):
        v = job.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return f"job_{idx}"


# ---- Validation helpers ------------------------------------------------------


def _validate_trigger(kind: str, value: Any, job_id: str) -> None:
    if kind == "interval":
        if not isinstance(value, dict):
            raise ConfigError(f"Job '{job_id}': interval must be an object of time kwargs.")
        for k in ("weeks", "days", "hours", "minutes", "seconds", "jitter"):
            if k in value:
                _to_int(value[k], field=f"interval.{k}", job_id=job_id, allow_zero=True)
    elif kind == "cron":
        if not isinstance(value, (str, dict)):
            raise ConfigError(f"Job '{job_id}': cron must be a crontab string or an object.")
    elif kind == "date":
        run_at = value.get("run_at") if isinstance(value, dict) else value
        if run_at in (None, ""):
            raise ConfigError(f"Job '{job_id}': date requires an ISO string or epoch seconds.")
    elif kind == "daily_time":
        times = value.get("time") if isinstance(value, dict) else value
        if isinstance(times, str):
            times = [times]
        if not isinstance(times, list) or not times:
            raise ConfigError(f"Job '{job_id}': daily_time.time must be 'HH:MM' or a list of them.")
        for t in times:
            _validate_hhmm(t, job_id)


def _validate_hhmm(value: Any, job_id: str) -> None:
    m = _HHMM_RE.match(str(value).strip())
    if not m:
        raise ConfigError(f"Job '{job_id}': daily_time must match HH:MM[:SS] (24h), got {value!r}.")
    hour, minute, second = int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)
    if not (0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 59):
        raise ConfigError(f"Job '{job_id}': daily_time out of range (00:00..23:59), got {value!r}.")


def _validate_http_trigger(http_cfg: Any, job_ids: set[str]) -> None:
    if http_cfg is None:
        return
    if not isinstance(http_cfg, dict):
        raise ConfigError("'http_trigger' must be an object if provided.")
    job_id = http_cfg.get("job_id")
    if job_id is not None and job_id not in job_ids:
        raise ConfigError(f"http_trigger.job_id {job_id!r} does not match any job id.")


def _require_optional_bool(job: dict[str, Any], field: str, job_id: str) -> None:
    if field in job:
        _to_bool(job[field], field=field, job_id=job_id)


def _require_optional_int(job: dict[str, Any], field: str, job_id: str, *, allow_zero: bool) -> None:
    if field in job:
        _to_int(job[field], field=field, job_id=job_id, allow_zero=allow_zero)


def _as_str_list(value: Any, *, field: str, job_id: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [s.strip() for s in value.split(",") if s.strip()]
    if isinstance(value, list):
        out: list[str] = []
        for i, item in enumerate(value):
            if not isinstance(item, str) or not item.strip():
                raise ConfigError(f"Job '{job_id}': {field}[{i}] must be a non-empty string.")
            out.append(item.strip())
        return out
    raise ConfigError(f"Job '{job_id}': '{field}' must be a string or list of strings.")


def _to_bool(value: Any, *, field: str, job_id: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "on"}:
            return True
        if v in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Job '{job_id}': '{field}' must be a boolean (or boolean-like string).")


def _to_int(value: Any, *, field: str, job_id: str, allow_zero: bool) -> int:
    try:
        iv = int(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"Job '{job_id}': '{field}' must be an integer.") from err
    if iv < 0 or (iv == 0 and not allow_zero):
        raise ConfigError(f"Job '{job_id}': '{field}' must be >= {'0' if allow_zero else '1'} (got {iv}).")
    return iv


def _read_any(path: str) -> _LoadResult:
    lower = path.lower()
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path}: {e}") from e

    if lower.endswith(".yml") or lower.endswith(".yaml"):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Top-level YAML must be a mapping/object.")
        return _LoadResult(cfg=data, source=path)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Top-level JSON must be an object.")
    return _LoadResult(cfg=data, source=path)
