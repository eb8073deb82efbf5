# service/http_trigger.py
"""
Manual HTTP trigger.

    GET /               run the default watch job (http_trigger.job_id, else the
                        first modules.role_watch job)
    GET /run/{job_id}   run a named job
    GET /health         liveness JSON

Runs go through runner.run_module_once() with lock_key=<job id>, so a manual
request racing a scheduled tick waits for it instead of double-notifying.
Success is 200 text/plain with the marker as it stood before the run; any
fatal error is 500 "Error: <message>".
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from service import config_schema, runner

LOG = logging.getLogger(__name__)

_NON_GET = ["POST", "PUT", "PATCH", "DELETE"]


def create_app(cfg_getter: Callable[[], dict[str, Any]]) -> FastAPI:
    """Build the trigger app. `cfg_getter` returns the current (normalized) config."""
    app = FastAPI(title="Role Watch Trigger", version="1.0.0")

    @app.get("/health")
    def health_check() -> dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

    @app.get("/", response_class=PlainTextResponse)
    def run_default() -> PlainTextResponse:
        job = config_schema.default_http_job(cfg_getter())
        if job is None:
            return PlainTextResponse("Error: no job configured for the HTTP trigger", status_code=500)
        return _run_job(job)

    @app.get("/run/{job_id}", response_class=PlainTextResponse)
    def run_named(job_id: str) -> PlainTextResponse:
        job = config_schema.find_job(cfg_getter(), job_id)
        if job is None:
            return PlainTextResponse(f"Unknown job: {job_id}", status_code=404)
        return _run_job(job)

    @app.api_route("/", methods=_NON_GET, include_in_schema=False)
    @app.api_route("/run/{job_id}", methods=_NON_GET, include_in_schema=False)
    def method_not_allowed() -> PlainTextResponse:
        return PlainTextResponse("Method not allowed", status_code=405)

    return app


def format_summary(result: runner.RunResult) -> str:
    """Render the manual-trigger body from a run's meta."""
    lines = ["Cron job executed successfully", ""]
    prior = result.meta.get("prior_state")
    if prior:
        lines += [
            "Stored Data:",
            f"- First Job Link: {prior.get('first_role_link')}",
            f"- Last Updated: {prior.get('last_updated')}",
            f"- Role Count: {prior.get('role_count')}",
        ]
    else:
        lines.append("No stored data found (first run)")
    lines += ["", f"Result: {result.message}", ""]
    return "\n".join(lines)


def _run_job(job: dict[str, Any]) -> PlainTextResponse:
    job_id = job["id"]
    LOG.info("Manual trigger via HTTP request received (job=%s)", job_id)
    try:
        result = runner.run_module_once(
            job["module"],
            kwargs=dict(job.get("kwargs") or {}),
            email_to=job.get("email_to"),
            subject=job.get("subject"),
            send_email=job.get("send_email", True),
            trigger_type="manual",
            cc=job.get("email_cc"),
            bcc=job.get("email_bcc"),
            job_context={"job_id": job_id, "module": job["module"]},
            timeout_sec=job.get("timeout_sec"),
            lock_key=job_id,
        )
    except Exception as e:
        LOG.exception("Manual run of job[%s] failed", job_id)
        return PlainTextResponse(f"Error: {str(e) or type(e).__name__}", status_code=500)
    return PlainTextResponse(format_summary(result), status_code=200)


# ---- Lifecycle ---------------------------------------------------------------


class TriggerController:
    def __init__(self, server: uvicorn.Server, thread: threading.Thread):
        self._server = server
        self._thread = thread

    def stop(self) -> None:
        LOG.info("Stopping HTTP trigger...")
        self._server.should_exit = True

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout=timeout)

    @property
    def thread(self) -> threading.Thread:
        return self._thread


def start(cfg_getter: Callable[[], dict[str, Any]]) -> TriggerController:
    """Serve the trigger app with uvicorn on a daemon thread."""
    http_cfg = cfg_getter().get("http_trigger") or {}
    host = http_cfg.get("host", config_schema.DEFAULT_HTTP_HOST)
    port = int(http_cfg.get("port", config_schema.DEFAULT_HTTP_PORT))

    server = uvicorn.Server(uvicorn.Config(create_app(cfg_getter), host=host, port=port, log_config=None))
    t = threading.Thread(target=server.run, name="http-trigger", daemon=True)
    t.start()
    LOG.info("HTTP trigger listening on %s:%s", host, port)
    return TriggerController(server, t)
