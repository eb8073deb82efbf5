# tests/test_runner_integration.py
import re
import sys
import threading
import time
import types

import pytest

from modules.role_watch.lib import state
from modules.role_watch.lib.http_client import HttpClient

LINK_A = "https://jobs.example.com/acme/1"


@pytest.fixture
def served_readme(monkeypatch, readme):
    """Serve a fixed README to every HttpClient.fetch_text call."""
    doc = {"text": readme.doc([readme.row("Acme", "SWE Intern", LINK_A)])}
    calls = []

    def fake_fetch(self, url, **kwargs):
        calls.append(url)
        return doc["text"]

    monkeypatch.setattr(HttpClient, "fetch_text", fake_fetch)
    return types.SimpleNamespace(doc=doc, calls=calls)


def test_runner_dry_run_by_default(served_readme, stub_emailer, db_path):
    from service import runner

    result = runner.run_module_once(
        module="modules.role_watch",
        kwargs={"source_url": "https://example.org/README.md", "sqlite_path": db_path},
        email_to=["watcher@example.org"],
    )
    assert result.ok is True
    assert re.match(r"^[a-f0-9]+$", result.run_id)
    assert result.meta["outcome"] == "first_run"
    assert result.meta["dry_run"] is True
    assert stub_emailer.sent["messages"] == []
    assert state.get_state(db_path) is None


def test_runner_email_path_when_enabled(served_readme, stub_emailer, email_enabled, db_path):
    from service import runner

    result = runner.run_module_once(
        module="modules.role_watch",
        kwargs={"source_url": "https://example.org/README.md", "sqlite_path": db_path},
        send_email=True,
        email_to=["test@example.org"],
        subject="[test] {count} new",
    )
    sent = stub_emailer.sent["messages"]
    assert len(sent) == 1
    assert sent[0]["subject"] == "[test] 1 new"
    assert sent[0]["to"] == ["test@example.org"]
    assert result.message == "Email sent with 1 roles."
    assert state.get_state(db_path).first_role_link == LINK_A


def test_send_email_false_forces_dry_run(served_readme, stub_emailer, email_enabled, db_path):
    from service import runner

    result = runner.run_module_once(
        module="modules.role_watch",
        kwargs={"source_url": "https://example.org/README.md", "sqlite_path": db_path},
        send_email=False,
        email_to=["test@example.org"],
    )
    assert result.meta["dry_run"] is True
    assert stub_emailer.sent["messages"] == []


def test_env_kwargs_are_resolved(served_readme, stub_emailer, email_enabled, db_path, monkeypatch):
    from service import runner

    monkeypatch.setenv("MY_WATCH_TO", "env@example.org")
    runner.run_module_once(
        module="modules.role_watch",
        kwargs={"source_url": "https://example.org/README.md", "sqlite_path": db_path, "email_to_env": "MY_WATCH_TO"},
    )
    assert stub_emailer.sent["messages"][0]["to"] == ["env@example.org"]


def test_module_errors_propagate_and_are_logged(monkeypatch, db_path):
    from modules.role_watch.lib.errors import SourceFetchError
    from service import logging_utils, runner

    def failing(self, url, **kwargs):
        raise SourceFetchError(url, 404, "Not Found")

    monkeypatch.setattr(HttpClient, "fetch_text", failing)
    with pytest.raises(SourceFetchError):
        runner.run_module_once(
            module="modules.role_watch",
            kwargs={"source_url": "https://example.org/README.md", "sqlite_path": db_path},
        )
    with open(logging_utils.get_activity_log_path(), encoding="utf-8") as f:
        assert '"ok":false' in f.read()


def test_missing_run_callable():
    from service import runner

    with pytest.raises(AttributeError):
        runner.run_module_once(module="modules.role_watch.lib.utils")


# ----------------------------------------------------------------------
# Single-flight
# ----------------------------------------------------------------------
@pytest.fixture
def slow_module(monkeypatch):
    """A throwaway module whose run() records overlapping executions."""
    mod = types.ModuleType("rw_test_slow_module")
    tracker = {"active": 0, "max_active": 0, "runs": 0}
    guard = threading.Lock()

    def run(**kwargs):
        with guard:
            tracker["active"] += 1
            tracker["max_active"] = max(tracker["max_active"], tracker["active"])
        time.sleep(0.05)
        with guard:
            tracker["active"] -= 1
            tracker["runs"] += 1
        return {"message": "ok"}

    mod.run = run
    mod.tracker = tracker
    monkeypatch.setitem(sys.modules, mod.__name__, mod)
    return mod


def test_runs_with_same_key_never_overlap(slow_module):
    from service import runner

    threads = [
        threading.Thread(target=runner.run_module_once, args=(slow_module.__name__,), kwargs={"lock_key": "job"})
        for _ in range(4)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert slow_module.tracker["runs"] == 4
    assert slow_module.tracker["max_active"] == 1


def test_timeout_returns_promptly(slow_module):
    from service import runner

    with pytest.raises(TimeoutError):
        runner.run_module_once(slow_module.__name__, timeout_sec=0.001, lock_key="timeout-job")
