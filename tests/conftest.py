# tests/conftest.py
import json
import os
import pathlib
import tempfile
import types
import warnings

import pytest
from freezegun import freeze_time

from modules.role_watch.lib import config as rw_config
from modules.role_watch.lib import state as rw_state

warnings.filterwarnings("error", category=DeprecationWarning, module=r"(modules|service)\.")


# ---------------------------------------------------------------------
# Live tests are opt-in: use --live or RUN_LIVE_TESTS=1
# ---------------------------------------------------------------------
def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run tests marked as 'live' (network calls or external services).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_live = config.getoption("--live") or os.getenv("RUN_LIVE_TESTS") == "1"
    if run_live:
        return
    skip_live = pytest.mark.skip(reason="live tests disabled (use --live or RUN_LIVE_TESTS=1)")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------
# Test-wide env defaults (autouse, function-scoped)
# ---------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _env_defaults(monkeypatch):
    # Write logs to a throwaway dir so real logs stay clean (per test)
    tmp_logs = tempfile.mkdtemp(prefix="rw-pytest-logs-")
    monkeypatch.setenv("LOG_DIR", tmp_logs)
    monkeypatch.setenv("ACTIVITY_LOG_PREFIX", "activity-test")
    monkeypatch.setenv("ERROR_LOG_PREFIX", "error-test")
    monkeypatch.setenv("ACTIVITY_LOG_PATH", os.path.join(tmp_logs, "activity-fallback.log"))

    for name in ("ROLE_WATCH_TO", "TO_EMAIL", "ROLE_WATCH_DB", "ROLE_WATCH_SOURCE_URL", "EMAIL_TRANSPORT"):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture(autouse=True)
def no_email_env(monkeypatch):
    monkeypatch.setenv("SEND_EMAIL", "0")
    monkeypatch.setenv("DRY_RUN", "1")
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    yield


@pytest.fixture
def email_enabled(monkeypatch):
    """Undo the autouse no-email defaults and provide a complete SMTP env."""
    monkeypatch.setenv("SEND_EMAIL", "1")
    monkeypatch.delenv("DRY_RUN", raising=False)
    monkeypatch.setenv("SMTP_HOST", "smtp.example.invalid")
    monkeypatch.setenv("SMTP_USERNAME", "watcher@example.org")
    monkeypatch.setenv("SMTP_PASSWORD", "hunter2")
    monkeypatch.setenv("SMTP_FROM", "watcher@example.org")
    yield


@pytest.fixture
def frozen_utc():
    with freeze_time("2025-01-01T00:00:00Z"):
        yield


@pytest.fixture
def stub_emailer(monkeypatch):
    class StubErr(Exception):
        pass

    sent = {"messages": []}

    def send_html(**kwargs):
        sent["messages"].append(kwargs)
        return "<fake-message-id@example>"

    ns = types.SimpleNamespace(send_html=send_html, sent=sent, StubErr=StubErr)
    monkeypatch.setattr("service.emailer.send_html", ns.send_html, raising=True)
    return ns


# ---------------------------------------------------------------------
# README fixtures
# ---------------------------------------------------------------------
def make_row(company, title, link, location="Remote", age="0d"):
    """One README table row, laid out one cell per line like the real file."""
    link_cell = f'<a href="{link}"><img src="apply.png" alt="Apply"></a>' if link else ""
    return "\n".join([
        "<tr>",
        f"<td>{company}</td>",
        f"<td>{title}</td>",
        f"<td>{location}</td>",
        f"<td>{link_cell}</td>",
        f"<td>{age}</td>",
        "</tr>",
    ])


def make_readme(rows, *, tbody=True, closed=True, preamble="# Summer 2026 Tech Internships"):
    parts = [preamble, "", "<table>", "<thead>", "<tr><th>Company</th><th>Role</th></tr>", "</thead>"]
    if tbody:
        parts.append("<tbody>")
    parts.extend(rows)
    if tbody and closed:
        parts.append("</tbody>")
    if closed:
        parts.append("</table>")
    parts.append("")
    parts.append("## Footer")
    return "\n".join(parts)


@pytest.fixture
def readme():
    """Builder namespace: readme.row(...), readme.doc([...])."""
    return types.SimpleNamespace(row=make_row, doc=make_readme)


@pytest.fixture
def db_path(tmp_path: pathlib.Path) -> str:
    p = tmp_path / "state" / "rolewatch.db"
    rw_state.reset_db(str(p))
    return str(p)


@pytest.fixture
def fresh_settings(db_path):
    """A brand-new Settings per test, pointed at a per-test SQLite file."""
    return rw_config.Settings.from_env_and_kwargs({
        "source_url": "https://example.org/README.md",
        "sqlite_path": db_path,
        "email_to": ["watcher@example.org"],
    })


@pytest.fixture
def write_min_config(tmp_path, monkeypatch, db_path):
    cfg = {
        "timezone": "UTC",
        "http_trigger": {"port": 8799},
        "jobs": [
            {
                "id": "role-watch",
                "module": "modules.role_watch",
                "trigger": {"date": "2099-01-01T00:00:00Z"},
                "email_to": ["watcher@example.org"],
                "kwargs": {"source_url": "https://example.org/README.md", "sqlite_path": db_path},
                "summary": "pytest config",
            }
        ],
    }
    p = tmp_path / "config.json"
    p.write_text(json.dumps(cfg), encoding="utf-8")
    monkeypatch.setenv("CONFIG_PATH", str(p))
    return p
