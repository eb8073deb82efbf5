# tests/test_http_trigger.py
import pytest
from fastapi.testclient import TestClient

from modules.role_watch.lib import state
from modules.role_watch.lib.errors import SourceFetchError
from modules.role_watch.lib.http_client import HttpClient
from modules.role_watch.lib.models import MarkerState
from service import config_schema, http_trigger

LINK_A = "https://jobs.example.com/acme/1"


@pytest.fixture
def cfg(write_min_config):
    return config_schema.load_config(str(write_min_config))


@pytest.fixture
def client(cfg):
    return TestClient(http_trigger.create_app(lambda: cfg))


@pytest.fixture
def served_readme(monkeypatch, readme):
    doc = readme.doc([readme.row("Acme", "SWE Intern", LINK_A)])
    monkeypatch.setattr(HttpClient, "fetch_text", lambda self, url, **kw: doc)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_first_run_reports_no_stored_data(client, served_readme):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    body = resp.text
    assert body.startswith("Cron job executed successfully\n\n")
    assert "No stored data found (first run)" in body
    assert "Result: Dry run: would notify about 1 roles." in body


def test_reports_state_as_it_was_before_the_run(client, cfg, served_readme):
    db_path = cfg["jobs"][0]["kwargs"]["sqlite_path"]
    state.put_state(db_path, state.DEFAULT_STATE_KEY, MarkerState(LINK_A, "2025-01-01T00:00:00Z", 3))

    resp = client.get("/")
    assert resp.status_code == 200
    assert "Stored Data:\n" in resp.text
    assert f"- First Job Link: {LINK_A}\n" in resp.text
    assert "- Last Updated: 2025-01-01T00:00:00Z\n" in resp.text
    assert "- Role Count: 3\n" in resp.text
    assert "Result: No roles found. Skipping email send." in resp.text


def test_named_job(client, served_readme):
    assert client.get("/run/role-watch").status_code == 200


def test_unknown_job_is_404(client):
    resp = client.get("/run/nope")
    assert resp.status_code == 404
    assert "nope" in resp.text


def test_fatal_error_is_500(client, monkeypatch):
    def failing(self, url, **kwargs):
        raise SourceFetchError(url, 503, "Service Unavailable")

    monkeypatch.setattr(HttpClient, "fetch_text", failing)
    resp = client.get("/")
    assert resp.status_code == 500
    assert resp.text.startswith("Error: Failed to fetch https://example.org/README.md: 503")


@pytest.mark.parametrize("method", ["post", "put", "delete"])
def test_non_get_is_405(client, method):
    resp = getattr(client, method)("/")
    assert resp.status_code == 405
    assert resp.text == "Method not allowed"


def test_no_jobs_is_500():
    app = http_trigger.create_app(lambda: config_schema.load_config())
    resp = TestClient(app).get("/")
    assert resp.status_code == 500
    assert resp.text.startswith("Error:")
