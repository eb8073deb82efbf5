# tests/test_config_schema.py
import json

import pytest

from modules.role_watch.lib import config as rw_config
from modules.role_watch.lib.errors import ConfigError as SettingsError
from service import config_schema
from service.config_schema import ConfigError


def test_load_and_validate_min_config(write_min_config):
    cfg = config_schema.load_config()  # CONFIG_PATH set by fixture
    config_schema.validate(cfg)
    (job,) = cfg["jobs"]
    assert job["id"] == "role-watch"
    assert job["email_to"] == ["watcher@example.org"]
    assert cfg["http_trigger"]["port"] == 8799
    assert cfg["http_trigger"]["enabled"] is True


def test_missing_config_path_gives_empty_default():
    cfg = config_schema.load_config()
    assert cfg["jobs"] == []
    assert cfg["http_trigger"]["port"] == config_schema.DEFAULT_HTTP_PORT


def test_yaml_config_and_top_level_trigger_sugar(tmp_path, monkeypatch):
    monkeypatch.setenv("WATCH_TO", "a@example.org, b@example.org")
    p = tmp_path / "config.yaml"
    p.write_text(
        "\n".join([
            "timezone: UTC",
            "jobs:",
            "  - module: modules.role_watch",
            "    cron: '*/30 * * * *'",
            "    email_to_env: WATCH_TO",
            "    send_email: 'no'",
        ]),
        encoding="utf-8",
    )
    cfg = config_schema.load_config(str(p))
    config_schema.validate(cfg)
    (job,) = cfg["jobs"]
    assert job["id"] == "modules.role_watch"
    assert job["trigger"] == {"cron": "*/30 * * * *"}
    assert job["email_to"] == ["a@example.org", "b@example.org"]
    assert "email_to_env" not in job
    assert job["send_email"] is False


def _cfg(*jobs, **top):
    return {"jobs": list(jobs), **top}


@pytest.mark.parametrize(
    "cfg",
    [
        _cfg({"trigger": {"cron": "* * * * *"}}),  # no module
        _cfg({"module": "m", "trigger": {}}),  # no trigger kind
        _cfg({"module": "m", "trigger": {"cron": "* * * * *", "interval": {"minutes": 1}}}),  # two kinds
        _cfg({"module": "m", "trigger": {"daily_time": {"time": "25:00"}}}),
        _cfg({"module": "m", "trigger": {"interval": "5m"}}),
        _cfg({"module": "m", "trigger": {"cron": "* * * * *"}, "kwargs": []}),
        _cfg({"id": "a", "module": "m", "trigger": {"cron": "* * * * *"}}, {"id": "a", "module": "m", "trigger": {"cron": "* * * * *"}}),
        _cfg({"id": "a", "module": "m", "trigger": {"cron": "* * * * *"}}, http_trigger={"job_id": "b"}),
        _cfg(executor_workers=0),
    ],
)
def test_validate_rejects(cfg):
    with pytest.raises(ConfigError):
        config_schema.validate(cfg)


def test_invalid_json_is_config_error(tmp_path):
    p = tmp_path / "broken.json"
    p.write_text("{nope", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid JSON"):
        config_schema.load_config(str(p))


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        config_schema.load_config(str(tmp_path / "absent.json"))


def test_default_http_job_prefers_configured_id(tmp_path):
    jobs = [
        {"id": "other", "module": "modules.something", "trigger": {"cron": "* * * * *"}},
        {"id": "watch", "module": "modules.role_watch", "trigger": {"cron": "* * * * *"}},
        {"id": "watch-2", "module": "modules.role_watch", "trigger": {"cron": "* * * * *"}},
    ]
    p = tmp_path / "c.json"
    p.write_text(json.dumps({"jobs": jobs}), encoding="utf-8")
    cfg = config_schema.load_config(str(p))
    assert config_schema.default_http_job(cfg)["id"] == "watch"

    cfg["http_trigger"]["job_id"] = "watch-2"
    assert config_schema.default_http_job(cfg)["id"] == "watch-2"
    assert config_schema.find_job(cfg, "nope") is None


# ----------------------------------------------------------------------
# Per-run Settings
# ----------------------------------------------------------------------
def test_settings_defaults():
    s = rw_config.Settings.from_env_and_kwargs({})
    assert s.source_url == rw_config.DEFAULT_SOURCE_URL
    assert s.state_key == "last_sent_data"
    assert s.max_roles == 100
    assert s.fetch_retries == 0
    assert s.email_to == []
    assert s.dry_run is False


def test_settings_env_fallbacks(monkeypatch):
    monkeypatch.setenv("ROLE_WATCH_SOURCE_URL", "https://mirror.example/README.md")
    monkeypatch.setenv("ROLE_WATCH_DB", "/tmp/rw.db")
    monkeypatch.setenv("TO_EMAIL", "a@example.org,b@example.org")
    s = rw_config.Settings.from_env_and_kwargs({"dry_run": "true"})
    assert s.source_url == "https://mirror.example/README.md"
    assert s.sqlite_path == "/tmp/rw.db"
    assert s.email_to == ["a@example.org", "b@example.org"]
    assert s.dry_run is True


@pytest.mark.parametrize(
    "kwargs",
    [
        {"source_url": "ftp://example.org/README.md"},
        {"source_url": "not a url"},
        {"max_roles": -1},
        {"max_roles": 0},
        {"max_roles": "0"},
        {"fetch_timeout": 0},
        {"fetch_timeout": "soon"},
        {"fetch_retries": -2},
    ],
)
def test_settings_rejects(kwargs):
    with pytest.raises(SettingsError):
        rw_config.Settings.from_env_and_kwargs(kwargs)


def test_settings_explicit_zero_retries_and_blank_numbers():
    s = rw_config.Settings.from_env_and_kwargs({"fetch_retries": 0, "max_roles": "", "fetch_timeout": None})
    assert s.fetch_retries == 0
    assert s.max_roles == 100
    assert s.fetch_timeout == 15.0
