# tests/test_detector_state.py
import json
import sqlite3

import pytest

from modules.role_watch.lib import detector, state
from modules.role_watch.lib.errors import StateReadError, StateWriteError
from modules.role_watch.lib.models import MarkerState, Role

ROLES = [
    Role("Acme", "SWE Intern", "https://a/1"),
    Role("Globex", "Backend Intern", "https://g/2"),
]


# ----------------------------------------------------------------------
# Change detection
# ----------------------------------------------------------------------
def test_no_roles_never_notifies():
    d = detector.decide([], MarkerState("https://a/1", "t", 1))
    assert (d.notify, d.reason, d.head_link) == (False, "no_roles", None)
    assert detector.decide([], None).notify is False


def test_first_run_notifies():
    d = detector.decide(ROLES, None)
    assert (d.notify, d.reason, d.head_link) == (True, "first_run", "https://a/1")


def test_unchanged_head_is_suppressed():
    d = detector.decide(ROLES, MarkerState("https://a/1", "2025-01-01T00:00:00Z", 5))
    assert (d.notify, d.reason) == (False, "unchanged_head")


def test_only_the_head_is_compared():
    # Same head, different tail: still suppressed.
    roles = [ROLES[0], Role("Initech", "Data Intern", "https://i/3")]
    assert detector.decide(roles, MarkerState("https://a/1", "t", 2)).notify is False


def test_new_head_notifies():
    d = detector.decide(ROLES, MarkerState("https://old/9", "t", 3))
    assert (d.notify, d.reason, d.head_link) == (True, "new_head", "https://a/1")


def test_next_state(frozen_utc):
    marker = detector.next_state(ROLES)
    assert marker == MarkerState("https://a/1", "2025-01-01T00:00:00Z", 2)


def test_next_state_requires_roles():
    with pytest.raises(ValueError):
        detector.next_state([])


# ----------------------------------------------------------------------
# Marker JSON
# ----------------------------------------------------------------------
def test_marker_json_uses_camel_case_keys():
    raw = MarkerState("https://a/1", "2025-01-01T00:00:00Z", 2).to_json()
    assert json.loads(raw) == {
        "firstJobLink": "https://a/1",
        "lastUpdated": "2025-01-01T00:00:00Z",
        "roleCount": 2,
    }


def test_marker_from_json_accepts_snake_case():
    m = MarkerState.from_json('{"first_role_link": "https://a/1", "last_updated": "x", "role_count": "3"}')
    assert m == MarkerState("https://a/1", "x", 3)


@pytest.mark.parametrize("raw", ["[]", '"just a string"', '{"lastUpdated": "x"}'])
def test_marker_from_json_rejects_bad_shapes(raw):
    with pytest.raises(ValueError):
        MarkerState.from_json(raw)


# ----------------------------------------------------------------------
# SQLite state store
# ----------------------------------------------------------------------
def test_missing_db_is_first_run(db_path):
    assert state.get_state(db_path, state.DEFAULT_STATE_KEY) is None


def test_missing_key_is_first_run(db_path):
    state.put_state(db_path, "other", MarkerState("https://a/1", "t", 1))
    assert state.get_state(db_path, state.DEFAULT_STATE_KEY) is None


def test_put_then_get_and_overwrite(db_path):
    first = MarkerState("https://a/1", "2025-01-01T00:00:00Z", 2)
    state.put_state(db_path, state.DEFAULT_STATE_KEY, first)
    assert state.get_state(db_path, state.DEFAULT_STATE_KEY) == first

    second = MarkerState("https://b/2", "2025-01-02T00:00:00Z", 7)
    state.put_state(db_path, state.DEFAULT_STATE_KEY, second)
    assert state.get_state(db_path, state.DEFAULT_STATE_KEY) == second
    assert state.list_keys(db_path) == [state.DEFAULT_STATE_KEY]


def test_corrupt_value_raises_read_error(db_path):
    state.init_db(db_path)
    conn = sqlite3.connect(db_path)
    with conn:
        conn.execute(
            "INSERT INTO marker_state (key, value, updated_utc) VALUES (?, ?, ?)",
            (state.DEFAULT_STATE_KEY, "{not json", "t"),
        )
    conn.close()
    with pytest.raises(StateReadError):
        state.get_state(db_path, state.DEFAULT_STATE_KEY)


def test_unreadable_file_raises_read_error(tmp_path):
    p = tmp_path / "garbage.db"
    p.write_bytes(b"this is not a sqlite database" * 64)
    with pytest.raises(StateReadError):
        state.get_state(str(p), state.DEFAULT_STATE_KEY)


def test_write_failure_raises_write_error(tmp_path):
    # A directory where the database file should be.
    target = tmp_path / "occupied.db"
    target.mkdir()
    with pytest.raises(StateWriteError):
        state.put_state(str(target), state.DEFAULT_STATE_KEY, MarkerState("https://a/1", "t", 1))


def test_reset_db_is_safe_when_missing(db_path):
    state.reset_db(db_path)
    state.put_state(db_path, "k", MarkerState("https://a/1", "t", 1))
    state.reset_db(db_path)
    assert state.get_state(db_path, "k") is None
