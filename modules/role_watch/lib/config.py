from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from .errors import ConfigError
from .extractor import MAX_ROLES
from .state import DEFAULT_STATE_KEY
from .utils import getenv_str, split_addresses, truthy

DEFAULT_SOURCE_URL = "https://raw.githubusercontent.com/SimplifyJobs/Summer2026-Internships/dev/README.md"
DEFAULT_SQLITE_PATH = "/app/local/state/rolewatch.db"


@dataclass
class Settings:
    """
    Canonical configuration for a 'role_watch' run.

    Every field can come from job kwargs; a few fall back to env so a bare
    `run modules.role_watch` works in a configured container:

      source_url     <- ROLE_WATCH_SOURCE_URL
      sqlite_path    <- ROLE_WATCH_DB
      email_to       <- ROLE_WATCH_TO, then TO_EMAIL
    """

    source_url: str = DEFAULT_SOURCE_URL
    sqlite_path: str = DEFAULT_SQLITE_PATH
    state_key: str = DEFAULT_STATE_KEY
    max_roles: int = MAX_ROLES

    fetch_timeout: float = 15.0
    fetch_retries: int = 0

    email_to: list[str] = field(default_factory=list)
    email_cc: list[str] = field(default_factory=list)
    email_bcc: list[str] = field(default_factory=list)
    subject: str | None = None

    # Extract and decide, but neither send nor persist.
    dry_run: bool = False

    @classmethod
    def from_env_and_kwargs(cls, kwargs: Mapping[str, Any] | None) -> Settings:
        """
        Build Settings from kwargs with validation.

        Expected kwargs (all optional):

            source_url: str
            sqlite_path: str = "/app/local/state/rolewatch.db"
            state_key: str = "last_sent_data"
            max_roles: int = 100
            fetch_timeout: float = 15
            fetch_retries: int = 0
            email_to / email_cc / email_bcc: str ("a@x, b@y") or list[str]
            subject: str  # may reference {count}
            dry_run: bool = false
        """
        kw = dict(kwargs or {})

        source_url = str(kw.get("source_url") or getenv_str("ROLE_WATCH_SOURCE_URL", DEFAULT_SOURCE_URL)).strip()
        sqlite_path = str(kw.get("sqlite_path") or getenv_str("ROLE_WATCH_DB", DEFAULT_SQLITE_PATH)).strip()
        state_key = str(kw.get("state_key") or DEFAULT_STATE_KEY).strip()

        try:
            max_roles = int(_given(kw, "max_roles", MAX_ROLES))
            fetch_timeout = float(_given(kw, "fetch_timeout", 15.0))
            fetch_retries = int(_given(kw, "fetch_retries", 0))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

        email_to = split_addresses(kw.get("email_to"))
        if not email_to:
            email_to = split_addresses(os.getenv("ROLE_WATCH_TO") or os.getenv("TO_EMAIL"))

        subject = kw.get("subject")
        settings = cls(
            source_url=source_url,
            sqlite_path=sqlite_path,
            state_key=state_key,
            max_roles=max_roles,
            fetch_timeout=fetch_timeout,
            fetch_retries=fetch_retries,
            email_to=email_to,
            email_cc=split_addresses(kw.get("email_cc")),
            email_bcc=split_addresses(kw.get("email_bcc")),
            subject=str(subject).strip() if subject else None,
            dry_run=truthy(kw.get("dry_run")),
        )
        _validate_settings(settings)
        return settings


def _given(kw: Mapping[str, Any], key: str, default: Any) -> Any:
    """kw[key] unless missing, None or blank; an explicit 0 is kept."""
    value = kw.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    return value


def _validate_settings(s: Settings) -> None:
    parts = urlsplit(s.source_url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigError(f"'source_url' must be an http(s) URL (got {s.source_url!r}).")
    if not s.sqlite_path:
        raise ConfigError("'sqlite_path' cannot be empty.")
    if not s.state_key:
        raise ConfigError("'state_key' cannot be empty.")
    if s.max_roles <= 0:
        raise ConfigError("'max_roles' must be >= 1.")
    if s.fetch_timeout <= 0:
        raise ConfigError("'fetch_timeout' must be > 0.")
    if s.fetch_retries < 0:
        raise ConfigError("'fetch_retries' must be >= 0.")
