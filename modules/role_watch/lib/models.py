from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Role:
    """
    A single posting row from the watched table.
    Dedupe identity is `apply_link`.
    """

    company: str
    title: str
    apply_link: str

    def as_dict(self) -> dict[str, str]:
        return {"company": self.company, "title": self.title, "apply_link": self.apply_link}


@dataclass(frozen=True)
class MarkerState:
    """
    Persisted record of the last notification: head link, when, and how many roles.

    Stored as JSON with camelCase keys (firstJobLink / lastUpdated / roleCount);
    from_json also accepts the snake_case field names.
    """

    first_role_link: str
    last_updated: str
    role_count: int

    def to_json(self) -> str:
        return json.dumps(
            {
                "firstJobLink": self.first_role_link,
                "lastUpdated": self.last_updated,
                "roleCount": self.role_count,
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str) -> MarkerState:
        data: Any = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("marker state must be a JSON object")
        link = data.get("firstJobLink", data.get("first_role_link"))
        if not isinstance(link, str):
            raise ValueError("marker state is missing 'firstJobLink'")
        return cls(
            first_role_link=link,
            last_updated=str(data.get("lastUpdated", data.get("last_updated")) or ""),
            role_count=int(data.get("roleCount", data.get("role_count")) or 0),
        )


@dataclass
class ScanReport:
    """
    Everything one extraction pass learned about the document.

    - roles: filtered, truncated, in document order (newest first)
    - section: (start_line, end_line) of the table body, or None if not found
    - rows_seen: rows parsed before termination (valid or not)
    - rows_failed: (row_index, error) for rows that could not be parsed
    - stopped_at_marker: True if the previous head link was reached
    - filtered_out: rows dropped by the validity filter
    - truncated: rows dropped by the max_roles cap
    """

    roles: list[Role] = field(default_factory=list)
    section: tuple[int, int] | None = None
    rows_seen: int = 0
    rows_failed: list[tuple[int, str]] = field(default_factory=list)
    stopped_at_marker: bool = False
    filtered_out: int = 0
    truncated: int = 0


@dataclass(frozen=True)
class Decision:
    notify: bool
    reason: str  # "no_roles" | "unchanged_head" | "new_head" | "first_run"
    head_link: str | None = None
