from __future__ import annotations

from collections.abc import Sequence

from .models import Decision, MarkerState, Role
from .utils import now_iso


def decide(roles: Sequence[Role], stored: MarkerState | None) -> Decision:
    """
    Two-step "is this new?" gate.

    Only the head of the list is compared against the stored marker. A table
    that is edited below an unchanged head will not trigger a notification.
    """
    if not roles:
        return Decision(notify=False, reason="no_roles")

    head = roles[0].apply_link
    if stored is None:
        return Decision(notify=True, reason="first_run", head_link=head)
    if stored.first_role_link == head:
        return Decision(notify=False, reason="unchanged_head", head_link=head)
    return Decision(notify=True, reason="new_head", head_link=head)


def next_state(roles: Sequence[Role]) -> MarkerState:
    """Marker to persist after notifying about `roles` (must be non-empty)."""
    if not roles:
        raise ValueError("cannot build a marker from an empty role list")
    return MarkerState(first_role_link=roles[0].apply_link, last_updated=now_iso(), role_count=len(roles))
