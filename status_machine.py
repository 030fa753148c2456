"""Status transitions for waiting list entries.

An entry moves ``scheduled -> waiting -> attending -> completed``.  It can be
cancelled from any non-terminal status and marked a no-show before the patient
is called.  Each transition stamps one timestamp:

* entering ``waiting`` sets ``checked_in_at``
* entering ``attending`` sets ``attending_at``
* entering a terminal status sets ``completed_at``

Older screens used a second vocabulary (``in_progress``, ``done``,
``canceled``); :func:`normalize_status` maps those onto the canonical set.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Union

from errors import InvalidTransitionError, ValidationError
from models import EntryStatus, WaitingListEntry

TERMINAL_STATUSES: FrozenSet[EntryStatus] = frozenset(
    {EntryStatus.completed, EntryStatus.no_show, EntryStatus.cancelled}
)

TRANSITIONS: Dict[EntryStatus, FrozenSet[EntryStatus]] = {
    EntryStatus.scheduled: frozenset(
        {EntryStatus.waiting, EntryStatus.cancelled, EntryStatus.no_show}
    ),
    EntryStatus.waiting: frozenset(
        {EntryStatus.attending, EntryStatus.cancelled, EntryStatus.no_show}
    ),
    EntryStatus.attending: frozenset({EntryStatus.completed, EntryStatus.cancelled}),
    EntryStatus.completed: frozenset(),
    EntryStatus.no_show: frozenset(),
    EntryStatus.cancelled: frozenset(),
}

LEGACY_STATUSES: Dict[str, EntryStatus] = {
    "in_progress": EntryStatus.attending,
    "called": EntryStatus.attending,
    "in_room": EntryStatus.attending,
    "done": EntryStatus.completed,
    "canceled": EntryStatus.cancelled,
}


def normalize_status(value: Union[str, EntryStatus, None]) -> EntryStatus:
    """Parse a status string, accepting legacy synonyms."""
    if isinstance(value, EntryStatus):
        return value
    if not value:
        raise ValidationError("status is required")
    key = str(value).strip().lower()
    if key in LEGACY_STATUSES:
        return LEGACY_STATUSES[key]
    try:
        return EntryStatus(key)
    except ValueError:
        raise ValidationError(f"Unknown status '{value}'") from None


def is_terminal(status: EntryStatus) -> bool:
    return status in TERMINAL_STATUSES


def allowed_targets(status: EntryStatus) -> FrozenSet[EntryStatus]:
    return TRANSITIONS[status]


def check_transition(current: EntryStatus, target: EntryStatus) -> bool:
    """Validate ``current -> target``.

    Returns ``False`` when the request is a no-op (same status) and ``True``
    when a real transition is needed.  Raises :class:`InvalidTransitionError`
    otherwise.
    """
    if current == target:
        return False
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot change status from '{current.value}' to '{target.value}'"
        )
    return True


def plan_transition(
    entry: WaitingListEntry, target: EntryStatus, now: datetime
) -> Optional[Dict[str, Any]]:
    """Return the column changes for moving ``entry`` to ``target``.

    ``None`` means the entry is already in ``target``.  The entry itself is
    not modified.
    """
    current = EntryStatus(entry.status)
    if not check_transition(current, target):
        return None

    changes: Dict[str, Any] = {"status": target, "updated_at": now}
    if target == EntryStatus.waiting:
        changes["checked_in_at"] = now
    elif target == EntryStatus.attending:
        # keep the timeline monotonic when the clock steps backwards
        changes["attending_at"] = _not_before(now, entry.checked_in_at)
    elif target in TERMINAL_STATUSES:
        changes["completed_at"] = _not_before(
            now, entry.attending_at or entry.checked_in_at
        )
    return changes


def _not_before(value: datetime, floor: Optional[datetime]) -> datetime:
    if floor is not None and value < floor:
        return floor
    return value
