"""Elapsed-time helpers for the whiteboard.

Waiting time runs from check-in until the patient is called; turnaround time
runs from the call until the visit ends.  A timer whose end bound is "now" is
live and keeps advancing.  All functions are pure and take ``now`` explicitly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from models import EntryStatus


def elapsed_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two timestamps, never negative."""
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // 60)


def waiting_time(
    checked_in_at: Optional[datetime],
    attending_at: Optional[datetime],
    now: datetime,
    completed_at: Optional[datetime] = None,
) -> Optional[int]:
    """Minutes from check-in until the call, or until the visit ended without one."""
    if checked_in_at is None:
        return None
    end = attending_at or completed_at or now
    return elapsed_minutes(checked_in_at, end)


def turnaround_time(
    attending_at: Optional[datetime],
    completed_at: Optional[datetime],
    now: datetime,
) -> Optional[int]:
    if attending_at is None:
        return None
    end = completed_at if completed_at is not None else now
    return elapsed_minutes(attending_at, end)


def is_waiting_live(status: EntryStatus) -> bool:
    return status == EntryStatus.waiting


def is_turnaround_live(status: EntryStatus) -> bool:
    return status == EntryStatus.attending


def format_minutes(minutes: Optional[int]) -> str:
    """Render minutes the way the board shows them: ``--``, ``42m``, ``1h 5m``."""
    if minutes is None:
        return "--"
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h {minutes % 60}m"


def is_imminent(
    appt_time: Optional[datetime], now: datetime, window_minutes: int = 5
) -> bool:
    """True when the appointment starts within ``window_minutes`` of ``now``."""
    if appt_time is None:
        return False
    return abs((appt_time - now).total_seconds()) <= window_minutes * 60
