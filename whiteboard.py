"""Whiteboard projection: the day's queue as display-ready rows.

Rows are rebuilt from the stored entries on every fetch and never written
back.  Each entry is joined with its owner, pet, appointment and provider,
filtered, ordered by priority and arrival, numbered, and given its waiting and
turnaround times as of a single ``now``.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import and_, or_
from sqlmodel import Session, col, select

from models import (
    Appointment,
    EntryStatus,
    Patient,
    Pet,
    Priority,
    Staff,
    WaitingListEntry,
    utcnow,
)
from schemas import WhiteboardFilters, WhiteboardRow, WhiteboardStats
from services import day_bounds, db_errors
from status_machine import TERMINAL_STATUSES
from timers import (
    format_minutes,
    is_imminent,
    is_turnaround_live,
    is_waiting_live,
    turnaround_time,
    waiting_time,
)

logger = logging.getLogger(__name__)

PRIORITY_WEIGHT = {
    Priority.urgent: 4,
    Priority.high: 3,
    Priority.normal: 2,
    Priority.low: 1,
}

SHOW_STATUSES = {
    "waiting": {EntryStatus.waiting},
    "attending": {EntryStatus.attending},
    "completed": set(TERMINAL_STATUSES),
    "scheduled": {EntryStatus.scheduled},
}

WALK_IN = "Walk-in"


class _Joined(BaseModel):
    """An entry with the reference rows it was joined to (any may be missing)."""

    entry: WaitingListEntry
    owner: Optional[Patient]
    pet: Optional[Pet]
    appointment: Optional[Appointment]
    provider: Optional[Staff]

    @property
    def appt_type(self) -> str:
        if self.appointment is not None and self.appointment.appointment_type:
            return self.appointment.appointment_type
        return WALK_IN

    @property
    def order_time(self) -> datetime:
        if self.entry.checked_in_at is not None:
            return self.entry.checked_in_at
        if self.appointment is not None:
            return self.appointment.appointment_date
        return self.entry.created_at


def _fetch(session: Session, clinic_id: str, day: date) -> List[_Joined]:
    start, end = day_bounds(day)
    checked_in = col(WaitingListEntry.checked_in_at)
    appt_date = col(Appointment.appointment_date)
    created = col(WaitingListEntry.created_at)

    stmt = (
        select(WaitingListEntry, Patient, Pet, Appointment, Staff)
        .outerjoin(
            Patient,
            and_(Patient.id == WaitingListEntry.patient_id, Patient.clinic_id == clinic_id),
        )
        .outerjoin(
            Pet,
            and_(Pet.id == WaitingListEntry.pet_id, Pet.clinic_id == clinic_id),
        )
        .outerjoin(
            Appointment,
            and_(
                Appointment.id == WaitingListEntry.appointment_id,
                Appointment.clinic_id == clinic_id,
            ),
        )
        .outerjoin(
            Staff,
            and_(Staff.id == Appointment.provider_id, Staff.clinic_id == clinic_id),
        )
        .where(WaitingListEntry.clinic_id == clinic_id)
        .where(
            or_(
                and_(checked_in >= start, checked_in < end),
                and_(checked_in.is_(None), appt_date >= start, appt_date < end),
                and_(
                    checked_in.is_(None),
                    col(Appointment.id).is_(None),
                    created >= start,
                    created < end,
                ),
            )
        )
    )
    with db_errors(session):
        results = session.exec(stmt).all()
    return [
        _Joined(entry=entry, owner=owner, pet=pet, appointment=appointment, provider=provider)
        for entry, owner, pet, appointment, provider in results
    ]


def _matches(item: _Joined, filters: WhiteboardFilters) -> bool:
    entry = item.entry
    if filters.show != "all" and entry.status not in SHOW_STATUSES[filters.show]:
        return False
    if filters.status is not None and entry.status != filters.status:
        return False
    if filters.provider_id != "all":
        if item.appointment is None or item.appointment.provider_id != filters.provider_id:
            return False
    if filters.appt_type != "all" and item.appt_type.lower() != filters.appt_type.lower():
        return False
    if filters.q:
        needle = filters.q.strip().lower()
        haystacks = [
            item.owner.name if item.owner else "",
            item.pet.name if item.pet else "",
            entry.reason or "",
            item.appointment.reason if item.appointment and item.appointment.reason else "",
        ]
        if not any(needle in h.lower() for h in haystacks):
            return False
    return True


def _sort_key(item: _Joined):
    return (
        -PRIORITY_WEIGHT[item.entry.priority],
        item.order_time,
        item.entry.created_at,
        item.entry.id,
    )


def _patient_label(pet: Optional[Pet]) -> str:
    if pet is None:
        return ""
    if pet.species:
        return f"{pet.name} ({pet.species})"
    return pet.name


def build_row(item: _Joined, sno: int, now: datetime) -> WhiteboardRow:
    entry = item.entry
    waited = waiting_time(entry.checked_in_at, entry.attending_at, now, entry.completed_at)
    turnaround = turnaround_time(entry.attending_at, entry.completed_at, now)
    appointment = item.appointment
    appt_time = appointment.appointment_date if appointment is not None else None
    return WhiteboardRow(
        id=entry.id,
        clinic_id=entry.clinic_id,
        sno=sno,
        patient_id=entry.patient_id,
        pet_id=entry.pet_id,
        appointment_id=entry.appointment_id,
        priority=entry.priority,
        status=entry.status,
        reason=entry.reason,
        notes=entry.notes,
        estimated_duration=entry.estimated_duration,
        checked_in_at=entry.checked_in_at,
        attending_at=entry.attending_at,
        completed_at=entry.completed_at,
        created_at=entry.created_at,
        updated_at=entry.updated_at,
        created_by=entry.created_by,
        photo_url=entry.photo_url,
        client=item.owner.name if item.owner else "",
        patient=_patient_label(item.pet),
        species=item.pet.species if item.pet else None,
        provider=item.provider.name if item.provider else None,
        provider_id=appointment.provider_id if appointment is not None else None,
        appt_type=item.appt_type,
        appt_time=appt_time,
        confirmed=bool(appointment is not None and appointment.status == "confirmed"),
        imminent=entry.status == EntryStatus.scheduled and is_imminent(appt_time, now),
        waiting_time_minutes=waited,
        turnaround_time_minutes=turnaround,
        waiting_time_display=format_minutes(waited),
        turnaround_time_display=format_minutes(turnaround),
        waiting_live=is_waiting_live(entry.status),
        turnaround_live=is_turnaround_live(entry.status),
    )


def build_whiteboard(
    session: Session,
    clinic_id: str,
    filters: Optional[WhiteboardFilters] = None,
    now: Optional[datetime] = None,
) -> List[WhiteboardRow]:
    """Return the filtered, ordered board rows for one clinic and one day."""
    filters = filters or WhiteboardFilters()
    now = now or utcnow()
    day = filters.day or now.date()

    items = [item for item in _fetch(session, clinic_id, day) if _matches(item, filters)]
    items.sort(key=_sort_key)

    rows: List[WhiteboardRow] = []
    for item in items:
        try:
            rows.append(build_row(item, len(rows) + 1, now))
        except Exception:
            logger.exception("Skipping whiteboard row for entry %s", item.entry.id)
    return rows


def whiteboard_stats(rows: List[WhiteboardRow]) -> WhiteboardStats:
    waits = [r.waiting_time_minutes for r in rows if r.waiting_time_minutes is not None]
    return WhiteboardStats(
        total=len(rows),
        waiting=sum(1 for r in rows if r.status == EntryStatus.waiting),
        attending=sum(1 for r in rows if r.status == EntryStatus.attending),
        completed=sum(1 for r in rows if r.status in TERMINAL_STATUSES),
        urgent=sum(
            1
            for r in rows
            if r.priority == Priority.urgent and r.status not in TERMINAL_STATUSES
        ),
        average_wait_minutes=round(sum(waits) / len(waits), 1) if waits else 0.0,
    )
