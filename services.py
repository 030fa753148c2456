"""Database access and business logic for the waiting list.

This module owns every write to the ``waiting_list`` table.  All functions take
an open SQLModel ``Session`` plus the caller's ``clinic_id``; an entry that
exists but belongs to another clinic is reported exactly like a missing one.

Status and priority changes are applied with a compare-and-set ``UPDATE``
that re-checks the row's current status in the ``WHERE`` clause, so two staff
members acting on the same entry cannot both win from the same starting
status.  The loser re-reads the row and gets the error the new status implies.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, col, create_engine, select

from errors import InvalidStateError, NotFoundError, TransientIOError, ValidationError
from models import (
    Appointment,
    EntryEvent,
    EntryStatus,
    EventType,
    Patient,
    Pet,
    Priority,
    WaitingListEntry,
    utcnow,
)
from schemas import EntryCreate, PatientSearchResult, PetSearchResult
from status_machine import is_terminal, normalize_status, plan_transition

logger = logging.getLogger(__name__)

# Default to a SQLite file named ``queue.db`` next to this module unless
# DATABASE_URL points somewhere else.
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DATABASE_URL = "sqlite:///" + os.path.join(PROJECT_DIR, "queue.db")

DATABASE_URL = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "5"))

# Attempts at a compare-and-set update before giving up on a hot row.
MAX_WRITE_ATTEMPTS = 3


def make_engine(url: str = DATABASE_URL):
    """Create the SQLAlchemy engine for ``url``."""
    if url.startswith("postgres://"):
        # Heroku/Railway style URLs
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": DB_TIMEOUT_SECONDS}
        if url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(url, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(url, connect_args=connect_args)
    return create_engine(url, pool_pre_ping=True)


def init_db(engine) -> None:
    """Create tables if they do not exist."""
    SQLModel.metadata.create_all(engine)


@contextmanager
def db_errors(session: Session) -> Iterator[None]:
    """Roll back and re-raise database outages as :class:`TransientIOError`."""
    try:
        yield
    except OperationalError as exc:
        session.rollback()
        logger.warning("Database unavailable: %s", exc.orig)
        raise TransientIOError("Database temporarily unavailable") from exc


# ===== VALIDATION =====


def parse_priority(value: Union[str, Priority, None], default: Optional[Priority] = None) -> Priority:
    if isinstance(value, Priority):
        return value
    if value is None or not str(value).strip():
        if default is not None:
            return default
        raise ValidationError("priority is required")
    try:
        return Priority(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown priority '{value}'") from None


def _require(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    return str(value).strip()


def _validate_create(session: Session, clinic_id: str, data: EntryCreate) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "patient_id": _require(data.patient_id, "patient_id"),
        "pet_id": _require(data.pet_id, "pet_id"),
        "reason": _require(data.reason, "reason"),
        "priority": parse_priority(data.priority, default=Priority.normal),
        "notes": data.notes or None,
        "estimated_duration": data.estimated_duration,
        "created_by": data.created_by,
        "appointment_id": data.appointment_id or None,
    }
    if data.estimated_duration is not None and data.estimated_duration < 0:
        raise ValidationError("estimated_duration must not be negative")
    if fields["appointment_id"] is not None:
        appointment = session.get(Appointment, fields["appointment_id"])
        if appointment is None or appointment.clinic_id != clinic_id:
            raise ValidationError("appointment_id does not match an appointment of this clinic")
    return fields


# ===== QUEUE OPERATIONS =====


def _record(
    session: Session,
    entry: WaitingListEntry,
    event_type: EventType,
    from_value: Optional[str],
    to_value: Optional[str],
    at: datetime,
) -> None:
    session.add(
        EntryEvent(
            entry_id=entry.id,
            clinic_id=entry.clinic_id,
            event_type=event_type,
            from_value=from_value,
            to_value=to_value,
            at=at,
        )
    )


def _insert(session: Session, entry: WaitingListEntry, event_type: EventType, now: datetime) -> WaitingListEntry:
    with db_errors(session):
        session.add(entry)
        session.flush()
        _record(session, entry, event_type, None, entry.status.value, now)
        session.commit()
        session.refresh(entry)
    logger.info("Entry %s %s (clinic %s)", entry.id, event_type.value, entry.clinic_id)
    return entry


def add_entry(
    session: Session, clinic_id: str, data: EntryCreate, now: Optional[datetime] = None
) -> WaitingListEntry:
    """Check a patient in: create an entry directly in ``waiting``."""
    now = now or utcnow()
    fields = _validate_create(session, clinic_id, data)
    entry = WaitingListEntry(
        clinic_id=clinic_id,
        status=EntryStatus.waiting,
        checked_in_at=now,
        created_at=now,
        updated_at=now,
        **fields,
    )
    return _insert(session, entry, EventType.joined, now)


def schedule_entry(
    session: Session, clinic_id: str, data: EntryCreate, now: Optional[datetime] = None
) -> WaitingListEntry:
    """Put an upcoming appointment on the board before the patient arrives."""
    now = now or utcnow()
    _require(data.appointment_id, "appointment_id")
    fields = _validate_create(session, clinic_id, data)
    entry = WaitingListEntry(
        clinic_id=clinic_id,
        status=EntryStatus.scheduled,
        created_at=now,
        updated_at=now,
        **fields,
    )
    return _insert(session, entry, EventType.scheduled, now)


def day_bounds(day: date) -> tuple:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def get_entries(
    session: Session,
    clinic_id: str,
    status: Union[None, str, EntryStatus, Iterable[Union[str, EntryStatus]]] = None,
    day: Optional[date] = None,
) -> List[WaitingListEntry]:
    stmt = select(WaitingListEntry).where(WaitingListEntry.clinic_id == clinic_id)
    if status is not None:
        if isinstance(status, (str, EntryStatus)):
            status = [status]
        wanted = [normalize_status(s) for s in status]
        stmt = stmt.where(col(WaitingListEntry.status).in_(wanted))
    if day is not None:
        start, end = day_bounds(day)
        checked_in = col(WaitingListEntry.checked_in_at)
        created = col(WaitingListEntry.created_at)
        stmt = stmt.where(
            or_(
                and_(checked_in >= start, checked_in < end),
                and_(checked_in.is_(None), created >= start, created < end),
            )
        )
    stmt = stmt.order_by(col(WaitingListEntry.created_at), col(WaitingListEntry.id))
    with db_errors(session):
        return list(session.exec(stmt).all())


def get_entry(session: Session, clinic_id: str, entry_id: str) -> WaitingListEntry:
    with db_errors(session):
        entry = session.get(WaitingListEntry, entry_id)
    if entry is None or entry.clinic_id != clinic_id:
        raise NotFoundError("Waiting list entry not found")
    return entry


def _compare_and_set(
    session: Session,
    entry: WaitingListEntry,
    changes: Dict[str, Any],
    event: tuple,
    extra_condition=None,
) -> bool:
    """Apply ``changes`` only if the row still has the status we read.

    Returns ``False`` when another writer got there first; the session is
    rolled back and the caller should re-read.
    """
    stmt = (
        update(WaitingListEntry)
        .where(
            col(WaitingListEntry.id) == entry.id,
            col(WaitingListEntry.clinic_id) == entry.clinic_id,
            col(WaitingListEntry.status) == entry.status,
        )
        .values(**changes)
    )
    if extra_condition is not None:
        stmt = stmt.where(extra_condition)
    with db_errors(session):
        result = session.connection().execute(stmt)
        if result.rowcount != 1:
            session.rollback()
            return False
        event_type, from_value, to_value = event
        _record(session, entry, event_type, from_value, to_value, changes["updated_at"])
        session.commit()
        session.refresh(entry)
    return True


def update_status(
    session: Session,
    clinic_id: str,
    entry_id: str,
    status: Union[str, EntryStatus],
    now: Optional[datetime] = None,
) -> WaitingListEntry:
    """Move an entry to ``status``, stamping the matching timestamp.

    Raises :class:`InvalidTransitionError` when the move is not allowed from
    the status currently stored.  Asking for the current status is a no-op.
    """
    target = normalize_status(status)
    now = now or utcnow()
    for _ in range(MAX_WRITE_ATTEMPTS):
        entry = get_entry(session, clinic_id, entry_id)
        current = entry.status
        changes = plan_transition(entry, target, now)
        if changes is None:
            return entry
        event = (EventType.status_changed, current.value, target.value)
        if _compare_and_set(session, entry, changes, event):
            logger.info(
                "Entry %s status %s -> %s (clinic %s)",
                entry.id, current.value, target.value, clinic_id,
            )
            return entry
        logger.info("Entry %s changed concurrently, re-checking", entry_id)
    raise TransientIOError("Entry is being updated by someone else, try again")


def update_priority(
    session: Session,
    clinic_id: str,
    entry_id: str,
    priority: Union[str, Priority],
    now: Optional[datetime] = None,
) -> WaitingListEntry:
    new_priority = parse_priority(priority)
    now = now or utcnow()
    for _ in range(MAX_WRITE_ATTEMPTS):
        entry = get_entry(session, clinic_id, entry_id)
        if is_terminal(entry.status):
            raise InvalidStateError(
                f"Cannot change priority of a {entry.status.value} entry"
            )
        if entry.priority == new_priority:
            return entry
        changes = {"priority": new_priority, "updated_at": now}
        event = (EventType.priority_changed, entry.priority.value, new_priority.value)
        if _compare_and_set(session, entry, changes, event):
            logger.info("Entry %s priority -> %s (clinic %s)", entry.id, new_priority.value, clinic_id)
            return entry
    raise TransientIOError("Entry is being updated by someone else, try again")


def update_photo(
    session: Session,
    clinic_id: str,
    entry_id: str,
    photo_url: Optional[str],
    now: Optional[datetime] = None,
) -> WaitingListEntry:
    now = now or utcnow()
    photo_url = (photo_url or "").strip() or None
    entry = get_entry(session, clinic_id, entry_id)
    if entry.photo_url == photo_url:
        return entry
    with db_errors(session):
        _record(session, entry, EventType.photo_changed, entry.photo_url, photo_url, now)
        entry.photo_url = photo_url
        entry.updated_at = now
        session.add(entry)
        session.commit()
        session.refresh(entry)
    return entry


def remove_entry(
    session: Session, clinic_id: str, entry_id: str, now: Optional[datetime] = None
) -> bool:
    """Take an entry off the queue by cancelling it.

    Entries that already ended (completed, no-show or cancelled) are left
    untouched, so removing twice is harmless.  Returns ``True`` only when this
    call cancelled the entry.
    """
    now = now or utcnow()
    for _ in range(MAX_WRITE_ATTEMPTS):
        entry = get_entry(session, clinic_id, entry_id)
        if is_terminal(entry.status):
            return False
        current = entry.status
        changes = plan_transition(entry, EntryStatus.cancelled, now)
        event = (EventType.removed, current.value, EntryStatus.cancelled.value)
        if _compare_and_set(session, entry, changes, event):
            logger.info("Entry %s removed (clinic %s)", entry.id, clinic_id)
            return True
    raise TransientIOError("Entry is being updated by someone else, try again")


def get_entry_events(session: Session, clinic_id: str, entry_id: str) -> List[EntryEvent]:
    get_entry(session, clinic_id, entry_id)
    stmt = (
        select(EntryEvent)
        .where(EntryEvent.entry_id == entry_id, EntryEvent.clinic_id == clinic_id)
        .order_by(col(EntryEvent.at), col(EntryEvent.id))
    )
    with db_errors(session):
        return list(session.exec(stmt).all())


# ===== PATIENT LOOKUP =====


def search_patients(
    session: Session, clinic_id: str, q: str, limit: int = 20
) -> List[PatientSearchResult]:
    """Find owners by name, phone or email, or by the name of one of their pets."""
    term = (q or "").strip().lower()
    if not term:
        return []
    like = f"%{term}%"
    pet_owner_ids = select(Pet.patient_id).where(
        Pet.clinic_id == clinic_id, func.lower(Pet.name).like(like)
    )
    stmt = (
        select(Patient)
        .where(
            Patient.clinic_id == clinic_id,
            or_(
                func.lower(Patient.name).like(like),
                func.lower(func.coalesce(Patient.phone, "")).like(like),
                func.lower(func.coalesce(Patient.email, "")).like(like),
                col(Patient.id).in_(pet_owner_ids),
            ),
        )
        .order_by(col(Patient.name))
        .limit(limit)
    )
    with db_errors(session):
        owners = session.exec(stmt).all()
        if not owners:
            return []
        pets = session.exec(
            select(Pet)
            .where(Pet.clinic_id == clinic_id, col(Pet.patient_id).in_([o.id for o in owners]))
            .order_by(col(Pet.name))
        ).all()

    pets_by_owner: Dict[str, List[PetSearchResult]] = {}
    for pet in pets:
        pets_by_owner.setdefault(pet.patient_id, []).append(
            PetSearchResult(id=pet.id, name=pet.name, species=pet.species, breed=pet.breed, age=pet.age)
        )
    return [
        PatientSearchResult(
            id=o.id, name=o.name, phone=o.phone, email=o.email, pets=pets_by_owner.get(o.id, [])
        )
        for o in owners
    ]

