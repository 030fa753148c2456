"""Database models for the clinic waiting list.

We use SQLModel to define the schema.  The ``waiting_list`` table holds one
row per patient visit in the day's queue and is the only table this service
writes to (besides its audit trail in ``waiting_list_events``).  Owners, pets,
staff and appointments are owned by other parts of the clinic system; they are
declared here so the whiteboard can join against them, but nothing in this
service creates or edits them.

Every table carries ``clinic_id``: all queue data is partitioned by clinic.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database.

    Timestamp columns are declared with a plain ``DateTime`` column type, which
    stores naive values as-is on every backend.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class EntryStatus(str, Enum):
    """Possible statuses for a waiting list entry."""

    scheduled = "scheduled"
    waiting = "waiting"
    attending = "attending"
    completed = "completed"
    no_show = "no_show"
    cancelled = "cancelled"


class Priority(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class WaitingListEntry(SQLModel, table=True):
    __tablename__ = "waiting_list"

    id: str = Field(default_factory=new_id, primary_key=True)
    clinic_id: str = Field(index=True)
    patient_id: str = Field(index=True)
    pet_id: str = Field(index=True)
    appointment_id: Optional[str] = Field(default=None, index=True)
    priority: Priority = Field(default=Priority.normal)
    reason: str
    notes: Optional[str] = None
    estimated_duration: Optional[int] = None
    status: EntryStatus = Field(default=EntryStatus.waiting, index=True)
    checked_in_at: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime)
    attending_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    photo_url: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class EventType(str, Enum):
    joined = "joined"
    scheduled = "scheduled"
    status_changed = "status_changed"
    priority_changed = "priority_changed"
    photo_changed = "photo_changed"
    removed = "removed"


class EntryEvent(SQLModel, table=True):
    __tablename__ = "waiting_list_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    entry_id: str = Field(foreign_key="waiting_list.id", index=True)
    clinic_id: str = Field(index=True)
    event_type: EventType
    from_value: Optional[str] = None
    to_value: Optional[str] = None
    at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


# Reference data owned by the rest of the clinic system.


class Patient(SQLModel, table=True):
    """Pet owner (the clinic's client)."""

    __tablename__ = "patients"

    id: str = Field(default_factory=new_id, primary_key=True)
    clinic_id: str = Field(index=True)
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None


class Pet(SQLModel, table=True):
    __tablename__ = "pets"

    id: str = Field(default_factory=new_id, primary_key=True)
    clinic_id: str = Field(index=True)
    patient_id: str = Field(foreign_key="patients.id", index=True)
    name: str
    species: Optional[str] = None
    breed: Optional[str] = None
    age: Optional[int] = None


class Staff(SQLModel, table=True):
    __tablename__ = "staff"

    id: str = Field(default_factory=new_id, primary_key=True)
    clinic_id: str = Field(index=True)
    name: str


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"

    id: str = Field(default_factory=new_id, primary_key=True)
    clinic_id: str = Field(index=True)
    patient_id: str = Field(foreign_key="patients.id")
    pet_id: str = Field(foreign_key="pets.id")
    provider_id: Optional[str] = Field(default=None, foreign_key="staff.id")
    appointment_date: datetime = Field(index=True, sa_type=DateTime)
    appointment_type: Optional[str] = None
    status: Optional[str] = None  # scheduled, confirmed, ...
    reason: Optional[str] = None
