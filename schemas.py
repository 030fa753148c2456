"""Pydantic schemas for requests and responses.

Request bodies are deliberately loose (everything optional, plain strings):
required fields and enum values are checked by the service layer so that a
missing ``reason`` comes back as the same ``{"success": false, "error": ...}``
envelope as any other rejected action.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import EntryStatus, Priority

ShowFilter = Literal["all", "waiting", "attending", "completed", "scheduled"]


class EntryCreate(BaseModel):
    patient_id: Optional[str] = None
    pet_id: Optional[str] = None
    appointment_id: Optional[str] = None
    priority: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    estimated_duration: Optional[int] = None
    created_by: Optional[str] = None


class StatusUpdate(BaseModel):
    id: str
    status: str


class PriorityUpdate(BaseModel):
    id: str
    priority: str


class PhotoUpdate(BaseModel):
    id: str
    photo_url: Optional[str] = None


class EntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    clinic_id: str
    patient_id: str
    pet_id: str
    appointment_id: Optional[str] = None
    priority: Priority
    reason: str
    notes: Optional[str] = None
    estimated_duration: Optional[int] = None
    status: EntryStatus
    checked_in_at: Optional[datetime] = None
    attending_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    photo_url: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class EntryEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_type: str
    from_value: Optional[str] = None
    to_value: Optional[str] = None
    at: datetime


class ActionResult(BaseModel):
    """Outcome of a mutation, as returned over HTTP and by the board client."""

    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    # name of the QueueError subclass behind a failure, e.g. "InvalidStateError"
    error_type: Optional[str] = None


class WhiteboardFilters(BaseModel):
    day: Optional[date] = None
    show: ShowFilter = "all"
    status: Optional[EntryStatus] = None
    provider_id: str = "all"
    appt_type: str = "all"
    q: str = ""

    def query_params(self) -> dict:
        """Non-default filters as query parameters for ``GET /whiteboard``."""
        params = {}
        if self.day is not None:
            params["date"] = self.day.isoformat()
        if self.show != "all":
            params["show"] = self.show
        if self.status is not None:
            params["status"] = self.status.value
        if self.provider_id != "all":
            params["provider_id"] = self.provider_id
        if self.appt_type != "all":
            params["appt_type"] = self.appt_type
        if self.q:
            params["q"] = self.q
        return params


class WhiteboardRow(BaseModel):
    """One display-ready board row: an entry joined with its reference data."""

    id: str
    clinic_id: str
    sno: int
    patient_id: str
    pet_id: str
    appointment_id: Optional[str] = None
    priority: Priority
    status: EntryStatus
    reason: str
    notes: Optional[str] = None
    estimated_duration: Optional[int] = None
    checked_in_at: Optional[datetime] = None
    attending_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    created_by: Optional[str] = None
    photo_url: Optional[str] = None

    client: str = ""
    patient: str = ""
    species: Optional[str] = None
    provider: Optional[str] = None
    provider_id: Optional[str] = None
    appt_type: str = "Walk-in"
    appt_time: Optional[datetime] = None
    confirmed: bool = False
    imminent: bool = False

    waiting_time_minutes: Optional[int] = Field(default=None, ge=0)
    turnaround_time_minutes: Optional[int] = Field(default=None, ge=0)
    waiting_time_display: str = "--"
    turnaround_time_display: str = "--"
    waiting_live: bool = False
    turnaround_live: bool = False


class WhiteboardResponse(BaseModel):
    data: List[WhiteboardRow]
    filters: WhiteboardFilters
    total: int


class WhiteboardStats(BaseModel):
    total: int = 0
    waiting: int = 0
    attending: int = 0
    completed: int = 0
    urgent: int = 0
    average_wait_minutes: float = 0.0


class PetSearchResult(BaseModel):
    id: str
    name: str
    species: Optional[str] = None
    breed: Optional[str] = None
    age: Optional[int] = None


class PatientSearchResult(BaseModel):
    id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    pets: List[PetSearchResult] = []
