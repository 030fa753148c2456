"""
Shared fixtures for the waiting list tests.

Provides:
- an in-memory SQLite engine and session per test
- reference data (owners, pets, staff, appointments) for two clinics
- a FastAPI TestClient wired to the test database
"""
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

import main
import services
from models import Appointment, Patient, Pet, Staff
from schemas import EntryCreate

CLINIC_A = "clinic-a"
CLINIC_B = "clinic-b"

# Fixed wall clock used across the suite
NOW = datetime(2026, 3, 14, 9, 0, 0)


class RecordingEvents:
    """Stand-in for BoardEvents that remembers what would have been published."""

    enabled = False

    def __init__(self):
        self.published = []

    def publish(self, clinic_id, action, entry_id=None):
        self.published.append((clinic_id, action, entry_id))

    def close(self):
        pass


@pytest.fixture
def engine():
    engine = services.make_engine("sqlite://")
    services.init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def ref(session):
    """Owners, pets, staff and appointments for two clinics."""
    alice = Patient(id="owner-alice", clinic_id=CLINIC_A, name="Alice Moreau", phone="555-0101")
    bruno = Patient(id="owner-bruno", clinic_id=CLINIC_A, name="Bruno Diaz", email="bruno@example.com")
    carla = Patient(id="owner-carla", clinic_id=CLINIC_B, name="Carla Ng")
    session.add_all([alice, bruno, carla])
    session.flush()

    rex = Pet(id="pet-rex", clinic_id=CLINIC_A, patient_id=alice.id, name="Rex", species="Dog", breed="Beagle")
    tom = Pet(id="pet-tom", clinic_id=CLINIC_A, patient_id=bruno.id, name="Tom", species="Cat")
    kiwi = Pet(id="pet-kiwi", clinic_id=CLINIC_B, patient_id=carla.id, name="Kiwi", species="Bird")
    session.add_all([rex, tom, kiwi])

    vet = Staff(id="staff-vet", clinic_id=CLINIC_A, name="Dr. Lopez")
    nurse = Staff(id="staff-nurse", clinic_id=CLINIC_A, name="Dr. Haddad")
    session.add_all([vet, nurse])
    session.flush()

    checkup = Appointment(
        id="appt-checkup",
        clinic_id=CLINIC_A,
        patient_id=alice.id,
        pet_id=rex.id,
        provider_id=vet.id,
        appointment_date=NOW + timedelta(hours=1),
        appointment_type="Checkup",
        status="confirmed",
        reason="annual checkup",
    )
    dental = Appointment(
        id="appt-dental",
        clinic_id=CLINIC_A,
        patient_id=bruno.id,
        pet_id=tom.id,
        provider_id=nurse.id,
        appointment_date=NOW + timedelta(minutes=3),
        appointment_type="Dental",
        status="scheduled",
    )
    other = Appointment(
        id="appt-other-clinic",
        clinic_id=CLINIC_B,
        patient_id=carla.id,
        pet_id=kiwi.id,
        appointment_date=NOW,
        appointment_type="Checkup",
    )
    session.add_all([checkup, dental, other])
    session.commit()
    return {
        "alice": alice.id,
        "bruno": bruno.id,
        "carla": carla.id,
        "rex": rex.id,
        "tom": tom.id,
        "kiwi": kiwi.id,
        "vet": vet.id,
        "nurse": nurse.id,
        "checkup": checkup.id,
        "dental": dental.id,
        "other_appt": other.id,
    }


@pytest.fixture
def make_entry(session, ref):
    """Check a patient in at a given time (defaults to NOW)."""

    def _make(clinic_id=CLINIC_A, at=NOW, **overrides):
        fields = {
            "patient_id": ref["alice"] if clinic_id == CLINIC_A else ref["carla"],
            "pet_id": ref["rex"] if clinic_id == CLINIC_A else ref["kiwi"],
            "reason": "limp",
            "priority": "normal",
        }
        fields.update(overrides)
        return services.add_entry(session, clinic_id, EntryCreate(**fields), now=at)

    return _make


@pytest.fixture
def events():
    return RecordingEvents()


@pytest.fixture
def api_client(engine, ref, events):
    """TestClient using the test database and recording board events."""

    def _session():
        with Session(engine) as s:
            yield s

    main.app.dependency_overrides[main.get_session] = _session
    main.app.dependency_overrides[main.get_events] = lambda: events
    client = TestClient(main.app)
    client.headers.update({"X-Clinic-Id": CLINIC_A})
    yield client
    main.app.dependency_overrides.clear()
