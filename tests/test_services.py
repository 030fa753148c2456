"""
Waiting list repository tests.

Tests cover:
1. Check-in validation and defaults
2. Check-in to completion scenario and timestamp monotonicity
3. Illegal transitions leave the stored row unchanged
4. Priority changes blocked on terminal entries
5. Idempotent removal
6. Tenant isolation
7. Concurrent writers on the same entry
8. Audit trail and patient lookup
9. Timestamp column types and wall-clock round trips
"""
from datetime import timedelta

import pytest
from sqlalchemy import DateTime
from sqlmodel import Session

import services
from errors import InvalidStateError, InvalidTransitionError, NotFoundError, ValidationError
from models import Appointment, EntryEvent, EntryStatus, EventType, Priority, WaitingListEntry
from schemas import EntryCreate, EntryOut

from conftest import CLINIC_A, CLINIC_B, NOW


def _snapshot(session, entry_id):
    session.expire_all()
    return EntryOut.model_validate(session.get(WaitingListEntry, entry_id)).model_dump()


class TestAddEntry:
    def test_check_in_creates_waiting_entry(self, make_entry):
        entry = make_entry(reason="limp", priority="normal")
        assert entry.status == EntryStatus.waiting
        assert entry.checked_in_at == NOW
        assert entry.attending_at is None
        assert entry.completed_at is None
        assert entry.clinic_id == CLINIC_A
        assert entry.id

    def test_priority_defaults_to_normal(self, session, ref):
        entry = services.add_entry(
            session, CLINIC_A, EntryCreate(patient_id=ref["alice"], pet_id=ref["rex"], reason="cough")
        )
        assert entry.priority == Priority.normal

    @pytest.mark.parametrize("missing", ["patient_id", "pet_id", "reason"])
    def test_required_fields(self, session, ref, missing):
        fields = {"patient_id": ref["alice"], "pet_id": ref["rex"], "reason": "limp"}
        fields[missing] = None
        with pytest.raises(ValidationError, match=missing):
            services.add_entry(session, CLINIC_A, EntryCreate(**fields))
        assert services.get_entries(session, CLINIC_A) == []

    def test_blank_reason_rejected(self, session, ref):
        with pytest.raises(ValidationError):
            services.add_entry(
                session, CLINIC_A, EntryCreate(patient_id=ref["alice"], pet_id=ref["rex"], reason="   ")
            )

    def test_unknown_priority_rejected(self, make_entry):
        with pytest.raises(ValidationError):
            make_entry(priority="critical")

    def test_negative_duration_rejected(self, make_entry):
        with pytest.raises(ValidationError):
            make_entry(estimated_duration=-5)

    def test_appointment_from_other_clinic_rejected(self, make_entry, ref):
        with pytest.raises(ValidationError):
            make_entry(appointment_id=ref["other_appt"])

    def test_check_in_is_recorded(self, session, make_entry):
        entry = make_entry()
        history = services.get_entry_events(session, CLINIC_A, entry.id)
        assert [e.event_type for e in history] == [EventType.joined]


class TestScheduleEntry:
    def test_scheduled_entry_has_no_check_in(self, session, ref):
        entry = services.schedule_entry(
            session,
            CLINIC_A,
            EntryCreate(
                patient_id=ref["alice"], pet_id=ref["rex"], reason="checkup", appointment_id=ref["checkup"]
            ),
            now=NOW,
        )
        assert entry.status == EntryStatus.scheduled
        assert entry.checked_in_at is None

    def test_requires_appointment(self, session, ref):
        with pytest.raises(ValidationError, match="appointment_id"):
            services.schedule_entry(
                session, CLINIC_A, EntryCreate(patient_id=ref["alice"], pet_id=ref["rex"], reason="checkup")
            )

    def test_check_in_from_scheduled(self, session, ref):
        entry = services.schedule_entry(
            session,
            CLINIC_A,
            EntryCreate(
                patient_id=ref["alice"], pet_id=ref["rex"], reason="checkup", appointment_id=ref["checkup"]
            ),
            now=NOW,
        )
        arrived = NOW + timedelta(minutes=50)
        entry = services.update_status(session, CLINIC_A, entry.id, "waiting", now=arrived)
        assert entry.status == EntryStatus.waiting
        assert entry.checked_in_at == arrived


class TestStatusChanges:
    def test_check_in_to_completion(self, session, make_entry):
        entry = make_entry(reason="limp", priority="normal")

        called = NOW + timedelta(minutes=10)
        entry = services.update_status(session, CLINIC_A, entry.id, "attending", now=called)
        assert entry.status == EntryStatus.attending
        assert entry.attending_at == called

        done = NOW + timedelta(minutes=40)
        entry = services.update_status(session, CLINIC_A, entry.id, "completed", now=done)
        assert entry.status == EntryStatus.completed
        assert entry.completed_at == done
        assert entry.checked_in_at <= entry.attending_at <= entry.completed_at

        with pytest.raises(InvalidTransitionError):
            services.update_status(session, CLINIC_A, entry.id, "waiting", now=done)

    def test_skipping_attending_is_rejected(self, session, make_entry):
        entry = make_entry()
        before = _snapshot(session, entry.id)
        with pytest.raises(InvalidTransitionError):
            services.update_status(session, CLINIC_A, entry.id, "completed", now=NOW + timedelta(minutes=1))
        after = _snapshot(session, entry.id)
        assert after == before
        assert after["status"] == EntryStatus.waiting

    @pytest.mark.parametrize("target", ["waiting", "attending", "scheduled", "no_show"])
    def test_completed_entry_is_frozen(self, session, make_entry, target):
        entry = make_entry()
        services.update_status(session, CLINIC_A, entry.id, "attending", now=NOW)
        services.update_status(session, CLINIC_A, entry.id, "completed", now=NOW)
        before = _snapshot(session, entry.id)
        with pytest.raises(InvalidTransitionError):
            services.update_status(session, CLINIC_A, entry.id, target)
        assert _snapshot(session, entry.id) == before

    def test_reapplying_status_changes_nothing(self, session, make_entry):
        entry = make_entry()
        before = _snapshot(session, entry.id)
        again = services.update_status(session, CLINIC_A, entry.id, "waiting", now=NOW + timedelta(hours=1))
        assert again.status == EntryStatus.waiting
        assert _snapshot(session, entry.id) == before

    def test_legacy_status_name(self, session, make_entry):
        entry = make_entry()
        entry = services.update_status(session, CLINIC_A, entry.id, "in_progress", now=NOW)
        assert entry.status == EntryStatus.attending

    def test_mutation_bumps_updated_at(self, session, make_entry):
        entry = make_entry()
        later = NOW + timedelta(minutes=3)
        entry = services.update_status(session, CLINIC_A, entry.id, "attending", now=later)
        assert entry.updated_at == later

    def test_transitions_are_audited(self, session, make_entry):
        entry = make_entry()
        services.update_status(session, CLINIC_A, entry.id, "attending", now=NOW)
        history = services.get_entry_events(session, CLINIC_A, entry.id)
        assert [(e.event_type, e.from_value, e.to_value) for e in history] == [
            (EventType.joined, None, "waiting"),
            (EventType.status_changed, "waiting", "attending"),
        ]


class TestPriority:
    def test_change_priority_while_waiting(self, session, make_entry):
        entry = make_entry()
        entry = services.update_priority(session, CLINIC_A, entry.id, "urgent")
        assert entry.priority == Priority.urgent

    def test_priority_blocked_after_completion(self, session, make_entry):
        entry = make_entry()
        services.update_status(session, CLINIC_A, entry.id, "attending", now=NOW)
        services.update_status(session, CLINIC_A, entry.id, "completed", now=NOW)
        with pytest.raises(InvalidStateError):
            services.update_priority(session, CLINIC_A, entry.id, "urgent")
        assert _snapshot(session, entry.id)["priority"] == Priority.normal

    def test_unknown_priority(self, session, make_entry):
        entry = make_entry()
        with pytest.raises(ValidationError):
            services.update_priority(session, CLINIC_A, entry.id, "asap")


class TestRemove:
    def test_remove_cancels_entry(self, session, make_entry):
        entry = make_entry()
        assert services.remove_entry(session, CLINIC_A, entry.id, now=NOW + timedelta(minutes=2)) is True
        removed = services.get_entry(session, CLINIC_A, entry.id)
        assert removed.status == EntryStatus.cancelled
        assert removed.completed_at == NOW + timedelta(minutes=2)

    def test_remove_twice_is_harmless(self, session, make_entry):
        entry = make_entry()
        services.remove_entry(session, CLINIC_A, entry.id, now=NOW)
        before = _snapshot(session, entry.id)
        assert services.remove_entry(session, CLINIC_A, entry.id, now=NOW + timedelta(hours=1)) is False
        assert _snapshot(session, entry.id) == before

    def test_remove_completed_entry_keeps_it_completed(self, session, make_entry):
        entry = make_entry()
        services.update_status(session, CLINIC_A, entry.id, "attending", now=NOW)
        services.update_status(session, CLINIC_A, entry.id, "completed", now=NOW)
        assert services.remove_entry(session, CLINIC_A, entry.id) is False
        assert services.get_entry(session, CLINIC_A, entry.id).status == EntryStatus.completed


class TestTenantIsolation:
    def test_get_entries_only_returns_own_clinic(self, session, make_entry):
        mine = make_entry(CLINIC_A)
        theirs = make_entry(CLINIC_B)
        ids_a = {e.id for e in services.get_entries(session, CLINIC_A)}
        ids_b = {e.id for e in services.get_entries(session, CLINIC_B)}
        assert ids_a == {mine.id}
        assert ids_b == {theirs.id}

    def test_other_clinic_id_looks_missing(self, session, make_entry):
        theirs = make_entry(CLINIC_B)
        with pytest.raises(NotFoundError):
            services.get_entry(session, CLINIC_A, theirs.id)
        with pytest.raises(NotFoundError):
            services.update_status(session, CLINIC_A, theirs.id, "attending")
        with pytest.raises(NotFoundError):
            services.update_priority(session, CLINIC_A, theirs.id, "urgent")
        with pytest.raises(NotFoundError):
            services.remove_entry(session, CLINIC_A, theirs.id)
        assert _snapshot(session, theirs.id)["status"] == EntryStatus.waiting

    def test_unknown_id(self, session, ref):
        with pytest.raises(NotFoundError):
            services.update_status(session, CLINIC_A, "nope", "attending")


class TestGetEntries:
    def test_filter_by_status(self, session, make_entry):
        waiting = make_entry()
        called = make_entry()
        services.update_status(session, CLINIC_A, called.id, "attending", now=NOW)
        assert [e.id for e in services.get_entries(session, CLINIC_A, status="waiting")] == [waiting.id]
        both = services.get_entries(session, CLINIC_A, status=["waiting", "in_progress"])
        assert {e.id for e in both} == {waiting.id, called.id}

    def test_filter_by_day(self, session, make_entry):
        today = make_entry(at=NOW)
        make_entry(at=NOW - timedelta(days=1))
        assert [e.id for e in services.get_entries(session, CLINIC_A, day=NOW.date())] == [today.id]


class TestConcurrentWriters:
    def test_stale_writer_gets_invalid_transition(self, tmp_path):
        engine = services.make_engine(f"sqlite:///{tmp_path / 'queue.db'}")
        services.init_db(engine)
        with Session(engine) as setup:
            entry = services.add_entry(
                setup, CLINIC_A, EntryCreate(patient_id="owner-x", pet_id="pet-x", reason="limp"), now=NOW
            )
            entry_id = entry.id

        with Session(engine) as front_desk, Session(engine) as exam_room:
            # front desk has the row loaded from its last board view
            stale = services.get_entry(front_desk, CLINIC_A, entry_id)
            assert stale.status == EntryStatus.waiting

            services.update_status(exam_room, CLINIC_A, entry_id, "no_show", now=NOW)

            with pytest.raises(InvalidTransitionError):
                services.update_status(front_desk, CLINIC_A, entry_id, "attending", now=NOW)

        with Session(engine) as check:
            final = services.get_entry(check, CLINIC_A, entry_id)
            assert final.status == EntryStatus.no_show
            assert final.attending_at is None
        engine.dispose()


class TestPhotoAndSearch:
    def test_update_photo(self, session, make_entry):
        entry = make_entry()
        entry = services.update_photo(session, CLINIC_A, entry.id, "https://cdn.example.com/rex.jpg")
        assert entry.photo_url == "https://cdn.example.com/rex.jpg"
        entry = services.update_photo(session, CLINIC_A, entry.id, "")
        assert entry.photo_url is None

    def test_search_by_owner_name(self, session, ref):
        results = services.search_patients(session, CLINIC_A, "alice")
        assert [r.name for r in results] == ["Alice Moreau"]
        assert [p.name for p in results[0].pets] == ["Rex"]

    def test_search_by_pet_name(self, session, ref):
        results = services.search_patients(session, CLINIC_A, "TOM")
        assert [r.id for r in results] == [ref["bruno"]]

    def test_search_is_clinic_scoped(self, session, ref):
        assert services.search_patients(session, CLINIC_A, "carla") == []
        assert services.search_patients(session, CLINIC_A, "") == []


class TestTimestampStorage:
    @pytest.mark.parametrize(
        "column",
        [
            WaitingListEntry.__table__.c.checked_in_at,
            WaitingListEntry.__table__.c.attending_at,
            WaitingListEntry.__table__.c.completed_at,
            WaitingListEntry.__table__.c.created_at,
            WaitingListEntry.__table__.c.updated_at,
            EntryEvent.__table__.c.at,
            Appointment.__table__.c.appointment_date,
        ],
        ids=lambda c: f"{c.table.name}.{c.name}",
    )
    def test_columns_store_naive_utc(self, column):
        assert type(column.type) is DateTime
        assert column.type.timezone is False

    def test_check_in_with_wall_clock_round_trips(self, engine, ref):
        with Session(engine) as writer:
            entry = services.add_entry(
                writer, CLINIC_A, EntryCreate(patient_id=ref["alice"], pet_id=ref["rex"], reason="limp")
            )
            entry_id = entry.id
            services.update_status(writer, CLINIC_A, entry_id, "attending")

        with Session(engine) as reader:
            stored = services.get_entry(reader, CLINIC_A, entry_id)
            assert stored.checked_in_at.tzinfo is None
            assert stored.checked_in_at == stored.created_at
            assert stored.attending_at >= stored.checked_in_at
            history = services.get_entry_events(reader, CLINIC_A, entry_id)
            assert [e.event_type for e in history] == [EventType.joined, EventType.status_changed]
