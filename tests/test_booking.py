"""Tests for the booking engine.

Covers:
  - Create: past dates, catalog lookup, overlap rejection, idempotency
  - Concurrency: parallel creates for one slot never double-book
  - Update / cancel / state machine
  - Status lookup and the auto-booking path
  - Store outages surfacing as SYNC_FAIL
"""

from __future__ import annotations

import threading
from datetime import datetime

import pytest

from src.models import AppointmentSource, AppointmentStatus
from src.services.booking import (
    FORBIDDEN_TRANSITION,
    NOT_FOUND,
    PAST_DATE,
    SLOT_OCCUPIED,
    SYNC_FAIL,
    UNKNOWN_SERVICE,
    BookingEngine,
    BookingError,
    BookingRequest,
    is_overlapping,
    validate_transition,
)
from src.services.store import InMemoryDocumentStore, StoreUnavailableError
from tests.factories import CONTACT, OTHER_CONTACT, TENANT_ID, tenant_doc

APPOINTMENTS = f"tenants/{TENANT_ID}/appointments"


def _request(contact=CONTACT, start="2026-03-03T10:00:00", service="Haircut", name="Ana"):
    return BookingRequest(contact_identity=contact, client_name=name, service_name=service, start_time=start)


def _active(store):
    return [d for d in store.query(APPOINTMENTS) if d.data["status"] != "CANCELLED"]


# ── Pure helpers ─────────────────────────────────────────────────────


class TestStateMachine:
    @pytest.mark.parametrize(
        "current,target",
        [
            ("PENDING", "CONFIRMED"),
            ("PENDING", "scheduled"),
            ("PENDING", "CANCELLED"),
            ("CONFIRMED", "COMPLETED"),
            ("scheduled", "CANCELLED"),
        ],
    )
    def test_allowed_transitions(self, current, target):
        assert validate_transition(current, target)

    def test_cancelled_cannot_be_confirmed(self):
        assert not validate_transition(AppointmentStatus.CANCELLED, AppointmentStatus.CONFIRMED)

    @pytest.mark.parametrize("target", list(AppointmentStatus))
    def test_completed_is_terminal(self, target):
        assert not validate_transition(AppointmentStatus.COMPLETED, target)

    def test_unknown_state_is_rejected(self):
        assert not validate_transition("ARCHIVED", "CANCELLED")


class TestOverlap:
    def test_back_to_back_slots_do_not_overlap(self):
        a = datetime(2026, 3, 3, 10, 0)
        b = datetime(2026, 3, 3, 10, 30)
        assert not is_overlapping(a, 30, b, 30)

    def test_partial_overlap(self):
        a = datetime(2026, 3, 3, 10, 0)
        b = datetime(2026, 3, 3, 10, 15)
        assert is_overlapping(a, 30, b, 30)
        assert is_overlapping(b, 30, a, 30)

    def test_containment(self):
        a = datetime(2026, 3, 3, 10, 0)
        b = datetime(2026, 3, 3, 10, 10)
        assert is_overlapping(a, 60, b, 5)


# ── Create ───────────────────────────────────────────────────────────


class TestCreate:
    def test_create_inserts_scheduled_appointment(self, engine, store):
        result = engine.create(TENANT_ID, _request())

        assert result.created
        stored = store.get(f"{APPOINTMENTS}/{result.appointment.id}")
        assert stored["status"] == "scheduled"
        assert stored["client_phone"] == CONTACT
        assert stored["start_time"] == "2026-03-03T10:00:00"
        assert stored["source"] == AppointmentSource.AI_TOOL.value

    def test_catalog_duration_and_price_win(self, engine):
        request = _request(service="Haircut + Beard")
        request.duration = 5
        request.price = 1
        appointment = engine.create(TENANT_ID, request).appointment
        assert appointment.duration == 45
        assert appointment.price == 40

    def test_create_upserts_customer_record(self, engine, store):
        engine.create(TENANT_ID, _request())
        customer = store.get(f"tenants/{TENANT_ID}/customers/{CONTACT}")
        assert customer["name"] == "Ana"
        assert customer["last_service"] == "Haircut"
        assert customer["last_appointment"] == "2026-03-03T10:00:00"

    def test_past_start_is_rejected(self, engine, store):
        with pytest.raises(BookingError) as exc_info:
            engine.create(TENANT_ID, _request(start="2026-03-02T09:30:00"))
        assert exc_info.value.code == PAST_DATE
        assert store.query(APPOINTMENTS) == []

    def test_unknown_service_is_rejected(self, engine):
        with pytest.raises(BookingError) as exc_info:
            engine.create(TENANT_ID, _request(service="haircut"))
        assert exc_info.value.code == UNKNOWN_SERVICE

    def test_overlapping_slot_is_rejected(self, engine):
        engine.create(TENANT_ID, _request(start="2026-03-03T10:30:00"))
        with pytest.raises(BookingError) as exc_info:
            engine.create(TENANT_ID, _request(contact=OTHER_CONTACT, start="2026-03-03T10:45:00"))
        assert exc_info.value.code == SLOT_OCCUPIED

    def test_adjacent_slot_is_accepted(self, engine, store):
        engine.create(TENANT_ID, _request(start="2026-03-03T10:30:00"))
        engine.create(TENANT_ID, _request(contact=OTHER_CONTACT, start="2026-03-03T11:00:00"))
        assert len(_active(store)) == 2

    def test_cancelled_appointments_do_not_block(self, engine, store):
        store.set(
            f"{APPOINTMENTS}/old",
            {
                "client_name": "Bo", "client_phone": OTHER_CONTACT, "service_name": "Haircut",
                "start_time": "2026-03-03T10:00:00", "duration": 30, "status": "CANCELLED",
            },
        )
        assert engine.create(TENANT_ID, _request()).created

    def test_identical_create_is_idempotent(self, engine, store):
        first = engine.create(TENANT_ID, _request())
        second = engine.create(TENANT_ID, _request())

        assert not second.created
        assert second.appointment.id == first.appointment.id
        assert len(store.query(APPOINTMENTS)) == 1

    def test_offset_start_is_converted_to_tenant_time(self, store, clock):
        store.set("tenants/tz", tenant_doc("NY Cuts", "ny-cuts", timezone="America/New_York"))
        engine = BookingEngine(store, clock=clock)
        appointment = engine.create("tz", _request(start="2026-03-03T15:00:00Z")).appointment
        assert appointment.start_time == "2026-03-03T10:00:00"

    def test_now_is_evaluated_in_tenant_time(self, store, clock):
        # 10:00 UTC is 05:00 in New York
        store.set("tenants/tz", tenant_doc("NY Cuts", "ny-cuts", timezone="America/New_York"))
        engine = BookingEngine(store, clock=clock)
        assert engine.create("tz", _request(start="2026-03-02T06:00:00")).created
        with pytest.raises(BookingError) as exc_info:
            engine.create("tz", _request(contact=OTHER_CONTACT, start="2026-03-02T04:00:00"))
        assert exc_info.value.code == PAST_DATE


class TestConcurrentCreate:
    def test_parallel_creates_for_one_slot_book_it_once(self, engine, store):
        contacts = [f"+1555000{i:04d}" for i in range(8)]
        barrier = threading.Barrier(len(contacts))
        outcomes: dict[str, str] = {}

        def _book(contact):
            barrier.wait()
            try:
                engine.create(TENANT_ID, _request(contact=contact, start="2026-03-03T14:00:00"))
                outcomes[contact] = "ok"
            except BookingError as exc:
                outcomes[contact] = exc.code

        threads = [threading.Thread(target=_book, args=(c,)) for c in contacts]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert list(outcomes.values()).count("ok") == 1
        assert list(outcomes.values()).count(SLOT_OCCUPIED) == len(contacts) - 1
        assert len(_active(store)) == 1

    def test_parallel_duplicate_deliveries_store_one_record(self, engine, store):
        barrier = threading.Barrier(5)
        results = []

        def _book():
            barrier.wait()
            results.append(engine.create(TENANT_ID, _request()))

        threads = [threading.Thread(target=_book) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(r.created for r in results) == 1
        assert len({r.appointment.id for r in results}) == 1
        assert len(store.query(APPOINTMENTS)) == 1


# ── Update / cancel / transition ─────────────────────────────────────


class TestUpdate:
    def test_update_moves_appointment(self, engine, store):
        created = engine.create(TENANT_ID, _request())
        moved = engine.update(TENANT_ID, CONTACT, "2026-03-04T15:00:00")

        assert moved.appointment.id == created.appointment.id
        assert store.get(f"{APPOINTMENTS}/{created.appointment.id}")["start_time"] == "2026-03-04T15:00:00"

    def test_update_can_overlap_its_own_old_slot(self, engine):
        engine.create(TENANT_ID, _request(start="2026-03-03T10:30:00"))
        moved = engine.update(TENANT_ID, CONTACT, "2026-03-03T10:45:00")
        assert moved.appointment.start_time == "2026-03-03T10:45:00"

    def test_update_into_someone_elses_slot_is_rejected(self, engine):
        engine.create(TENANT_ID, _request())
        engine.create(TENANT_ID, _request(contact=OTHER_CONTACT, start="2026-03-03T15:00:00"))
        with pytest.raises(BookingError) as exc_info:
            engine.update(TENANT_ID, CONTACT, "2026-03-03T15:15:00")
        assert exc_info.value.code == SLOT_OCCUPIED

    def test_update_without_appointment_is_not_found(self, engine):
        with pytest.raises(BookingError) as exc_info:
            engine.update(TENANT_ID, CONTACT, "2026-03-04T15:00:00")
        assert exc_info.value.code == NOT_FOUND

    def test_update_to_same_time_is_a_no_op(self, engine):
        engine.create(TENANT_ID, _request())
        assert not engine.update(TENANT_ID, CONTACT, "2026-03-03T10:00:00").created

    def test_update_into_the_past_is_rejected(self, engine):
        engine.create(TENANT_ID, _request())
        with pytest.raises(BookingError) as exc_info:
            engine.update(TENANT_ID, CONTACT, "2026-03-01T10:00:00")
        assert exc_info.value.code == PAST_DATE


class TestCancel:
    def test_cancel_marks_every_upcoming_appointment(self, engine, store):
        engine.create(TENANT_ID, _request())
        engine.create(TENANT_ID, _request(start="2026-03-05T10:00:00"))

        result = engine.cancel(TENANT_ID, CONTACT)

        assert result.affected == 2
        assert {d.data["status"] for d in store.query(APPOINTMENTS)} == {"CANCELLED"}

    def test_repeat_cancel_is_a_no_op_success(self, engine):
        engine.create(TENANT_ID, _request())
        engine.cancel(TENANT_ID, CONTACT)

        again = engine.cancel(TENANT_ID, CONTACT)
        assert not again.created
        assert again.affected == 0

    def test_cancel_without_history_is_not_found(self, engine):
        with pytest.raises(BookingError) as exc_info:
            engine.cancel(TENANT_ID, CONTACT)
        assert exc_info.value.code == NOT_FOUND

    def test_cancel_leaves_other_contacts_alone(self, engine, store):
        engine.create(TENANT_ID, _request())
        other = engine.create(TENANT_ID, _request(contact=OTHER_CONTACT, start="2026-03-03T15:00:00"))
        engine.cancel(TENANT_ID, CONTACT)
        assert store.get(f"{APPOINTMENTS}/{other.appointment.id}")["status"] == "scheduled"


class TestTransition:
    def test_scheduled_can_complete(self, engine, store):
        created = engine.create(TENANT_ID, _request())
        engine.transition(TENANT_ID, created.appointment.id, AppointmentStatus.COMPLETED)
        assert store.get(f"{APPOINTMENTS}/{created.appointment.id}")["status"] == "COMPLETED"

    def test_cancelled_cannot_be_confirmed(self, engine):
        created = engine.create(TENANT_ID, _request())
        engine.cancel(TENANT_ID, CONTACT)
        with pytest.raises(BookingError) as exc_info:
            engine.transition(TENANT_ID, created.appointment.id, AppointmentStatus.CONFIRMED)
        assert exc_info.value.code == FORBIDDEN_TRANSITION

    def test_missing_appointment_is_not_found(self, engine):
        with pytest.raises(BookingError) as exc_info:
            engine.transition(TENANT_ID, "nope", AppointmentStatus.CANCELLED)
        assert exc_info.value.code == NOT_FOUND


# ── Reads ────────────────────────────────────────────────────────────


class TestCheckStatus:
    def test_no_booking(self, engine):
        assert not engine.check_status(TENANT_ID, CONTACT).exists

    def test_returns_earliest_upcoming_booking(self, engine):
        engine.create(TENANT_ID, _request(start="2026-03-05T10:00:00"))
        engine.create(TENANT_ID, _request(start="2026-03-03T10:00:00"))

        status = engine.check_status(TENANT_ID, CONTACT)
        assert status.exists
        assert status.state == AppointmentStatus.SCHEDULED
        assert status.summary["time"] == "2026-03-03T10:00:00"

    def test_falls_back_to_known_name(self, engine, store):
        store.set(
            f"{APPOINTMENTS}/manual",
            {
                "client_name": "Ana", "client_phone": "", "service_name": "Haircut",
                "start_time": "2026-03-04T10:00:00", "duration": 30, "status": "CONFIRMED",
                "source": "manual",
            },
        )
        status = engine.check_status(TENANT_ID, CONTACT, known_name="Ana")
        assert status.exists
        assert status.booking_id == "manual"

    def test_unknown_name_skips_fallback(self, engine, store):
        store.set(
            f"{APPOINTMENTS}/manual",
            {
                "client_name": "UNKNOWN", "client_phone": "", "service_name": "Haircut",
                "start_time": "2026-03-04T10:00:00", "duration": 30, "status": "CONFIRMED",
            },
        )
        assert not engine.check_status(TENANT_ID, CONTACT, known_name="UNKNOWN").exists

    def test_cancelled_bookings_are_ignored(self, engine):
        engine.create(TENANT_ID, _request())
        engine.cancel(TENANT_ID, CONTACT)
        assert not engine.check_status(TENANT_ID, CONTACT).exists


class TestAgenda:
    def test_lists_active_appointments_of_the_day(self, engine):
        engine.create(TENANT_ID, _request(start="2026-03-03T15:00:00"))
        engine.create(TENANT_ID, _request(contact=OTHER_CONTACT, start="2026-03-03T10:00:00"))
        engine.create(TENANT_ID, _request(start="2026-03-04T10:00:00"))

        day = engine.agenda(TENANT_ID, "2026-03-03")
        assert [a.start_time for a in day] == ["2026-03-03T10:00:00", "2026-03-03T15:00:00"]


# ── Auto-booking ─────────────────────────────────────────────────────


class TestAutoBook:
    def test_auto_book_creates_with_auto_source(self, engine, store):
        result = engine.auto_book(
            TENANT_ID, CONTACT, service="Haircut", date="2026-03-03", time="10:00", client_name="Ana",
        )
        assert result.created
        stored = store.get(f"{APPOINTMENTS}/{result.appointment.id}")
        assert stored["source"] == AppointmentSource.AI_AUTO.value
        assert stored["duration"] == 30

    def test_auto_book_replay_is_idempotent(self, engine, store):
        engine.auto_book(TENANT_ID, CONTACT, service="Haircut", date="2026-03-03", time="10:00")
        again = engine.auto_book(TENANT_ID, CONTACT, service="Haircut", date="2026-03-03", time="10:00")
        assert not again.created
        assert len(store.query(APPOINTMENTS)) == 1

    def test_auto_book_after_tool_create_is_idempotent(self, engine, store):
        engine.create(TENANT_ID, _request())
        again = engine.auto_book(TENANT_ID, CONTACT, service="Haircut", date="2026-03-03", time="10:00")
        assert not again.created
        assert len(store.query(APPOINTMENTS)) == 1

    def test_auto_book_respects_overlap(self, engine):
        engine.create(TENANT_ID, _request(contact=OTHER_CONTACT))
        with pytest.raises(BookingError) as exc_info:
            engine.auto_book(TENANT_ID, CONTACT, service="Haircut", date="2026-03-03", time="10:15")
        assert exc_info.value.code == SLOT_OCCUPIED


# ── Store outages ────────────────────────────────────────────────────


class _FlakyStore(InMemoryDocumentStore):
    def run_transaction(self, fn, *, scope=None):
        raise StoreUnavailableError("commit timed out")


class TestSyncFailure:
    def test_transaction_failure_is_sync_fail(self, clock):
        flaky = _FlakyStore()
        flaky.set(f"tenants/{TENANT_ID}", tenant_doc("Fade Studio", "fade-studio"))
        engine = BookingEngine(flaky, clock=clock)
        with pytest.raises(BookingError) as exc_info:
            engine.create(TENANT_ID, _request())
        assert exc_info.value.code == SYNC_FAIL
