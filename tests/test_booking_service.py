# tests/test_booking_service.py
import threading
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from medibook import models
from medibook.errors import (
    AppointmentTypeInactive, DoctorNotVerified, InvalidTransition, LeadTimeViolation,
    NotFound, SlotConflict, SlotUnavailable, ValidationError,
)
from medibook.services import booking_service, slot_service
from medibook.services.booking_service import BookingService

from .conftest import NEXT_MONDAY, NEXT_SATURDAY, OTHER_PATIENT_ID, PATIENT_ID, TOMORROW


@pytest.fixture
def booking(db, notifier):
    return BookingService(db, notifier)


def test_book_slot_creates_pending_appointment(db, booking, doctor, consultation, notifier):
    appointment = booking.book_slot(doctor.id, NEXT_MONDAY, "09:00", consultation.id, PATIENT_ID)

    assert appointment.status == models.AppointmentStatus.PENDING
    assert appointment.duration_minutes == 30
    assert appointment.reason == "General consultation"
    assert appointment.user_id == PATIENT_ID
    assert "09:00" not in slot_service.get_available_slots(db, doctor.id, NEXT_MONDAY)
    assert notifier.names() == ["appointment.booked"]

    audit = db.query(models.AuditLog).filter(models.AuditLog.action == models.AuditAction.BOOK).one()
    assert audit.resource_id == appointment.id


def test_duration_copied_from_type(booking, doctor, long_visit):
    appointment = booking.book_slot(doctor.id, NEXT_MONDAY, "10:00", long_visit.id, PATIENT_ID, reason="Checkup")
    assert appointment.duration_minutes == 60
    assert appointment.reason == "Checkup"


def test_second_booking_of_same_slot_conflicts(booking, doctor, consultation):
    booking.book_slot(doctor.id, NEXT_MONDAY, "09:00", consultation.id, PATIENT_ID)
    with pytest.raises(SlotConflict):
        booking.book_slot(doctor.id, NEXT_MONDAY, "09:00", consultation.id, OTHER_PATIENT_ID)


def test_overlapping_long_booking_conflicts(booking, doctor, consultation, long_visit):
    booking.book_slot(doctor.id, NEXT_MONDAY, "10:00", long_visit.id, PATIENT_ID)
    with pytest.raises(SlotConflict):
        booking.book_slot(doctor.id, NEXT_MONDAY, "10:30", consultation.id, OTHER_PATIENT_ID)


def test_cancelled_slot_can_be_rebooked(db, booking, doctor, consultation):
    first = booking.book_slot(doctor.id, NEXT_MONDAY, "09:00", consultation.id, PATIENT_ID)
    first.status = models.AppointmentStatus.CANCELLED
    db.commit()
    second = booking.book_slot(doctor.id, NEXT_MONDAY, "09:00", consultation.id, OTHER_PATIENT_ID)
    assert second.id != first.id


def test_unknown_doctor(booking, consultation):
    with pytest.raises(NotFound):
        booking.book_slot(9999, NEXT_MONDAY, "09:00", consultation.id, PATIENT_ID)


def test_unverified_doctor(booking, unverified_doctor):
    with pytest.raises(DoctorNotVerified):
        booking.book_slot(unverified_doctor.id, NEXT_MONDAY, "09:00", 1, PATIENT_ID)


def test_type_of_another_doctor_not_found(db, booking, doctor, unverified_doctor):
    foreign = models.AppointmentType(doctor_id=unverified_doctor.id, name="X", duration_minutes=30)
    db.add(foreign)
    db.commit()
    with pytest.raises(NotFound):
        booking.book_slot(doctor.id, NEXT_MONDAY, "09:00", foreign.id, PATIENT_ID)


def test_inactive_type(db, booking, doctor, consultation):
    consultation.is_active = False
    db.commit()
    with pytest.raises(AppointmentTypeInactive):
        booking.book_slot(doctor.id, NEXT_MONDAY, "09:00", consultation.id, PATIENT_ID)


def test_lead_time_violation(booking, doctor, consultation):
    with pytest.raises(LeadTimeViolation):
        booking.book_slot(doctor.id, TOMORROW, "09:00", consultation.id, PATIENT_ID)


@pytest.mark.parametrize("when, at", [(NEXT_SATURDAY, "09:00"), (NEXT_MONDAY, "09:10"), (NEXT_MONDAY, "13:00")])
def test_unavailable_slots_rejected(booking, doctor, consultation, when, at):
    with pytest.raises(SlotUnavailable) as excinfo:
        booking.book_slot(doctor.id, when, at, consultation.id, PATIENT_ID)
    assert not isinstance(excinfo.value, SlotConflict)


def test_malformed_time(booking, doctor, consultation):
    with pytest.raises(ValidationError):
        booking.book_slot(doctor.id, NEXT_MONDAY, "9am", consultation.id, PATIENT_ID)


def test_unique_index_rejects_second_occupying_row(db, doctor):
    for status in (models.AppointmentStatus.CANCELLED, models.AppointmentStatus.PENDING):
        db.add(models.Appointment(doctor_id=doctor.id, user_id=PATIENT_ID, date=NEXT_MONDAY,
                                  time="09:00", duration_minutes=30, status=status))
    db.commit()

    db.add(models.Appointment(doctor_id=doctor.id, user_id=OTHER_PATIENT_ID, date=NEXT_MONDAY,
                              time="09:00", duration_minutes=30, status=models.AppointmentStatus.CONFIRMED))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_concurrent_bookings_admit_exactly_one(session_factory, doctor, consultation, notifier):
    doctor_id, type_id = doctor.id, consultation.id
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def attempt(user_id):
        session = session_factory()
        try:
            barrier.wait()
            try:
                appointment = BookingService(session, notifier).book_slot(
                    doctor_id, NEXT_MONDAY, "10:00", type_id, user_id
                )
                outcome = ("ok", appointment.id)
            except SlotConflict:
                outcome = ("conflict", None)
            with lock:
                results.append(outcome)
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(PATIENT_ID + i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert len(results) == workers
    assert [r[0] for r in results].count("ok") == 1
    assert [r[0] for r in results].count("conflict") == workers - 1

    session = session_factory()
    try:
        occupying = session.query(models.Appointment).filter(
            models.Appointment.doctor_id == doctor_id,
            models.Appointment.date == NEXT_MONDAY,
            models.Appointment.time == "10:00",
            models.Appointment.status.in_(models.OCCUPYING_STATUSES),
        ).count()
    finally:
        session.close()
    assert occupying == 1


# --- Reschedule ---

def test_reschedule_moves_slot_and_frees_old(db, booking, doctor, consultation, notifier):
    appointment = booking.book_slot(doctor.id, NEXT_MONDAY, "09:00", consultation.id, PATIENT_ID)
    moved = booking.reschedule(appointment.id, NEXT_MONDAY, "11:00", user_id=PATIENT_ID)

    assert moved.time == "11:00"
    assert moved.status == models.AppointmentStatus.PENDING
    slots = slot_service.get_available_slots(db, doctor.id, NEXT_MONDAY)
    assert "09:00" in slots
    assert "11:00" not in slots
    assert notifier.names()[-1] == "appointment.rescheduled"


def test_reschedule_into_own_overlapping_window(booking, doctor, long_visit):
    appointment = booking.book_slot(doctor.id, NEXT_MONDAY, "09:00", long_visit.id, PATIENT_ID)
    # 09:30-10:30 overlaps only the appointment's own current slot
    moved = booking.reschedule(appointment.id, NEXT_MONDAY, "09:30")
    assert moved.time == "09:30"


def test_reschedule_into_taken_slot_conflicts(booking, doctor, consultation):
    booking.book_slot(doctor.id, NEXT_MONDAY, "09:00", consultation.id, PATIENT_ID)
    other = booking.book_slot(doctor.id, NEXT_MONDAY, "10:00", consultation.id, OTHER_PATIENT_ID)
    with pytest.raises(SlotConflict):
        booking.reschedule(other.id, NEXT_MONDAY, "09:00")


def test_reschedule_terminal_appointment_rejected(db, booking, doctor, consultation):
    appointment = booking.book_slot(doctor.id, NEXT_MONDAY, "09:00", consultation.id, PATIENT_ID)
    appointment.status = models.AppointmentStatus.COMPLETED
    db.commit()
    with pytest.raises(InvalidTransition):
        booking.reschedule(appointment.id, NEXT_MONDAY, "10:00")


def test_reschedule_respects_lead_time(booking, doctor, consultation):
    appointment = booking.book_slot(doctor.id, NEXT_MONDAY, "09:00", consultation.id, PATIENT_ID)
    with pytest.raises(LeadTimeViolation):
        booking.reschedule(appointment.id, TOMORROW, "09:00")


def test_day_locks_come_from_a_fixed_pool(booking, doctor, consultation):
    pool = list(booking_service._slot_locks)
    for offset in range(0, 21, 7):
        booking.book_slot(doctor.id, NEXT_MONDAY + timedelta(days=offset), "09:00", consultation.id, PATIENT_ID)

    assert booking_service._slot_locks == pool
    assert len(pool) == booking_service.LOCK_STRIPES
    assert booking_service._day_lock(doctor.id, NEXT_MONDAY) is booking_service._day_lock(doctor.id, NEXT_MONDAY)
    assert booking_service._day_lock(doctor.id, NEXT_MONDAY) in pool
