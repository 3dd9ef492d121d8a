# tests/test_slot_service.py
from datetime import date, time, timedelta

import pytest

from medibook import models
from medibook.errors import ValidationError
from medibook.services import slot_service
from medibook.services.slot_service import SlotReason

from .conftest import FIXED_NOW, NEXT_MONDAY, NEXT_SATURDAY, PATIENT_ID, TODAY, TOMORROW


def add_appointment(db, doctor, when, at, duration=30, status=models.AppointmentStatus.PENDING):
    appointment = models.Appointment(
        doctor_id=doctor.id, user_id=PATIENT_ID, date=when, time=at,
        duration_minutes=duration, status=status,
    )
    db.add(appointment)
    db.commit()
    return appointment


def test_full_grid_on_free_working_day(db, doctor):
    slots = slot_service.get_available_slots(db, doctor.id, NEXT_MONDAY)
    assert slots == ["09:00", "09:30", "10:00", "10:30", "11:00", "11:30"]


def test_grid_follows_configured_slot_duration(db, doctor):
    db.add(models.DoctorAvailability(doctor_id=doctor.id, slot_duration_minutes=45))
    db.commit()
    # 11:15 + 45 = 12:00 fits exactly
    assert slot_service.get_available_slots(db, doctor.id, NEXT_MONDAY) == ["09:00", "09:45", "10:30", "11:15"]


def test_partial_trailing_slot_excluded_for_longer_duration(db, doctor):
    slots = slot_service.get_available_slots(db, doctor.id, NEXT_MONDAY, duration_minutes=60)
    assert slots == ["09:00", "09:30", "10:00", "10:30", "11:00"]


def test_non_working_day_is_empty(db, doctor):
    assert slot_service.get_available_slots(db, doctor.id, NEXT_SATURDAY) == []


def test_missing_weekday_row_is_empty(db, doctor):
    db.query(models.WorkingHours).filter(models.WorkingHours.day_of_week == 0).delete()
    db.commit()
    assert slot_service.get_available_slots(db, doctor.id, NEXT_MONDAY) == []


def test_past_date_is_empty(db, doctor):
    assert slot_service.get_available_slots(db, doctor.id, TODAY - timedelta(days=7)) == []


def test_beyond_booking_window_is_empty(db, doctor):
    # Default window is 30 days; 2030-02-11 is a Monday 35 days out
    assert slot_service.get_available_slots(db, doctor.id, date(2030, 2, 11)) == []
    assert slot_service.get_available_slots(db, doctor.id, date(2030, 2, 4)) != []


def test_lead_time_discards_early_slots(db, doctor):
    # Now is Monday 10:00 with a 24h lead time, so Tuesday opens at 10:00
    assert slot_service.get_available_slots(db, doctor.id, TOMORROW) == ["10:00", "10:30", "11:00", "11:30"]
    assert slot_service.get_available_slots(db, doctor.id, TODAY) == []


def test_zero_lead_time_allows_later_today(db, doctor):
    db.add(models.DoctorAvailability(doctor_id=doctor.id, min_booking_hours=0))
    db.commit()
    assert slot_service.get_available_slots(db, doctor.id, TODAY) == ["10:00", "10:30", "11:00", "11:30"]


def test_occupied_slots_removed_and_cancelled_freed(db, doctor):
    add_appointment(db, doctor, NEXT_MONDAY, "09:30")
    add_appointment(db, doctor, NEXT_MONDAY, "10:30", status=models.AppointmentStatus.CONFIRMED)
    add_appointment(db, doctor, NEXT_MONDAY, "11:00", status=models.AppointmentStatus.CANCELLED)

    slots = slot_service.get_available_slots(db, doctor.id, NEXT_MONDAY)
    assert slots == ["09:00", "10:00", "11:00", "11:30"]


def test_completed_appointment_still_occupies(db, doctor):
    add_appointment(db, doctor, NEXT_MONDAY, "09:00", status=models.AppointmentStatus.COMPLETED)
    assert "09:00" not in slot_service.get_available_slots(db, doctor.id, NEXT_MONDAY)


def test_long_appointment_blocks_following_slot(db, doctor):
    add_appointment(db, doctor, NEXT_MONDAY, "10:00", duration=60)
    slots = slot_service.get_available_slots(db, doctor.id, NEXT_MONDAY)
    assert "10:00" not in slots
    assert "10:30" not in slots
    assert "11:00" in slots


def test_requested_duration_overlapping_later_booking(db, doctor):
    add_appointment(db, doctor, NEXT_MONDAY, "10:00")
    slots = slot_service.get_available_slots(db, doctor.id, NEXT_MONDAY, duration_minutes=60)
    # 09:30 + 60 would run into the 10:00 booking
    assert slots == ["09:00", "10:30", "11:00"]


def test_other_doctors_bookings_do_not_interfere(db, doctor, unverified_doctor):
    add_appointment(db, unverified_doctor, NEXT_MONDAY, "09:00")
    assert "09:00" in slot_service.get_available_slots(db, doctor.id, NEXT_MONDAY)


def test_evaluate_slots_reports_reasons(db, doctor):
    add_appointment(db, doctor, TOMORROW, "11:00")
    verdicts = {v.time: v.reason for v in slot_service.evaluate_slots(db, doctor.id, TOMORROW)}
    assert verdicts == {
        "09:00": SlotReason.lead_time,
        "09:30": SlotReason.lead_time,
        "10:00": SlotReason.available,
        "10:30": SlotReason.available,
        "11:00": SlotReason.occupied,
        "11:30": SlotReason.available,
    }


@pytest.mark.parametrize("when, at, expected", [
    (NEXT_MONDAY, "09:00", SlotReason.available),
    (NEXT_MONDAY, "09:15", SlotReason.outside_hours),
    (NEXT_MONDAY, "12:00", SlotReason.outside_hours),
    (NEXT_MONDAY, "08:30", SlotReason.outside_hours),
    (NEXT_SATURDAY, "09:00", SlotReason.not_working),
    (TOMORROW, "09:00", SlotReason.lead_time),
    (TODAY - timedelta(days=1), "09:00", SlotReason.past_date),
    (date(2030, 3, 4), "09:00", SlotReason.beyond_booking_window),
])
def test_check_slot_verdicts(db, doctor, when, at, expected):
    assert slot_service.check_slot(db, doctor.id, when, at) is expected


def test_check_slot_can_ignore_an_appointment(db, doctor):
    existing = add_appointment(db, doctor, NEXT_MONDAY, "09:00")
    assert slot_service.check_slot(db, doctor.id, NEXT_MONDAY, "09:00") is SlotReason.occupied
    assert slot_service.check_slot(
        db, doctor.id, NEXT_MONDAY, "09:00", exclude_appointment_id=existing.id
    ) is SlotReason.available


@pytest.mark.parametrize("bad", ["9:00", "24:00", "09:60", "noon", "", "09:00:00"])
def test_malformed_time_is_validation_error(db, doctor, bad):
    with pytest.raises(ValidationError):
        slot_service.check_slot(db, doctor.id, NEXT_MONDAY, bad)


def test_explicit_now_overrides_clock(db, doctor):
    early = FIXED_NOW.replace(hour=0)
    # Midnight Monday + 24h = Tuesday 00:00, so all of Tuesday is open
    assert len(slot_service.get_available_slots(db, doctor.id, TOMORROW, now=early)) == 6


def test_working_hours_window_respected(db, doctor):
    hours = db.query(models.WorkingHours).filter(models.WorkingHours.day_of_week == 0).one()
    hours.start_time = time(14, 0)
    hours.end_time = time(15, 0)
    db.commit()
    assert slot_service.get_available_slots(db, doctor.id, NEXT_MONDAY) == ["14:00", "14:30"]
