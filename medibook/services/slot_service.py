# medibook/services/slot_service.py
"""Bookable slot computation.

Slots are derived on demand from a doctor's weekly working hours and the
occupying appointments of the day; nothing is pre-generated or stored. The
grid starts at the working day's start time and steps by the doctor's slot
duration. A candidate is bookable when the requested duration fits before the
end of the working window, it starts at least ``min_booking_hours`` from now,
and it does not overlap an occupying appointment.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from .. import clock, models
from ..config import get_settings
from ..errors import ValidationError

logger = logging.getLogger(__name__)


class SlotReason(str, enum.Enum):
    available = "available"
    occupied = "occupied"
    lead_time = "lead_time"
    outside_hours = "outside_hours"
    not_working = "not_working"
    past_date = "past_date"
    beyond_booking_window = "beyond_booking_window"


@dataclass(frozen=True)
class AvailabilityRules:
    slot_duration_minutes: int
    booking_advance_days: int
    min_booking_hours: int


@dataclass(frozen=True)
class SlotVerdict:
    time: str
    reason: SlotReason

    @property
    def available(self) -> bool:
        return self.reason is SlotReason.available


def parse_time(value: str) -> time:
    """Parse an HH:MM string; anything else is a ValidationError."""
    try:
        parsed = datetime.strptime(value, "%H:%M").time()
    except (TypeError, ValueError):
        raise ValidationError(f"Time must be in HH:MM format (24-hour), got {value!r}")
    if format_time(parsed) != value:
        raise ValidationError(f"Time must be in HH:MM format (24-hour), got {value!r}")
    return parsed


def format_time(value: time) -> str:
    return value.strftime("%H:%M")


def _minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def _from_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def get_availability_rules(db: Session, doctor_id: int) -> AvailabilityRules:
    """Doctor's availability row, or configured defaults when none exists."""
    settings = get_settings()
    row = db.query(models.DoctorAvailability).filter(
        models.DoctorAvailability.doctor_id == doctor_id
    ).first()
    if row is None:
        return AvailabilityRules(
            slot_duration_minutes=settings.default_slot_duration_minutes,
            booking_advance_days=settings.default_booking_advance_days,
            min_booking_hours=settings.default_min_booking_hours,
        )
    return AvailabilityRules(
        slot_duration_minutes=row.slot_duration_minutes or settings.default_slot_duration_minutes,
        booking_advance_days=row.booking_advance_days,
        min_booking_hours=row.min_booking_hours,
    )


def get_working_hours_for_day(db: Session, doctor_id: int, for_date: date) -> Optional[models.WorkingHours]:
    return db.query(models.WorkingHours).filter(
        models.WorkingHours.doctor_id == doctor_id,
        models.WorkingHours.day_of_week == for_date.weekday(),
    ).first()


def get_occupying_appointments(
    db: Session,
    doctor_id: int,
    for_date: date,
    exclude_appointment_id: Optional[int] = None,
) -> List[models.Appointment]:
    query = db.query(models.Appointment).filter(
        models.Appointment.doctor_id == doctor_id,
        models.Appointment.date == for_date,
        models.Appointment.status.in_(models.OCCUPYING_STATUSES),
    )
    if exclude_appointment_id is not None:
        query = query.filter(models.Appointment.id != exclude_appointment_id)
    return query.all()


def _occupied_ranges(appointments: Iterable[models.Appointment]) -> List[tuple]:
    ranges = []
    for appt in appointments:
        start = _minutes(parse_time(appt.time))
        ranges.append((start, start + (appt.duration_minutes or 0)))
    return ranges


def _overlaps(start: int, end: int, ranges: List[tuple]) -> bool:
    return any(start < busy_end and busy_start < end for busy_start, busy_end in ranges)


class _DayContext:
    """Everything needed to judge candidates on one doctor-day."""

    def __init__(self, db: Session, doctor_id: int, for_date: date, now: datetime,
                 duration_minutes: Optional[int], exclude_appointment_id: Optional[int]):
        self.for_date = for_date
        self.now = now
        self.rules = get_availability_rules(db, doctor_id)
        self.required = duration_minutes or self.rules.slot_duration_minutes
        self.day_reason = self._day_reason()
        self.hours = None
        self.busy: List[tuple] = []

        if self.day_reason is None:
            self.hours = get_working_hours_for_day(db, doctor_id, for_date)
            if (
                self.hours is None
                or not self.hours.is_working
                or self.hours.start_time is None
                or self.hours.end_time is None
            ):
                self.day_reason = SlotReason.not_working
            else:
                self.busy = _occupied_ranges(
                    get_occupying_appointments(db, doctor_id, for_date, exclude_appointment_id)
                )

    def _day_reason(self) -> Optional[SlotReason]:
        today = self.now.date()
        if self.for_date < today:
            return SlotReason.past_date
        if self.for_date > today + timedelta(days=self.rules.booking_advance_days):
            return SlotReason.beyond_booking_window
        return None

    def grid(self) -> List[int]:
        """Candidate start minutes whose required duration fits before end of day."""
        start = _minutes(self.hours.start_time)
        end = _minutes(self.hours.end_time)
        step = self.rules.slot_duration_minutes
        return [m for m in range(start, end, step) if m + self.required <= end]

    def judge(self, minute: int) -> SlotReason:
        earliest = self.now + timedelta(hours=self.rules.min_booking_hours)
        slot_start = datetime.combine(self.for_date, time(minute // 60, minute % 60))
        if slot_start < earliest:
            return SlotReason.lead_time
        if _overlaps(minute, minute + self.required, self.busy):
            return SlotReason.occupied
        return SlotReason.available


def evaluate_slots(
    db: Session,
    doctor_id: int,
    for_date: date,
    duration_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[SlotVerdict]:
    """Every grid candidate of the day with its availability reason, in time order."""
    ctx = _DayContext(db, doctor_id, for_date, now or clock.now(), duration_minutes, None)
    if ctx.day_reason is not None:
        return []
    return [SlotVerdict(_from_minutes(m), ctx.judge(m)) for m in ctx.grid()]


def get_available_slots(
    db: Session,
    doctor_id: int,
    for_date: date,
    duration_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[str]:
    """Ordered HH:MM start times that can be booked right now."""
    verdicts = evaluate_slots(db, doctor_id, for_date, duration_minutes, now)
    slots = [v.time for v in verdicts if v.available]
    logger.debug(f"Doctor {doctor_id} on {for_date}: {len(slots)}/{len(verdicts)} slots available")
    return slots


def check_slot(
    db: Session,
    doctor_id: int,
    for_date: date,
    time_str: str,
    duration_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
    exclude_appointment_id: Optional[int] = None,
) -> SlotReason:
    """Verdict for a single requested start time."""
    minute = _minutes(parse_time(time_str))
    ctx = _DayContext(db, doctor_id, for_date, now or clock.now(), duration_minutes, exclude_appointment_id)
    if ctx.day_reason is not None:
        return ctx.day_reason
    if minute not in ctx.grid():
        return SlotReason.outside_hours
    return ctx.judge(minute)
