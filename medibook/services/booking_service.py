# medibook/services/booking_service.py
"""Booking admission.

Admission check and insert form one critical section guarded three ways: a
per-(doctor, date) lock inside this process, a row lock on the doctor inside
the transaction, and the partial unique index on occupied slots across
processes. Whichever request loses any of the three gets SlotConflict.
"""
import logging
import threading
from datetime import date
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..compliance_logger import compliance_logger
from ..errors import (
    AppointmentTypeInactive, DoctorNotVerified, InvalidTransition, LeadTimeViolation,
    NotFound, SlotConflict, SlotUnavailable,
)
from .notification_service import NotificationDispatcher
from .slot_service import SlotReason, check_slot, parse_time

logger = logging.getLogger(__name__)

DEFAULT_REASON = "General consultation"

RESCHEDULABLE_STATUSES = (models.AppointmentStatus.PENDING, models.AppointmentStatus.CONFIRMED)

# Fixed pool of striped locks; distinct doctor-days may share a stripe
LOCK_STRIPES = 64
_slot_locks: List[threading.Lock] = [threading.Lock() for _ in range(LOCK_STRIPES)]


def _day_lock(doctor_id: int, for_date: date) -> threading.Lock:
    return _slot_locks[hash((doctor_id, for_date)) % LOCK_STRIPES]


UNAVAILABLE_MESSAGES = {
    SlotReason.outside_hours: "Requested time is not on the doctor's schedule",
    SlotReason.not_working: "Doctor is not working on the requested day",
    SlotReason.past_date: "Cannot book appointments in the past",
    SlotReason.beyond_booking_window: "Requested date is beyond the booking window",
}


def raise_for_verdict(verdict: SlotReason) -> None:
    if verdict is SlotReason.available:
        return
    if verdict is SlotReason.occupied:
        raise SlotConflict()
    if verdict is SlotReason.lead_time:
        raise LeadTimeViolation("Requested time is too soon; please book further in advance")
    raise SlotUnavailable(UNAVAILABLE_MESSAGES.get(verdict, "Requested slot is not available"))


def notification_payload(appointment: models.Appointment) -> dict:
    return {
        "appointment_id": appointment.id,
        "doctor_id": appointment.doctor_id,
        "user_id": appointment.user_id,
        "date": appointment.date.isoformat(),
        "time": appointment.time,
        "status": appointment.status.value,
        "doctor_email": appointment.doctor.email if appointment.doctor else None,
    }


class BookingService:
    def __init__(self, db: Session, notifier: NotificationDispatcher):
        self.db = db
        self.notifier = notifier

    def _get_verified_doctor(self, doctor_id: int) -> models.Doctor:
        doctor = self.db.query(models.Doctor).filter(models.Doctor.id == doctor_id).first()
        if not doctor:
            raise NotFound(f"Doctor {doctor_id} not found")
        if not doctor.is_verified:
            raise DoctorNotVerified("Doctor is not verified")
        return doctor

    def _lock_doctor_row(self, doctor_id: int) -> None:
        self.db.query(models.Doctor).filter(models.Doctor.id == doctor_id).with_for_update().first()

    def book_slot(
        self,
        doctor_id: int,
        for_date: date,
        time_str: str,
        appointment_type_id: int,
        user_id: int,
        reason: Optional[str] = None,
    ) -> models.Appointment:
        """Admit a booking and return the new PENDING appointment, or raise why not."""
        parse_time(time_str)
        self._get_verified_doctor(doctor_id)

        appointment_type = self.db.query(models.AppointmentType).filter(
            models.AppointmentType.id == appointment_type_id,
            models.AppointmentType.doctor_id == doctor_id,
        ).first()
        if not appointment_type:
            raise NotFound("Appointment type not found")
        if not appointment_type.is_active:
            raise AppointmentTypeInactive("Appointment type is not active")

        with _day_lock(doctor_id, for_date):
            try:
                self._lock_doctor_row(doctor_id)
                verdict = check_slot(
                    self.db, doctor_id, for_date, time_str,
                    duration_minutes=appointment_type.duration_minutes,
                )
                raise_for_verdict(verdict)

                appointment = models.Appointment(
                    doctor_id=doctor_id,
                    user_id=user_id,
                    appointment_type_id=appointment_type.id,
                    date=for_date,
                    time=time_str,
                    duration_minutes=appointment_type.duration_minutes,
                    status=models.AppointmentStatus.PENDING,
                    reason=reason or DEFAULT_REASON,
                )
                self.db.add(appointment)
                self.db.flush()
                compliance_logger.log_event(
                    db=self.db,
                    user_id=user_id,
                    action=models.AuditAction.BOOK,
                    category='APPOINTMENT',
                    resource_type='Appointment',
                    resource_id=appointment.id,
                    details=f"Booked doctor {doctor_id} on {for_date} at {time_str}",
                )
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.warning(f"Slot {doctor_id}/{for_date}/{time_str} taken by a concurrent booking")
                raise SlotConflict()
            except Exception:
                self.db.rollback()
                raise

        self.db.refresh(appointment)
        logger.info(f"Appointment {appointment.id} booked for doctor {doctor_id} on {for_date} at {time_str}")
        self.notifier.emit("appointment.booked", notification_payload(appointment))
        return appointment

    def reschedule(
        self,
        appointment_id: int,
        new_date: date,
        time_str: str,
        user_id: Optional[int] = None,
    ) -> models.Appointment:
        """Move a PENDING or CONFIRMED appointment to another free slot; status is unchanged."""
        parse_time(time_str)
        appointment = self.db.query(models.Appointment).filter(models.Appointment.id == appointment_id).first()
        if not appointment:
            raise NotFound(f"Appointment {appointment_id} not found")
        if appointment.status not in RESCHEDULABLE_STATUSES:
            raise InvalidTransition(f"Cannot reschedule a {appointment.status.value} appointment")

        old_slot = f"{appointment.date} {appointment.time}"
        doctor_id = appointment.doctor_id

        with _day_lock(doctor_id, new_date):
            try:
                self._lock_doctor_row(doctor_id)
                verdict = check_slot(
                    self.db, doctor_id, new_date, time_str,
                    duration_minutes=appointment.duration_minutes,
                    exclude_appointment_id=appointment.id,
                )
                raise_for_verdict(verdict)

                moved = self.db.query(models.Appointment).filter(
                    models.Appointment.id == appointment.id,
                    models.Appointment.status.in_(RESCHEDULABLE_STATUSES),
                ).update(
                    {models.Appointment.date: new_date, models.Appointment.time: time_str},
                    synchronize_session=False,
                )
                if moved == 0:
                    raise InvalidTransition("Appointment changed status while rescheduling")

                compliance_logger.log_event(
                    db=self.db,
                    user_id=user_id,
                    action=models.AuditAction.RESCHEDULE,
                    category='APPOINTMENT',
                    resource_type='Appointment',
                    resource_id=appointment.id,
                    details=f"Rescheduled from {old_slot} to {new_date} {time_str}",
                )
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                raise SlotConflict()
            except Exception:
                self.db.rollback()
                raise

        self.db.refresh(appointment)
        logger.info(f"Appointment {appointment.id} rescheduled from {old_slot} to {new_date} {time_str}")
        payload = notification_payload(appointment)
        payload["previous_slot"] = old_slot
        self.notifier.emit("appointment.rescheduled", payload)
        return appointment
