# medibook/crud.py - doctor configuration and lookups
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from typing import Optional, List
import logging

from . import models, schemas
from .compliance_logger import compliance_logger
from .config import get_settings
from .errors import NotFound

logger = logging.getLogger(__name__)


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error while saving {what}: {str(e)}")
        raise

# ==================== DOCTORS ====================

def get_doctor(db: Session, doctor_id: int) -> Optional[models.Doctor]:
    return db.query(models.Doctor).filter(models.Doctor.id == doctor_id).first()

def get_verified_doctor(db: Session, doctor_id: int) -> models.Doctor:
    """Unknown and unverified doctors look the same to readers: 404."""
    doctor = get_doctor(db, doctor_id)
    if not doctor or not doctor.is_verified:
        raise NotFound(f"Doctor {doctor_id} not found")
    return doctor

def require_doctor(db: Session, doctor_id: int) -> models.Doctor:
    doctor = get_doctor(db, doctor_id)
    if not doctor:
        raise NotFound(f"Doctor {doctor_id} not found")
    return doctor

# ==================== WORKING HOURS ====================

def get_working_hours(db: Session, doctor_id: int) -> List[models.WorkingHours]:
    return db.query(models.WorkingHours).filter(
        models.WorkingHours.doctor_id == doctor_id
    ).order_by(models.WorkingHours.day_of_week).all()

def upsert_working_hours(
    db: Session, doctor_id: int, entries: List[schemas.WorkingHoursBase], user_id: Optional[int] = None
) -> List[models.WorkingHours]:
    """Rows are never deleted; each listed weekday is created or overwritten."""
    existing = {wh.day_of_week: wh for wh in get_working_hours(db, doctor_id)}
    for entry in entries:
        row = existing.get(entry.day_of_week)
        if row is None:
            row = models.WorkingHours(doctor_id=doctor_id, day_of_week=entry.day_of_week)
            db.add(row)
        row.is_working = entry.is_working
        row.start_time = entry.start_time if entry.is_working else None
        row.end_time = entry.end_time if entry.is_working else None

    compliance_logger.log_event(
        db=db,
        user_id=user_id,
        action=models.AuditAction.UPDATE,
        category='SCHEDULE',
        resource_type='Doctor',
        resource_id=doctor_id,
        details=f"Working hours updated for days {sorted(e.day_of_week for e in entries)}",
    )
    _commit(db, f"working hours for doctor {doctor_id}")
    return get_working_hours(db, doctor_id)

# ==================== AVAILABILITY ====================

def get_availability(db: Session, doctor_id: int) -> schemas.AvailabilityResponse:
    row = db.query(models.DoctorAvailability).filter(models.DoctorAvailability.doctor_id == doctor_id).first()
    if row is None:
        settings = get_settings()
        return schemas.AvailabilityResponse(
            doctor_id=doctor_id,
            slot_duration_minutes=settings.default_slot_duration_minutes,
            booking_advance_days=settings.default_booking_advance_days,
            min_booking_hours=settings.default_min_booking_hours,
        )
    return schemas.AvailabilityResponse.model_validate(row)

def upsert_availability(
    db: Session, doctor_id: int, update: schemas.AvailabilityUpdate, user_id: Optional[int] = None
) -> schemas.AvailabilityResponse:
    row = db.query(models.DoctorAvailability).filter(models.DoctorAvailability.doctor_id == doctor_id).first()
    if row is None:
        current = get_availability(db, doctor_id)
        row = models.DoctorAvailability(
            doctor_id=doctor_id,
            slot_duration_minutes=current.slot_duration_minutes,
            booking_advance_days=current.booking_advance_days,
            min_booking_hours=current.min_booking_hours,
        )
        db.add(row)
    for field, value in update.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(row, field, value)

    compliance_logger.log_event(
        db=db,
        user_id=user_id,
        action=models.AuditAction.UPDATE,
        category='SCHEDULE',
        resource_type='Doctor',
        resource_id=doctor_id,
        details=f"Availability updated: {update.model_dump(exclude_unset=True)}",
    )
    _commit(db, f"availability for doctor {doctor_id}")
    db.refresh(row)
    return schemas.AvailabilityResponse.model_validate(row)

# ==================== APPOINTMENT TYPES ====================

def list_appointment_types(db: Session, doctor_id: int, include_inactive: bool = False) -> List[models.AppointmentType]:
    query = db.query(models.AppointmentType).filter(models.AppointmentType.doctor_id == doctor_id)
    if not include_inactive:
        query = query.filter(models.AppointmentType.is_active.is_(True))
    return query.order_by(models.AppointmentType.id).all()

def create_appointment_type(
    db: Session, doctor_id: int, data: schemas.AppointmentTypeCreate, user_id: Optional[int] = None
) -> models.AppointmentType:
    appointment_type = models.AppointmentType(doctor_id=doctor_id, is_active=True, **data.model_dump())
    db.add(appointment_type)
    db.flush()
    compliance_logger.log_event(
        db=db,
        user_id=user_id,
        action=models.AuditAction.CREATE,
        category='SCHEDULE',
        resource_type='AppointmentType',
        resource_id=appointment_type.id,
        details=f"Created appointment type '{appointment_type.name}'",
    )
    _commit(db, "appointment type")
    db.refresh(appointment_type)
    return appointment_type

def update_appointment_type(
    db: Session, doctor_id: int, type_id: int, data: schemas.AppointmentTypeUpdate, user_id: Optional[int] = None
) -> models.AppointmentType:
    """Partial update; setting is_active=False is the soft-disable path."""
    appointment_type = db.query(models.AppointmentType).filter(
        models.AppointmentType.id == type_id,
        models.AppointmentType.doctor_id == doctor_id,
    ).first()
    if not appointment_type:
        raise NotFound("Appointment type not found")

    changes = {
        field: value for field, value in data.model_dump(exclude_unset=True).items()
        if value is not None or field in ("description", "price")
    }
    for field, value in changes.items():
        setattr(appointment_type, field, value)
    compliance_logger.log_event(
        db=db,
        user_id=user_id,
        action=models.AuditAction.UPDATE,
        category='SCHEDULE',
        resource_type='AppointmentType',
        resource_id=appointment_type.id,
        details=f"Updated fields {sorted(changes)}",
    )
    _commit(db, f"appointment type {type_id}")
    db.refresh(appointment_type)
    return appointment_type

# ==================== APPOINTMENTS ====================

def get_appointment(db: Session, appointment_id: int) -> models.Appointment:
    appointment = db.query(models.Appointment).filter(models.Appointment.id == appointment_id).first()
    if not appointment:
        raise NotFound(f"Appointment {appointment_id} not found")
    return appointment
