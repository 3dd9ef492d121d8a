import os
from datetime import time
from decimal import Decimal

from sqlalchemy.orm import Session

from medibook.database import SessionLocal, create_tables
from medibook import models
from medibook.models import UserRole
from medibook.security import create_access_token
from medibook.services.commission_service import get_or_create_settings_row


def get_env(name: str, default: str | None = None) -> str:
    return os.getenv(name, default) or ""


def upsert_doctor(db: Session) -> models.Doctor:
    email = get_env("DEMO_DOCTOR_EMAIL", "doctor@example.com")
    doctor = db.query(models.Doctor).filter(models.Doctor.email == email).first()
    if doctor:
        doctor.is_verified = True
        action = "updated"
    else:
        doctor = models.Doctor(
            user_id=int(get_env("DEMO_DOCTOR_USER_ID", "2")),
            name=get_env("DEMO_DOCTOR_NAME", "Dr. Demo"),
            email=email,
            speciality="General Practice",
            is_verified=True,
        )
        db.add(doctor)
        action = "created"
    db.flush()

    # Monday-Friday 09:00-17:00, weekends off
    existing = {wh.day_of_week: wh for wh in doctor.working_hours}
    for day in range(7):
        row = existing.get(day) or models.WorkingHours(doctor_id=doctor.id, day_of_week=day)
        row.is_working = day < 5
        row.start_time = time(9, 0) if day < 5 else None
        row.end_time = time(17, 0) if day < 5 else None
        db.add(row)

    if doctor.availability is None:
        db.add(models.DoctorAvailability(doctor_id=doctor.id))

    if not doctor.appointment_types:
        db.add_all([
            models.AppointmentType(doctor_id=doctor.id, name="Consultation", duration_minutes=30, price=Decimal("100.00")),
            models.AppointmentType(doctor_id=doctor.id, name="Extended visit", duration_minutes=60, price=Decimal("180.00")),
        ])

    get_or_create_settings_row(db)
    db.commit()
    print(f"Demo doctor {action}: id={doctor.id}, email='{email}'")
    return doctor


def main():
    create_tables()
    db = SessionLocal()
    try:
        doctor = upsert_doctor(db)
        print("Tokens:")
        print(f"  patient: {create_access_token(int(get_env('DEMO_PATIENT_USER_ID', '1')), UserRole.patient)}")
        print(f"  doctor:  {create_access_token(doctor.user_id, UserRole.doctor, doctor_id=doctor.id)}")
        print(f"  admin:   {create_access_token(int(get_env('DEMO_ADMIN_USER_ID', '3')), UserRole.admin)}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
