# medibook/routers/schedule.py
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List

from .. import crud, schemas, security
from ..database import get_db
from ..security import CallerContext, get_current_caller

router = APIRouter(
    prefix="/doctors",
    tags=["Doctor Schedule"],
    responses={404: {"description": "Not found"}},
)

# --- Working hours ---

@router.get("/{doctor_id}/working-hours", response_model=List[schemas.WorkingHoursResponse])
def read_working_hours(doctor_id: int, db: Session = Depends(get_db)):
    crud.require_doctor(db, doctor_id)
    return crud.get_working_hours(db, doctor_id)

@router.put("/{doctor_id}/working-hours", response_model=List[schemas.WorkingHoursResponse])
def update_working_hours(
    doctor_id: int,
    payload: schemas.WorkingHoursUpdate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_current_caller),
):
    security.ensure_can_manage_doctor(caller, doctor_id)
    crud.require_doctor(db, doctor_id)
    return crud.upsert_working_hours(db, doctor_id, payload.working_hours, user_id=caller.user_id)

# --- Availability settings ---

@router.get("/{doctor_id}/availability", response_model=schemas.AvailabilityResponse)
def read_availability(doctor_id: int, db: Session = Depends(get_db)):
    crud.require_doctor(db, doctor_id)
    return crud.get_availability(db, doctor_id)

@router.put("/{doctor_id}/availability", response_model=schemas.AvailabilityResponse)
def update_availability(
    doctor_id: int,
    payload: schemas.AvailabilityUpdate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_current_caller),
):
    security.ensure_can_manage_doctor(caller, doctor_id)
    crud.require_doctor(db, doctor_id)
    return crud.upsert_availability(db, doctor_id, payload, user_id=caller.user_id)

# --- Appointment types ---

@router.get("/{doctor_id}/appointment-types", response_model=List[schemas.AppointmentTypeResponse])
def read_appointment_types(doctor_id: int, include_inactive: bool = False, db: Session = Depends(get_db)):
    """Active types by default; include_inactive lists soft-disabled ones too."""
    crud.require_doctor(db, doctor_id)
    return crud.list_appointment_types(db, doctor_id, include_inactive=include_inactive)

@router.post("/{doctor_id}/appointment-types", response_model=schemas.AppointmentTypeResponse,
             status_code=status.HTTP_201_CREATED)
def create_appointment_type(
    doctor_id: int,
    payload: schemas.AppointmentTypeCreate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_current_caller),
):
    security.ensure_can_manage_doctor(caller, doctor_id)
    crud.require_doctor(db, doctor_id)
    return crud.create_appointment_type(db, doctor_id, payload, user_id=caller.user_id)

@router.put("/{doctor_id}/appointment-types/{type_id}", response_model=schemas.AppointmentTypeResponse)
def update_appointment_type(
    doctor_id: int,
    type_id: int,
    payload: schemas.AppointmentTypeUpdate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_current_caller),
):
    security.ensure_can_manage_doctor(caller, doctor_id)
    return crud.update_appointment_type(db, doctor_id, type_id, payload, user_id=caller.user_id)
