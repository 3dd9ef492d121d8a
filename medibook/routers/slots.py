# medibook/routers/slots.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date

from .. import crud, schemas
from ..services import slot_service
from ..database import get_db

router = APIRouter(
    prefix="/doctors",
    tags=["slots"],
    responses={404: {"description": "Not found"}},
)

@router.get("/{doctor_id}/available-slots", response_model=List[str])
def get_available_slots(
    doctor_id: int,
    date: date = Query(..., description="Date to check (YYYY-MM-DD)"),
    duration: Optional[int] = Query(None, ge=5, le=480, description="Required duration in minutes"),
    db: Session = Depends(get_db),
):
    """Bookable HH:MM start times for a verified doctor on a date, ascending."""
    crud.get_verified_doctor(db, doctor_id)
    return slot_service.get_available_slots(db, doctor_id, date, duration_minutes=duration)

@router.get("/{doctor_id}/available-slots/detailed", response_model=List[schemas.SlotDetail])
def get_detailed_slots(
    doctor_id: int,
    date: date = Query(..., description="Date to check (YYYY-MM-DD)"),
    duration: Optional[int] = Query(None, ge=5, le=480),
    db: Session = Depends(get_db),
):
    """Every grid slot of the day with the reason it is or is not bookable."""
    crud.get_verified_doctor(db, doctor_id)
    verdicts = slot_service.evaluate_slots(db, doctor_id, date, duration_minutes=duration)
    return [
        schemas.SlotDetail(time=v.time, available=v.available, reason=v.reason.value)
        for v in verdicts
    ]
