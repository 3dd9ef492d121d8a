# medibook/routers/appointments.py

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from .. import crud, schemas, security
from ..config import get_settings
from ..database import get_db
from ..errors import Forbidden
from ..limiter import limiter
from ..models import AppointmentStatus, UserRole
from ..security import CallerContext, get_current_caller
from ..services.appointment_state import AppointmentStateMachine
from ..services.booking_service import BookingService
from ..services.notification_service import NotificationDispatcher, get_notifier
from ..services.payment_gateway import PaymentGateway, get_payment_gateway
from ..services.refund_service import RefundResult

router = APIRouter(
    tags=["Appointments"],
    responses={404: {"description": "Not found"}},
)


def refund_response(result: RefundResult) -> schemas.RefundResultResponse:
    return schemas.RefundResultResponse(
        outcome=result.outcome.value,
        amount=result.amount,
        commission_refund=result.commission_refund,
        payout_reversal=result.payout_reversal,
        payment_id=result.payment_id,
        error=result.error,
    )


@router.post("/appointments", response_model=schemas.AppointmentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_settings().booking_rate_limit)
def create_new_appointment(
    appointment: schemas.AppointmentCreate,
    request: Request,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_current_caller),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """Book a slot. The new appointment is PENDING until payment confirms it."""
    return BookingService(db, notifier).book_slot(
        doctor_id=appointment.doctor_id,
        for_date=appointment.date,
        time_str=appointment.time,
        appointment_type_id=appointment.appointment_type_id,
        user_id=caller.user_id,
        reason=appointment.reason,
    )


@router.get("/appointments/{appointment_id}", response_model=schemas.AppointmentResponse)
def read_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_current_caller),
):
    appointment = crud.get_appointment(db, appointment_id)
    security.ensure_can_access_appointment(caller, appointment)
    return appointment


@router.put("/appointments/{appointment_id}/status", response_model=schemas.AppointmentResponse)
def update_appointment_status(
    appointment_id: int,
    payload: schemas.AppointmentStatusUpdate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    appointment = crud.get_appointment(db, appointment_id)
    security.ensure_can_access_appointment(caller, appointment)
    # Patients may only cancel their own bookings
    if caller.role == UserRole.patient and payload.status != AppointmentStatus.CANCELLED:
        raise Forbidden("Patients can only cancel appointments")

    machine = AppointmentStateMachine(db, gateway, notifier)
    return machine.transition(appointment_id, payload.status, reason=payload.reason, user_id=caller.user_id)


@router.post("/appointments/{appointment_id}/cancel", response_model=schemas.CancellationResponse)
def cancel_appointment(
    appointment_id: int,
    payload: schemas.AppointmentCancel,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """Cancel and report the refund outcome. A failed refund is reported, not raised."""
    appointment = crud.get_appointment(db, appointment_id)
    security.ensure_can_access_appointment(caller, appointment)

    result = AppointmentStateMachine(db, gateway, notifier).cancel(
        appointment_id, reason=payload.reason, user_id=caller.user_id
    )
    return schemas.CancellationResponse(
        appointment=schemas.AppointmentResponse.model_validate(result.appointment),
        refund=refund_response(result.refund),
    )


@router.post("/appointments/{appointment_id}/reschedule", response_model=schemas.AppointmentResponse)
def reschedule_appointment(
    appointment_id: int,
    payload: schemas.AppointmentReschedule,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_current_caller),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    appointment = crud.get_appointment(db, appointment_id)
    security.ensure_can_access_appointment(caller, appointment)
    return BookingService(db, notifier).reschedule(
        appointment_id, payload.date, payload.time, user_id=caller.user_id
    )
