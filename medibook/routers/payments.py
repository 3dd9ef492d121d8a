# medibook/routers/payments.py
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List

from .. import crud, schemas, security
from ..database import get_db
from ..security import CallerContext, get_current_caller, require_admin
from ..services.notification_service import NotificationDispatcher, get_notifier
from ..services.payment_gateway import PaymentGateway, get_payment_gateway
from ..services.payment_service import PaymentLedger
from ..services.refund_service import RefundEngine
from .appointments import refund_response

router = APIRouter(
    prefix="/payments",
    tags=["Payments"],
    responses={404: {"description": "Not found"}},
)

@router.post("", response_model=schemas.PaymentResponse, status_code=status.HTTP_201_CREATED)
def create_payment(
    payload: schemas.PaymentCreate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """Create the payment for an appointment; the commission split is fixed here."""
    appointment = crud.get_appointment(db, payload.appointment_id)
    security.ensure_can_access_appointment(caller, appointment)
    return PaymentLedger(db, gateway, notifier).create_payment(payload.appointment_id)

@router.post("/{appointment_id}/capture", response_model=schemas.PaymentResponse)
def capture_payment(
    appointment_id: int,
    payload: schemas.PaymentCapture,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    appointment = crud.get_appointment(db, appointment_id)
    security.ensure_can_access_appointment(caller, appointment)
    return PaymentLedger(db, gateway, notifier).capture_payment(appointment_id, payload.payer_ref)

@router.get("/reconciliation", response_model=List[schemas.PaymentResponse])
def list_reconciliation(
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(require_admin),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """Payments flagged for manual review (failed refunds, payout clawbacks)."""
    return RefundEngine(db, gateway, notifier).pending_reconciliation()

@router.post("/{payment_id}/refund/retry", response_model=schemas.RefundResultResponse)
def retry_refund(
    payment_id: int,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(require_admin),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    return refund_response(RefundEngine(db, gateway, notifier).retry_refund(payment_id))
