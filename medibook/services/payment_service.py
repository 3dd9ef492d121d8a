# medibook/services/payment_service.py
"""Payment ledger.

The payment row is created once per appointment with the commission split
frozen at that moment. Capture claims the row first (status CAPTURING) with a
conditional UPDATE that also requires the appointment to still be open, so
only one caller ever charges the patient and a closed appointment is never
charged. A capture that lands after a concurrent cancellation is refunded
straight away.
"""
import logging
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import clock, models
from ..compliance_logger import compliance_logger
from ..errors import DependencyFailure, InvalidTransition, NotFound, ValidationError
from .appointment_state import AppointmentStateMachine
from .commission_service import compute_split, current_settings
from .notification_service import NotificationDispatcher
from .payment_gateway import PaymentGateway
from .refund_service import RefundEngine

logger = logging.getLogger(__name__)
log = structlog.get_logger(__name__)

CAPTURABLE_STATUSES = (models.PaymentStatus.PENDING, models.PaymentStatus.FAILED)
OPEN_APPOINTMENT_STATUSES = tuple(s for s in models.AppointmentStatus if not s.is_terminal)


class PaymentLedger:
    """Creates the payment row with the split frozen at creation, and captures it."""

    def __init__(self, db: Session, gateway: PaymentGateway, notifier: NotificationDispatcher):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier

    def get_for_appointment(self, appointment_id: int) -> Optional[models.AppointmentPayment]:
        return self.db.query(models.AppointmentPayment).filter(
            models.AppointmentPayment.appointment_id == appointment_id
        ).first()

    def create_payment(self, appointment_id: int) -> models.AppointmentPayment:
        appointment = self.db.query(models.Appointment).filter(models.Appointment.id == appointment_id).first()
        if not appointment:
            raise NotFound(f"Appointment {appointment_id} not found")
        if appointment.status.is_terminal:
            raise ValidationError(f"Cannot take payment for a {appointment.status.value} appointment")

        existing = self.get_for_appointment(appointment_id)
        if existing:
            return existing

        appointment_type = appointment.appointment_type
        if appointment_type is None or appointment_type.price is None:
            raise ValidationError("Appointment type has no price configured")

        try:
            split = compute_split(appointment_type.price, current_settings(self.db))
            payment = models.AppointmentPayment(
                appointment_id=appointment.id,
                doctor_id=appointment.doctor_id,
                appointment_price=split.gross,
                commission_percentage=split.commission_percentage,
                commission_amount=split.commission_amount,
                doctor_payout_amount=split.doctor_payout_amount,
                status=models.PaymentStatus.PENDING,
            )
            self.db.add(payment)
            self.db.flush()
            compliance_logger.log_event(
                db=self.db,
                user_id=appointment.user_id,
                action=models.AuditAction.CREATE,
                category='SETTLEMENT',
                resource_type='AppointmentPayment',
                resource_id=payment.id,
                details=f"Payment {split.gross} at {split.commission_percentage}% "
                        f"(commission {split.commission_amount}, payout {split.doctor_payout_amount})",
            )
            self.db.commit()
        except IntegrityError:
            # Concurrent create for the same appointment
            self.db.rollback()
            return self.get_for_appointment(appointment_id)
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(payment)
        logger.info(f"Payment {payment.id} created for appointment {appointment_id}")
        return payment

    def _claim_capture(self, payment: models.AppointmentPayment) -> bool:
        open_appointment = select(models.Appointment.id).where(
            models.Appointment.id == payment.appointment_id,
            models.Appointment.status.in_(OPEN_APPOINTMENT_STATUSES),
        )
        claimed = self.db.query(models.AppointmentPayment).filter(
            models.AppointmentPayment.id == payment.id,
            models.AppointmentPayment.patient_paid.is_(False),
            models.AppointmentPayment.status.in_(CAPTURABLE_STATUSES),
            models.AppointmentPayment.appointment_id.in_(open_appointment),
        ).update(
            {models.AppointmentPayment.status: models.PaymentStatus.CAPTURING},
            synchronize_session=False,
        )
        self.db.commit()
        self.db.refresh(payment)
        return claimed == 1

    def _reject_capture(self, payment: models.AppointmentPayment) -> None:
        appointment = payment.appointment
        self.db.refresh(appointment)
        if appointment.status.is_terminal:
            raise ValidationError(f"Cannot take payment for a {appointment.status.value} appointment")
        if payment.status == models.PaymentStatus.CAPTURING:
            raise ValidationError("A capture for this payment is already in progress")
        raise ValidationError(f"Payment cannot be captured in status {payment.status.value}")

    def _release_failed_capture(self, payment: models.AppointmentPayment) -> None:
        self.db.rollback()
        payment.status = models.PaymentStatus.FAILED
        self.db.commit()

    def capture_payment(self, appointment_id: int, payer_ref: str) -> models.AppointmentPayment:
        """Charge the patient; on success the appointment is confirmed if still PENDING."""
        payment = self.get_for_appointment(appointment_id)
        if not payment:
            raise NotFound(f"No payment exists for appointment {appointment_id}")
        if payment.patient_paid:
            return payment
        if not self._claim_capture(payment):
            if payment.patient_paid:
                return payment
            self._reject_capture(payment)

        bound = log.bind(appointment_id=appointment_id, payment_id=payment.id)
        try:
            result = self.gateway.capture_payment(
                payment.appointment_price,
                payer_ref,
                idempotency_key=f"capture-{payment.id}-{payer_ref}",
            )
        except DependencyFailure as e:
            self._release_failed_capture(payment)
            bound.error("payment.capture_failed", error=e.message)
            raise
        except Exception:
            self._release_failed_capture(payment)
            logger.exception(f"Unexpected error capturing payment {payment.id}")
            raise

        payment.patient_paid = True
        payment.patient_paid_at = clock.now()
        payment.processor_reference = result.reference
        payment.status = models.PaymentStatus.COMPLETED
        self.db.commit()
        bound.info("payment.captured", amount=str(payment.appointment_price), reference=result.reference)

        appointment = payment.appointment
        self.db.refresh(appointment)
        if appointment.status == models.AppointmentStatus.CANCELLED:
            # Cancelled while the charge was in flight; its own refund saw an unpaid payment
            bound.warning("payment.captured_after_cancel")
            RefundEngine(self.db, self.gateway, self.notifier).handle_cancellation(
                appointment.id, "Appointment cancelled during payment capture"
            )
        elif appointment.status == models.AppointmentStatus.PENDING:
            try:
                AppointmentStateMachine(self.db, self.gateway, self.notifier).confirm(appointment.id)
            except InvalidTransition as e:
                bound.warning("payment.confirm_skipped", error=e.message)
        self.db.refresh(payment)
        return payment
