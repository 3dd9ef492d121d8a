# medibook/services/refund_service.py
"""Refund on cancellation.

A refund is a compensating operation that runs after the cancellation has
been committed. The payment is first claimed (status REFUND_PENDING) with a
conditional UPDATE so two callers can never refund it twice, then the
processor is called with a bounded wait. Once a payment is claimed, any
failure (processor or bookkeeping) is recorded, flagged for manual
reconciliation and returned to the caller. The processor sees one stable
idempotency key per payment, so a retry after a lost response cannot refund
twice.
"""
import enum
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .. import clock, models
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..errors import DependencyFailure, NotFound, ValidationError
from .commission_service import refund_split, to_money
from .notification_service import NotificationDispatcher
from .payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)
log = structlog.get_logger(__name__)

ZERO = Decimal("0.00")

RETRYABLE_STATUSES = (models.PaymentStatus.REFUND_FAILED, models.PaymentStatus.REFUND_PENDING)

_processor_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="refund")


class RefundOutcome(str, enum.Enum):
    NO_REFUND_NEEDED = "NO_REFUND_NEEDED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


@dataclass
class RefundResult:
    outcome: RefundOutcome
    amount: Decimal = ZERO
    commission_refund: Decimal = ZERO
    payout_reversal: Decimal = ZERO
    payment_id: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def no_refund_needed(cls, payment_id: Optional[int] = None) -> "RefundResult":
        return cls(outcome=RefundOutcome.NO_REFUND_NEEDED, payment_id=payment_id)


class RefundEngine:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        notifier: NotificationDispatcher,
        timeout: Optional[float] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.timeout = timeout if timeout is not None else get_settings().payment_timeout_seconds

    def handle_cancellation(self, appointment_id: int, reason: Optional[str] = None) -> RefundResult:
        """Decide and execute the refund for a cancelled appointment."""
        payment = self.db.query(models.AppointmentPayment).filter(
            models.AppointmentPayment.appointment_id == appointment_id
        ).first()
        if payment is None or not payment.patient_paid or payment.refunded:
            return RefundResult.no_refund_needed(payment.id if payment else None)
        return self._execute(payment, reason, (models.PaymentStatus.COMPLETED,))

    def retry_refund(self, payment_id: int) -> RefundResult:
        """Re-run a refund that failed, or one left REFUND_PENDING by a crashed worker."""
        payment = self.db.query(models.AppointmentPayment).filter(
            models.AppointmentPayment.id == payment_id
        ).first()
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found")
        if payment.status not in RETRYABLE_STATUSES:
            raise ValidationError(f"Only failed or stalled refunds can be retried (payment is {payment.status.value})")
        return self._execute(payment, payment.refund_reason, RETRYABLE_STATUSES)

    def pending_reconciliation(self) -> List[models.AppointmentPayment]:
        return self.db.query(models.AppointmentPayment).filter(or_(
            models.AppointmentPayment.needs_manual_review.is_(True),
            models.AppointmentPayment.status == models.PaymentStatus.REFUND_PENDING,
        )).order_by(models.AppointmentPayment.id).all()

    def _claim(self, payment: models.AppointmentPayment, sources: Sequence[models.PaymentStatus]) -> bool:
        claimed = self.db.query(models.AppointmentPayment).filter(
            models.AppointmentPayment.id == payment.id,
            models.AppointmentPayment.refunded.is_(False),
            models.AppointmentPayment.status.in_(sources),
        ).update(
            {models.AppointmentPayment.status: models.PaymentStatus.REFUND_PENDING},
            synchronize_session=False,
        )
        self.db.commit()
        self.db.refresh(payment)
        return claimed == 1

    def _call_processor(self, payment: models.AppointmentPayment, amount: Decimal):
        future = _processor_pool.submit(
            self.gateway.refund, payment.processor_reference, amount, idempotency_key=f"refund-{payment.id}"
        )
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeout:
            future.cancel()
            raise DependencyFailure(f"Refund call timed out after {self.timeout}s")

    def _execute(
        self,
        payment: models.AppointmentPayment,
        reason: Optional[str],
        sources: Sequence[models.PaymentStatus],
    ) -> RefundResult:
        bound = log.bind(appointment_id=payment.appointment_id, payment_id=payment.id)

        if not self._claim(payment, sources):
            bound.info("refund.skipped", status=payment.status.value, refunded=payment.refunded)
            return RefundResult.no_refund_needed(payment.id)

        try:
            amount = to_money(payment.appointment_price)
            commission_refund, payout_reversal = refund_split(payment, amount)
            attempt = models.PaymentRefund(
                payment_id=payment.id,
                amount=amount,
                commission_refund=commission_refund,
                payout_reversal=payout_reversal,
                reason=reason,
                status=models.RefundStatus.PENDING,
            )
            payment.refund_reason = reason
            self.db.add(attempt)
            self.db.commit()
        except Exception as e:
            # The claim is already committed; leaving it REFUND_PENDING would hide the payment
            self.db.rollback()
            logger.exception(f"Could not prepare refund for payment {payment.id}")
            return self._record_failure(
                payment, None, payment.appointment_price, f"Refund preparation failed: {e}", bound
            )

        try:
            processor_result = self._call_processor(payment, amount)
        except DependencyFailure as e:
            return self._record_failure(payment, attempt, amount, e.message, bound)
        except Exception as e:
            logger.exception(f"Unexpected error refunding payment {payment.id}")
            return self._record_failure(payment, attempt, amount, f"Unexpected processor error: {e}", bound)

        payment.refunded = True
        payment.refund_amount = amount
        payment.refunded_at = clock.now()
        payment.status = models.PaymentStatus.REFUNDED
        # A paid-out doctor needs a payout clawback that only ops can perform
        payment.needs_manual_review = bool(payment.doctor_paid)
        attempt.status = models.RefundStatus.COMPLETED
        attempt.processor_refund_id = processor_result.reference
        compliance_logger.log_event(
            db=self.db,
            user_id=None,
            action=models.AuditAction.REFUND,
            category='SETTLEMENT',
            resource_type='AppointmentPayment',
            resource_id=payment.id,
            details=f"Refunded {amount} (commission {commission_refund}, payout {payout_reversal})",
        )
        self.db.commit()
        bound.info("refund.completed", amount=str(amount), processor_refund_id=processor_result.reference,
                   needs_manual_review=payment.needs_manual_review)
        return RefundResult(
            outcome=RefundOutcome.REFUNDED,
            amount=amount,
            commission_refund=commission_refund,
            payout_reversal=payout_reversal,
            payment_id=payment.id,
        )

    def flag_for_review(self, appointment_id: int, error: str) -> bool:
        """Flag a paid, unrefunded payment whose refund never got recorded.

        Used when the refund path itself crashed after the appointment was
        cancelled. The payment becomes REFUND_FAILED so it shows up for
        reconciliation and can be retried.
        """
        flagged = self.db.query(models.AppointmentPayment).filter(
            models.AppointmentPayment.appointment_id == appointment_id,
            models.AppointmentPayment.patient_paid.is_(True),
            models.AppointmentPayment.refunded.is_(False),
            models.AppointmentPayment.status.in_((models.PaymentStatus.COMPLETED, models.PaymentStatus.REFUND_PENDING)),
        ).update(
            {
                models.AppointmentPayment.status: models.PaymentStatus.REFUND_FAILED,
                models.AppointmentPayment.needs_manual_review: True,
            },
            synchronize_session=False,
        )
        self.db.commit()
        if flagged:
            log.error("refund.flagged", appointment_id=appointment_id, error=error)
            self.notifier.emit("refund.failed", {"appointment_id": appointment_id, "error": error})
        return flagged == 1

    def _record_failure(self, payment, attempt, amount: Decimal, error: str, bound) -> RefundResult:
        payment.status = models.PaymentStatus.REFUND_FAILED
        payment.needs_manual_review = True
        if attempt is not None:
            attempt.status = models.RefundStatus.FAILED
            attempt.failure_reason = error
        compliance_logger.log_event(
            db=self.db,
            user_id=None,
            action=models.AuditAction.REFUND,
            category='SETTLEMENT',
            severity='ERROR',
            resource_type='AppointmentPayment',
            resource_id=payment.id,
            details=f"Refund of {amount} failed: {error}",
        )
        self.db.commit()
        bound.error("refund.failed", amount=str(amount), error=error)
        self.notifier.emit("refund.failed", {
            "appointment_id": payment.appointment_id,
            "payment_id": payment.id,
            "amount": str(amount),
            "error": error,
        })
        return RefundResult(
            outcome=RefundOutcome.FAILED,
            amount=amount,
            payment_id=payment.id,
            error=error,
        )
