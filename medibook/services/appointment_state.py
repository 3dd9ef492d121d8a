# medibook/services/appointment_state.py
"""Appointment status state machine.

    PENDING ──> CONFIRMED ──> COMPLETED
       │            │
       └────────────┴──> CANCELLED

COMPLETED and CANCELLED are terminal. Every transition is a conditional
UPDATE on (id, current status in allowed sources), so of two racing
transitions exactly one applies and the other sees InvalidTransition.
"""
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy.orm import Session

from .. import models
from ..compliance_logger import compliance_logger
from ..errors import InvalidTransition, NotFound, ValidationError
from .booking_service import notification_payload
from .notification_service import NotificationDispatcher
from .payment_gateway import PaymentGateway
from .refund_service import RefundEngine, RefundOutcome, RefundResult

logger = logging.getLogger(__name__)

Status = models.AppointmentStatus

ALLOWED_TRANSITIONS: Dict[Status, FrozenSet[Status]] = {
    Status.PENDING: frozenset({Status.CONFIRMED, Status.CANCELLED}),
    Status.CONFIRMED: frozenset({Status.COMPLETED, Status.CANCELLED}),
    Status.COMPLETED: frozenset(),
    Status.CANCELLED: frozenset(),
}


def allowed_sources(target: Status) -> List[Status]:
    return [source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets]


def can_transition(current: Status, target: Status) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass
class CancellationResult:
    appointment: models.Appointment
    refund: RefundResult


class AppointmentStateMachine:
    def __init__(self, db: Session, gateway: PaymentGateway, notifier: NotificationDispatcher):
        self.db = db
        self.notifier = notifier
        self.refunds = RefundEngine(db, gateway, notifier)

    def get(self, appointment_id: int) -> models.Appointment:
        appointment = self.db.query(models.Appointment).filter(models.Appointment.id == appointment_id).first()
        if not appointment:
            raise NotFound(f"Appointment {appointment_id} not found")
        return appointment

    def _apply(
        self,
        appointment: models.Appointment,
        target: Status,
        user_id: Optional[int] = None,
        extra: Optional[dict] = None,
    ) -> bool:
        """Conditional UPDATE; returns False when the appointment was not in an allowed source status."""
        old_status = appointment.status
        values = {models.Appointment.status: target}
        for column, value in (extra or {}).items():
            values[getattr(models.Appointment, column)] = value
        try:
            updated = self.db.query(models.Appointment).filter(
                models.Appointment.id == appointment.id,
                models.Appointment.status.in_(allowed_sources(target)),
            ).update(values, synchronize_session=False)
            if updated == 0:
                self.db.rollback()
                self.db.refresh(appointment)
                return False
            compliance_logger.log_transition(self.db, appointment, old_status, target, user_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(appointment)
        logger.info(f"Appointment {appointment.id}: {old_status.value} -> {target.value}")
        return True

    def _reject(self, appointment: models.Appointment, target: Status):
        raise InvalidTransition(
            f"Cannot change appointment status from {appointment.status.value} to {target.value}"
        )

    def confirm(self, appointment_id: int, user_id: Optional[int] = None) -> models.Appointment:
        appointment = self.get(appointment_id)
        if not can_transition(appointment.status, Status.CONFIRMED):
            self._reject(appointment, Status.CONFIRMED)
        if appointment.payment is not None and not appointment.payment.patient_paid:
            raise ValidationError("Cannot confirm appointment until the patient has paid")
        if not self._apply(appointment, Status.CONFIRMED, user_id):
            self._reject(appointment, Status.CONFIRMED)
        self.notifier.emit("appointment.confirmed", notification_payload(appointment))
        return appointment

    def complete(self, appointment_id: int, user_id: Optional[int] = None) -> models.Appointment:
        appointment = self.get(appointment_id)
        if not can_transition(appointment.status, Status.COMPLETED):
            self._reject(appointment, Status.COMPLETED)
        if not self._apply(appointment, Status.COMPLETED, user_id):
            self._reject(appointment, Status.COMPLETED)
        return appointment

    def cancel(
        self,
        appointment_id: int,
        reason: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> CancellationResult:
        """Cancel, commit, then run the refund. Refund failures come back in the result."""
        appointment = self.get(appointment_id)
        if appointment.status == Status.CANCELLED:
            return CancellationResult(appointment, RefundResult.no_refund_needed())
        if not can_transition(appointment.status, Status.CANCELLED):
            self._reject(appointment, Status.CANCELLED)

        note = f"Cancelled: {reason}" if reason else "Cancelled"
        notes = f"{appointment.notes}\n{note}" if appointment.notes else note
        if not self._apply(appointment, Status.CANCELLED, user_id, {"notes": notes}):
            if appointment.status == Status.CANCELLED:
                return CancellationResult(appointment, RefundResult.no_refund_needed())
            self._reject(appointment, Status.CANCELLED)

        try:
            refund = self.refunds.handle_cancellation(appointment.id, reason)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Refund handling crashed for cancelled appointment {appointment.id}")
            refund = RefundResult(outcome=RefundOutcome.FAILED, error=str(e))
            try:
                self.refunds.flag_for_review(appointment.id, str(e))
            except Exception:
                self.db.rollback()
                logger.exception(f"Could not flag payment of appointment {appointment.id} for review")

        self.db.refresh(appointment)
        payload = notification_payload(appointment)
        payload["reason"] = reason
        payload["refund_outcome"] = refund.outcome.value
        self.notifier.emit("appointment.cancelled", payload)
        return CancellationResult(appointment, refund)

    def transition(
        self,
        appointment_id: int,
        target: Status,
        reason: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> models.Appointment:
        if target == Status.CONFIRMED:
            return self.confirm(appointment_id, user_id)
        if target == Status.COMPLETED:
            return self.complete(appointment_id, user_id)
        if target == Status.CANCELLED:
            return self.cancel(appointment_id, reason, user_id).appointment
        raise InvalidTransition(f"Cannot change appointment status to {target.value}")
