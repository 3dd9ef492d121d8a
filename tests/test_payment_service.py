# tests/test_payment_service.py
import threading
from decimal import Decimal

import pytest

from medibook import models
from medibook.errors import DependencyFailure, NotFound, ValidationError
from medibook.models import AppointmentStatus, PaymentStatus
from medibook.services.appointment_state import AppointmentStateMachine
from medibook.services.booking_service import BookingService
from medibook.services.payment_service import PaymentLedger
from medibook.services.refund_service import RefundOutcome

from .conftest import NEXT_MONDAY, PATIENT_ID, FakeGateway


@pytest.fixture
def appointment(db, doctor, consultation, notifier):
    return BookingService(db, notifier).book_slot(doctor.id, NEXT_MONDAY, "09:00", consultation.id, PATIENT_ID)


@pytest.fixture
def ledger(db, gateway, notifier):
    return PaymentLedger(db, gateway, notifier)


def test_capture_confirms_pending_appointment(db, ledger, appointment, gateway, fixed_clock):
    ledger.create_payment(appointment.id)
    payment = ledger.capture_payment(appointment.id, "card_tok")

    assert payment.patient_paid is True
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.processor_reference == "pay_1"
    assert payment.patient_paid_at.replace(tzinfo=None) == fixed_clock
    assert gateway.idempotency_keys == [f"capture-{payment.id}-card_tok"]

    db.refresh(appointment)
    assert appointment.status == AppointmentStatus.CONFIRMED


def test_capture_is_idempotent_once_paid(ledger, appointment, gateway):
    ledger.create_payment(appointment.id)
    ledger.capture_payment(appointment.id, "card_tok")
    again = ledger.capture_payment(appointment.id, "card_tok")
    assert again.patient_paid is True
    assert len(gateway.captures) == 1


def test_capture_without_payment_row(ledger, appointment):
    with pytest.raises(NotFound):
        ledger.capture_payment(appointment.id, "card_tok")


def test_capture_after_cancel_never_charges(db, ledger, appointment, gateway, notifier):
    ledger.create_payment(appointment.id)
    cancelled = AppointmentStateMachine(db, gateway, notifier).cancel(appointment.id, reason="Changed plans")
    assert cancelled.refund.outcome == RefundOutcome.NO_REFUND_NEEDED

    with pytest.raises(ValidationError):
        ledger.capture_payment(appointment.id, "card_tok")

    assert gateway.captures == []
    payment = ledger.get_for_appointment(appointment.id)
    db.refresh(payment)
    assert payment.patient_paid is False
    assert payment.status == PaymentStatus.PENDING


def test_capture_after_completion_is_rejected(db, ledger, appointment, gateway, notifier):
    payment = ledger.create_payment(appointment.id)
    db.query(models.Appointment).filter(models.Appointment.id == appointment.id).update(
        {models.Appointment.status: AppointmentStatus.COMPLETED}, synchronize_session=False
    )
    db.commit()

    with pytest.raises(ValidationError):
        ledger.capture_payment(appointment.id, "card_tok")
    assert gateway.captures == []
    db.refresh(payment)
    assert payment.status == PaymentStatus.PENDING


def test_declined_capture_can_be_retried(db, ledger, appointment, gateway):
    ledger.create_payment(appointment.id)
    gateway.fail_capture = True
    with pytest.raises(DependencyFailure):
        ledger.capture_payment(appointment.id, "card_declined")

    payment = ledger.get_for_appointment(appointment.id)
    db.refresh(payment)
    assert payment.status == PaymentStatus.FAILED
    assert payment.patient_paid is False

    gateway.fail_capture = False
    payment = ledger.capture_payment(appointment.id, "card_ok")
    assert payment.status == PaymentStatus.COMPLETED
    assert gateway.captures == [(Decimal("100.00"), "card_ok")]


def test_capture_in_progress_is_not_repeated(db, ledger, appointment, gateway):
    payment = ledger.create_payment(appointment.id)
    payment.status = PaymentStatus.CAPTURING
    db.commit()

    with pytest.raises(ValidationError, match="already in progress"):
        ledger.capture_payment(appointment.id, "card_tok")
    assert gateway.captures == []


def test_concurrent_captures_charge_once(session_factory, ledger, appointment, gateway, notifier):
    ledger.create_payment(appointment.id)
    appointment_id = appointment.id
    gateway.capture_delay = 0.3

    workers = 2
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def attempt():
        session = session_factory()
        try:
            barrier.wait()
            try:
                PaymentLedger(session, gateway, notifier).capture_payment(appointment_id, "card_tok")
                outcome = "ok"
            except ValidationError:
                outcome = "rejected"
            with lock:
                results.append(outcome)
        finally:
            session.close()

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(results) == ["ok", "rejected"]
    assert gateway.captures == [(Decimal("100.00"), "card_tok")]

    session = session_factory()
    try:
        payment = PaymentLedger(session, gateway, notifier).get_for_appointment(appointment_id)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.patient_paid is True
    finally:
        session.close()


class CancellingGateway(FakeGateway):
    """Cancels the appointment from another session while the charge is in flight."""

    def __init__(self, cancel):
        super().__init__()
        self.cancel = cancel

    def capture_payment(self, amount, payer_ref, idempotency_key=None):
        self.cancel()
        return super().capture_payment(amount, payer_ref, idempotency_key)


def test_capture_landing_after_cancel_is_refunded(db, session_factory, appointment, notifier):
    appointment_id = appointment.id
    outcomes = []

    def cancel_elsewhere():
        session = session_factory()
        try:
            result = AppointmentStateMachine(session, gateway, notifier).cancel(appointment_id)
            outcomes.append(result.refund.outcome)
        finally:
            session.close()

    gateway = CancellingGateway(cancel_elsewhere)
    ledger = PaymentLedger(db, gateway, notifier)
    ledger.create_payment(appointment_id)

    payment = ledger.capture_payment(appointment_id, "card_tok")

    assert outcomes == [RefundOutcome.NO_REFUND_NEEDED]
    assert gateway.captures == [(Decimal("100.00"), "card_tok")]
    assert gateway.refunds == [("pay_1", Decimal("100.00"))]
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refunded is True
    db.refresh(appointment)
    assert appointment.status == AppointmentStatus.CANCELLED
