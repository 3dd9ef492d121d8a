# tests/conftest.py
import os
import threading
import time as time_module
from datetime import date, datetime, time
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-the-medibook-suite-0123456789")
os.environ.pop("PAYMENT_GATEWAY_URL", None)
os.environ.pop("SENDGRID_API_KEY", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from medibook import clock, models
from medibook.database import build_engine, create_tables, get_db
from medibook.errors import DependencyFailure
from medibook.main import app
from medibook.models import UserRole
from medibook.security import create_access_token
from medibook.services.notification_service import NotificationDispatcher, get_notifier
from medibook.services.payment_gateway import GatewayResult, PaymentGateway, get_payment_gateway

# Monday 2030-01-07 10:00 in the clinic clock
FIXED_NOW = datetime(2030, 1, 7, 10, 0)
TODAY = FIXED_NOW.date()
TOMORROW = date(2030, 1, 8)
NEXT_MONDAY = date(2030, 1, 14)
NEXT_SATURDAY = date(2030, 1, 12)

PATIENT_ID = 100
OTHER_PATIENT_ID = 101
DOCTOR_USER_ID = 200
ADMIN_ID = 1


class RecordingNotifier(NotificationDispatcher):
    """Runs synchronously and keeps every emitted event."""

    def __init__(self):
        super().__init__(handlers=[])
        self.events = []
        self._lock = threading.Lock()

    def emit(self, event, payload):
        with self._lock:
            self.events.append((event, payload))

    def names(self):
        return [name for name, _ in self.events]


class FakeGateway(PaymentGateway):
    def __init__(self):
        self.fail_capture = False
        self.fail_refund = False
        self.refund_delay = 0.0
        self.capture_delay = 0.0
        self.captures = []
        self.refunds = []
        self.idempotency_keys = []

    def capture_payment(self, amount, payer_ref, idempotency_key=None):
        self.idempotency_keys.append(idempotency_key)
        if self.capture_delay:
            time_module.sleep(self.capture_delay)
        if self.fail_capture:
            raise DependencyFailure("card declined")
        self.captures.append((amount, payer_ref))
        return GatewayResult(reference=f"pay_{len(self.captures)}")

    def refund(self, payment_ref, amount, idempotency_key=None):
        self.idempotency_keys.append(idempotency_key)
        if self.refund_delay:
            time_module.sleep(self.refund_delay)
        if self.fail_refund:
            raise DependencyFailure("processor unavailable")
        self.refunds.append((payment_ref, amount))
        return GatewayResult(reference=f"re_{len(self.refunds)}")


@pytest.fixture(autouse=True)
def fixed_clock(monkeypatch):
    monkeypatch.setattr(clock, "now", lambda: FIXED_NOW)
    return FIXED_NOW


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'medibook-test.db'}")
    create_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def doctor(db):
    """Verified doctor working Monday-Friday 09:00-12:00 with default availability rules."""
    doc = models.Doctor(
        user_id=DOCTOR_USER_ID,
        name="Dr. Test",
        email="doctor@example.com",
        speciality="General Practice",
        is_verified=True,
    )
    db.add(doc)
    db.flush()
    for day in range(7):
        working = day < 5
        db.add(models.WorkingHours(
            doctor_id=doc.id,
            day_of_week=day,
            start_time=time(9, 0) if working else None,
            end_time=time(12, 0) if working else None,
            is_working=working,
        ))
    db.commit()
    db.refresh(doc)
    return doc


@pytest.fixture
def consultation(db, doctor):
    appointment_type = models.AppointmentType(
        doctor_id=doctor.id, name="Consultation", duration_minutes=30, price=Decimal("100.00")
    )
    db.add(appointment_type)
    db.commit()
    db.refresh(appointment_type)
    return appointment_type


@pytest.fixture
def long_visit(db, doctor):
    appointment_type = models.AppointmentType(
        doctor_id=doctor.id, name="Extended visit", duration_minutes=60, price=Decimal("150.00")
    )
    db.add(appointment_type)
    db.commit()
    db.refresh(appointment_type)
    return appointment_type


@pytest.fixture
def unverified_doctor(db):
    doc = models.Doctor(user_id=201, name="Dr. Pending", email="pending@example.com", is_verified=False)
    db.add(doc)
    db.commit()
    db.refresh(doc)
    return doc


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(session_factory, gateway, notifier):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user_id, role, doctor_id=None):
    return {"Authorization": f"Bearer {create_access_token(user_id, role, doctor_id=doctor_id)}"}


@pytest.fixture
def patient_headers():
    return auth_headers(PATIENT_ID, UserRole.patient)


@pytest.fixture
def other_patient_headers():
    return auth_headers(OTHER_PATIENT_ID, UserRole.patient)


@pytest.fixture
def doctor_headers(doctor):
    return auth_headers(DOCTOR_USER_ID, UserRole.doctor, doctor_id=doctor.id)


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN_ID, UserRole.admin)
