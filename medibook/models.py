# medibook/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, Time, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, Boolean, Numeric, Index, UniqueConstraint, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class UserRole(str, enum.Enum):
    patient = "patient"
    doctor = "doctor"
    admin = "admin"


class AppointmentStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_occupying(self) -> bool:
        return self is not AppointmentStatus.CANCELLED

    @property
    def is_terminal(self) -> bool:
        return self in (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED)


# Statuses that block a slot from being booked again
OCCUPYING_STATUSES = tuple(s for s in AppointmentStatus if s.is_occupying)


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    CAPTURING = "CAPTURING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUND_PENDING = "REFUND_PENDING"
    REFUNDED = "REFUNDED"
    REFUND_FAILED = "REFUND_FAILED"


class RefundStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    BOOK = "BOOK"
    RESCHEDULE = "RESCHEDULE"
    TRANSITION = "TRANSITION"
    REFUND = "REFUND"
    SETTINGS_UPDATE = "SETTINGS_UPDATE"


# ==================== Doctor configuration ====================

class Doctor(Base):
    """Doctor record as seen by the scheduling engine (profile CRUD lives elsewhere)."""
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, unique=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    speciality = Column(String(100), nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    availability = relationship("DoctorAvailability", back_populates="doctor", uselist=False)
    working_hours = relationship("WorkingHours", back_populates="doctor", order_by="WorkingHours.day_of_week")
    appointment_types = relationship("AppointmentType", back_populates="doctor")
    appointments = relationship("Appointment", back_populates="doctor")


class DoctorAvailability(Base):
    """Per-doctor slot grid and booking window settings"""
    __tablename__ = "doctor_availability"

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, unique=True)
    slot_duration_minutes = Column(Integer, nullable=False, default=30)
    booking_advance_days = Column(Integer, nullable=False, default=30)
    min_booking_hours = Column(Integer, nullable=False, default=24)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    doctor = relationship("Doctor", back_populates="availability")


class WorkingHours(Base):
    """Weekly working window, one row per doctor per weekday"""
    __tablename__ = "doctor_working_hours"
    __table_args__ = (
        UniqueConstraint('doctor_id', 'day_of_week', name='uq_doctor_day'),
    )

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0=Monday, 6=Sunday
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    is_working = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    doctor = relationship("Doctor", back_populates="working_hours")


class AppointmentType(Base):
    """Bookable service offered by a doctor"""
    __tablename__ = "appointment_types"
    __table_args__ = (
        Index('idx_appointment_types_doctor_active', 'doctor_id', 'is_active'),
    )

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    doctor = relationship("Doctor", back_populates="appointment_types")


# ==================== Appointments ====================

class Appointment(Base):
    """A booked slot on a doctor's daily grid"""
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_doctor_date', 'doctor_id', 'date'),
        Index('idx_appointments_user_date', 'user_id', 'date'),
        # At most one occupying appointment per doctor/date/time
        Index(
            'uq_appointments_occupied_slot', 'doctor_id', 'date', 'time',
            unique=True,
            postgresql_where=text("status != 'CANCELLED'"),
            sqlite_where=text("status != 'CANCELLED'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    user_id = Column(Integer, nullable=False, index=True)  # Patient
    appointment_type_id = Column(Integer, ForeignKey("appointment_types.id"), nullable=True)

    date = Column(Date, nullable=False)
    time = Column(String(5), nullable=False)  # HH:MM
    duration_minutes = Column(Integer, nullable=False, default=30)

    status = Column(
        SQLAlchemyEnum(AppointmentStatus, name='appointment_status'),
        default=AppointmentStatus.PENDING, nullable=False, index=True
    )
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    doctor = relationship("Doctor", back_populates="appointments")
    appointment_type = relationship("AppointmentType")
    payment = relationship("AppointmentPayment", back_populates="appointment", uselist=False)


# ==================== Settlement ====================

class AppointmentPayment(Base):
    """Patient payment and the platform/doctor split captured at creation"""
    __tablename__ = "appointment_payments"
    __table_args__ = (
        Index('idx_payments_doctor', 'doctor_id'),
        Index('idx_payments_review', 'needs_manual_review'),
    )

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, unique=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)

    appointment_price = Column(Numeric(10, 2), nullable=False)
    commission_percentage = Column(Numeric(5, 2), nullable=False)
    commission_amount = Column(Numeric(10, 2), nullable=False)
    doctor_payout_amount = Column(Numeric(10, 2), nullable=False)

    patient_paid = Column(Boolean, default=False, nullable=False)
    patient_paid_at = Column(DateTime(timezone=True), nullable=True)
    doctor_paid = Column(Boolean, default=False, nullable=False)
    processor_reference = Column(String(255), nullable=True)

    status = Column(SQLAlchemyEnum(PaymentStatus, name='payment_status'), default=PaymentStatus.PENDING, nullable=False)

    refunded = Column(Boolean, default=False, nullable=False)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    needs_manual_review = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    appointment = relationship("Appointment", back_populates="payment")
    refunds = relationship("PaymentRefund", back_populates="payment", order_by="PaymentRefund.id")


class PaymentRefund(Base):
    """One row per refund attempt against the payment processor"""
    __tablename__ = "payment_refunds"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("appointment_payments.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    commission_refund = Column(Numeric(10, 2), nullable=False)
    payout_reversal = Column(Numeric(10, 2), nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(SQLAlchemyEnum(RefundStatus, name='refund_status'), default=RefundStatus.PENDING, nullable=False)
    processor_refund_id = Column(String(255), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    payment = relationship("AppointmentPayment", back_populates="refunds")


class PlatformSettings(Base):
    """Singleton row holding the platform commission configuration"""
    __tablename__ = "platform_settings"

    id = Column(Integer, primary_key=True, index=True)
    commission_percentage = Column(Numeric(5, 2), nullable=False)
    min_commission = Column(Numeric(10, 2), nullable=True)
    max_commission = Column(Numeric(10, 2), nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class AuditLog(Base):
    """Audit trail written in the same transaction as the change it records"""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_user_date', 'user_id', 'timestamp'),
        Index('idx_audit_resource', 'resource_type', 'resource_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True)
    action = Column(SQLAlchemyEnum(AuditAction, name='audit_action'), nullable=False)
    category = Column(String(50), nullable=False, default="GENERAL", index=True)
    severity = Column(String(20), default="INFO", index=True)  # INFO, WARN, ERROR
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)
