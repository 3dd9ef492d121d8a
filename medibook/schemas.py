# medibook/schemas.py
from datetime import datetime, date, time
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from .models import AppointmentStatus, PaymentStatus, RefundStatus

TIME_PATTERN = r"^([01]\d|2[0-3]):([0-5]\d)$"


# --- Base Schemas ---
class BaseSchema(BaseModel):
    class Config:
        from_attributes = True


# --- Working Hours Schemas ---
class WorkingHoursBase(BaseSchema):
    day_of_week: int = Field(..., ge=0, le=6, description="0=Monday, 6=Sunday")
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    is_working: bool = False

    @model_validator(mode="after")
    def check_window(self):
        if self.is_working:
            if self.start_time is None or self.end_time is None:
                raise ValueError("start_time and end_time are required on working days")
            if self.start_time >= self.end_time:
                raise ValueError("start_time must be before end_time")
        return self


class WorkingHoursUpdate(BaseSchema):
    working_hours: List[WorkingHoursBase]

    @field_validator("working_hours")
    @classmethod
    def unique_days(cls, v):
        days = [wh.day_of_week for wh in v]
        if len(days) != len(set(days)):
            raise ValueError("Each day_of_week may appear only once")
        return v


class WorkingHoursResponse(WorkingHoursBase):
    id: int
    doctor_id: int


# --- Availability Schemas ---
class AvailabilityBase(BaseSchema):
    slot_duration_minutes: int = Field(30, ge=5, le=240)
    booking_advance_days: int = Field(30, ge=1, le=365)
    min_booking_hours: int = Field(24, ge=0, le=168)


class AvailabilityUpdate(BaseSchema):
    slot_duration_minutes: Optional[int] = Field(None, ge=5, le=240)
    booking_advance_days: Optional[int] = Field(None, ge=1, le=365)
    min_booking_hours: Optional[int] = Field(None, ge=0, le=168)


class AvailabilityResponse(AvailabilityBase):
    doctor_id: int


# --- Appointment Type Schemas ---
class AppointmentTypeCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    duration_minutes: int = Field(..., ge=5, le=480)
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)


class AppointmentTypeUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    duration_minutes: Optional[int] = Field(None, ge=5, le=480)
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    is_active: Optional[bool] = None


class AppointmentTypeResponse(BaseSchema):
    id: int
    doctor_id: int
    name: str
    description: Optional[str] = None
    duration_minutes: int
    price: Optional[Decimal] = None
    is_active: bool


# --- Slot Schemas ---
class SlotDetail(BaseSchema):
    time: str
    available: bool
    reason: str


# --- Appointment Schemas ---
class AppointmentCreate(BaseSchema):
    doctor_id: int
    date: date
    time: str = Field(..., pattern=TIME_PATTERN)
    appointment_type_id: int
    reason: Optional[str] = Field(None, max_length=1000)


class AppointmentReschedule(BaseSchema):
    date: date
    time: str = Field(..., pattern=TIME_PATTERN)


class AppointmentStatusUpdate(BaseSchema):
    status: AppointmentStatus
    reason: Optional[str] = Field(None, max_length=1000)


class AppointmentCancel(BaseSchema):
    reason: Optional[str] = Field(None, max_length=1000)


class AppointmentResponse(BaseSchema):
    id: int
    doctor_id: int
    user_id: int
    appointment_type_id: Optional[int] = None
    date: date
    time: str
    duration_minutes: int
    status: AppointmentStatus
    reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


# --- Settlement Schemas ---
class RefundResultResponse(BaseSchema):
    outcome: str
    amount: Decimal = Decimal("0.00")
    commission_refund: Decimal = Decimal("0.00")
    payout_reversal: Decimal = Decimal("0.00")
    payment_id: Optional[int] = None
    error: Optional[str] = None


class CancellationResponse(BaseSchema):
    appointment: AppointmentResponse
    refund: Optional[RefundResultResponse] = None


class PaymentCreate(BaseSchema):
    appointment_id: int


class PaymentCapture(BaseSchema):
    payer_ref: str = Field(..., min_length=1, max_length=255)


class PaymentRefundResponse(BaseSchema):
    id: int
    payment_id: int
    amount: Decimal
    status: RefundStatus
    processor_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class PaymentResponse(BaseSchema):
    id: int
    appointment_id: int
    doctor_id: int
    appointment_price: Decimal
    commission_percentage: Decimal
    commission_amount: Decimal
    doctor_payout_amount: Decimal
    patient_paid: bool
    patient_paid_at: Optional[datetime] = None
    doctor_paid: bool
    status: PaymentStatus
    refunded: bool
    refund_amount: Optional[Decimal] = None
    needs_manual_review: bool
    refunds: List[PaymentRefundResponse] = []


# --- Commission Settings Schemas ---
class CommissionSettingsResponse(BaseSchema):
    commission_percentage: Decimal
    min_commission: Optional[Decimal] = None
    max_commission: Optional[Decimal] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[int] = None


class CommissionSettingsUpdate(BaseSchema):
    commission_percentage: Decimal
    min_commission: Optional[Decimal] = None
    max_commission: Optional[Decimal] = None


# --- Health ---
class HealthResponse(BaseSchema):
    status: str
    version: str
    database: str
