# medibook/services/commission_service.py
"""Platform commission policy.

The commission rate lives in a single PlatformSettings row. Every computation
reads an immutable snapshot first, and the rate that was used is stored on the
payment so later edits never change an existing split.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from .. import models
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..errors import ValidationError

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CommissionSnapshot:
    commission_percentage: Decimal
    min_commission: Optional[Decimal] = None
    max_commission: Optional[Decimal] = None


@dataclass(frozen=True)
class CommissionSplit:
    gross: Decimal
    commission_percentage: Decimal
    commission_amount: Decimal
    doctor_payout_amount: Decimal


def get_or_create_settings_row(db: Session, for_update: bool = False) -> models.PlatformSettings:
    query = db.query(models.PlatformSettings).order_by(models.PlatformSettings.id)
    if for_update:
        query = query.with_for_update()
    row = query.first()
    if row is None:
        row = models.PlatformSettings(
            commission_percentage=get_settings().default_commission_percentage,
        )
        db.add(row)
        db.flush()
        logger.info(f"Created platform settings with default commission {row.commission_percentage}%")
    return row


def current_settings(db: Session) -> CommissionSnapshot:
    """Snapshot of the commission configuration in effect right now."""
    row = get_or_create_settings_row(db)
    snapshot = CommissionSnapshot(
        commission_percentage=Decimal(row.commission_percentage),
        min_commission=Decimal(row.min_commission) if row.min_commission is not None else None,
        max_commission=Decimal(row.max_commission) if row.max_commission is not None else None,
    )
    return snapshot


def compute_split(gross_price, snapshot: CommissionSnapshot) -> CommissionSplit:
    gross = to_money(gross_price)
    commission = gross * snapshot.commission_percentage / Decimal(100)
    if snapshot.min_commission is not None and commission < snapshot.min_commission:
        commission = snapshot.min_commission
    if snapshot.max_commission is not None and commission > snapshot.max_commission:
        commission = snapshot.max_commission
    commission = min(to_money(commission), gross)
    return CommissionSplit(
        gross=gross,
        commission_percentage=snapshot.commission_percentage,
        commission_amount=commission,
        doctor_payout_amount=gross - commission,
    )


def refund_split(payment: models.AppointmentPayment, refund_amount) -> Tuple[Decimal, Decimal]:
    """(commission_refund, payout_reversal) for a refund, at the rate stored on the payment."""
    amount = to_money(refund_amount)
    price = Decimal(payment.appointment_price)
    if amount == price:
        commission_refund = Decimal(payment.commission_amount)
    elif price == 0:
        commission_refund = Decimal("0.00")
    else:
        commission_refund = to_money(amount * Decimal(payment.commission_amount) / price)
    return commission_refund, amount - commission_refund


def _validate(percentage: Decimal, min_commission: Optional[Decimal], max_commission: Optional[Decimal]) -> None:
    settings = get_settings()
    if not settings.commission_percentage_min <= percentage <= settings.commission_percentage_max:
        raise ValidationError(
            f"Commission percentage must be between {settings.commission_percentage_min} "
            f"and {settings.commission_percentage_max}"
        )
    for label, value in (("min_commission", min_commission), ("max_commission", max_commission)):
        if value is not None and value < 0:
            raise ValidationError(f"{label} cannot be negative")
    if min_commission is not None and max_commission is not None and min_commission > max_commission:
        raise ValidationError("min_commission cannot exceed max_commission")


def update_commission_settings(
    db: Session,
    commission_percentage,
    min_commission=None,
    max_commission=None,
    updated_by: Optional[int] = None,
) -> models.PlatformSettings:
    """Admin update path. Existing payments keep the rate they were created with."""
    percentage = Decimal(commission_percentage)
    min_value = to_money(min_commission) if min_commission is not None else None
    max_value = to_money(max_commission) if max_commission is not None else None
    _validate(percentage, min_value, max_value)

    try:
        row = get_or_create_settings_row(db, for_update=True)
        old = row.commission_percentage
        row.commission_percentage = percentage
        row.min_commission = min_value
        row.max_commission = max_value
        row.updated_by = updated_by
        compliance_logger.log_event(
            db=db,
            user_id=updated_by,
            action=models.AuditAction.SETTINGS_UPDATE,
            category='SETTLEMENT',
            resource_type='PlatformSettings',
            resource_id=row.id,
            details=f"Commission {old}% -> {percentage}% (min={min_value}, max={max_value})",
        )
        db.commit()
        db.refresh(row)
    except Exception:
        db.rollback()
        raise
    logger.info(f"Commission updated to {percentage}% by user {updated_by}")
    return row
