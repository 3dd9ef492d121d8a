# medibook/routers/settings.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..security import CallerContext, require_admin
from ..services import commission_service

router = APIRouter(
    prefix="/admin/settings",
    tags=["Admin Settings"],
)

@router.get("/commission", response_model=schemas.CommissionSettingsResponse)
def read_commission_settings(db: Session = Depends(get_db), caller: CallerContext = Depends(require_admin)):
    row = commission_service.get_or_create_settings_row(db)
    # first read creates the default row
    db.commit()
    db.refresh(row)
    return row

@router.put("/commission", response_model=schemas.CommissionSettingsResponse)
def update_commission_settings(
    payload: schemas.CommissionSettingsUpdate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(require_admin),
):
    """New rate applies to payments created from now on; existing splits are untouched."""
    return commission_service.update_commission_settings(
        db,
        payload.commission_percentage,
        min_commission=payload.min_commission,
        max_commission=payload.max_commission,
        updated_by=caller.user_id,
    )
