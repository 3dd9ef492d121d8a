import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from . import models
from .config import get_settings
from .errors import Forbidden
from .models import UserRole

security_logger = logging.getLogger("security")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CallerContext:
    """Identity resolved from the bearer token."""
    user_id: int
    role: UserRole
    doctor_id: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.admin


def create_access_token(
    user_id: int,
    role: UserRole,
    doctor_id: Optional[int] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create JWT access token"""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode = {
        "sub": str(user_id),
        "role": UserRole(role).value,
        "exp": expire,
        "type": "access",
        "iat": now,
        "jti": secrets.token_urlsafe(16),
    }
    if doctor_id is not None:
        to_encode["doctor_id"] = doctor_id
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> CallerContext:
    settings = get_settings()
    payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    if payload.get("type") != "access":
        raise JWTError("Not an access token")
    doctor_id = payload.get("doctor_id")
    return CallerContext(
        user_id=int(payload["sub"]),
        role=UserRole(payload["role"]),
        doctor_id=int(doctor_id) if doctor_id is not None else None,
    )


async def get_current_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CallerContext:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    try:
        return decode_access_token(credentials.credentials)
    except (JWTError, KeyError, ValueError) as e:
        security_logger.warning(f"Rejected bearer token: {e}")
        raise credentials_exception


async def require_admin(caller: CallerContext = Depends(get_current_caller)) -> CallerContext:
    if not caller.is_admin:
        raise Forbidden("You do not have permission to access this resource.")
    return caller


def ensure_can_manage_doctor(caller: CallerContext, doctor_id: int) -> None:
    """Doctors may only manage their own configuration; admins may manage any."""
    if caller.is_admin:
        return
    if caller.role == UserRole.doctor and caller.doctor_id == doctor_id:
        return
    raise Forbidden("You can only manage your own schedule")


def ensure_can_access_appointment(caller: CallerContext, appointment: models.Appointment) -> None:
    """Patients see their own appointments, doctors the ones assigned to them, admins all."""
    if caller.is_admin:
        return
    if caller.role == UserRole.patient and appointment.user_id == caller.user_id:
        return
    if caller.role == UserRole.doctor and caller.doctor_id is not None and appointment.doctor_id == caller.doctor_id:
        return
    raise Forbidden("You do not have access to this appointment")
