import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger(__name__)


class ComplianceLogger:
	"""Writes audit rows into the caller's session so they commit or roll back with the change."""

	def __init__(self, institution_id: str = 'MEDIBOOK'):
		self.institution_id = institution_id

	def log_event(
		self,
		db: Session,
		user_id: Optional[int],
		action: models.AuditAction,
		category: str,
		details: Optional[str] = None,
		severity: str = 'INFO',
		resource_type: Optional[str] = None,
		resource_id: Optional[int] = None,
	) -> models.AuditLog:
		"""Adds an AuditLog row to the session. Does NOT commit."""
		entry = models.AuditLog(
			user_id=user_id,
			action=action,
			category=category or 'GENERAL',
			severity=severity or 'INFO',
			resource_type=resource_type,
			resource_id=resource_id,
			details=details,
		)
		db.add(entry)
		logger.debug(f"[{self.institution_id}] audit {action.value} {resource_type}:{resource_id} - {details}")
		return entry

	def log_transition(
		self,
		db: Session,
		appointment: models.Appointment,
		old_status: models.AppointmentStatus,
		new_status: models.AppointmentStatus,
		user_id: Optional[int] = None,
	) -> models.AuditLog:
		return self.log_event(
			db=db,
			user_id=user_id,
			action=models.AuditAction.TRANSITION,
			category='APPOINTMENT',
			resource_type='Appointment',
			resource_id=appointment.id,
			details=f"Status {old_status.value} -> {new_status.value}",
		)


# Singleton instance for global import
compliance_logger = ComplianceLogger()
