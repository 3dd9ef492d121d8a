"""
Fire-and-forget notifications for appointment lifecycle events.

Handlers run on a background thread pool. A handler failure is logged and
never reaches the code path that emitted the event.
"""
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..config import get_settings
from .email_service import EmailService

logger = logging.getLogger(__name__)

Handler = Callable[[str, Dict[str, Any]], None]

EVENT_SUBJECTS = {
    "appointment.booked": "New appointment booked",
    "appointment.confirmed": "Appointment confirmed",
    "appointment.cancelled": "Appointment cancelled",
    "appointment.rescheduled": "Appointment rescheduled",
    "refund.failed": "Refund failed - manual review required",
}


def logging_handler(event: str, payload: Dict[str, Any]) -> None:
    logger.info(f"Notification {event}: {payload}")


class EmailNotificationHandler:
    """Emails the doctor (or ops address for refund failures) through SendGrid."""

    def __init__(self, email_service: EmailService, ops_email: Optional[str] = None):
        self.email_service = email_service
        self.ops_email = ops_email

    def __call__(self, event: str, payload: Dict[str, Any]) -> None:
        if event == "refund.failed":
            recipient = self.ops_email
        else:
            recipient = payload.get("doctor_email")
        if not recipient:
            return
        subject = EVENT_SUBJECTS.get(event, event)
        lines = [f"{key}: {value}" for key, value in sorted(payload.items()) if key != "doctor_email"]
        self.email_service.send_email(recipient, subject, "\n".join(lines))


class NotificationDispatcher:
    def __init__(self, handlers: Iterable[Handler], executor: Optional[Executor] = None):
        self.handlers: List[Handler] = list(handlers)
        self.executor = executor

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        """Schedule every handler for the event. Never raises."""
        for handler in self.handlers:
            try:
                if self.executor is None:
                    self._run(handler, event, payload)
                else:
                    self.executor.submit(self._run, handler, event, payload)
            except Exception as e:
                logger.error(f"Could not schedule notification {event}: {e}")

    @staticmethod
    def _run(handler: Handler, event: str, payload: Dict[str, Any]) -> None:
        try:
            handler(event, payload)
        except Exception:
            logger.exception(f"Notification handler failed for {event}")


@lru_cache()
def get_notifier() -> NotificationDispatcher:
    settings = get_settings()
    handlers: List[Handler] = [logging_handler]
    if settings.email_enabled:
        handlers.append(EmailNotificationHandler(EmailService(), ops_email=settings.sender_email))
    executor = ThreadPoolExecutor(max_workers=settings.notification_workers, thread_name_prefix="notify")
    return NotificationDispatcher(handlers, executor)
