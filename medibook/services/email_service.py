import logging
from typing import Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from ..config import get_settings

logger = logging.getLogger(__name__)


class EmailService:
    def __init__(self, api_key: Optional[str] = None, sender_email: Optional[str] = None):
        settings = get_settings()
        self.sendgrid_api_key = api_key or settings.sendgrid_api_key
        self.sender_email = sender_email or settings.sender_email
        self.enabled = bool(self.sendgrid_api_key)

        if not self.enabled:
            logger.warning("SENDGRID_API_KEY not found - Email service disabled")
            self.sg = None
        else:
            self.sg = SendGridAPIClient(api_key=self.sendgrid_api_key)

    def send_email(self, to_email: str, subject: str, body: str) -> bool:
        """Send a plain notification email. Returns False when disabled or rejected."""
        if not self.enabled:
            logger.info(f"Email disabled, skipping '{subject}' to {to_email}")
            return False

        message = Mail(
            from_email=self.sender_email,
            to_emails=to_email,
            subject=subject,
            plain_text_content=body,
        )
        response = self.sg.send(message)
        if response.status_code >= 400:
            logger.error(f"SendGrid rejected '{subject}' to {to_email}: {response.status_code}")
            return False
        logger.info(f"Email '{subject}' sent to {to_email}")
        return True
