from __future__ import annotations

from html import escape
from typing import Any, Dict, Optional, Protocol

from enrollment.core.logger import get_logger
from enrollment.integrations.email import EmailService

logger = get_logger(__name__)


class Notifier(Protocol):
    async def send_expired_subscription_email(self, recipient: str, name: str) -> Dict[str, Any]: ...


class NotificationService:
    """Owner-facing notices for the subscription lifecycle."""

    def __init__(self, email_service: Optional[EmailService] = None):
        self.email_service = email_service or EmailService()

    async def send_expired_subscription_email(self, recipient: str, name: str) -> Dict[str, Any]:
        subject = "Your WeKraft subscription has expired"
        html_content = (
            f"<p>Hello {escape(name or 'there')},</p>"
            "<p>Your child's subscription has reached the end of its validity period. "
            "Renew it from your parent dashboard to keep learning uninterrupted.</p>"
        )
        logger.info("Notification channel=email kind=subscription_expired recipient=%s", recipient)
        return await self.email_service.send_email(recipient, subject, html_content)
