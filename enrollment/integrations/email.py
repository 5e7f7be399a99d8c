from __future__ import annotations

import asyncio
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import httpx

from enrollment.config import Settings, settings as default_settings

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class EmailService:
    """Transactional email via SendGrid, falling back to SMTP."""

    def __init__(self, config: Optional[Settings] = None):
        config = config or default_settings
        self.sendgrid_key = config.sendgrid_api_key.get_secret_value() if config.sendgrid_api_key else None
        self.smtp_host = config.smtp_host
        self.smtp_port = config.smtp_port
        self.smtp_username = config.smtp_username
        self.smtp_password = config.smtp_password.get_secret_value() if config.smtp_password else None
        self.default_from_email = config.default_from_email
        self.default_from_name = config.default_from_name
        self.timeout = config.gateway_timeout_seconds

    async def send_email(self, to: str, subject: str, html_content: str) -> Dict[str, Any]:
        if self.sendgrid_key:
            return await self._send_via_sendgrid(to, subject, html_content)
        return await asyncio.to_thread(self._send_via_smtp, to, subject, html_content)

    async def _send_via_sendgrid(self, to: str, subject: str, html_content: str) -> Dict[str, Any]:
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.default_from_email, "name": self.default_from_name},
            "subject": subject,
            "content": [{"type": "text/html", "value": html_content}],
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                SENDGRID_URL,
                headers={
                    "Authorization": f"Bearer {self.sendgrid_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
            response.raise_for_status()
            return {"status": "sent", "message_id": response.headers.get("X-Message-Id"), "to": to}

    def _send_via_smtp(self, to: str, subject: str, html_content: str) -> Dict[str, Any]:
        if not all([self.smtp_host, self.smtp_username, self.smtp_password]):
            raise ValueError("SMTP is not configured and SendGrid key is missing")
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.default_from_name} <{self.default_from_email}>"
        message["To"] = to
        message.attach(MIMEText(html_content, "html"))
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            server.starttls()
            server.login(self.smtp_username, self.smtp_password)
            server.send_message(message)
        return {"status": "sent", "to": to}
