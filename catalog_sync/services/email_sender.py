"""
Email sender abstraction for admin notifications.

Supports:
- SendGrid (production, over httpx)
- Mock (testing, local runs)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import httpx

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass
class EmailMessage:
    """Email message data."""
    to_email: str
    subject: str
    text_body: str
    html_body: Optional[str] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None


class EmailSender(ABC):
    """Abstract base class for email sending."""

    @abstractmethod
    async def send(self, message: EmailMessage) -> bool:
        """
        Send an email.

        Args:
            message: Email message to send

        Returns:
            True on success, False on failure
        """
        pass

    async def close(self) -> None:
        return None


class SendGridEmailSender(EmailSender):
    """SendGrid email sender implementation."""

    def __init__(
        self,
        api_key: Optional[str],
        from_email: str,
        from_name: str = "Catalog Sync",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize SendGrid sender.

        Args:
            api_key: SendGrid API key
            from_email: Default sender email
            from_name: Default sender name
            timeout_seconds: Request timeout
            transport: Optional httpx transport (tests)
        """
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name

        if not self.api_key:
            logger.warning("SendGrid API key not configured")

        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, message: EmailMessage) -> bool:
        """Send email via SendGrid API."""
        if not self.api_key:
            logger.error("Cannot send email: SendGrid API key not configured")
            return False

        content = [{"type": "text/plain", "value": message.text_body}]
        if message.html_body:
            content.append({"type": "text/html", "value": message.html_body})

        payload = {
            "personalizations": [{"to": [{"email": message.to_email}]}],
            "from": {
                "email": message.from_email or self.from_email,
                "name": message.from_name or self.from_name,
            },
            "subject": message.subject,
            "content": content,
        }

        try:
            response = await self._client.post(
                SENDGRID_SEND_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        except httpx.HTTPError as e:
            logger.error("Failed to send email via SendGrid", extra={
                "subject": message.subject,
                "error": str(e),
            })
            return False

        if response.status_code in (200, 202):
            logger.info("Email sent successfully", extra={"subject": message.subject})
            return True

        logger.error("SendGrid API error", extra={
            "status_code": response.status_code,
            "response": response.text[:500],
            "subject": message.subject,
        })
        return False


class MockEmailSender(EmailSender):
    """Mock email sender for testing."""

    def __init__(self):
        self.sent_messages: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> bool:
        """Record email in sent_messages list."""
        self.sent_messages.append(message)
        logger.info("Mock email sent", extra={"subject": message.subject})
        return True


def get_email_sender(
    provider: str,
    api_key: Optional[str] = None,
    from_email: str = "notifications@example.com",
) -> EmailSender:
    """
    Email sender for the configured provider (EMAIL_PROVIDER).

    Unknown providers fall back to the mock sender.
    """
    provider = (provider or "mock").lower()
    if provider == "sendgrid":
        return SendGridEmailSender(api_key=api_key, from_email=from_email)
    if provider != "mock":
        logger.warning("Unknown email provider, using mock", extra={"provider": provider})
    return MockEmailSender()
