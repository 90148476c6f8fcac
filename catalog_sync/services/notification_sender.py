"""
Handler for ``send-email`` tasks.

Payload: {"to": str, "subject": str, "body": str}

A task without a recipient fails permanently; a send that the provider
rejects or that cannot reach the provider is retried by the queue.
"""

import logging
from typing import Any, Dict, Optional

from catalog_sync.errors import PayloadValidationError, TransientError
from catalog_sync.logging_context import LoggerLike, bind_logger
from catalog_sync.services.email_sender import EmailMessage, EmailSender

logger = logging.getLogger(__name__)

SEND_EMAIL_TASK = "send-email"


def build_email_payload(to: str, subject: str, body: str) -> Dict[str, Any]:
    return {"to": to, "subject": subject, "body": body}


class NotificationSender:
    """Delivers queued notification emails."""

    def __init__(self, email_sender: EmailSender, logger: Optional[LoggerLike] = None):
        self.email_sender = email_sender
        self._logger = logger

    async def process(self, task) -> None:
        """
        Send the email described by ``task.payload``.

        Raises:
            PayloadValidationError: Missing recipient or malformed payload
            TransientError: Provider did not accept the message
        """
        log = bind_logger(self._logger or logger, task_id=task.id)
        payload = task.payload if isinstance(task.payload, dict) else None

        if not payload or not payload.get("to"):
            raise PayloadValidationError(
                "Email task has no recipient",
                task_id=task.id,
            )

        message = EmailMessage(
            to_email=payload["to"],
            subject=payload.get("subject") or "(no subject)",
            text_body=payload.get("body") or "",
        )

        sent = await self.email_sender.send(message)
        if not sent:
            raise TransientError(
                "Email provider did not accept the message",
                task_id=task.id,
            )

        log.info("notification.sent", extra={"subject": message.subject})
