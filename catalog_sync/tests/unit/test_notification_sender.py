"""
Tests for admin notifications.

Validates:
- send-email tasks deliver through the configured sender
- Missing recipient is a permanent failure
- A rejected send is retryable
- SendGrid request shape and status handling
"""

import json

import httpx
import pytest

from catalog_sync.errors import PayloadValidationError, TransientError
from catalog_sync.models.sync_task import TaskState
from catalog_sync.queue.task_queue import Task
from catalog_sync.services.email_sender import (
    EmailMessage,
    MockEmailSender,
    SendGridEmailSender,
    get_email_sender,
)
from catalog_sync.services.notification_sender import (
    SEND_EMAIL_TASK,
    NotificationSender,
    build_email_payload,
)


def email_task(payload):
    return Task(
        id="email-1",
        type=SEND_EMAIL_TASK,
        payload=payload,
        state=TaskState.ACTIVE,
        attempts_made=0,
        max_attempts=3,
        backoff_delay_seconds=1.0,
    )


class RejectingSender(MockEmailSender):
    async def send(self, message):
        await super().send(message)
        return False


class TestNotificationSender:
    """Tests for NotificationSender.process()."""

    @pytest.mark.asyncio
    async def test_sends_email(self):
        sender = MockEmailSender()
        payload = build_email_payload("admin@example.com", "New Product Created", "Shirt")

        await NotificationSender(sender).process(email_task(payload))

        assert len(sender.sent_messages) == 1
        message = sender.sent_messages[0]
        assert message.to_email == "admin@example.com"
        assert message.subject == "New Product Created"
        assert message.text_body == "Shirt"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [None, {}, {"subject": "x", "body": "y"}])
    async def test_missing_recipient_is_permanent(self, payload):
        sender = MockEmailSender()

        with pytest.raises(PayloadValidationError):
            await NotificationSender(sender).process(email_task(payload))
        assert sender.sent_messages == []

    @pytest.mark.asyncio
    async def test_rejected_send_is_retryable(self):
        with pytest.raises(TransientError):
            await NotificationSender(RejectingSender()).process(
                email_task(build_email_payload("admin@example.com", "s", "b"))
            )


class TestSendGridEmailSender:
    """Tests for the SendGrid sender over a mock transport."""

    @pytest.mark.asyncio
    async def test_send_success(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(202)

        sender = SendGridEmailSender(
            api_key="SG.test",
            from_email="sync@example.com",
            transport=httpx.MockTransport(handler),
        )
        sent = await sender.send(EmailMessage(
            to_email="admin@example.com",
            subject="Product Updated",
            text_body="Shirt was synced",
        ))
        await sender.close()

        assert sent is True
        assert seen["auth"] == "Bearer SG.test"
        assert seen["body"]["personalizations"] == [{"to": [{"email": "admin@example.com"}]}]
        assert seen["body"]["from"]["email"] == "sync@example.com"
        assert seen["body"]["content"] == [{"type": "text/plain", "value": "Shirt was synced"}]

    @pytest.mark.asyncio
    async def test_error_status_returns_false(self):
        sender = SendGridEmailSender(
            api_key="SG.test",
            from_email="sync@example.com",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        assert await sender.send(EmailMessage("a@example.com", "s", "b")) is False
        await sender.close()

    @pytest.mark.asyncio
    async def test_network_error_returns_false(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        sender = SendGridEmailSender(
            api_key="SG.test",
            from_email="sync@example.com",
            transport=httpx.MockTransport(handler),
        )

        assert await sender.send(EmailMessage("a@example.com", "s", "b")) is False
        await sender.close()

    @pytest.mark.asyncio
    async def test_missing_api_key_returns_false(self):
        sender = SendGridEmailSender(api_key=None, from_email="sync@example.com")

        assert await sender.send(EmailMessage("a@example.com", "s", "b")) is False
        await sender.close()


class TestGetEmailSender:

    def test_sendgrid(self):
        assert isinstance(get_email_sender("sendgrid", api_key="SG.x"), SendGridEmailSender)

    def test_mock_and_unknown(self):
        assert isinstance(get_email_sender("mock"), MockEmailSender)
        assert isinstance(get_email_sender("carrier-pigeon"), MockEmailSender)
