import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from authkernel.service.email import EmailService
from authkernel.service.messaging import OtpDelivery, WhatsAppSender


@pytest.fixture
def delivery():
    email = MagicMock(spec=EmailService)
    email.send_otp.return_value = True
    whatsapp = MagicMock(spec=WhatsAppSender)
    whatsapp.send_otp = AsyncMock(return_value=True)
    return OtpDelivery(email, whatsapp)


class TestOtpDelivery:
    async def test_routes_by_channel(self, delivery):
        assert await delivery.send_otp("email", "a@b.com", "12345", "signup")
        delivery.email.send_otp.assert_called_once_with("a@b.com", "12345", "signup")

        assert await delivery.send_otp("whatsapp", "+15551234567", "12345", "login")
        delivery.whatsapp.send_otp.assert_awaited_once_with("+15551234567", "12345", "login")

    async def test_unknown_channel(self, delivery):
        with pytest.raises(ValueError):
            await delivery.send_otp("carrier-pigeon", "x", "12345", "login")

    async def test_dispatch_is_detached_and_drained(self, delivery):
        task = delivery.dispatch("email", "a@b.com", "12345", "login")
        assert isinstance(task, asyncio.Task)
        await delivery.drain()
        assert task.done()
        delivery.email.send_otp.assert_called_once()

    async def test_crashing_sender_is_contained(self, delivery):
        delivery.whatsapp.send_otp = AsyncMock(side_effect=RuntimeError("gateway down"))
        task = delivery.dispatch("whatsapp", "+15551234567", "12345", "login")
        await delivery.drain()
        assert task.done()
        assert task.exception() is None


class TestUnconfiguredSenders:
    def test_email_dev_mode_reports_success(self):
        service = EmailService()
        assert not service.is_configured
        assert service.send_otp("a@b.com", "12345", "signup") is True

    async def test_whatsapp_dev_mode_reports_success(self):
        sender = WhatsAppSender()
        assert not sender.is_configured
        assert await sender.send_otp("+15551234567", "12345", "login") is True
