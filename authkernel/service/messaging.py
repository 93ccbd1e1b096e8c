from __future__ import annotations

import asyncio
from typing import Optional, Set

import httpx

from authkernel.logging import get_logger
from authkernel.service.email import EmailService

logger = get_logger(__name__)

CHANNEL_EMAIL = "email"
CHANNEL_WHATSAPP = "whatsapp"


class WhatsAppSender:
    """Send one-time codes through an HTTP messaging gateway."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_token: Optional[str] = None,
        *,
        timeout: float = 10.0,
    ) -> None:
        self.api_url = api_url
        self.api_token = api_token
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_token)

    async def send_otp(self, destination: str, code: str, purpose: str) -> bool:
        if not self.is_configured:
            logger.info("whatsapp_dev_mode", destination=destination, purpose=purpose)
            return True
        payload = {
            "to": destination,
            "type": "template",
            "template": {"name": f"otp_{purpose}", "parameters": [code]},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
                response = await client.post(
                    self.api_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_token}"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "whatsapp_send_http_error",
                destination=destination,
                status_code=exc.response.status_code,
            )
            return False
        except httpx.HTTPError as exc:
            logger.error("whatsapp_send_failed", destination=destination, error=str(exc))
            return False
        logger.info("whatsapp_sent", destination=destination, purpose=purpose)
        return True


class OtpDelivery:
    """Out-of-band code delivery that never blocks the request path.

    ``dispatch`` schedules the send as a detached task; a failed or crashed
    send is logged and otherwise ignored, and the stored code is untouched.
    """

    def __init__(self, email: EmailService, whatsapp: WhatsAppSender) -> None:
        self.email = email
        self.whatsapp = whatsapp
        self._tasks: Set[asyncio.Task] = set()

    async def send_otp(self, channel: str, destination: str, code: str, purpose: str) -> bool:
        if channel == CHANNEL_EMAIL:
            return await asyncio.to_thread(self.email.send_otp, destination, code, purpose)
        if channel == CHANNEL_WHATSAPP:
            return await self.whatsapp.send_otp(destination, code, purpose)
        raise ValueError(f"unknown delivery channel: {channel}")

    async def _run(self, channel: str, destination: str, code: str, purpose: str) -> None:
        try:
            delivered = await self.send_otp(channel, destination, code, purpose)
        except Exception as exc:
            logger.error(
                "otp_delivery_crashed",
                channel=channel,
                destination=destination,
                error=str(exc),
            )
            return
        if not delivered:
            logger.warning("otp_delivery_failed", channel=channel, destination=destination)

    def dispatch(self, channel: str, destination: str, code: str, purpose: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(channel, destination, code, purpose))
        # Hold a reference until completion so the task is not garbage collected
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used at shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = ["OtpDelivery", "WhatsAppSender", "CHANNEL_EMAIL", "CHANNEL_WHATSAPP"]
