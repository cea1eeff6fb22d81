"""Fire-and-forget notification dispatch for SMS and email.

The engine hands messages to the sink and moves on. Provider failures are
logged here and never reach the queue mutation that triggered them.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any
from uuid import uuid4

from app.core.config import settings

logger = logging.getLogger(__name__)


class NotificationChannel(str, Enum):
    """Delivery channel."""

    SMS = "sms"
    EMAIL = "email"


class NotificationProviderError(Exception):
    """Base exception for notification provider errors."""

    pass


class NotificationProvider(ABC):
    """Abstract base class for notification providers."""

    @abstractmethod
    async def send(self, recipient: str, payload: dict[str, Any]) -> str:
        """Send a notification and return the provider message id.

        Raises NotificationProviderError on failure.
        """
        pass


class SMSProvider(NotificationProvider):
    """SMS gateway abstraction (Twilio or similar)."""

    def __init__(self, provider_name: str = "twilio", from_number: str = ""):
        self.provider_name = provider_name
        self.from_number = from_number

    async def send(self, recipient: str, payload: dict[str, Any]) -> str:
        """Send SMS message."""
        # The gateway call lives with the provider integration; here we log it
        body = render_text(payload)
        logger.info(f"Sending SMS to {recipient}: {body[:50]}...")
        return f"sms_{uuid4().hex[:16]}"


class EmailProvider(NotificationProvider):
    """Email provider abstraction (SMTP, SendGrid, SES...)."""

    def __init__(
        self,
        provider_name: str = "smtp",
        from_email: str = "",
        from_name: str = "Emergency Triage",
    ):
        self.provider_name = provider_name
        self.from_email = from_email
        self.from_name = from_name

    async def send(self, recipient: str, payload: dict[str, Any]) -> str:
        """Send email message."""
        logger.info(f"Sending email to {recipient}: {payload.get('subject', payload.get('event'))}")
        return f"email_{uuid4().hex[:16]}"


def render_text(payload: dict[str, Any]) -> str:
    """Plain-text body for a notification payload."""
    if "message" in payload:
        return str(payload["message"])
    parts = [f"{key}={value}" for key, value in sorted(payload.items())]
    return "; ".join(parts)


class NotificationSink:
    """Hands notifications to providers on background tasks."""

    def __init__(
        self,
        sms_provider: NotificationProvider | None = None,
        email_provider: NotificationProvider | None = None,
        enabled: bool = True,
    ) -> None:
        self.sms_provider = sms_provider or SMSProvider(
            provider_name=settings.sms_provider,
            from_number=settings.sms_from_number,
        )
        self.email_provider = email_provider or EmailProvider(
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
        self.enabled = enabled
        self._tasks: set[asyncio.Task] = set()

    def _get_provider(self, channel: NotificationChannel) -> NotificationProvider:
        """Get the appropriate provider for a channel."""
        if channel == NotificationChannel.SMS:
            return self.sms_provider
        elif channel == NotificationChannel.EMAIL:
            return self.email_provider
        else:
            raise ValueError(f"Unsupported channel: {channel}")

    def dispatch(
        self,
        channel: NotificationChannel | str,
        recipient: str | None,
        payload: dict[str, Any],
    ) -> None:
        """Schedule delivery and return immediately."""
        if not self.enabled or not recipient:
            return
        provider = self._get_provider(NotificationChannel(channel))
        task = asyncio.get_running_loop().create_task(
            self._deliver(provider, NotificationChannel(channel), recipient, payload)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(
        self,
        provider: NotificationProvider,
        channel: NotificationChannel,
        recipient: str,
        payload: dict[str, Any],
    ) -> None:
        try:
            message_id = await provider.send(recipient, payload)
            logger.debug(f"{channel.value} notification {message_id} sent to {recipient}")
        except Exception:
            logger.exception(f"{channel.value} notification to {recipient} failed")

    def notify_contacts(
        self,
        email: str | None,
        phone: str | None,
        payload: dict[str, Any],
    ) -> None:
        """Dispatch to whichever of email/phone are present."""
        if phone:
            self.dispatch(NotificationChannel.SMS, phone, payload)
        if email:
            self.dispatch(NotificationChannel.EMAIL, email, payload)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
