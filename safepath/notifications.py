"""Notification dispatch for emergency contacts and user devices.

Each provider is wrapped in a small sender class built from settings
and handed to :class:`Notifier`. Senders never raise: a provider error
or a missing configuration becomes a failed :class:`ChannelResult`.
"""

import asyncio
import html
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Awaitable, Callable, Iterable

import firebase_admin
from fastapi.concurrency import run_in_threadpool
from fastapi_mail import FastMail, MessageSchema, MessageType
from firebase_admin import credentials, messaging
from twilio.rest import Client as TwilioClient

from .core import Settings, get_mail_config, get_settings

logger = logging.getLogger(__name__)


ALERT_TEXT = (
    "EMERGENCY ALERT\n\n"
    "{name} has triggered an emergency alert.\n\n"
    "Type: {type}\n"
    "Location: {location}\n"
    "Time: {time}\n\n"
    "Please check on them immediately or contact emergency services if needed."
)

ALERT_HTML = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background-color: #dc2626; color: white; padding: 20px; text-align: center;">
    <h1>EMERGENCY ALERT</h1>
  </div>
  <div style="padding: 20px; background-color: #f9fafb;">
    <p><strong>{name}</strong> has triggered an emergency alert.</p>
    <p><strong>Type:</strong> {type}</p>
    <p><strong>Location:</strong> {location}</p>
    <p><strong>Time:</strong> {time}</p>
    <p><strong>Action Required:</strong> Please check on them immediately or
    contact emergency services if needed.</p>
    <p style="color: #6b7280; font-size: 12px;">This is an automated emergency notification from SafePath.</p>
  </div>
</div>
"""

STATUS_HTML = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background-color: #059669; color: white; padding: 20px; text-align: center;">
    <h1>Emergency Status Update</h1>
  </div>
  <div style="padding: 20px; background-color: #f9fafb;">
    <p>{message}</p>
    <p style="color: #6b7280; font-size: 12px;">This is an automated notification from SafePath.</p>
  </div>
</div>
"""

TEST_TEXT = (
    "This is a test message from SafePath. {name} is testing their emergency "
    "contact system. No action is required."
)

TEST_HTML = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background-color: #2563eb; color: white; padding: 20px; text-align: center;">
    <h1>SafePath Test Notification</h1>
  </div>
  <div style="padding: 20px; background-color: #f9fafb;">
    <p>This is a test message from SafePath.</p>
    <p><strong>{name}</strong> is testing their emergency contact system.</p>
    <p><strong>No action is required.</strong></p>
  </div>
</div>
"""


@dataclass
class ChannelResult:
    """Outcome of a single send on one channel."""

    method: str
    success: bool
    message_id: str | None = None
    error: str | None = None


@dataclass
class DeliveryReport:
    """Every channel attempted for one recipient."""

    channels: list[ChannelResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return any(result.success for result in self.channels)

    def summary(self) -> ChannelResult:
        """
        Collapse the report to the single channel recorded on the emergency.

        Returns the first successful channel, else the first attempted
        one, else a failed SMS placeholder when no channel was eligible.
        """
        for result in self.channels:
            if result.success:
                return result
        if self.channels:
            return self.channels[0]
        return ChannelResult("SMS", False, error="No notification channel enabled")

    def as_dicts(self) -> list[dict]:
        return [asdict(result) for result in self.channels]


@dataclass
class PushResult:
    success: bool
    success_count: int = 0
    failure_count: int = 0
    error: str | None = None


@dataclass
class Recipient:
    """Contact details needed to deliver a message, detached from the ORM."""

    id: int
    name: str
    phone: str
    email: str | None = None
    sms: bool = True
    email_enabled: bool = False

    @classmethod
    def from_contact(cls, contact) -> "Recipient":
        return cls(
            id=contact.id,
            name=contact.name,
            phone=contact.phone,
            email=contact.email,
            sms=contact.notify_sms,
            email_enabled=contact.notify_email,
        )


@dataclass
class Alert:
    """What happened, as shown to every notified contact."""

    user_name: str
    type: str
    latitude: float
    longitude: float
    address: str | None = None
    time: datetime = field(default_factory=datetime.utcnow)

    @property
    def location_text(self) -> str:
        return self.address or f"{self.latitude}, {self.longitude}"


class SmsSender:
    """Twilio-backed SMS channel."""

    def __init__(self, client: TwilioClient | None, from_number: str | None):
        self.client = client
        self.from_number = from_number

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmsSender":
        if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN):
            logger.warning("Twilio credentials missing, SMS notifications disabled")
            return cls(None, None)
        client = TwilioClient(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        logger.info("Twilio client initialized")
        return cls(client, settings.TWILIO_PHONE_NUMBER)

    async def send(self, to: str, body: str) -> ChannelResult:
        if self.client is None or not self.from_number:
            return ChannelResult("SMS", False, error="SMS provider not configured")
        try:
            message = await run_in_threadpool(
                self.client.messages.create,
                body=body,
                from_=self.from_number,
                to=to,
            )
        except Exception as exc:
            logger.error("SMS sending failed to %s: %s", to, exc)
            return ChannelResult("SMS", False, error=str(exc))
        logger.info("SMS sent to %s: %s", to, message.sid)
        return ChannelResult("SMS", True, message_id=message.sid)


class EmailSender:
    """SMTP email channel using FastAPI-Mail."""

    def __init__(self, mailer: FastMail | None):
        self.mailer = mailer

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailSender":
        if not (settings.SMTP_HOST and settings.SMTP_USER and settings.SMTP_PASSWORD):
            logger.warning("SMTP settings missing, email notifications disabled")
            return cls(None)
        return cls(FastMail(get_mail_config(settings)))

    async def send(self, to: str, subject: str, body: str) -> ChannelResult:
        if self.mailer is None:
            return ChannelResult("Email", False, error="Email provider not configured")
        message = MessageSchema(
            subject=subject,
            recipients=[to],
            body=body,
            subtype=MessageType.html,
        )
        try:
            await self.mailer.send_message(message)
        except Exception as exc:
            logger.error("Email sending failed to %s: %s", to, exc)
            return ChannelResult("Email", False, error=str(exc))
        logger.info("Email sent to %s", to)
        return ChannelResult("Email", True)


def load_firebase_app(raw: str) -> firebase_admin.App:
    """
    Initialise (or reuse) the Firebase Admin app.

    Args:
        raw (str): Service account JSON, either inline or a file path.

    Returns:
        firebase_admin.App: The SafePath Firebase app.
    """
    try:
        return firebase_admin.get_app("safepath")
    except ValueError:
        pass
    if raw.strip().startswith("{"):
        cred = credentials.Certificate(json.loads(raw))
    else:
        cred = credentials.Certificate(os.path.expanduser(raw))
    return firebase_admin.initialize_app(cred, name="safepath")


class PushSender:
    """Firebase Cloud Messaging multicast channel."""

    def __init__(self, app: firebase_admin.App | None):
        self.app = app

    @classmethod
    def from_settings(cls, settings: Settings) -> "PushSender":
        if not settings.FIREBASE_CREDENTIALS:
            logger.warning("Firebase credentials missing, push notifications disabled")
            return cls(None)
        try:
            return cls(load_firebase_app(settings.FIREBASE_CREDENTIALS))
        except (ValueError, OSError) as exc:
            logger.error("Firebase Admin initialization failed: %s", exc)
            return cls(None)

    async def send_multicast(
        self, tokens: list[str], title: str, body: str, data: dict | None = None
    ) -> PushResult:
        if not tokens:
            return PushResult(False, error="No device tokens registered")
        if self.app is None:
            return PushResult(
                False,
                failure_count=len(tokens),
                error="Push provider not configured",
            )
        message = messaging.MulticastMessage(
            notification=messaging.Notification(title=title, body=body),
            data={key: str(value) for key, value in (data or {}).items()},
            tokens=tokens,
        )
        try:
            response = await run_in_threadpool(
                messaging.send_each_for_multicast, message, app=self.app
            )
        except Exception as exc:
            logger.error("Push notification failed: %s", exc)
            return PushResult(False, failure_count=len(tokens), error=str(exc))
        logger.info("Push notifications sent: %s/%s", response.success_count, len(tokens))
        return PushResult(
            response.success_count > 0,
            success_count=response.success_count,
            failure_count=response.failure_count,
        )


class Notifier:
    """Chooses channels per recipient preference and sends through them."""

    def __init__(self, sms: SmsSender, email: EmailSender, push: PushSender):
        self.sms = sms
        self.email = email
        self.push = push

    async def send_emergency_alert(self, recipient: Recipient, alert: Alert) -> DeliveryReport:
        """
        Alert one contact on every channel they opted into.

        SMS goes out when the ``sms`` preference is on; email when the
        ``email`` preference is on and an address exists.
        """
        fields = {
            "name": alert.user_name,
            "type": alert.type,
            "location": alert.location_text,
            "time": alert.time.strftime("%Y-%m-%d %H:%M UTC"),
        }
        report = DeliveryReport()
        if recipient.sms:
            report.channels.append(
                await self.sms.send(recipient.phone, ALERT_TEXT.format(**fields))
            )
        if recipient.email_enabled and recipient.email:
            escaped = {key: html.escape(str(value)) for key, value in fields.items()}
            report.channels.append(
                await self.email.send(
                    recipient.email,
                    f"Emergency Alert from {alert.user_name}",
                    ALERT_HTML.format(**escaped),
                )
            )
        return report

    async def send_status_update(self, recipient: Recipient, message: str) -> DeliveryReport:
        report = DeliveryReport()
        if recipient.sms:
            report.channels.append(await self.sms.send(recipient.phone, message))
        if recipient.email_enabled and recipient.email:
            report.channels.append(
                await self.email.send(
                    recipient.email,
                    "Emergency Status Update",
                    STATUS_HTML.format(message=html.escape(message)),
                )
            )
        return report

    async def send_test_notification(self, recipient: Recipient, user_name: str) -> DeliveryReport:
        """SMS is always attempted; email only when the contact has one."""
        report = DeliveryReport()
        report.channels.append(
            await self.sms.send(recipient.phone, TEST_TEXT.format(name=user_name))
        )
        if recipient.email:
            report.channels.append(
                await self.email.send(
                    recipient.email,
                    "SafePath Test Notification",
                    TEST_HTML.format(name=html.escape(user_name)),
                )
            )
        return report

    async def send_push(
        self, tokens: list[str], title: str, body: str, data: dict | None = None
    ) -> PushResult:
        return await self.push.send_multicast(tokens, title, body, data)


async def fan_out(
    recipients: Iterable[Recipient],
    send: Callable[[Recipient], Awaitable[DeliveryReport]],
) -> list[tuple[Recipient, DeliveryReport]]:
    """
    Deliver to every recipient concurrently.

    An exception while notifying one recipient is logged and recorded as
    a failed SMS attempt for that recipient only.

    Args:
        recipients: Contacts to notify.
        send: Coroutine function producing a report for one recipient.

    Returns:
        list[tuple[Recipient, DeliveryReport]]: One report per recipient,
        in input order.
    """
    recipients = list(recipients)
    results = await asyncio.gather(
        *(send(recipient) for recipient in recipients), return_exceptions=True
    )
    reports = []
    for recipient, result in zip(recipients, results):
        if isinstance(result, BaseException):
            logger.error("Failed to notify contact %s: %s", recipient.id, result)
            result = DeliveryReport([ChannelResult("SMS", False, error=str(result))])
        reports.append((recipient, result))
    return reports


async def notify_status_change(
    notifier: Notifier, recipients: list[Recipient], message: str
) -> None:
    """Best-effort status broadcast to contacts; failures are only logged."""
    reports = await fan_out(
        recipients, lambda recipient: notifier.send_status_update(recipient, message)
    )
    for recipient, report in reports:
        if not report.success:
            logger.warning(
                "Status update not delivered to contact %s: %s",
                recipient.id,
                [result.error for result in report.channels],
            )


@lru_cache()
def get_notifier() -> Notifier:
    """Build the notifier and its provider clients once per process."""
    settings = get_settings()
    return Notifier(
        sms=SmsSender.from_settings(settings),
        email=EmailSender.from_settings(settings),
        push=PushSender.from_settings(settings),
    )
