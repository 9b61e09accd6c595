"""
Notification delivery: one sender per channel type.

A NotificationPayload is a self-contained snapshot of the monitor and the
incident taken when the event fired, so a queued job can be delivered (or
retried) without touching the database again.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterable, Literal, Optional

import aiosmtplib
import httpx
from jinja2 import Environment, PackageLoader, select_autoescape
from pydantic import BaseModel

from pulsewatch.channels import (
    ChannelConfig,
    DiscordChannel,
    EmailChannel,
    PagerDutyChannel,
    SlackChannel,
    SmsChannel,
    TelegramChannel,
    WebhookChannel,
)
from pulsewatch.config import Settings
from pulsewatch.exceptions import NotificationError
from pulsewatch.recipients import INCIDENT_STARTED, Recipient

logger = logging.getLogger("pulsewatch.notifications")

PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"
TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
TELEGRAM_SEND_URL = "https://api.telegram.org/bot{token}/sendMessage"
SIGNATURE_HEADER = "X-PulseWatch-Signature"

_SLACK_COLORS = {"incident_started": "danger", "incident_resolved": "good"}
_DISCORD_COLORS = {"incident_started": 0xFF0000, "incident_resolved": 0x00FF00}
_PAGERDUTY_SEVERITY = {"critical": "critical", "major": "error", "minor": "warning"}


class MonitorSnapshot(BaseModel):
    id: str
    name: str
    type: str
    target: Optional[str] = None
    workspace_id: Optional[str] = None


class IncidentSnapshot(BaseModel):
    id: str
    title: str
    severity: str
    status: str
    error_message: Optional[str] = None
    started_at: datetime
    resolved_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None


class NotificationPayload(BaseModel):
    event: Literal["incident_started", "incident_resolved"]
    monitor: MonitorSnapshot
    incident: IncidentSnapshot
    recipient: str
    channel: ChannelConfig
    occurred_at: datetime
    is_test: bool = False

    @property
    def is_down(self) -> bool:
        return self.event == INCIDENT_STARTED

    @property
    def title(self) -> str:
        prefix = "[TEST] " if self.is_test else ""
        if self.is_down:
            return f"{prefix}{self.monitor.name} is down"
        return f"{prefix}{self.monitor.name} is back up"

    @property
    def summary(self) -> str:
        if self.is_down:
            return f"Monitor {self.monitor.name} is experiencing issues. We are investigating."
        text = f"Monitor {self.monitor.name} has recovered and is now operational."
        if self.incident.duration_minutes is not None:
            text += f" Downtime: {self.incident.duration_minutes} minute(s)."
        return text

    @classmethod
    def for_recipient(
        cls,
        event: str,
        monitor: MonitorSnapshot,
        incident: IncidentSnapshot,
        recipient: Recipient,
        occurred_at: Optional[datetime] = None,
    ) -> "NotificationPayload":
        return cls(
            event=event,
            monitor=monitor,
            incident=incident,
            recipient=recipient.name,
            channel=recipient.channel,
            occurred_at=occurred_at or datetime.now(timezone.utc),
        )

    @classmethod
    def test(
        cls,
        channel: ChannelConfig,
        monitor: Optional[MonitorSnapshot] = None,
        recipient: str = "test",
    ) -> "NotificationPayload":
        """Synthetic payload used by the "send test notification" paths."""
        now = datetime.now(timezone.utc)
        return cls(
            event="incident_started",
            monitor=monitor or MonitorSnapshot(
                id="test-monitor", name="Test Monitor", type="http", target="https://example.com"
            ),
            incident=IncidentSnapshot(
                id="test-incident",
                title="Test Incident",
                severity="minor",
                status="investigating",
                error_message="This is a test notification",
                started_at=now,
            ),
            recipient=recipient,
            channel=channel,
            occurred_at=now,
            is_test=True,
        )


@dataclass
class Delivery:
    payload: NotificationPayload
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DispatchSummary:
    deliveries: list[Delivery] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for d in self.deliveries if d.ok)

    @property
    def failed(self) -> int:
        return len(self.deliveries) - self.delivered

    @property
    def errors(self) -> list[str]:
        return [f"{d.payload.recipient}: {d.error}" for d in self.deliveries if not d.ok]

    @property
    def ok(self) -> bool:
        return self.failed == 0


class NotificationDispatcher:
    """Formats payloads per channel type and delivers them."""

    def __init__(self, settings: Settings, templates: Optional[Environment] = None):
        self._settings = settings
        self._templates = templates or Environment(
            loader=PackageLoader("pulsewatch", "templates"),
            autoescape=select_autoescape(["html"]),
        )
        self._senders = {
            "email": self._send_email,
            "sms": self._send_sms,
            "slack": self._send_slack,
            "discord": self._send_discord,
            "webhook": self._send_webhook,
            "telegram": self._send_telegram,
            "pagerduty": self._send_pagerduty,
        }

    async def send(self, payload: NotificationPayload) -> None:
        """Deliver one payload. Raises NotificationError on any failure."""
        channel_type = payload.channel.type
        sender = self._senders.get(channel_type)
        if sender is None:
            raise NotificationError(channel_type, "Unsupported channel type")
        try:
            await sender(payload)
        except NotificationError:
            raise
        except (httpx.HTTPError, aiosmtplib.SMTPException, OSError) as e:
            raise NotificationError(channel_type, str(e) or e.__class__.__name__) from e
        logger.info(
            f"Sent {payload.event} for '{payload.monitor.name}' via {channel_type} "
            f"to {payload.recipient}"
        )

    async def dispatch(self, payloads: Iterable[NotificationPayload]) -> DispatchSummary:
        """Deliver several payloads; one failing recipient never stops the rest."""
        summary = DispatchSummary()
        for payload in payloads:
            try:
                await self.send(payload)
            except Exception as e:
                logger.error(f"Notification to {payload.recipient} failed: {e}")
                summary.deliveries.append(Delivery(payload, error=str(e)))
            else:
                summary.deliveries.append(Delivery(payload))
        return summary

    async def send_test(
        self, channel: ChannelConfig, monitor: Optional[MonitorSnapshot] = None
    ) -> None:
        await self.send(NotificationPayload.test(channel, monitor))

    # --- Senders ---

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self._settings.notification_timeout) as client:
            response = await client.post(url, **kwargs)
        response.raise_for_status()
        return response

    def render_email(self, payload: NotificationPayload) -> tuple[str, str, str]:
        """Return (subject, text body, html body)."""
        context = {
            "monitor": payload.monitor,
            "incident": payload.incident,
            "app_name": self._settings.app_name,
        }
        text = self._templates.get_template(f"email/{payload.event}.txt").render(**context)
        html = self._templates.get_template(f"email/{payload.event}.html").render(**context)
        return f"[{self._settings.app_name}] {payload.title}", text, html

    async def _send_email(self, payload: NotificationPayload) -> None:
        channel: EmailChannel = payload.channel
        if not self._settings.smtp_host:
            raise NotificationError("email", "SMTP is not configured")

        subject, text_body, html_body = self.render_email(payload)
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self._settings.smtp_from_email
        msg["To"] = str(channel.address)
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        await aiosmtplib.send(
            msg,
            hostname=self._settings.smtp_host,
            port=self._settings.smtp_port,
            username=self._settings.smtp_username or None,
            password=self._settings.smtp_password or None,
            use_tls=self._settings.smtp_use_tls,
        )

    async def _send_sms(self, payload: NotificationPayload) -> None:
        channel: SmsChannel = payload.channel
        sid = self._settings.twilio_account_sid
        if not sid or not self._settings.twilio_auth_token:
            raise NotificationError("sms", "Twilio is not configured")

        if payload.is_down:
            body = (
                f"{payload.title}. Severity: {payload.incident.severity}. "
                f"Started: {payload.incident.started_at:%Y-%m-%d %H:%M UTC}"
            )
        else:
            body = f"{payload.title}."
            if payload.incident.duration_minutes is not None:
                body += f" Downtime: {payload.incident.duration_minutes} min"
        await self._post(
            TWILIO_MESSAGES_URL.format(sid=sid),
            data={"From": self._settings.twilio_from_number, "To": channel.phone_number, "Body": body},
            auth=(sid, self._settings.twilio_auth_token),
        )

    async def _send_slack(self, payload: NotificationPayload) -> None:
        channel: SlackChannel = payload.channel
        attachment = {
            "color": _SLACK_COLORS[payload.event],
            "title": payload.title,
            "text": payload.summary,
            "fields": [
                {"title": "Monitor", "value": payload.monitor.name, "short": True},
                {"title": "Target", "value": payload.monitor.target or "N/A", "short": True},
                {"title": "Severity", "value": payload.incident.severity, "short": True},
                {"title": "Started", "value": payload.incident.started_at.isoformat(), "short": True},
            ],
            "footer": self._settings.app_name,
            "ts": int(payload.occurred_at.timestamp()),
        }
        await self._post(channel.webhook_url, json={"attachments": [attachment]})

    async def _send_discord(self, payload: NotificationPayload) -> None:
        channel: DiscordChannel = payload.channel
        embed = {
            "title": payload.title,
            "description": payload.summary,
            "color": _DISCORD_COLORS[payload.event],
            "fields": [
                {"name": "Monitor", "value": payload.monitor.name, "inline": True},
                {"name": "Target", "value": payload.monitor.target or "N/A", "inline": True},
                {"name": "Severity", "value": payload.incident.severity, "inline": True},
            ],
            "footer": {"text": self._settings.app_name},
            "timestamp": payload.occurred_at.isoformat(),
        }
        await self._post(channel.webhook_url, json={"embeds": [embed]})

    def webhook_body(self, payload: NotificationPayload) -> dict:
        return {
            "type": payload.event,
            "test": payload.is_test,
            "monitor": payload.monitor.model_dump(mode="json"),
            "incident": payload.incident.model_dump(mode="json"),
            "timestamp": payload.occurred_at.isoformat(),
        }

    async def _send_webhook(self, payload: NotificationPayload) -> None:
        channel: WebhookChannel = payload.channel
        body = json.dumps(self.webhook_body(payload)).encode()
        headers = {
            **channel.headers,
            "Content-Type": "application/json",
            "User-Agent": self._settings.webhook_user_agent,
        }
        if channel.secret:
            digest = hmac.new(channel.secret.encode(), body, hashlib.sha256).hexdigest()
            headers[SIGNATURE_HEADER] = f"sha256={digest}"

        async with httpx.AsyncClient(timeout=self._settings.notification_timeout) as client:
            response = await client.request(channel.method, channel.url, content=body, headers=headers)
        response.raise_for_status()

    async def _send_telegram(self, payload: NotificationPayload) -> None:
        channel: TelegramChannel = payload.channel
        token = channel.bot_token or self._settings.telegram_bot_token
        if not token:
            raise NotificationError("telegram", "No Telegram bot token configured")

        if payload.is_down:
            text = (
                f"*{payload.title}*\n\n"
                f"Target: {payload.monitor.target or 'N/A'}\n"
                f"Severity: {payload.incident.severity}\n"
                f"Started: {payload.incident.started_at:%Y-%m-%d %H:%M:%S} UTC"
            )
        else:
            text = f"*{payload.title}*\n\n{payload.summary}"
        await self._post(
            TELEGRAM_SEND_URL.format(token=token),
            json={"chat_id": channel.chat_id, "text": text, "parse_mode": "Markdown"},
        )

    async def _send_pagerduty(self, payload: NotificationPayload) -> None:
        channel: PagerDutyChannel = payload.channel
        event = {
            "routing_key": channel.routing_key,
            "event_action": "trigger" if payload.is_down else "resolve",
            "dedup_key": payload.incident.id,
        }
        if payload.is_down:
            event["payload"] = {
                "summary": payload.title,
                "source": payload.monitor.target or payload.monitor.name,
                "severity": _PAGERDUTY_SEVERITY.get(payload.incident.severity, "error"),
                "timestamp": payload.incident.started_at.isoformat(),
                "custom_details": {"error": payload.incident.error_message},
            }
        await self._post(PAGERDUTY_EVENTS_URL, json=event)
