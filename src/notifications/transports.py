"""
Transport Channels (src/notifications/transports.py)

Delivers an already-rendered subject/body to a target address:
  - slack   → HTTP POST to SLACK_WEBHOOK_URL (target = channel, e.g. "#ops")
  - webhook → HTTP POST (JSON) to the target URL, or ALERT_WEBHOOK_URL
  - push    → HTTP POST (JSON) to PUSH_GATEWAY_URL (target = audience/topic)
  - email   → SMTP via stdlib smtplib (target = address)
  - sms     → AWS SNS publish (target = E.164 phone number)
  - dry-run → log only

Each transport reads its configuration from the environment at call time.
Missing config = delivery skipped with a log warning and reported as not
delivered. The blocking client call runs in a worker thread so a slow
transport never stalls the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import boto3  # type: ignore
import requests  # type: ignore
from botocore.exceptions import BotoCoreError, ClientError  # type: ignore

logger = logging.getLogger(__name__)

_HTTP_OK = (200, 201, 202, 204)


class TransportError(RuntimeError):
    """Raised when a transport is configured but the delivery failed."""


class Transport:
    """Base class for transport channels.

    Subclasses implement ``_send`` (blocking); ``send`` runs it off the
    event loop.
    """

    name = "base"

    async def send(self, channel_type: str, target: str, subject: str, body: str) -> bool:
        return await asyncio.to_thread(self._send, channel_type, target, subject, body)

    def _send(self, channel_type: str, target: str, subject: str, body: str) -> bool:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# HTTP-based transports
# ---------------------------------------------------------------------------

def _http_post(url: str, payload: dict, timeout: float = 10) -> None:
    try:
        resp = requests.post(url, json=payload, timeout=timeout)
    except requests.RequestException as exc:
        raise TransportError(f"HTTP POST to {url} failed: {exc}") from exc
    if resp.status_code not in _HTTP_OK:
        raise TransportError(f"HTTP POST returned status {resp.status_code}")


class SlackTransport(Transport):
    name = "slack"

    def _send(self, channel_type: str, target: str, subject: str, body: str) -> bool:
        webhook_url = os.getenv("SLACK_WEBHOOK_URL", "")
        if not webhook_url:
            logger.warning("SLACK_WEBHOOK_URL not set — skipping Slack message to '%s'.", target)
            return False

        payload: dict = {"text": f"*{subject}*\n{body}" if subject else body}
        if target.startswith("#"):
            payload["channel"] = target
        _http_post(webhook_url, payload)
        logger.info("Slack message sent to '%s'.", target or "default channel")
        return True


class WebhookTransport(Transport):
    name = "webhook"

    def _send(self, channel_type: str, target: str, subject: str, body: str) -> bool:
        url = target if target.startswith(("http://", "https://")) else os.getenv("ALERT_WEBHOOK_URL", "")
        if not url:
            logger.warning("ALERT_WEBHOOK_URL not set — skipping webhook delivery to '%s'.", target)
            return False

        payload = {"channel": channel_type, "target": target, "subject": subject, "body": body}
        _http_post(url, payload)
        logger.info("Webhook delivered to '%s'.", url)
        return True


class PushTransport(Transport):
    name = "push"

    def _send(self, channel_type: str, target: str, subject: str, body: str) -> bool:
        gateway = os.getenv("PUSH_GATEWAY_URL", "")
        if not gateway:
            logger.warning("PUSH_GATEWAY_URL not set — skipping push to '%s'.", target)
            return False

        _http_post(gateway, {"audience": target, "title": subject, "body": body})
        logger.info("Push notification sent to '%s'.", target)
        return True


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------

class EmailTransport(Transport):
    name = "email"

    def _send(self, channel_type: str, target: str, subject: str, body: str) -> bool:
        smtp_host = os.getenv("SMTP_HOST", "")
        smtp_port = int(os.getenv("SMTP_PORT", "587"))
        smtp_user = os.getenv("SMTP_USER", "")
        smtp_password = os.getenv("SMTP_PASSWORD", "")

        if not all([smtp_host, smtp_user, smtp_password, target]):
            logger.warning(
                "Email config incomplete (need SMTP_HOST, SMTP_USER, SMTP_PASSWORD "
                "and a target address) — skipping email to '%s'.",
                target,
            )
            return False

        msg = MIMEMultipart()
        msg["From"] = smtp_user
        msg["To"] = target
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "html" if body.lstrip().startswith("<") else "plain"))

        try:
            with smtplib.SMTP(smtp_host, smtp_port, timeout=10) as server:
                server.ehlo()
                server.starttls()
                server.login(smtp_user, smtp_password)
                server.sendmail(smtp_user, target, msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportError(f"SMTP delivery to {target} failed: {exc}") from exc

        logger.info("Email sent to '%s'.", target)
        return True


# ---------------------------------------------------------------------------
# SMS (AWS SNS)
# ---------------------------------------------------------------------------

class SmsTransport(Transport):
    name = "sms"

    def _send(self, channel_type: str, target: str, subject: str, body: str) -> bool:
        if not target:
            logger.warning("No phone number given — skipping SMS.")
            return False
        try:
            client = boto3.client("sns", region_name=os.getenv("AWS_REGION") or None)
            client.publish(PhoneNumber=target, Message=body[:1600])
        except (BotoCoreError, ClientError) as exc:
            raise TransportError(f"SNS publish to {target} failed: {exc}") from exc
        logger.info("SMS sent to '%s'.", target)
        return True


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------

class DryRunTransport(Transport):
    """Logs what would have been sent and reports success."""

    name = "dry-run"

    def __init__(self):
        self.sent: list[tuple[str, str, str, str]] = []

    async def send(self, channel_type: str, target: str, subject: str, body: str) -> bool:
        return self._send(channel_type, target, subject, body)

    def _send(self, channel_type: str, target: str, subject: str, body: str) -> bool:
        self.sent.append((channel_type, target, subject, body))
        logger.info("[dry-run] %s → %s: %s", channel_type, target, subject or body[:80])
        return True


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TransportRegistry:
    """Maps channel types to transports."""

    def __init__(self, transports: dict[str, Transport] | None = None):
        self._transports: dict[str, Transport] = dict(transports or {})

    def register(self, channel_type: str, transport: Transport) -> "TransportRegistry":
        self._transports[channel_type] = transport
        return self

    def get(self, channel_type: str) -> Transport | None:
        return self._transports.get(channel_type)

    def __contains__(self, channel_type: str) -> bool:
        return channel_type in self._transports

    async def send(self, channel_type: str, target: str, subject: str, body: str) -> bool:
        """Send via the transport registered for ``channel_type``.

        Raises:
            TransportError: If no transport is registered for the type.
        """
        transport = self.get(channel_type)
        if transport is None:
            raise TransportError(f"No transport registered for channel type '{channel_type}'")
        return await transport.send(channel_type, target, subject, body)


def default_registry(dry_run: bool = False) -> TransportRegistry:
    """Registry with every built-in transport (or a single dry-run transport for all types)."""
    if dry_run:
        dry = DryRunTransport()
        return TransportRegistry({t: dry for t in ("email", "sms", "push", "slack", "webhook")})
    return TransportRegistry({
        "email": EmailTransport(),
        "sms": SmsTransport(),
        "push": PushTransport(),
        "slack": SlackTransport(),
        "webhook": WebhookTransport(),
    })
