"""
Notification channels.

Every channel transport follows the same contract:
  - `recipient(setting)` reads the shop's target for that channel
  - `deliver(notification, setting)` sends once and returns a ChannelResult

The base `deliver` writes the Pending and terminal audit rows around the
channel-specific `_send`. Channels with `logs_own_delivery` set (the
webhook channel, whose WebhookTransport owns retries) write their own.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from alerts.delivery_log import (
    STATUS_ERROR,
    STATUS_FAILED,
    STATUS_SENT,
    DeliveryLog,
    DeliveryMetadata,
    DeliveryRecord,
)
from alerts.webhook import WebhookConfig, WebhookMessage, WebhookTransport, build_payload, payload_severity
from core.config import get_settings

logger = structlog.get_logger()

TWILIO_BASE_URL = "https://api.twilio.com/2010-04-01"


@dataclass
class Notification:
    """Channel-agnostic alert payload handed to the dispatcher."""

    shop_id: uuid.UUID
    shop_domain: str
    product_id: uuid.UUID
    product_title: str
    alert_type: str
    severity: str
    title: str
    message: str
    alert_id: uuid.UUID | None = None
    current_quantity: int = 0
    threshold: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChannelResult:
    channel: str
    success: bool
    status: str
    error: str | None = None
    recipient: str | None = None
    provider_id: str | None = None


class ChannelTransport(ABC):
    channel: str = ""
    logs_own_delivery: bool = False

    def __init__(self, delivery_log: DeliveryLog | None = None):
        self.delivery_log = delivery_log or DeliveryLog()

    @abstractmethod
    def recipient(self, setting) -> str | None:
        ...

    @abstractmethod
    async def _send(self, notification: Notification, recipient: str, setting) -> ChannelResult:
        ...

    def _record(self, notification: Notification, recipient: str | None) -> DeliveryRecord:
        return DeliveryRecord(
            shop_id=notification.shop_id,
            channel=self.channel,
            recipient=recipient,
            subject=notification.title,
            message=notification.message,
            product_id=notification.product_id,
            product_title=notification.product_title,
            alert_type=notification.alert_type,
            alert_id=notification.alert_id,
        )

    async def _attempt(self, notification: Notification, recipient: str, setting) -> ChannelResult:
        try:
            return await self._send(notification, recipient, setting)
        except Exception as exc:  # noqa: BLE001
            logger.error("channel.send_failed", channel=self.channel, error=str(exc), exc_info=True)
            return ChannelResult(self.channel, False, STATUS_ERROR, error=str(exc), recipient=recipient)

    async def deliver(self, notification: Notification, setting) -> ChannelResult:
        recipient = self.recipient(setting)
        if recipient and self.logs_own_delivery:
            return await self._attempt(notification, recipient, setting)

        record = self._record(notification, recipient)
        delivery_id = await self.delivery_log.pending(record)
        if not recipient:
            result = ChannelResult(self.channel, False, STATUS_FAILED, error=f"No {self.channel} recipient configured")
        else:
            result = await self._attempt(notification, recipient, setting)

        await self.delivery_log.complete(
            delivery_id,
            record,
            result.status,
            error=result.error,
            metadata=DeliveryMetadata(
                payload_size=len(notification.message),
                extra={"provider_id": result.provider_id} if result.provider_id else {},
            ),
        )
        return result


# ── Chat webhook (Slack-compatible) ───────────────────────────────────────


class SlackChannel(ChannelTransport):
    channel = "Slack"

    def __init__(self, delivery_log: DeliveryLog | None = None, client: httpx.AsyncClient | None = None):
        super().__init__(delivery_log)
        self._client = client

    def recipient(self, setting) -> str | None:
        return setting.slack_webhook_url

    async def _send(self, notification: Notification, recipient: str, setting) -> ChannelResult:
        body = {"text": f"*{notification.title}*\n{notification.message}"}
        timeout = get_settings().webhook_timeout_seconds
        try:
            if self._client is not None:
                response = await self._client.post(recipient, json=body, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(recipient, json=body)
        except httpx.HTTPError as exc:
            return ChannelResult(self.channel, False, STATUS_ERROR, error=str(exc), recipient=recipient)

        if response.is_success:
            return ChannelResult(self.channel, True, STATUS_SENT, recipient=recipient)
        return ChannelResult(
            self.channel, False, STATUS_FAILED, error=f"HTTP {response.status_code}", recipient=recipient
        )


# ── Generic signed webhook ────────────────────────────────────────────────


class WebhookChannel(ChannelTransport):
    channel = "Webhook"
    logs_own_delivery = True

    def __init__(self, delivery_log: DeliveryLog | None = None, client: httpx.AsyncClient | None = None, sleep=None):
        super().__init__(delivery_log)
        self._client = client
        self._sleep = sleep

    def recipient(self, setting) -> str | None:
        return setting.webhook_url

    def build_message(self, notification: Notification, setting) -> WebhookMessage:
        product: dict[str, Any] = {
            "id": str(notification.product_id),
            "title": notification.product_title,
            "currentQuantity": notification.current_quantity,
        }
        if notification.threshold is not None:
            product["threshold"] = notification.threshold
        return WebhookMessage(
            url=setting.webhook_url,
            shop_id=notification.shop_id,
            product_id=notification.product_id,
            product_title=notification.product_title,
            alert_type=notification.alert_type,
            alert_id=notification.alert_id,
            secret=setting.webhook_secret,
            payload=build_payload(
                f"inventory.{notification.alert_type.lower()}",
                notification.shop_id,
                notification.shop_domain,
                product,
                alert={
                    "id": str(notification.alert_id) if notification.alert_id else "",
                    "type": notification.alert_type,
                    "severity": payload_severity(notification.severity),
                    "message": notification.message,
                },
                metadata=notification.metadata,
            ),
        )

    def _transport(self, setting) -> WebhookTransport:
        kwargs: dict[str, Any] = {"delivery_log": self.delivery_log, "client": self._client}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return WebhookTransport(WebhookConfig.from_settings(setting.webhook_url, setting.webhook_secret), **kwargs)

    async def _send(self, notification: Notification, recipient: str, setting) -> ChannelResult:
        result = await self._transport(setting).send(self.build_message(notification, setting))
        return ChannelResult(self.channel, result.success, result.log_status, error=result.error, recipient=recipient)


# ── SMS ───────────────────────────────────────────────────────────────────


class SmsChannel(ChannelTransport):
    channel = "SMS"

    def __init__(self, delivery_log: DeliveryLog | None = None, client: httpx.AsyncClient | None = None):
        super().__init__(delivery_log)
        self._client = client
        self.provider = get_settings().sms_provider

    def recipient(self, setting) -> str | None:
        return setting.sms_phone_number

    @staticmethod
    def format_sms(notification: Notification) -> str:
        return f"{notification.title}: {notification.message}"[:320]

    async def _send(self, notification: Notification, recipient: str, setting) -> ChannelResult:
        if self.provider == "twilio":
            return await self._send_twilio(notification, recipient)
        logger.info("sms.mock_sent", to=recipient, body=self.format_sms(notification))
        return ChannelResult(self.channel, True, STATUS_SENT, recipient=recipient, provider_id=f"mock-{uuid.uuid4()}")

    async def _send_twilio(self, notification: Notification, recipient: str) -> ChannelResult:
        settings = get_settings()
        if not (settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number):
            return ChannelResult(self.channel, False, STATUS_FAILED, error="Twilio configuration missing")

        url = f"{TWILIO_BASE_URL}/Accounts/{settings.twilio_account_sid}/Messages.json"
        form = {"To": recipient, "From": settings.twilio_from_number, "Body": self.format_sms(notification)}
        auth = (settings.twilio_account_sid, settings.twilio_auth_token)
        try:
            if self._client is not None:
                response = await self._client.post(url, data=form, auth=auth)
            else:
                async with httpx.AsyncClient(timeout=settings.webhook_timeout_seconds) as client:
                    response = await client.post(url, data=form, auth=auth)
        except httpx.HTTPError as exc:
            return ChannelResult(self.channel, False, STATUS_ERROR, error=str(exc), recipient=recipient)

        if not response.is_success:
            return ChannelResult(
                self.channel, False, STATUS_FAILED, error=f"Twilio API error: {response.status_code}", recipient=recipient
            )
        return ChannelResult(
            self.channel, True, STATUS_SENT, recipient=recipient, provider_id=response.json().get("sid")
        )
