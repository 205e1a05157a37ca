"""
Notification Dispatcher — fan an alert out to every enabled channel.

Aggregation:
  - no channel enabled   → not sent, explanatory error
  - every channel failed → not sent, first channel's error is the cause
  - every channel ok     → sent
  - some channels ok     → sent, partial ("sent via N of M channels")

Each channel writes its own audit rows before the aggregate is returned.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from alerts.channels import ChannelResult, ChannelTransport, Notification, SlackChannel, SmsChannel, WebhookChannel
from alerts.delivery_log import DeliveryLog
from alerts.email import EmailChannel

logger = structlog.get_logger()

# Channel name → NotificationSetting toggle column.
CHANNEL_TOGGLES = {
    "Email": "email_enabled",
    "Slack": "slack_enabled",
    "Webhook": "webhook_enabled",
    "SMS": "sms_enabled",
}


@dataclass
class DispatchResult:
    success: bool
    message: str
    results: list[ChannelResult] = field(default_factory=list)
    error: str | None = None

    @property
    def partial(self) -> bool:
        return self.success and any(not r.success for r in self.results)

    @property
    def channels_sent(self) -> int:
        return sum(1 for r in self.results if r.success)


def enabled_channels(setting) -> list[str]:
    if setting is None:
        return []
    return [channel for channel, toggle in CHANNEL_TOGGLES.items() if getattr(setting, toggle, False)]


def aggregate(results: list[ChannelResult]) -> DispatchResult:
    if not results:
        return DispatchResult(success=False, message="No notification channels enabled", error="no_channels_enabled")

    sent = sum(1 for r in results if r.success)
    total = len(results)
    if sent == 0:
        return DispatchResult(
            success=False,
            message=f"Failed to send via all {total} channels",
            results=results,
            error=results[0].error or f"{results[0].channel} delivery failed",
        )
    if sent == total:
        return DispatchResult(success=True, message=f"Sent via {total} channels", results=results)
    return DispatchResult(success=True, message=f"Sent via {sent} of {total} channels", results=results)


class NotificationDispatcher:
    def __init__(self, transports: dict[str, ChannelTransport]):
        self.transports = transports

    @classmethod
    def with_default_channels(cls, delivery_log: DeliveryLog) -> "NotificationDispatcher":
        return cls(
            {
                "Email": EmailChannel(delivery_log),
                "Slack": SlackChannel(delivery_log),
                "Webhook": WebhookChannel(delivery_log),
                "SMS": SmsChannel(delivery_log),
            }
        )

    async def dispatch(self, setting, notification: Notification) -> DispatchResult:
        """Deliver to each enabled channel in turn and aggregate outcomes."""
        results: list[ChannelResult] = []
        for channel in enabled_channels(setting):
            transport = self.transports.get(channel)
            if transport is None:
                results.append(ChannelResult(channel, False, "Failed", error=f"No transport for channel {channel}"))
                continue
            results.append(await transport.deliver(notification, setting))

        outcome = aggregate(results)
        logger.info(
            "dispatch.completed",
            shop_id=str(notification.shop_id),
            alert_type=notification.alert_type,
            success=outcome.success,
            channels_sent=outcome.channels_sent,
            channels_total=len(results),
            error=outcome.error,
        )
        return outcome
