"""
Tests for the Notification Dispatcher — fan-out and aggregation.
"""

import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from alerts.channels import ChannelResult, ChannelTransport, Notification
from alerts.delivery_log import DeliveryLog
from alerts.dispatcher import NotificationDispatcher, aggregate, enabled_channels

SHOP_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


class StubChannel(ChannelTransport):
    def __init__(self, channel, delivery_log=None, *, ok=True, error=None, raises=None, recipient="dest"):
        super().__init__(delivery_log)
        self.channel = channel
        self.ok = ok
        self.error = error
        self.raises = raises
        self._recipient = recipient
        self.sent: list[Notification] = []

    def recipient(self, setting):
        return self._recipient

    async def _send(self, notification, recipient, setting):
        if self.raises is not None:
            raise self.raises
        self.sent.append(notification)
        status = "Sent" if self.ok else "Failed"
        return ChannelResult(self.channel, self.ok, status, error=self.error, recipient=recipient)


def make_setting(**enabled):
    toggles = {"email_enabled": False, "slack_enabled": False, "webhook_enabled": False, "sms_enabled": False}
    toggles.update({f"{name}_enabled": value for name, value in enabled.items()})
    return SimpleNamespace(**toggles)


def make_notification(**overrides):
    fields = dict(
        shop_id=SHOP_ID,
        shop_domain="test-store.myshopify.com",
        product_id=uuid.uuid4(),
        product_title="Cold Brew",
        alert_type="IMMINENT_STOCKOUT",
        severity="CRITICAL",
        title="Stockout Alert: Cold Brew",
        message="Cold Brew is selling at 1.0 units/day (stable). Predicted stockout in 3 days.",
    )
    fields.update(overrides)
    return Notification(**fields)


# ── Aggregation ────────────────────────────────────────────────────────


class TestAggregate:
    def test_no_results(self):
        outcome = aggregate([])
        assert outcome.success is False
        assert outcome.error == "no_channels_enabled"

    def test_all_sent(self):
        outcome = aggregate([ChannelResult("Email", True, "Sent"), ChannelResult("SMS", True, "Sent")])
        assert outcome.success is True
        assert outcome.partial is False
        assert outcome.message == "Sent via 2 channels"

    def test_partial(self):
        outcome = aggregate([ChannelResult("Email", False, "Failed", error="bounced"), ChannelResult("SMS", True, "Sent")])
        assert outcome.success is True
        assert outcome.partial is True
        assert outcome.channels_sent == 1
        assert outcome.message == "Sent via 1 of 2 channels"

    def test_all_failed_reports_first_error(self):
        outcome = aggregate(
            [
                ChannelResult("Slack", False, "Failed", error="HTTP 404"),
                ChannelResult("Webhook", False, "Error", error="timed out"),
            ]
        )
        assert outcome.success is False
        assert outcome.error == "HTTP 404"


def test_enabled_channels_in_fixed_order():
    setting = make_setting(sms=True, email=True, webhook=True)
    assert enabled_channels(setting) == ["Email", "Webhook", "SMS"]
    assert enabled_channels(None) == []


# ── Dispatch ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_dispatches_only_enabled_channels():
    email, slack, sms = StubChannel("Email"), StubChannel("Slack"), StubChannel("SMS")
    dispatcher = NotificationDispatcher({"Email": email, "Slack": slack, "SMS": sms})

    outcome = await dispatcher.dispatch(make_setting(email=True, sms=True), make_notification())

    assert outcome.success is True
    assert outcome.message == "Sent via 2 channels"
    assert len(email.sent) == 1
    assert len(sms.sent) == 1
    assert slack.sent == []


@pytest.mark.asyncio
async def test_no_channels_enabled_is_not_sent():
    dispatcher = NotificationDispatcher({"Email": StubChannel("Email")})
    outcome = await dispatcher.dispatch(make_setting(), make_notification())
    assert outcome.success is False
    assert outcome.error == "no_channels_enabled"


@pytest.mark.asyncio
async def test_one_channel_failing_does_not_stop_the_next():
    dispatcher = NotificationDispatcher(
        {
            "Email": StubChannel("Email", raises=RuntimeError("smtp down")),
            "Slack": StubChannel("Slack"),
        }
    )
    outcome = await dispatcher.dispatch(make_setting(email=True, slack=True), make_notification())

    assert outcome.success is True
    assert outcome.partial is True
    assert [r.status for r in outcome.results] == ["Error", "Sent"]
    assert outcome.results[0].error == "smtp down"


@pytest.mark.asyncio
async def test_all_channels_failing():
    dispatcher = NotificationDispatcher(
        {
            "Slack": StubChannel("Slack", ok=False, error="HTTP 410"),
            "Webhook": StubChannel("Webhook", ok=False, error="HTTP 500"),
        }
    )
    outcome = await dispatcher.dispatch(make_setting(slack=True, webhook=True), make_notification())
    assert outcome.success is False
    assert outcome.error == "HTTP 410"


@pytest.mark.asyncio
async def test_missing_transport_counts_as_failure():
    dispatcher = NotificationDispatcher({"Email": StubChannel("Email")})
    outcome = await dispatcher.dispatch(make_setting(email=True, sms=True), make_notification())
    assert outcome.message == "Sent via 1 of 2 channels"


@pytest.mark.asyncio
async def test_channel_audit_rows(test_db, seeded_shop):
    from db.models import NotificationLog

    log = DeliveryLog(test_db)
    dispatcher = NotificationDispatcher(
        {
            "Email": StubChannel("Email", log, recipient=None),
            "SMS": StubChannel("SMS", log, raises=RuntimeError("gateway down")),
            "Slack": StubChannel("Slack", log),
        }
    )
    await dispatcher.dispatch(make_setting(email=True, slack=True, sms=True), make_notification())

    rows = (await test_db.execute(select(NotificationLog))).scalars().all()
    by_channel: dict[str, list[str]] = {}
    for row in rows:
        by_channel.setdefault(row.channel, []).append(row.status)

    assert sorted(by_channel["Email"]) == ["Failed", "Pending"]
    assert sorted(by_channel["SMS"]) == ["Error", "Pending"]
    assert sorted(by_channel["Slack"]) == ["Pending", "Sent"]
    email_failed = next(r for r in rows if r.channel == "Email" and r.status == "Failed")
    assert email_failed.error_message == "No Email recipient configured"
    assert email_failed.alert_type == "IMMINENT_STOCKOUT"
