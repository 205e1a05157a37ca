"""
Email Delivery for alerts via SendGrid.
"""

import asyncio

import sendgrid
from python_http_client.exceptions import HTTPError as SendGridHTTPError
from sendgrid.helpers.mail import Mail

from alerts.channels import ChannelResult, ChannelTransport, Notification
from alerts.delivery_log import STATUS_FAILED, STATUS_SENT, DeliveryLog
from core.config import get_settings

SEVERITY_COLORS = {
    "CRITICAL": ("#fef2f2", "#dc2626"),
    "HIGH": ("#fff7ed", "#f59e0b"),
    "MEDIUM": ("#fefce8", "#ca8a04"),
}
DEFAULT_COLORS = ("#f0f9ff", "#0284c7")


def render_alert_email(notification: Notification) -> tuple[str, str]:
    """Return (subject, html) for an alert notification."""
    settings = get_settings()
    background, accent = SEVERITY_COLORS.get(notification.severity, DEFAULT_COLORS)
    alert_label = notification.alert_type.replace("_", " ").title()
    subject = f"{settings.app_name} Alert: {notification.title}"

    html_content = f"""
    <div style="font-family: Inter, sans-serif; max-width: 600px; margin: 0 auto;">
      <div style="background: #1e1b4b; color: white; padding: 24px; border-radius: 12px 12px 0 0;">
        <h1 style="margin: 0; font-size: 20px;">{settings.app_name} Alert</h1>
      </div>
      <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0;">
        <div style="background: {background}; border-left: 4px solid {accent};
                    padding: 16px; border-radius: 0 8px 8px 0; margin-bottom: 16px;">
          <p style="margin: 0; font-weight: 600; color: #1e293b;">
            {notification.severity} - {alert_label}
          </p>
        </div>
        <p style="color: #334155; line-height: 1.6;">{notification.message}</p>
        <p style="color: #64748b;"><strong>Product:</strong> {notification.product_title}</p>
        <p style="color: #64748b;"><strong>Shop:</strong> {notification.shop_domain}</p>
      </div>
    </div>
    """
    return subject, html_content


class EmailChannel(ChannelTransport):
    channel = "Email"

    def __init__(self, delivery_log: DeliveryLog | None = None, client: sendgrid.SendGridAPIClient | None = None):
        super().__init__(delivery_log)
        self._client = client

    def recipient(self, setting) -> str | None:
        return setting.email_address

    def _sendgrid(self) -> sendgrid.SendGridAPIClient | None:
        if self._client is not None:
            return self._client
        api_key = get_settings().sendgrid_api_key
        if not api_key:
            return None
        return sendgrid.SendGridAPIClient(api_key=api_key)

    async def _send(self, notification: Notification, recipient: str, setting) -> ChannelResult:
        sg = self._sendgrid()
        if sg is None:
            return ChannelResult(self.channel, False, STATUS_FAILED, error="SendGrid API key not configured")

        subject, html_content = render_alert_email(notification)
        email = Mail(
            from_email=get_settings().alert_from_email,
            to_emails=recipient,
            subject=subject,
            html_content=html_content,
        )
        # The SendGrid client is synchronous.
        try:
            response = await asyncio.to_thread(sg.send, email)
        except SendGridHTTPError as exc:
            return ChannelResult(
                self.channel, False, STATUS_FAILED, error=f"SendGrid returned {exc.status_code}", recipient=recipient
            )
        if response.status_code in (200, 201, 202):
            return ChannelResult(self.channel, True, STATUS_SENT, recipient=recipient)
        return ChannelResult(
            self.channel, False, STATUS_FAILED, error=f"SendGrid returned {response.status_code}", recipient=recipient
        )
