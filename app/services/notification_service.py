"""Notification service — best-effort fan-out to chat and email.

Responsible for:
- Posting color-coded embeds to a Discord-style chat webhook
- Sending multipart emails through the email service
- Building the sale / refund / affiliate / daily-report notifications

Notifications are observability, not correctness: Notifier methods never
raise. Transport errors are logged; a channel without configuration is a
silent no-op.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import requests

from app.exceptions import NotificationFailure
from app.services import email_service

logger = logging.getLogger(__name__)

# Embed colors by notification type
COLOR_SUCCESS = 0x00FF00
COLOR_REFUND = 0xFF0000
COLOR_INFO = 0x0099FF

_TYPE_COLORS = {
    "sale": COLOR_SUCCESS,
    "refund": COLOR_REFUND,
}


def format_money(amount, currency=None):
    """Format an amount as '1,234.50 EUR'."""
    value = Decimal(str(amount or 0)).quantize(Decimal("0.01"))
    text = f"{value:,.2f}"
    return f"{text} {currency}" if currency else text


@dataclass
class Notification:
    """Channel-neutral notification."""

    type: str  # sale | refund | affiliate_approved | report
    title: str
    message: str
    fields: dict = field(default_factory=dict)
    email_subject: Optional[str] = None
    email_template: Optional[str] = None  # base name under templates/emails/
    email_context: dict = field(default_factory=dict)

    @property
    def color(self):
        return _TYPE_COLORS.get(self.type, COLOR_INFO)

    def to_embed(self):
        return {
            "title": self.title,
            "description": self.message,
            "color": self.color,
            "fields": [
                {"name": name, "value": str(value) if value not in (None, "") else "N/A",
                 "inline": True}
                for name, value in self.fields.items()
            ],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


# ──────────────────────────────────────────────
# Channels
# ──────────────────────────────────────────────

class DiscordChannel:
    """Chat channel via an incoming webhook URL."""

    def __init__(self, webhook_url=None, timeout=10, http=None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.http = http or requests

    @property
    def is_configured(self):
        return bool(self.webhook_url)

    def send_chat(self, embed):
        """POST one embed. Returns False when unconfigured.

        Raises NotificationFailure on non-2xx or network errors.
        """
        if not self.is_configured:
            logger.debug("Chat webhook URL not configured, skipping notification")
            return False

        try:
            resp = self.http.post(
                self.webhook_url,
                json={"embeds": [embed]},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise NotificationFailure(f"Chat webhook unreachable: {e}") from e

        if not resp.ok:
            raise NotificationFailure(
                f"Chat webhook error: HTTP {resp.status_code} {resp.reason}"
            )
        return True


class EmailChannel:
    """Email channel backed by the SMTP email service."""

    @property
    def is_configured(self):
        return email_service.email_configured()

    def send_email(self, to, subject, text, html):
        if not to or not self.is_configured:
            logger.debug("Email channel not configured, skipping notification")
            return False
        if not email_service.send_email_sync(to, subject, text, html):
            raise NotificationFailure(f"Email delivery to {to} failed")
        return True


# ──────────────────────────────────────────────
# Notifier
# ──────────────────────────────────────────────

class Notifier:
    """Fans a Notification out to every configured channel. Never raises."""

    def __init__(self, chat=None, email=None, recipient=None):
        self.chat = chat
        self.email = email
        self.recipient = recipient

    def send_chat(self, embed):
        if self.chat is None:
            return False
        try:
            return self.chat.send_chat(embed)
        except Exception as e:
            logger.error(f"Chat notification failed: {e}")
            return False

    def send_email(self, to, subject, text, html):
        if self.email is None:
            return False
        try:
            return self.email.send_email(to, subject, text, html)
        except Exception as e:
            logger.error(f"Email notification failed: {e}")
            return False

    def notify(self, notification):
        """Deliver to chat, and to email when the notification has a template."""
        results = {"chat": self.send_chat(notification.to_embed())}

        if notification.email_template and self.recipient:
            try:
                text, html = email_service.render_email(
                    notification.email_template, notification.email_context
                )
            except Exception as e:
                logger.error(
                    f"Failed to render email template {notification.email_template}: {e}"
                )
                results["email"] = False
            else:
                results["email"] = self.send_email(
                    self.recipient,
                    notification.email_subject or notification.title,
                    text,
                    html,
                )
        return results


def build_notifier(config):
    """Build a Notifier from app config."""
    return Notifier(
        chat=DiscordChannel(config.get("DISCORD_WEBHOOK_URL")),
        email=EmailChannel(),
        recipient=config.get("NOTIFICATION_EMAIL"),
    )


# ──────────────────────────────────────────────
# Notification builders
# ──────────────────────────────────────────────

def new_sale_notification(payload):
    """Notification for a payment / rebill event payload."""
    amount = format_money(payload.amount, payload.currency)
    context = {
        "order_id": payload.order_id,
        "product_name": payload.product_name or "Unknown product",
        "amount": amount,
        "buyer_name": payload.buyer_name or "",
        "buyer_email": payload.buyer_email or "",
    }
    return Notification(
        type="sale",
        title="New Sale!",
        message=f"New purchase of {context['product_name']}",
        fields={
            "Order ID": payload.order_id,
            "Product": payload.product_name,
            "Amount": amount,
            "Customer": payload.buyer_name,
        },
        email_subject=f"New Sale: {context['product_name']}",
        email_template="new_sale",
        email_context=context,
    )


def refund_notification(payload):
    return Notification(
        type="refund",
        title="Refund Processed",
        message=f"Refund for {payload.product_name or payload.order_id}",
        fields={
            "Order ID": payload.order_id,
            "Product": payload.product_name,
            "Amount": format_money(payload.amount, payload.currency),
        },
    )


def affiliate_approved_notification(affiliate):
    return Notification(
        type="affiliate_approved",
        title="New Affiliate Approved",
        message="A new affiliate has been approved",
        fields={
            "Affiliate ID": affiliate.affiliate_id,
            "Name": affiliate.name,
            "Email": affiliate.email,
        },
    )


def daily_report_notification(report):
    """Notification for a DailyReport (see sync_service)."""
    revenue = format_money(report.total_revenue)
    return Notification(
        type="report",
        title="Daily Sales Report",
        message=f"Sales for {report.label}",
        fields={
            "Date": report.label,
            "Total Sales": report.total_sales,
            "Total Revenue": revenue,
        },
        email_subject=f"Daily Sales Report - {report.label}",
        email_template="daily_report",
        email_context={
            "date": report.label,
            "total_sales": report.total_sales,
            "total_revenue": revenue,
            "sales": [
                {
                    "order_id": sale.order_id,
                    "product_name": sale.product_name or "",
                    "amount": format_money(sale.amount, sale.currency),
                }
                for sale in report.sales[:10]
            ],
        },
    )
