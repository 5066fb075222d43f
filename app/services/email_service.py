"""
Email delivery for sale alerts and reports.

Uses Google Workspace SMTP (smtp.gmail.com) by default. Bodies are
rendered from paired Jinja templates under templates/emails/ — a .txt
and an .html with the same base name — and sent as multipart/alternative.

Usage:
    from app.services.email_service import render_email, send_email_sync

    text, html = render_email("new_sale", {"order_id": "A1"})
    send_email_sync("owner@example.com", "New Sale", text, html)
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app, render_template

logger = logging.getLogger(__name__)


def email_configured(app=None):
    """True when SMTP credentials are present."""
    app = app or current_app
    return bool(app.config.get("MAIL_USERNAME") and app.config.get("MAIL_PASSWORD"))


def render_email(template_name, context=None):
    """Render emails/<template_name>.txt and .html. Returns (text, html)."""
    context = context or {}
    text_body = render_template(f"emails/{template_name}.txt", **context)
    html_body = render_template(f"emails/{template_name}.html", **context)
    return text_body, html_body


def _build_message(app, to, subject, text_body, html_body, reply_to=None):
    from_name = app.config.get("MAIL_FROM_NAME", "Sales Monitor")
    from_email = app.config.get("MAIL_FROM_ADDRESS") or app.config.get("MAIL_USERNAME", "")

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{from_name} <{from_email}>"
    msg["To"] = to if isinstance(to, str) else ", ".join(to)

    if reply_to:
        msg["Reply-To"] = reply_to

    # Plain text first, HTML last; clients render the last part they support
    if text_body:
        msg.attach(MIMEText(text_body, "plain"))
    if html_body:
        msg.attach(MIMEText(html_body, "html"))
    return msg


def _send_smtp(app, msg):
    """Deliver a built message. Returns True if the SMTP server accepted it."""
    host = app.config.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    port = app.config.get("MAIL_SMTP_PORT", 587)
    username = app.config.get("MAIL_USERNAME")
    password = app.config.get("MAIL_PASSWORD")

    if not username or not password:
        logger.debug("Email not sent — MAIL_USERNAME or MAIL_PASSWORD not configured.")
        return False

    try:
        with smtplib.SMTP(host, port, timeout=30) as server:
            server.ehlo()
            server.starttls()
            server.ehlo()
            server.login(username, password)
            server.send_message(msg)
        logger.info(f"Email sent to {msg['To']} — {msg['Subject']}")
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email to {msg['To']}: {e}")
        return False


def send_email_sync(to, subject, text_body, html_body, reply_to=None):
    """Send an email and block until the SMTP exchange finishes.

    Callers on the webhook path are already running off the request
    thread, so blocking here doesn't delay the HTTP response.

    Returns True on delivery, False if unconfigured or delivery failed.
    """
    app = current_app._get_current_object()
    msg = _build_message(app, to, subject, text_body, html_body, reply_to=reply_to)
    return _send_smtp(app, msg)
