"""Webhooks blueprint — /webhook

Receives platform sale events (JSON, form-encoded, or raw text).
Registered under the legacy aliases /api/webhook and
/api/digistore/webhook as well.

The platform retries anything that isn't a fast 200, so POST always
answers 200 "OK" — parsing, validation and processing failures are
logged server-side only.
"""

import logging

from flask import Blueprint, Response, current_app, request

from app.services.webhook_service import dispatch_detached

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)

WEBHOOK_PATHS = ("/webhook", "/api/webhook", "/api/digistore/webhook")


def _text(body):
    return Response(body, status=200, mimetype="text/plain")


def receive_webhook():
    """Acknowledge immediately, process detached.

    1. Read the raw body + content type while the request is alive
    2. Hand both to the detached processor
    3. Return 200 "OK" whatever happened
    """
    try:
        raw = request.get_data(cache=False)
        content_type = request.content_type
        dispatch_detached(current_app._get_current_object(), raw, content_type)
    except Exception:
        logger.exception("Failed to hand off webhook for processing")
    return _text("OK")


def webhook_info():
    """Liveness / identification."""
    return _text("Sales webhook endpoint - use POST")


for _path in WEBHOOK_PATHS:
    webhooks_bp.add_url_rule(
        _path, endpoint=f"receive{_path.replace('/', '_')}",
        view_func=receive_webhook, methods=["POST"],
    )
    webhooks_bp.add_url_rule(
        _path, endpoint=f"info{_path.replace('/', '_')}",
        view_func=webhook_info, methods=["GET"],
    )
