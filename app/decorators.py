"""
Custom route decorators for shared-secret access control.

- api_key_required: X-API-Key header must equal API_SECRET_KEY.
- cron_secret_required: Authorization must be "Bearer <CRON_SECRET>"
  when CRON_SECRET is configured (open when it isn't, for local runs).
"""

import hmac
from functools import wraps

from flask import abort, current_app, request


def _matches(supplied, expected):
    return hmac.compare_digest((supplied or "").encode(), expected.encode())


def api_key_required(f):
    """Require the X-API-Key shared secret."""

    @wraps(f)
    def decorated(*args, **kwargs):
        expected = current_app.config.get("API_SECRET_KEY")
        # No secret configured means nobody can call the route
        if not expected or not _matches(request.headers.get("X-API-Key"), expected):
            abort(401)
        return f(*args, **kwargs)

    return decorated


def cron_secret_required(f):
    """Require the Bearer CRON_SECRET token, if one is configured."""

    @wraps(f)
    def decorated(*args, **kwargs):
        expected = current_app.config.get("CRON_SECRET")
        if expected and not _matches(
            request.headers.get("Authorization"), f"Bearer {expected}"
        ):
            abort(401)
        return f(*args, **kwargs)

    return decorated
