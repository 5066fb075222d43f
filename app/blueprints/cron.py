"""Scheduler blueprint — reconciliation and reporting triggers.

Route Map:
  POST /sync              — one-page manual sync (X-API-Key, rate limited)
  GET  /cron/sync-data    — paginated sync (Bearer CRON_SECRET)
  GET  /cron/daily-report — yesterday's summary (Bearer CRON_SECRET)

Upstream error details are logged, never returned to the caller.
"""

import logging

from flask import Blueprint, current_app, jsonify

from app.decorators import api_key_required, cron_secret_required
from app.exceptions import ConfigurationMissing, DigistoreApiError
from app.extensions import limiter
from app.services.sync_service import run_daily_report, run_sync

logger = logging.getLogger(__name__)

cron_bp = Blueprint("cron", __name__)

MANUAL_SYNC_LIMIT = 100


def _failed(message):
    return jsonify({"success": False, "error": message}), 500


@cron_bp.route("/sync", methods=["POST"])
@limiter.limit("10 per minute")
@api_key_required
def manual_sync():
    """Pull the most recent page of purchases on demand."""
    try:
        result = run_sync(current_app.config, limit=MANUAL_SYNC_LIMIT, max_pages=1)
    except (DigistoreApiError, ConfigurationMissing) as e:
        logger.error(f"Manual sync failed: {e}")
        return _failed("Sync failed")

    return jsonify({
        "success": True,
        "message": f"Synced {result.synced} sales",
        "count": result.synced,
    })


@cron_bp.route("/cron/sync-data", methods=["GET"])
@cron_secret_required
def cron_sync_data():
    try:
        result = run_sync(current_app.config)
    except (DigistoreApiError, ConfigurationMissing) as e:
        logger.error(f"Scheduled sync failed: {e}")
        return _failed("Sync failed")

    return jsonify({"success": True, **result.to_dict()})


@cron_bp.route("/cron/daily-report", methods=["GET"])
@cron_secret_required
def cron_daily_report():
    try:
        report = run_daily_report(current_app.config)
    except ConfigurationMissing as e:
        logger.error(f"Daily report failed: {e}")
        return _failed("Report failed")

    return jsonify({"success": True, "report": report.to_dict()})
