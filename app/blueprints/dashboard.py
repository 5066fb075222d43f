"""Dashboard API blueprint — read-only JSON for the sales dashboard.

Route Map:
  GET /sales  — paginated sales (limit, page, startDate, endDate)
  GET /stats  — today / week / month / total revenue and counts

Both degrade to empty / zeroed responses when storage isn't configured,
so the dashboard stays usable in a partially configured environment.
"""

import logging
import math
import re
from datetime import timedelta

from flask import Blueprint, jsonify, request

from app.exceptions import ConfigurationMissing
from app.services.event_normalizer import parse_timestamp
from app.services.stats_service import StatsAggregator, StatsSnapshot
from app.services.stores import SaleStore

logger = logging.getLogger(__name__)

dashboard_bp = Blueprint("dashboard", __name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 100
BARE_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _bad_request(message):
    return jsonify({"error": message}), 400


def _int_arg(name, default):
    """Return (value, error). Missing -> default; non-integer -> error."""
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default, None
    try:
        return int(raw), None
    except ValueError:
        return None, f"{name} must be an integer"


def _date_arg(name):
    raw = request.args.get(name)
    if not raw:
        return None, None
    parsed = parse_timestamp(raw)
    if parsed is None:
        return None, f"{name} must be an ISO-8601 date"
    return parsed, None


def _no_store(response):
    response.headers["Cache-Control"] = "no-store, max-age=0"
    return response


@dashboard_bp.route("/sales", methods=["GET"])
def list_sales():
    """Paginated sales, newest first."""
    limit, error = _int_arg("limit", DEFAULT_LIMIT)
    if error:
        return _bad_request(error)
    if limit < 1 or limit > MAX_LIMIT:
        return _bad_request(f"Limit must be between 1 and {MAX_LIMIT}")

    page, error = _int_arg("page", 1)
    if error:
        return _bad_request(error)
    if page < 1:
        return _bad_request("Page must be greater than 0")

    start, error = _date_arg("startDate")
    if error:
        return _bad_request(error)
    end, error = _date_arg("endDate")
    if error:
        return _bad_request(error)
    # A bare date as endDate covers that whole day
    if end is not None and BARE_DATE.match(request.args["endDate"].strip()):
        end += timedelta(days=1)
    if start and end and start >= end:
        return _bad_request("startDate must be before endDate")

    try:
        rows, total = SaleStore().query(
            start=start, end=end, limit=limit, offset=(page - 1) * limit
        )
    except ConfigurationMissing as e:
        logger.warning(f"Sales listing served empty: {e}")
        rows, total = [], 0

    return _no_store(jsonify({
        "data": [sale.to_dict() for sale in rows],
        "meta": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit) if total else 0,
        },
    }))


@dashboard_bp.route("/stats", methods=["GET"])
def stats():
    """Revenue / count windows. Recomputed on every call."""
    try:
        snapshot = StatsAggregator(SaleStore()).compute_stats()
    except ConfigurationMissing as e:
        logger.warning(f"Stats served zeroed: {e}")
        snapshot = StatsSnapshot.empty()

    return _no_store(jsonify(snapshot.to_dict()))
