"""Sync service — pull-based reconciliation and the daily sales report.

Responsible for:
- Paging through the platform's purchases API and upserting each
  purchase into the sale store by order_id
- Recomputing rollups for every affiliate touched by a sync run
- Summarizing yesterday's completed sales and sending the report

Both entry points are called by schedulers (cron routes / CLI), never
by the webhook path. Sync sends no per-sale notifications.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.exceptions import DerivedStateFailure, PersistenceFailure
from app.models.sale import Sale
from app.services.event_normalizer import FIELD_ALIASES, normalize_payload
from app.services.notification_service import daily_report_notification

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    pages: int = 0
    fetched: int = 0
    synced: int = 0
    failed: int = 0
    affiliates: set = field(default_factory=set)

    def to_dict(self):
        return {
            "pages": self.pages,
            "fetched": self.fetched,
            "synced": self.synced,
            "failed": self.failed,
            "affiliates": sorted(self.affiliates),
        }


def _purchase_record(purchase, default_currency):
    payload = normalize_payload(purchase, default_currency)
    status = payload.status if payload.status in Sale.STATUSES else "completed"
    record = {
        "order_id": payload.order_id,
        "product_id": payload.product_id,
        "product_name": payload.product_name,
        "amount": payload.amount,
        "currency": payload.currency,
        "buyer_email": payload.buyer_email,
        "buyer_name": payload.buyer_name,
        "affiliate_id": payload.affiliate_id,
        "status": status,
    }
    # Only a real purchase date may move created_at; re-syncs must not
    if any(purchase.get(alias) for alias in FIELD_ALIASES["payment_date"]):
        record["created_at"] = payload.payment_date
    return record


def sync_purchases(client, sale_store, affiliate_store, limit=50, max_pages=5,
                   commission_rate=Decimal("0.20"), default_currency="EUR"):
    """Pull purchases page by page and upsert them.

    Stops at the first short page or after max_pages. A purchase that
    fails to save is logged and skipped; the run continues.

    Raises DigistoreApiError if the API itself fails.
    """
    result = SyncResult()
    page = 1

    while page <= max_pages:
        logger.info(f"Fetching purchases page {page} (limit {limit})")
        response = client.list_purchases(limit=limit, page=page)
        purchases = response.get("data") or []
        result.pages += 1
        result.fetched += len(purchases)

        for purchase in purchases:
            record = _purchase_record(purchase, default_currency)
            if not record["order_id"]:
                logger.warning(f"Skipping purchase without order_id on page {page}")
                result.failed += 1
                continue
            try:
                _, previous = sale_store.replace(record)
            except PersistenceFailure as e:
                logger.error(f"Error saving purchase {record['order_id']}: {e}")
                result.failed += 1
                continue
            result.synced += 1
            result.affiliates.update(a for a in (previous, record["affiliate_id"]) if a)

        if len(purchases) < limit:
            break
        page += 1
    else:
        logger.info(f"Reached page limit ({max_pages}), stopping sync")

    for affiliate_id in sorted(result.affiliates):
        try:
            affiliate_store.recompute(affiliate_id, commission_rate)
        except DerivedStateFailure as e:
            logger.error(f"Error updating affiliate stats for {affiliate_id}: {e}")

    logger.info(
        f"Data synchronization complete. Synced {result.synced} of "
        f"{result.fetched} purchases ({result.failed} failed)."
    )
    return result


# ──────────────────────────────────────────────
# Daily report
# ──────────────────────────────────────────────

@dataclass
class DailyReport:
    label: str
    start: datetime
    end: datetime
    total_sales: int = 0
    total_revenue: Decimal = Decimal("0")
    sales: list = field(default_factory=list)

    def to_dict(self):
        return {
            "date": self.label,
            "totalSales": self.total_sales,
            "totalRevenue": float(self.total_revenue),
        }


def build_daily_report(sale_store, now=None):
    """Summarize completed sales from yesterday (local midnight to midnight)."""
    now = now or datetime.now(timezone.utc)
    local_midnight = now.astimezone().replace(hour=0, minute=0, second=0, microsecond=0)
    start_local = local_midnight - timedelta(days=1)

    rows, count = sale_store.query(
        start=start_local.astimezone(timezone.utc),
        end=local_midnight.astimezone(timezone.utc),
        status="completed",
    )
    revenue = sum((Decimal(str(row.amount or 0)) for row in rows), Decimal("0"))

    return DailyReport(
        label=start_local.strftime("%B %d, %Y"),
        start=start_local,
        end=local_midnight,
        total_sales=count,
        total_revenue=revenue,
        sales=rows,
    )


def send_daily_report(sale_store, notifier, now=None):
    """Build yesterday's report and hand it to the notifier."""
    report = build_daily_report(sale_store, now=now)
    logger.info(
        f"Daily report for {report.label}: {report.total_sales} sales, "
        f"{report.total_revenue} revenue"
    )
    notifier.notify(daily_report_notification(report))
    return report


# ──────────────────────────────────────────────
# Wiring for schedulers (cron routes / CLI)
# ──────────────────────────────────────────────

def run_sync(config, limit=None, max_pages=None, client=None):
    """Sync using app config. Raises ConfigurationMissing / DigistoreApiError."""
    from app.services.digistore_client import DigistoreClient
    from app.services.stores import AffiliateStore, SaleStore, commission_rate_from

    return sync_purchases(
        client or DigistoreClient.from_config(config),
        SaleStore(),
        AffiliateStore(),
        limit=limit or config.get("SYNC_PAGE_SIZE", 50),
        max_pages=max_pages or config.get("SYNC_MAX_PAGES", 5),
        commission_rate=commission_rate_from(config),
        default_currency=config.get("DEFAULT_CURRENCY", "EUR"),
    )


def run_daily_report(config, now=None):
    """Send yesterday's report using app config."""
    from app.services.notification_service import build_notifier
    from app.services.stores import SaleStore

    return send_daily_report(SaleStore(), build_notifier(config), now=now)
