"""Sale and affiliate stores — durable, idempotent upserts by business key.

Responsible for:
- Upserting sales keyed on order_id (full record replace)
- Range / status / paginated reads of sales
- Upserting affiliates keyed on affiliate_id
- Recomputing affiliate rollups wholesale from completed sales
- Recording processed webhook event ids for deduplication

Both stores commit their own writes so a sale is durable before any
derived-state or notification step runs. Concurrent writers for the same
business key race at the database: the loser of an insert race retries
as an update (last writer wins).
"""

import logging
from decimal import Decimal

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.exceptions import ConfigurationMissing, DerivedStateFailure, PersistenceFailure
from app.extensions import db, storage_configured
from app.models.affiliate import Affiliate
from app.models.sale import Sale
from app.models.webhook_event import ProcessedWebhookEvent

logger = logging.getLogger(__name__)

# Columns a sale upsert replaces. created_at is only replaced when the
# caller supplies one.
SALE_FIELDS = (
    "product_id",
    "product_name",
    "amount",
    "currency",
    "buyer_email",
    "buyer_name",
    "affiliate_id",
    "status",
)

CENTS = Decimal("0.01")


def _require_storage():
    if not storage_configured(current_app):
        raise ConfigurationMissing("DATABASE_URL is not configured — storage unavailable")


def _to_decimal(value):
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class SaleStore:
    """Sale persistence over the sales table."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def _apply(self, sale, record):
        for name in SALE_FIELDS:
            if name in record:
                setattr(sale, name, record[name])
        if record.get("created_at"):
            sale.created_at = record["created_at"]

    def upsert(self, record):
        """Insert or replace the sale identified by record["order_id"].

        Returns the persisted Sale.
        Raises ConfigurationMissing if storage isn't configured,
        PersistenceFailure on database errors.
        """
        sale, _ = self.replace(record)
        return sale

    def replace(self, record):
        """upsert() that also returns the row's affiliate_id before the write.

        Returns (sale, previous_affiliate_id); previous is None for a new
        row. Callers use it to recompute an affiliate the sale moved away
        from.
        """
        _require_storage()
        order_id = record.get("order_id")
        if not order_id:
            raise PersistenceFailure("Sale upsert requires an order_id")

        previous_affiliate_id = None
        try:
            sale = self.session.query(Sale).filter_by(order_id=order_id).first()
            if sale is None:
                sale = Sale(order_id=order_id)
                self.session.add(sale)
            else:
                previous_affiliate_id = sale.affiliate_id
            self._apply(sale, record)
            self.session.commit()
        except IntegrityError:
            # Lost an insert race for this order_id, retry as an update
            self.session.rollback()
            try:
                sale = self.session.query(Sale).filter_by(order_id=order_id).one()
                previous_affiliate_id = sale.affiliate_id
                self._apply(sale, record)
                self.session.commit()
            except SQLAlchemyError as e:
                self.session.rollback()
                raise PersistenceFailure(f"Sale upsert failed for {order_id}: {e}") from e
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceFailure(f"Sale upsert failed for {order_id}: {e}") from e

        logger.info(f"Sale upserted: {order_id} ({sale.status}, {sale.amount})")
        return sale, previous_affiliate_id

    def get(self, order_id):
        """Return the Sale for order_id or None."""
        _require_storage()
        return self.session.query(Sale).filter_by(order_id=order_id).first()

    def query(self, start=None, end=None, status=None, limit=None, offset=0):
        """Return (rows, count) of sales in [start, end), newest first.

        count is the total number of matching rows, independent of
        limit / offset.
        """
        _require_storage()
        q = self.session.query(Sale)
        if start is not None:
            q = q.filter(Sale.created_at >= start)
        if end is not None:
            q = q.filter(Sale.created_at < end)
        if status is not None:
            q = q.filter(Sale.status == status)

        count = q.order_by(None).count()
        q = q.order_by(Sale.created_at.desc(), Sale.order_id)
        if offset:
            q = q.offset(offset)
        if limit is not None:
            q = q.limit(limit)
        return q.all(), count


class AffiliateStore:
    """Affiliate persistence and rollup recompute."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def get(self, affiliate_id):
        _require_storage()
        return self.session.query(Affiliate).filter_by(affiliate_id=affiliate_id).first()

    def upsert(self, affiliate_id, name=None, email=None,
               total_sales=0, total_commission=0):
        """Create or update the affiliate identified by affiliate_id.

        Raises ConfigurationMissing / PersistenceFailure.
        """
        _require_storage()
        try:
            affiliate = self.session.query(Affiliate).filter_by(affiliate_id=affiliate_id).first()
            if affiliate is None:
                affiliate = Affiliate(affiliate_id=affiliate_id)
                self.session.add(affiliate)
            affiliate.name = name or affiliate.name or "Unknown"
            affiliate.email = email or affiliate.email or ""
            affiliate.total_sales = int(total_sales)
            affiliate.total_commission = _to_decimal(total_commission).quantize(CENTS)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceFailure(
                f"Affiliate upsert failed for {affiliate_id}: {e}"
            ) from e

        logger.info(f"Affiliate upserted: {affiliate_id}")
        return affiliate

    def sum_sales_for(self, affiliate_id):
        """Return (count, total_amount) over the affiliate's completed sales."""
        _require_storage()
        count, total = (
            self.session.query(
                func.count(Sale.id),
                func.coalesce(func.sum(Sale.amount), 0),
            )
            .filter(Sale.affiliate_id == affiliate_id, Sale.status == "completed")
            .one()
        )
        return int(count or 0), _to_decimal(total)

    def recompute(self, affiliate_id, commission_rate):
        """Overwrite the affiliate's rollups from its completed sales.

        Creates a placeholder affiliate row if the sale arrived before the
        approval event. Raises DerivedStateFailure on any storage error.
        """
        try:
            count, total = self.sum_sales_for(affiliate_id)
            affiliate = self.session.query(Affiliate).filter_by(affiliate_id=affiliate_id).first()
            if affiliate is None:
                affiliate = Affiliate(affiliate_id=affiliate_id, name="Unknown", email="")
                self.session.add(affiliate)
            affiliate.total_sales = count
            affiliate.total_commission = (total * _to_decimal(commission_rate)).quantize(CENTS)
            self.session.commit()
        except ConfigurationMissing:
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            raise DerivedStateFailure(
                f"Rollup recompute failed for affiliate {affiliate_id}: {e}"
            ) from e

        logger.info(
            f"Affiliate {affiliate_id} rollup: {count} sales, "
            f"{affiliate.total_commission} commission"
        )
        return affiliate


class ProcessedEventLog:
    """Event-level deduplication over the webhook_events table."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def seen(self, event_id):
        _require_storage()
        return (
            self.session.query(ProcessedWebhookEvent)
            .filter_by(event_id=event_id)
            .first()
            is not None
        )

    def record(self, event_id, event_kind, order_id=None):
        """Record a processed event. A concurrent duplicate is logged, not raised."""
        _require_storage()
        try:
            self.session.add(ProcessedWebhookEvent(
                event_id=event_id,
                event_kind=event_kind,
                order_id=order_id,
            ))
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            logger.info(f"Webhook event {event_id} already recorded by a concurrent delivery")


def commission_rate_from(config):
    """AFFILIATE_COMMISSION_RATE as a Decimal (default 20%)."""
    return Decimal(str(config.get("AFFILIATE_COMMISSION_RATE") or "0.20"))
