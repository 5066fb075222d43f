"""Webhook service — processing pipeline for platform sale events.

Responsible for:
- Running raw bodies through normalize -> validate -> dispatch
- Deduplicating redeliveries by event_id
- Dispatching to kind-specific handlers
- Isolating failures: a failed primary upsert is fatal to the event,
  a failed rollup recompute or notification is logged and skipped
- Running the pipeline detached from the HTTP request

States: received -> normalized -> validated -> dispatched ->
{completed, partially_failed}. Malformed, invalid and duplicate events
end in "dropped". None of these ever reach the webhook caller.
"""

import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from app.exceptions import (
    ConfigurationMissing,
    DerivedStateFailure,
    MalformedPayload,
    PersistenceFailure,
    ValidationFailed,
)
from app.services.event_normalizer import (
    AFFILIATE_APPROVED,
    PAYMENT,
    REBILL,
    REFUND,
    CanonicalEvent,
    normalize,
)
from app.services.event_validator import require_valid
from app.services.notification_service import (
    affiliate_approved_notification,
    build_notifier,
    new_sale_notification,
    refund_notification,
)
from app.services.stores import (
    AffiliateStore,
    ProcessedEventLog,
    SaleStore,
    commission_rate_from,
)

logger = logging.getLogger(__name__)

RECEIVED = "received"
NORMALIZED = "normalized"
VALIDATED = "validated"
DISPATCHED = "dispatched"
COMPLETED = "completed"
PARTIALLY_FAILED = "partially_failed"
DROPPED = "dropped"


@dataclass
class WebhookOutcome:
    """Result of running one delivery through the pipeline."""

    state: str = RECEIVED
    event: Optional[CanonicalEvent] = None
    reason: Optional[str] = None
    errors: list = field(default_factory=list)    # fatal
    warnings: list = field(default_factory=list)  # non-fatal (rollup, notification)

    @property
    def ok(self):
        return self.state == COMPLETED


class WebhookProcessor:
    """Orchestrates persistence, rollups and notifications for one event.

    All collaborators are passed in; nothing is read from global state.
    """

    def __init__(self, sale_store, affiliate_store, notifier, event_log=None,
                 commission_rate=Decimal("0.20"), default_currency="EUR"):
        self.sale_store = sale_store
        self.affiliate_store = affiliate_store
        self.notifier = notifier
        self.event_log = event_log
        self.commission_rate = Decimal(str(commission_rate))
        self.default_currency = default_currency

        self._handlers = {
            PAYMENT: self._handle_payment,
            REBILL: self._handle_payment,  # rebills are treated as payments
            REFUND: self._handle_refund,
            AFFILIATE_APPROVED: self._handle_affiliate_approved,
        }

    # ──────────────────────────────────────────────
    # Entry points
    # ──────────────────────────────────────────────

    def handle(self, raw, content_type=None):
        """Run a raw webhook body through the whole pipeline."""
        outcome = WebhookOutcome()

        try:
            event = normalize(raw, content_type, default_currency=self.default_currency)
        except MalformedPayload as e:
            logger.warning(f"Dropping malformed webhook payload: {e}")
            outcome.state = DROPPED
            outcome.reason = "malformed_payload"
            return outcome

        outcome.state = NORMALIZED
        outcome.event = event

        try:
            require_valid(event)
        except ValidationFailed as e:
            logger.warning(f"Dropping invalid webhook event: {e}")
            outcome.state = DROPPED
            outcome.reason = "validation_failed"
            return outcome

        outcome.state = VALIDATED
        return self.process(event, outcome)

    def process(self, event, outcome=None):
        """Dispatch a validated CanonicalEvent."""
        outcome = outcome or WebhookOutcome(state=VALIDATED, event=event)
        outcome.event = event
        order_id = event.payload.order_id if event.payload else None

        logger.info(
            f"Processing webhook event {event.event_id or '-'} "
            f"kind={event.kind} order={order_id}"
        )

        try:
            if self._is_duplicate(event):
                logger.info(f"Duplicate webhook event {event.event_id}, skipping")
                outcome.state = DROPPED
                outcome.reason = "already_processed"
                return outcome

            handler = self._handlers.get(event.kind)
            outcome.state = DISPATCHED

            if handler is None:
                logger.info(
                    f"No handler for event kind '{event.raw_kind}' "
                    f"(event_id={event.event_id}), ignoring"
                )
                outcome.state = COMPLETED
                outcome.reason = "ignored"
                return outcome

            handler(event, outcome)
        except (PersistenceFailure, ConfigurationMissing, SQLAlchemyError) as e:
            logger.error(
                f"Error handling {event.kind} event {event.event_id or '-'} "
                f"for order {order_id}: {e}",
                exc_info=True,
            )
            outcome.state = PARTIALLY_FAILED
            outcome.errors.append(str(e))
            return outcome

        outcome.state = COMPLETED
        self._record(event)
        logger.info(f"Webhook event {event.event_id or '-'} processed ({event.kind})")
        return outcome

    # ──────────────────────────────────────────────
    # Deduplication
    # ──────────────────────────────────────────────

    def _is_duplicate(self, event):
        if self.event_log is None or not event.event_id:
            return False
        return self.event_log.seen(event.event_id)

    def _record(self, event):
        if self.event_log is None or not event.event_id:
            return
        try:
            self.event_log.record(
                event.event_id,
                event.kind,
                order_id=event.payload.order_id if event.payload else None,
            )
        except (SQLAlchemyError, ConfigurationMissing) as e:
            logger.error(f"Failed to record webhook event {event.event_id}: {e}")

    # ──────────────────────────────────────────────
    # Handlers
    # ──────────────────────────────────────────────

    def _sale_record(self, payload, status, include_date=True):
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
        if include_date and payload.payment_date:
            record["created_at"] = payload.payment_date
        return record

    def _handle_payment(self, event, outcome):
        """payment / rebill: upsert completed sale -> rollup -> notify."""
        payload = event.payload
        _, previous = self.sale_store.replace(self._sale_record(payload, "completed"))
        self._refresh_affiliates(outcome, previous, payload.affiliate_id)

        self._notify(new_sale_notification(payload), outcome)

    def _handle_refund(self, event, outcome):
        """refund: replace sale with status=refunded -> rollup -> notify.

        The refund's own date is not the sale date, so created_at is left
        as first recorded.
        """
        payload = event.payload
        _, previous = self.sale_store.replace(
            self._sale_record(payload, "refunded", include_date=False)
        )
        self._refresh_affiliates(outcome, previous, payload.affiliate_id)

        self._notify(refund_notification(payload), outcome)

    def _handle_affiliate_approved(self, event, outcome):
        """affiliate_approved: upsert affiliate with zeroed rollups -> notify.

        Rollups are then recomputed so an affiliate whose sales arrived
        before the approval still converges to the sales table.
        """
        payload = event.payload
        if not payload.affiliate_id:
            logger.warning(
                f"Affiliate ID missing in affiliate_approved event {event.event_id or '-'}"
            )
            outcome.reason = "missing_affiliate_id"
            return

        affiliate = self.affiliate_store.upsert(
            payload.affiliate_id,
            name=payload.affiliate_name or "Unknown",
            email=payload.affiliate_email or "",
            total_sales=0,
            total_commission=0,
        )
        affiliate = self._refresh_affiliate(payload.affiliate_id, outcome) or affiliate

        self._notify(affiliate_approved_notification(affiliate), outcome)

    # ──────────────────────────────────────────────
    # Non-fatal steps
    # ──────────────────────────────────────────────

    def _refresh_affiliates(self, outcome, *affiliate_ids):
        """Recompute each distinct affiliate a sale write touched.

        A full-record replace can move a sale off its previous affiliate
        (reassigned, or written without one), so both sides are refreshed.
        """
        for affiliate_id in dict.fromkeys(a for a in affiliate_ids if a):
            self._refresh_affiliate(affiliate_id, outcome)

    def _refresh_affiliate(self, affiliate_id, outcome):
        """Recompute rollups. Failure is logged; the sale stays durable."""
        try:
            return self.affiliate_store.recompute(affiliate_id, self.commission_rate)
        except (DerivedStateFailure, SQLAlchemyError) as e:
            logger.error(f"Error updating affiliate stats for {affiliate_id}: {e}")
            outcome.warnings.append(f"rollup: {e}")
            return None

    def _notify(self, notification, outcome):
        try:
            self.notifier.notify(notification)
        except Exception as e:
            # Notifier already swallows transport errors; this catches bugs
            # in building or rendering so they can't fail the event.
            logger.error(f"Error sending {notification.type} notification: {e}")
            outcome.warnings.append(f"notification: {e}")


# ──────────────────────────────────────────────
# Wiring & detached execution
# ──────────────────────────────────────────────

def build_processor(app):
    """Build a WebhookProcessor wired to the app's stores and notifier."""
    return WebhookProcessor(
        sale_store=SaleStore(),
        affiliate_store=AffiliateStore(),
        notifier=build_notifier(app.config),
        event_log=ProcessedEventLog(),
        commission_rate=commission_rate_from(app.config),
        default_currency=app.config.get("DEFAULT_CURRENCY", "EUR"),
    )


def _run_pipeline(app, raw, content_type):
    """Thread target. Owns its app context; never lets an error escape."""
    with app.app_context():
        try:
            outcome = build_processor(app).handle(raw, content_type)
        except Exception:
            logger.exception("Unhandled error in webhook processing")
            return None

        if outcome.state == PARTIALLY_FAILED:
            logger.error(f"Webhook processing failed: {'; '.join(outcome.errors)}")
        elif outcome.warnings:
            logger.warning(
                f"Webhook processed with warnings: {'; '.join(outcome.warnings)}"
            )
        return outcome


def dispatch_detached(app, raw, content_type=None):
    """Process a webhook body independently of the request lifecycle.

    Runs on a daemon thread unless WEBHOOK_PROCESS_ASYNC is off (tests),
    in which case it runs inline and returns the outcome.
    """
    if not app.config.get("WEBHOOK_PROCESS_ASYNC", True):
        return _run_pipeline(app, raw, content_type)

    thread = threading.Thread(
        target=_run_pipeline,
        args=(app, raw, content_type),
        name="webhook-processor",
    )
    thread.daemon = True
    thread.start()
    return None
