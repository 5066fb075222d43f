"""Unit tests for WebhookProcessor with in-memory collaborators.

Covers:
- State transitions (completed, dropped, partially_failed)
- Failure isolation: rollup and notification failures never undo the sale
- Persistence failure is fatal to the event and skips side effects
- Event-id dedup only records completed events
- Unknown kinds cause no mutation
"""

import json
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from app.exceptions import DerivedStateFailure, NotificationFailure, PersistenceFailure
from app.services.webhook_service import (
    COMPLETED,
    DROPPED,
    PARTIALLY_FAILED,
    WebhookProcessor,
)


class FakeSaleStore:
    def __init__(self, fail=False):
        self.rows = {}
        self.fail = fail

    def upsert(self, record):
        return self.replace(record)[0]

    def replace(self, record):
        if self.fail:
            raise PersistenceFailure("database is down")
        previous = self.rows.get(record["order_id"], {}).get("affiliate_id")
        self.rows[record["order_id"]] = dict(record)
        return record, previous


class FakeAffiliate:
    def __init__(self, affiliate_id, name="Unknown", email=""):
        self.affiliate_id = affiliate_id
        self.name = name
        self.email = email
        self.total_sales = 0
        self.total_commission = Decimal("0")


class FakeAffiliateStore:
    def __init__(self, sale_store, fail_recompute=False):
        self.sale_store = sale_store
        self.affiliates = {}
        self.fail_recompute = fail_recompute

    def upsert(self, affiliate_id, name=None, email=None, total_sales=0, total_commission=0):
        affiliate = self.affiliates.setdefault(affiliate_id, FakeAffiliate(affiliate_id))
        affiliate.name = name or affiliate.name
        affiliate.email = email or affiliate.email
        affiliate.total_sales = total_sales
        affiliate.total_commission = Decimal(str(total_commission))
        return affiliate

    def recompute(self, affiliate_id, commission_rate):
        if self.fail_recompute:
            raise DerivedStateFailure("rollup table locked")
        completed = [
            r for r in self.sale_store.rows.values()
            if r["affiliate_id"] == affiliate_id and r["status"] == "completed"
        ]
        affiliate = self.affiliates.setdefault(affiliate_id, FakeAffiliate(affiliate_id))
        affiliate.total_sales = len(completed)
        affiliate.total_commission = sum(
            (r["amount"] for r in completed), Decimal("0")
        ) * commission_rate
        return affiliate


class FakeEventLog:
    def __init__(self):
        self.ids = set()

    def seen(self, event_id):
        return event_id in self.ids

    def record(self, event_id, event_kind, order_id=None):
        self.ids.add(event_id)


class BrokenEventLog(FakeEventLog):
    def seen(self, event_id):
        raise OperationalError("SELECT", {}, Exception("connection reset"))


class FakeNotifier:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def notify(self, notification):
        if self.fail:
            raise NotificationFailure("chat down")
        self.sent.append(notification)
        return {"chat": True}


def _processor(sale_store=None, affiliate_store=None, notifier=None, event_log=None):
    sale_store = sale_store or FakeSaleStore()
    return WebhookProcessor(
        sale_store=sale_store,
        affiliate_store=affiliate_store or FakeAffiliateStore(sale_store),
        notifier=notifier or FakeNotifier(),
        event_log=event_log if event_log is not None else FakeEventLog(),
        commission_rate=Decimal("0.20"),
    )


def _body(kind="on_payment", order_id="A1", amount="100.00", event_id="evt-1",
          affiliate_id="aff-1"):
    return json.dumps({
        "event": kind,
        "event_id": event_id,
        "data": {"order_id": order_id, "amount": amount, "affiliate_id": affiliate_id},
    }).encode()


class TestStates:

    def test_payment_completes(self):
        processor = _processor()
        outcome = processor.handle(_body(), "application/json")

        assert outcome.state == COMPLETED
        assert outcome.ok
        assert processor.sale_store.rows["A1"]["status"] == "completed"
        assert len(processor.notifier.sent) == 1

    def test_malformed_is_dropped(self):
        outcome = _processor().handle(b"{oops", "application/json")
        assert outcome.state == DROPPED
        assert outcome.reason == "malformed_payload"

    def test_invalid_is_dropped(self):
        outcome = _processor().handle(_body(order_id=""), "application/json")
        assert outcome.state == DROPPED
        assert outcome.reason == "validation_failed"

    def test_unknown_kind_completes_without_mutation(self):
        processor = _processor()
        outcome = processor.handle(_body(kind="on_chargeback"), "application/json")

        assert outcome.state == COMPLETED
        assert outcome.reason == "ignored"
        assert processor.sale_store.rows == {}
        assert processor.affiliate_store.affiliates == {}
        assert processor.notifier.sent == []


class TestFailureIsolation:

    def test_persistence_failure_is_partial_and_skips_side_effects(self):
        sale_store = FakeSaleStore(fail=True)
        notifier = FakeNotifier()
        log = FakeEventLog()
        processor = _processor(sale_store=sale_store, notifier=notifier, event_log=log)

        outcome = processor.handle(_body(), "application/json")

        assert outcome.state == PARTIALLY_FAILED
        assert "database is down" in outcome.errors[0]
        assert notifier.sent == []
        assert processor.affiliate_store.affiliates == {}
        # Not recorded, so a redelivery gets another chance
        assert log.ids == set()

    def test_rollup_failure_keeps_sale_and_notifies(self):
        sale_store = FakeSaleStore()
        processor = _processor(
            sale_store=sale_store,
            affiliate_store=FakeAffiliateStore(sale_store, fail_recompute=True),
        )

        outcome = processor.handle(_body(), "application/json")

        assert outcome.state == COMPLETED
        assert "A1" in sale_store.rows
        assert len(processor.notifier.sent) == 1
        assert any("rollup" in w for w in outcome.warnings)

    def test_notifier_failure_keeps_sale_and_rollup(self):
        processor = _processor(notifier=FakeNotifier(fail=True))

        outcome = processor.handle(_body(), "application/json")

        assert outcome.state == COMPLETED
        assert "A1" in processor.sale_store.rows
        assert processor.affiliate_store.affiliates["aff-1"].total_sales == 1
        assert any("notification" in w for w in outcome.warnings)

    def test_event_log_failure_is_partial_and_writes_nothing(self):
        notifier = FakeNotifier()
        processor = _processor(notifier=notifier, event_log=BrokenEventLog())

        outcome = processor.handle(_body(), "application/json")

        assert outcome.state == PARTIALLY_FAILED
        assert "connection reset" in outcome.errors[0]
        assert processor.sale_store.rows == {}
        assert processor.affiliate_store.affiliates == {}
        assert notifier.sent == []


class TestDedup:

    def test_second_delivery_dropped(self):
        processor = _processor()
        processor.handle(_body(), "application/json")
        outcome = processor.handle(_body(), "application/json")

        assert outcome.state == DROPPED
        assert outcome.reason == "already_processed"
        assert len(processor.notifier.sent) == 1

    def test_no_event_id_never_deduplicated(self):
        processor = _processor()
        body = json.dumps({"event": "on_payment", "data": {"order_id": "A1"}}).encode()
        processor.handle(body, "application/json")
        outcome = processor.handle(body, "application/json")

        assert outcome.state == COMPLETED
        assert len(processor.notifier.sent) == 2
        assert processor.event_log.ids == set()


class TestRollupConvergence:

    def test_payment_refund_payment_sequence(self):
        processor = _processor()
        processor.handle(_body(order_id="A1", event_id="e1"), "application/json")
        processor.handle(_body(order_id="A2", amount="50.00", event_id="e2"), "application/json")
        processor.handle(
            _body(kind="on_refund", order_id="A1", event_id="e3"), "application/json"
        )

        affiliate = processor.affiliate_store.affiliates["aff-1"]
        assert affiliate.total_sales == 1
        assert affiliate.total_commission == Decimal("10.0000")

    def test_affiliate_approved_without_id(self):
        processor = _processor()
        body = json.dumps({
            "event": "on_affiliate_approved",
            "data": {"order_id": "X"},
        }).encode()
        outcome = processor.handle(body, "application/json")

        assert outcome.state == COMPLETED
        assert outcome.reason == "missing_affiliate_id"
        assert processor.affiliate_store.affiliates == {}
        assert processor.notifier.sent == []

    def test_reassigned_sale_leaves_previous_affiliate(self):
        processor = _processor()
        processor.handle(_body(event_id="e1", affiliate_id="aff-1"), "application/json")
        processor.handle(_body(event_id="e2", affiliate_id="aff-2"), "application/json")

        affiliates = processor.affiliate_store.affiliates
        assert affiliates["aff-1"].total_sales == 0
        assert affiliates["aff-1"].total_commission == Decimal("0")
        assert affiliates["aff-2"].total_sales == 1

    def test_refund_without_affiliate_clears_previous_affiliate(self):
        processor = _processor()
        processor.handle(_body(event_id="e1"), "application/json")
        processor.handle(
            _body(kind="on_refund", event_id="e2", affiliate_id=None), "application/json"
        )

        affiliate = processor.affiliate_store.affiliates["aff-1"]
        assert processor.sale_store.rows["A1"]["status"] == "refunded"
        assert affiliate.total_sales == 0
        assert affiliate.total_commission == Decimal("0")
