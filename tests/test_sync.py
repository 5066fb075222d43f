"""Tests for pull-based sync, the platform API client and the daily report.

Covers:
- Pagination: stops on a short page or at max_pages
- Upsert by order_id (re-sync converges, never duplicates)
- Rows without order_id are skipped, the run continues
- Affiliates touched by a sync are recomputed
- DigistoreClient retries / error mapping
- Daily report window and notification
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from app.exceptions import ConfigurationMissing, DigistoreApiError
from app.models.affiliate import Affiliate
from app.models.sale import Sale
from app.services.digistore_client import DigistoreClient
from app.services.stores import AffiliateStore, SaleStore
from app.services.sync_service import (
    build_daily_report,
    send_daily_report,
    sync_purchases,
)


class FakeClient:
    """Serves pre-built pages of purchases."""

    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def list_purchases(self, limit=50, page=1, start_date=None, end_date=None):
        self.calls.append((limit, page))
        rows = self.pages[page - 1] if page <= len(self.pages) else []
        return {"data": rows, "meta": {"page": page, "limit": limit}}


def _purchase(order_id, amount="10.00", affiliate_id=None, status="completed", **extra):
    row = {
        "order_id": order_id,
        "product_name": "Ebook",
        "amount": amount,
        "currency": "EUR",
        "buyer_email": "buyer@example.com",
        "affiliate_id": affiliate_id,
        "status": status,
    }
    row.update(extra)
    return row


def _sync(client, **kwargs):
    return sync_purchases(client, SaleStore(), AffiliateStore(), **kwargs)


class TestSyncPurchases:

    def test_stops_on_short_page(self, app):
        client = FakeClient([
            [_purchase("O1"), _purchase("O2")],
            [_purchase("O3")],
        ])
        result = _sync(client, limit=2, max_pages=5)

        assert client.calls == [(2, 1), (2, 2)]
        assert result.pages == 2
        assert result.synced == 3
        assert Sale.query.count() == 3

    def test_stops_at_max_pages(self, app):
        client = FakeClient([[_purchase(f"O{i}{j}") for j in range(2)] for i in range(5)])
        result = _sync(client, limit=2, max_pages=3)

        assert len(client.calls) == 3
        assert result.synced == 6

    def test_resync_converges(self, app):
        pages = [[_purchase("O1", amount="10.00")]]
        _sync(FakeClient(pages), limit=2)
        pages = [[_purchase("O1", amount="12.00", status="refunded")]]
        _sync(FakeClient(pages), limit=2)

        assert Sale.query.count() == 1
        sale = Sale.query.filter_by(order_id="O1").first()
        assert sale.amount == Decimal("12.00")
        assert sale.status == "refunded"

    def test_resync_without_date_keeps_created_at(self, app):
        _sync(FakeClient([[_purchase("O1", created_at="2024-01-01T00:00:00Z")]]), limit=2)
        _sync(FakeClient([[_purchase("O1")]]), limit=2)

        assert Sale.query.filter_by(order_id="O1").first().created_at.year == 2024

    def test_unknown_status_becomes_completed(self, app):
        _sync(FakeClient([[_purchase("O1", status="paid")]]), limit=2)
        assert Sale.query.filter_by(order_id="O1").first().status == "completed"

    def test_row_without_order_id_skipped(self, app):
        client = FakeClient([[{"amount": "5"}, _purchase("O2")]])
        result = _sync(client, limit=5)

        assert result.failed == 1
        assert result.synced == 1
        assert Sale.query.count() == 1

    def test_recomputes_touched_affiliates(self, app):
        client = FakeClient([[
            _purchase("O1", amount="100.00", affiliate_id="aff-1"),
            _purchase("O2", amount="50.00", affiliate_id="aff-1"),
        ]])
        result = _sync(client, limit=5, commission_rate=Decimal("0.10"))

        assert result.affiliates == {"aff-1"}
        affiliate = Affiliate.query.filter_by(affiliate_id="aff-1").first()
        assert affiliate.total_sales == 2
        assert affiliate.total_commission == Decimal("15.00")

    def test_resync_to_new_affiliate_recomputes_both(self, app):
        _sync(FakeClient([[_purchase("O1", affiliate_id="aff-1")]]), limit=5)
        result = _sync(FakeClient([[_purchase("O1", affiliate_id="aff-2")]]), limit=5)

        assert result.affiliates == {"aff-1", "aff-2"}
        totals = {a.affiliate_id: a.total_sales for a in Affiliate.query.all()}
        assert totals == {"aff-1": 0, "aff-2": 1}

    def test_api_error_propagates(self, app):
        client = MagicMock()
        client.list_purchases.side_effect = DigistoreApiError("down", code="API_ERROR")
        with pytest.raises(DigistoreApiError):
            _sync(client)


class TestDigistoreClient:

    def _client(self, http):
        return DigistoreClient(
            "key-123", "https://ds24.test/api/", http=http, max_retries=2,
            base_delay=0.5, sleep=MagicMock(),
        )

    def test_requires_api_key(self):
        with pytest.raises(ConfigurationMissing):
            DigistoreClient(None, "https://ds24.test/api")

    def test_list_purchases(self):
        http = MagicMock()
        http.request.return_value = MagicMock(
            ok=True, status_code=200,
            json=MagicMock(return_value={"data": [{"order_id": "O1"}], "meta": {"page": 1}}),
        )
        result = self._client(http).list_purchases(limit=10, page=1)

        assert result["data"] == [{"order_id": "O1"}]
        args, kwargs = http.request.call_args
        assert args == ("GET", "https://ds24.test/api/purchases")
        assert kwargs["params"] == {"limit": 10, "page": 1}
        assert kwargs["headers"]["X-DS-API-KEY"] == "key-123"

    def test_retries_then_succeeds(self):
        http = MagicMock()
        http.request.side_effect = [
            MagicMock(ok=False, status_code=503),
            requests.Timeout("slow"),
            MagicMock(ok=True, status_code=200, json=MagicMock(return_value={"data": []})),
        ]
        client = self._client(http)
        assert client.list_purchases()["data"] == []
        assert http.request.call_count == 3
        assert [c[0][0] for c in client._sleep.call_args_list] == [0.5, 1.0]

    def test_network_error_after_retries(self):
        http = MagicMock()
        http.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(DigistoreApiError) as exc:
            self._client(http).list_purchases()
        assert exc.value.code == "NETWORK_ERROR"
        assert http.request.call_count == 3

    def test_client_error_not_retried(self):
        http = MagicMock()
        http.request.return_value = MagicMock(ok=False, status_code=401, text="bad key")
        with pytest.raises(DigistoreApiError) as exc:
            self._client(http).get_purchase("O1")
        assert exc.value.code == "API_ERROR"
        assert exc.value.status_code == 401
        assert http.request.call_count == 1


class TestDailyReport:

    def test_counts_yesterday_completed_only(self, app, sale_factory):
        now = datetime.now().astimezone().replace(hour=9, minute=0, second=0, microsecond=0)
        midnight = now.replace(hour=0)
        yesterday_noon = (midnight - timedelta(hours=12)).astimezone(timezone.utc)

        sale_factory("Y1", "20.00", created_at=yesterday_noon)
        sale_factory("Y2", "30.00", created_at=yesterday_noon)
        sale_factory("YR", "99.00", status="refunded", created_at=yesterday_noon)
        sale_factory("TODAY", "5.00", created_at=midnight.astimezone(timezone.utc) + timedelta(hours=1))

        report = build_daily_report(SaleStore(), now=now.astimezone(timezone.utc))

        assert report.total_sales == 2
        assert report.total_revenue == Decimal("50.00")
        assert report.label == (midnight - timedelta(days=1)).strftime("%B %d, %Y")
        assert report.to_dict() == {
            "date": report.label,
            "totalSales": 2,
            "totalRevenue": 50.0,
        }

    def test_send_daily_report_notifies(self, app):
        notifier = MagicMock()
        report = send_daily_report(SaleStore(), notifier)

        notification = notifier.notify.call_args[0][0]
        assert notification.title == "Daily Sales Report"
        assert notification.email_template == "daily_report"
        assert notification.fields["Total Sales"] == report.total_sales == 0
