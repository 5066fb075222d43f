"""Shared test fixtures for the sales monitor test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, inline webhook processing)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_sales: a handful of sales across statuses and dates
- mock_chat: patched requests.post for the chat webhook
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from app import create_app
from app.extensions import db as _db
from app.models.sale import Sale


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def mock_chat():
    """Patch the chat webhook POST so no test touches the network."""
    with patch("app.services.notification_service.requests.post") as mock_post:
        mock_post.return_value = MagicMock(ok=True, status_code=204, reason="No Content")
        yield mock_post


def make_sale(order_id, amount, status="completed", affiliate_id=None,
              created_at=None, product_name="Test Product"):
    """Insert and commit one Sale row."""
    sale = Sale(
        order_id=order_id,
        product_id="P-1",
        product_name=product_name,
        amount=Decimal(str(amount)),
        currency="EUR",
        buyer_email="buyer@example.com",
        buyer_name="Test Buyer",
        affiliate_id=affiliate_id,
        status=status,
        created_at=created_at or datetime.now(timezone.utc),
    )
    _db.session.add(sale)
    _db.session.commit()
    return sale


@pytest.fixture
def seed_sales(db_session):
    """Seed sales across statuses and age.

    - S-NOW-1   completed  50.00  just now
    - S-NOW-2   completed  25.50  just now       (affiliate aff-1)
    - S-REF     refunded   99.00  just now       (affiliate aff-1)
    - S-PEND    pending    10.00  just now
    - S-OLD-10D completed 100.00  10 days ago
    - S-OLD-60D completed 200.00  60 days ago
    """
    now = datetime.now(timezone.utc)
    return {
        "now": now,
        "sales": [
            make_sale("S-NOW-1", "50.00", created_at=now - timedelta(seconds=5)),
            make_sale("S-NOW-2", "25.50", affiliate_id="aff-1",
                      created_at=now - timedelta(seconds=4)),
            make_sale("S-REF", "99.00", status="refunded", affiliate_id="aff-1",
                      created_at=now - timedelta(seconds=3)),
            make_sale("S-PEND", "10.00", status="pending",
                      created_at=now - timedelta(seconds=2)),
            make_sale("S-OLD-10D", "100.00", created_at=now - timedelta(days=10)),
            make_sale("S-OLD-60D", "200.00", created_at=now - timedelta(days=60)),
        ],
    }


@pytest.fixture
def sale_factory(db_session):
    """make_sale() as a fixture."""
    return make_sale
