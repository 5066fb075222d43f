"""Sale model.

One row per platform order. order_id is the business key: every webhook
or sync write is an upsert keyed on it, never on the row id. A refund
for an existing order replaces the whole record with status='refunded'.
"""

import uuid
from datetime import datetime, timezone

from app.extensions import db


def _utcnow():
    return datetime.now(timezone.utc)


class Sale(db.Model):
    __tablename__ = "sales"

    # -- Valid statuses --
    STATUSES = [
        "completed",
        "pending",
        "refunded",
        "cancelled",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(255), unique=True, nullable=False, index=True
    )  # e.g. "DS24-2024-001"
    product_id = db.Column(db.String(255), nullable=True)
    product_name = db.Column(db.String(500), nullable=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    currency = db.Column(db.String(10), nullable=True)
    buyer_email = db.Column(db.String(255), nullable=True)
    buyer_name = db.Column(db.String(255), nullable=True)
    affiliate_id = db.Column(db.String(255), nullable=True, index=True)
    status = db.Column(
        db.String(50), nullable=False, default="completed", index=True
    )  # completed | pending | refunded | cancelled
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    def to_dict(self):
        """JSON-safe representation for the dashboard API."""
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "amount": float(self.amount or 0),
            "currency": self.currency,
            "buyer_email": self.buyer_email,
            "buyer_name": self.buyer_name,
            "affiliate_id": self.affiliate_id,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Sale {self.order_id} ({self.status})>"
