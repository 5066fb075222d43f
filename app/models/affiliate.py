"""Affiliate model.

total_sales / total_commission are a materialized view over the sales
table: they are always overwritten by a full recompute from the
affiliate's completed sales, never incremented.
"""

import uuid
from datetime import datetime, timezone

from app.extensions import db


def _utcnow():
    return datetime.now(timezone.utc)


class Affiliate(db.Model):
    __tablename__ = "affiliates"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    affiliate_id = db.Column(
        db.String(255), unique=True, nullable=False, index=True
    )
    name = db.Column(db.String(255), nullable=False, default="Unknown")
    email = db.Column(db.String(255), nullable=False, default="")
    total_sales = db.Column(db.Integer, nullable=False, default=0)
    total_commission = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    def to_dict(self):
        return {
            "affiliate_id": self.affiliate_id,
            "name": self.name,
            "email": self.email,
            "total_sales": self.total_sales,
            "total_commission": float(self.total_commission or 0),
        }

    def __repr__(self):
        return f"<Affiliate {self.affiliate_id} sales={self.total_sales}>"
