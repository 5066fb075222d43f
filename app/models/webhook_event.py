"""Processed webhook event model (deduplication table).

Every webhook that carries an event_id and completes processing is
recorded here. Before processing, the pipeline checks this table; if
the event_id already exists the delivery is dropped as a redelivery —
no store writes, no duplicate notifications.
"""

import uuid

from app.extensions import db


class ProcessedWebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # platform event / IPN id
    event_kind = db.Column(
        db.String(255), nullable=False
    )  # e.g. "payment", "refund"
    order_id = db.Column(db.String(255), nullable=True)
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<ProcessedWebhookEvent {self.event_id} ({self.event_kind})>"
