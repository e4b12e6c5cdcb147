from datetime import datetime

from settlement.extensions import db


class WebhookEvent(db.Model):
    """One row per payment gateway delivery, keyed by the gateway's id."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
    )

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="gateway")
    event_id = db.Column(db.String(128), nullable=False)
    parent_order_id = db.Column(db.String(36), nullable=True, index=True)
    amount_minor = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(32), nullable=False, default="received")  # received | processed | duplicate | failed
    deliveries = db.Column(db.Integer, nullable=False, default=1)
    request_id = db.Column(db.String(64), nullable=True)
    payload_hash = db.Column(db.String(128), nullable=True)
    error = db.Column(db.Text, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider or "",
            "event_id": self.event_id,
            "parent_order_id": self.parent_order_id or "",
            "amount_minor": int(self.amount_minor) if self.amount_minor is not None else None,
            "status": self.status or "",
            "deliveries": int(self.deliveries or 0),
            "request_id": self.request_id or "",
            "payload_hash": self.payload_hash or "",
            "error": self.error or "",
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
