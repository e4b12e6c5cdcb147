import json
from datetime import datetime

from settlement.extensions import db


class Notification(db.Model):
    """Outbox row consumed by the notification service."""

    __tablename__ = "notifications"
    __table_args__ = (
        db.UniqueConstraint("dedupe_key", name="uq_notifications_dedupe_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    kind = db.Column(db.String(48), nullable=False, index=True)  # order_created | milestone_verified | refund_issued
    title = db.Column(db.String(160), nullable=True)
    message = db.Column(db.Text, nullable=False, default="")
    subject_type = db.Column(db.String(32), nullable=True)
    subject_id = db.Column(db.Integer, nullable=True)
    dedupe_key = db.Column(db.String(160), nullable=True)

    status = db.Column(db.String(24), nullable=False, default="queued")  # queued | sent | failed
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime, nullable=True)
    meta = db.Column(db.Text, nullable=True)

    def meta_dict(self) -> dict:
        raw = (self.meta or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "kind": self.kind or "",
            "title": self.title or "",
            "message": self.message or "",
            "subject_type": self.subject_type or "",
            "subject_id": int(self.subject_id) if self.subject_id is not None else None,
            "status": self.status or "queued",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "meta": self.meta_dict(),
        }
