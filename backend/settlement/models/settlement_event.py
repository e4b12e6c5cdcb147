import json
from datetime import datetime

from settlement.extensions import db


class SettlementEvent(db.Model):
    """Append-only domain event log (checkout, funding, releases, refunds)."""

    __tablename__ = "settlement_events"

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)
    subject_type = db.Column(db.String(40), nullable=True, index=True)
    subject_id = db.Column(db.String(64), nullable=True, index=True)
    request_id = db.Column(db.String(80), nullable=True)
    idempotency_key = db.Column(db.String(180), nullable=True, unique=True, index=True)
    severity = db.Column(db.String(16), nullable=False, default="INFO")
    metadata_json = db.Column(db.Text, nullable=True)

    def metadata_dict(self) -> dict:
        raw = self.metadata_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except Exception:
            pass
        return {"raw": str(raw)}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "event_type": self.event_type or "",
            "actor_user_id": int(self.actor_user_id) if self.actor_user_id is not None else None,
            "subject_type": self.subject_type or "",
            "subject_id": self.subject_id or "",
            "request_id": self.request_id or "",
            "severity": self.severity or "INFO",
            "metadata": self.metadata_dict(),
        }


class JobRun(db.Model):
    __tablename__ = "job_runs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(64), nullable=False, index=True)
    ran_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    ok = db.Column(db.Boolean, nullable=False, default=True)
    processed = db.Column(db.Integer, nullable=False, default=0)
    duration_ms = db.Column(db.Integer, nullable=True)
    error = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "job_name": self.job_name or "",
            "ran_at": self.ran_at.isoformat() if self.ran_at else None,
            "ok": bool(self.ok),
            "processed": int(self.processed or 0),
            "duration_ms": int(self.duration_ms) if self.duration_ms is not None else None,
            "error": self.error or "",
        }
