from datetime import datetime

from settlement.extensions import db


class RefundRequest(db.Model):
    __tablename__ = "refund_requests"

    id = db.Column(db.Integer, primary_key=True)
    sub_order_id = db.Column(db.Integer, db.ForeignKey("sub_orders.id"), nullable=False, index=True)
    escrow_account_id = db.Column(db.Integer, db.ForeignKey("escrow_accounts.id"), nullable=False, index=True)
    requester_id = db.Column(db.Integer, nullable=True)
    vendor_id = db.Column(db.Integer, nullable=False, index=True)
    amount_minor = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=False, default="")
    status = db.Column(db.String(16), nullable=False, default="pending")  # pending | approved | rejected | processed
    admin_response = db.Column(db.Text, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def reference(self) -> str:
        return f"refund_request:{int(self.id)}"

    def to_dict(self):
        return {
            "id": int(self.id),
            "sub_order_id": int(self.sub_order_id),
            "escrow_account_id": int(self.escrow_account_id),
            "requester_id": int(self.requester_id) if self.requester_id is not None else None,
            "vendor_id": int(self.vendor_id),
            "amount_minor": int(self.amount_minor or 0),
            "reason": self.reason or "",
            "status": self.status or "pending",
            "admin_response": self.admin_response or "",
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
