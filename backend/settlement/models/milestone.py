from datetime import datetime

from settlement.extensions import db


class Milestone(db.Model):
    __tablename__ = "milestones"
    __table_args__ = (
        db.UniqueConstraint("escrow_account_id", "sequence", name="uq_milestone_account_sequence"),
        db.CheckConstraint("percentage_bps > 0 AND percentage_bps <= 10000", name="ck_milestone_percentage_range"),
    )

    id = db.Column(db.Integer, primary_key=True)
    escrow_account_id = db.Column(db.Integer, db.ForeignKey("escrow_accounts.id"), nullable=False, index=True)
    sub_order_id = db.Column(db.Integer, db.ForeignKey("sub_orders.id"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False, default=1)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(240), nullable=True)
    percentage_bps = db.Column(db.Integer, nullable=False)
    amount_minor = db.Column(db.Integer, nullable=False)
    recipient_type = db.Column(db.String(16), nullable=False, default="vendor")  # vendor | installer
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    due_date = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    verified_at = db.Column(db.DateTime, nullable=True)
    disputed_at = db.Column(db.DateTime, nullable=True)

    escrow_account = db.relationship("EscrowAccount", back_populates="milestones")
    payments = db.relationship("MilestonePayment", back_populates="milestone", order_by="MilestonePayment.id")

    @property
    def percentage(self) -> float:
        return round(int(self.percentage_bps or 0) / 100.0, 2)

    def to_dict(self):
        return {
            "id": int(self.id),
            "escrow_account_id": int(self.escrow_account_id),
            "sub_order_id": int(self.sub_order_id),
            "sequence": int(self.sequence or 0),
            "name": self.name or "",
            "description": self.description or "",
            "percentage": self.percentage,
            "amount_minor": int(self.amount_minor or 0),
            "recipient_type": self.recipient_type or "vendor",
            "status": self.status or "pending",
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "disputed_at": self.disputed_at.isoformat() if self.disputed_at else None,
        }


class MilestonePayment(db.Model):
    __tablename__ = "milestone_payments"

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(db.Integer, db.ForeignKey("milestones.id"), nullable=False, unique=True, index=True)
    escrow_account_id = db.Column(db.Integer, db.ForeignKey("escrow_accounts.id"), nullable=False, index=True)
    recipient_type = db.Column(db.String(16), nullable=False)  # vendor | installer
    recipient_id = db.Column(db.Integer, nullable=False, index=True)
    amount_minor = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending")  # pending | released | disputed
    released_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    milestone = db.relationship("Milestone", back_populates="payments")

    def to_dict(self):
        return {
            "id": int(self.id),
            "milestone_id": int(self.milestone_id),
            "escrow_account_id": int(self.escrow_account_id),
            "recipient_type": self.recipient_type or "",
            "recipient_id": int(self.recipient_id),
            "amount_minor": int(self.amount_minor or 0),
            "status": self.status or "pending",
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
