from datetime import datetime

from settlement.extensions import db


class EscrowAccount(db.Model):
    __tablename__ = "escrow_accounts"
    __table_args__ = (
        db.CheckConstraint("held_minor >= 0", name="ck_escrow_held_non_negative"),
        db.CheckConstraint("released_minor >= 0", name="ck_escrow_released_non_negative"),
        db.CheckConstraint("held_minor + released_minor <= total_minor", name="ck_escrow_within_total"),
    )

    id = db.Column(db.Integer, primary_key=True)
    sub_order_id = db.Column(db.Integer, db.ForeignKey("sub_orders.id"), nullable=False, unique=True, index=True)
    buyer_id = db.Column(db.Integer, nullable=False, index=True)
    vendor_id = db.Column(db.Integer, nullable=False, index=True)
    installer_id = db.Column(db.Integer, nullable=True, index=True)

    total_minor = db.Column(db.Integer, nullable=False, default=0)
    held_minor = db.Column(db.Integer, nullable=False, default=0)
    released_minor = db.Column(db.Integer, nullable=False, default=0)
    refunded_minor = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="USD")

    status = db.Column(db.String(24), nullable=False, default="created", index=True)
    status_before_dispute = db.Column(db.String(24), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    funded_at = db.Column(db.DateTime, nullable=True)
    disputed_at = db.Column(db.DateTime, nullable=True)
    closed_at = db.Column(db.DateTime, nullable=True)

    sub_order = db.relationship("SubOrder", back_populates="escrow_account")
    milestones = db.relationship("Milestone", back_populates="escrow_account", order_by="Milestone.sequence")

    __mapper_args__ = {"version_id_col": version}

    @property
    def funded_minor(self) -> int:
        return int(self.held_minor or 0) + int(self.released_minor or 0) + int(self.refunded_minor or 0)

    def to_dict(self, *, include_milestones: bool = False):
        payload = {
            "id": int(self.id),
            "sub_order_id": int(self.sub_order_id),
            "buyer_id": int(self.buyer_id),
            "vendor_id": int(self.vendor_id),
            "installer_id": int(self.installer_id) if self.installer_id is not None else None,
            "total_minor": int(self.total_minor or 0),
            "held_minor": int(self.held_minor or 0),
            "released_minor": int(self.released_minor or 0),
            "refunded_minor": int(self.refunded_minor or 0),
            "currency": self.currency or "USD",
            "status": self.status or "created",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "funded_at": self.funded_at.isoformat() if self.funded_at else None,
            "disputed_at": self.disputed_at.isoformat() if self.disputed_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }
        if include_milestones:
            payload["milestones"] = [m.to_dict() for m in self.milestones]
        return payload


class EscrowLedgerEntry(db.Model):
    __tablename__ = "escrow_ledger_entries"
    __table_args__ = (
        db.UniqueConstraint("escrow_account_id", "kind", "reference", name="uq_escrow_entry_account_kind_ref"),
    )

    id = db.Column(db.Integer, primary_key=True)
    escrow_account_id = db.Column(db.Integer, db.ForeignKey("escrow_accounts.id"), nullable=False, index=True)
    kind = db.Column(db.String(16), nullable=False)  # fund | release | refund
    amount_minor = db.Column(db.Integer, nullable=False)
    reference = db.Column(db.String(160), nullable=False)
    recipient_type = db.Column(db.String(16), nullable=True)  # vendor | installer | buyer
    recipient_id = db.Column(db.Integer, nullable=True)
    held_after_minor = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "escrow_account_id": int(self.escrow_account_id),
            "kind": self.kind or "",
            "amount_minor": int(self.amount_minor or 0),
            "reference": self.reference or "",
            "recipient_type": self.recipient_type or "",
            "recipient_id": int(self.recipient_id) if self.recipient_id is not None else None,
            "held_after_minor": int(self.held_after_minor or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class EscrowTransition(db.Model):
    __tablename__ = "escrow_transitions"

    id = db.Column(db.Integer, primary_key=True)
    escrow_account_id = db.Column(db.Integer, nullable=False, index=True)
    sub_order_id = db.Column(db.Integer, nullable=False, index=True)
    from_status = db.Column(db.String(24), nullable=False, default="")
    to_status = db.Column(db.String(24), nullable=False)
    actor_type = db.Column(db.String(32), nullable=False, default="system")
    actor_id = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.String(240), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "escrow_account_id": int(self.escrow_account_id),
            "sub_order_id": int(self.sub_order_id),
            "from_status": self.from_status or "",
            "to_status": self.to_status or "",
            "actor_type": self.actor_type or "",
            "actor_id": int(self.actor_id) if self.actor_id is not None else None,
            "reason": self.reason or "",
            "metadata_json": self.metadata_json or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
