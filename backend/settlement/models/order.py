from __future__ import annotations

import uuid
from datetime import datetime

from settlement.extensions import db

_PROGRESS_RANK = {
    "pending": 0,
    "paid": 1,
    "escrow": 2,
    "installing": 3,
    "completed": 4,
}


def _new_parent_id() -> str:
    return str(uuid.uuid4())


class Order(db.Model):
    """Parent order created once per checkout.

    Its status is always derived from the sub-orders; nothing authoritative is
    stored on this row besides who bought and when.
    """

    __tablename__ = "orders"

    id = db.Column(db.String(36), primary_key=True, default=_new_parent_id)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    archived_at = db.Column(db.DateTime, nullable=True)

    sub_orders = db.relationship("SubOrder", back_populates="parent", order_by="SubOrder.id", lazy="select")

    @property
    def status(self) -> str:
        if not self.sub_orders:
            return "pending"
        open_subs = [s for s in self.sub_orders if (s.status or "pending") != "cancelled"]
        # A sub-order refunded in full keeps its fulfilment status.
        live = [
            (s.status or "pending")
            for s in open_subs
            if s.escrow_account is None or s.escrow_account.status != "refunded"
        ]
        if not live:
            return "refunded" if open_subs else "cancelled"
        ranks = [_PROGRESS_RANK.get(s, 0) for s in live]
        low = min(ranks)
        if low == 0 and max(ranks) > 0:
            return "partially_paid"
        for name, rank in _PROGRESS_RANK.items():
            if rank == low:
                return name
        return "pending"

    @property
    def total_minor(self) -> int:
        return sum(int(s.total_minor or 0) for s in self.sub_orders if s.status != "cancelled")

    def to_dict(self, *, include_sub_orders: bool = True):
        payload = {
            "id": self.id,
            "buyer_id": int(self.buyer_id),
            "status": self.status,
            "total_minor": self.total_minor,
            "sub_order_ids": [int(s.id) for s in self.sub_orders],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }
        if include_sub_orders:
            payload["sub_orders"] = [s.to_dict() for s in self.sub_orders]
        return payload


class SubOrder(db.Model):
    __tablename__ = "sub_orders"

    id = db.Column(db.Integer, primary_key=True)
    parent_order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    installer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    payment_type = db.Column(db.String(16), nullable=False, default="full")  # full | installment
    installment_months = db.Column(db.Integer, nullable=True)
    # Rates are frozen at creation and never re-read from configuration.
    installment_fee_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_bps = db.Column(db.Integer, nullable=False, default=0)

    subtotal_minor = db.Column(db.Integer, nullable=False, default=0)
    shipping_minor = db.Column(db.Integer, nullable=False, default=0)
    tax_minor = db.Column(db.Integer, nullable=False, default=0)
    installment_fee_minor = db.Column(db.Integer, nullable=False, default=0)
    total_minor = db.Column(db.Integer, nullable=False, default=0)
    monthly_payment_minor = db.Column(db.Integer, nullable=True)
    currency = db.Column(db.String(3), nullable=False, default="USD")

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_reference = db.Column(db.String(128), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    paid_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    parent = db.relationship("Order", back_populates="sub_orders")
    lines = db.relationship("SubOrderLine", back_populates="sub_order", order_by="SubOrderLine.id", cascade="all, delete-orphan")
    escrow_account = db.relationship("EscrowAccount", back_populates="sub_order", uselist=False)

    def to_dict(self):
        return {
            "id": int(self.id),
            "parent_order_id": self.parent_order_id,
            "buyer_id": int(self.buyer_id),
            "vendor_id": int(self.vendor_id),
            "installer_id": int(self.installer_id) if self.installer_id is not None else None,
            "payment_type": self.payment_type or "full",
            "installment_months": int(self.installment_months) if self.installment_months else None,
            "installment_fee_bps": int(self.installment_fee_bps or 0),
            "tax_bps": int(self.tax_bps or 0),
            "subtotal_minor": int(self.subtotal_minor or 0),
            "shipping_minor": int(self.shipping_minor or 0),
            "tax_minor": int(self.tax_minor or 0),
            "installment_fee_minor": int(self.installment_fee_minor or 0),
            "total_minor": int(self.total_minor or 0),
            "monthly_payment_minor": int(self.monthly_payment_minor) if self.monthly_payment_minor is not None else None,
            "currency": self.currency or "USD",
            "status": self.status or "pending",
            "escrow_account_id": int(self.escrow_account.id) if self.escrow_account is not None else None,
            "lines": [line.to_dict() for line in self.lines],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }


class SubOrderLine(db.Model):
    __tablename__ = "sub_order_lines"

    id = db.Column(db.Integer, primary_key=True)
    sub_order_id = db.Column(db.Integer, db.ForeignKey("sub_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_minor = db.Column(db.Integer, nullable=False)

    sub_order = db.relationship("SubOrder", back_populates="lines")

    @property
    def line_total_minor(self) -> int:
        return int(self.unit_price_minor or 0) * int(self.quantity or 0)

    def to_dict(self):
        return {
            "id": int(self.id),
            "product_id": int(self.product_id),
            "quantity": int(self.quantity or 0),
            "unit_price_minor": int(self.unit_price_minor or 0),
            "line_total_minor": self.line_total_minor,
        }


class SubOrderTransition(db.Model):
    __tablename__ = "sub_order_transitions"

    id = db.Column(db.Integer, primary_key=True)
    sub_order_id = db.Column(db.Integer, nullable=False, index=True)
    from_status = db.Column(db.String(16), nullable=False, default="")
    to_status = db.Column(db.String(16), nullable=False)
    actor_type = db.Column(db.String(32), nullable=False, default="system")
    actor_id = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.String(240), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "sub_order_id": int(self.sub_order_id),
            "from_status": self.from_status or "",
            "to_status": self.to_status or "",
            "actor_type": self.actor_type or "",
            "actor_id": int(self.actor_id) if self.actor_id is not None else None,
            "reason": self.reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
