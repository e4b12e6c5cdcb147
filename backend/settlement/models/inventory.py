from datetime import datetime

from settlement.extensions import db


class ReservationStatus:
    ACTIVE = "active"
    COMMITTED = "committed"
    RELEASED = "released"
    EXPIRED = "expired"

    OPEN = {ACTIVE}
    CLOSED = {COMMITTED, RELEASED, EXPIRED}


class InventoryItem(db.Model):
    __tablename__ = "inventory_items"
    __table_args__ = (
        db.CheckConstraint("reserved_quantity >= 0", name="ck_inventory_reserved_non_negative"),
        db.CheckConstraint("reserved_quantity <= on_hand_quantity", name="ck_inventory_reserved_le_on_hand"),
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, unique=True, index=True)
    on_hand_quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)
    min_stock_level = db.Column(db.Integer, nullable=False, default=0)
    last_restocked_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def available_quantity(self) -> int:
        return max(0, int(self.on_hand_quantity or 0) - int(self.reserved_quantity or 0))

    def to_dict(self):
        return {
            "id": int(self.id),
            "product_id": int(self.product_id),
            "on_hand_quantity": int(self.on_hand_quantity or 0),
            "reserved_quantity": int(self.reserved_quantity or 0),
            "available_quantity": self.available_quantity,
            "min_stock_level": int(self.min_stock_level or 0),
            "last_restocked_at": self.last_restocked_at.isoformat() if self.last_restocked_at else None,
        }


class InventoryReservation(db.Model):
    __tablename__ = "inventory_reservations"

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    sub_order_id = db.Column(db.Integer, db.ForeignKey("sub_orders.id"), nullable=True, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=ReservationStatus.ACTIVE, index=True)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    committed_at = db.Column(db.DateTime, nullable=True)
    released_at = db.Column(db.DateTime, nullable=True)
    release_reason = db.Column(db.String(64), nullable=True)

    def is_expired(self, now: datetime | None = None) -> bool:
        stamp = now or datetime.utcnow()
        return self.status == ReservationStatus.ACTIVE and self.expires_at is not None and self.expires_at <= stamp

    def to_dict(self):
        return {
            "id": int(self.id),
            "product_id": int(self.product_id),
            "sub_order_id": int(self.sub_order_id) if self.sub_order_id is not None else None,
            "quantity": int(self.quantity or 0),
            "status": self.status or "",
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "committed_at": self.committed_at.isoformat() if self.committed_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "release_reason": self.release_reason or "",
        }


class InventoryMovement(db.Model):
    __tablename__ = "inventory_movements"

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    type = db.Column(db.String(16), nullable=False)  # restock | sale | adjustment | reservation | release
    quantity = db.Column(db.Integer, nullable=False)
    previous_quantity = db.Column(db.Integer, nullable=False, default=0)
    new_quantity = db.Column(db.Integer, nullable=False, default=0)
    sub_order_id = db.Column(db.Integer, nullable=True, index=True)
    reservation_id = db.Column(db.Integer, nullable=True, index=True)
    notes = db.Column(db.String(240), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "product_id": int(self.product_id),
            "type": self.type or "",
            "quantity": int(self.quantity or 0),
            "previous_quantity": int(self.previous_quantity or 0),
            "new_quantity": int(self.new_quantity or 0),
            "sub_order_id": int(self.sub_order_id) if self.sub_order_id is not None else None,
            "reservation_id": int(self.reservation_id) if self.reservation_id is not None else None,
            "notes": self.notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class InventoryAlert(db.Model):
    __tablename__ = "inventory_alerts"

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    vendor_id = db.Column(db.Integer, nullable=False, index=True)
    alert_type = db.Column(db.String(24), nullable=False)  # low_stock | out_of_stock
    message = db.Column(db.Text, nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "product_id": int(self.product_id),
            "vendor_id": int(self.vendor_id),
            "alert_type": self.alert_type or "",
            "message": self.message or "",
            "is_read": bool(self.is_read),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
