from datetime import datetime

from settlement.extensions import db


class Product(db.Model):
    """Local mirror of the catalog entry a cart line points at."""

    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False, default="")
    unit_price_minor = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "vendor_id": int(self.vendor_id),
            "name": self.name or "",
            "unit_price_minor": int(self.unit_price_minor or 0),
            "is_active": bool(self.is_active),
        }
