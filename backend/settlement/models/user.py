from datetime import datetime

from settlement.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(160), nullable=True, unique=True, index=True)
    role = db.Column(db.String(24), nullable=False, default="buyer", index=True)  # buyer | vendor | installer | admin
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def role_name(self) -> str:
        return (self.role or "buyer").strip().lower()

    def to_dict(self):
        return {
            "id": int(self.id),
            "name": self.name or "",
            "email": self.email or "",
            "role": self.role_name,
            "is_active": bool(self.is_active),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
