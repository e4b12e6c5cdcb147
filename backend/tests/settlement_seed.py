from __future__ import annotations

import dataclasses
import os
import time

from settlement import create_app
from settlement.extensions import db
from settlement.models import InventoryItem, Product, User
from settlement.utils.jwt_utils import create_access_token


def make_app():
    db_uri = "sqlite:///:memory:"
    os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
    os.environ["DATABASE_URL"] = db_uri
    app = create_app()
    app.config.update(TESTING=True)
    with app.app_context():
        db.create_all()
    return app


def override_settings(app, **changes):
    app.config["SETTLEMENT_SETTINGS"] = dataclasses.replace(app.config["SETTLEMENT_SETTINGS"], **changes)


def seed_user(role: str, *, active: bool = True) -> User:
    suffix = time.time_ns()
    user = User(name=f"{role.title()} {suffix}", email=f"{role}-{suffix}@settlement.test", role=role, is_active=active)
    db.session.add(user)
    db.session.commit()
    return user


def seed_product(vendor: User, *, price_minor: int, on_hand: int, min_stock: int = 0, active: bool = True) -> Product:
    product = Product(vendor_id=int(vendor.id), name=f"Product {time.time_ns()}", unit_price_minor=price_minor, is_active=active)
    db.session.add(product)
    db.session.flush()
    db.session.add(
        InventoryItem(
            product_id=int(product.id),
            on_hand_quantity=on_hand,
            reserved_quantity=0,
            min_stock_level=min_stock,
        )
    )
    db.session.commit()
    return product


def stock(product_id: int) -> InventoryItem:
    return InventoryItem.query.filter_by(product_id=int(product_id)).populate_existing().first()


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(int(user.id), user.role_name)}"}
