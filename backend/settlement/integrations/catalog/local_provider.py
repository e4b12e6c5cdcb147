from __future__ import annotations

from settlement.extensions import db
from settlement.integrations.catalog.base import CatalogProduct, CatalogProvider
from settlement.models import InventoryItem, Product, User


class LocalCatalogProvider(CatalogProvider):
    """Reads the catalog mirror kept in this database."""

    name = "local"

    def get_product(self, product_id: int) -> CatalogProduct | None:
        product = db.session.get(Product, int(product_id))
        if product is None:
            return None
        vendor = db.session.get(User, int(product.vendor_id))
        item = InventoryItem.query.filter_by(product_id=int(product.id)).first()
        vendor_active = bool(vendor is not None and vendor.is_active and vendor.role_name == "vendor")
        return CatalogProduct(
            product_id=int(product.id),
            vendor_id=int(product.vendor_id),
            name=product.name or "",
            unit_price_minor=int(product.unit_price_minor or 0),
            stock_on_hand=int(item.on_hand_quantity or 0) if item is not None else 0,
            product_active=bool(product.is_active),
            vendor_active=vendor_active,
        )
