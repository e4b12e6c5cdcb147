from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CatalogProduct:
    product_id: int
    vendor_id: int
    name: str
    unit_price_minor: int
    stock_on_hand: int
    product_active: bool
    vendor_active: bool


class CatalogProvider:
    name = "unknown"

    def get_product(self, product_id: int) -> CatalogProduct | None:
        """Return the catalog entry, or ``None`` when the id is unknown."""
        raise NotImplementedError
