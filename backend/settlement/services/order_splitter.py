from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from settlement.errors import (
    EmptyCart,
    InvalidRequest,
    SettlementError,
    UnknownProduct,
    VendorUnavailable,
)
from settlement.extensions import db
from settlement.integrations.catalog.base import CatalogProduct, CatalogProvider
from settlement.models import Order, SubOrder, SubOrderLine, User
from settlement.services.escrow_service import EscrowManager
from settlement.services.inventory_ledger import InventoryLedger
from settlement.services.pricing import PriceLine, PricingCalculator
from settlement.services.sub_order_service import SubOrderStatus
from settlement.utils.retry import run_with_contention_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartItem:
    product_id: int
    quantity: int


@dataclass
class VendorFailure:
    vendor_id: int
    error: SettlementError

    def to_dict(self) -> dict:
        payload = self.error.to_dict()
        payload["vendor_id"] = int(self.vendor_id)
        return payload


@dataclass
class SplitResult:
    parent_order: Order
    sub_orders: list[SubOrder] = field(default_factory=list)
    failures: list[VendorFailure] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failures)


def parse_cart(raw) -> list[CartItem]:
    if not isinstance(raw, (list, tuple)) or not raw:
        raise EmptyCart("Cart is empty")
    merged: dict[int, int] = {}
    for entry in raw:
        if not isinstance(entry, dict):
            raise InvalidRequest("Cart entries must be objects")
        try:
            pid = int(entry.get("product_id"))
            qty = int(entry.get("quantity", 1))
        except (TypeError, ValueError):
            raise InvalidRequest("Cart entries need an integer product_id and quantity")
        if qty <= 0:
            raise InvalidRequest("Cart quantities must be positive", product_id=pid)
        merged[pid] = merged.get(pid, 0) + qty
    return [CartItem(product_id=pid, quantity=qty) for pid, qty in merged.items()]


class OrderSplitter:
    """Turns a cart into one pending sub-order per vendor.

    Each vendor group is its own transaction: the sub-order, its lines, its
    escrow account and its reservations are committed together or not at
    all. A failing group never affects the groups around it.
    """

    def __init__(
        self,
        *,
        catalog: CatalogProvider,
        pricing: PricingCalculator,
        ledger: InventoryLedger | None = None,
        escrow: EscrowManager | None = None,
        currency: str = "USD",
    ):
        self.catalog = catalog
        self.pricing = pricing
        self.ledger = ledger or InventoryLedger()
        self.escrow = escrow or EscrowManager()
        self.currency = currency

    def _group_by_vendor(self, items: list[CartItem]) -> dict[int, list[tuple[CartItem, CatalogProduct]]]:
        groups: dict[int, list[tuple[CartItem, CatalogProduct]]] = {}
        for item in items:
            product = self.catalog.get_product(item.product_id)
            if product is None:
                raise UnknownProduct(f"Product {item.product_id} does not exist", product_id=item.product_id)
            groups.setdefault(int(product.vendor_id), []).append((item, product))
        return groups

    def _check_installer(self, installer_id) -> int | None:
        if installer_id is None:
            return None
        installer = db.session.get(User, int(installer_id))
        if installer is None or not installer.is_active or installer.role_name != "installer":
            raise InvalidRequest(f"User {int(installer_id)} is not an active installer", installer_id=int(installer_id))
        return int(installer.id)

    def split(
        self,
        buyer_id: int,
        cart,
        *,
        payment_type: str = "full",
        installment_months: int | None = None,
        installers: dict | None = None,
    ) -> SplitResult:
        items = parse_cart(cart)
        groups = self._group_by_vendor(items)
        installers = {int(k): v for k, v in (installers or {}).items()}
        for vendor_id, installer_id in installers.items():
            if vendor_id not in groups:
                raise InvalidRequest(f"Installer given for vendor {vendor_id} who is not in the cart")
            self._check_installer(installer_id)

        parent_id = str(uuid.uuid4())
        sub_orders: list[SubOrder] = []
        failures: list[VendorFailure] = []
        for vendor_id, lines in groups.items():
            try:
                sub = run_with_contention_retry(
                    "order_splitter.vendor_group",
                    self._create_group,
                    parent_id,
                    int(buyer_id),
                    vendor_id,
                    lines,
                    payment_type,
                    installment_months,
                    installers.get(vendor_id),
                )
            except SettlementError as exc:
                # Nothing of the group was committed, so rolling back returns
                # every reservation it had taken.
                db.session.rollback()
                logger.warning("vendor_group_failed parent=%s vendor=%s err=%s", parent_id, vendor_id, exc.code)
                failures.append(VendorFailure(vendor_id=vendor_id, error=exc))
                continue
            sub_orders.append(sub)

        if not sub_orders:
            raise failures[0].error

        parent = db.session.get(Order, parent_id)
        logger.info(
            "cart_split parent=%s buyer=%s sub_orders=%s failures=%s",
            parent_id,
            buyer_id,
            len(sub_orders),
            len(failures),
        )
        return SplitResult(parent_order=parent, sub_orders=sub_orders, failures=failures)

    def _create_group(
        self,
        parent_id: str,
        buyer_id: int,
        vendor_id: int,
        lines: list[tuple[CartItem, CatalogProduct]],
        payment_type: str,
        installment_months,
        installer_id,
    ) -> SubOrder:
        for _item, product in lines:
            if not product.vendor_active:
                raise VendorUnavailable(f"Vendor {vendor_id} is not accepting orders", vendor_id=vendor_id)
            if not product.product_active:
                raise VendorUnavailable(
                    f"Product {product.product_id} is no longer sold",
                    vendor_id=vendor_id,
                    product_id=product.product_id,
                )

        quote = self.pricing.quote(
            [PriceLine(unit_price_minor=p.unit_price_minor, quantity=i.quantity) for i, p in lines],
            payment_type,
            installment_months,
        )

        if db.session.get(Order, parent_id) is None:
            db.session.add(Order(id=parent_id, buyer_id=buyer_id))
            db.session.flush()

        sub = SubOrder(
            parent_order_id=parent_id,
            buyer_id=buyer_id,
            vendor_id=vendor_id,
            installer_id=installer_id,
            payment_type=quote.payment_type,
            installment_months=quote.installment_months,
            installment_fee_bps=quote.installment_fee_bps,
            tax_bps=quote.tax_bps,
            subtotal_minor=quote.subtotal_minor,
            shipping_minor=quote.shipping_minor,
            tax_minor=quote.tax_minor,
            installment_fee_minor=quote.installment_fee_minor,
            total_minor=quote.total_minor,
            monthly_payment_minor=quote.monthly_payment_minor,
            currency=self.currency,
            status=SubOrderStatus.PENDING,
        )
        db.session.add(sub)
        db.session.flush()
        for item, product in lines:
            db.session.add(
                SubOrderLine(
                    sub_order_id=int(sub.id),
                    product_id=int(product.product_id),
                    quantity=int(item.quantity),
                    unit_price_minor=int(product.unit_price_minor),
                )
            )
            self.ledger.reserve(int(product.product_id), int(item.quantity), sub_order_id=int(sub.id))

        self.escrow.open_account(sub)
        db.session.commit()
        return sub
