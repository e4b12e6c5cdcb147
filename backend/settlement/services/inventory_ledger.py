from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import update

from settlement.errors import InsufficientStock, InvalidRequest, InvalidStateTransition, NotFound
from settlement.extensions import db
from settlement.models import (
    EscrowAccount,
    InventoryAlert,
    InventoryItem,
    InventoryMovement,
    InventoryReservation,
    Product,
    ReservationStatus,
)
from settlement.utils.settings import get_settings

logger = logging.getLogger(__name__)

# Escrow states in which the buyer's money is already held; reservations of
# such sub-orders are never expired by the sweep.
_FUNDED_ESCROW_STATES = {"funded", "partial_release", "completed", "disputed"}


def _now() -> datetime:
    return datetime.utcnow()


class InventoryLedger:
    """Reserved/on-hand bookkeeping per product.

    Every quantity change is a single guarded UPDATE so concurrent reservers
    can never oversell. Methods flush but never commit; the caller owns the
    transaction (and the contention retry around it).
    """

    def __init__(self, *, ttl_seconds: int | None = None):
        self.ttl_seconds = int(ttl_seconds or get_settings().reservation_ttl_seconds)

    def _item(self, product_id: int) -> InventoryItem | None:
        # Guarded UPDATEs bypass the identity map, so always reload.
        return (
            InventoryItem.query.filter_by(product_id=int(product_id))
            .populate_existing()
            .first()
        )

    def _movement(self, item: InventoryItem, *, kind: str, quantity: int, previous: int, sub_order_id=None, reservation_id=None, notes: str = ""):
        db.session.add(
            InventoryMovement(
                product_id=int(item.product_id),
                type=kind,
                quantity=int(quantity),
                previous_quantity=int(previous),
                new_quantity=int(item.on_hand_quantity or 0),
                sub_order_id=sub_order_id,
                reservation_id=reservation_id,
                notes=(notes or "")[:240] or None,
            )
        )

    def available(self, product_id: int) -> int:
        item = self._item(product_id)
        return item.available_quantity if item is not None else 0

    def reserve(
        self,
        product_id: int,
        quantity: int,
        *,
        sub_order_id: int | None = None,
        ttl_seconds: int | None = None,
    ) -> InventoryReservation:
        qty = int(quantity or 0)
        if qty <= 0:
            raise InvalidRequest("Reservation quantity must be positive", product_id=int(product_id))

        result = db.session.execute(
            update(InventoryItem)
            .where(InventoryItem.product_id == int(product_id))
            .where(InventoryItem.on_hand_quantity - InventoryItem.reserved_quantity >= qty)
            .values(reserved_quantity=InventoryItem.reserved_quantity + qty, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            item = self._item(product_id)
            available = item.available_quantity if item is not None else 0
            raise InsufficientStock(
                f"Only {available} unit(s) of product {int(product_id)} available",
                product_id=int(product_id),
                requested=qty,
                available=available,
            )

        ttl = int(ttl_seconds or self.ttl_seconds)
        reservation = InventoryReservation(
            product_id=int(product_id),
            sub_order_id=sub_order_id,
            quantity=qty,
            status=ReservationStatus.ACTIVE,
            expires_at=_now() + timedelta(seconds=ttl),
        )
        db.session.add(reservation)
        db.session.flush()

        item = self._item(product_id)
        self._movement(
            item,
            kind="reservation",
            quantity=qty,
            previous=int(item.on_hand_quantity or 0),
            sub_order_id=sub_order_id,
            reservation_id=int(reservation.id),
        )
        logger.info("inventory_reserved product=%s qty=%s reservation=%s", product_id, qty, reservation.id)
        return reservation

    def _get_reservation(self, reservation_id: int) -> InventoryReservation:
        reservation = db.session.get(InventoryReservation, int(reservation_id))
        if reservation is None:
            raise NotFound(f"Reservation {int(reservation_id)} not found")
        return reservation

    def release(self, reservation_id: int, *, reason: str = "released", expired: bool = False) -> bool:
        """Return reserved units to the pool. No-op for closed reservations."""
        reservation = self._get_reservation(reservation_id)
        if reservation.status != ReservationStatus.ACTIVE:
            return False

        qty = int(reservation.quantity)
        result = db.session.execute(
            update(InventoryItem)
            .where(InventoryItem.product_id == int(reservation.product_id))
            .where(InventoryItem.reserved_quantity >= qty)
            .values(reserved_quantity=InventoryItem.reserved_quantity - qty, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            logger.error("inventory_release_underflow reservation=%s qty=%s", reservation.id, qty)
            raise InvalidStateTransition(
                "Reserved quantity is lower than the reservation being released",
                reservation_id=int(reservation.id),
            )

        reservation.status = ReservationStatus.EXPIRED if expired else ReservationStatus.RELEASED
        reservation.released_at = _now()
        reservation.release_reason = (reason or "")[:64]
        item = self._item(reservation.product_id)
        self._movement(
            item,
            kind="release",
            quantity=qty,
            previous=int(item.on_hand_quantity or 0),
            sub_order_id=reservation.sub_order_id,
            reservation_id=int(reservation.id),
            notes=reason,
        )
        db.session.flush()
        logger.info("inventory_released reservation=%s qty=%s reason=%s", reservation.id, qty, reason)
        return True

    def commit(self, reservation_id: int) -> bool:
        """Turn a reservation into a permanent on-hand decrement."""
        reservation = self._get_reservation(reservation_id)
        if reservation.status == ReservationStatus.COMMITTED:
            return False
        if reservation.status != ReservationStatus.ACTIVE:
            raise InvalidStateTransition(
                f"Reservation {int(reservation.id)} is {reservation.status} and cannot be committed",
                reservation_id=int(reservation.id),
            )

        qty = int(reservation.quantity)
        before = self._item(reservation.product_id)
        previous = int(before.on_hand_quantity or 0) if before is not None else 0
        result = db.session.execute(
            update(InventoryItem)
            .where(InventoryItem.product_id == int(reservation.product_id))
            .where(InventoryItem.reserved_quantity >= qty)
            .where(InventoryItem.on_hand_quantity >= qty)
            .values(
                on_hand_quantity=InventoryItem.on_hand_quantity - qty,
                reserved_quantity=InventoryItem.reserved_quantity - qty,
                updated_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            raise InvalidStateTransition(
                "Inventory no longer covers the reservation being committed",
                reservation_id=int(reservation.id),
            )

        reservation.status = ReservationStatus.COMMITTED
        reservation.committed_at = _now()
        item = self._item(reservation.product_id)
        self._movement(
            item,
            kind="sale",
            quantity=qty,
            previous=previous,
            sub_order_id=reservation.sub_order_id,
            reservation_id=int(reservation.id),
        )
        self._raise_stock_alerts(item)
        db.session.flush()
        logger.info("inventory_committed reservation=%s qty=%s", reservation.id, qty)
        return True

    def _raise_stock_alerts(self, item: InventoryItem) -> None:
        on_hand = int(item.on_hand_quantity or 0)
        if on_hand <= 0:
            alert_type = "out_of_stock"
            message = "Product is out of stock"
        elif on_hand <= int(item.min_stock_level or 0):
            alert_type = "low_stock"
            message = f"Only {on_hand} unit(s) left (minimum {int(item.min_stock_level or 0)})"
        else:
            return
        existing = InventoryAlert.query.filter_by(
            product_id=int(item.product_id), alert_type=alert_type, is_read=False
        ).first()
        if existing is not None:
            return
        product = db.session.get(Product, int(item.product_id))
        db.session.add(
            InventoryAlert(
                product_id=int(item.product_id),
                vendor_id=int(product.vendor_id) if product is not None else 0,
                alert_type=alert_type,
                message=message,
            )
        )

    def restock(self, product_id: int, quantity: int, *, notes: str = "") -> InventoryItem:
        qty = int(quantity or 0)
        if qty <= 0:
            raise InvalidRequest("Restock quantity must be positive", product_id=int(product_id))
        item = self._item(product_id)
        if item is None:
            item = InventoryItem(product_id=int(product_id), on_hand_quantity=0, reserved_quantity=0)
            db.session.add(item)
            db.session.flush()
        previous = int(item.on_hand_quantity or 0)
        db.session.execute(
            update(InventoryItem)
            .where(InventoryItem.product_id == int(product_id))
            .values(
                on_hand_quantity=InventoryItem.on_hand_quantity + qty,
                last_restocked_at=_now(),
                updated_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        item = self._item(product_id)
        self._movement(item, kind="restock", quantity=qty, previous=previous, notes=notes)
        if int(item.on_hand_quantity or 0) > int(item.min_stock_level or 0):
            InventoryAlert.query.filter_by(product_id=int(product_id), is_read=False).update(
                {"is_read": True}, synchronize_session="fetch"
            )
        db.session.flush()
        logger.info("inventory_restocked product=%s qty=%s on_hand=%s", product_id, qty, item.on_hand_quantity)
        return item

    def reservations_for(self, sub_order_id: int, *, status: str | None = None) -> list[InventoryReservation]:
        q = InventoryReservation.query.filter_by(sub_order_id=int(sub_order_id))
        if status:
            q = q.filter_by(status=status)
        return q.order_by(InventoryReservation.id.asc()).all()

    def release_for_sub_order(self, sub_order_id: int, *, reason: str) -> int:
        released = 0
        for reservation in self.reservations_for(sub_order_id, status=ReservationStatus.ACTIVE):
            if self.release(int(reservation.id), reason=reason):
                released += 1
        return released

    def commit_for_sub_order(self, sub_order_id: int) -> int:
        committed = 0
        for reservation in self.reservations_for(sub_order_id, status=ReservationStatus.ACTIVE):
            if self.commit(int(reservation.id)):
                committed += 1
        return committed

    def settle_sub_order(self, sub_order_id: int, quantities: dict[int, int]) -> int:
        """Take the stock a paid sub-order bought.

        Active reservations are committed first. Any quantity whose
        reservation already lapsed (swept or released) is reserved again and
        committed at once, or the call fails with ``InsufficientStock``.
        Returns the number of units that had to be re-reserved.
        """
        self.commit_for_sub_order(sub_order_id)
        committed: dict[int, int] = {}
        for reservation in self.reservations_for(sub_order_id, status=ReservationStatus.COMMITTED):
            pid = int(reservation.product_id)
            committed[pid] = committed.get(pid, 0) + int(reservation.quantity)

        retaken = 0
        for product_id, wanted in sorted(quantities.items()):
            short = int(wanted) - committed.get(int(product_id), 0)
            if short <= 0:
                continue
            reservation = self.reserve(int(product_id), short, sub_order_id=int(sub_order_id))
            self.commit(int(reservation.id))
            retaken += short
            logger.warning(
                "inventory_reservation_retaken sub_order=%s product=%s qty=%s",
                sub_order_id,
                product_id,
                short,
            )
        return retaken

    def items_for_vendor(self, vendor_id: int) -> list[tuple[Product, InventoryItem]]:
        return (
            db.session.query(Product, InventoryItem)
            .join(InventoryItem, InventoryItem.product_id == Product.id)
            .filter(Product.vendor_id == int(vendor_id))
            .populate_existing()
            .order_by(Product.id.asc())
            .all()
        )

    def set_min_stock_level(self, product_id: int, level: int) -> InventoryItem:
        item = self._item(product_id)
        if item is None:
            raise NotFound(f"No inventory for product {int(product_id)}")
        if int(level) < 0:
            raise InvalidRequest("min_stock_level cannot be negative")
        item.min_stock_level = int(level)
        db.session.flush()
        self._raise_stock_alerts(item)
        return item

    def alerts_for_vendor(self, vendor_id: int, *, unread_only: bool = False) -> list[InventoryAlert]:
        q = InventoryAlert.query.filter_by(vendor_id=int(vendor_id))
        if unread_only:
            q = q.filter_by(is_read=False)
        return q.order_by(InventoryAlert.id.desc()).all()

    def mark_alert_read(self, alert_id: int) -> InventoryAlert:
        alert = db.session.get(InventoryAlert, int(alert_id))
        if alert is None:
            raise NotFound(f"Inventory alert {int(alert_id)} not found")
        alert.is_read = True
        db.session.flush()
        return alert

    def sweep_expired(self, now: datetime | None = None) -> list[int]:
        """Expire stale reservations whose sub-order escrow was never funded.

        Returns the ids of the affected sub-orders.
        """
        stamp = now or _now()
        stale = (
            InventoryReservation.query.filter(
                InventoryReservation.status == ReservationStatus.ACTIVE,
                InventoryReservation.expires_at <= stamp,
            )
            .order_by(InventoryReservation.id.asc())
            .all()
        )
        touched: list[int] = []
        for reservation in stale:
            if reservation.sub_order_id is not None:
                escrow = EscrowAccount.query.filter_by(sub_order_id=int(reservation.sub_order_id)).first()
                if escrow is not None and escrow.status in _FUNDED_ESCROW_STATES:
                    continue
            self.release(int(reservation.id), reason="ttl_expired", expired=True)
            if reservation.sub_order_id is not None and int(reservation.sub_order_id) not in touched:
                touched.append(int(reservation.sub_order_id))
        if stale:
            logger.info("inventory_sweep stale=%s sub_orders=%s", len(stale), len(touched))
        return touched
