from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from sqlalchemy import update

from settlement.errors import InsufficientStock, InvalidRequest, InvalidStateTransition
from settlement.extensions import db
from settlement.models import InventoryAlert, InventoryItem, InventoryMovement, InventoryReservation, ReservationStatus
from settlement.services.inventory_ledger import InventoryLedger

from settlement_seed import make_app, seed_product, seed_user, stock


class InventoryLedgerTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = make_app()

    def setUp(self):
        self.ctx = self.app.app_context()
        self.ctx.push()
        self.vendor = seed_user("vendor")
        self.ledger = InventoryLedger(ttl_seconds=900)

    def tearDown(self):
        db.session.rollback()
        self.ctx.pop()

    def test_reserve_holds_units_without_touching_on_hand(self):
        product = seed_product(self.vendor, price_minor=1000, on_hand=5)
        reservation = self.ledger.reserve(product.id, 3)
        db.session.commit()
        item = stock(product.id)
        self.assertEqual(item.on_hand_quantity, 5)
        self.assertEqual(item.reserved_quantity, 3)
        self.assertEqual(self.ledger.available(product.id), 2)
        self.assertEqual(reservation.status, ReservationStatus.ACTIVE)

    def test_reserve_more_than_available_raises(self):
        product = seed_product(self.vendor, price_minor=1000, on_hand=2)
        self.ledger.reserve(product.id, 1)
        db.session.commit()
        with self.assertRaises(InsufficientStock) as ctx:
            self.ledger.reserve(product.id, 2)
        self.assertEqual(ctx.exception.details.get("available"), 1)
        db.session.rollback()
        self.assertEqual(stock(product.id).reserved_quantity, 1)

    def test_release_returns_units_and_is_idempotent(self):
        product = seed_product(self.vendor, price_minor=1000, on_hand=4)
        reservation = self.ledger.reserve(product.id, 4)
        db.session.commit()
        self.assertTrue(self.ledger.release(reservation.id, reason="cart_abandoned"))
        self.assertFalse(self.ledger.release(reservation.id, reason="cart_abandoned"))
        db.session.commit()
        self.assertEqual(stock(product.id).reserved_quantity, 0)
        self.assertEqual(db.session.get(InventoryReservation, reservation.id).status, ReservationStatus.RELEASED)

    def test_commit_decrements_on_hand_and_raises_out_of_stock_alert(self):
        product = seed_product(self.vendor, price_minor=1000, on_hand=2, min_stock=1)
        reservation = self.ledger.reserve(product.id, 2)
        self.assertTrue(self.ledger.commit(reservation.id))
        db.session.commit()
        item = stock(product.id)
        self.assertEqual(item.on_hand_quantity, 0)
        self.assertEqual(item.reserved_quantity, 0)
        alerts = InventoryAlert.query.filter_by(product_id=product.id).all()
        self.assertEqual([a.alert_type for a in alerts], ["out_of_stock"])
        self.assertFalse(self.ledger.commit(reservation.id))

    def test_released_reservation_cannot_be_committed(self):
        product = seed_product(self.vendor, price_minor=1000, on_hand=2)
        reservation = self.ledger.reserve(product.id, 1)
        self.ledger.release(reservation.id)
        db.session.commit()
        with self.assertRaises(InvalidStateTransition):
            self.ledger.commit(reservation.id)

    def test_restock_records_movement(self):
        product = seed_product(self.vendor, price_minor=1000, on_hand=1)
        self.ledger.restock(product.id, 9, notes="supplier delivery")
        db.session.commit()
        self.assertEqual(stock(product.id).on_hand_quantity, 10)
        movement = InventoryMovement.query.filter_by(product_id=product.id, type="restock").one()
        self.assertEqual(movement.previous_quantity, 1)
        self.assertEqual(movement.new_quantity, 10)

    def test_sweep_expires_stale_reservations(self):
        product = seed_product(self.vendor, price_minor=1000, on_hand=3)
        stale = self.ledger.reserve(product.id, 2, ttl_seconds=60)
        db.session.commit()
        self.ledger.sweep_expired(datetime.utcnow() + timedelta(minutes=5))
        db.session.commit()
        self.assertEqual(db.session.get(InventoryReservation, stale.id).status, ReservationStatus.EXPIRED)
        self.assertEqual(stock(product.id).reserved_quantity, 0)

    def test_guarded_reserve_loses_the_last_unit_to_a_concurrent_writer(self):
        product = seed_product(self.vendor, price_minor=1000, on_hand=2)
        self.ledger.reserve(product.id, 1)
        db.session.commit()
        self.assertEqual(stock(product.id).available_quantity, 1)
        db.session.commit()

        # Another checkout takes the last unit on its own connection.
        with db.engine.begin() as conn:
            conn.execute(
                update(InventoryItem)
                .where(InventoryItem.product_id == int(product.id))
                .values(reserved_quantity=InventoryItem.reserved_quantity + 1)
            )

        with self.assertRaises(InsufficientStock) as ctx:
            self.ledger.reserve(product.id, 1)
        self.assertEqual(ctx.exception.details.get("available"), 0)
        db.session.rollback()
        item = stock(product.id)
        self.assertEqual(item.reserved_quantity, 2)
        self.assertLessEqual(item.reserved_quantity, item.on_hand_quantity)

    def test_restock_above_minimum_clears_alerts(self):
        product = seed_product(self.vendor, price_minor=1000, on_hand=3, min_stock=2)
        reservation = self.ledger.reserve(product.id, 2)
        self.ledger.commit(reservation.id)
        db.session.commit()
        unread = self.ledger.alerts_for_vendor(self.vendor.id, unread_only=True)
        self.assertEqual([a.alert_type for a in unread], ["low_stock"])

        self.ledger.restock(product.id, 1)
        db.session.commit()
        self.assertEqual(len(self.ledger.alerts_for_vendor(self.vendor.id, unread_only=True)), 1)

        self.ledger.restock(product.id, 5)
        db.session.commit()
        self.assertEqual(self.ledger.alerts_for_vendor(self.vendor.id, unread_only=True), [])
        self.assertEqual(len(self.ledger.alerts_for_vendor(self.vendor.id)), 1)

    def test_min_stock_level_raises_alert_and_alert_can_be_read(self):
        product = seed_product(self.vendor, price_minor=1000, on_hand=4)
        self.ledger.set_min_stock_level(product.id, 5)
        db.session.commit()
        alerts = self.ledger.alerts_for_vendor(self.vendor.id)
        self.assertEqual(len(alerts), 1)
        self.ledger.mark_alert_read(alerts[0].id)
        db.session.commit()
        self.assertEqual(self.ledger.alerts_for_vendor(self.vendor.id, unread_only=True), [])
        with self.assertRaises(InvalidRequest):
            self.ledger.set_min_stock_level(product.id, -1)

        rows = self.ledger.items_for_vendor(self.vendor.id)
        self.assertEqual([int(p.id) for p, _item in rows], [int(product.id)])


if __name__ == "__main__":
    unittest.main()
