from __future__ import annotations

import unittest

from settlement.errors import EmptyCart, InsufficientStock, UnknownProduct
from settlement.extensions import db
from settlement.models import EscrowAccount, Milestone, Notification, SubOrder
from settlement.services.settlement_coordinator import build_coordinator
from settlement.utils.auth import Actor

from settlement_seed import make_app, seed_product, seed_user, stock


class CheckoutSplitTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = make_app()

    def setUp(self):
        self.ctx = self.app.app_context()
        self.ctx.push()
        self.buyer = seed_user("buyer")
        self.vendor_x = seed_user("vendor")
        self.vendor_y = seed_user("vendor")
        self.actor = Actor(id=int(self.buyer.id), role="buyer")
        self.coordinator = build_coordinator()

    def tearDown(self):
        db.session.rollback()
        self.ctx.pop()

    def _cart(self, *, x_on_hand=5):
        x_item = seed_product(self.vendor_x, price_minor=25000, on_hand=x_on_hand)
        y_item = seed_product(self.vendor_y, price_minor=150000, on_hand=3)
        cart = [
            {"product_id": x_item.id, "quantity": 2},
            {"product_id": y_item.id, "quantity": 1},
        ]
        return x_item, y_item, cart

    def _sub_for(self, result, vendor):
        return next(s for s in result.sub_orders if int(s.vendor_id) == int(vendor.id))

    def test_two_vendor_cart_creates_two_sub_orders_with_escrow(self):
        x_item, y_item, cart = self._cart()
        result = self.coordinator.checkout(self.actor, cart, payment_type="full")
        self.assertFalse(result.partial)
        self.assertEqual(len(result.sub_orders), 2)

        sub_x = self._sub_for(result, self.vendor_x)
        sub_y = self._sub_for(result, self.vendor_y)
        self.assertEqual(sub_x.total_minor, 50000)
        self.assertEqual(sub_y.total_minor, 150000)
        self.assertEqual(sub_x.status, "pending")
        self.assertEqual(sub_x.parent_order_id, sub_y.parent_order_id)
        self.assertEqual(result.parent_order.status, "pending")
        self.assertEqual(result.parent_order.total_minor, 200000)

        for sub in (sub_x, sub_y):
            account = EscrowAccount.query.filter_by(sub_order_id=sub.id).one()
            self.assertEqual(account.status, "created")
            self.assertEqual(account.held_minor, 0)
            self.assertEqual(account.total_minor, sub.total_minor)

        self.assertEqual(stock(x_item.id).reserved_quantity, 2)
        self.assertEqual(stock(y_item.id).reserved_quantity, 1)

    def test_installment_checkout_prices_each_vendor_group(self):
        _x_item, _y_item, cart = self._cart()
        result = self.coordinator.checkout(self.actor, cart, payment_type="installment", installment_months=12)
        sub_y = self._sub_for(result, self.vendor_y)
        sub_x = self._sub_for(result, self.vendor_x)
        self.assertEqual(sub_y.total_minor, 195000)
        self.assertEqual(sub_y.monthly_payment_minor, 16250)
        self.assertEqual(sub_y.installment_fee_bps, 3000)
        self.assertEqual(sub_x.total_minor, 65000)
        self.assertEqual(sub_x.monthly_payment_minor, 5417)

    def test_short_stock_fails_only_that_vendor_group(self):
        x_item, y_item, cart = self._cart(x_on_hand=1)
        result = self.coordinator.checkout(self.actor, cart)
        self.assertTrue(result.partial)
        self.assertEqual(len(result.sub_orders), 1)
        self.assertEqual(int(result.sub_orders[0].vendor_id), int(self.vendor_y.id))
        self.assertEqual(len(result.failures), 1)
        failure = result.failures[0].to_dict()
        self.assertEqual(failure["error"], "INSUFFICIENT_STOCK")
        self.assertEqual(failure["vendor_id"], int(self.vendor_x.id))

        self.assertEqual(stock(x_item.id).reserved_quantity, 0)
        self.assertEqual(stock(y_item.id).reserved_quantity, 1)
        self.assertEqual(SubOrder.query.filter_by(vendor_id=self.vendor_x.id).count(), 0)

    def test_every_group_failing_raises_first_error(self):
        product = seed_product(self.vendor_x, price_minor=1000, on_hand=0)
        with self.assertRaises(InsufficientStock):
            self.coordinator.checkout(self.actor, [{"product_id": product.id, "quantity": 1}])

    def test_inactive_vendor_is_reported_as_unavailable(self):
        retired = seed_user("vendor", active=False)
        product = seed_product(retired, price_minor=1000, on_hand=5)
        live = seed_product(self.vendor_y, price_minor=1000, on_hand=5)
        result = self.coordinator.checkout(
            self.actor,
            [{"product_id": product.id, "quantity": 1}, {"product_id": live.id, "quantity": 1}],
        )
        self.assertEqual([f.error.code for f in result.failures], ["VENDOR_UNAVAILABLE"])
        self.assertEqual(stock(product.id).reserved_quantity, 0)

    def test_empty_cart_and_unknown_product(self):
        with self.assertRaises(EmptyCart):
            self.coordinator.checkout(self.actor, [])
        with self.assertRaises(UnknownProduct):
            self.coordinator.checkout(self.actor, [{"product_id": 999999, "quantity": 1}])

    def test_duplicate_cart_lines_are_merged(self):
        product = seed_product(self.vendor_x, price_minor=1000, on_hand=5)
        result = self.coordinator.checkout(
            self.actor,
            [{"product_id": product.id, "quantity": 1}, {"product_id": product.id, "quantity": 2}],
        )
        sub = result.sub_orders[0]
        self.assertEqual([(line.product_id, line.quantity) for line in sub.lines], [(product.id, 3)])
        self.assertEqual(stock(product.id).reserved_quantity, 3)

    def test_default_milestones_follow_installer_assignment(self):
        installer = seed_user("installer")
        _x_item, _y_item, cart = self._cart()
        result = self.coordinator.checkout(self.actor, cart, installers={self.vendor_y.id: installer.id})
        sub_x = self._sub_for(result, self.vendor_x)
        sub_y = self._sub_for(result, self.vendor_y)

        delivery = Milestone.query.filter_by(sub_order_id=sub_x.id).order_by(Milestone.sequence).all()
        self.assertEqual([m.percentage_bps for m in delivery], [1000, 5000, 4000])
        self.assertEqual({m.recipient_type for m in delivery}, {"vendor"})
        self.assertEqual(sum(m.amount_minor for m in delivery), sub_x.total_minor)

        installation = Milestone.query.filter_by(sub_order_id=sub_y.id).order_by(Milestone.sequence).all()
        self.assertEqual(len(installation), 5)
        self.assertEqual({m.recipient_type for m in installation}, {"installer"})
        self.assertEqual(sum(m.amount_minor for m in installation), sub_y.total_minor)

    def test_checkout_queues_order_notifications(self):
        _x_item, _y_item, cart = self._cart()
        result = self.coordinator.checkout(self.actor, cart)
        for sub in result.sub_orders:
            kinds = {
                (n.user_id, n.kind)
                for n in Notification.query.filter_by(subject_type="sub_order", subject_id=sub.id).all()
            }
            self.assertIn((int(self.buyer.id), "order_created"), kinds)
            self.assertIn((int(sub.vendor_id), "order_created"), kinds)


if __name__ == "__main__":
    unittest.main()
