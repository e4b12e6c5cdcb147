from __future__ import annotations

import unittest
import uuid

from settlement.errors import (
    DuplicateTransaction,
    EscrowDisputed,
    EscrowInvariantViolation,
    InvalidStateTransition,
    NotAuthorized,
    PercentagesDoNotSum100,
)
from settlement.extensions import db
from settlement.models import EscrowLedgerEntry, MilestonePayment, Notification
from settlement.services.escrow_service import EscrowManager
from settlement.services.settlement_coordinator import build_coordinator
from settlement.utils.auth import Actor

from settlement_seed import make_app, seed_product, seed_user

THIRTY_THIRTY_FORTY = [
    {"name": "Deposit", "percentage": 30},
    {"name": "Rough-in", "percentage": 30},
    {"name": "Handover", "percentage": 40},
]


class EscrowMilestoneTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = make_app()

    def setUp(self):
        self.ctx = self.app.app_context()
        self.ctx.push()
        self.buyer = seed_user("buyer")
        self.vendor = seed_user("vendor")
        self.admin = seed_user("admin")
        self.buyer_actor = Actor(id=int(self.buyer.id), role="buyer")
        self.vendor_actor = Actor(id=int(self.vendor.id), role="vendor")
        self.admin_actor = Actor(id=int(self.admin.id), role="admin")
        self.coordinator = build_coordinator()
        self.escrow = EscrowManager()

    def tearDown(self):
        db.session.rollback()
        self.ctx.pop()

    def _checkout(self, price_minor=100000):
        product = seed_product(self.vendor, price_minor=price_minor, on_hand=1)
        result = self.coordinator.checkout(self.buyer_actor, [{"product_id": product.id, "quantity": 1}])
        sub = result.sub_orders[0]
        return result.parent_order.id, int(sub.id), int(sub.escrow_account.id)

    def _funded(self, price_minor=100000):
        parent_id, sub_id, account_id = self._checkout(price_minor)
        confirmation = self.coordinator.confirm_payment(parent_id, f"txn-{uuid.uuid4().hex}", price_minor)
        self.assertTrue(confirmation.ok)
        return sub_id, account_id

    def _run_to_completed(self, milestone_id):
        self.coordinator.update_milestone(milestone_id, "start", self.vendor_actor)
        return self.coordinator.update_milestone(milestone_id, "complete", self.vendor_actor)

    # ---- escrow ledger ------------------------------------------------------

    def test_same_gateway_txn_funds_only_once(self):
        parent_id, sub_id, account_id = self._checkout(100000)
        first = self.coordinator.confirm_payment(parent_id, "txn-dup-1", 100000)
        second = self.coordinator.confirm_payment(parent_id, "txn-dup-1", 100000)
        self.assertTrue(first.ok)
        self.assertFalse(first.duplicate)
        self.assertTrue(second.ok)
        self.assertTrue(second.duplicate)

        account = self.escrow.get(account_id)
        self.assertEqual(account.held_minor, 100000)
        self.assertEqual(account.status, "funded")
        self.assertEqual(EscrowLedgerEntry.query.filter_by(escrow_account_id=account_id, kind="fund").count(), 1)
        with self.assertRaises(DuplicateTransaction):
            self.escrow.fund(account_id, 1, "txn-dup-1")

    def test_funding_beyond_total_is_an_invariant_violation(self):
        _parent_id, _sub_id, account_id = self._checkout(50000)
        self.escrow.fund(account_id, 30000, "txn-part-1")
        db.session.commit()
        with self.assertRaises(EscrowInvariantViolation):
            self.escrow.fund(account_id, 30000, "txn-part-2")
        db.session.rollback()
        self.assertEqual(self.escrow.get(account_id).held_minor, 30000)

    def test_release_bounds_and_reference_idempotence(self):
        _sub_id, account_id = self._funded(100000)
        with self.assertRaises(EscrowInvariantViolation):
            self.escrow.release_partial(
                account_id, 100001, recipient_type="vendor", recipient_id=self.vendor.id, reference="manual:1"
            )
        db.session.rollback()
        applied = self.escrow.release_partial(
            account_id, 25000, recipient_type="vendor", recipient_id=self.vendor.id, reference="manual:2"
        )
        repeat = self.escrow.release_partial(
            account_id, 25000, recipient_type="vendor", recipient_id=self.vendor.id, reference="manual:2"
        )
        db.session.commit()
        self.assertTrue(applied.applied)
        self.assertFalse(repeat.applied)
        account = self.escrow.get(account_id)
        self.assertEqual((account.held_minor, account.released_minor), (75000, 25000))
        self.assertEqual(account.status, "partial_release")

    def test_dispute_blocks_release_until_resolved_with_refund(self):
        _sub_id, account_id = self._funded(100000)
        self.coordinator.dispute_escrow(account_id, self.buyer_actor, reason="wrong colour")
        with self.assertRaises(EscrowDisputed):
            self.escrow.release_partial(
                account_id, 1000, recipient_type="vendor", recipient_id=self.vendor.id, reference="manual:blocked"
            )
        db.session.rollback()
        with self.assertRaises(NotAuthorized):
            self.coordinator.resolve_dispute(account_id, self.buyer_actor)

        account = self.coordinator.resolve_dispute(account_id, self.admin_actor, refund_minor=40000)
        self.assertEqual(account.status, "funded")
        self.assertEqual(account.held_minor, 60000)
        self.assertEqual(account.refunded_minor, 40000)

    # ---- milestones ---------------------------------------------------------

    def test_verifying_milestones_releases_exact_shares(self):
        sub_id, account_id = self._funded(100000)
        rows = self.coordinator.reschedule_milestones(account_id, THIRTY_THIRTY_FORTY, self.vendor_actor)
        ids = [int(m.id) for m in rows]
        self.assertEqual([m.amount_minor for m in rows], [30000, 30000, 40000])

        self._run_to_completed(ids[0])
        self.coordinator.update_milestone(ids[0], "verify", self.buyer_actor)
        account = self.escrow.get(account_id)
        self.assertEqual(account.released_minor, 30000)
        self.assertEqual(account.held_minor, 70000)
        self.assertEqual(account.status, "partial_release")

        for mid in ids[1:]:
            self._run_to_completed(mid)
            self.coordinator.update_milestone(mid, "verify", self.buyer_actor)

        account = self.escrow.get(account_id)
        self.assertEqual(account.held_minor, 0)
        self.assertEqual(account.released_minor, 100000)
        self.assertEqual(account.status, "completed")
        self.assertEqual(account.sub_order.status, "completed")
        self.assertEqual(MilestonePayment.query.filter_by(escrow_account_id=account_id).count(), 3)
        self.assertEqual(
            Notification.query.filter_by(kind="milestone_verified", user_id=self.vendor.id).count(), 3
        )

    def test_verified_milestone_cannot_restart(self):
        _sub_id, account_id = self._funded(100000)
        first = self.coordinator.reschedule_milestones(account_id, THIRTY_THIRTY_FORTY, self.vendor_actor)[0]
        self._run_to_completed(first.id)
        self.coordinator.update_milestone(first.id, "verify", self.buyer_actor)
        with self.assertRaises(InvalidStateTransition):
            self.coordinator.update_milestone(first.id, "start", self.vendor_actor)

    def test_percentages_must_add_up(self):
        _sub_id, account_id = self._funded(100000)
        with self.assertRaises(PercentagesDoNotSum100):
            self.coordinator.reschedule_milestones(
                account_id,
                [{"name": "A", "percentage": 30}, {"name": "B", "percentage": 30}, {"name": "C", "percentage": 30}],
                self.vendor_actor,
            )

    def test_schedule_is_frozen_once_work_starts(self):
        _sub_id, account_id = self._funded(100000)
        rows = self.coordinator.reschedule_milestones(account_id, THIRTY_THIRTY_FORTY, self.vendor_actor)
        self.coordinator.update_milestone(rows[0].id, "start", self.vendor_actor)
        with self.assertRaises(InvalidStateTransition):
            self.coordinator.reschedule_milestones(account_id, THIRTY_THIRTY_FORTY, self.vendor_actor)

    def test_actions_are_role_checked(self):
        _sub_id, account_id = self._funded(100000)
        first = self.coordinator.reschedule_milestones(account_id, THIRTY_THIRTY_FORTY, self.vendor_actor)[0]
        with self.assertRaises(NotAuthorized):
            self.coordinator.update_milestone(first.id, "start", self.buyer_actor)
        self._run_to_completed(first.id)
        with self.assertRaises(NotAuthorized):
            self.coordinator.update_milestone(first.id, "verify", self.vendor_actor)

    def test_work_cannot_start_before_funding(self):
        _parent_id, _sub_id, account_id = self._checkout(100000)
        first = self.coordinator.reschedule_milestones(account_id, THIRTY_THIRTY_FORTY, self.vendor_actor)[0]
        with self.assertRaises(InvalidStateTransition):
            self.coordinator.update_milestone(first.id, "start", self.vendor_actor)

    def test_milestone_dispute_freezes_escrow_until_admin_resolves(self):
        _sub_id, account_id = self._funded(100000)
        rows = self.coordinator.reschedule_milestones(account_id, THIRTY_THIRTY_FORTY, self.vendor_actor)
        first, second = int(rows[0].id), int(rows[1].id)
        self._run_to_completed(first)
        self._run_to_completed(second)

        self.coordinator.update_milestone(first, "dispute", self.buyer_actor)
        self.assertEqual(self.escrow.get(account_id).status, "disputed")
        with self.assertRaises(EscrowDisputed):
            self.coordinator.update_milestone(second, "verify", self.buyer_actor)
        db.session.rollback()

        resolved = self.coordinator.update_milestone(first, "resolve", self.admin_actor)
        self.assertEqual(resolved.status, "completed")
        self.assertEqual(self.escrow.get(account_id).status, "funded")
        verified = self.coordinator.update_milestone(second, "verify", self.buyer_actor)
        self.assertEqual(verified.status, "verified")
        self.assertEqual(self.escrow.get(account_id).held_minor, 70000)


if __name__ == "__main__":
    unittest.main()
