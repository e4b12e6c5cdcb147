from __future__ import annotations

import unittest

from sqlalchemy import update

from settlement.extensions import db
from settlement.models import EscrowAccount, SettlementEvent
from settlement.services.reconciliation_service import persist_report, reconcile_escrow_accounts
from settlement.services.settlement_coordinator import build_coordinator
from settlement.utils.auth import Actor

from settlement_seed import make_app, seed_product, seed_user


class EscrowReconciliationTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = make_app()

    def test_ledger_matches_balances_until_a_row_is_tampered_with(self):
        with self.app.app_context():
            buyer = seed_user("buyer")
            vendor = seed_user("vendor")
            product = seed_product(vendor, price_minor=80000, on_hand=1)
            coordinator = build_coordinator()
            result = coordinator.checkout(Actor(id=int(buyer.id), role="buyer"), [{"product_id": product.id, "quantity": 1}])
            coordinator.confirm_payment(result.parent_order.id, "txn-reconcile", 80000)
            account_id = int(result.sub_orders[0].escrow_account.id)

            clean = reconcile_escrow_accounts()
            self.assertTrue(clean["ok"])
            self.assertGreaterEqual(clean["checked"], 1)

            db.session.execute(
                update(EscrowAccount)
                .where(EscrowAccount.id == account_id)
                .values(held_minor=79000)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()

            drifted = reconcile_escrow_accounts()
            self.assertFalse(drifted["ok"])
            self.assertEqual(drifted["drift"][0]["escrow_account_id"], account_id)
            self.assertEqual(drifted["drift"][0]["fields"], ["held"])

            persist_report(drifted)
            event = SettlementEvent.query.filter_by(event_type="escrow_reconciliation").one()
            self.assertEqual(event.severity, "ERROR")


if __name__ == "__main__":
    unittest.main()
