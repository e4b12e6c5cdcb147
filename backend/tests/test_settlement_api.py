from __future__ import annotations

import hashlib
import hmac
import json
import unittest
import uuid
from unittest.mock import patch

from settlement.errors import ResourceContention
from settlement.extensions import db
from settlement.models import EscrowAccount

from settlement_seed import auth_headers, make_app, override_settings, seed_product, seed_user

WEBHOOK_SECRET = "whsec-test-0123456789"


class SettlementApiTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = make_app()
        override_settings(cls.app, payment_webhook_secret=WEBHOOK_SECRET)
        cls.client = cls.app.test_client()

    def setUp(self):
        with self.app.app_context():
            buyer = seed_user("buyer")
            vendor = seed_user("vendor")
            admin = seed_user("admin")
            product = seed_product(vendor, price_minor=100000, on_hand=5)
            self.buyer_id, self.vendor_id = int(buyer.id), int(vendor.id)
            self.product_id = int(product.id)
            self.buyer_h = auth_headers(buyer)
            self.vendor_h = auth_headers(vendor)
            self.admin_h = auth_headers(admin)

    def _checkout(self, quantity=1, headers=None):
        res = self.client.post(
            "/api/checkout",
            json={"items": [{"product_id": self.product_id, "quantity": quantity}], "payment_type": "full"},
            headers=headers or self.buyer_h,
        )
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        return res.get_json()

    def _signed_post(self, payload: dict, secret: str = WEBHOOK_SECRET):
        raw = json.dumps(payload).encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), raw, hashlib.sha512).hexdigest()
        return self.client.post(
            "/api/webhooks/payments",
            data=raw,
            content_type="application/json",
            headers={"X-Signature": signature},
        )

    def _pay(self, order: dict, txn: str | None = None):
        return self._signed_post(
            {
                "parent_order_id": order["id"],
                "gateway_txn_id": txn or f"txn-{uuid.uuid4().hex}",
                "amount_minor": order["total_minor"],
            }
        )

    # ---- contract -----------------------------------------------------------

    def test_health_reports_db_and_notifications(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["db"], "ok")
        self.assertEqual(body["notifications"]["provider"], "outbox")

    def test_request_id_is_echoed(self):
        res = self.client.get("/api/health", headers={"X-Request-Id": "rid-settlement-1"})
        self.assertEqual(res.headers.get("X-Request-Id"), "rid-settlement-1")

    def test_unknown_route_uses_error_shape(self):
        res = self.client.get("/api/does-not-exist")
        self.assertEqual(res.status_code, 404)
        body = res.get_json(force=True) or {}
        self.assertFalse(body.get("ok", True))
        self.assertEqual(int(body.get("status") or 0), 404)
        self.assertTrue(str(body.get("trace_id") or "").strip())

    def test_checkout_requires_authentication(self):
        res = self.client.post("/api/checkout", json={"items": []})
        self.assertEqual(res.status_code, 401)
        body = res.get_json()
        self.assertEqual(body["error"], "UNAUTHENTICATED")
        self.assertEqual(body["trace_id"], res.headers.get("X-Request-Id"))

    def test_invalid_token_is_unauthenticated_not_forbidden(self):
        res = self.client.get("/api/orders/anything", headers={"Authorization": "Bearer not-a-real-token"})
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.get_json()["error"], "UNAUTHENTICATED")

    def test_vendor_cannot_check_out(self):
        res = self.client.post(
            "/api/checkout",
            json={"items": [{"product_id": self.product_id, "quantity": 1}]},
            headers=self.vendor_h,
        )
        self.assertEqual(res.status_code, 403)

    def test_domain_errors_map_to_status_codes(self):
        empty = self.client.post("/api/checkout", json={"items": []}, headers=self.buyer_h)
        self.assertEqual(empty.status_code, 422)
        self.assertEqual(empty.get_json()["error"], "EMPTY_CART")

        short = self.client.post(
            "/api/checkout",
            json={"items": [{"product_id": self.product_id, "quantity": 50}]},
            headers=self.buyer_h,
        )
        self.assertEqual(short.status_code, 409)
        self.assertEqual(short.get_json()["error"], "INSUFFICIENT_STOCK")

    def test_contention_surfaces_as_retryable_503(self):
        with patch(
            "settlement.services.settlement_coordinator.SettlementCoordinator.order_summary",
            side_effect=ResourceContention("busy", operation="order_summary"),
        ):
            res = self.client.get("/api/orders/anything", headers=self.buyer_h)
        self.assertEqual(res.status_code, 503)
        self.assertEqual(res.headers.get("Retry-After"), "1")
        self.assertEqual(res.get_json()["error"], "RESOURCE_CONTENTION")

    # ---- checkout -----------------------------------------------------------

    def test_checkout_idempotency_key_replays_response(self):
        key = f"idem-{uuid.uuid4().hex}"
        headers = dict(self.buyer_h, **{"Idempotency-Key": key})
        first = self._checkout(headers=headers)
        second = self._checkout(headers=headers)
        self.assertEqual(first["order"]["id"], second["order"]["id"])

        reused = self.client.post(
            "/api/checkout",
            json={"items": [{"product_id": self.product_id, "quantity": 2}]},
            headers=headers,
        )
        self.assertEqual(reused.status_code, 409)
        self.assertEqual(reused.get_json()["error"], "IDEMPOTENCY_KEY_REUSE")

    def test_order_summary_for_buyer(self):
        order = self._checkout()["order"]
        res = self.client.get(f"/api/orders/{order['id']}", headers=self.buyer_h)
        self.assertEqual(res.status_code, 200)
        summary = res.get_json()["order"]
        self.assertEqual(summary["status"], "pending")
        self.assertEqual(summary["sub_orders"][0]["escrow"]["status"], "created")

    # ---- payment webhook ----------------------------------------------------

    def test_webhook_rejects_bad_signature(self):
        order = self._checkout()["order"]
        res = self._signed_post(
            {"parent_order_id": order["id"], "gateway_txn_id": "txn-forged", "amount_minor": order["total_minor"]},
            secret="not-the-secret",
        )
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.get_json()["error"], "INVALID_SIGNATURE")

    def test_webhook_funds_escrow_once(self):
        order = self._checkout()["order"]
        first = self._pay(order, txn="txn-api-dup")
        second = self._pay(order, txn="txn-api-dup")
        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 200)
        self.assertFalse(first.get_json()["duplicate"])
        self.assertTrue(second.get_json()["duplicate"])
        with self.app.app_context():
            account = EscrowAccount.query.filter_by(sub_order_id=order["sub_order_ids"][0]).one()
            self.assertEqual(account.held_minor, order["total_minor"])

    def test_webhook_accepts_major_unit_amounts(self):
        order = self._checkout()["order"]
        res = self._signed_post(
            {"parent_order_id": order["id"], "gateway_txn_id": f"txn-{uuid.uuid4().hex}", "amount": "1000.00"}
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["amount_minor"], 100000)

    # ---- escrow and milestones ----------------------------------------------

    def test_milestone_flow_over_http(self):
        order = self._checkout()["order"]
        self.assertEqual(self._pay(order).status_code, 200)
        account_id = order["sub_orders"][0]["escrow_account_id"]

        scheduled = self.client.post(
            f"/api/escrow/{account_id}/milestones",
            json={"milestones": [{"name": "Deliver", "percentage": 60}, {"name": "Sign-off", "percentage": 40}]},
            headers=self.vendor_h,
        )
        self.assertEqual(scheduled.status_code, 201)
        first_id = scheduled.get_json()["items"][0]["id"]

        for action, headers in (("start", self.vendor_h), ("complete", self.vendor_h), ("verify", self.buyer_h)):
            res = self.client.post(f"/api/milestones/{first_id}/{action}", headers=headers)
            self.assertEqual(res.status_code, 200, res.get_data(as_text=True))

        escrow = self.client.get(f"/api/escrow/{account_id}", headers=self.buyer_h).get_json()["escrow"]
        self.assertEqual(escrow["released_minor"], 60000)
        self.assertEqual(escrow["held_minor"], 40000)
        self.assertEqual([e["kind"] for e in escrow["ledger"]], ["fund", "release"])

        again = self.client.post(f"/api/milestones/{first_id}/start", headers=self.vendor_h)
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.get_json()["error"], "INVALID_STATE_TRANSITION")

    def test_bad_percentages_are_unprocessable(self):
        order = self._checkout()["order"]
        account_id = order["sub_orders"][0]["escrow_account_id"]
        res = self.client.post(
            f"/api/escrow/{account_id}/milestones",
            json={"milestones": [{"name": "Only", "percentage": 99}]},
            headers=self.vendor_h,
        )
        self.assertEqual(res.status_code, 422)
        self.assertEqual(res.get_json()["error"], "PERCENTAGES_DO_NOT_SUM_100")

    def test_dispute_and_resolve_endpoints(self):
        order = self._checkout()["order"]
        self._pay(order)
        account_id = order["sub_orders"][0]["escrow_account_id"]

        disputed = self.client.post(
            f"/api/admin/escrow/{account_id}/dispute", json={"reason": "damaged"}, headers=self.buyer_h
        )
        self.assertEqual(disputed.status_code, 200)
        self.assertEqual(disputed.get_json()["escrow"]["status"], "disputed")

        forbidden = self.client.post(f"/api/admin/escrow/{account_id}/resolve", json={}, headers=self.buyer_h)
        self.assertEqual(forbidden.status_code, 403)

        resolved = self.client.post(
            f"/api/admin/escrow/{account_id}/resolve", json={"refund_minor": 100000}, headers=self.admin_h
        )
        self.assertEqual(resolved.status_code, 200)
        self.assertEqual(resolved.get_json()["escrow"]["status"], "refunded")

    def test_refund_and_cancel_endpoints(self):
        paid = self._checkout()["order"]
        self._pay(paid)
        sub_id = paid["sub_order_ids"][0]
        refund = self.client.post(
            f"/api/sub-orders/{sub_id}/refunds", json={"amount_minor": 5000, "reason": "dent"}, headers=self.buyer_h
        )
        self.assertEqual(refund.status_code, 201)
        self.assertEqual(refund.get_json()["refund"]["status"], "processed")

        unpaid = self._checkout()["order"]
        cancelled = self.client.post(f"/api/sub-orders/{unpaid['sub_order_ids'][0]}/cancel", json={}, headers=self.buyer_h)
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.get_json()["sub_order"]["status"], "cancelled")

    def test_refund_review_endpoints(self):
        override_settings(self.app, refund_review_required=True)
        self.addCleanup(override_settings, self.app, refund_review_required=False)
        paid = self._checkout()["order"]
        self._pay(paid)
        sub_id = paid["sub_order_ids"][0]

        requested = self.client.post(
            f"/api/sub-orders/{sub_id}/refunds", json={"amount_minor": 5000, "reason": "dent"}, headers=self.buyer_h
        )
        self.assertEqual(requested.status_code, 201)
        refund = requested.get_json()["refund"]
        self.assertEqual(refund["status"], "pending")

        listed = self.client.get("/api/refunds?status=pending", headers=self.vendor_h)
        self.assertEqual(listed.status_code, 200)
        self.assertEqual([r["id"] for r in listed.get_json()["items"]], [refund["id"]])

        forbidden = self.client.post(f"/api/refunds/{refund['id']}/approve", json={}, headers=self.buyer_h)
        self.assertEqual(forbidden.status_code, 403)

        approved = self.client.post(f"/api/refunds/{refund['id']}/approve", json={}, headers=self.vendor_h)
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.get_json()["refund"]["status"], "processed")

        again = self.client.post(f"/api/refunds/{refund['id']}/reject", json={}, headers=self.vendor_h)
        self.assertEqual(again.status_code, 409)
        unknown = self.client.post(f"/api/refunds/{refund['id']}/escalate", json={}, headers=self.vendor_h)
        self.assertEqual(unknown.status_code, 400)

    def test_inventory_endpoints(self):
        listed = self.client.get("/api/inventory", headers=self.vendor_h)
        self.assertEqual(listed.status_code, 200)
        items = listed.get_json()["items"]
        self.assertEqual([i["product_id"] for i in items], [self.product_id])
        self.assertEqual(items[0]["on_hand_quantity"], 5)

        self.assertEqual(self.client.get("/api/inventory", headers=self.buyer_h).status_code, 403)
        self.assertEqual(self.client.get("/api/inventory", headers=self.admin_h).status_code, 400)
        as_admin = self.client.get(f"/api/inventory?vendor_id={self.vendor_id}", headers=self.admin_h)
        self.assertEqual(len(as_admin.get_json()["items"]), 1)

        raised = self.client.put(f"/api/inventory/{self.product_id}", json={"min_stock_level": 6}, headers=self.vendor_h)
        self.assertEqual(raised.status_code, 200)
        self.assertEqual(raised.get_json()["item"]["min_stock_level"], 6)

        alerts = self.client.get("/api/inventory/alerts?unread=1", headers=self.vendor_h).get_json()["items"]
        self.assertEqual([a["alert_type"] for a in alerts], ["low_stock"])
        read = self.client.post(f"/api/inventory/alerts/{alerts[0]['id']}/read", headers=self.vendor_h)
        self.assertEqual(read.status_code, 200)
        self.assertTrue(read.get_json()["alert"]["is_read"])

        restocked = self.client.post(
            f"/api/inventory/{self.product_id}/restock", json={"quantity": 3, "notes": "pallet"}, headers=self.vendor_h
        )
        self.assertEqual(restocked.status_code, 200)
        self.assertEqual(restocked.get_json()["item"]["on_hand_quantity"], 8)

        with self.app.app_context():
            other_h = auth_headers(seed_user("vendor"))
        stolen = self.client.post(f"/api/inventory/{self.product_id}/restock", json={"quantity": 1}, headers=other_h)
        self.assertEqual(stolen.status_code, 403)
        bad = self.client.post(f"/api/inventory/{self.product_id}/restock", json={"quantity": "lots"}, headers=self.vendor_h)
        self.assertEqual(bad.status_code, 400)

    def test_vendor_revenue_is_private(self):
        own = self.client.get(f"/api/vendors/{self.vendor_id}/revenue", headers=self.vendor_h)
        self.assertEqual(own.status_code, 200)
        self.assertEqual(own.get_json()["revenue"]["vendor_id"], self.vendor_id)

        with self.app.app_context():
            other = seed_user("vendor")
            other_h = auth_headers(other)
        res = self.client.get(f"/api/vendors/{self.vendor_id}/revenue", headers=other_h)
        self.assertEqual(res.status_code, 403)


if __name__ == "__main__":
    unittest.main()
