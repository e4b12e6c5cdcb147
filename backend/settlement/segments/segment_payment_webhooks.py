from __future__ import annotations

import hashlib
import hmac

from flask import Blueprint, current_app, jsonify, request

from settlement.errors import InvalidRequest
from settlement.services.settlement_coordinator import build_coordinator
from settlement.utils.money import money_major_to_minor
from settlement.utils.observability import get_request_id
from settlement.utils.settings import get_settings

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def _signature_ok(raw: bytes, signature: str | None, secret: str) -> bool:
    if not secret:
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def _amount_minor(payload: dict) -> int:
    if payload.get("amount_minor") is not None:
        try:
            return int(payload.get("amount_minor"))
        except (TypeError, ValueError):
            raise InvalidRequest("amount_minor must be an integer")
    if payload.get("amount") is not None:
        return money_major_to_minor(payload.get("amount"))
    raise InvalidRequest("amount_minor is required")


@webhooks_bp.post("/payments")
def payment_confirmed():
    raw = request.get_data() or b""
    settings = get_settings()
    if not _signature_ok(raw, request.headers.get("X-Signature"), settings.payment_webhook_secret):
        current_app.logger.warning("payment_webhook_bad_signature request_id=%s", get_request_id())
        return jsonify({"ok": False, "error": "INVALID_SIGNATURE", "message": "Webhook signature mismatch"}), 401

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidRequest("Webhook body must be a JSON object")
    parent_order_id = str(payload.get("parent_order_id") or "").strip()
    txn = str(payload.get("gateway_txn_id") or "").strip()
    if not parent_order_id or not txn:
        raise InvalidRequest("parent_order_id and gateway_txn_id are required")

    confirmation = build_coordinator().confirm_payment(parent_order_id, txn, _amount_minor(payload))
    body = confirmation.to_dict()
    body["trace_id"] = get_request_id()
    # A retryable failure asks the gateway to redeliver; the funded
    # sub-orders are skipped on the next delivery.
    retryable = any(r.error is not None and r.error.retryable for r in confirmation.results)
    if retryable:
        return jsonify(body), 503
    return jsonify(body), 200
