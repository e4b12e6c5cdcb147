from __future__ import annotations

from flask import Blueprint, jsonify, request

from settlement.errors import InvalidRequest, SettlementError
from settlement.services.settlement_coordinator import build_coordinator
from settlement.utils.auth import require_actor
from settlement.utils.idempotency import forget, lookup_response, store_response

checkout_bp = Blueprint("checkout_bp", __name__, url_prefix="/api")


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return payload


def _optional_int(value, name: str):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{name} must be an integer")


@checkout_bp.post("/checkout")
def checkout():
    actor = require_actor("buyer")
    payload = _json_body()

    idem = lookup_response(actor.id, "/api/checkout", payload)
    if idem and idem[0] in ("hit", "conflict"):
        return jsonify(idem[1]), idem[2]
    idem_row = idem[1] if idem and idem[0] == "miss" else None

    installers_raw = payload.get("installers") or {}
    if not isinstance(installers_raw, dict):
        raise InvalidRequest("installers must map vendor ids to installer ids")
    installers = {_optional_int(k, "vendor id"): _optional_int(v, "installer id") for k, v in installers_raw.items()}

    try:
        result = build_coordinator().checkout(
            actor,
            payload.get("items"),
            payment_type=str(payload.get("payment_type") or "full"),
            installment_months=_optional_int(payload.get("installment_months"), "installment_months"),
            installers={k: v for k, v in installers.items() if v is not None},
        )
    except SettlementError:
        if idem_row is not None:
            forget(idem_row)
        raise

    body = {
        "ok": True,
        "partial": result.partial,
        "order": result.parent_order.to_dict(include_sub_orders=True),
        "failures": [f.to_dict() for f in result.failures],
    }
    if idem_row is not None:
        store_response(idem_row, body, 201)
    return jsonify(body), 201


@checkout_bp.get("/orders/<parent_order_id>")
def order_summary(parent_order_id: str):
    actor = require_actor()
    summary = build_coordinator().order_summary(parent_order_id, actor)
    return jsonify({"ok": True, "order": summary}), 200


@checkout_bp.post("/orders/<parent_order_id>/archive")
def archive_order(parent_order_id: str):
    actor = require_actor("admin")
    order = build_coordinator().archive_order(parent_order_id, actor)
    return jsonify({"ok": True, "order": order.to_dict(include_sub_orders=False)}), 200


@checkout_bp.post("/sub-orders/<int:sub_order_id>/cancel")
def cancel_sub_order(sub_order_id: int):
    actor = require_actor()
    payload = _json_body()
    sub = build_coordinator().cancel_sub_order(
        sub_order_id,
        actor,
        reason=str(payload.get("reason") or "buyer_cancelled")[:200],
    )
    return jsonify({"ok": True, "sub_order": sub.to_dict()}), 200


@checkout_bp.post("/sub-orders/<int:sub_order_id>/refunds")
def request_refund(sub_order_id: int):
    actor = require_actor("buyer", "admin")
    payload = _json_body()
    amount = _optional_int(payload.get("amount_minor"), "amount_minor")
    if amount is None:
        raise InvalidRequest("amount_minor is required")
    row = build_coordinator().request_refund(
        sub_order_id,
        amount,
        str(payload.get("reason") or ""),
        actor,
    )
    return jsonify({"ok": True, "refund": row.to_dict()}), 201
