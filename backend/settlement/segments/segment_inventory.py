from __future__ import annotations

from flask import Blueprint, jsonify, request

from settlement.errors import InvalidRequest
from settlement.services.settlement_coordinator import build_coordinator
from settlement.utils.auth import require_actor

inventory_bp = Blueprint("inventory_bp", __name__, url_prefix="/api/inventory")


def _payload() -> dict:
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return payload


def _int_field(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{name} must be an integer")


def _vendor_scope(actor) -> int:
    # Admins read any vendor through ?vendor_id=; vendors always read their own.
    raw = request.args.get("vendor_id")
    if actor.is_admin:
        if not raw:
            raise InvalidRequest("vendor_id is required")
        return _int_field(raw, "vendor_id")
    return int(actor.id)


@inventory_bp.get("")
def vendor_inventory():
    actor = require_actor("vendor", "admin")
    vendor_id = _vendor_scope(actor)
    rows = build_coordinator().vendor_inventory(vendor_id, actor)
    return jsonify({"ok": True, "vendor_id": vendor_id, "items": rows}), 200


@inventory_bp.post("/<int:product_id>/restock")
def restock(product_id: int):
    actor = require_actor("vendor", "admin")
    payload = _payload()
    item = build_coordinator().restock(
        product_id,
        _int_field(payload.get("quantity"), "quantity"),
        actor,
        notes=str(payload.get("notes") or "")[:240],
    )
    return jsonify({"ok": True, "item": item.to_dict()}), 200


@inventory_bp.put("/<int:product_id>")
def update_inventory(product_id: int):
    actor = require_actor("vendor", "admin")
    payload = _payload()
    if "min_stock_level" not in payload:
        raise InvalidRequest("min_stock_level is required")
    item = build_coordinator().set_min_stock_level(
        product_id,
        _int_field(payload.get("min_stock_level"), "min_stock_level"),
        actor,
    )
    return jsonify({"ok": True, "item": item.to_dict()}), 200


@inventory_bp.get("/alerts")
def inventory_alerts():
    actor = require_actor("vendor", "admin")
    vendor_id = _vendor_scope(actor)
    unread_only = (request.args.get("unread") or "").strip().lower() in ("1", "true", "yes")
    rows = build_coordinator().inventory_alerts(vendor_id, actor, unread_only=unread_only)
    return jsonify({"ok": True, "items": [a.to_dict() for a in rows]}), 200


@inventory_bp.post("/alerts/<int:alert_id>/read")
def acknowledge_alert(alert_id: int):
    actor = require_actor("vendor", "admin")
    alert = build_coordinator().acknowledge_alert(alert_id, actor)
    return jsonify({"ok": True, "alert": alert.to_dict()}), 200
