from __future__ import annotations

from flask import Blueprint, jsonify, request

from settlement.errors import InvalidRequest, NotAuthorized
from settlement.services.reporting_service import vendor_revenue
from settlement.services.settlement_coordinator import build_coordinator
from settlement.utils.auth import require_actor
from settlement.utils.settings import get_settings

admin_escrow_bp = Blueprint("admin_escrow_bp", __name__, url_prefix="/api/admin/escrow")
vendors_bp = Blueprint("vendors_bp", __name__, url_prefix="/api/vendors")


def _payload() -> dict:
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return payload


@admin_escrow_bp.post("/<int:account_id>/dispute")
def dispute_escrow(account_id: int):
    actor = require_actor("buyer", "admin")
    payload = _payload()
    account = build_coordinator().dispute_escrow(account_id, actor, reason=str(payload.get("reason") or "")[:200])
    return jsonify({"ok": True, "escrow": account.to_dict()}), 200


@admin_escrow_bp.post("/<int:account_id>/resolve")
def resolve_escrow_dispute(account_id: int):
    actor = require_actor("admin")
    payload = _payload()
    try:
        refund_minor = int(payload.get("refund_minor") or 0)
    except (TypeError, ValueError):
        raise InvalidRequest("refund_minor must be an integer")
    if refund_minor < 0:
        raise InvalidRequest("refund_minor cannot be negative")
    account = build_coordinator().resolve_dispute(
        account_id,
        actor,
        refund_minor=refund_minor,
        reason=str(payload.get("reason") or "")[:200],
    )
    return jsonify({"ok": True, "escrow": account.to_dict()}), 200


@vendors_bp.get("/<int:vendor_id>/revenue")
def revenue(vendor_id: int):
    actor = require_actor("vendor", "admin")
    if not actor.is_admin and actor.id != vendor_id:
        raise NotAuthorized("Vendors can only read their own revenue")
    report = vendor_revenue(vendor_id, commission_bps=get_settings().platform_commission_bps)
    return jsonify({"ok": True, "revenue": report}), 200
