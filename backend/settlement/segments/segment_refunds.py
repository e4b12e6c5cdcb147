from __future__ import annotations

from flask import Blueprint, jsonify, request

from settlement.errors import InvalidRequest
from settlement.services.settlement_coordinator import build_coordinator
from settlement.utils.auth import require_actor

refunds_bp = Blueprint("refunds_bp", __name__, url_prefix="/api/refunds")


def _payload() -> dict:
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return payload


@refunds_bp.get("")
def list_refunds():
    actor = require_actor()
    rows = build_coordinator().list_refunds(actor, status=(request.args.get("status") or "").strip() or None)
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@refunds_bp.post("/<int:refund_id>/<decision>")
def review_refund(refund_id: int, decision: str):
    actor = require_actor("vendor", "admin")
    payload = _payload()
    row = build_coordinator().review_refund(
        refund_id,
        decision,
        actor,
        response=str(payload.get("response") or "")[:2000],
    )
    return jsonify({"ok": True, "refund": row.to_dict()}), 200
