from __future__ import annotations

from flask import Blueprint, jsonify, request

from settlement.errors import InvalidRequest, NotAuthorized
from settlement.services.escrow_service import EscrowManager
from settlement.services.milestone_scheduler import MilestoneScheduler
from settlement.services.settlement_coordinator import build_coordinator
from settlement.utils.auth import Actor, require_actor

escrow_bp = Blueprint("escrow_bp", __name__, url_prefix="/api/escrow")
milestones_bp = Blueprint("milestones_bp", __name__, url_prefix="/api/milestones")


def _can_view(actor: Actor, account) -> bool:
    if actor.is_admin:
        return True
    return actor.id in (account.buyer_id, account.vendor_id, account.installer_id)


@escrow_bp.get("/<int:account_id>")
def get_escrow(account_id: int):
    actor = require_actor()
    escrow = EscrowManager()
    account = escrow.get(account_id)
    if not _can_view(actor, account):
        raise NotAuthorized("Not a party to this escrow account")
    body = account.to_dict(include_milestones=True)
    body["ledger"] = [e.to_dict() for e in escrow.ledger(account_id)]
    return jsonify({"ok": True, "escrow": body}), 200


@escrow_bp.get("/<int:account_id>/milestones")
def list_milestones(account_id: int):
    actor = require_actor()
    escrow = EscrowManager()
    account = escrow.get(account_id)
    if not _can_view(actor, account):
        raise NotAuthorized("Not a party to this escrow account")
    rows = MilestoneScheduler(escrow).milestones_for(account_id)
    return jsonify({"ok": True, "items": [m.to_dict() for m in rows]}), 200


@escrow_bp.post("/<int:account_id>/milestones")
def reschedule_milestones(account_id: int):
    actor = require_actor("vendor", "admin")
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    rows = build_coordinator().reschedule_milestones(account_id, payload.get("milestones"), actor)
    return jsonify({"ok": True, "items": [m.to_dict() for m in rows]}), 201


@milestones_bp.post("/<int:milestone_id>/<action>")
def advance_milestone(milestone_id: int, action: str):
    actor = require_actor()
    milestone = build_coordinator().update_milestone(milestone_id, action, actor)
    return jsonify({"ok": True, "milestone": milestone.to_dict()}), 200
