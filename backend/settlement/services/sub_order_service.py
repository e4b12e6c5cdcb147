from __future__ import annotations

import logging
from datetime import datetime

from settlement.errors import InvalidStateTransition
from settlement.extensions import db
from settlement.models import SubOrder, SubOrderTransition
from settlement.services.escrow_service import EscrowStatus
from settlement.utils.auth import SYSTEM_ACTOR, Actor

logger = logging.getLogger(__name__)


class SubOrderStatus:
    PENDING = "pending"
    PAID = "paid"
    ESCROW = "escrow"
    INSTALLING = "installing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALLOWED = {
        PENDING: {PAID, CANCELLED},
        PAID: {ESCROW, CANCELLED},
        ESCROW: {INSTALLING},
        INSTALLING: {COMPLETED},
        COMPLETED: set(),
        CANCELLED: set(),
    }

    TERMINAL = {COMPLETED, CANCELLED}


def transition_sub_order(sub: SubOrder, to_state: str, *, actor: Actor = SYSTEM_ACTOR, reason: str = "") -> SubOrderTransition:
    current = (sub.status or SubOrderStatus.PENDING).strip().lower()
    target = (to_state or "").strip().lower()
    if target not in SubOrderStatus.ALLOWED.get(current, set()):
        raise InvalidStateTransition(
            f"Sub-order {int(sub.id)} cannot move from {current} to {target}",
            sub_order_id=int(sub.id),
            from_status=current,
            to_status=target,
        )

    now = datetime.utcnow()
    sub.status = target
    if target == SubOrderStatus.PAID:
        sub.paid_at = now
    elif target == SubOrderStatus.COMPLETED:
        sub.completed_at = now
    elif target == SubOrderStatus.CANCELLED:
        sub.cancelled_at = now

    row = SubOrderTransition(
        sub_order_id=int(sub.id),
        from_status=current,
        to_status=target,
        actor_type=actor.role[:32],
        actor_id=actor.id,
        reason=(reason or "")[:240] or None,
    )
    db.session.add(row)
    logger.info("sub_order_transition id=%s %s->%s", sub.id, current, target)
    return row


def is_settled(sub: SubOrder) -> bool:
    """True once neither stock nor money of ``sub`` can move any more.

    A sub-order whose escrow was refunded in full stays in its last
    fulfilment state but counts as settled.
    """
    if (sub.status or "") in SubOrderStatus.TERMINAL:
        return True
    account = sub.escrow_account
    return account is not None and account.status == EscrowStatus.REFUNDED
