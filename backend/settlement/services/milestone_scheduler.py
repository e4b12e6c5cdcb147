from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from settlement.errors import (
    InvalidRequest,
    InvalidStateTransition,
    NotAuthorized,
    NotFound,
    PercentagesDoNotSum100,
)
from settlement.extensions import db
from settlement.models import EscrowAccount, Milestone, MilestonePayment, SubOrder
from settlement.services.escrow_service import EscrowManager, EscrowStatus
from settlement.utils.auth import Actor
from settlement.utils.money import BPS_DENOMINATOR, allocate_by_bps, allocate_proportionally, percent_to_bps
from settlement.utils.settings import get_settings

logger = logging.getLogger(__name__)


class MilestoneStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VERIFIED = "verified"
    DISPUTED = "disputed"

    ALLOWED = {
        PENDING: {IN_PROGRESS},
        IN_PROGRESS: {COMPLETED},
        COMPLETED: {VERIFIED, DISPUTED},
        DISPUTED: {IN_PROGRESS, COMPLETED},
        VERIFIED: set(),
    }


# action -> target status
ACTIONS = {
    "start": MilestoneStatus.IN_PROGRESS,
    "complete": MilestoneStatus.COMPLETED,
    "verify": MilestoneStatus.VERIFIED,
    "dispute": MilestoneStatus.DISPUTED,
    "resolve": MilestoneStatus.COMPLETED,
}

INSTALLATION_TEMPLATE = (
    ("Site Assessment", "10", "Survey the site and confirm the installation plan"),
    ("Equipment Delivery", "20", "Deliver all equipment to the installation site"),
    ("Installation", "30", "Mount and wire the equipment"),
    ("Testing & Commissioning", "20", "Test the system and bring it online"),
    ("Final Inspection", "20", "Buyer inspection and sign-off"),
)

DELIVERY_TEMPLATE = (
    ("Order Confirmed", "10", "Vendor confirms the order"),
    ("Shipped", "50", "Goods handed to the carrier"),
    ("Delivered", "40", "Goods received by the buyer"),
)


@dataclass(frozen=True)
class MilestoneSpec:
    name: str
    percentage_bps: int
    description: str = ""
    recipient_type: str | None = None
    due_in_days: int | None = None


def default_template(installer_assigned: bool) -> list[dict]:
    rows = INSTALLATION_TEMPLATE if installer_assigned else DELIVERY_TEMPLATE
    return [{"name": name, "percentage": pct, "description": desc} for name, pct, desc in rows]


def _parse_specs(items) -> list[MilestoneSpec]:
    if not isinstance(items, (list, tuple)) or not items:
        raise InvalidRequest("At least one milestone is required")
    specs: list[MilestoneSpec] = []
    for raw in items:
        if not isinstance(raw, dict):
            raise InvalidRequest("Each milestone must be an object")
        name = str(raw.get("name") or "").strip()
        if not name:
            raise InvalidRequest("Milestone name is required")
        try:
            pct = Decimal(str(raw.get("percentage")))
        except (InvalidOperation, ValueError):
            raise InvalidRequest(f"Milestone {name!r} has an invalid percentage")
        bps = percent_to_bps(pct)
        if bps <= 0 or bps > BPS_DENOMINATOR:
            raise PercentagesDoNotSum100(
                f"Milestone {name!r} percentage must be within (0, 100]",
                milestone=name,
                percentage=str(pct),
            )
        recipient = raw.get("recipient_type")
        if recipient is not None and recipient not in ("vendor", "installer"):
            raise InvalidRequest(f"Unknown recipient type {recipient!r}")
        due = raw.get("due_in_days")
        specs.append(
            MilestoneSpec(
                name=name[:120],
                percentage_bps=bps,
                description=str(raw.get("description") or "")[:240],
                recipient_type=recipient,
                due_in_days=int(due) if due is not None else None,
            )
        )
    total_bps = sum(s.percentage_bps for s in specs)
    if total_bps != BPS_DENOMINATOR:
        raise PercentagesDoNotSum100(
            f"Milestone percentages add up to {Decimal(total_bps) / 100}%, not 100%",
            total_percentage=str(Decimal(total_bps) / 100),
        )
    return specs


def _may_perform(actor: Actor, action: str, sub: SubOrder) -> bool:
    if actor.is_admin:
        return True
    if action in ("start", "complete"):
        worker_id = sub.installer_id if sub.installer_id is not None else sub.vendor_id
        return actor.id is not None and int(actor.id) == int(worker_id)
    if action in ("verify", "dispute"):
        return actor.role == "buyer" and actor.id is not None and int(actor.id) == int(sub.buyer_id)
    return False


class MilestoneScheduler:
    def __init__(self, escrow: EscrowManager | None = None, *, due_days: int | None = None):
        self.escrow = escrow or EscrowManager()
        self.due_days = int(due_days or get_settings().milestone_due_days)

    def get(self, milestone_id: int) -> Milestone:
        milestone = db.session.get(Milestone, int(milestone_id))
        if milestone is None:
            raise NotFound(f"Milestone {int(milestone_id)} not found")
        return milestone

    def schedule(self, account_id: int, items) -> list[Milestone]:
        """Replace the account's milestones with ``items``.

        Only allowed while every existing milestone is still pending. Amounts
        are floored shares of what the account still owes (total less any
        refunds) with the remainder on the final milestone.
        """
        account = self.escrow.get(account_id)
        if account.status in EscrowStatus.TERMINAL:
            raise InvalidStateTransition(
                f"Escrow {int(account.id)} is {account.status}; milestones are frozen",
                escrow_account_id=int(account.id),
            )
        specs = _parse_specs(items)
        existing = Milestone.query.filter_by(escrow_account_id=int(account.id)).all()
        if any(m.status != MilestoneStatus.PENDING for m in existing):
            raise InvalidStateTransition(
                "Milestones can only be rescheduled before work starts",
                escrow_account_id=int(account.id),
            )
        for m in existing:
            db.session.delete(m)
        # Deletes must reach the database before the new sequence numbers.
        db.session.flush()

        default_recipient = "installer" if account.installer_id is not None else "vendor"
        owed = int(account.total_minor or 0) - int(account.released_minor or 0) - int(account.refunded_minor or 0)
        amounts = allocate_by_bps(max(0, owed), [s.percentage_bps for s in specs])
        now = datetime.utcnow()
        created: list[Milestone] = []
        for seq, (spec, amount) in enumerate(zip(specs, amounts), start=1):
            recipient = spec.recipient_type or default_recipient
            if recipient == "installer" and account.installer_id is None:
                raise InvalidRequest(f"Milestone {spec.name!r} pays an installer but none is assigned")
            days = spec.due_in_days if spec.due_in_days is not None else self.due_days * seq
            row = Milestone(
                escrow_account_id=int(account.id),
                sub_order_id=int(account.sub_order_id),
                sequence=seq,
                name=spec.name,
                description=spec.description or None,
                percentage_bps=spec.percentage_bps,
                amount_minor=int(amount),
                recipient_type=recipient,
                status=MilestoneStatus.PENDING,
                due_date=now + timedelta(days=max(0, days)),
            )
            db.session.add(row)
            created.append(row)
        db.session.flush()
        db.session.expire(account, ["milestones"])
        logger.info("milestones_scheduled account=%s count=%s", account.id, len(created))
        return created

    def rebalance(self, account_id: int) -> list[Milestone]:
        """Re-spread what is still owed over the unverified milestones.

        Called after a refund lowers the account. Verified milestones keep
        the amount they paid out; the rest share ``total - released -
        refunded`` by their percentages, remainder on the last one.
        """
        account = self.escrow.get(account_id)
        if account.status in EscrowStatus.TERMINAL:
            return []
        open_rows = [m for m in self.milestones_for(int(account.id)) if m.status != MilestoneStatus.VERIFIED]
        if not open_rows:
            return []
        pool = (
            int(account.total_minor or 0)
            - int(account.released_minor or 0)
            - int(account.refunded_minor or 0)
        )
        amounts = allocate_proportionally(max(0, pool), [int(m.percentage_bps or 0) for m in open_rows])
        for milestone, amount in zip(open_rows, amounts):
            milestone.amount_minor = int(amount)
        db.session.flush()
        logger.info("milestones_rebalanced account=%s open=%s pool=%s", account.id, len(open_rows), pool)
        return open_rows

    def advance(self, milestone_id: int, action: str, actor: Actor) -> Milestone:
        """Apply ``action`` to a milestone on behalf of ``actor``.

        Verification releases the milestone amount from escrow and records
        the payment; it is the only release path for milestone funds.
        """
        verb = (action or "").strip().lower()
        if verb not in ACTIONS:
            raise InvalidRequest(f"Unknown milestone action {action!r}", allowed=sorted(ACTIONS))
        milestone = self.get(milestone_id)
        sub = db.session.get(SubOrder, int(milestone.sub_order_id))
        if verb == "resolve":
            if not actor.is_admin:
                raise NotAuthorized("Only an admin may resolve a milestone dispute")
        elif not _may_perform(actor, verb, sub):
            raise NotAuthorized(f"{actor.role} may not {verb} this milestone", milestone_id=int(milestone.id))

        current = milestone.status or MilestoneStatus.PENDING
        target = ACTIONS[verb]
        if verb == "resolve" and current != MilestoneStatus.DISPUTED:
            raise InvalidStateTransition("Only a disputed milestone can be resolved", milestone_id=int(milestone.id))
        if target not in MilestoneStatus.ALLOWED.get(current, set()):
            raise InvalidStateTransition(
                f"Milestone {int(milestone.id)} cannot move from {current} to {target}",
                milestone_id=int(milestone.id),
                from_status=current,
                to_status=target,
            )
        account = self.escrow.get(milestone.escrow_account_id)
        if target == MilestoneStatus.IN_PROGRESS and account.status not in (
            EscrowStatus.FUNDED,
            EscrowStatus.PARTIAL_RELEASE,
            EscrowStatus.DISPUTED,
        ):
            raise InvalidStateTransition(
                f"Work cannot start while escrow {int(account.id)} is {account.status}",
                milestone_id=int(milestone.id),
            )

        now = datetime.utcnow()
        if target == MilestoneStatus.VERIFIED:
            self._release(milestone, account, sub, actor)
            milestone.verified_at = now
        elif target == MilestoneStatus.DISPUTED:
            milestone.disputed_at = now
            if account.status in EscrowStatus.RELEASABLE:
                self.escrow.dispute(int(account.id), actor=actor, reason=f"milestone:{int(milestone.id)}")
        elif target == MilestoneStatus.IN_PROGRESS:
            milestone.started_at = milestone.started_at or now
        elif target == MilestoneStatus.COMPLETED:
            milestone.completed_at = now

        milestone.status = target
        db.session.flush()

        if current == MilestoneStatus.DISPUTED:
            self._maybe_clear_escrow_dispute(account, actor)
        logger.info("milestone_advanced id=%s %s->%s by=%s:%s", milestone.id, current, target, actor.role, actor.id)
        return milestone

    def _release(self, milestone: Milestone, account: EscrowAccount, sub: SubOrder, actor: Actor) -> MilestonePayment:
        recipient_type = milestone.recipient_type or "vendor"
        recipient_id = sub.installer_id if recipient_type == "installer" else sub.vendor_id
        # Refunds can shrink a milestone to nothing; there is no money to move.
        if int(milestone.amount_minor or 0) > 0:
            self.escrow.release_partial(
                int(account.id),
                int(milestone.amount_minor),
                recipient_type=recipient_type,
                recipient_id=int(recipient_id),
                reference=f"milestone:{int(milestone.id)}",
                actor=actor,
            )
        payment = MilestonePayment(
            milestone_id=int(milestone.id),
            escrow_account_id=int(account.id),
            recipient_type=recipient_type,
            recipient_id=int(recipient_id),
            amount_minor=int(milestone.amount_minor),
            status="released",
            released_at=datetime.utcnow(),
        )
        db.session.add(payment)
        return payment

    def _maybe_clear_escrow_dispute(self, account: EscrowAccount, actor: Actor) -> None:
        if account.status != EscrowStatus.DISPUTED:
            return
        if not self.escrow.last_dispute_reason(account).startswith("milestone:"):
            return
        still_disputed = Milestone.query.filter_by(
            escrow_account_id=int(account.id), status=MilestoneStatus.DISPUTED
        ).count()
        if still_disputed:
            return
        self.escrow.resolve_dispute(int(account.id), actor=actor, reason="milestone_dispute_cleared")

    def milestones_for(self, account_id: int) -> list[Milestone]:
        return (
            Milestone.query.filter_by(escrow_account_id=int(account_id))
            .order_by(Milestone.sequence.asc())
            .all()
        )
