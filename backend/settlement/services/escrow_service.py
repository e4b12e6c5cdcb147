from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from settlement.errors import (
    DuplicateTransaction,
    EscrowDisputed,
    EscrowInvariantViolation,
    InvalidRequest,
    InvalidStateTransition,
    NotFound,
)
from settlement.extensions import db
from settlement.models import EscrowAccount, EscrowLedgerEntry, EscrowTransition, SubOrder
from settlement.utils.auth import SYSTEM_ACTOR, Actor

logger = logging.getLogger(__name__)


class EscrowStatus:
    CREATED = "created"
    FUNDED = "funded"
    PARTIAL_RELEASE = "partial_release"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    REFUNDED = "refunded"

    ALLOWED = {
        CREATED: {FUNDED, REFUNDED},
        FUNDED: {PARTIAL_RELEASE, COMPLETED, DISPUTED, REFUNDED},
        PARTIAL_RELEASE: {PARTIAL_RELEASE, COMPLETED, DISPUTED, REFUNDED},
        DISPUTED: {FUNDED, PARTIAL_RELEASE, REFUNDED},
        COMPLETED: set(),
        REFUNDED: set(),
    }

    FUNDABLE = {CREATED, FUNDED, PARTIAL_RELEASE}
    RELEASABLE = {FUNDED, PARTIAL_RELEASE}
    REFUNDABLE = {FUNDED, PARTIAL_RELEASE, DISPUTED}
    TERMINAL = {COMPLETED, REFUNDED}


@dataclass(frozen=True)
class EscrowMovement:
    account: EscrowAccount
    entry: EscrowLedgerEntry | None
    applied: bool


def _check_invariants(account: EscrowAccount) -> None:
    held = int(account.held_minor or 0)
    released = int(account.released_minor or 0)
    total = int(account.total_minor or 0)
    if held < 0 or released < 0 or held + released > total:
        raise EscrowInvariantViolation(
            f"Escrow {int(account.id)} would break held/released bounds",
            escrow_account_id=int(account.id),
            held_minor=held,
            released_minor=released,
            total_minor=total,
        )


def _positive_amount(amount_minor) -> int:
    try:
        amount = int(amount_minor)
    except (TypeError, ValueError):
        raise InvalidRequest("Amount must be an integer number of minor units", amount=amount_minor)
    if amount <= 0:
        raise InvalidRequest("Amount must be positive", amount=amount)
    return amount


class EscrowManager:
    """Owner of every balance change on an escrow account.

    Writes go through the ORM so the account's ``version`` column guards
    against lost updates; callers run these methods inside a contention
    retry and commit afterwards.
    """

    def get(self, account_id: int) -> EscrowAccount:
        account = db.session.get(EscrowAccount, int(account_id))
        if account is None:
            raise NotFound(f"Escrow account {int(account_id)} not found")
        return account

    def open_account(self, sub: SubOrder) -> EscrowAccount:
        account = EscrowAccount(
            sub_order_id=int(sub.id),
            buyer_id=int(sub.buyer_id),
            vendor_id=int(sub.vendor_id),
            installer_id=sub.installer_id,
            total_minor=int(sub.total_minor or 0),
            held_minor=0,
            released_minor=0,
            refunded_minor=0,
            currency=sub.currency or "USD",
            status=EscrowStatus.CREATED,
        )
        db.session.add(account)
        db.session.flush()
        self._record_transition(account, "", EscrowStatus.CREATED, actor=SYSTEM_ACTOR, reason="opened")
        return account

    def _record_transition(self, account: EscrowAccount, from_status: str, to_status: str, *, actor: Actor, reason: str = "", metadata: dict | None = None) -> EscrowTransition:
        row = EscrowTransition(
            escrow_account_id=int(account.id),
            sub_order_id=int(account.sub_order_id),
            from_status=from_status,
            to_status=to_status,
            actor_type=actor.role[:32],
            actor_id=actor.id,
            reason=(reason or "")[:240] or None,
            metadata_json=json.dumps(metadata or {})[:4000],
        )
        db.session.add(row)
        return row

    def _move(self, account: EscrowAccount, target: str, *, actor: Actor, reason: str = "", metadata: dict | None = None) -> None:
        current = account.status or EscrowStatus.CREATED
        if current == target and target != EscrowStatus.PARTIAL_RELEASE:
            return
        if target not in EscrowStatus.ALLOWED.get(current, set()):
            raise InvalidStateTransition(
                f"Escrow {int(account.id)} cannot move from {current} to {target}",
                escrow_account_id=int(account.id),
                from_status=current,
                to_status=target,
            )
        now = datetime.utcnow()
        account.status = target
        if target == EscrowStatus.FUNDED and account.funded_at is None:
            account.funded_at = now
        if target in EscrowStatus.TERMINAL:
            account.closed_at = now
        if current != target:
            self._record_transition(account, current, target, actor=actor, reason=reason, metadata=metadata)

    def _entry(self, account: EscrowAccount, kind: str, reference: str) -> EscrowLedgerEntry | None:
        return EscrowLedgerEntry.query.filter_by(
            escrow_account_id=int(account.id), kind=kind, reference=reference
        ).first()

    def _append_entry(self, account: EscrowAccount, *, kind: str, amount: int, reference: str, recipient_type=None, recipient_id=None) -> EscrowLedgerEntry:
        entry = EscrowLedgerEntry(
            escrow_account_id=int(account.id),
            kind=kind,
            amount_minor=int(amount),
            reference=reference[:160],
            recipient_type=recipient_type,
            recipient_id=recipient_id,
            held_after_minor=int(account.held_minor or 0),
        )
        db.session.add(entry)
        return entry

    def fund(self, account_id: int, amount_minor: int, gateway_txn_id: str, *, actor: Actor = SYSTEM_ACTOR) -> EscrowMovement:
        """Credit the buyer's payment; at most once per gateway transaction."""
        txn = (gateway_txn_id or "").strip()
        if not txn:
            raise InvalidRequest("gateway_txn_id is required")
        account = self.get(account_id)
        if self._entry(account, "fund", txn) is not None:
            raise DuplicateTransaction(
                f"Transaction {txn} already funded escrow {int(account.id)}",
                escrow_account_id=int(account.id),
                gateway_txn_id=txn,
            )
        amount = _positive_amount(amount_minor)
        if account.status == EscrowStatus.DISPUTED:
            raise EscrowDisputed(f"Escrow {int(account.id)} is disputed", escrow_account_id=int(account.id))
        if account.status not in EscrowStatus.FUNDABLE:
            raise InvalidStateTransition(
                f"Escrow {int(account.id)} is {account.status} and cannot be funded",
                escrow_account_id=int(account.id),
            )
        outstanding = int(account.total_minor or 0) - account.funded_minor
        if amount > outstanding:
            raise EscrowInvariantViolation(
                f"Funding {amount} exceeds the outstanding {outstanding}",
                escrow_account_id=int(account.id),
                amount_minor=amount,
                outstanding_minor=outstanding,
            )

        account.held_minor = int(account.held_minor or 0) + amount
        _check_invariants(account)
        if account.status == EscrowStatus.CREATED:
            self._move(account, EscrowStatus.FUNDED, actor=actor, reason="payment_confirmed", metadata={"gateway_txn_id": txn})
        entry = self._append_entry(account, kind="fund", amount=amount, reference=txn, recipient_type="escrow")
        db.session.flush()
        logger.info("escrow_funded account=%s amount=%s txn=%s held=%s", account.id, amount, txn, account.held_minor)
        return EscrowMovement(account=account, entry=entry, applied=True)

    def release_partial(
        self,
        account_id: int,
        amount_minor: int,
        *,
        recipient_type: str,
        recipient_id: int,
        reference: str,
        actor: Actor = SYSTEM_ACTOR,
    ) -> EscrowMovement:
        account = self.get(account_id)
        ref = (reference or "").strip()
        if not ref:
            raise InvalidRequest("release reference is required")
        existing = self._entry(account, "release", ref)
        if existing is not None:
            return EscrowMovement(account=account, entry=existing, applied=False)
        if account.status == EscrowStatus.DISPUTED:
            raise EscrowDisputed(
                f"Escrow {int(account.id)} is disputed; releases are blocked",
                escrow_account_id=int(account.id),
            )
        if account.status not in EscrowStatus.RELEASABLE:
            raise InvalidStateTransition(
                f"Escrow {int(account.id)} is {account.status} and cannot release funds",
                escrow_account_id=int(account.id),
            )
        amount = _positive_amount(amount_minor)
        held = int(account.held_minor or 0)
        if amount > held:
            raise EscrowInvariantViolation(
                f"Release of {amount} exceeds the {held} held",
                escrow_account_id=int(account.id),
                amount_minor=amount,
                held_minor=held,
            )

        account.held_minor = held - amount
        account.released_minor = int(account.released_minor or 0) + amount
        _check_invariants(account)
        # Refunded money counts as settled; the account completes once every
        # unit of the total was either paid out or returned.
        settled = int(account.released_minor or 0) + int(account.refunded_minor or 0)
        fully_released = account.held_minor == 0 and settled == int(account.total_minor or 0)
        target = EscrowStatus.COMPLETED if fully_released else EscrowStatus.PARTIAL_RELEASE
        self._move(account, target, actor=actor, reason=ref, metadata={"amount_minor": amount})
        entry = self._append_entry(
            account,
            kind="release",
            amount=amount,
            reference=ref,
            recipient_type=recipient_type,
            recipient_id=int(recipient_id),
        )
        db.session.flush()
        logger.info(
            "escrow_released account=%s amount=%s to=%s:%s held=%s status=%s",
            account.id,
            amount,
            recipient_type,
            recipient_id,
            account.held_minor,
            account.status,
        )
        return EscrowMovement(account=account, entry=entry, applied=True)

    def refund(self, account_id: int, amount_minor: int, *, reference: str, actor: Actor = SYSTEM_ACTOR) -> EscrowMovement:
        account = self.get(account_id)
        ref = (reference or "").strip()
        if not ref:
            raise InvalidRequest("refund reference is required")
        existing = self._entry(account, "refund", ref)
        if existing is not None:
            return EscrowMovement(account=account, entry=existing, applied=False)
        if account.status not in EscrowStatus.REFUNDABLE:
            raise InvalidStateTransition(
                f"Escrow {int(account.id)} is {account.status} and cannot be refunded",
                escrow_account_id=int(account.id),
            )
        amount = _positive_amount(amount_minor)
        held = int(account.held_minor or 0)
        if amount > held:
            raise EscrowInvariantViolation(
                f"Refund of {amount} exceeds the {held} held",
                escrow_account_id=int(account.id),
                amount_minor=amount,
                held_minor=held,
            )

        account.held_minor = held - amount
        account.refunded_minor = int(account.refunded_minor or 0) + amount
        _check_invariants(account)
        if account.held_minor == 0:
            self._move(account, EscrowStatus.REFUNDED, actor=actor, reason=ref, metadata={"amount_minor": amount})
        entry = self._append_entry(
            account,
            kind="refund",
            amount=amount,
            reference=ref,
            recipient_type="buyer",
            recipient_id=int(account.buyer_id),
        )
        db.session.flush()
        logger.info("escrow_refunded account=%s amount=%s held=%s status=%s", account.id, amount, account.held_minor, account.status)
        return EscrowMovement(account=account, entry=entry, applied=True)

    def dispute(self, account_id: int, *, actor: Actor = SYSTEM_ACTOR, reason: str = "") -> EscrowAccount:
        account = self.get(account_id)
        if account.status == EscrowStatus.DISPUTED:
            return account
        if account.status not in EscrowStatus.RELEASABLE:
            raise InvalidStateTransition(
                f"Escrow {int(account.id)} is {account.status} and cannot be disputed",
                escrow_account_id=int(account.id),
            )
        previous = account.status
        self._move(account, EscrowStatus.DISPUTED, actor=actor, reason=reason)
        account.status_before_dispute = previous
        account.disputed_at = datetime.utcnow()
        db.session.flush()
        logger.warning("escrow_disputed account=%s by=%s:%s reason=%s", account.id, actor.role, actor.id, reason)
        return account

    def resolve_dispute(self, account_id: int, *, actor: Actor, refund_minor: int = 0, reason: str = "") -> EscrowAccount:
        """Clear a dispute, optionally refunding the buyer first.

        The account goes back to the state it was in when disputed, or to
        ``refunded`` when the refund empties it.
        """
        account = self.get(account_id)
        if account.status != EscrowStatus.DISPUTED:
            raise InvalidStateTransition(
                f"Escrow {int(account.id)} is not disputed",
                escrow_account_id=int(account.id),
            )
        if int(refund_minor or 0) > 0:
            self.refund(
                int(account.id),
                int(refund_minor),
                reference=f"dispute:{int(account.id)}:{int(account.version or 0)}",
                actor=actor,
            )
            if account.status == EscrowStatus.REFUNDED:
                account.status_before_dispute = None
                return account
        restored = account.status_before_dispute or EscrowStatus.FUNDED
        self._move(account, restored, actor=actor, reason=reason or "dispute_resolved")
        account.status_before_dispute = None
        db.session.flush()
        logger.info("escrow_dispute_resolved account=%s restored=%s", account.id, restored)
        return account

    def close_unfunded(self, account_id: int, *, actor: Actor = SYSTEM_ACTOR, reason: str = "cancelled") -> EscrowAccount:
        account = self.get(account_id)
        if account.status == EscrowStatus.REFUNDED:
            return account
        if account.status != EscrowStatus.CREATED or account.funded_minor != 0:
            raise InvalidStateTransition(
                f"Escrow {int(account.id)} holds funds and cannot be closed",
                escrow_account_id=int(account.id),
            )
        self._move(account, EscrowStatus.REFUNDED, actor=actor, reason=reason, metadata={"amount_minor": 0})
        db.session.flush()
        return account

    def last_dispute_reason(self, account: EscrowAccount) -> str:
        row = (
            EscrowTransition.query.filter_by(escrow_account_id=int(account.id), to_status=EscrowStatus.DISPUTED)
            .order_by(EscrowTransition.id.desc())
            .first()
        )
        return (row.reason or "") if row is not None else ""

    def ledger(self, account_id: int) -> list[EscrowLedgerEntry]:
        return (
            EscrowLedgerEntry.query.filter_by(escrow_account_id=int(account_id))
            .order_by(EscrowLedgerEntry.id.asc())
            .all()
        )
