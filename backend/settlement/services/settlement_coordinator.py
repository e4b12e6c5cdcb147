from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from settlement.errors import (
    DuplicateTransaction,
    EscrowInvariantViolation,
    InvalidRequest,
    InvalidStateTransition,
    NotAuthorized,
    NotFound,
    PaymentAmountMismatch,
    SettlementError,
)
from settlement.extensions import db
from settlement.integrations.catalog.factory import build_catalog_provider
from settlement.integrations.notifications.base import NotificationProvider
from settlement.integrations.notifications.factory import build_notification_provider
from settlement.models import EscrowLedgerEntry, InventoryAlert, Order, Product, RefundRequest, SubOrder, WebhookEvent
from settlement.services.escrow_service import EscrowManager, EscrowStatus
from settlement.services.inventory_ledger import InventoryLedger
from settlement.services.milestone_scheduler import MilestoneScheduler, MilestoneStatus, default_template
from settlement.services.order_splitter import OrderSplitter, SplitResult
from settlement.services.pricing import PricingCalculator
from settlement.services.sub_order_service import SubOrderStatus, is_settled, transition_sub_order
from settlement.utils.auth import SYSTEM_ACTOR, Actor
from settlement.utils.events import log_event
from settlement.utils.money import allocate_within_caps
from settlement.utils.retry import run_with_contention_retry
from settlement.utils.settings import EngineSettings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class SubOrderFunding:
    sub_order_id: int
    escrow_account_id: int
    amount_minor: int
    ok: bool
    applied: bool
    error: SettlementError | None = None

    def to_dict(self) -> dict:
        payload = {
            "sub_order_id": self.sub_order_id,
            "escrow_account_id": self.escrow_account_id,
            "amount_minor": self.amount_minor,
            "ok": self.ok,
            "applied": self.applied,
        }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


@dataclass
class PaymentConfirmation:
    parent_order_id: str
    gateway_txn_id: str
    amount_minor: int
    results: list[SubOrderFunding] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def duplicate(self) -> bool:
        return bool(self.results) and all(r.ok and not r.applied for r in self.results)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "duplicate": self.duplicate,
            "parent_order_id": self.parent_order_id,
            "gateway_txn_id": self.gateway_txn_id,
            "amount_minor": self.amount_minor,
            "results": [r.to_dict() for r in self.results],
        }


class SettlementCoordinator:
    """Facade sequencing the ledger, splitter, escrow and milestones.

    It is the only component that spans several sub-orders in one call;
    each sub-order is still committed in its own transaction.
    """

    def __init__(
        self,
        *,
        settings: EngineSettings,
        splitter: OrderSplitter,
        ledger: InventoryLedger,
        escrow: EscrowManager,
        scheduler: MilestoneScheduler,
        notifier: NotificationProvider,
    ):
        self.settings = settings
        self.splitter = splitter
        self.ledger = ledger
        self.escrow = escrow
        self.scheduler = scheduler
        self.notifier = notifier

    # ---- lookups -------------------------------------------------------

    def _order(self, parent_order_id: str) -> Order:
        order = db.session.get(Order, str(parent_order_id))
        if order is None:
            raise NotFound(f"Order {parent_order_id} not found")
        return order

    def _sub(self, sub_order_id: int) -> SubOrder:
        sub = db.session.get(SubOrder, int(sub_order_id))
        if sub is None:
            raise NotFound(f"Sub-order {int(sub_order_id)} not found")
        return sub

    def _notify(self, kind: str, **kwargs) -> None:
        # Notifications are published after the settlement commit and never
        # undo it.
        try:
            result = getattr(self.notifier, kind)(**kwargs)
            db.session.commit()
            if not result.ok:
                logger.warning("notification_not_queued kind=%s code=%s", kind, result.code)
        except Exception:
            db.session.rollback()
            logger.exception("notification_failed kind=%s args=%s", kind, kwargs)

    # ---- checkout ------------------------------------------------------

    def checkout(
        self,
        buyer: Actor,
        cart,
        *,
        payment_type: str = "full",
        installment_months: int | None = None,
        installers: dict | None = None,
    ) -> SplitResult:
        if buyer.id is None or buyer.role not in ("buyer", "admin"):
            raise NotAuthorized("Only buyers can check out")
        result = self.splitter.split(
            int(buyer.id),
            cart,
            payment_type=payment_type,
            installment_months=installment_months,
            installers=installers,
        )
        for sub in result.sub_orders:
            run_with_contention_retry("coordinator.schedule_defaults", self._schedule_defaults, int(sub.id))
        log_event(
            "checkout_completed",
            actor_user_id=buyer.id,
            subject_type="order",
            subject_id=result.parent_order.id,
            metadata={
                "sub_order_ids": [int(s.id) for s in result.sub_orders],
                "failed_vendor_ids": [f.vendor_id for f in result.failures],
                "payment_type": payment_type,
            },
        )
        db.session.commit()
        for sub in result.sub_orders:
            self._notify("order_created", sub_order_id=int(sub.id))
        return result

    def _schedule_defaults(self, sub_order_id: int) -> None:
        sub = self._sub(sub_order_id)
        self.scheduler.schedule(int(sub.escrow_account.id), default_template(sub.installer_id is not None))
        db.session.commit()

    # ---- payment -------------------------------------------------------

    def _webhook_row(self, txn: str, parent_order_id: str, amount_minor: int) -> WebhookEvent:
        row = WebhookEvent.query.filter_by(provider="gateway", event_id=txn).first()
        if row is None:
            row = WebhookEvent(
                provider="gateway",
                event_id=txn,
                parent_order_id=parent_order_id,
                amount_minor=int(amount_minor),
                status="received",
                deliveries=1,
            )
            db.session.add(row)
        else:
            row.deliveries = int(row.deliveries or 0) + 1
        db.session.commit()
        return row

    def confirm_payment(self, parent_order_id: str, gateway_txn_id: str, amount_minor: int) -> PaymentConfirmation:
        """Fund every live sub-order of a parent order from one gateway charge.

        The charge is split in proportion to what each sub-order still owes
        and no share ever exceeds that balance, so successive partial
        payments always land. Each sub-order is funded, has its stock
        committed and moves to ``escrow`` in its own transaction; a
        redelivered transaction id is a no-op for the sub-orders it already
        funded and only the unapplied rest is placed again.
        """
        txn = (gateway_txn_id or "").strip()[:128]
        if not txn:
            raise InvalidRequest("gateway_txn_id is required")
        try:
            amount = int(amount_minor)
        except (TypeError, ValueError):
            raise InvalidRequest("amount must be an integer number of minor units")
        if amount <= 0:
            raise InvalidRequest("amount must be positive")

        order = self._order(parent_order_id)
        with_escrow = [s for s in order.sub_orders if s.escrow_account is not None]
        # Applied shares of this transaction count even for sub-orders that
        # were cancelled or refunded since.
        already = {
            int(e.escrow_account_id): int(e.amount_minor)
            for e in EscrowLedgerEntry.query.filter(
                EscrowLedgerEntry.escrow_account_id.in_([int(s.escrow_account.id) for s in with_escrow]),
                EscrowLedgerEntry.kind == "fund",
                EscrowLedgerEntry.reference == txn,
            ).all()
        }
        fresh = [s for s in with_escrow if not is_settled(s) and int(s.escrow_account.id) not in already]
        if not fresh and not already:
            raise InvalidStateTransition(f"Every sub-order of {order.id} is settled", parent_order_id=order.id)

        webhook = self._webhook_row(txn, order.id, amount)
        applied_before = sum(already.values())
        owed = [max(0, int(s.total_minor or 0) - s.escrow_account.funded_minor) for s in fresh]
        outstanding = applied_before + sum(owed)
        if amount > outstanding or amount < applied_before:
            webhook.status = "failed"
            webhook.error = "PAYMENT_AMOUNT_MISMATCH"
            db.session.commit()
            raise PaymentAmountMismatch(
                f"Charged {amount} but only {outstanding} is outstanding",
                parent_order_id=order.id,
                amount_minor=amount,
                outstanding_minor=outstanding,
                already_applied_minor=applied_before,
            )

        shares = dict(
            zip(
                [int(s.id) for s in fresh],
                allocate_within_caps(amount - applied_before, owed),
            )
        )
        confirmation = PaymentConfirmation(parent_order_id=order.id, gateway_txn_id=txn, amount_minor=amount)
        for sub in with_escrow:
            sub_id, account_id = int(sub.id), int(sub.escrow_account.id)
            if account_id in already:
                confirmation.results.append(
                    SubOrderFunding(sub_id, account_id, already[account_id], ok=True, applied=False)
                )
            elif sub_id in shares:
                confirmation.results.append(self._fund_sub_order(sub_id, account_id, shares[sub_id], txn))

        webhook = WebhookEvent.query.filter_by(provider="gateway", event_id=txn).first()
        if confirmation.duplicate:
            webhook.status = "duplicate"
        elif confirmation.ok:
            webhook.status = "processed"
        else:
            webhook.status = "failed"
            webhook.error = ",".join(sorted({r.error.code for r in confirmation.results if r.error is not None}))
        webhook.processed_at = datetime.utcnow()
        db.session.commit()
        logger.info(
            "payment_confirmed parent=%s txn=%s amount=%s ok=%s duplicate=%s",
            order.id,
            txn,
            amount,
            confirmation.ok,
            confirmation.duplicate,
        )
        return confirmation

    def _fund_sub_order(self, sub_order_id: int, account_id: int, share: int, txn: str) -> SubOrderFunding:
        if share <= 0:
            return SubOrderFunding(sub_order_id, account_id, 0, ok=True, applied=False)
        try:
            run_with_contention_retry("coordinator.fund_sub_order", self._apply_funding, sub_order_id, account_id, share, txn)
        except DuplicateTransaction:
            db.session.rollback()
            logger.info("duplicate_funding_ignored sub_order=%s txn=%s", sub_order_id, txn)
            return SubOrderFunding(sub_order_id, account_id, share, ok=True, applied=False)
        except SettlementError as exc:
            db.session.rollback()
            logger.warning("sub_order_funding_failed sub_order=%s txn=%s err=%s", sub_order_id, txn, exc.code)
            return SubOrderFunding(sub_order_id, account_id, share, ok=False, applied=False, error=exc)
        return SubOrderFunding(sub_order_id, account_id, share, ok=True, applied=True)

    def _apply_funding(self, sub_order_id: int, account_id: int, share: int, txn: str) -> None:
        sub = self._sub(sub_order_id)
        self.escrow.fund(account_id, share, txn)
        if sub.status == SubOrderStatus.PENDING:
            wanted: dict[int, int] = {}
            for line in sub.lines:
                wanted[int(line.product_id)] = wanted.get(int(line.product_id), 0) + int(line.quantity)
            # Reservations may have lapsed before the payment arrived; the
            # stock is taken again or the funding fails as a whole.
            self.ledger.settle_sub_order(int(sub.id), wanted)
            transition_sub_order(sub, SubOrderStatus.PAID, reason=f"payment:{txn}")
            transition_sub_order(sub, SubOrderStatus.ESCROW, reason="escrow_funded")
            sub.payment_reference = txn
        log_event(
            "escrow_funded",
            subject_type="escrow_account",
            subject_id=account_id,
            idempotency_key=f"escrow_funded:{account_id}:{txn}",
            metadata={"sub_order_id": sub_order_id, "amount_minor": share, "gateway_txn_id": txn},
        )
        db.session.commit()

    # ---- milestones ----------------------------------------------------

    def reschedule_milestones(self, account_id: int, items, actor: Actor):
        account = self.escrow.get(account_id)
        if not (actor.is_admin or (actor.id is not None and int(actor.id) == int(account.vendor_id))):
            raise NotAuthorized("Only the vendor or an admin may change milestones")

        def _run():
            rows = self.scheduler.schedule(int(account_id), items)
            db.session.commit()
            return rows

        return run_with_contention_retry("coordinator.reschedule_milestones", _run)

    def update_milestone(self, milestone_id: int, action: str, actor: Actor):
        milestone = run_with_contention_retry("coordinator.update_milestone", self._advance, int(milestone_id), action, actor)
        if milestone.status == MilestoneStatus.VERIFIED:
            self._notify("milestone_verified", milestone_id=int(milestone.id))
        return milestone

    def _advance(self, milestone_id: int, action: str, actor: Actor):
        milestone = self.scheduler.advance(milestone_id, action, actor)
        sub = self._sub(milestone.sub_order_id)
        account = self.escrow.get(milestone.escrow_account_id)
        if milestone.status == MilestoneStatus.IN_PROGRESS and sub.status == SubOrderStatus.ESCROW:
            transition_sub_order(sub, SubOrderStatus.INSTALLING, actor=actor, reason=f"milestone:{int(milestone.id)}")
        if account.status == EscrowStatus.COMPLETED and sub.status in (SubOrderStatus.ESCROW, SubOrderStatus.INSTALLING):
            if sub.status == SubOrderStatus.ESCROW:
                transition_sub_order(sub, SubOrderStatus.INSTALLING, actor=actor)
            transition_sub_order(sub, SubOrderStatus.COMPLETED, actor=actor, reason="escrow_completed")
        log_event(
            f"milestone_{milestone.status}",
            actor_user_id=actor.id,
            subject_type="milestone",
            subject_id=int(milestone.id),
            metadata={"action": action, "escrow_account_id": int(account.id), "held_minor": int(account.held_minor)},
        )
        db.session.commit()
        return milestone

    # ---- refunds, cancellation and disputes -----------------------------

    def _refund_escrow(self, account_id: int, amount_minor: int, *, reference: str, actor: Actor) -> None:
        self.escrow.refund(int(account_id), int(amount_minor), reference=reference, actor=actor)
        self.scheduler.rebalance(int(account_id))

    def request_refund(self, sub_order_id: int, amount_minor: int, reason: str, actor: Actor) -> RefundRequest:
        """Record a refund request for ``sub_order_id``.

        Refunds are processed at once unless ``refund_review_required`` is
        set, in which case a buyer's request waits as ``pending`` for the
        vendor or an admin (``review_refund``). Admin requests never wait.
        """
        sub = self._sub(sub_order_id)
        if not (actor.is_admin or (actor.id is not None and int(actor.id) == int(sub.buyer_id))):
            raise NotAuthorized("Only the buyer or an admin may request a refund")
        if sub.escrow_account is None:
            raise InvalidStateTransition(f"Sub-order {int(sub.id)} has no escrow account")
        try:
            amount_minor = int(amount_minor)
        except (TypeError, ValueError):
            raise InvalidRequest("amount must be an integer number of minor units")
        if amount_minor <= 0:
            raise InvalidRequest("amount must be positive")
        needs_review = bool(self.settings.refund_review_required) and not actor.is_admin

        def _run() -> RefundRequest:
            current = self._sub(sub_order_id)
            account = current.escrow_account
            request_row = RefundRequest(
                sub_order_id=int(current.id),
                escrow_account_id=int(account.id),
                requester_id=actor.id,
                vendor_id=int(current.vendor_id),
                amount_minor=int(amount_minor),
                reason=(reason or "")[:2000],
                status="pending" if needs_review else "approved",
            )
            db.session.add(request_row)
            db.session.flush()
            if needs_review:
                if account.status not in EscrowStatus.REFUNDABLE:
                    raise InvalidStateTransition(
                        f"Escrow {int(account.id)} is {account.status} and cannot be refunded",
                        escrow_account_id=int(account.id),
                    )
                if amount_minor > int(account.held_minor or 0):
                    raise EscrowInvariantViolation(
                        f"Refund of {amount_minor} exceeds the {int(account.held_minor or 0)} held",
                        escrow_account_id=int(account.id),
                        amount_minor=amount_minor,
                    )
                log_event(
                    "refund_requested",
                    actor_user_id=actor.id,
                    subject_type="sub_order",
                    subject_id=int(current.id),
                    metadata={"amount_minor": int(amount_minor), "refund_request_id": int(request_row.id)},
                )
            else:
                self._refund_escrow(int(account.id), amount_minor, reference=request_row.reference, actor=actor)
                request_row.status = "processed"
                request_row.processed_at = datetime.utcnow()
                log_event(
                    "refund_processed",
                    actor_user_id=actor.id,
                    subject_type="sub_order",
                    subject_id=int(current.id),
                    metadata={"amount_minor": int(amount_minor), "refund_request_id": int(request_row.id)},
                )
            db.session.commit()
            return request_row

        row = run_with_contention_retry("coordinator.request_refund", _run)
        if row.status == "pending":
            self._notify("refund_requested", refund_request_id=int(row.id))
        else:
            self._notify("refund_issued", sub_order_id=int(row.sub_order_id), amount_minor=int(row.amount_minor))
        return row

    def review_refund(self, refund_request_id: int, decision: str, actor: Actor, *, response: str = "") -> RefundRequest:
        """Approve (and process) or reject a pending refund request."""
        verb = (decision or "").strip().lower()
        if verb not in ("approve", "reject"):
            raise InvalidRequest(f"Unknown refund decision {decision!r}", allowed=["approve", "reject"])
        row = db.session.get(RefundRequest, int(refund_request_id))
        if row is None:
            raise NotFound(f"Refund request {int(refund_request_id)} not found")
        if not (actor.is_admin or (actor.id is not None and int(actor.id) == int(row.vendor_id))):
            raise NotAuthorized("Only the vendor or an admin may review this refund")

        def _run() -> RefundRequest:
            current = db.session.get(RefundRequest, int(refund_request_id))
            if current.status != "pending":
                raise InvalidStateTransition(
                    f"Refund request {int(current.id)} is {current.status}",
                    refund_request_id=int(current.id),
                )
            current.admin_response = (response or "")[:2000] or None
            if verb == "reject":
                current.status = "rejected"
            else:
                current.status = "approved"
                self._refund_escrow(int(current.escrow_account_id), int(current.amount_minor), reference=current.reference, actor=actor)
                current.status = "processed"
                current.processed_at = datetime.utcnow()
            log_event(
                f"refund_{current.status}",
                actor_user_id=actor.id,
                subject_type="refund_request",
                subject_id=int(current.id),
                metadata={"amount_minor": int(current.amount_minor), "sub_order_id": int(current.sub_order_id)},
            )
            db.session.commit()
            return current

        reviewed = run_with_contention_retry("coordinator.review_refund", _run)
        if reviewed.status == "processed":
            self._notify("refund_issued", sub_order_id=int(reviewed.sub_order_id), amount_minor=int(reviewed.amount_minor))
        else:
            self._notify("refund_rejected", refund_request_id=int(reviewed.id))
        return reviewed

    def list_refunds(self, actor: Actor, *, status: str | None = None) -> list[RefundRequest]:
        q = RefundRequest.query
        if actor.role == "vendor":
            q = q.filter_by(vendor_id=int(actor.id))
        elif not actor.is_admin:
            q = q.filter_by(requester_id=actor.id)
        if status:
            q = q.filter_by(status=str(status).strip().lower())
        return q.order_by(RefundRequest.id.desc()).all()

    def cancel_sub_order(self, sub_order_id: int, actor: Actor, *, reason: str = "cancelled") -> SubOrder:
        sub = self._sub(sub_order_id)
        if not (actor.is_admin or actor.is_system or (actor.id is not None and int(actor.id) == int(sub.buyer_id))):
            raise NotAuthorized("Only the buyer or an admin may cancel this order")
        refunded = {"amount": 0}

        def _run() -> SubOrder:
            current = self._sub(sub_order_id)
            if current.status == SubOrderStatus.CANCELLED:
                return current
            if SubOrderStatus.CANCELLED not in SubOrderStatus.ALLOWED.get(current.status, set()):
                raise InvalidStateTransition(
                    f"Sub-order {int(current.id)} is {current.status} and cannot be cancelled",
                    sub_order_id=int(current.id),
                )
            account = current.escrow_account
            if account is not None:
                held = int(account.held_minor or 0)
                if held > 0:
                    self.escrow.refund(int(account.id), held, reference=f"cancel:{int(current.id)}", actor=actor)
                    refunded["amount"] = held
                elif account.status == EscrowStatus.CREATED:
                    self.escrow.close_unfunded(int(account.id), actor=actor, reason=reason)
            self.ledger.release_for_sub_order(int(current.id), reason=reason)
            transition_sub_order(current, SubOrderStatus.CANCELLED, actor=actor, reason=reason)
            log_event(
                "sub_order_cancelled",
                actor_user_id=actor.id,
                subject_type="sub_order",
                subject_id=int(current.id),
                metadata={"reason": reason, "refunded_minor": refunded["amount"]},
            )
            db.session.commit()
            return current

        result = run_with_contention_retry("coordinator.cancel_sub_order", _run)
        if refunded["amount"]:
            self._notify("refund_issued", sub_order_id=int(result.id), amount_minor=refunded["amount"])
        return result

    def dispute_escrow(self, account_id: int, actor: Actor, *, reason: str = ""):
        account = self.escrow.get(account_id)
        if not (actor.is_admin or (actor.id is not None and int(actor.id) == int(account.buyer_id))):
            raise NotAuthorized("Only the buyer or an admin may dispute an escrow account")

        def _run():
            row = self.escrow.dispute(int(account_id), actor=actor, reason=reason or "manual")
            log_event("escrow_disputed", actor_user_id=actor.id, subject_type="escrow_account", subject_id=int(account_id), metadata={"reason": reason})
            db.session.commit()
            return row

        return run_with_contention_retry("coordinator.dispute_escrow", _run)

    def resolve_dispute(self, account_id: int, actor: Actor, *, refund_minor: int = 0, reason: str = ""):
        if not actor.is_admin:
            raise NotAuthorized("Only an admin may resolve an escrow dispute")

        def _run():
            row = self.escrow.resolve_dispute(int(account_id), actor=actor, refund_minor=int(refund_minor or 0), reason=reason)
            if int(refund_minor or 0) > 0:
                self.scheduler.rebalance(int(account_id))
            log_event(
                "escrow_dispute_resolved",
                actor_user_id=actor.id,
                subject_type="escrow_account",
                subject_id=int(account_id),
                metadata={"refund_minor": int(refund_minor or 0), "status": row.status},
            )
            db.session.commit()
            return row

        account = run_with_contention_retry("coordinator.resolve_dispute", _run)
        if int(refund_minor or 0) > 0:
            self._notify("refund_issued", sub_order_id=int(account.sub_order_id), amount_minor=int(refund_minor))
        return account

    # ---- vendor inventory ----------------------------------------------

    def _owned_product(self, product_id: int, actor: Actor) -> Product:
        product = db.session.get(Product, int(product_id))
        if product is None:
            raise NotFound(f"Product {int(product_id)} not found")
        if not (actor.is_admin or (actor.id is not None and int(actor.id) == int(product.vendor_id))):
            raise NotAuthorized("Only the vendor or an admin may manage this product's stock")
        return product

    def _check_vendor_scope(self, vendor_id: int, actor: Actor) -> None:
        if not (actor.is_admin or (actor.id is not None and int(actor.id) == int(vendor_id))):
            raise NotAuthorized("Only the vendor or an admin may view this inventory")

    def vendor_inventory(self, vendor_id: int, actor: Actor) -> list[dict]:
        self._check_vendor_scope(vendor_id, actor)
        rows = []
        for product, item in self.ledger.items_for_vendor(int(vendor_id)):
            entry = item.to_dict()
            entry["product_name"] = product.name
            entry["is_active"] = bool(product.is_active)
            entry["low_stock"] = int(item.available_quantity) <= int(item.min_stock_level or 0)
            rows.append(entry)
        return rows

    def restock(self, product_id: int, quantity: int, actor: Actor, *, notes: str = ""):
        self._owned_product(product_id, actor)

        def _run():
            item = self.ledger.restock(int(product_id), quantity, notes=notes)
            log_event(
                "inventory_restocked",
                actor_user_id=actor.id,
                subject_type="product",
                subject_id=int(product_id),
                metadata={"quantity": int(quantity), "on_hand": int(item.on_hand_quantity)},
            )
            db.session.commit()
            return item

        return run_with_contention_retry("coordinator.restock", _run)

    def set_min_stock_level(self, product_id: int, level: int, actor: Actor):
        self._owned_product(product_id, actor)

        def _run():
            item = self.ledger.set_min_stock_level(int(product_id), level)
            db.session.commit()
            return item

        return run_with_contention_retry("coordinator.set_min_stock_level", _run)

    def inventory_alerts(self, vendor_id: int, actor: Actor, *, unread_only: bool = False) -> list[InventoryAlert]:
        self._check_vendor_scope(vendor_id, actor)
        return self.ledger.alerts_for_vendor(int(vendor_id), unread_only=unread_only)

    def acknowledge_alert(self, alert_id: int, actor: Actor) -> InventoryAlert:
        alert = db.session.get(InventoryAlert, int(alert_id))
        if alert is None:
            raise NotFound(f"Inventory alert {int(alert_id)} not found")
        self._check_vendor_scope(int(alert.vendor_id), actor)
        self.ledger.mark_alert_read(int(alert_id))
        db.session.commit()
        return alert

    # ---- read side -----------------------------------------------------

    def order_summary(self, parent_order_id: str, actor: Actor | None = None) -> dict:
        order = self._order(parent_order_id)
        subs = list(order.sub_orders)
        if actor is not None and not actor.is_admin and actor.id != int(order.buyer_id):
            subs = [s for s in subs if actor.id in (s.vendor_id, s.installer_id)]
            if not subs:
                raise NotAuthorized("Not a party to this order")
        payload = order.to_dict(include_sub_orders=False)
        payload["sub_orders"] = []
        for sub in subs:
            entry = sub.to_dict()
            if sub.escrow_account is not None:
                entry["escrow"] = sub.escrow_account.to_dict(include_milestones=True)
            payload["sub_orders"].append(entry)
        return payload

    def archive_order(self, parent_order_id: str, actor: Actor) -> Order:
        if not actor.is_admin:
            raise NotAuthorized("Only an admin may archive orders")
        order = self._order(parent_order_id)
        if order.archived_at is not None:
            return order
        open_subs = [int(s.id) for s in order.sub_orders if not is_settled(s)]
        if open_subs:
            raise InvalidStateTransition(
                f"Order {order.id} still has open sub-orders",
                parent_order_id=order.id,
                open_sub_order_ids=open_subs,
            )
        order.archived_at = datetime.utcnow()
        log_event("order_archived", actor_user_id=actor.id, subject_type="order", subject_id=order.id)
        db.session.commit()
        return order

    def expire_stale_reservations(self, now: datetime | None = None) -> list[int]:
        """Release reservations past their TTL and cancel their pending sub-orders."""
        touched = self.ledger.sweep_expired(now)
        db.session.commit()
        cancelled: list[int] = []
        for sub_order_id in touched:
            sub = self._sub(sub_order_id)
            if sub.status != SubOrderStatus.PENDING:
                continue
            try:
                self.cancel_sub_order(sub_order_id, SYSTEM_ACTOR, reason="reservation_expired")
            except SettlementError as exc:
                db.session.rollback()
                logger.warning("stale_sub_order_cancel_failed sub_order=%s err=%s", sub_order_id, exc.code)
                continue
            cancelled.append(int(sub_order_id))
        return cancelled


def build_coordinator(settings: EngineSettings | None = None) -> SettlementCoordinator:
    settings = settings or get_settings()
    ledger = InventoryLedger(ttl_seconds=settings.reservation_ttl_seconds)
    escrow = EscrowManager()
    splitter = OrderSplitter(
        catalog=build_catalog_provider(),
        pricing=PricingCalculator(settings),
        ledger=ledger,
        escrow=escrow,
        currency=settings.currency,
    )
    return SettlementCoordinator(
        settings=settings,
        splitter=splitter,
        ledger=ledger,
        escrow=escrow,
        scheduler=MilestoneScheduler(escrow, due_days=settings.milestone_due_days),
        notifier=build_notification_provider(settings),
    )
