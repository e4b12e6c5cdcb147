from __future__ import annotations

import json

from settlement.extensions import db
from settlement.integrations.common import IntegrationResult
from settlement.integrations.notifications.base import NotificationProvider
from settlement.models import Milestone, Notification, RefundRequest, SubOrder
from settlement.utils.money import money_minor_to_major


class OutboxNotificationProvider(NotificationProvider):
    """Queues notifications as ``notifications`` rows for a separate sender.

    Rows are added to the caller's session; the caller's commit publishes
    them together with the state change they announce.
    """

    name = "outbox"

    def _queue(
        self,
        *,
        user_id: int,
        kind: str,
        title: str,
        message: str,
        subject_type: str,
        subject_id: int,
        dedupe_key: str,
        meta: dict | None = None,
    ) -> IntegrationResult:
        if Notification.query.filter_by(dedupe_key=dedupe_key).first() is not None:
            return IntegrationResult(ok=True, code="DUPLICATE", message="already queued")
        row = Notification(
            user_id=int(user_id),
            kind=kind,
            title=title,
            message=message,
            subject_type=subject_type,
            subject_id=int(subject_id),
            dedupe_key=dedupe_key,
            status="queued",
            meta=json.dumps(meta or {}),
        )
        with db.session.begin_nested():
            db.session.add(row)
        return IntegrationResult(ok=True, code="QUEUED", message="queued", raw={"dedupe_key": dedupe_key})

    def order_created(self, *, sub_order_id: int) -> IntegrationResult:
        sub = db.session.get(SubOrder, int(sub_order_id))
        if sub is None:
            return IntegrationResult(ok=False, code="NOT_FOUND", message="sub-order not found")
        total = money_minor_to_major(sub.total_minor)
        buyer = self._queue(
            user_id=int(sub.buyer_id),
            kind="order_created",
            title="Order placed",
            message=f"Your order #{int(sub.id)} for {total:.2f} {sub.currency} was placed.",
            subject_type="sub_order",
            subject_id=int(sub.id),
            dedupe_key=f"order_created:{int(sub.id)}:buyer",
            meta={"parent_order_id": sub.parent_order_id},
        )
        self._queue(
            user_id=int(sub.vendor_id),
            kind="order_created",
            title="New order",
            message=f"Order #{int(sub.id)} for {total:.2f} {sub.currency} is awaiting payment.",
            subject_type="sub_order",
            subject_id=int(sub.id),
            dedupe_key=f"order_created:{int(sub.id)}:vendor",
            meta={"parent_order_id": sub.parent_order_id},
        )
        return buyer

    def milestone_verified(self, *, milestone_id: int) -> IntegrationResult:
        milestone = db.session.get(Milestone, int(milestone_id))
        if milestone is None:
            return IntegrationResult(ok=False, code="NOT_FOUND", message="milestone not found")
        sub = db.session.get(SubOrder, int(milestone.sub_order_id))
        recipient_id = sub.installer_id if milestone.recipient_type == "installer" and sub.installer_id else sub.vendor_id
        amount = money_minor_to_major(milestone.amount_minor)
        return self._queue(
            user_id=int(recipient_id),
            kind="milestone_verified",
            title="Milestone verified",
            message=f"'{milestone.name}' was verified; {amount:.2f} {sub.currency} was released.",
            subject_type="milestone",
            subject_id=int(milestone.id),
            dedupe_key=f"milestone_verified:{int(milestone.id)}",
            meta={"sub_order_id": int(sub.id), "amount_minor": int(milestone.amount_minor)},
        )

    def refund_issued(self, *, sub_order_id: int, amount_minor: int) -> IntegrationResult:
        sub = db.session.get(SubOrder, int(sub_order_id))
        if sub is None:
            return IntegrationResult(ok=False, code="NOT_FOUND", message="sub-order not found")
        escrow = sub.escrow_account
        refunded = int(escrow.refunded_minor or 0) if escrow is not None else int(amount_minor)
        amount = money_minor_to_major(amount_minor)
        return self._queue(
            user_id=int(sub.buyer_id),
            kind="refund_issued",
            title="Refund issued",
            message=f"{amount:.2f} {sub.currency} was refunded for order #{int(sub.id)}.",
            subject_type="sub_order",
            subject_id=int(sub.id),
            dedupe_key=f"refund_issued:{int(sub.id)}:{refunded}",
            meta={"amount_minor": int(amount_minor)},
        )

    def refund_requested(self, *, refund_request_id: int) -> IntegrationResult:
        row = db.session.get(RefundRequest, int(refund_request_id))
        if row is None:
            return IntegrationResult(ok=False, code="NOT_FOUND", message="refund request not found")
        amount = money_minor_to_major(row.amount_minor)
        return self._queue(
            user_id=int(row.vendor_id),
            kind="refund_requested",
            title="Refund requested",
            message=f"A refund of {amount:.2f} was requested for order #{int(row.sub_order_id)} and awaits your review.",
            subject_type="refund_request",
            subject_id=int(row.id),
            dedupe_key=f"refund_requested:{int(row.id)}",
            meta={"sub_order_id": int(row.sub_order_id), "amount_minor": int(row.amount_minor)},
        )

    def refund_rejected(self, *, refund_request_id: int) -> IntegrationResult:
        row = db.session.get(RefundRequest, int(refund_request_id))
        if row is None:
            return IntegrationResult(ok=False, code="NOT_FOUND", message="refund request not found")
        if row.requester_id is None:
            return IntegrationResult(ok=True, code="NO_RECIPIENT", message="system refund request")
        return self._queue(
            user_id=int(row.requester_id),
            kind="refund_rejected",
            title="Refund declined",
            message=f"Your refund request for order #{int(row.sub_order_id)} was declined. {row.admin_response or ''}".strip(),
            subject_type="refund_request",
            subject_id=int(row.id),
            dedupe_key=f"refund_rejected:{int(row.id)}",
            meta={"sub_order_id": int(row.sub_order_id)},
        )
