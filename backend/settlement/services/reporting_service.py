from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from settlement.errors import NotFound
from settlement.extensions import db
from settlement.models import EscrowAccount, EscrowLedgerEntry, SubOrder, User
from settlement.utils.money import bps_minor_half_up


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def vendor_revenue(vendor_id: int, *, commission_bps: int, now: datetime | None = None) -> dict:
    """Sales and settlement totals for one vendor, in minor units.

    Commission is charged on what escrow actually released to the vendor,
    half-up at ``commission_bps``.
    """
    vendor = db.session.get(User, int(vendor_id))
    if vendor is None or vendor.role_name != "vendor":
        raise NotFound(f"Vendor {int(vendor_id)} not found")
    stamp = now or datetime.utcnow()

    live = SubOrder.query.filter(SubOrder.vendor_id == int(vendor_id), SubOrder.status != "cancelled")
    total_orders = live.count()
    pending_orders = live.filter(SubOrder.status == "pending").count()
    gross_sales = int(
        db.session.query(func.coalesce(func.sum(SubOrder.total_minor), 0))
        .filter(SubOrder.vendor_id == int(vendor_id), SubOrder.status != "cancelled")
        .scalar()
        or 0
    )
    monthly_sales = int(
        db.session.query(func.coalesce(func.sum(SubOrder.total_minor), 0))
        .filter(
            SubOrder.vendor_id == int(vendor_id),
            SubOrder.status != "cancelled",
            SubOrder.created_at >= _month_start(stamp),
        )
        .scalar()
        or 0
    )
    released = int(
        db.session.query(func.coalesce(func.sum(EscrowLedgerEntry.amount_minor), 0))
        .filter(
            EscrowLedgerEntry.kind == "release",
            EscrowLedgerEntry.recipient_type == "vendor",
            EscrowLedgerEntry.recipient_id == int(vendor_id),
        )
        .scalar()
        or 0
    )
    held, refunded = db.session.query(
        func.coalesce(func.sum(EscrowAccount.held_minor), 0),
        func.coalesce(func.sum(EscrowAccount.refunded_minor), 0),
    ).filter(EscrowAccount.vendor_id == int(vendor_id)).one()

    commission = bps_minor_half_up(released, int(commission_bps))
    return {
        "vendor_id": int(vendor_id),
        "total_orders": int(total_orders),
        "pending_orders": int(pending_orders),
        "gross_sales_minor": gross_sales,
        "monthly_sales_minor": monthly_sales,
        "released_minor": released,
        "held_in_escrow_minor": int(held or 0),
        "refunded_minor": int(refunded or 0),
        "commission_bps": int(commission_bps),
        "commission_minor": commission,
        "net_payout_minor": released - commission,
    }
