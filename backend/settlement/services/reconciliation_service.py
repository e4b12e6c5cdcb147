from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func

from settlement.extensions import db
from settlement.models import EscrowAccount, EscrowLedgerEntry
from settlement.utils.events import log_event

logger = logging.getLogger(__name__)


def _ledger_totals(account_ids: list[int]) -> dict[int, dict[str, int]]:
    totals: dict[int, dict[str, int]] = {aid: {"fund": 0, "release": 0, "refund": 0} for aid in account_ids}
    if not account_ids:
        return totals
    rows = (
        db.session.query(
            EscrowLedgerEntry.escrow_account_id,
            EscrowLedgerEntry.kind,
            func.coalesce(func.sum(EscrowLedgerEntry.amount_minor), 0),
        )
        .filter(EscrowLedgerEntry.escrow_account_id.in_(account_ids))
        .group_by(EscrowLedgerEntry.escrow_account_id, EscrowLedgerEntry.kind)
        .all()
    )
    for account_id, kind, amount in rows:
        totals.setdefault(int(account_id), {"fund": 0, "release": 0, "refund": 0})[str(kind)] = int(amount or 0)
    return totals


def reconcile_escrow_accounts(*, since: str | None = None, limit: int = 5000) -> dict:
    """Recompute escrow balances from the ledger and report drift.

    Read-only: drifting accounts are reported, never repaired.
    """
    accounts = EscrowAccount.query.order_by(EscrowAccount.id.asc()).limit(int(limit)).all()
    totals = _ledger_totals([int(a.id) for a in accounts])
    drift = []
    for account in accounts:
        t = totals.get(int(account.id)) or {"fund": 0, "release": 0, "refund": 0}
        expected_held = t["fund"] - t["release"] - t["refund"]
        problems = []
        if expected_held != int(account.held_minor or 0):
            problems.append("held")
        if t["release"] != int(account.released_minor or 0):
            problems.append("released")
        if t["refund"] != int(account.refunded_minor or 0):
            problems.append("refunded")
        if t["fund"] > int(account.total_minor or 0):
            problems.append("overfunded")
        if problems:
            drift.append(
                {
                    "escrow_account_id": int(account.id),
                    "sub_order_id": int(account.sub_order_id),
                    "fields": problems,
                    "held_minor": int(account.held_minor or 0),
                    "ledger_held_minor": expected_held,
                    "released_minor": int(account.released_minor or 0),
                    "ledger_released_minor": t["release"],
                    "refunded_minor": int(account.refunded_minor or 0),
                    "ledger_refunded_minor": t["refund"],
                }
            )

    summary = {
        "ok": not drift,
        "since": since,
        "checked": len(accounts),
        "drift_count": len(drift),
        "drift": drift,
        "generated_at": datetime.utcnow().isoformat(),
    }
    if drift:
        logger.error("escrow_reconciliation_drift count=%s ids=%s", len(drift), [d["escrow_account_id"] for d in drift])
    return summary


def persist_report(summary: dict) -> None:
    log_event(
        "escrow_reconciliation",
        subject_type="job",
        subject_id="escrow_reconciliation",
        severity="INFO" if summary.get("ok") else "ERROR",
        metadata={
            "checked": summary.get("checked"),
            "drift_count": summary.get("drift_count"),
            "drift_ids": [d["escrow_account_id"] for d in summary.get("drift") or []],
        },
    )
    db.session.commit()
