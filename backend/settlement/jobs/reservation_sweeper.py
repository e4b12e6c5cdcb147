from __future__ import annotations

import logging
from datetime import datetime

from settlement.errors import SettlementError
from settlement.services.settlement_coordinator import build_coordinator
from settlement.utils.events import log_event
from settlement.utils.job_runs import record_job_run

logger = logging.getLogger(__name__)

JOB_NAME = "reservation_sweeper"


def run_reservation_sweep(now: datetime | None = None) -> dict:
    """Expire stale inventory reservations and cancel their unpaid sub-orders."""
    started = datetime.utcnow()
    coordinator = build_coordinator()
    try:
        cancelled = coordinator.expire_stale_reservations(now)
    except SettlementError as exc:
        logger.error("reservation_sweep_failed err=%s", exc.code)
        record_job_run(job_name=JOB_NAME, ok=False, started_at=started, error=f"{exc.code}: {exc.message}")
        raise
    if cancelled:
        log_event(
            "reservations_expired",
            subject_type="job",
            subject_id=JOB_NAME,
            metadata={"cancelled_sub_order_ids": cancelled},
        )
    record_job_run(job_name=JOB_NAME, ok=True, started_at=started, processed=len(cancelled))
    logger.info("reservation_sweep_done cancelled=%s", len(cancelled))
    return {"ok": True, "cancelled_sub_order_ids": cancelled}
