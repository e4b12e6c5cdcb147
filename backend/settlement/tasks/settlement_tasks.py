from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from settlement.errors import ResourceContention


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(300, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(
    bind=True,
    name="settlement.tasks.settlement_tasks.sweep_expired_reservations",
    max_retries=3,
)
def sweep_expired_reservations(self, *, trace_id: str = ""):
    started = time.perf_counter()
    from settlement.jobs.reservation_sweeper import run_reservation_sweep

    try:
        result = run_reservation_sweep()
    except ResourceContention as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log(
                "sweep_expired_reservations",
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                detail=exc.message,
                countdown=countdown,
            )
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("sweep_expired_reservations", status="failed", started_at=started, trace_id=trace_id, detail=exc.message)
        raise
    _task_log(
        "sweep_expired_reservations",
        status="ok",
        started_at=started,
        trace_id=trace_id,
        cancelled=len(result.get("cancelled_sub_order_ids") or []),
    )
    return result
