from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from settlement.extensions import db
from settlement.models import JobRun

logger = logging.getLogger(__name__)


def record_job_run(
    *,
    job_name: str,
    ok: bool,
    started_at: datetime,
    processed: int = 0,
    error: str | None = None,
) -> JobRun | None:
    duration_ms = max(0, int((datetime.utcnow() - started_at).total_seconds() * 1000))
    row = JobRun(
        job_name=(job_name or "unknown").strip()[:64],
        ran_at=datetime.utcnow(),
        ok=bool(ok),
        processed=max(0, int(processed or 0)),
        duration_ms=duration_ms,
        error=(error or "")[:1000] or None,
    )
    try:
        db.session.add(row)
        db.session.commit()
        return row
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.warning("job_run_write_failed job=%s err=%s", job_name, exc)
        return None
