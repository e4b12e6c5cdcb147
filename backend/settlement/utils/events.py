from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from settlement.extensions import db
from settlement.models import SettlementEvent
from settlement.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def _safe_json(data: Any) -> str:
    normalized = _safe_value(data if isinstance(data, dict) else {"value": data})
    return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)


def log_event(
    event_type: str,
    *,
    actor_user_id: int | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    severity: str = "INFO",
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> SettlementEvent | None:
    """Append a domain event inside the caller's transaction.

    Runs in a SAVEPOINT so a failed insert never poisons the settlement
    mutation it describes. Returns the existing row when ``idempotency_key``
    was already recorded.
    """
    key = (idempotency_key or "").strip()[:180] or None
    if key:
        existing = SettlementEvent.query.filter_by(idempotency_key=key).first()
        if existing is not None:
            return existing

    event = SettlementEvent(
        event_type=(event_type or "unknown").strip()[:80],
        actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
        subject_type=(subject_type or "").strip()[:40] or None,
        subject_id=str(subject_id)[:64] if subject_id is not None else None,
        request_id=(get_request_id() or "")[:80] or None,
        idempotency_key=key,
        severity=(severity or "INFO").strip().upper()[:16] or "INFO",
        metadata_json=_safe_json(metadata or {}),
    )
    try:
        with db.session.begin_nested():
            db.session.add(event)
        return event
    except IntegrityError:
        if key:
            return SettlementEvent.query.filter_by(idempotency_key=key).first()
        return None
    except SQLAlchemyError as exc:
        logger.warning("settlement_event_write_failed type=%s err=%s", event_type, exc)
        return None
