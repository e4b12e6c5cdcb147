from __future__ import annotations

import logging

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from settlement.errors import ResourceContention
from settlement.extensions import db
from settlement.utils.settings import get_settings

logger = logging.getLogger(__name__)

# Lock timeouts, deadlocks and optimistic version conflicts.
CONTENTION_ERRORS = (OperationalError, StaleDataError)


def _rollback_before_retry(retry_state) -> None:
    try:
        db.session.rollback()
    except Exception:
        logger.exception("rollback_before_retry_failed")
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "contention_retry attempt=%s err=%s",
        retry_state.attempt_number,
        type(exc).__name__ if exc else "",
    )


def run_with_contention_retry(operation: str, fn, *args, **kwargs):
    """Run ``fn`` retrying on database contention.

    Attempts are bounded by count and by a hard wall-clock limit; the wait
    between attempts grows exponentially. Exhaustion raises
    ``ResourceContention``; any other error propagates unchanged.
    """
    settings = get_settings()
    retrying = Retrying(
        stop=stop_after_attempt(int(settings.retry_max_attempts)) | stop_after_delay(float(settings.retry_timeout_seconds)),
        wait=wait_exponential(
            multiplier=float(settings.retry_base_delay_seconds),
            min=float(settings.retry_base_delay_seconds),
            max=float(settings.retry_max_delay_seconds),
        ),
        retry=retry_if_exception_type(CONTENTION_ERRORS),
        before_sleep=_rollback_before_retry,
        reraise=False,
    )
    try:
        return retrying(fn, *args, **kwargs)
    except RetryError as exc:
        try:
            db.session.rollback()
        except Exception:
            logger.exception("rollback_after_contention_failed")
        attempts = exc.last_attempt.attempt_number if exc.last_attempt else 0
        logger.error("contention_exhausted operation=%s attempts=%s", operation, attempts)
        raise ResourceContention(
            f"{operation} could not complete because of concurrent updates",
            operation=operation,
            attempts=attempts,
        ) from exc
