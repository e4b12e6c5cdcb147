from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry

SWEEP_TASK = "settlement.tasks.settlement_tasks.sweep_expired_reservations"
SETTLEMENT_QUEUE = "settlement"

_SIGNALS_BOUND = False


def _broker_urls() -> tuple[str, str]:
    redis_url = (os.getenv("REDIS_URL") or "").strip()
    broker = (os.getenv("CELERY_BROKER_URL") or "").strip() or redis_url or "redis://localhost:6379/0"
    backend = (os.getenv("CELERY_RESULT_BACKEND") or "").strip() or redis_url or broker
    return broker, backend


def _beat_schedule(settings) -> dict:
    # Only the reservation sweep runs on a timer; everything else happens
    # inside the request that caused it.
    return {
        "reservation-expiry-sweep": {
            "task": SWEEP_TASK,
            "schedule": float(settings.reservation_sweep_interval_seconds),
            "options": {"queue": SETTLEMENT_QUEUE, "expires": float(settings.reservation_sweep_interval_seconds)},
        },
    }


def _task_event(event: str, *, task_name: str, task_id, kwargs, **fields) -> str:
    payload = {
        "event": event,
        "task_name": task_name,
        "task_id": str(task_id or ""),
        "trace_id": str((kwargs or {}).get("trace_id") or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update({k: v for k, v in fields.items() if v is not None})
    return json.dumps(payload)


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, kwargs=None, einfo=None, **extra):
        flask_app.logger.error(
            _task_event(
                "settlement_task_failure",
                task_name=getattr(sender, "name", "") if sender is not None else "",
                task_id=task_id,
                kwargs=kwargs,
                error_code=getattr(exception, "code", None),
                exception=str(exception or ""),
                einfo=str(einfo) if einfo is not None else None,
            )
        )

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, **extra):
        flask_app.logger.warning(
            _task_event(
                "settlement_task_retry",
                task_name=str(getattr(request, "task", "") or ""),
                task_id=getattr(request, "id", ""),
                kwargs=getattr(request, "kwargs", None),
                reason=str(reason or ""),
                retry_count=int(getattr(request, "retries", 0) or 0),
            )
        )

    _SIGNALS_BOUND = True


def create_celery_app(flask_app) -> Celery:
    """Celery bound to ``flask_app``; every task runs inside its app context."""
    broker, backend = _broker_urls()
    settings = flask_app.config["SETTLEMENT_SETTINGS"]
    celery = Celery("settlement", broker=broker, backend=backend)
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        task_default_queue=SETTLEMENT_QUEUE,
        task_routes={"settlement.tasks.*": {"queue": SETTLEMENT_QUEUE}},
        beat_schedule=_beat_schedule(settings),
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.autodiscover_tasks(["settlement.tasks"], related_name="settlement_tasks")
    _bind_task_observers(flask_app)
    return celery
