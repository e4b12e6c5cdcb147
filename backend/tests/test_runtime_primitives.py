from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from flask import Flask
from sqlalchemy.exc import OperationalError

from settlement.celery_app import create_celery_app
from settlement.errors import InvalidRequest, ResourceContention
from settlement.extensions import db
from settlement.models import SettlementEvent
from settlement.utils.events import log_event
from settlement.utils.observability import init_sentry
from settlement.utils.retry import run_with_contention_retry

from settlement_seed import make_app, override_settings


def _locked():
    return OperationalError("UPDATE inventory_items", {}, Exception("database is locked"))


class ContentionRetryTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = make_app()
        override_settings(
            cls.app,
            retry_max_attempts=3,
            retry_base_delay_seconds=0.001,
            retry_max_delay_seconds=0.002,
        )

    def test_retries_contention_until_success(self):
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise _locked()
            return "done"

        with self.app.app_context():
            self.assertEqual(run_with_contention_retry("flaky", flaky), "done")
        self.assertEqual(calls["n"], 3)

    def test_exhaustion_raises_resource_contention(self):
        calls = {"n": 0}

        def always_locked():
            calls["n"] += 1
            raise _locked()

        with self.app.app_context():
            with self.assertRaises(ResourceContention) as ctx:
                run_with_contention_retry("always_locked", always_locked)
        self.assertEqual(calls["n"], 3)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.details.get("operation"), "always_locked")

    def test_domain_errors_are_not_retried(self):
        calls = {"n": 0}

        def invalid():
            calls["n"] += 1
            raise InvalidRequest("nope")

        with self.app.app_context():
            with self.assertRaises(InvalidRequest):
                run_with_contention_retry("invalid", invalid)
        self.assertEqual(calls["n"], 1)

    def test_event_idempotency_key_is_honoured(self):
        with self.app.app_context():
            first = log_event("escrow_funded", subject_type="escrow_account", subject_id=1, idempotency_key="evt-1")
            db.session.commit()
            second = log_event("escrow_funded", subject_type="escrow_account", subject_id=1, idempotency_key="evt-1")
            db.session.commit()
            self.assertEqual(first.id, second.id)
            self.assertEqual(SettlementEvent.query.filter_by(idempotency_key="evt-1").count(), 1)


class RuntimeWiringTestCase(unittest.TestCase):
    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False):
            init_sentry(app)

    def test_celery_beat_schedules_reservation_sweep(self):
        flask_app = make_app()
        celery = create_celery_app(flask_app)
        schedule = celery.conf.beat_schedule["reservation-expiry-sweep"]
        self.assertEqual(schedule["task"], "settlement.tasks.settlement_tasks.sweep_expired_reservations")
        self.assertGreaterEqual(float(schedule["schedule"]), 30.0)


if __name__ == "__main__":
    unittest.main()
