import os

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from settlement.errors import ResourceContention, SettlementError
from settlement.extensions import cors, db, migrate
from settlement.integrations.notifications.factory import notifications_health
from settlement.segments.segment_checkout import checkout_bp
from settlement.segments.segment_escrow_admin import admin_escrow_bp, vendors_bp
from settlement.segments.segment_inventory import inventory_bp
from settlement.segments.segment_milestones import escrow_bp, milestones_bp
from settlement.segments.segment_payment_webhooks import webhooks_bp
from settlement.segments.segment_refunds import refunds_bp
from settlement.utils.observability import init_sentry, install_request_observers
from settlement.utils.settings import load_settings


def _env_int(name: str, default: int, *, minimum: int = 0, maximum: int = 10_000_000) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(minimum, min(maximum, value))


def _error_payload(code: str, message: str, status: int, details: dict | None = None) -> dict:
    payload = {"ok": False, "error": code, "message": message, "status": int(status)}
    if details:
        payload["details"] = details
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    settings = load_settings()
    env = settings.env

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SETTLEMENT_SETTINGS"] = settings

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'settlement.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)
    app.logger.info(
        "settlement_config env=%s fee_rate=%s tax_rate=%s ttl=%s sweep_interval=%s",
        env,
        settings.installment_fee_rate,
        settings.tax_rate,
        settings.reservation_ttl_seconds,
        settings.reservation_sweep_interval_seconds,
    )

    @app.errorhandler(SettlementError)
    def _settlement_error(error: SettlementError):
        db.session.rollback()
        status = int(error.http_status)
        if status >= 500:
            app.logger.error("settlement_error code=%s message=%s", error.code, error.message)
        else:
            app.logger.info("settlement_rejected code=%s message=%s", error.code, error.message)
        response = jsonify(_error_payload(error.code, error.message, status, error.details))
        response.status_code = status
        if isinstance(error, ResourceContention):
            response.headers["Retry-After"] = "1"
        return response

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        status = int(error.code or 500)
        return jsonify(_error_payload(error.name, error.description or error.name, status)), status

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        db.session.rollback()
        app.logger.exception("unhandled_exception path=%s", request.path)
        return jsonify(_error_payload("InternalServerError", "Internal server error", 500)), 500

    app.register_blueprint(checkout_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(escrow_bp)
    app.register_blueprint(milestones_bp)
    app.register_blueprint(admin_escrow_bp)
    app.register_blueprint(vendors_bp)
    app.register_blueprint(refunds_bp)
    app.register_blueprint(inventory_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": db_state == "ok",
            "service": "settlement-engine",
            "env": env,
            "db": db_state,
            "notifications": notifications_health(settings),
            "git_sha": (os.getenv("GIT_SHA") or "unknown"),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload), 200 if db_state == "ok" else 503

    @app.cli.command("sweep-reservations")
    def sweep_reservations():
        """Expire stale reservations once, outside the beat schedule."""
        from settlement.jobs.reservation_sweeper import run_reservation_sweep

        result = run_reservation_sweep()
        ids = result.get("cancelled_sub_order_ids") or []
        click.echo(f"reservation_sweep_ok cancelled={len(ids)} ids={ids}")

    @app.cli.command("reconcile-escrow")
    @click.option("--persist", is_flag=True, help="Record the outcome as a settlement event.")
    def reconcile_escrow(persist):
        """Compare escrow balances with their ledger entries."""
        from settlement.services.reconciliation_service import persist_report, reconcile_escrow_accounts

        summary = reconcile_escrow_accounts()
        if persist:
            persist_report(summary)
        click.echo(f"escrow_reconciliation checked={summary['checked']} drift={summary['drift_count']}")
        if summary["drift_count"]:
            raise SystemExit(2)

    return app
