"""
Trade Ops Core
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from app.config import config
from app.models import db
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit — apply per-blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def _register_error_handlers(app):
    """Map the service exception hierarchy onto JSON responses."""
    from app.core.exceptions import ConflictError, NotFoundError, ValidationError, WorkflowError
    from app.utils.errors import E, api_error, workflow_error

    @app.errorhandler(WorkflowError)
    def _workflow_error(exc):
        db.session.rollback()
        return workflow_error(exc)

    @app.errorhandler(NotFoundError)
    def _not_found_error(exc):
        db.session.rollback()
        return api_error(E.NOT_FOUND, str(exc))

    @app.errorhandler(ValidationError)
    def _validation_error(exc):
        db.session.rollback()
        return api_error(E.VALIDATION, str(exc), details=exc.details)

    @app.errorhandler(ConflictError)
    def _conflict_error(exc):
        db.session.rollback()
        return api_error(
            E.CONFLICT_STATE, str(exc),
            details={"resource": exc.resource, "field": exc.field, "value": exc.value},
        )

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return api_error(E.VALIDATION_INVALID, e.description, status=415,
                         details={"content_type": request.content_type})

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500


def _register_cli(app):
    @app.cli.command("seed-demo-data")
    def seed_demo_data_cmd():
        """Seed customers, products, stock and vendors for a local demo."""
        from app.services.demo_seed import seed_demo_data
        counts = seed_demo_data()
        db.session.commit()
        logger.info("Seeded demo data: %s", counts)

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run one scheduled job now (e.g. sla_sweep)."""
        from app.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job(job_name)
        click.echo(result)

    @app.cli.command("run-due-jobs")
    def run_due_jobs_cmd():
        """Run every job whose interval has elapsed; meant for a cron entry."""
        from app.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        for result in SchedulerService.run_due_jobs():
            click.echo(result)

    @app.cli.command("sla-sweep")
    @click.option("--scope", type=click.Choice(["rfq_item", "order_item"]), default=None)
    def sla_sweep_cmd(scope):
        """Run one SLA sweep in the foreground."""
        counts = app.extensions["sla_monitor"].sweep(scope=scope)
        click.echo(counts)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        from flask import abort
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            has_body = ((request.content_length or 0) > 0
                        or "chunked" in request.headers.get("Transfer-Encoding", "").lower())
            if has_body and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import trade as _trade_models               # noqa: F401
    from app.models import commercial as _commercial_models     # noqa: F401
    from app.models import fulfillment as _fulfillment_models   # noqa: F401
    from app.models import workflow as _workflow_models         # noqa: F401
    from app.models import audit as _audit_models               # noqa: F401
    from app.models import notification as _notification_models  # noqa: F401
    from app.models import scheduling as _scheduling_models     # noqa: F401
    from app.models.immutability import register_guards

    # Triggers hang off ``after_create``, so guards go in before create_all
    register_guards()

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        db.create_all()
        app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.health_bp import health_bp
    from app.blueprints.transition_bp import transition_bp
    from app.blueprints.workflow_bp import workflow_bp
    from app.blueprints.sla_bp import sla_bp
    from app.blueprints.notification_bp import notification_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(transition_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(sla_bp)
    app.register_blueprint(notification_bp)

    _register_error_handlers(app)
    _register_cli(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    import importlib
    importlib.import_module("app.services.scheduled_jobs")  # registers @register_job handlers
    from app.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    # ── SLA monitor ──────────────────────────────────────────────────────
    from app.services.sla_monitor import SlaMonitor
    monitor = SlaMonitor()  # thresholds and escalation roles read from app.config
    app.extensions["sla_monitor"] = monitor
    if app.config.get("SLA_MONITOR_AUTOSTART"):
        monitor.start(app)

    return app
