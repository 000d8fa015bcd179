"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — 200 whenever the process is up
    GET /api/v1/health/live   — database, SLA monitor, scheduler and
                                 workflow backlog; 503 if the database fails
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from app.models import db
from app.models.trade import ITEM_MODELS
from app.models.workflow import WorkflowRun
from app.services.scheduler_service import get_registered_jobs

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


def _database_check():
    t0 = time.perf_counter()
    db.session.execute(db.text("SELECT 1"))
    backlog = {
        "runs_requiring_action": WorkflowRun.query.filter_by(status="requires_action").count(),
        "sla_breached": {
            kind: model.query_active().filter(model.sla_breached.is_(True)).count()
            for kind, model in ITEM_MODELS.items()
        },
    }
    return {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}, backlog


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {}
    healthy = True

    try:
        checks["database"], checks["workflow"] = _database_check()
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        healthy = False
        logger.error("Health check: database unavailable: %s", exc)

    monitor = current_app.extensions.get("sla_monitor")
    checks["sla_monitor"] = {
        "status": "running" if monitor and monitor.running else "stopped",
        "autostart": current_app.config.get("SLA_MONITOR_AUTOSTART", False),
    }
    checks["scheduler"] = {"registered_jobs": sorted(get_registered_jobs())}

    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
