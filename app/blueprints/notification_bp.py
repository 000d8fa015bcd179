"""
Trade Ops Core
Notification & Scheduling Blueprint.

Provides:
    - In-app notification inbox (list, mark read, mark all read)
    - Scheduled job management (list, trigger, toggle)

Notifications are written by the transition executor, the orchestrator and
the SLA monitor; this blueprint only reads and acknowledges them.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import paginate_args
from app.models.notification import Notification
from app.models.scheduling import ScheduledJob
from app.services.notification import NotificationService
from app.services.scheduler_service import SchedulerService
from app.utils.errors import E, api_error
from app.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


# ═══════════════════════════════════════════════════════════════════════════
#  NOTIFICATIONS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """Inbox for ?recipient= (a user id or a role); broadcast rows included."""
    recipient = request.args.get("recipient") or request.headers.get("X-User") or "all"
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit, offset = paginate_args()
    items, total = NotificationService.list_for_recipient(
        recipient,
        unread_only=unread_only,
        event_code=request.args.get("event_code"),
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/<int:nid>", methods=["GET"])
def get_notification(nid):
    notif, err = get_or_404(Notification, nid)
    if err:
        return err
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/<int:nid>/read", methods=["PATCH"])
def mark_notification_read(nid):
    notif = NotificationService.mark_read(nid)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/mark-all-read", methods=["POST"])
def mark_all_notifications_read():
    data = request.get_json(silent=True) or {}
    recipient = data.get("recipient") or request.headers.get("X-User")
    if not recipient:
        return api_error(E.VALIDATION_REQUIRED, "recipient is required")
    count = NotificationService.mark_all_read(recipient)
    return jsonify({"recipient": recipient, "marked_read": count})


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS MANAGEMENT
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/jobs", methods=["GET"])
def list_scheduled_jobs():
    """List all scheduled jobs with their status."""
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@notification_bp.route("/jobs/<job_name>", methods=["GET"])
def get_job_status(job_name):
    job = ScheduledJob.query.filter_by(job_name=job_name).first()
    if not job:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(job.to_dict())


@notification_bp.route("/jobs/<job_name>/run", methods=["POST"])
def trigger_job(job_name):
    """Manually trigger a scheduled job."""
    result = SchedulerService.run_job(job_name)
    if result.get("status") == "error" and "Unknown job" in result.get("error", ""):
        return jsonify(result), 404
    return jsonify(result)


@notification_bp.route("/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job_status(job_name):
    """Enable or disable a scheduled job."""
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)
