"""
Trade Ops Core
Scheduled Jobs.

Jobs:
    - sla_sweep: flags SLA warnings / breaches on open workflow items
    - stalled_run_report: reminds approvers of runs paused longer than
      ``STALLED_RUN_HOURS``
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from app.models import db
from app.models.workflow import ApprovalRequest, WorkflowRun
from app.services.notification import NotificationService
from app.services.scheduler_service import register_job
from app.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: SLA sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("sla_sweep")
def sla_sweep(app) -> dict[str, Any]:
    """Flag SLA warnings and breaches on open workflow items."""
    from app.services.sla_monitor import SlaMonitor

    monitor = app.extensions.get("sla_monitor") or SlaMonitor()
    return monitor.sweep()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Stalled run report
# ═══════════════════════════════════════════════════════════════════════════

@register_job("stalled_run_report")
def stalled_run_report(app) -> dict[str, Any]:
    """Remind approvers of runs waiting on a decision for too long."""
    cutoff = utcnow() - timedelta(hours=app.config.get("STALLED_RUN_HOURS", 24))
    results = {"stalled_runs": 0, "reminders": 0}

    for run in WorkflowRun.query.filter_by(status="requires_action").order_by(WorkflowRun.id):
        if as_utc(run.updated_at) and as_utc(run.updated_at) > cutoff:
            continue
        results["stalled_runs"] += 1
        pending = ApprovalRequest.query.filter_by(run_id=run.id, status="pending").all()
        for request in pending:
            sent = NotificationService.broadcast(
                request.required_roles or [], "APPROVAL_REMINDER",
                {"run_id": run.id, "phase": request.phase, "approval_request_id": request.id},
                title=f"Run {run.id} still waiting at {request.phase}",
                category="approval", severity="warning",
                entity_type="workflow_run", entity_id=run.id,
            )
            results["reminders"] += len(sent)

    if results["stalled_runs"]:
        db.session.commit()
    logger.info("Stalled run report: %s", results, extra={"event_type": "stalled_run_report"})
    return results
