"""
Workflow Orchestration Blueprint.

Routes:
  POST   /workflow/execute                          – start a run
  GET    /workflow/runs                             – list runs (?status=)
  GET    /workflow/runs/<rid>                       – run detail (?activity=true)
  POST   /workflow/runs/<rid>/resume                – continue a paused run
  GET    /workflow/approvals                        – approval requests (?run_id=&status=)
  POST   /workflow/approvals/<aid>/decide           – approve / reject
  POST   /workflow/nonconformances/<nid>/disposition – close an NCR

Workflow errors raised by the services are turned into JSON by the
app-level handlers registered in ``create_app``.
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import current_actor, paginate_args
from app.models.workflow import RUN_STATUSES, WorkflowRun
from app.services.approval_service import decide_approval, list_approvals
from app.services.permission import check_access
from app.services.quality_service import close_nonconformance
from app.services.workflow_orchestrator import WorkflowOrchestrator
from app.utils.errors import E, api_error
from app.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1/workflow")


def _orchestrator() -> WorkflowOrchestrator:
    return WorkflowOrchestrator()


def _result_payload(result):
    return {"result": result.to_dict(), "summary": result.summary()}


# ═════════════════════════════════════════════════════════════════════════════
# RUNS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/execute", methods=["POST"])
def execute_workflow():
    """Start a run.

    Body: { initial_context: {customer_id, items: [...]}, options: {...} }
    """
    data = request.get_json(silent=True) or {}
    initial_context = data.get("initial_context")
    if not isinstance(initial_context, dict):
        return api_error(E.VALIDATION_REQUIRED, "initial_context is required")
    options = data.get("options") or {}
    if not isinstance(options, dict):
        return api_error(E.VALIDATION_INVALID, "options must be an object")

    actor = current_actor(data)
    check_access(actor.role, "workflow", "execute")
    result = _orchestrator().run(initial_context, options, initiated_by=actor.id)
    status = 201 if result.status == "completed" else 202 if result.status == "requires_action" else 200
    return jsonify(_result_payload(result)), status


@workflow_bp.route("/runs", methods=["GET"])
def list_runs():
    q = WorkflowRun.query
    status = request.args.get("status")
    if status:
        if status not in RUN_STATUSES:
            return api_error(E.VALIDATION_INVALID, f"status must be one of {sorted(RUN_STATUSES)}")
        q = q.filter_by(status=status)
    limit, offset = paginate_args()
    total = q.count()
    runs = q.order_by(WorkflowRun.id.desc()).limit(limit).offset(offset).all()
    return jsonify({"items": [r.to_dict() for r in runs], "total": total})


@workflow_bp.route("/runs/<int:rid>", methods=["GET"])
def get_run(rid):
    run, err = get_or_404(WorkflowRun, rid)
    if err:
        return err
    return jsonify(run.to_dict(include_activity=request.args.get("activity") == "true"))


@workflow_bp.route("/runs/<int:rid>/resume", methods=["POST"])
def resume_run(rid):
    """Continue a paused run.

    Body: { options?, inspection_outcomes?: {product_id: "passed"|"failed"}, payment_amount? }
    """
    _run, err = get_or_404(WorkflowRun, rid)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    actor = current_actor(data)
    check_access(actor.role, "workflow", "execute")

    updates = {}
    if data.get("inspection_outcomes") is not None:
        if not isinstance(data["inspection_outcomes"], dict):
            return api_error(E.VALIDATION_INVALID, "inspection_outcomes must be an object")
        updates["inspection_outcomes"] = data["inspection_outcomes"]
    if data.get("payment_amount") is not None:
        try:
            updates["payment_amount"] = float(data["payment_amount"])
        except (TypeError, ValueError):
            return api_error(E.VALIDATION_INVALID, "payment_amount must be a number")

    result = _orchestrator().resume(rid, data.get("options"), **updates)
    return jsonify(_result_payload(result))


# ═════════════════════════════════════════════════════════════════════════════
# APPROVALS & NONCONFORMANCES
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/approvals", methods=["GET"])
def get_approvals():
    run_id = request.args.get("run_id", type=int)
    status = request.args.get("status", "pending")
    items = list_approvals(run_id=run_id, status=None if status == "all" else status)
    return jsonify([a.to_dict() for a in items])


@workflow_bp.route("/approvals/<int:aid>/decide", methods=["POST"])
def decide(aid):
    """Body: { decision: "approved"|"rejected", comment?, actor_id?, role? }"""
    data = request.get_json(silent=True) or {}
    decision = (data.get("decision") or "").strip().lower()
    if not decision:
        return api_error(E.VALIDATION_REQUIRED, "decision is required")
    approval = decide_approval(aid, decision, current_actor(data), data.get("comment", ""))
    return jsonify(approval.to_dict())


@workflow_bp.route("/nonconformances/<int:nid>/disposition", methods=["POST"])
def disposition(nid):
    """Body: { disposition, comment?, actor_id?, role? }"""
    data = request.get_json(silent=True) or {}
    value = (data.get("disposition") or "").strip().lower()
    if not value:
        return api_error(E.VALIDATION_REQUIRED, "disposition is required")
    ncr = close_nonconformance(nid, value, current_actor(data), data.get("comment", ""))
    return jsonify(ncr.to_dict())
