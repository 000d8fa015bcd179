"""
Approval decisions for paused workflow runs.

A run that stops at a pause point leaves one ``ApprovalRequest`` behind.
This service records the human decision; resuming the run is a separate
call (``WorkflowOrchestrator.resume``).

Business rules enforced here (not in blueprint):
    - The role must hold ``approval:decide``.
    - The role must be one of the request's ``required_roles``.
    - Only a pending request can be decided; a second decision is a conflict.
    - Every decision writes an ``APPROVAL_DECISION`` audit row.
"""

import logging

from app.core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.workflow import ApprovalRequest
from app.services.permission import check_access

logger = logging.getLogger(__name__)

DECISIONS = {"approved", "rejected"}


def list_approvals(run_id: int | None = None, status: str | None = "pending") -> list[ApprovalRequest]:
    q = ApprovalRequest.query
    if run_id is not None:
        q = q.filter_by(run_id=run_id)
    if status:
        q = q.filter_by(status=status)
    return q.order_by(ApprovalRequest.id).all()


def decide_approval(approval_id: int, decision: str, actor, comment: str = "") -> ApprovalRequest:
    """Approve or reject a pending request.

    Raises:
        NotFoundError: unknown request.
        ValidationError: decision not in DECISIONS.
        AuthorizationError: role may not decide this request.
        ConflictError: request already decided.
    """
    request = db.session.get(ApprovalRequest, approval_id)
    if request is None:
        raise NotFoundError("ApprovalRequest", approval_id)
    if decision not in DECISIONS:
        raise ValidationError(f"decision must be one of {sorted(DECISIONS)}",
                              details={"decision": decision})

    check_access(actor.role, "approval", "decide")
    if actor.role not in (request.required_roles or []):
        raise AuthorizationError(
            f"Role {actor.role} cannot decide the {request.phase} approval",
            details={"role": actor.role, "required_roles": request.required_roles or []},
        )
    if request.status != "pending":
        raise ConflictError("ApprovalRequest", "status", request.status)

    old = request.to_dict()
    request.decide(decision, actor.id, actor.role, comment)
    write_audit(
        table=ApprovalRequest.__tablename__,
        record_id=request.id,
        action="APPROVAL_DECISION",
        actor_id=actor.id,
        old_data={"status": old["status"]},
        new_data={"status": request.status, "phase": request.phase, "run_id": request.run_id},
        reason=comment or None,
    )
    db.session.commit()
    logger.info(
        "Approval %s %s by %s (%s)", request.id, decision, actor.id, actor.role,
        extra={"run_id": request.run_id, "event_type": "approval_decided"},
    )
    return request
