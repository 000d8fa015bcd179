"""
Trade Ops Core
Workflow run models.

Models:
    - WorkflowRun: one orchestrator run, with its serialised Run Context
    - ActivityLog: append-only, human-readable trail of every phase step
    - ApprovalRequest: the human decision a paused run is waiting for
"""

from datetime import datetime, timezone

from app.models import db
from app.utils.helpers import iso


RUN_STATUSES = {"running", "completed", "requires_action", "failed"}
APPROVAL_STATUSES = {"pending", "approved", "rejected"}


def _now():
    return datetime.now(timezone.utc)


class WorkflowRun(db.Model):
    """Persisted state of one end-to-end run; resumable from ``context``."""

    __tablename__ = "workflow_runs"

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), default="running", index=True)
    current_phase = db.Column(db.String(40), nullable=True)
    last_completed_phase = db.Column(db.String(40), nullable=True)
    initiated_by = db.Column(db.String(150), default="system")
    context = db.Column(db.JSON, default=dict, comment="Serialised RunContext")
    options = db.Column(db.JSON, default=dict, comment="Serialised RunOptions")
    message = db.Column(db.Text, default="")
    attempts = db.Column(db.Integer, default=0, comment="Number of run/resume invocations")
    started_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)

    activities = db.relationship(
        "ActivityLog", back_populates="run", lazy="dynamic", order_by="ActivityLog.id",
    )

    def to_dict(self, include_activity=False):
        d = {
            "id": self.id,
            "status": self.status,
            "current_phase": self.current_phase,
            "last_completed_phase": self.last_completed_phase,
            "initiated_by": self.initiated_by,
            "message": self.message,
            "attempts": self.attempts,
            "context": self.context or {},
            "options": self.options or {},
            "started_at": iso(self.started_at),
            "finished_at": iso(self.finished_at),
        }
        if include_activity:
            d["activity"] = [a.to_dict() for a in self.activities]
        return d

    def __repr__(self):
        return f"<WorkflowRun {self.id} [{self.status}@{self.current_phase}]>"


class ActivityLog(db.Model):
    """
    One line per orchestrator step.  Rows are never updated or deleted
    (enforced by the session guard in ``app.models.immutability``).
    """

    __tablename__ = "activity_logs"

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey("workflow_runs.id"), nullable=False, index=True)
    phase = db.Column(db.String(40), nullable=False)
    message = db.Column(db.Text, nullable=False)
    level = db.Column(db.String(10), default="info", comment="info, warning, error")
    success = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    run = db.relationship("WorkflowRun", back_populates="activities")

    def to_dict(self):
        return {
            "id": self.id,
            "run_id": self.run_id,
            "phase": self.phase,
            "message": self.message,
            "level": self.level,
            "success": self.success,
            "created_at": iso(self.created_at),
        }


class ApprovalRequest(db.Model):
    """Pending human approval for a paused run phase."""

    __tablename__ = "approval_requests"
    __table_args__ = (
        db.Index("idx_approval_run_phase", "run_id", "phase"),
    )

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey("workflow_runs.id"), nullable=False)
    phase = db.Column(db.String(40), nullable=False)
    entity_type = db.Column(db.String(30), default="", comment="rfq_item | order_item | purchase_order | …")
    entity_id = db.Column(db.Integer, nullable=True)
    required_roles = db.Column(db.JSON, default=list)
    message = db.Column(db.Text, default="")
    status = db.Column(db.String(20), default="pending")
    decided_by = db.Column(db.String(150), nullable=True)
    decided_role = db.Column(db.String(40), nullable=True)
    comment = db.Column(db.Text, default="")
    requested_at = db.Column(db.DateTime(timezone=True), default=_now)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def decide(self, decision: str, actor_id: str, role: str, comment: str = ""):
        self.status = decision
        self.decided_by = actor_id
        self.decided_role = role
        self.comment = comment or ""
        self.decided_at = _now()

    def to_dict(self):
        return {
            "id": self.id,
            "run_id": self.run_id,
            "phase": self.phase,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "required_roles": self.required_roles or [],
            "message": self.message,
            "status": self.status,
            "decided_by": self.decided_by,
            "decided_role": self.decided_role,
            "comment": self.comment,
            "requested_at": iso(self.requested_at),
            "decided_at": iso(self.decided_at),
        }
