"""
Trade Ops Core
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for every mutation the
      transition executor or the workflow orchestrator performs.
"""

import json
from datetime import UTC, datetime

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {
    "CREATE",
    "UPDATE",
    "STATE_TRANSITION",
    "SLA_WARNING",
    "SLA_BREACH",
    "APPROVAL_DECISION",
    "SOFT_DELETE",
}


class AuditLog(db.Model):
    """
    Immutable audit trail.

    One row per mutation.  ``old_data`` / ``new_data`` hold JSON snapshots of
    the fields that changed; ``reason`` carries the actor's justification
    when one was given.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_record", "table_name", "record_id"),
        db.Index("idx_audit_actor", "actor_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    table_name = db.Column(
        db.String(60), nullable=False,
        comment="rfq_items | order_items | quotes | purchase_orders | …",
    )
    record_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced row (int-as-string)",
    )
    action = db.Column(db.String(40), nullable=False)
    actor_id = db.Column(db.String(150), nullable=False, default="system")

    old_data_json = db.Column(db.Text, default="{}")
    new_data_json = db.Column(db.Text, default="{}")
    reason = db.Column(db.Text, nullable=True)

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _load(raw) -> dict:
        try:
            return json.loads(raw or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    @property
    def old_data(self) -> dict:
        return self._load(self.old_data_json)

    @property
    def new_data(self) -> dict:
        return self._load(self.new_data_json)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "table": self.table_name,
            "record_id": self.record_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "old_data": self.old_data,
            "new_data": self.new_data,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.table_name}/{self.record_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    table: str,
    record_id,
    action: str,
    actor_id: str = "system",
    old_data: dict | None = None,
    new_data: dict | None = None,
    reason: str | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        table_name=table,
        record_id=str(record_id),
        action=action,
        actor_id=actor_id or "system",
        old_data_json=json.dumps(old_data or {}, default=str),
        new_data_json=json.dumps(new_data or {}, default=str),
        reason=reason,
    )
    db.session.add(log)
    db.session.flush()
    return log
