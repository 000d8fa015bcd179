"""
Trade Ops Core
Notification domain model.

Models:
    - Notification: in-app notification addressed to a role or a user
"""

from app.models import db
from app.utils.helpers import iso, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {"workflow", "sla", "approval", "quality", "system"}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per target per event.  ``recipient`` is either a role name
    (``SALES_MANAGER``) or a user id.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(150), default="all", index=True, comment="Role, user id or 'all'")
    event_code = db.Column(db.String(60), nullable=False, index=True, comment="SLA_BREACHED, STATE_CHANGED, …")
    title = db.Column(db.String(300), nullable=False)
    payload = db.Column(db.JSON, default=dict)
    category = db.Column(db.String(30), default="workflow")
    severity = db.Column(db.String(20), default="info")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="", comment="rfq_item/order_item/workflow_run/...")
    entity_id = db.Column(db.Integer, nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def mark_read(self):
        self.is_read = True
        self.read_at = utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "event_code": self.event_code,
            "title": self.title,
            "payload": self.payload or {},
            "category": self.category,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": iso(self.read_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.event_code} → {self.recipient}>"
