"""
Trade Ops Core
Scheduling model.

Models:
    - ScheduledJob: one row per ``@register_job`` function, holding its
      interval, enabled flag and last-run bookkeeping
"""

from datetime import timedelta

from app.models import db
from app.utils.helpers import as_utc, iso, utcnow


JOB_STATUSES = {"active", "paused"}
RUN_OUTCOMES = {"success", "failed", "skipped"}


class ScheduledJob(db.Model):
    """Persisted schedule and run history for a registered job."""

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False,
                         comment="sla_sweep, stalled_run_report, …")
    description = db.Column(db.String(500), default="")
    schedule_type = db.Column(db.String(30), default="interval")
    schedule_config = db.Column(db.JSON, default=dict, comment='{"seconds": 900, "description": …}')
    status = db.Column(db.String(20), default="active")
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True)
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=int((self.schedule_config or {}).get("seconds", 86400)))

    def is_due(self, now=None) -> bool:
        """Enabled and never run, or last run at least one interval ago."""
        if not self.is_enabled:
            return False
        last = as_utc(self.last_run_at)
        return last is None or (now or utcnow()) - last >= self.interval

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        self.last_run_at = utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "schedule_type": self.schedule_type,
            "schedule_config": self.schedule_config,
            "interval_seconds": int(self.interval.total_seconds()),
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": iso(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"
