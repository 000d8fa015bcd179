"""
Scheduler and scheduled job tests.

Jobs are plain functions taking the app, so most cases call them directly
inside the test's app context.  ``SchedulerService.run_job`` opens its own
context, so rows it needs are committed first.
"""

from datetime import timedelta

from app.models import db
from app.models.notification import Notification
from app.models.scheduling import ScheduledJob
from app.models.workflow import ApprovalRequest, WorkflowRun
from app.services.scheduled_jobs import stalled_run_report
from app.services.scheduler_service import SchedulerService, get_registered_jobs
from app.utils.helpers import utcnow


def _paused_run(hours_ago, roles=("SALES_MANAGER",)):
    stamp = utcnow() - timedelta(hours=hours_ago)
    run = WorkflowRun(status="requires_action", current_phase="customer_quote",
                      started_at=stamp, updated_at=stamp)
    db.session.add(run)
    db.session.flush()
    db.session.add(ApprovalRequest(run_id=run.id, phase="customer_quote", required_roles=list(roles)))
    db.session.commit()
    return run


def test_jobs_are_registered():
    assert {"sla_sweep", "stalled_run_report"} <= set(get_registered_jobs())


def test_ensure_jobs_registered_is_idempotent():
    created = SchedulerService.ensure_jobs_registered()
    assert len(created) == len(get_registered_jobs())
    assert SchedulerService.ensure_jobs_registered() == []
    job = ScheduledJob.query.filter_by(job_name="sla_sweep").first()
    assert job.schedule_type == "interval"
    assert job.is_enabled is True


def test_run_job_records_outcome():
    SchedulerService.ensure_jobs_registered()

    result = SchedulerService.run_job("stalled_run_report")

    assert result["status"] == "success"
    assert result["result"] == {"stalled_runs": 0, "reminders": 0}
    db.session.expire_all()
    job = ScheduledJob.query.filter_by(job_name="stalled_run_report").first()
    assert job.run_count == 1
    assert job.last_run_status == "success"


def test_unknown_job():
    result = SchedulerService.run_job("does_not_exist")
    assert result["status"] == "error"
    assert "Unknown job" in result["error"]


def test_stalled_run_report_reminds_approvers(app):
    _paused_run(hours_ago=30, roles=("SALES_MANAGER", "DIRECTOR"))
    _paused_run(hours_ago=1)

    results = stalled_run_report(app)

    assert results == {"stalled_runs": 1, "reminders": 2}
    reminders = Notification.query.filter_by(event_code="APPROVAL_REMINDER").all()
    assert sorted(n.recipient for n in reminders) == ["DIRECTOR", "SALES_MANAGER"]


def test_stalled_run_threshold_from_config(app):
    _paused_run(hours_ago=3)
    app.config["STALLED_RUN_HOURS"] = 2
    try:
        assert stalled_run_report(app)["stalled_runs"] == 1
    finally:
        app.config["STALLED_RUN_HOURS"] = 24


def test_run_due_jobs_respects_interval_and_toggle():
    SchedulerService.ensure_jobs_registered()
    SchedulerService.toggle_job("stalled_run_report", False)

    first = SchedulerService.run_due_jobs()
    assert [r["job_name"] for r in first] == ["sla_sweep"]

    # just ran, so nothing is due until the interval elapses
    assert SchedulerService.run_due_jobs() == []
    later = utcnow() + timedelta(hours=2)
    assert [r["job_name"] for r in SchedulerService.run_due_jobs(now=later)] == ["sla_sweep"]
