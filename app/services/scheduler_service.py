"""
Trade Ops Core
Scheduler Service.

Registry and runner for background jobs.  The SLA monitor owns its own
sweep thread; everything registered here runs on demand (the jobs API,
``flask run-job``) or from an external cron.

Architecture:
    - ``@register_job(name)`` adds a function to the in-process registry
    - ScheduledJob rows persist schedule config and run history
    - ``run_job`` executes inside the Flask app context and records the run
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from flask import Flask

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("sla_sweep")
        def sla_sweep(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


class SchedulerService:
    """
    Job runner bound to one Flask app.

    Jobs are executed within the app context; a failing job is recorded on
    its ScheduledJob row and reported, never raised to the caller.
    """

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                if ScheduledJob.query.filter_by(job_name=name).first():
                    continue
                job = ScheduledJob(
                    job_name=name,
                    description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                    schedule_type="interval",
                    schedule_config=_default_schedule(cls._app, name),
                    status="active",
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with job_name, status, duration_ms, result and error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        with cls._app.app_context():
            job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job_record is not None and not job_record.is_enabled:
                return {"job_name": job_name, "status": "skipped", "error": "Job is disabled"}
            try:
                result = fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed", job_name, extra={"event_type": "job_failed"})

            duration_ms = int((time.monotonic() - start) * 1000)
            job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job_record:
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def run_due_jobs(cls, now=None) -> list[dict]:
        """Run every enabled job whose interval has elapsed (cron entry point)."""
        if not cls._app:
            return []
        with cls._app.app_context():
            due = [
                job.job_name
                for job in ScheduledJob.query.order_by(ScheduledJob.id)
                if job.job_name in _job_registry and job.is_due(now)
            ]
        return [cls.run_job(name) for name in due]

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()


def _default_schedule(app: Flask, job_name: str) -> dict:
    defaults = {
        "sla_sweep": {
            "seconds": app.config.get("SLA_SWEEP_INTERVAL_SECONDS", 900),
            "description": "SLA warning / breach sweep",
        },
        "stalled_run_report": {"seconds": 3600, "description": "Hourly"},
    }
    return defaults.get(job_name, {"seconds": 86400, "description": "Daily"})
