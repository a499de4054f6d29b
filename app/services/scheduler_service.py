"""
ERP Approval Workflow Engine
Scheduler Service.

Interval job registry for the notification outbox.  Jobs are plain
functions registered with ``@register_job(name, every=...)``; an external
cron calls ``flask run-due-jobs`` every minute and each job runs when its
interval has elapsed since its last run.

Registered jobs (see ``scheduled_jobs``):
    notification_outbox_dispatch   every 30 seconds
    stale_notification_cleanup     daily
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from flask import Flask
from sqlalchemy.exc import SQLAlchemyError

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobSpec:
    name: str
    fn: Callable
    every: timedelta

    @property
    def description(self) -> str:
        return (self.fn.__doc__ or self.name).strip().splitlines()[0]


_job_registry: dict[str, JobSpec] = {}


def register_job(name: str, *, every: timedelta):
    """Decorator to register a job function that runs once per *every*.

    Usage:
        @register_job("notification_outbox_dispatch", every=timedelta(seconds=30))
        def dispatch_notification_outbox(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = JobSpec(name=name, fn=fn, every=every)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, JobSpec]:
    """Return all registered job specs."""
    return dict(_job_registry)


class SchedulerService:
    """Runs registered jobs inside the Flask app and records each run."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def sync_jobs(cls) -> list[ScheduledJob]:
        """Create or refresh one ScheduledJob row per registered job.

        Must run inside an app context.  Returns the rows, in registry order.
        """
        rows = []
        for spec in _job_registry.values():
            row = ScheduledJob.query.filter_by(job_name=spec.name).first()
            if row is None:
                row = ScheduledJob(job_name=spec.name, is_enabled=True)
                db.session.add(row)
            row.description = spec.description
            row.interval_seconds = int(spec.every.total_seconds())
            rows.append(row)
        db.session.commit()
        return rows

    @classmethod
    def due_job_names(cls, now: datetime | None = None) -> list[str]:
        """Names of enabled jobs whose interval has elapsed at *now*."""
        now = now or datetime.now(timezone.utc)
        return [row.job_name for row in cls.sync_jobs() if row.is_due(now)]

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name in a fresh app context.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        spec = _job_registry.get(job_name)
        if not spec:
            return {"status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = spec.fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc)

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(status=status, duration_ms=duration_ms, result=result, error=error)
                    db.session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to update job record for %s", job_name)

        logger.info("Job %s %s in %dms", job_name, status, duration_ms)
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def run_due_jobs(cls, now: datetime | None = None) -> list[dict]:
        """Run every job that is due; used by the ``run-due-jobs`` CLI."""
        return [cls.run_job(name) for name in cls.due_job_names(now)]

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """Registered jobs with their interval and last-run record."""
        jobs = []
        for spec in _job_registry.values():
            job_record = ScheduledJob.query.filter_by(job_name=spec.name).first()
            jobs.append({
                "job_name": spec.name,
                "description": spec.description,
                "interval_seconds": int(spec.every.total_seconds()),
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs
