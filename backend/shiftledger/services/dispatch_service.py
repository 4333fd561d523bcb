# Overview: Service-layer operations for the side-effect outbox and its background worker.

"""
Side-Effect Dispatch (outbox)

Printing and payment/tax notifications must never hold up or roll back the
ledger. Services `enqueue()` a job inside their own transaction; once it
commits, the worker executes it. Failed jobs are retried with exponential
backoff (capped at 5 minutes, with deterministic per-job jitter) and end up
FAILED after max_attempts, visible for an operator to re-queue. A runner
claims a job (PENDING -> RUNNING, conditional UPDATE) before executing it.
"""

from __future__ import annotations

import hashlib
import threading
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update

from ..collaborators import get_collaborators
from ..errors import NotFound, ValidationError
from ..extensions import db
from ..models import SideEffectJob
from ..policies import get_ledger_policy
from ..time_utils import utcnow


JOB_KINDS = {"PRINT_TICKET", "PRINT_RECEIPT", "NOTIFY_PAYMENT", "NOTIFY_TAX"}

MAX_BACKOFF_SECONDS = 300

# How long a claimed job may stay RUNNING before another runner takes it over.
CLAIM_LEASE_SECONDS = 600


def next_attempt_at(attempts: int, job_id: int | None = None, now: datetime | None = None) -> datetime:
    delay_seconds = min(MAX_BACKOFF_SECONDS, 2 ** max(attempts - 1, 0))
    if job_id is not None:
        digest = hashlib.sha1(f"{job_id}:{attempts}".encode("utf-8")).hexdigest()
        jitter_window = max(1, min(30, delay_seconds // 5 or 1))
        delay_seconds = min(MAX_BACKOFF_SECONDS, delay_seconds + (int(digest[:8], 16) % (jitter_window + 1)))
    return (now or utcnow()) + timedelta(seconds=delay_seconds)


def enqueue(kind: str, receipt_id: int | None, payload: dict | None = None) -> SideEffectJob:
    """Queue a job in the caller's transaction (flush, no commit)."""
    if kind not in JOB_KINDS:
        raise ValidationError(f"Unknown job kind: {kind}")
    job = SideEffectJob(
        kind=kind,
        receipt_id=receipt_id,
        payload=payload or {},
        status="PENDING",
        attempts=0,
        max_attempts=get_ledger_policy().dispatch_max_attempts,
        next_attempt_at=utcnow(),
    )
    db.session.add(job)
    db.session.flush()
    return job


def _execute(job: SideEffectJob) -> None:
    collaborators = get_collaborators()
    if job.kind == "PRINT_TICKET":
        collaborators.printer.print_ticket(job.receipt_id, list(job.payload.get("item_ids", [])))
    elif job.kind == "PRINT_RECEIPT":
        collaborators.printer.print_receipt(job.receipt_id)
    else:
        collaborators.notifier.notify(job.kind, dict(job.payload, receipt_id=job.receipt_id))


def _claim(job_id: int, status: str, attempts: int, now: datetime) -> bool:
    """
    Take the job for this runner: PENDING (or RUNNING with an expired lease)
    becomes RUNNING with the attempt counted. False if another runner won.
    """
    result = db.session.execute(
        update(SideEffectJob)
        .where(
            SideEffectJob.id == job_id,
            SideEffectJob.status == status,
            SideEffectJob.attempts == attempts,
            SideEffectJob.next_attempt_at <= now,
        )
        .values(
            status="RUNNING",
            attempts=SideEffectJob.attempts + 1,
            next_attempt_at=now + timedelta(seconds=CLAIM_LEASE_SECONDS),
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def process_due_jobs(limit: int = 50, now: datetime | None = None) -> dict:
    """
    Run every PENDING job whose next_attempt_at has passed.

    Each job is claimed and committed on its own; one failing job never
    blocks the rest, and concurrent runners never execute the same job.
    RUNNING jobs whose lease expired (runner died) are picked up again.
    """
    now = now or utcnow()
    due = (
        db.session.query(SideEffectJob.id, SideEffectJob.status, SideEffectJob.attempts)
        .filter(SideEffectJob.status.in_(("PENDING", "RUNNING")), SideEffectJob.next_attempt_at <= now)
        .order_by(SideEffectJob.id)
        .limit(limit)
        .all()
    )

    summary = {"processed": 0, "succeeded": 0, "retrying": 0, "failed": 0, "skipped": 0}
    for job_id, status, attempts in due:
        if not _claim(job_id, status, attempts, now):
            summary["skipped"] += 1
            continue
        job = db.session.get(SideEffectJob, job_id)
        summary["processed"] += 1
        try:
            _execute(job)
        except Exception as exc:
            job.last_error = f"{type(exc).__name__}: {exc}"
            if job.attempts >= job.max_attempts:
                job.status = "FAILED"
                summary["failed"] += 1
                current_app.logger.error(
                    "Dispatch job %s (%s) failed permanently after %s attempts: %s",
                    job.id, job.kind, job.attempts, job.last_error,
                )
            else:
                job.status = "PENDING"
                job.next_attempt_at = next_attempt_at(job.attempts, job.id, now=now)
                summary["retrying"] += 1
                current_app.logger.warning(
                    "Dispatch job %s (%s) attempt %s failed, retry at %s: %s",
                    job.id, job.kind, job.attempts, job.next_attempt_at, job.last_error,
                )
        else:
            job.status = "DONE"
            job.completed_at = utcnow()
            job.last_error = None
            summary["succeeded"] += 1
        db.session.commit()

    return summary


def requeue_job(job_id: int) -> SideEffectJob:
    """Put a FAILED job back in the queue with a fresh attempt budget."""
    job = db.session.get(SideEffectJob, job_id)
    if not job:
        raise NotFound(f"Job {job_id} not found")
    if job.status != "FAILED":
        raise ValidationError(f"Job {job_id} is {job.status}, only FAILED jobs can be re-queued")
    job.status = "PENDING"
    job.attempts = 0
    job.next_attempt_at = utcnow()
    db.session.commit()
    return job


def list_jobs(status: str | None = None, receipt_id: int | None = None, limit: int = 100) -> list[SideEffectJob]:
    query = db.session.query(SideEffectJob)
    if status:
        query = query.filter(SideEffectJob.status == status)
    if receipt_id is not None:
        query = query.filter(SideEffectJob.receipt_id == receipt_id)
    return query.order_by(SideEffectJob.id).limit(limit).all()


class DispatchWorker(threading.Thread):
    """Background thread draining the outbox; woken early by notify_worker()."""

    def __init__(self, app, poll_seconds: float = 2.0):
        super().__init__(name="shiftledger-dispatch", daemon=True)
        self.app = app
        self.poll_seconds = poll_seconds
        self._wake_event = threading.Event()
        self._stop_event = threading.Event()

    def wake(self):
        self._wake_event.set()

    def stop(self, timeout: float | None = 5.0):
        self._stop_event.set()
        self._wake_event.set()
        self.join(timeout)

    def run(self):
        while not self._stop_event.is_set():
            self._wake_event.wait(self.poll_seconds)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            with self.app.app_context():
                try:
                    process_due_jobs()
                except Exception:
                    self.app.logger.exception("Dispatch worker pass failed")
                    db.session.rollback()


def notify_worker() -> None:
    worker = current_app.extensions.get("shiftledger.dispatch_worker")
    if worker is not None:
        worker.wake()
