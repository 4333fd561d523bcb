"""
Side-effect dispatch (outbox) tests.

Verifies:
- Jobs run only after the ledger commit and never touch the receipt
- Failed jobs back off, then end FAILED after max attempts
- FAILED jobs can be re-queued
- A job is claimed before it runs, so concurrent runners never repeat it
- Default collaborators log through the app logger
"""

import logging
from datetime import timedelta

import pytest

from shiftledger.collaborators import Collaborators
from shiftledger.errors import ValidationError
from shiftledger.extensions import db
from shiftledger.models import SideEffectJob
from shiftledger.services import dispatch_service, receipt_service, settlement_service
from shiftledger.time_utils import utcnow


def _settled_receipt(staff, products):
    receipt = receipt_service.open_receipt(staff.cashier, items=[{"product_id": products.fries}])
    settlement_service.settle_receipt(
        receipt.id, [{"method": "CASH", "amount_cents": 1000, "idempotency_key": "k"}], staff.cashier,
    )
    return receipt


class TestBackoff:
    def test_delay_grows_and_is_capped(self):
        now = utcnow()
        delays = [
            (dispatch_service.next_attempt_at(n, now=now) - now).total_seconds()
            for n in (1, 2, 3, 4, 20)
        ]
        assert delays == [1, 2, 4, 8, 300]

    def test_jitter_is_deterministic(self):
        now = utcnow()
        assert dispatch_service.next_attempt_at(5, 42, now) == dispatch_service.next_attempt_at(5, 42, now)
        assert dispatch_service.next_attempt_at(20, 42, now) <= now + timedelta(seconds=300)


class TestProcessing:
    def test_jobs_wait_for_worker(self, staff, period, products, fakes):
        receipt = _settled_receipt(staff, products)
        assert fakes.printer.receipts == []

        summary = dispatch_service.process_due_jobs()

        assert summary["failed"] == 0
        assert summary["processed"] == summary["succeeded"] == 3
        assert fakes.printer.receipts == [receipt.id]
        assert all(j.status == "DONE" for j in dispatch_service.list_jobs(receipt_id=receipt.id))

    def test_printer_failure_does_not_touch_receipt(self, staff, period, products, fakes):
        receipt = _settled_receipt(staff, products)
        fakes.printer.failures_left = 100

        summary = dispatch_service.process_due_jobs()

        assert summary["retrying"] == 2
        assert receipt_service.get_receipt(receipt.id).state == "SETTLED"
        job = dispatch_service.list_jobs(status="PENDING")[0]
        assert job.attempts == 1
        assert "printer offline" in job.last_error
        assert job.next_attempt_at > utcnow()

    def test_retry_then_success(self, staff, period, products, fakes):
        receipt = _settled_receipt(staff, products)
        fakes.printer.failures_left = 1

        dispatch_service.process_due_jobs()
        later = utcnow() + timedelta(minutes=10)
        dispatch_service.process_due_jobs(now=later)

        assert fakes.printer.receipts == [receipt.id]
        assert dispatch_service.list_jobs(status="PENDING") == []

    def test_failed_after_max_attempts_and_requeue(self, staff, period, products, fakes, set_policy):
        set_policy(dispatch_max_attempts=2)
        receipt = _settled_receipt(staff, products)
        fakes.printer.failures_left = 100

        dispatch_service.process_due_jobs()
        dispatch_service.process_due_jobs(now=utcnow() + timedelta(minutes=10))

        failed = dispatch_service.list_jobs(status="FAILED")
        assert {j.kind for j in failed} == {"PRINT_TICKET", "PRINT_RECEIPT"}
        assert all(j.attempts == 2 for j in failed)

        fakes.printer.failures_left = 0
        job = dispatch_service.requeue_job(failed[0].id)
        assert job.status == "PENDING"
        assert job.attempts == 0
        dispatch_service.process_due_jobs()
        assert db.session.get(SideEffectJob, job.id).status == "DONE"
        assert receipt_service.get_receipt(receipt.id).state == "SETTLED"

    def test_only_failed_jobs_requeue(self, staff, period, products):
        receipt = _settled_receipt(staff, products)
        job = dispatch_service.list_jobs(receipt_id=receipt.id)[0]
        with pytest.raises(ValidationError):
            dispatch_service.requeue_job(job.id)

    def test_unknown_kind_rejected(self, staff, period):
        with pytest.raises(ValidationError):
            dispatch_service.enqueue("SEND_FAX", None)


class TestWorker:
    def test_worker_drains_queue(self, app, staff, period, products, fakes):
        receipt = _settled_receipt(staff, products)
        worker = dispatch_service.DispatchWorker(app, poll_seconds=0.05)
        worker.start()
        try:
            worker.wake()
            deadline = utcnow() + timedelta(seconds=5)
            while not fakes.printer.receipts and utcnow() < deadline:
                worker.join(0.05)
        finally:
            worker.stop()

        assert fakes.printer.receipts == [receipt.id]
        assert not worker.is_alive()


class TestClaiming:
    def test_second_runner_never_repeats_a_job(self, staff, period, products, fakes, monkeypatch):
        receipt = _settled_receipt(staff, products)
        real_execute = dispatch_service._execute
        nested = {}

        def _execute(job):
            # A second runner starts while the first job is still running.
            if not nested:
                nested["summary"] = dispatch_service.process_due_jobs()
            real_execute(job)

        monkeypatch.setattr(dispatch_service, "_execute", _execute)
        outer = dispatch_service.process_due_jobs()

        assert nested["summary"]["processed"] == 2
        assert outer["processed"] == 1
        assert outer["skipped"] == 2
        assert len(fakes.printer.tickets) == 1
        assert fakes.printer.receipts == [receipt.id]
        assert len([kind for kind, _ in fakes.notifier.events if kind == "NOTIFY_TAX"]) == 1
        jobs = dispatch_service.list_jobs(receipt_id=receipt.id)
        assert all(j.status == "DONE" and j.attempts == 1 for j in jobs)

    def test_running_job_is_left_alone_until_lease_expires(self, staff, period, products, fakes):
        receipt = _settled_receipt(staff, products)
        job = [j for j in dispatch_service.list_jobs(receipt_id=receipt.id) if j.kind == "PRINT_RECEIPT"][0]
        job.status = "RUNNING"
        job.attempts = 1
        job.next_attempt_at = utcnow() + timedelta(seconds=dispatch_service.CLAIM_LEASE_SECONDS)
        db.session.commit()

        dispatch_service.process_due_jobs()
        assert fakes.printer.receipts == []
        assert db.session.get(SideEffectJob, job.id).status == "RUNNING"

        later = utcnow() + timedelta(seconds=dispatch_service.CLAIM_LEASE_SECONDS + 60)
        summary = dispatch_service.process_due_jobs(now=later)

        assert summary["processed"] == 1
        assert fakes.printer.receipts == [receipt.id]
        reclaimed = db.session.get(SideEffectJob, job.id)
        assert reclaimed.status == "DONE"
        assert reclaimed.attempts == 2


class TestDefaultCollaborators:
    def test_logging_defaults_write_to_app_logger(self, app, staff, period, products, caplog):
        app.extensions["shiftledger.collaborators"] = Collaborators()
        caplog.set_level(logging.INFO, logger=app.logger.name)
        receipt = _settled_receipt(staff, products)

        summary = dispatch_service.process_due_jobs()

        assert summary["succeeded"] == 3
        messages = [r.getMessage() for r in caplog.records if r.name == app.logger.name]
        assert f"Customer receipt printed for receipt {receipt.id}" in messages
        assert any(m.startswith("Notification NOTIFY_TAX") for m in messages)
