"""
Settlement tests.

Verifies:
- Single and split tender, change only in cash
- Insufficient payment leaves the receipt untouched
- Idempotent replays
- Stock deduction at settlement and the oversell policy
- Asynchronous capture: confirm, fail, cancel; pending captures reserve
  their part of the balance; late confirmations are kept as UNAPPLIED
- External inventory deductions are undone when the transaction fails
"""

import dataclasses

import pytest
from sqlalchemy.exc import OperationalError

from shiftledger.errors import InsufficientPayment, InvalidState, ResourceUnavailable, ValidationError
from shiftledger.collaborators import InventoryCollaborator, StockUnavailable
from shiftledger.extensions import db
from shiftledger.models import AuditEntry, Payment, Product, StockMovement
from shiftledger.services import audit_service, dispatch_service, receipt_service, settlement_service, work_period_service


@pytest.fixture
def burger_receipt(staff, period, products):
    """PENDING receipt for one burger: 46.40"""
    return receipt_service.open_receipt(staff.cashier, items=[{"product_id": products.burger}])


class TestSettleReceipt:
    def test_split_tender_exact(self, staff, burger_receipt):
        result = settlement_service.settle_receipt(
            burger_receipt.id,
            [
                {"method": "CASH", "amount_cents": 2000, "idempotency_key": "t1"},
                {"method": "MPESA", "amount_cents": 2640, "idempotency_key": "t2", "reference": "QX12"},
            ],
            staff.cashier,
        )
        assert result.settled
        assert result.change_cents == 0
        assert result.receipt.state == "SETTLED"
        assert result.receipt.paid_cents == 4640
        assert result.receipt.settled_by_user_id == staff.cashier
        assert [p.method for p in result.payments] == ["CASH", "MPESA"]

    def test_cash_change(self, staff, burger_receipt):
        result = settlement_service.settle_receipt(
            burger_receipt.id,
            [{"method": "CASH", "amount_cents": 5000, "idempotency_key": "t1"}],
            staff.cashier,
        )
        assert result.change_cents == 360
        payment = result.payments[0]
        assert payment.amount_cents == 5000
        assert payment.applied_cents == 4640
        assert payment.change_cents == 360
        assert result.receipt.change_cents == 360

    def test_change_comes_from_cash_tender(self, staff, burger_receipt):
        result = settlement_service.settle_receipt(
            burger_receipt.id,
            [
                {"method": "CARD", "amount_cents": 4000, "idempotency_key": "t1"},
                {"method": "CASH", "amount_cents": 1000, "idempotency_key": "t2"},
            ],
            staff.cashier,
        )
        card, cash = result.payments
        assert card.change_cents == 0
        assert card.applied_cents == 4000
        assert cash.change_cents == 360
        assert cash.applied_cents == 640

    def test_insufficient_payment(self, staff, burger_receipt):
        with pytest.raises(InsufficientPayment):
            settlement_service.settle_receipt(
                burger_receipt.id,
                [{"method": "CASH", "amount_cents": 4000, "idempotency_key": "t1"}],
                staff.cashier,
            )
        receipt = receipt_service.get_receipt(burger_receipt.id)
        assert receipt.state == "PENDING"
        assert receipt.paid_cents == 0
        assert db.session.query(Payment).count() == 0

    def test_non_cash_cannot_exceed_balance(self, staff, burger_receipt):
        with pytest.raises(ValidationError):
            settlement_service.settle_receipt(
                burger_receipt.id,
                [{"method": "CARD", "amount_cents": 5000, "idempotency_key": "t1"}],
                staff.cashier,
            )

    def test_unknown_method(self, staff, burger_receipt):
        with pytest.raises(ValidationError):
            settlement_service.settle_receipt(
                burger_receipt.id,
                [{"method": "BITCOIN", "amount_cents": 4640, "idempotency_key": "t1"}],
                staff.cashier,
            )

    def test_replay_returns_prior_result(self, staff, burger_receipt):
        tenders = [{"method": "CASH", "amount_cents": 5000, "idempotency_key": "same"}]
        first = settlement_service.settle_receipt(burger_receipt.id, tenders, staff.cashier)
        second = settlement_service.settle_receipt(burger_receipt.id, tenders, staff.cashier)

        assert second.replayed
        assert second.settled
        assert second.change_cents == first.change_cents == 360
        assert db.session.query(Payment).count() == 1
        settled_entries = db.session.query(AuditEntry).filter_by(action="receipt.settled").count()
        assert settled_entries == 1

    def test_settled_receipt_rejects_new_payment(self, staff, burger_receipt):
        settlement_service.settle_receipt(
            burger_receipt.id, [{"method": "CASH", "amount_cents": 4640, "idempotency_key": "a"}], staff.cashier,
        )
        with pytest.raises(InvalidState):
            settlement_service.settle_receipt(
                burger_receipt.id, [{"method": "CASH", "amount_cents": 4640, "idempotency_key": "b"}], staff.cashier,
            )

    def test_settlement_queues_print_and_tax(self, staff, burger_receipt, fakes):
        settlement_service.settle_receipt(
            burger_receipt.id, [{"method": "CASH", "amount_cents": 4640, "idempotency_key": "a"}], staff.cashier,
        )
        dispatch_service.process_due_jobs()

        assert burger_receipt.id in fakes.printer.receipts
        tax_events = [payload for kind, payload in fakes.notifier.events if kind == "NOTIFY_TAX"]
        assert tax_events[0]["event"] == "SALE"
        assert tax_events[0]["tax_cents"] == 640


class TestApplyPayment:
    def test_partial_then_settle(self, staff, burger_receipt):
        first = settlement_service.apply_payment(burger_receipt.id, "MPESA", 2640, "p1", staff.cashier)
        assert not first.settled
        assert first.receipt.balance_cents == 2000
        assert first.receipt.state == "PENDING"

        second = settlement_service.apply_payment(burger_receipt.id, "CASH", 2500, "p2", staff.cashier)
        assert second.settled
        assert second.change_cents == 500
        assert second.receipt.state == "SETTLED"
        assert second.receipt.paid_cents == 4640

    def test_requires_idempotency_key(self, staff, burger_receipt):
        with pytest.raises(ValidationError):
            settlement_service.apply_payment(burger_receipt.id, "CASH", 100, "", staff.cashier)

    def test_replay(self, staff, burger_receipt):
        settlement_service.apply_payment(burger_receipt.id, "CASH", 1000, "p1", staff.cashier)
        replay = settlement_service.apply_payment(burger_receipt.id, "CASH", 1000, "p1", staff.cashier)
        assert replay.replayed
        assert receipt_service.get_receipt(burger_receipt.id).paid_cents == 1000

    def test_key_reused_on_other_receipt(self, staff, period, products, burger_receipt):
        other = receipt_service.open_receipt(staff.cashier, items=[{"product_id": products.fries}])
        settlement_service.apply_payment(burger_receipt.id, "CASH", 1000, "p1", staff.cashier)
        with pytest.raises(ValidationError):
            settlement_service.apply_payment(other.id, "CASH", 1000, "p1", staff.cashier)

    def test_void_item_cannot_leave_receipt_overpaid(self, staff, period, products):
        receipt = receipt_service.open_receipt(
            staff.cashier, items=[{"product_id": products.burger}, {"product_id": products.fries}],
        )
        settlement_service.apply_payment(receipt.id, "CARD", 5000, "p1", staff.cashier)
        burger = [i for i in receipt_service.get_receipt_items(receipt.id) if i.description == "Burger"][0]
        with pytest.raises(InvalidState):
            receipt_service.void_item(receipt.id, burger.id, "Wrong", staff.cashier)


class TestStock:
    def test_stock_deducted_on_settlement_only(self, staff, period, products):
        receipt = receipt_service.open_receipt(staff.cashier, items=[{"product_id": products.soda, "quantity": 3}])
        assert db.session.get(Product, products.soda).on_hand_qty == 10

        result = settlement_service.settle_receipt(
            receipt.id, [{"method": "CASH", "amount_cents": 1500, "idempotency_key": "s"}], staff.cashier,
        )

        assert result.stock_deducted
        assert db.session.get(Product, products.soda).on_hand_qty == 7
        movement = db.session.query(StockMovement).one()
        assert movement.quantity_delta == -3
        assert movement.movement_type == "SALE"

    def test_out_of_stock_blocks_settlement(self, staff, period, products):
        receipt = receipt_service.open_receipt(staff.cashier, items=[{"product_id": products.soda, "quantity": 11}])
        with pytest.raises(StockUnavailable):
            settlement_service.settle_receipt(
                receipt.id, [{"method": "CASH", "amount_cents": 5500, "idempotency_key": "s"}], staff.cashier,
            )
        assert receipt_service.get_receipt(receipt.id).state == "PENDING"
        assert db.session.get(Product, products.soda).on_hand_qty == 10

    def test_oversell_policy_settles_anyway(self, staff, period, products, set_policy):
        set_policy(allow_oversell=True)
        receipt = receipt_service.open_receipt(staff.cashier, items=[{"product_id": products.soda, "quantity": 11}])

        result = settlement_service.settle_receipt(
            receipt.id, [{"method": "CASH", "amount_cents": 5500, "idempotency_key": "s"}], staff.cashier,
        )

        assert result.settled
        assert result.stock_deducted is False
        assert db.session.get(Product, products.soda).on_hand_qty == 10
        entry = db.session.query(AuditEntry).filter_by(action="receipt.settled", entity_id=receipt.id).one()
        assert entry.after["stock_deducted"] is False


class TestAsyncCapture:
    def test_capture_confirmed_settles(self, staff, burger_receipt, fakes):
        payment = settlement_service.initiate_capture(burger_receipt.id, "CARD", 4640, "cap1", staff.cashier)
        assert payment.status == "PENDING_CAPTURE"
        assert payment.provider_reference == "PROV-1"
        assert fakes.payments.requests == [("CARD", 4640, "cap1")]
        assert receipt_service.get_receipt(burger_receipt.id).state == "PENDING"

        result = settlement_service.on_payment_confirmed(payment.id)

        assert result.settled
        assert result.receipt.state == "SETTLED"
        assert db.session.get(Payment, payment.id).status == "COMPLETED"

    def test_confirm_is_idempotent(self, staff, burger_receipt):
        payment = settlement_service.initiate_capture(burger_receipt.id, "CARD", 4640, "cap1", staff.cashier)
        settlement_service.on_payment_confirmed(payment.id)
        again = settlement_service.on_payment_confirmed(payment.id)
        assert again.replayed
        assert receipt_service.get_receipt(burger_receipt.id).paid_cents == 4640

    def test_capture_failed_keeps_receipt_open(self, staff, burger_receipt):
        payment = settlement_service.initiate_capture(burger_receipt.id, "CARD", 4640, "cap1", staff.cashier)
        failed = settlement_service.on_payment_failed(payment.id, "Declined")
        assert failed.status == "FAILED"
        assert failed.failure_reason == "Declined"
        receipt = receipt_service.get_receipt(burger_receipt.id)
        assert receipt.state == "PENDING"
        assert receipt.paid_cents == 0

    def test_provider_unavailable(self, staff, burger_receipt, fakes):
        fakes.payments.unavailable = True
        with pytest.raises(ResourceUnavailable):
            settlement_service.initiate_capture(burger_receipt.id, "CARD", 4640, "cap1", staff.cashier)
        payment = db.session.query(Payment).filter_by(idempotency_key="cap1").one()
        assert payment.status == "FAILED"

    def test_cancel_before_confirmation(self, staff, burger_receipt):
        payment = settlement_service.initiate_capture(burger_receipt.id, "CARD", 4640, "cap1", staff.cashier)
        cancelled = settlement_service.cancel_capture(payment.id, staff.cashier)
        assert cancelled.status == "CANCELLED"

    def test_cancel_after_confirmation_rejected(self, staff, burger_receipt):
        payment = settlement_service.initiate_capture(burger_receipt.id, "CARD", 4640, "cap1", staff.cashier)
        settlement_service.on_payment_confirmed(payment.id)
        with pytest.raises(InvalidState):
            settlement_service.cancel_capture(payment.id, staff.cashier)

    def test_capture_cannot_exceed_uncovered_balance(self, staff, burger_receipt):
        settlement_service.initiate_capture(burger_receipt.id, "CARD", 4000, "cap1", staff.cashier)
        with pytest.raises(ValidationError):
            settlement_service.initiate_capture(burger_receipt.id, "MPESA", 1000, "cap2", staff.cashier)

    def test_cash_is_not_captured(self, staff, burger_receipt):
        with pytest.raises(ValidationError):
            settlement_service.initiate_capture(burger_receipt.id, "CASH", 4640, "cap1", staff.cashier)

    def test_payment_summary(self, staff, burger_receipt):
        settlement_service.apply_payment(burger_receipt.id, "CASH", 1000, "p1", staff.cashier)
        settlement_service.initiate_capture(burger_receipt.id, "CARD", 2000, "cap1", staff.cashier)
        summary = settlement_service.get_payment_summary(burger_receipt.id)
        assert summary["paid_cents"] == 1000
        assert summary["balance_cents"] == 3640
        assert summary["pending_capture_cents"] == 2000
        assert len(summary["payments"]) == 2

    def test_settle_refused_while_capture_pending(self, staff, burger_receipt):
        settlement_service.initiate_capture(burger_receipt.id, "CARD", 2000, "cap1", staff.cashier)
        with pytest.raises(InvalidState):
            settlement_service.settle_receipt(
                burger_receipt.id, [{"method": "CASH", "amount_cents": 4640, "idempotency_key": "s"}], staff.cashier,
            )
        receipt = receipt_service.get_receipt(burger_receipt.id)
        assert receipt.state == "PENDING"
        assert receipt.paid_cents == 0

    def test_cash_covers_only_uncovered_part(self, staff, burger_receipt):
        capture = settlement_service.initiate_capture(burger_receipt.id, "CARD", 2000, "cap1", staff.cashier)

        cash = settlement_service.apply_payment(burger_receipt.id, "CASH", 3000, "p1", staff.cashier)
        assert not cash.settled
        assert cash.payments[0].applied_cents == 2640
        assert cash.change_cents == 360
        assert cash.receipt.balance_cents == 2000

        with pytest.raises(InvalidState):
            settlement_service.apply_payment(burger_receipt.id, "CASH", 500, "p2", staff.cashier)

        confirmed = settlement_service.on_payment_confirmed(capture.id)
        assert confirmed.settled
        assert confirmed.receipt.paid_cents == 4640

    def test_non_cash_cannot_exceed_uncovered_part(self, staff, burger_receipt):
        settlement_service.initiate_capture(burger_receipt.id, "CARD", 2000, "cap1", staff.cashier)
        with pytest.raises(ValidationError):
            settlement_service.apply_payment(burger_receipt.id, "MPESA", 3000, "p1", staff.cashier)

    def test_confirm_after_void_recorded_as_unapplied(self, staff, burger_receipt, fakes):
        capture = settlement_service.initiate_capture(burger_receipt.id, "CARD", 4640, "cap1", staff.cashier)
        receipt_service.void_receipt(burger_receipt.id, "Customer left", staff.supervisor)
        assert db.session.get(Payment, capture.id).status == "CANCELLED"

        result = settlement_service.on_payment_confirmed(capture.id, provider_reference="BANK-9")

        assert not result.settled
        payment = db.session.get(Payment, capture.id)
        assert payment.status == "UNAPPLIED"
        assert payment.applied_cents == 0
        assert payment.captured_at is not None
        assert payment.provider_reference == "BANK-9"
        receipt = receipt_service.get_receipt(burger_receipt.id)
        assert receipt.state == "VOIDED"
        assert receipt.paid_cents == 0
        assert db.session.query(AuditEntry).filter_by(action="payment.captured_unapplied").count() == 1

        dispatch_service.process_due_jobs()
        events = [payload for kind, payload in fakes.notifier.events if kind == "NOTIFY_PAYMENT"]
        assert events[-1]["event"] == "CAPTURED_UNAPPLIED"
        assert events[-1]["amount_cents"] == 4640

        again = settlement_service.on_payment_confirmed(capture.id)
        assert again.replayed
        assert db.session.query(AuditEntry).filter_by(action="payment.captured_unapplied").count() == 1

    def test_confirm_after_period_close_recorded_as_unapplied(self, staff, burger_receipt, set_policy):
        set_policy(unsettled_on_close="WARN")
        capture = settlement_service.initiate_capture(burger_receipt.id, "CARD", 4640, "cap1", staff.cashier)
        work_period_service.close_period(10000, staff.manager)

        result = settlement_service.on_payment_confirmed(capture.id)

        assert not result.settled
        assert db.session.get(Payment, capture.id).status == "UNAPPLIED"
        assert receipt_service.get_receipt(burger_receipt.id).state == "PENDING"
        assert settlement_service.get_tender_summary(burger_receipt.work_period_id) == {}

    def test_failed_capture_cannot_be_confirmed(self, staff, burger_receipt):
        capture = settlement_service.initiate_capture(burger_receipt.id, "CARD", 4640, "cap1", staff.cashier)
        settlement_service.on_payment_failed(capture.id, "Declined")
        with pytest.raises(InvalidState):
            settlement_service.on_payment_confirmed(capture.id)


# =============================================================================
# EXTERNAL INVENTORY
# =============================================================================

class RecordingExternalInventory(InventoryCollaborator):
    """Inventory outside the ledger database; fails on the given call number."""
    transactional = False

    def __init__(self, fail_on_call=None):
        self.deducted = []
        self.reversed = []
        self.calls = 0
        self.fail_on_call = fail_on_call

    def deduct_stock(self, product_id, quantity, receipt_id):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise RuntimeError("inventory service error")
        self.deducted.append((product_id, quantity))

    def reverse_stock(self, product_id, quantity, receipt_id):
        self.reversed.append((product_id, quantity))


@pytest.fixture
def external_inventory(app, fakes):
    def _install(**kwargs):
        inventory = RecordingExternalInventory(**kwargs)
        app.extensions["shiftledger.collaborators"] = dataclasses.replace(
            app.extensions["shiftledger.collaborators"], inventory=inventory,
        )
        return inventory
    return _install


def _fail_audit_on(monkeypatch, action, error, times=None):
    """Make audit_service.append raise `error` for one action (every time, or `times` times)."""
    real_append = audit_service.append
    state = {"left": times}

    def _append(*args, **kwargs):
        if kwargs.get("action") == action and state["left"] != 0:
            if state["left"] is not None:
                state["left"] -= 1
            raise error
        return real_append(*args, **kwargs)

    monkeypatch.setattr(audit_service, "append", _append)


class TestExternalInventory:
    def test_failure_mid_deduction_reverses_earlier_lines(self, staff, period, products, external_inventory):
        inventory = external_inventory(fail_on_call=2)
        receipt = receipt_service.open_receipt(
            staff.cashier, items=[{"product_id": products.soda}, {"product_id": products.fries}],
        )

        with pytest.raises(RuntimeError):
            settlement_service.settle_receipt(
                receipt.id, [{"method": "CASH", "amount_cents": 1500, "idempotency_key": "s"}], staff.cashier,
            )

        assert inventory.deducted == [(products.soda, 1)]
        assert inventory.reversed == [(products.soda, 1)]
        assert receipt_service.get_receipt(receipt.id).state == "PENDING"
        assert db.session.query(Payment).count() == 0

    def test_later_failure_in_transaction_reverses_deduction(
        self, staff, period, products, external_inventory, monkeypatch,
    ):
        inventory = external_inventory()
        receipt = receipt_service.open_receipt(staff.cashier, items=[{"product_id": products.soda, "quantity": 2}])
        _fail_audit_on(monkeypatch, "receipt.settled", RuntimeError("audit store unavailable"))

        with pytest.raises(RuntimeError):
            settlement_service.settle_receipt(
                receipt.id, [{"method": "CASH", "amount_cents": 1000, "idempotency_key": "s"}], staff.cashier,
            )

        assert inventory.deducted == [(products.soda, 2)]
        assert inventory.reversed == [(products.soda, 2)]
        reloaded = receipt_service.get_receipt(receipt.id)
        assert reloaded.state == "PENDING"
        assert not reloaded.stock_deducted

    def test_retried_settlement_deducts_once_net(self, staff, period, products, external_inventory, monkeypatch):
        inventory = external_inventory()
        receipt = receipt_service.open_receipt(staff.cashier, items=[{"product_id": products.soda}])
        _fail_audit_on(
            monkeypatch, "receipt.settled",
            OperationalError("INSERT INTO audit_log", {}, Exception("database is locked")), times=1,
        )

        result = settlement_service.settle_receipt(
            receipt.id, [{"method": "CASH", "amount_cents": 500, "idempotency_key": "s"}], staff.cashier,
        )

        assert result.settled
        assert inventory.deducted == [(products.soda, 1), (products.soda, 1)]
        assert inventory.reversed == [(products.soda, 1)]

    def test_failed_void_restores_deduction(self, staff, period, products, external_inventory, monkeypatch):
        inventory = external_inventory()
        receipt = receipt_service.open_receipt(staff.cashier, items=[{"product_id": products.soda}])
        settlement_service.settle_receipt(
            receipt.id, [{"method": "CASH", "amount_cents": 500, "idempotency_key": "s"}], staff.cashier,
        )
        _fail_audit_on(monkeypatch, "receipt.voided", RuntimeError("audit store unavailable"))

        with pytest.raises(RuntimeError):
            receipt_service.void_receipt(receipt.id, "Wrong order", staff.supervisor)

        assert inventory.reversed == [(products.soda, 1)]
        assert inventory.deducted == [(products.soda, 1), (products.soda, 1)]
        reloaded = receipt_service.get_receipt(receipt.id)
        assert reloaded.state == "SETTLED"
        assert reloaded.stock_deducted
