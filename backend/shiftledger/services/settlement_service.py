# Overview: Service-layer operations for settlement; payments, split tender, change and async capture.

"""
Settlement Processing

WHY: Payment capture is where money and inventory meet. A receipt settles
when completed payments cover its total; stock is deducted in the same
commit and the receipt prints once the commit is done.

TENDER RULES:
- Non-cash tenders never exceed the remaining balance (no card "change")
- Change is only ever handed back in cash: change = tendered - balance
- Payments carry an idempotency key; replaying a key returns the prior
  result and changes nothing
- Insufficient payment raises InsufficientPayment before anything is written

ASYNC CAPTURE:
- initiate_capture(): PENDING_CAPTURE payment, provider called after commit
- While captures are pending, settle_receipt() is refused and apply_payment()
  only covers the part of the balance the captures do not
- on_payment_confirmed() / on_payment_failed(): provider callbacks
- cancel_capture(): only before confirmation; afterwards only Void remains
- A capture confirmed after its receipt left the open states (or its period
  closed) is recorded as UNAPPLIED and raises a notification for a refund
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from flask import current_app

from ..collaborators import get_collaborators
from ..errors import InsufficientPayment, InvalidState, NotFound, ResourceUnavailable, ValidationError
from ..extensions import db
from ..models import Payment, Receipt, WorkPeriod
from ..policies import get_ledger_policy
from ..time_utils import utcnow
from . import audit_service, dispatch_service, inventory_service, ownership_service, permission_service
from .concurrency import ledger_section, lock_for_update, run_with_retry
from .receipt_service import (
    OPEN_STATES,
    _load_for_update,
    _period_of_receipt,
    _require_period_open,
    _require_state,
    _summary,
    get_receipt,
    get_receipt_payments,
)


TENDER_CASH = "CASH"
TENDER_CARD = "CARD"
TENDER_MPESA = "MPESA"
TENDER_BANK_TRANSFER = "BANK_TRANSFER"
TENDER_VOUCHER = "VOUCHER"

PAYMENT_METHODS = {TENDER_CASH, TENDER_CARD, TENDER_MPESA, TENDER_BANK_TRANSFER, TENDER_VOUCHER}
CAPTURE_METHODS = PAYMENT_METHODS - {TENDER_CASH}


@dataclass
class SettlementResult:
    receipt: Receipt
    payments: list[Payment] = field(default_factory=list)
    change_cents: int = 0
    settled: bool = False
    replayed: bool = False
    stock_deducted: bool | None = None

    def to_dict(self) -> dict:
        return {
            "receipt": self.receipt.to_dict(),
            "payments": [p.to_dict() for p in self.payments],
            "change_cents": self.change_cents,
            "settled": self.settled,
            "replayed": self.replayed,
            "stock_deducted": self.stock_deducted,
        }


def _normalize_tender(spec: dict) -> dict:
    if not isinstance(spec, dict):
        raise ValidationError("Each payment must be an object")
    method = str(spec.get("method", "")).upper()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method: {method}", {"allowed": sorted(PAYMENT_METHODS)})
    amount = spec.get("amount_cents")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount_cents must be a positive integer", {"amount_cents": amount})
    key = spec.get("idempotency_key") or uuid.uuid4().hex
    return {
        "method": method,
        "amount_cents": amount,
        "idempotency_key": str(key),
        "reference": spec.get("reference"),
    }


def _existing_payments(keys: list[str]) -> list[Payment]:
    return (
        db.session.query(Payment)
        .filter(Payment.idempotency_key.in_(keys))
        .order_by(Payment.id)
        .all()
    )


def _replay(receipt: Receipt, keys: list[str]) -> SettlementResult | None:
    """Prior result for these idempotency keys, or None if none were used."""
    existing = _existing_payments(keys)
    if not existing:
        return None
    if len(existing) != len(keys) or any(p.receipt_id != receipt.id for p in existing):
        raise ValidationError(
            "idempotency key already used for a different payment",
            {"idempotency_keys": sorted(p.idempotency_key for p in existing)},
        )
    return SettlementResult(
        receipt=receipt,
        payments=existing,
        change_cents=sum(p.change_cents for p in existing),
        settled=receipt.state == "SETTLED",
        replayed=True,
    )


def _finalize(receipt: Receipt, user_id: int, grant=None, payments=None) -> bool:
    """Transition to SETTLED, deduct stock, queue printing and tax notification."""
    before = _summary(receipt)
    stock_deducted = inventory_service.deduct_receipt_stock(receipt)

    receipt.state = "SETTLED"
    receipt.settled_at = utcnow()
    receipt.settled_by_user_id = user_id
    db.session.flush()

    dispatch_service.enqueue("PRINT_RECEIPT", receipt.id, {"copy": "RECEIPT"})
    dispatch_service.enqueue("NOTIFY_TAX", receipt.id, {
        "event": "SALE",
        "receipt_number": receipt.receipt_number,
        "total_cents": receipt.total_cents,
        "tax_cents": receipt.tax_cents,
    })

    audit_service.append(
        action="receipt.settled",
        entity_type="receipt",
        entity_id=receipt.id,
        actor_user_id=user_id,
        authorized_by_user_id=ownership_service.authorized_by(grant),
        work_period_id=receipt.work_period_id,
        before=before,
        after=dict(
            _summary(receipt),
            stock_deducted=stock_deducted,
            payments=[
                {"payment_id": p.id, "method": p.method, "amount_cents": p.amount_cents, "change_cents": p.change_cents}
                for p in (payments or [])
            ],
        ),
    )
    return stock_deducted


def _allocate_change(tenders: list[dict], change_cents: int) -> list[int]:
    """Change per tender; taken from cash tenders, last tendered first."""
    changes = [0] * len(tenders)
    remaining = change_cents
    for index in reversed(range(len(tenders))):
        if remaining <= 0:
            break
        if tenders[index]["method"] == TENDER_CASH:
            take = min(remaining, tenders[index]["amount_cents"])
            changes[index] = take
            remaining -= take
    return changes


def settle_receipt(
    receipt_id: int,
    payments: list[dict],
    acting_user_id: int,
    override_token: str | None = None,
) -> SettlementResult:
    """
    Settle a receipt with one or more tenders in a single call.

    Sum of tenders must cover the balance; any excess is cash change.
    """
    if not isinstance(payments, list) or not payments:
        raise ValidationError("payments must be a non-empty list")
    tenders = [_normalize_tender(p) for p in payments]
    keys = [t["idempotency_key"] for t in tenders]
    if len(set(keys)) != len(keys):
        raise ValidationError("idempotency keys must be unique per payment")

    period_id = _period_of_receipt(receipt_id)
    permission_service.require(
        acting_user_id, "SETTLE_RECEIPT",
        entity_type="receipt", entity_id=receipt_id, work_period_id=period_id,
    )

    def _op() -> SettlementResult:
        receipt = _load_for_update(receipt_id)
        replayed = _replay(receipt, keys)
        if replayed:
            return replayed

        _require_state(receipt, OPEN_STATES, "settle")
        _require_period_open(period_id)

        pending = _pending_capture_total(receipt.id)
        if pending:
            raise InvalidState(
                "A capture is pending on this receipt; confirm, fail or cancel it first",
                {"receipt_id": receipt.id, "pending_capture_cents": pending},
            )

        balance = receipt.balance_cents
        tendered = sum(t["amount_cents"] for t in tenders)
        if tendered < balance:
            raise InsufficientPayment(
                f"Payment of {tendered} does not cover balance {balance}",
                {"receipt_id": receipt.id, "balance_cents": balance, "tendered_cents": tendered},
            )
        non_cash = sum(t["amount_cents"] for t in tenders if t["method"] != TENDER_CASH)
        if non_cash > balance:
            raise ValidationError(
                "Non-cash payments cannot exceed the balance",
                {"balance_cents": balance, "non_cash_cents": non_cash},
            )

        grant = ownership_service.authorize_mutation(receipt, acting_user_id, "SETTLE", override_token)

        change = tendered - balance
        changes = _allocate_change(tenders, change)
        now = utcnow()
        created = []
        for tender, tender_change in zip(tenders, changes):
            payment = Payment(
                receipt_id=receipt.id,
                work_period_id=receipt.work_period_id,
                method=tender["method"],
                amount_cents=tender["amount_cents"],
                applied_cents=tender["amount_cents"] - tender_change,
                change_cents=tender_change,
                reference=tender["reference"],
                idempotency_key=tender["idempotency_key"],
                status="COMPLETED",
                created_by_user_id=acting_user_id,
                created_at=now,
                captured_at=now,
            )
            db.session.add(payment)
            created.append(payment)
        db.session.flush()

        receipt.paid_cents += sum(p.applied_cents for p in created)
        receipt.change_cents += change
        stock_deducted = _finalize(receipt, acting_user_id, grant=grant, payments=created)
        db.session.commit()

        return SettlementResult(
            receipt=receipt,
            payments=created,
            change_cents=change,
            settled=True,
            stock_deducted=stock_deducted,
        )

    with ledger_section([("receipt", receipt_id)], [period_id]):
        result = run_with_retry(_op, attempts=get_ledger_policy().retry_attempts)

    if not result.replayed:
        current_app.logger.info(
            "Receipt %s settled by user %s: total %s, change %s",
            result.receipt.receipt_number, acting_user_id, result.receipt.total_cents, result.change_cents,
        )
        dispatch_service.notify_worker()
    return result


def apply_payment(
    receipt_id: int,
    method: str,
    amount_cents: int,
    idempotency_key: str,
    acting_user_id: int,
    reference: str | None = None,
    override_token: str | None = None,
) -> SettlementResult:
    """
    Apply one tender (split tender). The receipt settles once the balance
    reaches zero; cash beyond the balance is returned as change.
    """
    if not idempotency_key:
        raise ValidationError("idempotency_key is required")
    tender = _normalize_tender({
        "method": method,
        "amount_cents": amount_cents,
        "idempotency_key": idempotency_key,
        "reference": reference,
    })

    period_id = _period_of_receipt(receipt_id)
    permission_service.require(
        acting_user_id, "SETTLE_RECEIPT",
        entity_type="receipt", entity_id=receipt_id, work_period_id=period_id,
    )

    def _op() -> SettlementResult:
        receipt = _load_for_update(receipt_id)
        replayed = _replay(receipt, [tender["idempotency_key"]])
        if replayed:
            return replayed

        _require_state(receipt, OPEN_STATES, "take payment on")
        _require_period_open(period_id)

        balance = receipt.balance_cents
        if balance <= 0:
            raise InvalidState("Receipt has no outstanding balance", {"receipt_id": receipt.id})
        # Pending captures reserve their part of the balance.
        pending = _pending_capture_total(receipt.id)
        uncovered = balance - pending
        if uncovered <= 0:
            raise InvalidState(
                "Outstanding balance is covered by pending captures",
                {"receipt_id": receipt.id, "balance_cents": balance, "pending_capture_cents": pending},
            )
        if tender["method"] != TENDER_CASH and tender["amount_cents"] > uncovered:
            raise ValidationError(
                "Non-cash payment cannot exceed the uncovered balance",
                {"balance_cents": balance, "pending_capture_cents": pending, "amount_cents": tender["amount_cents"]},
            )

        grant = ownership_service.authorize_mutation(receipt, acting_user_id, "SETTLE", override_token)

        applied = min(tender["amount_cents"], uncovered)
        change = tender["amount_cents"] - applied
        now = utcnow()
        payment = Payment(
            receipt_id=receipt.id,
            work_period_id=receipt.work_period_id,
            method=tender["method"],
            amount_cents=tender["amount_cents"],
            applied_cents=applied,
            change_cents=change,
            reference=tender["reference"],
            idempotency_key=tender["idempotency_key"],
            status="COMPLETED",
            created_by_user_id=acting_user_id,
            created_at=now,
            captured_at=now,
        )
        db.session.add(payment)
        db.session.flush()

        before = _summary(receipt)
        receipt.paid_cents += applied
        receipt.change_cents += change

        audit_service.append(
            action="payment.applied",
            entity_type="receipt",
            entity_id=receipt.id,
            actor_user_id=acting_user_id,
            authorized_by_user_id=ownership_service.authorized_by(grant),
            work_period_id=receipt.work_period_id,
            before=before,
            after=dict(_summary(receipt), payment=payment.to_dict()),
        )

        settled = False
        stock_deducted = None
        if receipt.balance_cents <= 0:
            stock_deducted = _finalize(receipt, acting_user_id, payments=[payment])
            settled = True
        db.session.commit()

        return SettlementResult(
            receipt=receipt,
            payments=[payment],
            change_cents=change,
            settled=settled,
            stock_deducted=stock_deducted,
        )

    with ledger_section([("receipt", receipt_id)], [period_id]):
        result = run_with_retry(_op, attempts=get_ledger_policy().retry_attempts)
    if result.settled and not result.replayed:
        dispatch_service.notify_worker()
    return result


# =============================================================================
# Asynchronous capture
# =============================================================================

def _get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


def _pending_capture_total(receipt_id: int) -> int:
    return sum(
        p.amount_cents for p in get_receipt_payments(receipt_id)
        if p.status == "PENDING_CAPTURE"
    )


def initiate_capture(
    receipt_id: int,
    method: str,
    amount_cents: int,
    idempotency_key: str,
    acting_user_id: int,
    reference: str | None = None,
    override_token: str | None = None,
) -> Payment:
    """
    Record a PENDING_CAPTURE payment and hand it to the payment provider.

    The provider is called after the ledger commit, outside any lock.
    """
    if not idempotency_key:
        raise ValidationError("idempotency_key is required")
    tender = _normalize_tender({
        "method": method,
        "amount_cents": amount_cents,
        "idempotency_key": idempotency_key,
        "reference": reference,
    })
    if tender["method"] not in CAPTURE_METHODS:
        raise ValidationError("Cash payments are not captured asynchronously", {"method": tender["method"]})

    period_id = _period_of_receipt(receipt_id)
    permission_service.require(
        acting_user_id, "SETTLE_RECEIPT",
        entity_type="receipt", entity_id=receipt_id, work_period_id=period_id,
    )

    def _op() -> tuple[Payment, bool]:
        receipt = _load_for_update(receipt_id)
        existing = _existing_payments([tender["idempotency_key"]])
        if existing:
            if existing[0].receipt_id != receipt.id:
                raise ValidationError("idempotency key already used for a different payment")
            return existing[0], False

        _require_state(receipt, OPEN_STATES, "take payment on")
        _require_period_open(period_id)

        available = receipt.balance_cents - _pending_capture_total(receipt.id)
        if tender["amount_cents"] > available:
            raise ValidationError(
                "Capture amount exceeds the uncovered balance",
                {"available_cents": available, "amount_cents": tender["amount_cents"]},
            )

        grant = ownership_service.authorize_mutation(receipt, acting_user_id, "SETTLE", override_token)

        payment = Payment(
            receipt_id=receipt.id,
            work_period_id=receipt.work_period_id,
            method=tender["method"],
            amount_cents=tender["amount_cents"],
            applied_cents=0,
            change_cents=0,
            reference=tender["reference"],
            idempotency_key=tender["idempotency_key"],
            status="PENDING_CAPTURE",
            created_by_user_id=acting_user_id,
        )
        db.session.add(payment)
        db.session.flush()

        audit_service.append(
            action="payment.capture_initiated",
            entity_type="receipt",
            entity_id=receipt.id,
            actor_user_id=acting_user_id,
            authorized_by_user_id=ownership_service.authorized_by(grant),
            work_period_id=receipt.work_period_id,
            after={"payment": payment.to_dict()},
        )
        db.session.commit()
        return payment, True

    with ledger_section([("receipt", receipt_id)], [period_id]):
        payment, is_new = run_with_retry(_op, attempts=get_ledger_policy().retry_attempts)

    if not is_new:
        return payment

    try:
        provider_reference = get_collaborators().payments.initiate_payment(
            payment.method, payment.amount_cents, payment.idempotency_key
        )
    except ResourceUnavailable as exc:
        on_payment_failed(payment.id, f"Provider unavailable: {exc.message}")
        raise

    if provider_reference:
        def _attach() -> Payment:
            current = db.session.get(Payment, payment.id)
            if not current.provider_reference:
                current.provider_reference = provider_reference
                db.session.commit()
            return current

        payment = _locked_payment_op(payment.id, _attach)
    return payment


def _locked_payment_op(payment_id: int, op):
    payment = _get_payment(payment_id)
    receipt_id = payment.receipt_id
    period_id = payment.work_period_id
    with ledger_section([("receipt", receipt_id)], [period_id]):
        return run_with_retry(op, attempts=get_ledger_policy().retry_attempts)


def _record_unapplied_capture(payment: Payment, receipt: Receipt, provider_reference: str | None, actor: int) -> SettlementResult:
    """
    The provider took money for a receipt that can no longer accept it.

    The payment is kept as UNAPPLIED (never counted towards paid_cents or
    reports) and a notification is queued so the amount can be refunded.
    """
    before = payment.to_dict()
    payment.status = "UNAPPLIED"
    payment.applied_cents = 0
    payment.captured_at = utcnow()
    if provider_reference:
        payment.provider_reference = provider_reference
    db.session.flush()

    dispatch_service.enqueue("NOTIFY_PAYMENT", receipt.id, {
        "event": "CAPTURED_UNAPPLIED",
        "payment_id": payment.id,
        "method": payment.method,
        "amount_cents": payment.amount_cents,
        "provider_reference": payment.provider_reference,
        "receipt_state": receipt.state,
    })
    audit_service.append(
        action="payment.captured_unapplied",
        entity_type="receipt",
        entity_id=receipt.id,
        actor_user_id=actor,
        work_period_id=receipt.work_period_id,
        before={"payment": before},
        after={"payment": payment.to_dict(), "receipt_state": receipt.state},
    )
    db.session.commit()
    current_app.logger.warning(
        "Capture %s confirmed for receipt %s in state %s; recorded as unapplied (%s %s)",
        payment.id, receipt.receipt_number, receipt.state, payment.method, payment.amount_cents,
    )
    return SettlementResult(receipt=receipt, payments=[payment], settled=receipt.state == "SETTLED")


def on_payment_confirmed(
    payment_id: int,
    provider_reference: str | None = None,
    acting_user_id: int | None = None,
) -> SettlementResult:
    """
    Provider callback: the capture succeeded.

    If the receipt can no longer take the payment (voided, settled, closed
    period) or the capture was cancelled meanwhile, the money is recorded
    as UNAPPLIED instead of being lost.
    """

    def _op() -> SettlementResult:
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        receipt = _load_for_update(payment.receipt_id)
        if payment.status in ("COMPLETED", "UNAPPLIED"):
            return SettlementResult(receipt=receipt, payments=[payment], settled=receipt.state == "SETTLED", replayed=True)
        if payment.status not in ("PENDING_CAPTURE", "CANCELLED"):
            raise InvalidState(
                f"Payment {payment.id} is {payment.status} and cannot be confirmed",
                {"payment_id": payment.id, "status": payment.status},
            )

        actor = acting_user_id or payment.created_by_user_id
        period_open = db.session.get(WorkPeriod, receipt.work_period_id).status == "OPEN"
        if payment.status == "CANCELLED" or receipt.state not in OPEN_STATES or not period_open:
            return _record_unapplied_capture(payment, receipt, provider_reference, actor)

        before = _summary(receipt)
        payment.status = "COMPLETED"
        payment.applied_cents = min(payment.amount_cents, max(receipt.balance_cents, 0))
        payment.captured_at = utcnow()
        if provider_reference:
            payment.provider_reference = provider_reference
        receipt.paid_cents += payment.applied_cents
        db.session.flush()

        dispatch_service.enqueue("NOTIFY_PAYMENT", receipt.id, {
            "event": "CAPTURED",
            "payment_id": payment.id,
            "method": payment.method,
            "amount_cents": payment.amount_cents,
            "provider_reference": payment.provider_reference,
        })
        audit_service.append(
            action="payment.captured",
            entity_type="receipt",
            entity_id=receipt.id,
            actor_user_id=actor,
            work_period_id=receipt.work_period_id,
            before=before,
            after=dict(_summary(receipt), payment=payment.to_dict()),
        )

        settled = False
        stock_deducted = None
        if receipt.balance_cents <= 0:
            stock_deducted = _finalize(receipt, payment.created_by_user_id, payments=[payment])
            settled = True
        db.session.commit()
        return SettlementResult(receipt=receipt, payments=[payment], settled=settled, stock_deducted=stock_deducted)

    result = _locked_payment_op(payment_id, _op)
    if not result.replayed:
        dispatch_service.notify_worker()
    return result


def on_payment_failed(payment_id: int, reason: str | None = None) -> Payment:
    """Provider callback: the capture failed. The receipt stays open."""

    def _op() -> Payment:
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if payment.status == "FAILED":
            return payment
        if payment.status != "PENDING_CAPTURE":
            raise InvalidState(
                f"Payment {payment.id} is {payment.status} and cannot fail",
                {"payment_id": payment.id, "status": payment.status},
            )
        payment.status = "FAILED"
        payment.failure_reason = (reason or "Capture failed")[:255]
        db.session.flush()
        audit_service.append(
            action="payment.capture_failed",
            entity_type="receipt",
            entity_id=payment.receipt_id,
            actor_user_id=payment.created_by_user_id,
            work_period_id=payment.work_period_id,
            after={"payment": payment.to_dict()},
            reason=payment.failure_reason,
        )
        db.session.commit()
        return payment

    return _locked_payment_op(payment_id, _op)


def cancel_capture(payment_id: int, acting_user_id: int) -> Payment:
    """
    Cancel a capture that has not been confirmed yet.

    Confirmed payments cannot be cancelled; the receipt has to be voided.
    """
    payment = _get_payment(payment_id)
    permission_service.require(
        acting_user_id, "SETTLE_RECEIPT",
        entity_type="receipt", entity_id=payment.receipt_id, work_period_id=payment.work_period_id,
    )

    def _op() -> Payment:
        current = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if current.status == "CANCELLED":
            return current
        if current.status == "COMPLETED":
            raise InvalidState(
                "Payment already captured; void the receipt instead",
                {"payment_id": current.id},
            )
        if current.status != "PENDING_CAPTURE":
            raise InvalidState(
                f"Payment {current.id} is {current.status} and cannot be cancelled",
                {"payment_id": current.id, "status": current.status},
            )
        current.status = "CANCELLED"
        db.session.flush()
        audit_service.append(
            action="payment.capture_cancelled",
            entity_type="receipt",
            entity_id=current.receipt_id,
            actor_user_id=acting_user_id,
            work_period_id=current.work_period_id,
            after={"payment": current.to_dict()},
        )
        db.session.commit()
        return current

    return _locked_payment_op(payment_id, _op)


# =============================================================================
# Summaries
# =============================================================================

def get_payment_summary(receipt_id: int) -> dict:
    receipt = get_receipt(receipt_id)
    payments = get_receipt_payments(receipt_id)
    return {
        "receipt_id": receipt.id,
        "receipt_number": receipt.receipt_number,
        "state": receipt.state,
        "total_cents": receipt.total_cents,
        "paid_cents": receipt.paid_cents,
        "balance_cents": receipt.balance_cents,
        "change_cents": receipt.change_cents,
        "pending_capture_cents": _pending_capture_total(receipt_id),
        "payments": [p.to_dict() for p in payments],
    }


def get_tender_summary(work_period_id: int) -> dict:
    """Completed tender per method for live (non-voided) receipts of a period."""
    rows = (
        db.session.query(Payment)
        .join(Receipt, Receipt.id == Payment.receipt_id)
        .filter(
            Payment.work_period_id == work_period_id,
            Payment.status == "COMPLETED",
            Receipt.state != "VOIDED",
        )
        .all()
    )
    summary: dict[str, dict] = {}
    for payment in rows:
        row = summary.setdefault(payment.method, {"count": 0, "tendered_cents": 0, "applied_cents": 0, "change_cents": 0})
        row["count"] += 1
        row["tendered_cents"] += payment.amount_cents
        row["applied_cents"] += payment.applied_cents
        row["change_cents"] += payment.change_cents
    return dict(sorted(summary.items()))
