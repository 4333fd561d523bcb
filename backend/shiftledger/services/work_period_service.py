# Overview: Service-layer operations for work periods (shifts); open, close, payouts.

"""
Work Period Management

WHY: Every receipt lives inside a shift. Closing the shift counts the cash,
computes the variance, freezes the Z report and locks all receipts of the
period against further mutation.

RULES:
- Exactly one OPEN period per register group
- OPEN_WORK_PERIOD / CLOSE_WORK_PERIOD permissions (manager, admin)
- Close waits a bounded time for in-flight ledger operations (PeriodBusy)
- Unsettled receipts at close: BLOCK (default) or WARN, see LedgerPolicy
- Closed periods are never reopened
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import AlreadyClosed, AlreadyOpen, InvalidState, NotFound, UnsettledReceipts, ValidationError
from ..extensions import db
from ..models import CashPayout, Receipt, WorkPeriod
from ..money import format_cents
from ..policies import UNSETTLED_BLOCK, get_ledger_policy
from ..time_utils import utcnow
from . import audit_service, permission_service, report_service
from .concurrency import entity_locks, get_period_gate, lock_for_update, run_with_retry


def _group(register_group: str | None) -> str:
    return (register_group or current_app.config.get("DEFAULT_REGISTER_GROUP", "MAIN")).strip().upper()


def _require_cents(value, field: str, allow_zero: bool = True) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer amount in cents", {"field": field})
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(f"{field} must be {'non-negative' if allow_zero else 'positive'}", {"field": field})
    return value


def get_current_period(register_group: str | None = None) -> WorkPeriod | None:
    return (
        db.session.query(WorkPeriod)
        .filter_by(register_group=_group(register_group), status="OPEN")
        .first()
    )


def require_current_period(register_group: str | None = None) -> WorkPeriod:
    period = get_current_period(register_group)
    if not period:
        raise InvalidState(
            f"No open work period for register group {_group(register_group)}",
            {"register_group": _group(register_group)},
        )
    return period


def is_open(register_group: str | None = None) -> bool:
    return get_current_period(register_group) is not None


def get_period(period_id: int) -> WorkPeriod:
    period = db.session.get(WorkPeriod, period_id)
    if not period:
        raise NotFound(f"Work period {period_id} not found")
    return period


def list_periods(register_group: str | None = None, status: str | None = None, limit: int = 20) -> list[WorkPeriod]:
    query = db.session.query(WorkPeriod)
    if register_group:
        query = query.filter(WorkPeriod.register_group == _group(register_group))
    if status:
        query = query.filter(WorkPeriod.status == status.upper())
    return query.order_by(WorkPeriod.id.desc()).limit(max(1, min(limit, 200))).all()


def get_unsettled_receipts(period_id: int) -> list[Receipt]:
    return (
        db.session.query(Receipt)
        .filter(Receipt.work_period_id == period_id, Receipt.state.in_(("CREATED", "PENDING")))
        .order_by(Receipt.id)
        .all()
    )


def open_period(
    opening_float_cents: int,
    user_id: int,
    register_group: str | None = None,
    notes: str | None = None,
) -> WorkPeriod:
    """
    Open a new work period for the register group.

    Raises AlreadyOpen if the group already has an OPEN period.
    """
    _require_cents(opening_float_cents, "opening_float_cents")
    group = _group(register_group)
    permission_service.require(user_id, "OPEN_WORK_PERIOD", entity_type="work_period")

    def _op() -> WorkPeriod:
        existing = lock_for_update(
            db.session.query(WorkPeriod).filter_by(register_group=group, status="OPEN")
        ).first()
        if existing:
            raise AlreadyOpen(
                f"Register group {group} already has an open work period",
                {"register_group": group, "work_period_id": existing.id},
            )

        period = WorkPeriod(
            register_group=group,
            status="OPEN",
            opening_float_cents=opening_float_cents,
            opened_by_user_id=user_id,
            opened_at=utcnow(),
            notes=notes,
        )
        db.session.add(period)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise AlreadyOpen(
                f"Register group {group} already has an open work period",
                {"register_group": group},
            ) from exc

        audit_service.append(
            action="work_period.opened",
            entity_type="work_period",
            entity_id=period.id,
            actor_user_id=user_id,
            work_period_id=period.id,
            after=period.to_dict(),
        )
        db.session.commit()
        return period

    with entity_locks(("register_group", group)):
        period = run_with_retry(_op, attempts=get_ledger_policy().retry_attempts)

    current_app.logger.info(
        "Work period %s opened for %s by user %s (float %s)",
        period.id, group, user_id, format_cents(opening_float_cents),
    )
    return period


def close_period(
    closing_cash_cents: int,
    user_id: int,
    register_group: str | None = None,
    notes: str | None = None,
    period_id: int | None = None,
) -> WorkPeriod:
    """
    Close the open work period of the register group (or the given period).

    Computes expected cash and variance, freezes the Z report in the same
    transaction and locks the period's receipts.
    """
    _require_cents(closing_cash_cents, "closing_cash_cents")
    requested_id = period_id
    group = get_period(requested_id).register_group if requested_id else _group(register_group)
    policy = get_ledger_policy()

    with entity_locks(("register_group", group)):
        query = db.session.query(WorkPeriod.id).filter_by(register_group=group, status="OPEN")
        if requested_id:
            query = query.filter_by(id=requested_id)
        period_id = query.scalar()
        # End the read before waiting on the gate.
        db.session.rollback()
        if period_id is None:
            if requested_id:
                raise AlreadyClosed(
                    f"Work period {requested_id} is already closed",
                    {"work_period_id": requested_id},
                )
            raise AlreadyClosed(
                f"No open work period for register group {group}",
                {"register_group": group},
            )

        permission_service.require(
            user_id, "CLOSE_WORK_PERIOD",
            entity_type="work_period", entity_id=period_id, work_period_id=period_id,
        )

        def _op() -> WorkPeriod:
            period = lock_for_update(db.session.query(WorkPeriod).filter_by(id=period_id)).first()
            if period.status != "OPEN":
                raise AlreadyClosed(f"Work period {period_id} is already closed", {"work_period_id": period_id})

            unsettled = get_unsettled_receipts(period.id)
            if unsettled and policy.unsettled_on_close == UNSETTLED_BLOCK:
                raise UnsettledReceipts(
                    f"{len(unsettled)} receipt(s) still open in work period {period.id}",
                    {
                        "work_period_id": period.id,
                        "receipt_ids": [r.id for r in unsettled],
                        "receipt_numbers": [r.receipt_number for r in unsettled],
                    },
                )
            if unsettled:
                current_app.logger.warning(
                    "Closing work period %s with %s unsettled receipt(s): %s",
                    period.id, len(unsettled), [r.receipt_number for r in unsettled],
                )

            before = period.to_dict()
            expected = report_service.calculate_expected_cash(period)
            period.status = "CLOSED"
            period.closing_cash_cents = closing_cash_cents
            period.expected_cash_cents = expected
            period.variance_cents = closing_cash_cents - expected
            period.closed_at = utcnow()
            period.closed_by_user_id = user_id
            if notes:
                period.notes = f"{period.notes}\n{notes}" if period.notes else notes
            db.session.flush()

            report = report_service.build_z_report(period, user_id)

            audit_service.append(
                action="work_period.closed",
                entity_type="work_period",
                entity_id=period.id,
                actor_user_id=user_id,
                work_period_id=period.id,
                before=before,
                after=dict(
                    period.to_dict(),
                    z_report_id=report.id,
                    unsettled_receipt_ids=[r.id for r in unsettled],
                ),
            )
            db.session.commit()
            return period

        with get_period_gate().exclusive(period_id, timeout=policy.period_close_wait_seconds):
            period = run_with_retry(_op, attempts=policy.retry_attempts)

    current_app.logger.info(
        "Work period %s closed by user %s: expected %s, counted %s, variance %s, Z #%s",
        period.id, user_id, format_cents(period.expected_cash_cents), format_cents(period.closing_cash_cents),
        format_cents(period.variance_cents), period.z_report_number,
    )
    return period


def record_cash_payout(
    amount_cents: int,
    reason: str,
    user_id: int,
    register_group: str | None = None,
) -> CashPayout:
    """Record cash removed from the drawer; reduces expected cash at close."""
    _require_cents(amount_cents, "amount_cents", allow_zero=False)
    if not reason or not reason.strip():
        raise ValidationError("reason is required for cash payouts")
    group = _group(register_group)

    period = require_current_period(group)
    period_id = period.id
    permission_service.require(
        user_id, "RECORD_CASH_PAYOUT",
        entity_type="work_period", entity_id=period_id, work_period_id=period_id,
    )

    def _op() -> CashPayout:
        current = db.session.get(WorkPeriod, period_id)
        if current.status != "OPEN":
            raise InvalidState(f"Work period {period_id} is closed", {"work_period_id": period_id})

        payout = CashPayout(
            work_period_id=period_id,
            amount_cents=amount_cents,
            reason=reason.strip(),
            recorded_by_user_id=user_id,
        )
        db.session.add(payout)
        db.session.flush()

        audit_service.append(
            action="cash_payout.recorded",
            entity_type="cash_payout",
            entity_id=payout.id,
            actor_user_id=user_id,
            work_period_id=period_id,
            after=payout.to_dict(),
            reason=payout.reason,
        )
        db.session.commit()
        return payout

    with get_period_gate().shared(period_id):
        return run_with_retry(_op, attempts=get_ledger_policy().retry_attempts)


def list_cash_payouts(period_id: int) -> list[CashPayout]:
    return (
        db.session.query(CashPayout)
        .filter_by(work_period_id=period_id)
        .order_by(CashPayout.id)
        .all()
    )
