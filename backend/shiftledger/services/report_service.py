# Overview: Service-layer operations for X (running) and Z (end-of-period) reports.

"""
Report Aggregation

X report: read-only snapshot of a period, re-runnable at any time.
Z report: generated exactly once, when the period closes, numbered from a
gap-free sequence per register group and sealed with a SHA-256 hash of its
canonical JSON payload.

AGGREGATION RULES:
- SETTLED receipts are sales; CREATED/PENDING are outstanding
- VOIDED receipts are listed separately and excluded from every total
- ARCHIVED receipts (split parents, merge sources) are never counted;
  their children / merged receipt carry the amounts
"""

from __future__ import annotations

import hashlib
import json

from sqlalchemy import func

from ..errors import AlreadyGenerated, InvalidState, NotFound
from ..extensions import db
from ..models import CashPayout, OrderItem, Payment, Receipt, WorkPeriod, ZReport
from ..time_utils import to_utc_z, utcnow
from . import audit_service, permission_service, sequence_service


OPEN_STATES = ("CREATED", "PENDING")


def _get_period(period_id: int) -> WorkPeriod:
    period = db.session.get(WorkPeriod, period_id)
    if not period:
        raise NotFound(f"Work period {period_id} not found")
    return period


def cash_payouts_total(period_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(CashPayout.amount_cents), 0))
        .filter(CashPayout.work_period_id == period_id)
        .scalar()
    )
    return int(total or 0)


def cash_taken_total(period_id: int) -> int:
    """Net cash kept in the drawer (tendered minus change) on live receipts."""
    total = (
        db.session.query(func.coalesce(func.sum(Payment.applied_cents), 0))
        .join(Receipt, Receipt.id == Payment.receipt_id)
        .filter(
            Payment.work_period_id == period_id,
            Payment.method == "CASH",
            Payment.status == "COMPLETED",
            Receipt.state != "VOIDED",
        )
        .scalar()
    )
    return int(total or 0)


def calculate_expected_cash(period: WorkPeriod) -> int:
    """expected = opening float + cash settlements - cash payouts"""
    return period.opening_float_cents + cash_taken_total(period.id) - cash_payouts_total(period.id)


def _tender_breakdown(period_id: int) -> dict[str, int]:
    rows = (
        db.session.query(Payment.method, func.sum(Payment.applied_cents))
        .join(Receipt, Receipt.id == Payment.receipt_id)
        .filter(
            Payment.work_period_id == period_id,
            Payment.status == "COMPLETED",
            Receipt.state != "VOIDED",
        )
        .group_by(Payment.method)
        .all()
    )
    return {method: int(amount or 0) for method, amount in sorted(rows)}


def build_period_summary(period: WorkPeriod) -> dict:
    receipts = (
        db.session.query(Receipt)
        .filter(Receipt.work_period_id == period.id)
        .order_by(Receipt.id)
        .all()
    )

    sales = {"count": 0, "subtotal_cents": 0, "discount_cents": 0, "tax_cents": 0, "total_cents": 0}
    outstanding = {"count": 0, "total_cents": 0, "receipt_ids": []}
    voided = {"count": 0, "total_cents": 0, "receipt_ids": []}
    by_user: dict[str, dict] = {}
    live_orders: dict[int, str] = {}

    for receipt in receipts:
        if receipt.state == "ARCHIVED":
            continue
        if receipt.state == "VOIDED":
            voided["count"] += 1
            voided["total_cents"] += receipt.total_cents
            voided["receipt_ids"].append(receipt.id)
            continue

        live_orders[receipt.order_id] = receipt.state
        user_row = by_user.setdefault(
            str(receipt.owner_user_id),
            {"receipts": 0, "settled_cents": 0, "outstanding_cents": 0},
        )
        user_row["receipts"] += 1

        if receipt.state == "SETTLED":
            sales["count"] += 1
            sales["subtotal_cents"] += receipt.subtotal_cents
            sales["discount_cents"] += receipt.discount_cents
            sales["tax_cents"] += receipt.tax_cents
            sales["total_cents"] += receipt.total_cents
            user_row["settled_cents"] += receipt.total_cents
        else:
            outstanding["count"] += 1
            outstanding["total_cents"] += receipt.total_cents
            outstanding["receipt_ids"].append(receipt.id)
            user_row["outstanding_cents"] += receipt.total_cents

    by_category: dict[str, dict] = {}
    if live_orders:
        items = (
            db.session.query(OrderItem)
            .filter(OrderItem.order_id.in_(list(live_orders)), OrderItem.is_voided.is_(False))
            .order_by(OrderItem.id)
            .all()
        )
        for item in items:
            row = by_category.setdefault(
                item.category,
                {"quantity": 0, "settled_cents": 0, "outstanding_cents": 0},
            )
            row["quantity"] += item.quantity
            if live_orders[item.order_id] == "SETTLED":
                row["settled_cents"] += item.line_total_cents
            else:
                row["outstanding_cents"] += item.line_total_cents

    payouts = cash_payouts_total(period.id)
    return {
        "work_period_id": period.id,
        "register_group": period.register_group,
        "status": period.status,
        "opened_at": to_utc_z(period.opened_at),
        "opened_by_user_id": period.opened_by_user_id,
        "opening_float_cents": period.opening_float_cents,
        "sales": sales,
        "outstanding": outstanding,
        "voided": voided,
        "by_category": dict(sorted(by_category.items())),
        "by_user": dict(sorted(by_user.items(), key=lambda kv: int(kv[0]))),
        "by_payment_method": _tender_breakdown(period.id),
        "cash_payouts_cents": payouts,
        "expected_cash_cents": period.opening_float_cents + cash_taken_total(period.id) - payouts,
    }


def x_report(period_id: int) -> dict:
    """Running report. Read-only and safe to call any number of times."""
    period = _get_period(period_id)
    report = build_period_summary(period)
    report["report_type"] = "X"
    report["generated_at"] = to_utc_z(utcnow())
    return report


def compute_report_hash(payload: dict) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_z_report(period: WorkPeriod, user_id: int) -> ZReport:
    """
    Freeze the Z report for a period that is being closed.

    Runs inside the close transaction (flush, no commit) so the report number
    is only consumed if the close commits.
    """
    existing = db.session.query(ZReport).filter_by(work_period_id=period.id).first()
    if existing:
        raise AlreadyGenerated(
            f"Z report already generated for work period {period.id}",
            {"work_period_id": period.id, "report_number": existing.report_number},
        )

    number = sequence_service.next_number(sequence_service.z_report_sequence_key(period.register_group))
    generated_at = utcnow()

    payload = build_period_summary(period)
    payload.update({
        "report_type": "Z",
        "report_number": number,
        "generated_at": to_utc_z(generated_at),
        "generated_by_user_id": user_id,
        "closed_at": to_utc_z(period.closed_at),
        "closed_by_user_id": period.closed_by_user_id,
        "closing_cash_cents": period.closing_cash_cents,
        "variance_cents": period.variance_cents,
    })

    report = ZReport(
        work_period_id=period.id,
        register_group=period.register_group,
        report_number=number,
        payload=payload,
        report_hash=compute_report_hash(payload),
        generated_at=generated_at,
        generated_by_user_id=user_id,
    )
    db.session.add(report)
    period.z_report_number = number
    db.session.flush()

    audit_service.append(
        action="z_report.generated",
        entity_type="z_report",
        entity_id=report.id,
        actor_user_id=user_id,
        work_period_id=period.id,
        after={"report_number": number, "report_hash": report.report_hash},
    )
    return report


def generate_z_report(period_id: int, user_id: int) -> ZReport:
    """
    Generate the Z report for an already closed period.

    close_period() does this itself, so for a normally closed period this
    raises AlreadyGenerated.
    """
    period = _get_period(period_id)
    permission_service.require(
        user_id, "CLOSE_WORK_PERIOD",
        entity_type="work_period", entity_id=period.id, work_period_id=period.id,
    )

    existing = db.session.query(ZReport).filter_by(work_period_id=period.id).first()
    if existing:
        raise AlreadyGenerated(
            f"Z report already generated for work period {period.id}",
            {"work_period_id": period.id, "report_number": existing.report_number},
        )
    if period.status != "CLOSED":
        raise InvalidState(f"Work period {period.id} is still open", {"work_period_id": period.id})

    try:
        report = build_z_report(period, user_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return report


def get_z_report(period_id: int) -> ZReport:
    report = db.session.query(ZReport).filter_by(work_period_id=period_id).first()
    if not report:
        raise NotFound(f"No Z report for work period {period_id}")
    return report


def get_z_report_by_id(report_id: int) -> ZReport:
    report = db.session.get(ZReport, report_id)
    if not report:
        raise NotFound(f"Z report {report_id} not found")
    return report


def list_z_reports(register_group: str) -> list[ZReport]:
    return (
        db.session.query(ZReport)
        .filter_by(register_group=register_group)
        .order_by(ZReport.report_number)
        .all()
    )


def verify_z_report(report_id: int) -> dict:
    """Recompute the hash of a stored Z report and compare."""
    report = get_z_report_by_id(report_id)
    computed = compute_report_hash(report.payload)
    return {
        "report_id": report.id,
        "report_number": report.report_number,
        "valid": computed == report.report_hash,
        "stored_hash": report.report_hash,
        "computed_hash": computed,
    }


def find_report_number_gaps(register_group: str) -> list[int]:
    """Allocated report numbers with no stored Z report."""
    present = {r.report_number for r in list_z_reports(register_group)}
    issued = sequence_service.peek_next_number(sequence_service.z_report_sequence_key(register_group))
    return [n for n in range(1, issued) if n not in present]
