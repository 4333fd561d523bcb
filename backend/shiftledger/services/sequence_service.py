# Overview: Service-layer operations for durable number sequences (receipts, orders, Z reports).

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ConcurrencyConflict
from ..extensions import db
from ..models import LedgerSequence
from ..time_utils import utcnow


def next_number(sequence_key: str) -> int:
    """
    Atomically allocate the next number of a sequence (first number is 1).

    Runs inside the caller's transaction, so a rolled-back caller also gives
    the number back: committed numbers stay gap-free.
    """
    stmt = (
        update(LedgerSequence)
        .where(LedgerSequence.sequence_key == sequence_key)
        .values(next_number=LedgerSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(LedgerSequence.next_number)
            .filter_by(sequence_key=sequence_key)
            .scalar()
        )
        return current - 1

    seq = LedgerSequence(sequence_key=sequence_key, next_number=2)
    db.session.add(seq)
    try:
        db.session.flush()
    except IntegrityError as exc:
        # Another transaction created the row first; the caller retries.
        raise ConcurrencyConflict(
            "Sequence allocation conflict",
            {"sequence_key": sequence_key},
        ) from exc
    return 1


def peek_next_number(sequence_key: str) -> int:
    current = (
        db.session.query(LedgerSequence.next_number)
        .filter_by(sequence_key=sequence_key)
        .scalar()
    )
    return current or 1


def next_document_number(prefix: str, pad: int = 4) -> str:
    """Daily document number, e.g. R-20260115-0007."""
    day = utcnow().strftime("%Y%m%d")
    number = next_number(f"{prefix}:{day}")
    return f"{prefix}-{day}-{number:0{pad}d}"


def next_receipt_number() -> str:
    return next_document_number("R")


def next_order_number() -> str:
    return next_document_number("O")


def z_report_sequence_key(register_group: str) -> str:
    return f"Z:{register_group}"
