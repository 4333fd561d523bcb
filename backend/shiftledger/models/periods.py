from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class WorkPeriod(db.Model):
    """
    A shift: the accounting window that bounds every receipt.

    LIFECYCLE:
    - OPEN: receipts may be created, mutated and settled
    - CLOSED: cash counted, variance calculated, Z report frozen

    IMMUTABLE: Once closed, a period is never reopened. Exactly one OPEN
    period exists per register group (enforced by a partial unique index).
    """
    __tablename__ = "work_periods"
    __table_args__ = (
        db.Index(
            "uq_work_periods_open_group",
            "register_group",
            unique=True,
            sqlite_where=db.text("status = 'OPEN'"),
            postgresql_where=db.text("status = 'OPEN'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    register_group = db.Column(db.String(32), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="OPEN", index=True)  # OPEN, CLOSED

    # Cash tracking (all amounts in cents)
    opening_float_cents = db.Column(db.Integer, nullable=False, default=0)
    closing_cash_cents = db.Column(db.Integer, nullable=True)
    expected_cash_cents = db.Column(db.Integer, nullable=True)  # float + cash sales - payouts
    variance_cents = db.Column(db.Integer, nullable=True)  # closing - expected

    z_report_number = db.Column(db.Integer, nullable=True)

    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    opened_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.status == "OPEN"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "register_group": self.register_group,
            "status": self.status,
            "opening_float_cents": self.opening_float_cents,
            "closing_cash_cents": self.closing_cash_cents,
            "expected_cash_cents": self.expected_cash_cents,
            "variance_cents": self.variance_cents,
            "z_report_number": self.z_report_number,
            "opened_at": to_utc_z(self.opened_at),
            "opened_by_user_id": self.opened_by_user_id,
            "closed_at": to_utc_z(self.closed_at),
            "closed_by_user_id": self.closed_by_user_id,
            "notes": self.notes,
            "version_id": self.version_id,
        }


class CashPayout(db.Model):
    """Cash taken out of the drawer during a period (petty cash, supplier COD)."""
    __tablename__ = "cash_payouts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    work_period_id = db.Column(db.Integer, db.ForeignKey("work_periods.id"), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    recorded_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "work_period_id": self.work_period_id,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
            "recorded_by_user_id": self.recorded_by_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class ZReport(db.Model):
    """
    Frozen end-of-period report.

    One per period, numbered from a gap-free sequence per register group.
    report_hash is SHA-256 over the canonical JSON payload and lets
    auditors detect tampering.
    """
    __tablename__ = "z_reports"
    __table_args__ = (
        db.UniqueConstraint("register_group", "report_number", name="uq_z_reports_group_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    work_period_id = db.Column(db.Integer, db.ForeignKey("work_periods.id"), nullable=False, unique=True)
    register_group = db.Column(db.String(32), nullable=False, index=True)
    report_number = db.Column(db.Integer, nullable=False)

    payload = db.Column(db.JSON, nullable=False)
    report_hash = db.Column(db.String(64), nullable=False)

    generated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    generated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "work_period_id": self.work_period_id,
            "register_group": self.register_group,
            "report_number": self.report_number,
            "payload": self.payload,
            "report_hash": self.report_hash,
            "generated_at": to_utc_z(self.generated_at),
            "generated_by_user_id": self.generated_by_user_id,
        }


class LedgerSequence(db.Model):
    """
    Durable monotonic counter (Z report numbers, receipt and order numbers).

    next_number is the number the next allocation will hand out.
    """
    __tablename__ = "ledger_sequences"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sequence_key = db.Column(db.String(64), nullable=False, unique=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
