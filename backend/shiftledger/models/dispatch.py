from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class SideEffectJob(db.Model):
    """
    Outbox row for work that must happen after a ledger commit.

    Written in the same transaction as the ledger change, executed later by
    the dispatch worker. Failures are retried with backoff and never touch
    the receipt.

    kind: PRINT_TICKET, PRINT_RECEIPT, NOTIFY_PAYMENT, NOTIFY_TAX
    status: PENDING, RUNNING (claimed by a runner), DONE, FAILED
    """
    __tablename__ = "side_effect_jobs"
    __table_args__ = (
        db.Index("ix_side_effect_jobs_due", "status", "next_attempt_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(32), nullable=False)
    receipt_id = db.Column(db.Integer, db.ForeignKey("receipts.id"), nullable=True, index=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)

    status = db.Column(db.String(16), nullable=False, default="PENDING")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=5)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "receipt_id": self.receipt_id,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_attempt_at": to_utc_z(self.next_attempt_at),
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
        }
