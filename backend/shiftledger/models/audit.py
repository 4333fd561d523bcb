from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class AuditEntry(db.Model):
    """
    Append-only record of one ledger state transition.

    IMMUTABLE: ORM updates and deletes are refused (see listeners below).
    authorized_by_user_id is set when someone other than the actor approved
    the action (void authorizer, ownership override).
    """
    __tablename__ = "audit_entries"
    __table_args__ = (
        db.Index("ix_audit_entries_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    authorized_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    action = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=True)
    work_period_id = db.Column(db.Integer, db.ForeignKey("work_periods.id"), nullable=True, index=True)

    before = db.Column(db.JSON, nullable=True)
    after = db.Column(db.JSON, nullable=True)
    reason = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_user_id": self.actor_user_id,
            "authorized_by_user_id": self.authorized_by_user_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "work_period_id": self.work_period_id,
            "before": self.before,
            "after": self.after,
            "reason": self.reason,
            "occurred_at": to_utc_z(self.occurred_at),
        }


@event.listens_for(AuditEntry, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise ValueError("Audit entries are immutable")


@event.listens_for(AuditEntry, "before_delete")
def _refuse_audit_delete(mapper, connection, target):
    raise ValueError("Audit entries are immutable")


class OverrideGrant(db.Model):
    """
    Single-use permission for a non-owner to mutate one receipt.

    Only the SHA-256 hash of the grant token is stored.
    """
    __tablename__ = "override_grants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)
    receipt_id = db.Column(db.Integer, db.ForeignKey("receipts.id"), nullable=False, index=True)
    action = db.Column(db.String(32), nullable=False)

    requested_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    authorized_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    consumed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receipt_id": self.receipt_id,
            "action": self.action,
            "requested_by_user_id": self.requested_by_user_id,
            "authorized_by_user_id": self.authorized_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
            "consumed_at": to_utc_z(self.consumed_at),
        }
