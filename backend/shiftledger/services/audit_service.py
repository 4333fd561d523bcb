# Overview: Service-layer operations for the audit log; the only write path into audit_entries.

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..models import AuditEntry
from ..time_utils import utcnow

"""
Audit Log Invariants

- Append-only: entries are never updated or deleted.
- One entry per ledger state transition, written inside the same DB
  transaction as the transition it records (flush, no commit).
- Denials are the exception: they are committed on their own so they survive
  the rollback of the refused operation.
"""


def append(
    *,
    action: str,
    entity_type: str,
    entity_id: int | None,
    actor_user_id: int | None,
    authorized_by_user_id: int | None = None,
    work_period_id: int | None = None,
    before: dict | None = None,
    after: dict | None = None,
    reason: str | None = None,
    occurred_at: datetime | None = None,
) -> AuditEntry:
    entry = AuditEntry(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        authorized_by_user_id=authorized_by_user_id,
        work_period_id=work_period_id,
        before=before,
        after=after,
        reason=reason,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def record_committed(**kwargs) -> AuditEntry:
    """
    Discard the current transaction and commit a standalone entry.

    Used for refusals: the refused work is rolled back, the refusal is kept.
    """
    db.session.rollback()
    entry = append(**kwargs)
    db.session.commit()
    return entry


def list_entries(
    *,
    entity_type: str | None = None,
    entity_id: int | None = None,
    work_period_id: int | None = None,
    action: str | None = None,
    actor_user_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditEntry]:
    query = db.session.query(AuditEntry)
    if entity_type:
        query = query.filter(AuditEntry.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditEntry.entity_id == entity_id)
    if work_period_id is not None:
        query = query.filter(AuditEntry.work_period_id == work_period_id)
    if action:
        query = query.filter(AuditEntry.action == action)
    if actor_user_id is not None:
        query = query.filter(AuditEntry.actor_user_id == actor_user_id)

    limit = max(1, min(limit, 500))
    offset = max(0, offset)
    return query.order_by(AuditEntry.id.asc()).offset(offset).limit(limit).all()
