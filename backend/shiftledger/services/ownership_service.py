# Overview: Service-layer operations for receipt ownership and single-use override grants.

"""
Receipt Ownership Guard

WHY: A receipt belongs to the server who opened it. Anyone else needs an
override: a supervisor with OVERRIDE_RECEIPT_OWNERSHIP enters their PIN and
the requester receives a single-use grant for one receipt and one action.

RULES:
- The authorizer must be a different, active user whose PIN verifies
- Grants expire (OVERRIDE_GRANT_TTL_SECONDS) and are consumed by exactly one
  successful ledger call
- Every override request is audited with requester and authorizer ids,
  granted or not
"""

from __future__ import annotations

import secrets
from datetime import timedelta

from ..errors import AuthorizationDenied, NotFound, ValidationError
from ..extensions import db
from ..models import OverrideGrant, Receipt, User
from ..policies import get_ledger_policy
from ..time_utils import utcnow
from . import audit_service, auth_service, permission_service
from .concurrency import lock_for_update
from .session_service import hash_token


OWNED_ACTIONS = {"ADD_ITEMS", "VOID_ITEM", "SPLIT", "MERGE", "SETTLE"}

OVERRIDE_PERMISSION = "OVERRIDE_RECEIPT_OWNERSHIP"


def can_modify(receipt: Receipt, user_id: int) -> bool:
    return receipt.owner_user_id == user_id


def _deny_override(receipt: Receipt, requesting_user_id: int, authorizer_id, action: str, reason: str):
    audit_service.record_committed(
        action="override.denied",
        entity_type="receipt",
        entity_id=receipt.id,
        actor_user_id=requesting_user_id,
        authorized_by_user_id=authorizer_id,
        work_period_id=receipt.work_period_id,
        after={"action": action},
        reason=reason,
    )
    raise AuthorizationDenied(f"Override denied: {reason}", {"receipt_id": receipt.id, "action": action})


def request_override(
    receipt_id: int,
    requesting_user_id: int,
    authorizer_username: str,
    authorizer_pin: str,
    action: str,
) -> tuple[OverrideGrant, str]:
    """
    Issue a single-use override grant.

    Returns (grant_record, plaintext_token); only the token hash is stored.
    """
    action = (action or "").upper()
    if action not in OWNED_ACTIONS:
        raise ValidationError(
            f"Unknown override action: {action}",
            {"allowed": sorted(OWNED_ACTIONS)},
        )

    receipt = db.session.get(Receipt, receipt_id)
    if not receipt:
        raise NotFound(f"Receipt {receipt_id} not found")

    authorizer = db.session.query(User).filter_by(username=authorizer_username).first()
    authorizer_id = authorizer.id if authorizer else None

    if not authorizer or not authorizer.is_active:
        _deny_override(receipt, requesting_user_id, authorizer_id, action, "Unknown or inactive authorizer")
    if authorizer.id == requesting_user_id:
        _deny_override(receipt, requesting_user_id, authorizer_id, action, "Authorizer must be a different user")
    if not auth_service.verify_pin(authorizer_pin, authorizer.pin_hash):
        _deny_override(receipt, requesting_user_id, authorizer_id, action, "Invalid authorizer PIN")
    if not permission_service.user_has_permission(authorizer.id, OVERRIDE_PERMISSION):
        _deny_override(receipt, requesting_user_id, authorizer_id, action, f"Authorizer lacks {OVERRIDE_PERMISSION}")

    token = secrets.token_urlsafe(24)
    now = utcnow()
    grant = OverrideGrant(
        token_hash=hash_token(token),
        receipt_id=receipt.id,
        action=action,
        requested_by_user_id=requesting_user_id,
        authorized_by_user_id=authorizer.id,
        created_at=now,
        expires_at=now + timedelta(seconds=get_ledger_policy().override_grant_ttl_seconds),
    )
    db.session.add(grant)
    db.session.flush()

    audit_service.append(
        action="override.granted",
        entity_type="receipt",
        entity_id=receipt.id,
        actor_user_id=requesting_user_id,
        authorized_by_user_id=authorizer.id,
        work_period_id=receipt.work_period_id,
        after={"action": action, "grant_id": grant.id, "expires_at": grant.to_dict()["expires_at"]},
    )
    db.session.commit()
    return grant, token


def authorize_mutation(
    receipt: Receipt,
    user_id: int,
    action: str,
    override_token: str | None = None,
) -> OverrideGrant | None:
    """
    Ledger-boundary ownership check.

    Returns None for the owner, the consumed grant for an authorized
    non-owner, and raises AuthorizationDenied otherwise. Consumption is
    flushed, not committed: it only sticks if the mutation commits.
    """
    if can_modify(receipt, user_id):
        return None

    reason = None
    grant = None
    if not override_token:
        reason = "Receipt is owned by another user"
    else:
        grant = lock_for_update(
            db.session.query(OverrideGrant).filter_by(token_hash=hash_token(override_token))
        ).first()
        if not grant:
            reason = "Unknown override grant"
        elif grant.receipt_id != receipt.id:
            reason = "Override grant is for a different receipt"
        elif grant.action != action:
            reason = f"Override grant is for {grant.action}, not {action}"
        elif grant.requested_by_user_id != user_id:
            reason = "Override grant was issued to another user"
        elif grant.consumed_at is not None:
            reason = "Override grant already used"
        elif grant.expires_at < utcnow():
            reason = "Override grant expired"

    if reason:
        audit_service.record_committed(
            action="ownership.denied",
            entity_type="receipt",
            entity_id=receipt.id,
            actor_user_id=user_id,
            work_period_id=receipt.work_period_id,
            after={"action": action, "owner_user_id": receipt.owner_user_id},
            reason=reason,
        )
        raise AuthorizationDenied(reason, {"receipt_id": receipt.id, "action": action})

    grant.consumed_at = utcnow()
    db.session.flush()
    return grant


def authorized_by(grant: OverrideGrant | None) -> int | None:
    return grant.authorized_by_user_id if grant else None
