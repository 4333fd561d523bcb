# Overview: Service-layer operations for permissions; the single permission evaluator of the ledger.

"""
Permission Evaluation

WHY: One evaluator, invoked only at the ledger boundary. Services call
`require()` before touching any state; routes only add the coarse
`require_permission` decorator on top.

Denials are written to the audit log and committed immediately so the
refusal is recorded even though the operation itself never happens.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import AuthorizationDenied
from ..extensions import db
from ..models import Permission, Role, RolePermission, User, UserRole
from ..permissions import DEFAULT_ROLE_PERMISSIONS, PERMISSION_DEFINITIONS
from . import audit_service


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None


def get_user_permissions(user_id: int) -> set[str]:
    """
    Get all permission codes for a user (union over their roles).
    """
    rows = (
        db.session.query(Permission.code)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(UserRole, UserRole.role_id == RolePermission.role_id)
        .filter(UserRole.user_id == user_id)
        .all()
    )
    return {row[0] for row in rows}


def user_has_permission(user_id: int, permission_code: str) -> bool:
    return permission_code in get_user_permissions(user_id)


def evaluate(user_id: int | None, action: str, resource: dict | None = None) -> Decision:
    """
    Decide whether `user_id` may perform `action` (a permission code).

    `resource` is informational (entity type/id) and is carried into the
    denial record by `require`.
    """
    if user_id is None:
        return Decision(False, "No acting user")

    user = db.session.get(User, user_id)
    if not user:
        return Decision(False, f"User {user_id} not found")
    if not user.is_active:
        return Decision(False, f"User {user_id} is deactivated")

    if action not in get_user_permissions(user_id):
        return Decision(False, f"Missing permission: {action}")

    return Decision(True)


def require(
    user_id: int | None,
    action: str,
    *,
    entity_type: str | None = None,
    entity_id: int | None = None,
    work_period_id: int | None = None,
) -> None:
    """
    Raise AuthorizationDenied unless evaluate() allows the action.
    """
    decision = evaluate(
        user_id,
        action,
        {"entity_type": entity_type, "entity_id": entity_id},
    )
    if decision.allowed:
        return

    audit_service.record_committed(
        action="permission.denied",
        entity_type=entity_type or "system",
        entity_id=entity_id,
        actor_user_id=user_id if user_id and db.session.get(User, user_id) else None,
        work_period_id=work_period_id,
        after={"required_permission": action},
        reason=decision.reason,
    )
    raise AuthorizationDenied(
        f"Permission denied: {action}",
        {"required_permission": action, "reason": decision.reason},
    )


def get_user_role_names(user_id: int) -> list[str]:
    rows = (
        db.session.query(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .order_by(Role.name)
        .all()
    )
    return [row[0] for row in rows]


def initialize_permissions() -> int:
    """
    Initialize all permission definitions in database.

    Idempotent: Safe to run multiple times.
    """
    created_count = 0

    for code, name, description, category in PERMISSION_DEFINITIONS:
        existing = db.session.query(Permission).filter_by(code=code).first()
        if not existing:
            db.session.add(Permission(
                code=code,
                name=name,
                description=description,
                category=category
            ))
            created_count += 1

    db.session.commit()
    return created_count


def assign_default_role_permissions() -> int:
    """
    Assign default permissions to roles based on DEFAULT_ROLE_PERMISSIONS.

    Idempotent: Safe to run multiple times (skips existing).
    """
    created_count = 0

    for role_name, permission_codes in DEFAULT_ROLE_PERMISSIONS.items():
        role = db.session.query(Role).filter_by(name=role_name).first()
        if not role:
            continue

        for permission_code in permission_codes:
            permission = db.session.query(Permission).filter_by(code=permission_code).first()
            if not permission:
                continue

            existing = db.session.query(RolePermission).filter_by(
                role_id=role.id,
                permission_id=permission.id
            ).first()

            if not existing:
                db.session.add(RolePermission(role_id=role.id, permission_id=permission.id))
                created_count += 1

    db.session.commit()
    return created_count


def grant_permission_to_role(role_name: str, permission_code: str) -> bool:
    """Grant a permission to a role. Returns False if it was already granted."""
    role = db.session.query(Role).filter_by(name=role_name).first()
    if not role:
        raise ValueError(f"Role '{role_name}' not found")
    permission = db.session.query(Permission).filter_by(code=permission_code).first()
    if not permission:
        raise ValueError(f"Permission '{permission_code}' not found")

    existing = db.session.query(RolePermission).filter_by(
        role_id=role.id, permission_id=permission.id
    ).first()
    if existing:
        return False

    db.session.add(RolePermission(role_id=role.id, permission_id=permission.id))
    db.session.commit()
    return True


def revoke_permission_from_role(role_name: str, permission_code: str) -> bool:
    """Revoke a permission from a role. Returns False if it was not granted."""
    role = db.session.query(Role).filter_by(name=role_name).first()
    permission = db.session.query(Permission).filter_by(code=permission_code).first()
    if not role or not permission:
        return False

    existing = db.session.query(RolePermission).filter_by(
        role_id=role.id, permission_id=permission.id
    ).first()
    if not existing:
        return False

    db.session.delete(existing)
    db.session.commit()
    return True
