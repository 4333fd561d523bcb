# Overview: Service-layer operations for auth; encapsulates business logic and database work.

"""
Authentication Service

WHY: Every ledger action must be attributable. Uses bcrypt for password and
PIN hashing and validates password strength.

SECURITY NOTES:
- Passwords and PINs hashed with bcrypt (cost factor from BCRYPT_ROUNDS)
- Minimum 8 characters, mixed case, digit and special char for passwords
- PINs are 4-6 digits; they authorize overrides, they never log anyone in
- Session tokens managed separately (see session_service.py)
"""

import re

import bcrypt
from flask import current_app

from ..extensions import db
from ..models import User, Role, UserRole
from ..permissions import DEFAULT_ROLE_DESCRIPTIONS
from ..time_utils import utcnow


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


class PinValidationError(Exception):
    """Raised when a PIN is not 4-6 digits."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def validate_pin(pin: str) -> None:
    if not re.fullmatch(r"\d{4,6}", pin or ""):
        raise PinValidationError("PIN must be 4 to 6 digits")


def _bcrypt_rounds() -> int:
    return int(current_app.config.get("BCRYPT_ROUNDS", 12))


def _hash_secret(secret: str) -> str:
    salt = bcrypt.gensalt(rounds=_bcrypt_rounds())
    return bcrypt.hashpw(secret.encode('utf-8'), salt).decode('utf-8')


def _check_secret(secret: str, secret_hash: str | None) -> bool:
    if not secret or not secret_hash:
        return False
    try:
        return bcrypt.checkpw(secret.encode('utf-8'), secret_hash.encode('utf-8'))
    except ValueError:
        # Malformed hash in the database
        return False


def hash_password(password: str) -> str:
    """Hash password using bcrypt. Password is validated for strength first."""
    validate_password_strength(password)
    return _hash_secret(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Timing-safe bcrypt check."""
    return _check_secret(password, password_hash)


def hash_pin(pin: str) -> str:
    validate_pin(pin)
    return _hash_secret(pin)


def verify_pin(pin: str, pin_hash: str | None) -> bool:
    return _check_secret(pin, pin_hash)


def create_user(
    username: str,
    password: str,
    display_name: str | None = None,
    pin: str | None = None,
) -> User:
    """
    Create new user with bcrypt password (and optional PIN) hashing.

    Raises:
        ValueError: If the username is taken
        PasswordValidationError / PinValidationError: weak credentials
    """
    existing = db.session.query(User).filter_by(username=username).first()
    if existing:
        raise ValueError(f"Username '{username}' already exists")

    user = User(
        username=username,
        display_name=display_name or username,
        password_hash=hash_password(password),
        pin_hash=hash_pin(pin) if pin else None,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


def set_pin(user_id: int, pin: str) -> User:
    user = db.session.get(User, user_id)
    if not user:
        raise ValueError("User not found")
    user.pin_hash = hash_pin(pin)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """
    Authenticate user with username and password.

    Returns User if credentials valid and account active, None otherwise.
    """
    user = db.session.query(User).filter_by(username=username).first()
    if not user or not user.is_active:
        return None

    if not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user


def assign_role(user_id: int, role_name: str) -> UserRole:
    """Assign role to user. Idempotent."""
    role = db.session.query(Role).filter_by(name=role_name).first()
    if not role:
        raise ValueError(f"Role '{role_name}' not found")

    existing = db.session.query(UserRole).filter_by(user_id=user_id, role_id=role.id).first()
    if existing:
        return existing

    user_role = UserRole(user_id=user_id, role_id=role.id)
    db.session.add(user_role)
    db.session.commit()
    return user_role


def create_default_roles() -> int:
    """Create admin, manager, supervisor and cashier roles. Idempotent."""
    created = 0
    for name, description in DEFAULT_ROLE_DESCRIPTIONS.items():
        if db.session.query(Role).filter_by(name=name).first():
            continue
        db.session.add(Role(name=name, description=description))
        created += 1
    db.session.commit()
    return created
