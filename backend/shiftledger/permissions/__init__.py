# Overview: Permission system package.

from .categories import PermissionCategory
from .definitions import (
    PERMISSION_DEFINITIONS,
    PERIOD_PERMISSIONS,
    RECEIPT_PERMISSIONS,
    REPORT_PERMISSIONS,
    SYSTEM_PERMISSIONS,
)
from .roles import DEFAULT_ROLE_PERMISSIONS, DEFAULT_ROLE_DESCRIPTIONS

__all__ = [
    "PermissionCategory",
    "PERMISSION_DEFINITIONS",
    "PERIOD_PERMISSIONS",
    "RECEIPT_PERMISSIONS",
    "REPORT_PERMISSIONS",
    "SYSTEM_PERMISSIONS",
    "DEFAULT_ROLE_PERMISSIONS",
    "DEFAULT_ROLE_DESCRIPTIONS",
]
