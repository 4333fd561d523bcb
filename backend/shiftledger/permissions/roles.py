# Overview: Default permission sets per role.

from .definitions import PERMISSION_DEFINITIONS


CASHIER_PERMISSIONS = [
    "CREATE_RECEIPT",
    "MODIFY_RECEIPT",
    "SETTLE_RECEIPT",
]

SUPERVISOR_PERMISSIONS = CASHIER_PERMISSIONS + [
    "VOID_RECEIPT",
    "OVERRIDE_RECEIPT_OWNERSHIP",
    "VIEW_REPORTS",
]

MANAGER_PERMISSIONS = SUPERVISOR_PERMISSIONS + [
    "OPEN_WORK_PERIOD",
    "CLOSE_WORK_PERIOD",
    "RECORD_CASH_PAYOUT",
    "VIEW_AUDIT_LOG",
]

DEFAULT_ROLE_PERMISSIONS = {
    "admin": [perm[0] for perm in PERMISSION_DEFINITIONS],
    "manager": MANAGER_PERMISSIONS,
    "supervisor": SUPERVISOR_PERMISSIONS,
    "cashier": CASHIER_PERMISSIONS,
}

DEFAULT_ROLE_DESCRIPTIONS = {
    "admin": "Full system access",
    "manager": "Opens and closes shifts, voids, reports",
    "supervisor": "Voids and ownership overrides on the floor",
    "cashier": "Creates and settles own receipts",
}
