# Overview: All permission definitions organized by category.
# Each permission is defined as: (code, name, description, category)

from .categories import PermissionCategory


# -- WORK PERIODS --

PERIOD_PERMISSIONS = [
    (
        "OPEN_WORK_PERIOD",
        "Open Work Period",
        "Open a shift for a register group with an opening float",
        PermissionCategory.PERIODS,
    ),
    (
        "CLOSE_WORK_PERIOD",
        "Close Work Period",
        "Close a shift, count cash and generate the Z report",
        PermissionCategory.PERIODS,
    ),
    (
        "RECORD_CASH_PAYOUT",
        "Record Cash Payout",
        "Record cash taken out of the drawer during a shift",
        PermissionCategory.PERIODS,
    ),
]


# -- RECEIPTS --

RECEIPT_PERMISSIONS = [
    (
        "CREATE_RECEIPT",
        "Create Receipt",
        "Open orders and receipts",
        PermissionCategory.RECEIPTS,
    ),
    (
        "MODIFY_RECEIPT",
        "Modify Receipt",
        "Add or void items, split and merge own receipts",
        PermissionCategory.RECEIPTS,
    ),
    (
        "SETTLE_RECEIPT",
        "Settle Receipt",
        "Take payments and settle receipts",
        PermissionCategory.RECEIPTS,
    ),
    (
        "VOID_RECEIPT",
        "Void Receipt",
        "Void receipts (requires reason)",
        PermissionCategory.RECEIPTS,
    ),
    (
        "OVERRIDE_RECEIPT_OWNERSHIP",
        "Override Receipt Ownership",
        "Authorize another user to modify a receipt they do not own",
        PermissionCategory.RECEIPTS,
    ),
]


# -- REPORTS --

REPORT_PERMISSIONS = [
    (
        "VIEW_REPORTS",
        "View Reports",
        "View X and Z reports",
        PermissionCategory.REPORTS,
    ),
    (
        "VIEW_AUDIT_LOG",
        "View Audit Log",
        "Read ledger audit entries",
        PermissionCategory.REPORTS,
    ),
]


# -- SYSTEM --

SYSTEM_PERMISSIONS = [
    (
        "SYSTEM_ADMIN",
        "System Administration",
        "Manage users, roles and configuration",
        PermissionCategory.SYSTEM,
    ),
]


PERMISSION_DEFINITIONS = (
    PERIOD_PERMISSIONS
    + RECEIPT_PERMISSIONS
    + REPORT_PERMISSIONS
    + SYSTEM_PERMISSIONS
)
