# Overview: Permission category constants for grouping related permissions.


class PermissionCategory:
    """Permission categories for organization and UI display."""
    PERIODS = "PERIODS"
    RECEIPTS = "RECEIPTS"
    REPORTS = "REPORTS"
    SYSTEM = "SYSTEM"
