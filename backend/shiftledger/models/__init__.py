from .auth import User, Role, UserRole, Permission, RolePermission, SessionToken
from .catalog import Product, StockMovement
from .periods import WorkPeriod, CashPayout, ZReport, LedgerSequence
from .receipts import Order, OrderItem, Receipt, Payment
from .audit import AuditEntry, OverrideGrant
from .dispatch import SideEffectJob

__all__ = [
    'User', 'Role', 'UserRole', 'Permission', 'RolePermission', 'SessionToken',
    'Product', 'StockMovement',
    'WorkPeriod', 'CashPayout', 'ZReport', 'LedgerSequence',
    'Order', 'OrderItem', 'Receipt', 'Payment',
    'AuditEntry', 'OverrideGrant',
    'SideEffectJob',
]
