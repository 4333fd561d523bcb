from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Order(db.Model):
    """
    Ordered items for one table/tab inside a work period.

    An order is receipted exactly once. Split and merge create fresh orders
    for the resulting receipts (items are copied with source_item_id lineage).
    """
    __tablename__ = "orders"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True)
    work_period_id = db.Column(db.Integer, db.ForeignKey("work_periods.id"), nullable=False, index=True)
    owner_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="OPEN")  # OPEN, RECEIPTED
    table_number = db.Column(db.String(16), nullable=True)

    # Each add-items call is one kitchen batch
    batch_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "work_period_id": self.work_period_id,
            "owner_user_id": self.owner_user_id,
            "status": self.status,
            "table_number": self.table_number,
            "batch_count": self.batch_count,
            "created_at": to_utc_z(self.created_at),
        }


class OrderItem(db.Model):
    """
    One line on an order. Prices are snapshots taken when the item was added.

    Voided items stay on the order (is_voided) and are excluded from totals.
    """
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)

    description = db.Column(db.String(128), nullable=False)
    category = db.Column(db.String(64), nullable=False, default="GENERAL")

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)

    batch_number = db.Column(db.Integer, nullable=False, default=1)

    is_voided = db.Column(db.Boolean, nullable=False, default=False)
    void_reason = db.Column(db.String(255), nullable=True)
    voided_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Item this row was copied from by a split or merge
    source_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents - self.discount_cents + self.tax_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "description": self.description,
            "category": self.category,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "line_total_cents": self.line_total_cents,
            "batch_number": self.batch_number,
            "is_voided": self.is_voided,
            "void_reason": self.void_reason,
            "voided_by_user_id": self.voided_by_user_id,
            "voided_at": to_utc_z(self.voided_at),
            "source_item_id": self.source_item_id,
            "created_at": to_utc_z(self.created_at),
        }


class Receipt(db.Model):
    """
    The financial document for an order.

    LIFECYCLE:
    - CREATED / PENDING: open, accepts items, payments, split, merge, void
    - SETTLED: fully paid (only Void may follow, by policy)
    - VOIDED: cancelled with reason and authorizer, kept for audit
    - ARCHIVED: replaced by split children or by a merged receipt

    Lineage is stored as ids only: a split parent lists child_receipt_ids, a
    merged receipt lists merged_from_receipt_ids and each archived source
    points back through parent_receipt_id.
    """
    __tablename__ = "receipts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    receipt_number = db.Column(db.String(32), nullable=False, unique=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True)
    work_period_id = db.Column(db.Integer, db.ForeignKey("work_periods.id"), nullable=False, index=True)
    owner_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    state = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    # Totals (cents)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_cents = db.Column(db.Integer, nullable=False, default=0)
    change_cents = db.Column(db.Integer, nullable=False, default=0)

    # Split / merge lineage
    parent_receipt_id = db.Column(db.Integer, db.ForeignKey("receipts.id"), nullable=True, index=True)
    child_receipt_ids = db.Column(db.JSON, nullable=False, default=list)
    merged_from_receipt_ids = db.Column(db.JSON, nullable=False, default=list)
    archived_reason = db.Column(db.String(16), nullable=True)  # SPLIT, MERGED
    split_mode = db.Column(db.String(16), nullable=True)  # items, equal, weighted
    split_index = db.Column(db.Integer, nullable=True)

    # Inventory
    stock_deducted = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    void_requested_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    void_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def balance_cents(self) -> int:
        return self.total_cents - self.paid_cents

    @property
    def is_open(self) -> bool:
        return self.state in ("CREATED", "PENDING")

    @property
    def is_split_child(self) -> bool:
        return self.split_mode is not None and self.parent_receipt_id is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receipt_number": self.receipt_number,
            "order_id": self.order_id,
            "work_period_id": self.work_period_id,
            "owner_user_id": self.owner_user_id,
            "state": self.state,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "paid_cents": self.paid_cents,
            "change_cents": self.change_cents,
            "balance_cents": self.balance_cents,
            "parent_receipt_id": self.parent_receipt_id,
            "child_receipt_ids": list(self.child_receipt_ids or []),
            "merged_from_receipt_ids": list(self.merged_from_receipt_ids or []),
            "archived_reason": self.archived_reason,
            "split_mode": self.split_mode,
            "split_index": self.split_index,
            "stock_deducted": self.stock_deducted,
            "created_at": to_utc_z(self.created_at),
            "settled_at": to_utc_z(self.settled_at),
            "settled_by_user_id": self.settled_by_user_id,
            "voided_at": to_utc_z(self.voided_at),
            "voided_by_user_id": self.voided_by_user_id,
            "void_requested_by_user_id": self.void_requested_by_user_id,
            "void_reason": self.void_reason,
            "version_id": self.version_id,
        }


class Payment(db.Model):
    """
    A tender applied to a receipt.

    STATUS:
    - COMPLETED: counted towards paid_cents
    - PENDING_CAPTURE: waiting on the payment provider
    - FAILED / CANCELLED: never counted
    - VOIDED: reversed by a receipt void
    - UNAPPLIED: captured after the receipt stopped taking payments; never
      counted, kept for refund

    applied_cents is what the tender contributed to the receipt balance;
    change_cents is cash handed back (amount_cents - applied_cents).
    """
    __tablename__ = "payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    receipt_id = db.Column(db.Integer, db.ForeignKey("receipts.id"), nullable=False, index=True)
    work_period_id = db.Column(db.Integer, db.ForeignKey("work_periods.id"), nullable=False, index=True)

    method = db.Column(db.String(32), nullable=False)  # CASH, CARD, MPESA, BANK_TRANSFER, VOUCHER
    amount_cents = db.Column(db.Integer, nullable=False)
    applied_cents = db.Column(db.Integer, nullable=False, default=0)
    change_cents = db.Column(db.Integer, nullable=False, default=0)

    reference = db.Column(db.String(128), nullable=True)
    idempotency_key = db.Column(db.String(128), nullable=False, unique=True)

    status = db.Column(db.String(24), nullable=False, default="COMPLETED", index=True)
    provider_reference = db.Column(db.String(128), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    captured_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receipt_id": self.receipt_id,
            "work_period_id": self.work_period_id,
            "method": self.method,
            "amount_cents": self.amount_cents,
            "applied_cents": self.applied_cents,
            "change_cents": self.change_cents,
            "reference": self.reference,
            "idempotency_key": self.idempotency_key,
            "status": self.status,
            "provider_reference": self.provider_reference,
            "failure_reason": self.failure_reason,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "captured_at": to_utc_z(self.captured_at),
            "voided_at": to_utc_z(self.voided_at),
        }
