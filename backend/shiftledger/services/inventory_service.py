# Overview: Service-layer operations for stock: default inventory movements and receipt-level deduction/reversal.

from __future__ import annotations

from flask import current_app

from ..collaborators import StockUnavailable, get_collaborators
from ..errors import NotFound, ResourceUnavailable
from ..extensions import db
from ..models import OrderItem, Product, Receipt, StockMovement
from ..policies import get_ledger_policy
from .concurrency import on_rollback


# Split modes whose children carry share lines instead of the real items;
# stock for those is tracked on the archived parent.
SHARE_SPLIT_MODES = ("equal", "weighted")


def apply_movement(*, product_id: int, quantity_delta: int, receipt_id: int | None, movement_type: str):
    """
    Change on-hand for a tracked product and record the movement.

    Untracked products are ignored. Raises StockUnavailable when a
    deduction would take on-hand below zero.
    """
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFound(f"Product {product_id} not found")
    if not product.track_stock:
        return None

    if quantity_delta < 0 and product.on_hand_qty + quantity_delta < 0:
        raise StockUnavailable(
            f"Insufficient stock for {product.name}",
            {
                "product_id": product.id,
                "sku": product.sku,
                "on_hand": product.on_hand_qty,
                "requested": -quantity_delta,
            },
        )

    product.on_hand_qty += quantity_delta
    movement = StockMovement(
        product_id=product.id,
        receipt_id=receipt_id,
        quantity_delta=quantity_delta,
        movement_type=movement_type,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def _stock_lines(receipt: Receipt) -> list[tuple[int, int]]:
    items = (
        db.session.query(OrderItem)
        .filter(
            OrderItem.order_id == receipt.order_id,
            OrderItem.is_voided.is_(False),
            OrderItem.product_id.isnot(None),
        )
        .order_by(OrderItem.id)
        .all()
    )
    return [(item.product_id, item.quantity) for item in items]


def _stock_holder(receipt: Receipt) -> Receipt:
    if receipt.split_mode in SHARE_SPLIT_MODES and receipt.parent_receipt_id:
        return db.session.get(Receipt, receipt.parent_receipt_id)
    return receipt


def _undo_on_rollback(inventory, call, lines: list[tuple[int, int]], receipt_id: int) -> None:
    # Transactional inventories roll back with the session.
    if inventory.transactional or not lines:
        return

    def _undo():
        for product_id, quantity in reversed(lines):
            call(product_id, quantity, receipt_id)

    on_rollback(_undo)


def deduct_receipt_stock(receipt: Receipt) -> bool:
    """
    Deduct stock for a receipt being settled, inside the ledger transaction.

    Returns True when stock is (or already was) deducted, False when the
    inventory refused and ALLOW_OVERSELL let the settlement proceed anyway.
    Deductions already made are reversed if a later line fails, and (for
    external inventories) if the ledger transaction rolls back afterwards.
    """
    holder = _stock_holder(receipt)
    if holder.stock_deducted:
        return True

    inventory = get_collaborators().inventory
    done = []
    try:
        for product_id, quantity in _stock_lines(holder):
            inventory.deduct_stock(product_id, quantity, holder.id)
            done.append((product_id, quantity))
    except Exception as exc:
        for product_id, quantity in reversed(done):
            inventory.reverse_stock(product_id, quantity, holder.id)
        if not isinstance(exc, ResourceUnavailable) or not get_ledger_policy().allow_oversell:
            raise
        current_app.logger.warning(
            "Oversell: receipt %s settled without stock deduction (%s)",
            receipt.receipt_number,
            exc.message,
        )
        return False

    _undo_on_rollback(inventory, inventory.reverse_stock, done, holder.id)
    holder.stock_deducted = True
    return True


def reverse_receipt_stock(receipt: Receipt) -> bool:
    """
    Put stock back for a receipt being voided, inside the ledger transaction.

    For share splits the parent's stock is returned once every sibling has
    been voided. Returns True if anything was reversed.
    """
    holder = _stock_holder(receipt)
    if not holder.stock_deducted:
        return False

    if holder is not receipt:
        siblings = db.session.query(Receipt).filter(Receipt.parent_receipt_id == holder.id).all()
        if any(s.id != receipt.id and s.state != "VOIDED" for s in siblings):
            return False

    inventory = get_collaborators().inventory
    done = []
    try:
        for product_id, quantity in _stock_lines(holder):
            inventory.reverse_stock(product_id, quantity, holder.id)
            done.append((product_id, quantity))
    except Exception:
        for product_id, quantity in reversed(done):
            inventory.deduct_stock(product_id, quantity, holder.id)
        raise

    _undo_on_rollback(inventory, inventory.deduct_stock, done, holder.id)
    holder.stock_deducted = False
    return True
