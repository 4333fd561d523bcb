# Overview: Service-layer operations for orders and receipts; the ledger state machine.

"""
Receipt Ledger

STATES:
- CREATED / PENDING: open; accepts items, payments, split, merge, void
- SETTLED: fully paid; only Void may follow (RECEIPT_VOID_POLICY)
- VOIDED: terminal, kept for audit
- ARCHIVED: terminal; replaced by split children or a merged receipt

INVARIANTS:
- total = sum(non-voided item totals) = subtotal - discount + tax
- Voided items/receipts are never deleted and never counted
- Only the owner (or a holder of a single-use override grant) mutates a receipt
- Receipts of a CLOSED work period are locked
- Every state transition writes exactly one audit entry for the receipt
  it transitions, in the same transaction
- Kitchen tickets only ever carry the items added by that call
"""

from __future__ import annotations

from flask import current_app

from ..errors import InvalidAllocation, InvalidState, NotFound, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, Payment, Product, Receipt, WorkPeriod
from ..money import allocate_equal, allocate_grid, allocate_weighted
from ..policies import VOID_PENDING_ONLY, get_ledger_policy
from ..time_utils import utcnow
from . import audit_service, dispatch_service, inventory_service, ownership_service, permission_service, sequence_service
from .concurrency import ledger_section, lock_for_update, run_with_retry
from .work_period_service import require_current_period


OPEN_STATES = ("CREATED", "PENDING")
TERMINAL_STATES = ("SETTLED", "VOIDED", "ARCHIVED")

SPLIT_MODES = ("items", "equal", "weighted")
MIN_SPLIT_PARTS = 2
MAX_SPLIT_PARTS = 10


# =============================================================================
# Lookups
# =============================================================================

def get_receipt(receipt_id: int) -> Receipt:
    """Voided and archived receipts remain retrievable."""
    receipt = db.session.get(Receipt, receipt_id)
    if not receipt:
        raise NotFound(f"Receipt {receipt_id} not found")
    return receipt


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFound(f"Order {order_id} not found")
    return order


def get_receipt_items(receipt_id: int, include_voided: bool = True) -> list[OrderItem]:
    receipt = get_receipt(receipt_id)
    return _order_items(receipt.order_id, include_voided=include_voided)


def get_receipt_payments(receipt_id: int) -> list[Payment]:
    return (
        db.session.query(Payment)
        .filter_by(receipt_id=receipt_id)
        .order_by(Payment.id)
        .all()
    )


def list_receipts(work_period_id: int, states: list[str] | None = None) -> list[Receipt]:
    query = db.session.query(Receipt).filter(Receipt.work_period_id == work_period_id)
    if states:
        query = query.filter(Receipt.state.in_([s.upper() for s in states]))
    return query.order_by(Receipt.id).all()


def receipt_detail(receipt: Receipt) -> dict:
    data = receipt.to_dict()
    data["items"] = [item.to_dict() for item in _order_items(receipt.order_id, include_voided=True)]
    data["payments"] = [p.to_dict() for p in get_receipt_payments(receipt.id)]
    return data


def _order_items(order_id: int, include_voided: bool = False) -> list[OrderItem]:
    query = db.session.query(OrderItem).filter(OrderItem.order_id == order_id)
    if not include_voided:
        query = query.filter(OrderItem.is_voided.is_(False))
    return query.order_by(OrderItem.id).all()


def _period_of_receipt(receipt_id: int) -> int:
    period_id = db.session.query(Receipt.work_period_id).filter_by(id=receipt_id).scalar()
    if period_id is None:
        raise NotFound(f"Receipt {receipt_id} not found")
    return period_id


def _load_for_update(receipt_id: int) -> Receipt:
    receipt = lock_for_update(db.session.query(Receipt).filter_by(id=receipt_id)).first()
    if not receipt:
        raise NotFound(f"Receipt {receipt_id} not found")
    return receipt


# =============================================================================
# Guards and totals
# =============================================================================

def _require_period_open(period_id: int) -> WorkPeriod:
    period = db.session.get(WorkPeriod, period_id)
    if not period or period.status != "OPEN":
        raise InvalidState(
            f"Work period {period_id} is closed; its receipts are locked",
            {"work_period_id": period_id},
        )
    return period


def _require_state(receipt: Receipt, allowed: tuple, operation: str) -> None:
    if receipt.state not in allowed:
        raise InvalidState(
            f"Cannot {operation} receipt {receipt.receipt_number} in state {receipt.state}",
            {"receipt_id": receipt.id, "state": receipt.state, "allowed": list(allowed)},
        )


def _has_payments(receipt: Receipt) -> bool:
    return (
        db.session.query(Payment.id)
        .filter(
            Payment.receipt_id == receipt.id,
            Payment.status.in_(("COMPLETED", "PENDING_CAPTURE")),
        )
        .first()
        is not None
    )


def recalculate_totals(receipt: Receipt) -> None:
    items = _order_items(receipt.order_id)
    receipt.subtotal_cents = sum(i.quantity * i.unit_price_cents for i in items)
    receipt.discount_cents = sum(i.discount_cents for i in items)
    receipt.tax_cents = sum(i.tax_cents for i in items)
    receipt.total_cents = receipt.subtotal_cents - receipt.discount_cents + receipt.tax_cents


def verify_totals(receipt: Receipt) -> bool:
    """Stored totals match the non-voided items exactly (cents)."""
    items = _order_items(receipt.order_id)
    expected = sum(i.line_total_cents for i in items)
    return (
        receipt.total_cents == expected
        and receipt.total_cents == receipt.subtotal_cents - receipt.discount_cents + receipt.tax_cents
    )


def _summary(receipt: Receipt) -> dict:
    return {
        "state": receipt.state,
        "total_cents": receipt.total_cents,
        "paid_cents": receipt.paid_cents,
        "change_cents": receipt.change_cents,
    }


# =============================================================================
# Items
# =============================================================================

def _int_field(spec: dict, field: str, default=None, minimum: int = 0) -> int:
    value = spec.get(field, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", {"field": field, "value": value})
    if value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", {"field": field, "value": value})
    return value


def _build_item(order_id: int, spec: dict, batch_number: int) -> OrderItem:
    """
    Snapshot one requested item. Accepted keys: product_id, quantity,
    unit_price_cents, description, category, discount_cents, tax_cents.
    """
    if not isinstance(spec, dict):
        raise ValidationError("Each item must be an object")

    quantity = _int_field(spec, "quantity", default=1, minimum=1)
    product = None
    if spec.get("product_id") is not None:
        product = db.session.get(Product, spec["product_id"])
        if not product:
            raise NotFound(f"Product {spec['product_id']} not found")
        if not product.is_active:
            raise ValidationError(f"Product {product.sku} is not active", {"product_id": product.id})

    if product:
        unit_price = _int_field(spec, "unit_price_cents", default=product.price_cents)
        description = spec.get("description") or product.name
        category = spec.get("category") or product.category
    else:
        if "unit_price_cents" not in spec or not spec.get("description"):
            raise ValidationError("Items without product_id need description and unit_price_cents")
        unit_price = _int_field(spec, "unit_price_cents")
        description = spec["description"]
        category = spec.get("category") or "GENERAL"

    gross = quantity * unit_price
    discount = _int_field(spec, "discount_cents", default=0)
    if discount > gross:
        raise ValidationError("discount_cents cannot exceed the line amount", {"description": description})

    if "tax_cents" in spec:
        tax = _int_field(spec, "tax_cents")
    elif product and product.tax_rate_bps:
        # Half-up rounding on the discounted line
        tax = ((gross - discount) * product.tax_rate_bps + 5000) // 10000
    else:
        tax = 0

    return OrderItem(
        order_id=order_id,
        product_id=product.id if product else None,
        description=str(description)[:128],
        category=str(category)[:64],
        quantity=quantity,
        unit_price_cents=unit_price,
        discount_cents=discount,
        tax_cents=tax,
        batch_number=batch_number,
    )


def _copy_item(item: OrderItem, order_id: int) -> OrderItem:
    return OrderItem(
        order_id=order_id,
        product_id=item.product_id,
        description=item.description,
        category=item.category,
        quantity=item.quantity,
        unit_price_cents=item.unit_price_cents,
        discount_cents=item.discount_cents,
        tax_cents=item.tax_cents,
        batch_number=1,
        source_item_id=item.id,
    )


def _add_batch(order: Order, items: list[dict]) -> list[OrderItem]:
    order.batch_count += 1
    new_items = [_build_item(order.id, spec, order.batch_count) for spec in items]
    db.session.add_all(new_items)
    db.session.flush()
    return new_items


def _validate_item_list(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    return items


# =============================================================================
# Orders and receipts
# =============================================================================

def create_order(
    owner_user_id: int,
    items: list[dict] | None = None,
    register_group: str | None = None,
    table_number: str | None = None,
) -> Order:
    """Open an order in the register group's current work period."""
    if items is not None:
        _validate_item_list(items)
    period_id = require_current_period(register_group).id
    permission_service.require(owner_user_id, "CREATE_RECEIPT", entity_type="order", work_period_id=period_id)

    def _op() -> Order:
        _require_period_open(period_id)
        order = Order(
            order_number=sequence_service.next_order_number(),
            work_period_id=period_id,
            owner_user_id=owner_user_id,
            status="OPEN",
            table_number=table_number,
            batch_count=0,
        )
        db.session.add(order)
        db.session.flush()
        if items:
            _add_batch(order, items)

        audit_service.append(
            action="order.created",
            entity_type="order",
            entity_id=order.id,
            actor_user_id=owner_user_id,
            work_period_id=period_id,
            after=order.to_dict(),
        )
        db.session.commit()
        return order

    with ledger_section([], [period_id]):
        return run_with_retry(_op, attempts=get_ledger_policy().retry_attempts)


def create_receipt(order_id: int, owner_user_id: int) -> Receipt:
    """
    Create the receipt for an order.

    Initial state follows the settlement mode (MANUAL -> PENDING,
    AUTO_SETTLE_ON_PRINT -> CREATED). Items already on the order go to the
    kitchen printer.
    """
    order = get_order(order_id)
    period_id = order.work_period_id
    permission_service.require(
        owner_user_id, "CREATE_RECEIPT",
        entity_type="order", entity_id=order_id, work_period_id=period_id,
    )
    policy = get_ledger_policy()

    def _op() -> Receipt:
        locked = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        existing = db.session.query(Receipt.id).filter_by(order_id=order_id).scalar()
        if locked.status == "RECEIPTED" or existing:
            raise InvalidState(
                f"Order {locked.order_number} already has a receipt",
                {"order_id": order_id, "receipt_id": existing},
            )
        _require_period_open(period_id)

        receipt = Receipt(
            receipt_number=sequence_service.next_receipt_number(),
            order_id=order_id,
            work_period_id=period_id,
            owner_user_id=owner_user_id,
            state=policy.initial_receipt_state,
            child_receipt_ids=[],
            merged_from_receipt_ids=[],
        )
        recalculate_totals(receipt)
        db.session.add(receipt)
        locked.status = "RECEIPTED"
        db.session.flush()

        item_ids = [i.id for i in _order_items(order_id)]
        if item_ids:
            dispatch_service.enqueue("PRINT_TICKET", receipt.id, {"item_ids": item_ids, "batch_number": locked.batch_count})

        audit_service.append(
            action="receipt.created",
            entity_type="receipt",
            entity_id=receipt.id,
            actor_user_id=owner_user_id,
            work_period_id=period_id,
            after=receipt.to_dict(),
        )
        db.session.commit()
        return receipt

    with ledger_section([("order", order_id)], [period_id]):
        receipt = run_with_retry(_op, attempts=policy.retry_attempts)
    dispatch_service.notify_worker()
    return receipt


def open_receipt(
    owner_user_id: int,
    items: list[dict] | None = None,
    register_group: str | None = None,
    table_number: str | None = None,
) -> Receipt:
    """Convenience: create an order and its receipt in one call."""
    order = create_order(owner_user_id, items=items, register_group=register_group, table_number=table_number)
    return create_receipt(order.id, owner_user_id)


def add_items(
    receipt_id: int,
    items: list[dict],
    acting_user_id: int,
    override_token: str | None = None,
) -> list[OrderItem]:
    """
    Add a batch of items to an open receipt.

    Returns only the newly added items; only those are sent to the kitchen.
    """
    _validate_item_list(items)
    period_id = _period_of_receipt(receipt_id)
    permission_service.require(
        acting_user_id, "MODIFY_RECEIPT",
        entity_type="receipt", entity_id=receipt_id, work_period_id=period_id,
    )

    def _op() -> list[OrderItem]:
        receipt = _load_for_update(receipt_id)
        _require_state(receipt, OPEN_STATES, "add items to")
        _require_period_open(period_id)
        grant = ownership_service.authorize_mutation(receipt, acting_user_id, "ADD_ITEMS", override_token)

        before = _summary(receipt)
        order = lock_for_update(db.session.query(Order).filter_by(id=receipt.order_id)).first()
        new_items = _add_batch(order, items)
        recalculate_totals(receipt)
        db.session.flush()

        new_ids = [i.id for i in new_items]
        dispatch_service.enqueue("PRINT_TICKET", receipt.id, {"item_ids": new_ids, "batch_number": order.batch_count})

        audit_service.append(
            action="receipt.items_added",
            entity_type="receipt",
            entity_id=receipt.id,
            actor_user_id=acting_user_id,
            authorized_by_user_id=ownership_service.authorized_by(grant),
            work_period_id=period_id,
            before=before,
            after=dict(_summary(receipt), item_ids=new_ids, batch_number=order.batch_count),
        )
        db.session.commit()
        return new_items

    with ledger_section([("receipt", receipt_id)], [period_id]):
        new_items = run_with_retry(_op, attempts=get_ledger_policy().retry_attempts)
    dispatch_service.notify_worker()
    return new_items


def void_item(
    receipt_id: int,
    item_id: int,
    reason: str,
    acting_user_id: int,
    override_token: str | None = None,
) -> OrderItem:
    """Void one item on an open receipt. The item stays, excluded from totals."""
    if not reason or not reason.strip():
        raise ValidationError("reason is required to void an item")
    period_id = _period_of_receipt(receipt_id)
    permission_service.require(
        acting_user_id, "MODIFY_RECEIPT",
        entity_type="receipt", entity_id=receipt_id, work_period_id=period_id,
    )

    def _op() -> OrderItem:
        receipt = _load_for_update(receipt_id)
        _require_state(receipt, OPEN_STATES, "void items on")
        _require_period_open(period_id)
        grant = ownership_service.authorize_mutation(receipt, acting_user_id, "VOID_ITEM", override_token)

        item = db.session.get(OrderItem, item_id)
        if not item or item.order_id != receipt.order_id:
            raise NotFound(f"Item {item_id} is not on receipt {receipt.receipt_number}")
        if item.is_voided:
            raise InvalidState(f"Item {item_id} is already voided", {"item_id": item_id})

        before = _summary(receipt)
        item.is_voided = True
        item.void_reason = reason.strip()
        item.voided_by_user_id = acting_user_id
        item.voided_at = utcnow()
        recalculate_totals(receipt)
        if receipt.total_cents < receipt.paid_cents:
            raise InvalidState(
                "Voiding this item would leave the receipt overpaid",
                {"receipt_id": receipt.id, "paid_cents": receipt.paid_cents},
            )
        db.session.flush()

        audit_service.append(
            action="receipt.item_voided",
            entity_type="receipt",
            entity_id=receipt.id,
            actor_user_id=acting_user_id,
            authorized_by_user_id=ownership_service.authorized_by(grant),
            work_period_id=period_id,
            before=before,
            after=dict(_summary(receipt), item_id=item.id),
            reason=item.void_reason,
        )
        db.session.commit()
        return item

    with ledger_section([("receipt", receipt_id)], [period_id]):
        return run_with_retry(_op, attempts=get_ledger_policy().retry_attempts)


# =============================================================================
# Settlement entry points (balance tracking lives in settlement_service)
# =============================================================================

def settle(receipt_id: int, payments: list[dict], acting_user_id: int, override_token: str | None = None):
    from . import settlement_service
    return settlement_service.settle_receipt(receipt_id, payments, acting_user_id, override_token=override_token)


def print_bill(receipt_id: int, acting_user_id: int) -> Receipt:
    """
    Print the customer bill.

    Under AUTO_SETTLE_ON_PRINT a CREATED receipt is settled in cash for the
    exact balance by this call (settlement prints the receipt itself).
    """
    receipt = get_receipt(receipt_id)
    policy = get_ledger_policy()
    if policy.initial_receipt_state == "CREATED" and receipt.state == "CREATED":
        result = settle(
            receipt_id,
            [{
                "method": "CASH",
                "amount_cents": receipt.balance_cents,
                "idempotency_key": f"auto-settle-{receipt.receipt_number}",
            }],
            acting_user_id,
        )
        return result.receipt

    period_id = receipt.work_period_id
    permission_service.require(
        acting_user_id, "CREATE_RECEIPT",
        entity_type="receipt", entity_id=receipt_id, work_period_id=period_id,
    )

    def _op() -> Receipt:
        current = _load_for_update(receipt_id)
        _require_state(current, OPEN_STATES + ("SETTLED",), "print")
        dispatch_service.enqueue("PRINT_RECEIPT", current.id, {"copy": "BILL", "balance_cents": current.balance_cents})
        db.session.commit()
        return current

    with ledger_section([("receipt", receipt_id)], [period_id]):
        receipt = run_with_retry(_op, attempts=policy.retry_attempts)
    dispatch_service.notify_worker()
    return receipt


# =============================================================================
# Void
# =============================================================================

def void_receipt(
    receipt_id: int,
    reason: str,
    authorized_user_id: int,
    requested_by_user_id: int | None = None,
) -> Receipt:
    """
    Void a receipt. Requires a reason and an authorizer with VOID_RECEIPT.

    Completed payments are voided, pending captures cancelled and deducted
    stock is returned, all in the same commit as the state change.
    """
    if not reason or not reason.strip():
        raise ValidationError("reason is required to void a receipt")
    period_id = _period_of_receipt(receipt_id)
    permission_service.require(
        authorized_user_id, "VOID_RECEIPT",
        entity_type="receipt", entity_id=receipt_id, work_period_id=period_id,
    )
    requester = requested_by_user_id or authorized_user_id
    policy = get_ledger_policy()

    def _op() -> Receipt:
        receipt = _load_for_update(receipt_id)
        if receipt.state in ("VOIDED", "ARCHIVED"):
            raise InvalidState(
                f"Receipt {receipt.receipt_number} is {receipt.state} and cannot be voided",
                {"receipt_id": receipt.id, "state": receipt.state},
            )
        if receipt.state == "SETTLED" and policy.void_policy == VOID_PENDING_ONLY:
            raise InvalidState(
                "Settled receipts cannot be voided under the current void policy",
                {"receipt_id": receipt.id, "void_policy": policy.void_policy},
            )
        _require_period_open(period_id)

        before = _summary(receipt)
        was_settled = receipt.state == "SETTLED"
        now = utcnow()

        payment_changes = []
        for payment in get_receipt_payments(receipt.id):
            if payment.status == "COMPLETED":
                payment.status = "VOIDED"
                payment.voided_at = now
            elif payment.status == "PENDING_CAPTURE":
                payment.status = "CANCELLED"
            else:
                continue
            payment_changes.append({"payment_id": payment.id, "status": payment.status})

        stock_reversed = inventory_service.reverse_receipt_stock(receipt)

        receipt.state = "VOIDED"
        receipt.voided_at = now
        receipt.voided_by_user_id = authorized_user_id
        receipt.void_requested_by_user_id = requester
        receipt.void_reason = reason.strip()
        db.session.flush()

        if was_settled:
            dispatch_service.enqueue("NOTIFY_TAX", receipt.id, {
                "event": "VOID",
                "receipt_number": receipt.receipt_number,
                "total_cents": receipt.total_cents,
            })

        audit_service.append(
            action="receipt.voided",
            entity_type="receipt",
            entity_id=receipt.id,
            actor_user_id=requester,
            authorized_by_user_id=authorized_user_id,
            work_period_id=period_id,
            before=before,
            after=dict(_summary(receipt), payments=payment_changes, stock_reversed=stock_reversed),
            reason=receipt.void_reason,
        )
        db.session.commit()
        return receipt

    with ledger_section([("receipt", receipt_id)], [period_id]):
        receipt = run_with_retry(_op, attempts=policy.retry_attempts)

    current_app.logger.info(
        "Receipt %s voided by %s (requested by %s): %s",
        receipt.receipt_number, authorized_user_id, requester, receipt.void_reason,
    )
    dispatch_service.notify_worker()
    return receipt


def total_voided(work_period_id: int) -> dict:
    receipts = list_receipts(work_period_id, ["VOIDED"])
    return {
        "count": len(receipts),
        "total_cents": sum(r.total_cents for r in receipts),
        "receipts": [
            {
                "receipt_id": r.id,
                "receipt_number": r.receipt_number,
                "total_cents": r.total_cents,
                "void_reason": r.void_reason,
                "voided_by_user_id": r.voided_by_user_id,
                "void_requested_by_user_id": r.void_requested_by_user_id,
            }
            for r in receipts
        ],
    }


# =============================================================================
# Split and merge
# =============================================================================

def _parse_split(allocations: dict, items: list[OrderItem], total_cents: int) -> tuple[str, list]:
    """
    Returns (mode, parts) where parts is a list of item-id lists (items mode)
    or a list of share weights (equal: all 1, weighted: as given).
    """
    if not isinstance(allocations, dict):
        raise InvalidAllocation("allocations must be an object with a mode")
    mode = str(allocations.get("mode", "")).lower()
    if mode not in SPLIT_MODES:
        raise InvalidAllocation(f"Unknown split mode: {mode}", {"allowed": list(SPLIT_MODES)})

    if mode == "items":
        targets = allocations.get("targets")
        if not isinstance(targets, list) or not (MIN_SPLIT_PARTS <= len(targets) <= MAX_SPLIT_PARTS):
            raise InvalidAllocation(f"items split needs {MIN_SPLIT_PARTS}-{MAX_SPLIT_PARTS} targets")
        if len(items) < MIN_SPLIT_PARTS:
            raise InvalidAllocation("items split needs at least two items on the receipt")

        active_ids = [i.id for i in items]
        assigned = []
        for target in targets:
            if not isinstance(target, list) or not target:
                raise InvalidAllocation("every split target needs at least one item")
            assigned.extend(target)
        duplicated = sorted({i for i in assigned if assigned.count(i) > 1})
        missing = sorted(set(active_ids) - set(assigned))
        unknown = sorted(set(assigned) - set(active_ids))
        if duplicated or missing or unknown:
            raise InvalidAllocation(
                "every item must be assigned to exactly one target",
                {"duplicated": duplicated, "missing": missing, "unknown": unknown},
            )
        return mode, targets

    if total_cents <= 0:
        raise InvalidAllocation("cannot split a receipt with no balance")

    if mode == "equal":
        parts = allocations.get("parts")
        if isinstance(parts, bool) or not isinstance(parts, int) or not (MIN_SPLIT_PARTS <= parts <= MAX_SPLIT_PARTS):
            raise InvalidAllocation(f"equal split needs {MIN_SPLIT_PARTS}-{MAX_SPLIT_PARTS} parts", {"parts": parts})
        return mode, [1] * parts

    weights = allocations.get("weights")
    if (
        not isinstance(weights, list)
        or not (MIN_SPLIT_PARTS <= len(weights) <= MAX_SPLIT_PARTS)
        or any(isinstance(w, bool) or not isinstance(w, int) or w <= 0 for w in weights)
    ):
        raise InvalidAllocation(
            f"weighted split needs {MIN_SPLIT_PARTS}-{MAX_SPLIT_PARTS} positive integer weights",
            {"weights": weights},
        )
    return mode, list(weights)


def _share_lines(parent: Receipt, items: list[OrderItem], mode: str, weights: list[int]) -> list[list[dict]]:
    """
    Share lines per child for equal / weighted splits.

    Total, tax and discount are each divided with the split rule, so child
    totals follow it exactly and tax is never lost. Each child share is then
    broken down by the parent's categories (first-seen order) so category
    and tax reports still add up after the split.
    """
    def allocate(amount: int) -> list[int]:
        if mode == "equal":
            return allocate_equal(amount, len(weights))
        return allocate_weighted(amount, weights)

    totals = allocate(parent.total_cents)
    taxes = allocate(parent.tax_cents)
    discounts = allocate(parent.discount_cents)
    gross = [total - tax + discount for total, tax, discount in zip(totals, taxes, discounts)]

    categories: dict[str, dict] = {}
    for item in items:
        row = categories.setdefault(item.category, {"gross": 0, "discount": 0, "tax": 0})
        row["gross"] += item.quantity * item.unit_price_cents
        row["discount"] += item.discount_cents
        row["tax"] += item.tax_cents
    names = list(categories)

    gross_grid = allocate_grid(gross, [categories[c]["gross"] for c in names])
    discount_grid = allocate_grid(discounts, [categories[c]["discount"] for c in names])
    tax_grid = allocate_grid(taxes, [categories[c]["tax"] for c in names])

    lines = []
    for index in range(len(weights)):
        child_lines = []
        for column, category in enumerate(names):
            amounts = (gross_grid[index][column], discount_grid[index][column], tax_grid[index][column])
            if not any(amounts):
                continue
            child_lines.append({
                "description": f"Share {index + 1}/{len(weights)} of {parent.receipt_number}: {category}",
                "category": category,
                "quantity": 1,
                "unit_price_cents": amounts[0],
                "discount_cents": amounts[1],
                "tax_cents": amounts[2],
            })
        lines.append(child_lines)
    return lines


def _new_child_receipt(source: Receipt, owner_user_id: int, state: str) -> tuple[Order, Receipt]:
    order = Order(
        order_number=sequence_service.next_order_number(),
        work_period_id=source.work_period_id,
        owner_user_id=owner_user_id,
        status="RECEIPTED",
        batch_count=1,
    )
    db.session.add(order)
    db.session.flush()
    receipt = Receipt(
        receipt_number=sequence_service.next_receipt_number(),
        order_id=order.id,
        work_period_id=source.work_period_id,
        owner_user_id=owner_user_id,
        state=state,
        child_receipt_ids=[],
        merged_from_receipt_ids=[],
    )
    return order, receipt


def split_receipt(
    receipt_id: int,
    allocations: dict,
    acting_user_id: int,
    override_token: str | None = None,
) -> list[Receipt]:
    """
    Split a PENDING, unpaid receipt into 2-10 new receipts.

    allocations:
    - {"mode": "items", "targets": [[item_id, ...], ...]}
    - {"mode": "equal", "parts": N}  (remainder cents to the first receipts)
    - {"mode": "weighted", "weights": [w1, w2, ...]}  (largest remainder)

    Children's totals always sum exactly to the parent total. Equal and
    weighted children get share lines per parent category that carry their
    part of the tax and discount. The parent is ARCHIVED and lists the children.
    """
    period_id = _period_of_receipt(receipt_id)
    permission_service.require(
        acting_user_id, "MODIFY_RECEIPT",
        entity_type="receipt", entity_id=receipt_id, work_period_id=period_id,
    )

    def _op() -> list[Receipt]:
        parent = _load_for_update(receipt_id)
        _require_state(parent, ("PENDING",), "split")
        if parent.is_split_child:
            raise InvalidState(
                f"Receipt {parent.receipt_number} is itself a split and cannot be split again",
                {"receipt_id": parent.id},
            )
        if parent.paid_cents or _has_payments(parent):
            raise InvalidState(
                f"Receipt {parent.receipt_number} already has payments applied",
                {"receipt_id": parent.id, "paid_cents": parent.paid_cents},
            )
        _require_period_open(period_id)
        grant = ownership_service.authorize_mutation(parent, acting_user_id, "SPLIT", override_token)

        items = _order_items(parent.order_id)
        mode, parts = _parse_split(allocations, items, parent.total_cents)
        items_by_id = {i.id: i for i in items}
        if mode != "items":
            share_lines = _share_lines(parent, items, mode, parts)

        children = []
        for index, part in enumerate(parts, start=1):
            order, child = _new_child_receipt(parent, parent.owner_user_id, "PENDING")
            if mode == "items":
                db.session.add_all([_copy_item(items_by_id[item_id], order.id) for item_id in part])
            else:
                db.session.add_all([
                    OrderItem(order_id=order.id, batch_number=1, **line) for line in share_lines[index - 1]
                ])
            db.session.flush()
            child.parent_receipt_id = parent.id
            child.split_mode = mode
            child.split_index = index
            recalculate_totals(child)
            db.session.add(child)
            db.session.flush()
            children.append(child)

        children_total = sum(c.total_cents for c in children)
        if children_total != parent.total_cents:
            raise InvalidAllocation(
                "split totals do not add up to the receipt total",
                {"parent_total_cents": parent.total_cents, "children_total_cents": children_total},
            )

        before = _summary(parent)
        parent.state = "ARCHIVED"
        parent.archived_reason = "SPLIT"
        parent.child_receipt_ids = [c.id for c in children]
        db.session.flush()

        audit_service.append(
            action="receipt.split",
            entity_type="receipt",
            entity_id=parent.id,
            actor_user_id=acting_user_id,
            authorized_by_user_id=ownership_service.authorized_by(grant),
            work_period_id=period_id,
            before=before,
            after=dict(
                _summary(parent),
                mode=mode,
                child_receipt_ids=[c.id for c in children],
                child_totals_cents=[c.total_cents for c in children],
            ),
        )
        for child in children:
            audit_service.append(
                action="receipt.created",
                entity_type="receipt",
                entity_id=child.id,
                actor_user_id=acting_user_id,
                work_period_id=period_id,
                after=dict(child.to_dict(), split_from_receipt_id=parent.id),
            )
        db.session.commit()
        return children

    with ledger_section([("receipt", receipt_id)], [period_id]):
        return run_with_retry(_op, attempts=get_ledger_policy().retry_attempts)


def _normalize_tokens(override_tokens) -> dict[int, str]:
    if not override_tokens:
        return {}
    if not isinstance(override_tokens, dict):
        raise ValidationError("override_tokens must map receipt ids to grant tokens")
    try:
        return {int(k): v for k, v in override_tokens.items()}
    except (TypeError, ValueError) as exc:
        raise ValidationError("override_tokens keys must be receipt ids") from exc


def merge_receipts(
    receipt_ids: list[int],
    acting_user_id: int,
    override_tokens: dict | None = None,
) -> Receipt:
    """
    Merge two or more open, unpaid receipts of the same work period.

    The merged receipt carries copies of every non-voided item; each source
    is ARCHIVED with parent_receipt_id pointing at the merged receipt.
    """
    if not isinstance(receipt_ids, list) or len(set(receipt_ids)) < 2:
        raise ValidationError("merge needs at least two distinct receipt ids")
    receipt_ids = sorted(set(receipt_ids))
    tokens = _normalize_tokens(override_tokens)
    period_ids = [_period_of_receipt(rid) for rid in receipt_ids]
    for rid, pid in zip(receipt_ids, period_ids):
        permission_service.require(
            acting_user_id, "MODIFY_RECEIPT",
            entity_type="receipt", entity_id=rid, work_period_id=pid,
        )
    policy = get_ledger_policy()

    def _op() -> Receipt:
        sources = [_load_for_update(rid) for rid in receipt_ids]
        for source in sources:
            _require_state(source, OPEN_STATES, "merge")
            if source.is_split_child:
                raise InvalidState(
                    f"Receipt {source.receipt_number} came from a split and cannot be merged",
                    {"receipt_id": source.id},
                )
            if source.paid_cents or _has_payments(source):
                raise InvalidState(
                    f"Receipt {source.receipt_number} already has payments applied",
                    {"receipt_id": source.id},
                )
        if len({s.work_period_id for s in sources}) != 1:
            raise InvalidState(
                "Only receipts of the same work period can be merged",
                {"work_period_ids": sorted({s.work_period_id for s in sources})},
            )
        period_id = sources[0].work_period_id
        _require_period_open(period_id)

        grants = {
            source.id: ownership_service.authorize_mutation(source, acting_user_id, "MERGE", tokens.get(source.id))
            for source in sources
        }

        order, merged = _new_child_receipt(sources[0], acting_user_id, policy.initial_receipt_state)
        for source in sources:
            db.session.add_all([_copy_item(item, order.id) for item in _order_items(source.order_id)])
        db.session.flush()
        merged.merged_from_receipt_ids = [s.id for s in sources]
        recalculate_totals(merged)
        db.session.add(merged)
        db.session.flush()

        if merged.total_cents != sum(s.total_cents for s in sources):
            raise InvalidState("merged total does not match the source receipts", {"receipt_ids": receipt_ids})

        for source in sources:
            before = _summary(source)
            source.state = "ARCHIVED"
            source.archived_reason = "MERGED"
            source.parent_receipt_id = merged.id
            db.session.flush()
            audit_service.append(
                action="receipt.archived",
                entity_type="receipt",
                entity_id=source.id,
                actor_user_id=acting_user_id,
                authorized_by_user_id=ownership_service.authorized_by(grants[source.id]),
                work_period_id=period_id,
                before=before,
                after=dict(_summary(source), merged_into_receipt_id=merged.id),
            )

        audit_service.append(
            action="receipt.merged",
            entity_type="receipt",
            entity_id=merged.id,
            actor_user_id=acting_user_id,
            work_period_id=period_id,
            after=dict(merged.to_dict()),
        )
        db.session.commit()
        return merged

    with ledger_section([("receipt", rid) for rid in receipt_ids], period_ids):
        return run_with_retry(_op, attempts=policy.retry_attempts)
