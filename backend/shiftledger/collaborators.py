# Overview: Interfaces for external collaborators (inventory, printing, payments, notifications).

"""
External Collaborators

The ledger only talks to the outside world through these interfaces. They are
bundled into `Collaborators` and attached to the app in `create_app`, so tests
and deployments can swap implementations without touching the services.

CALL TIMING:
- Inventory is called inside the ledger transaction. The default ledger
  inventory commits or rolls back with the receipt; external inventories
  (transactional = False) are compensated with the opposite call when the
  transaction rolls back.
- Printing and notifications are called only by the dispatch worker, after
  the ledger transaction has committed.
- Payments are called when a capture is initiated; the provider answers later
  through on_payment_confirmed / on_payment_failed.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app

from .errors import ResourceUnavailable


class StockUnavailable(ResourceUnavailable):
    code = "STOCK_UNAVAILABLE"


class InventoryCollaborator:
    # False: calls take effect outside the ledger transaction and are
    # compensated with the opposite call when that transaction rolls back.
    transactional = False

    def deduct_stock(self, product_id: int, quantity: int, receipt_id: int) -> None:
        raise NotImplementedError

    def reverse_stock(self, product_id: int, quantity: int, receipt_id: int) -> None:
        raise NotImplementedError


class PrintingCollaborator:
    def print_ticket(self, receipt_id: int, item_ids: list[int]) -> None:
        raise NotImplementedError

    def print_receipt(self, receipt_id: int) -> None:
        raise NotImplementedError


class PaymentCollaborator:
    def initiate_payment(self, method: str, amount_cents: int, reference: str) -> str | None:
        """Start an asynchronous capture; returns the provider reference if known."""
        raise NotImplementedError


class NotificationCollaborator:
    def notify(self, kind: str, payload: dict) -> None:
        raise NotImplementedError


class LedgerInventory(InventoryCollaborator):
    """
    Default inventory: keeps on-hand quantities on Product and writes a
    StockMovement row per change, in the caller's session (no commit).
    """
    transactional = True

    def deduct_stock(self, product_id: int, quantity: int, receipt_id: int) -> None:
        from .services import inventory_service
        inventory_service.apply_movement(
            product_id=product_id,
            quantity_delta=-quantity,
            receipt_id=receipt_id,
            movement_type="SALE",
        )

    def reverse_stock(self, product_id: int, quantity: int, receipt_id: int) -> None:
        from .services import inventory_service
        inventory_service.apply_movement(
            product_id=product_id,
            quantity_delta=quantity,
            receipt_id=receipt_id,
            movement_type="SALE_VOID",
        )


class LoggingPrinter(PrintingCollaborator):
    def print_ticket(self, receipt_id: int, item_ids: list[int]) -> None:
        current_app.logger.info("Kitchen ticket for receipt %s: items %s", receipt_id, item_ids)

    def print_receipt(self, receipt_id: int) -> None:
        current_app.logger.info("Customer receipt printed for receipt %s", receipt_id)


class ManualPaymentGateway(PaymentCollaborator):
    """No provider: captures wait for an operator to confirm them."""

    def initiate_payment(self, method: str, amount_cents: int, reference: str) -> str | None:
        current_app.logger.info("Capture requested: %s %s ref=%s", method, amount_cents, reference)
        return None


class LoggingNotifier(NotificationCollaborator):
    def notify(self, kind: str, payload: dict) -> None:
        current_app.logger.info("Notification %s: %s", kind, payload)


@dataclass
class Collaborators:
    inventory: InventoryCollaborator = field(default_factory=LedgerInventory)
    printer: PrintingCollaborator = field(default_factory=LoggingPrinter)
    payments: PaymentCollaborator = field(default_factory=ManualPaymentGateway)
    notifier: NotificationCollaborator = field(default_factory=LoggingNotifier)


def get_collaborators() -> Collaborators:
    return current_app.extensions["shiftledger.collaborators"]
