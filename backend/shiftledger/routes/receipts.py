# Overview: Flask API routes for orders and receipts; items, settle, void, split, merge, overrides.

"""
Receipt API Routes

SECURITY:
- CREATE_RECEIPT: open orders/receipts, print bills
- MODIFY_RECEIPT: add/void items, split, merge (owner or override grant)
- SETTLE_RECEIPT: payments, captures
- VOID_RECEIPT: void (the authenticated user is the authorizer)
- Ownership is enforced by the ledger itself, not by these routes
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_permission
from ..errors import LedgerError
from ..services import ownership_service, receipt_service, settlement_service
from .common import error_response, json_body, require_fields


receipts_bp = Blueprint("receipts", __name__, url_prefix="/api")


# =============================================================================
# ORDERS AND RECEIPTS
# =============================================================================

@receipts_bp.post("/orders")
@require_auth
@require_permission("CREATE_RECEIPT")
def create_order_route():
    """
    Open an order in the current work period.

    Request body:
    {
        "items": [{"product_id": 1, "quantity": 2}, ...],  (optional)
        "table_number": "T4",  (optional)
        "register_group": "MAIN"  (optional)
    }
    """
    try:
        data = json_body()
        order = receipt_service.create_order(
            owner_user_id=g.current_user.id,
            items=data.get("items"),
            register_group=data.get("register_group"),
            table_number=data.get("table_number"),
        )
        return jsonify({"order": order.to_dict()}), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@receipts_bp.post("/receipts")
@require_auth
@require_permission("CREATE_RECEIPT")
def create_receipt_route():
    """
    Create the receipt for an order (the caller becomes the owner).

    Request body: {"order_id": 12}
    """
    try:
        data = json_body()
        require_fields(data, "order_id")
        receipt = receipt_service.create_receipt(data["order_id"], g.current_user.id)
        return jsonify({"receipt": receipt_service.receipt_detail(receipt)}), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create receipt")
        return jsonify({"error": "Internal server error"}), 500


@receipts_bp.get("/receipts")
@require_auth
@require_permission("CREATE_RECEIPT")
def list_receipts_route():
    work_period_id = request.args.get("work_period_id", type=int)
    if not work_period_id:
        return jsonify({"error": "work_period_id required"}), 400
    states = request.args.get("states")
    receipts = receipt_service.list_receipts(work_period_id, states.split(",") if states else None)
    return jsonify({"receipts": [r.to_dict() for r in receipts]}), 200


@receipts_bp.get("/receipts/<int:receipt_id>")
@require_auth
@require_permission("CREATE_RECEIPT")
def get_receipt_route(receipt_id: int):
    try:
        receipt = receipt_service.get_receipt(receipt_id)
        return jsonify({"receipt": receipt_service.receipt_detail(receipt)}), 200
    except LedgerError as e:
        return error_response(e)


# =============================================================================
# ITEMS
# =============================================================================

@receipts_bp.post("/receipts/<int:receipt_id>/items")
@require_auth
@require_permission("MODIFY_RECEIPT")
def add_items_route(receipt_id: int):
    """
    Add a batch of items. Only the new items are returned and sent to the kitchen.

    Request body:
    {
        "items": [{"product_id": 3, "quantity": 1}],
        "override_token": "..."  (when not the owner)
    }
    """
    try:
        data = json_body()
        require_fields(data, "items")
        items = receipt_service.add_items(
            receipt_id,
            data["items"],
            g.current_user.id,
            override_token=data.get("override_token"),
        )
        receipt = receipt_service.get_receipt(receipt_id)
        return jsonify({
            "items": [i.to_dict() for i in items],
            "receipt": receipt.to_dict(),
        }), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add items")
        return jsonify({"error": "Internal server error"}), 500


@receipts_bp.post("/receipts/<int:receipt_id>/items/<int:item_id>/void")
@require_auth
@require_permission("MODIFY_RECEIPT")
def void_item_route(receipt_id: int, item_id: int):
    try:
        data = json_body()
        require_fields(data, "reason")
        item = receipt_service.void_item(
            receipt_id,
            item_id,
            data["reason"],
            g.current_user.id,
            override_token=data.get("override_token"),
        )
        return jsonify({
            "item": item.to_dict(),
            "receipt": receipt_service.get_receipt(receipt_id).to_dict(),
        }), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to void item")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SETTLEMENT
# =============================================================================

@receipts_bp.post("/receipts/<int:receipt_id>/settle")
@require_auth
@require_permission("SETTLE_RECEIPT")
def settle_route(receipt_id: int):
    """
    Settle with one or more tenders.

    Request body:
    {
        "payments": [
            {"method": "CASH", "amount_cents": 2000, "idempotency_key": "k1"},
            {"method": "MPESA", "amount_cents": 2640, "idempotency_key": "k2", "reference": "QX12"}
        ]
    }
    """
    try:
        data = json_body()
        require_fields(data, "payments")
        result = settlement_service.settle_receipt(
            receipt_id,
            data["payments"],
            g.current_user.id,
            override_token=data.get("override_token"),
        )
        return jsonify(result.to_dict()), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to settle receipt")
        return jsonify({"error": "Internal server error"}), 500


@receipts_bp.post("/receipts/<int:receipt_id>/payments")
@require_auth
@require_permission("SETTLE_RECEIPT")
def apply_payment_route(receipt_id: int):
    """Apply a single tender (split tender)."""
    try:
        data = json_body()
        require_fields(data, "method", "amount_cents", "idempotency_key")
        result = settlement_service.apply_payment(
            receipt_id,
            method=data["method"],
            amount_cents=data["amount_cents"],
            idempotency_key=data["idempotency_key"],
            acting_user_id=g.current_user.id,
            reference=data.get("reference"),
            override_token=data.get("override_token"),
        )
        return jsonify(result.to_dict()), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to apply payment")
        return jsonify({"error": "Internal server error"}), 500


@receipts_bp.get("/receipts/<int:receipt_id>/payments")
@require_auth
@require_permission("CREATE_RECEIPT")
def payment_summary_route(receipt_id: int):
    try:
        return jsonify(settlement_service.get_payment_summary(receipt_id)), 200
    except LedgerError as e:
        return error_response(e)


@receipts_bp.post("/receipts/<int:receipt_id>/captures")
@require_auth
@require_permission("SETTLE_RECEIPT")
def initiate_capture_route(receipt_id: int):
    try:
        data = json_body()
        require_fields(data, "method", "amount_cents", "idempotency_key")
        payment = settlement_service.initiate_capture(
            receipt_id,
            method=data["method"],
            amount_cents=data["amount_cents"],
            idempotency_key=data["idempotency_key"],
            acting_user_id=g.current_user.id,
            reference=data.get("reference"),
            override_token=data.get("override_token"),
        )
        return jsonify({"payment": payment.to_dict()}), 202
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to initiate capture")
        return jsonify({"error": "Internal server error"}), 500


@receipts_bp.post("/payments/<int:payment_id>/confirm")
@require_auth
@require_permission("SETTLE_RECEIPT")
def confirm_capture_route(payment_id: int):
    try:
        data = json_body()
        result = settlement_service.on_payment_confirmed(
            payment_id,
            provider_reference=data.get("provider_reference"),
            acting_user_id=g.current_user.id,
        )
        return jsonify(result.to_dict()), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to confirm capture")
        return jsonify({"error": "Internal server error"}), 500


@receipts_bp.post("/payments/<int:payment_id>/fail")
@require_auth
@require_permission("SETTLE_RECEIPT")
def fail_capture_route(payment_id: int):
    try:
        data = json_body()
        payment = settlement_service.on_payment_failed(payment_id, data.get("reason"))
        return jsonify({"payment": payment.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)


@receipts_bp.post("/payments/<int:payment_id>/cancel")
@require_auth
@require_permission("SETTLE_RECEIPT")
def cancel_capture_route(payment_id: int):
    try:
        payment = settlement_service.cancel_capture(payment_id, g.current_user.id)
        return jsonify({"payment": payment.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)


@receipts_bp.post("/receipts/<int:receipt_id>/print")
@require_auth
@require_permission("CREATE_RECEIPT")
def print_bill_route(receipt_id: int):
    try:
        receipt = receipt_service.print_bill(receipt_id, g.current_user.id)
        return jsonify({"receipt": receipt.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to print bill")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# VOID, SPLIT, MERGE
# =============================================================================

@receipts_bp.post("/receipts/<int:receipt_id>/void")
@require_auth
@require_permission("VOID_RECEIPT")
def void_receipt_route(receipt_id: int):
    """
    Void a receipt. The authenticated user is the authorizer.

    Request body:
    {
        "reason": "Customer walked out",
        "requested_by_user_id": 7  (optional, the server who asked)
    }
    """
    try:
        data = json_body()
        require_fields(data, "reason")
        receipt = receipt_service.void_receipt(
            receipt_id,
            reason=data["reason"],
            authorized_user_id=g.current_user.id,
            requested_by_user_id=data.get("requested_by_user_id"),
        )
        return jsonify({"receipt": receipt.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to void receipt")
        return jsonify({"error": "Internal server error"}), 500


@receipts_bp.post("/receipts/<int:receipt_id>/split")
@require_auth
@require_permission("MODIFY_RECEIPT")
def split_receipt_route(receipt_id: int):
    """
    Split a receipt.

    Request body:
    {
        "allocations": {"mode": "equal", "parts": 3},
        "override_token": "..."  (optional)
    }
    """
    try:
        data = json_body()
        require_fields(data, "allocations")
        children = receipt_service.split_receipt(
            receipt_id,
            data["allocations"],
            g.current_user.id,
            override_token=data.get("override_token"),
        )
        return jsonify({"receipts": [c.to_dict() for c in children]}), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to split receipt")
        return jsonify({"error": "Internal server error"}), 500


@receipts_bp.post("/receipts/merge")
@require_auth
@require_permission("MODIFY_RECEIPT")
def merge_receipts_route():
    """
    Merge receipts.

    Request body:
    {
        "receipt_ids": [4, 9],
        "override_tokens": {"9": "..."}  (optional)
    }
    """
    try:
        data = json_body()
        require_fields(data, "receipt_ids")
        merged = receipt_service.merge_receipts(
            data["receipt_ids"],
            g.current_user.id,
            override_tokens=data.get("override_tokens"),
        )
        return jsonify({"receipt": receipt_service.receipt_detail(merged)}), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to merge receipts")
        return jsonify({"error": "Internal server error"}), 500


@receipts_bp.post("/receipts/<int:receipt_id>/overrides")
@require_auth
@require_permission("CREATE_RECEIPT")
def request_override_route(receipt_id: int):
    """
    Ask a supervisor to authorize one action on a receipt you do not own.

    Request body:
    {
        "action": "ADD_ITEMS",
        "authorizer_username": "sam",
        "authorizer_pin": "4321"
    }
    """
    try:
        data = json_body()
        require_fields(data, "action", "authorizer_username", "authorizer_pin")
        grant, token = ownership_service.request_override(
            receipt_id,
            requesting_user_id=g.current_user.id,
            authorizer_username=data["authorizer_username"],
            authorizer_pin=str(data["authorizer_pin"]),
            action=data["action"],
        )
        return jsonify({"grant": grant.to_dict(), "override_token": token}), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to request override")
        return jsonify({"error": "Internal server error"}), 500
