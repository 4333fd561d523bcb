# Overview: Flask API routes for work periods (shifts); open, close, current, payouts.

"""
Work Period API Routes

SECURITY:
- OPEN_WORK_PERIOD / CLOSE_WORK_PERIOD for the shift lifecycle (manager, admin)
- RECORD_CASH_PAYOUT for drawer payouts
- CREATE_RECEIPT is enough to read the current period
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_permission
from ..errors import LedgerError
from ..services import work_period_service
from .common import error_response, json_body, require_fields


work_periods_bp = Blueprint("work_periods", __name__, url_prefix="/api/work-periods")


@work_periods_bp.post("/open")
@require_auth
@require_permission("OPEN_WORK_PERIOD")
def open_period_route():
    """
    Open a work period.

    Request body:
    {
        "opening_float_cents": 10000,
        "register_group": "MAIN",  (optional)
        "notes": "..."  (optional)
    }
    """
    try:
        data = json_body()
        require_fields(data, "opening_float_cents")
        period = work_period_service.open_period(
            opening_float_cents=data["opening_float_cents"],
            user_id=g.current_user.id,
            register_group=data.get("register_group"),
            notes=data.get("notes"),
        )
        return jsonify({"work_period": period.to_dict()}), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to open work period")
        return jsonify({"error": "Internal server error"}), 500


@work_periods_bp.post("/close")
@require_auth
@require_permission("CLOSE_WORK_PERIOD")
def close_period_route():
    """
    Close the open work period and generate the Z report.

    Request body:
    {
        "closing_cash_cents": 25400,
        "register_group": "MAIN",  (optional)
        "work_period_id": 3,  (optional, instead of register_group)
        "notes": "..."  (optional)
    }
    """
    try:
        data = json_body()
        require_fields(data, "closing_cash_cents")
        period = work_period_service.close_period(
            closing_cash_cents=data["closing_cash_cents"],
            user_id=g.current_user.id,
            register_group=data.get("register_group"),
            notes=data.get("notes"),
            period_id=data.get("work_period_id"),
        )
        return jsonify({"work_period": period.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to close work period")
        return jsonify({"error": "Internal server error"}), 500


@work_periods_bp.get("/current")
@require_auth
@require_permission("CREATE_RECEIPT")
def current_period_route():
    register_group = request.args.get("register_group")
    period = work_period_service.get_current_period(register_group)
    if not period:
        return jsonify({"is_open": False, "work_period": None}), 200
    return jsonify({"is_open": True, "work_period": period.to_dict()}), 200


@work_periods_bp.get("")
@require_auth
@require_permission("VIEW_REPORTS")
def list_periods_route():
    periods = work_period_service.list_periods(
        register_group=request.args.get("register_group"),
        status=request.args.get("status"),
        limit=request.args.get("limit", 20, type=int),
    )
    return jsonify({"work_periods": [p.to_dict() for p in periods]}), 200


@work_periods_bp.get("/<int:period_id>")
@require_auth
@require_permission("VIEW_REPORTS")
def get_period_route(period_id: int):
    try:
        period = work_period_service.get_period(period_id)
        unsettled = work_period_service.get_unsettled_receipts(period_id)
        return jsonify({
            "work_period": period.to_dict(),
            "unsettled_receipts": [r.to_dict() for r in unsettled],
            "cash_payouts": [p.to_dict() for p in work_period_service.list_cash_payouts(period_id)],
        }), 200
    except LedgerError as e:
        return error_response(e)


@work_periods_bp.post("/payouts")
@require_auth
@require_permission("RECORD_CASH_PAYOUT")
def record_payout_route():
    """
    Record a cash payout from the drawer.

    Request body:
    {
        "amount_cents": 1500,
        "reason": "Ice delivery",
        "register_group": "MAIN"  (optional)
    }
    """
    try:
        data = json_body()
        require_fields(data, "amount_cents", "reason")
        payout = work_period_service.record_cash_payout(
            amount_cents=data["amount_cents"],
            reason=data["reason"],
            user_id=g.current_user.id,
            register_group=data.get("register_group"),
        )
        return jsonify({"cash_payout": payout.to_dict()}), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record cash payout")
        return jsonify({"error": "Internal server error"}), 500
