# Overview: Flask API routes for X/Z reports, tender and void summaries.

"""
Report API Routes

SECURITY:
- VIEW_REPORTS for X reports, Z report reads and summaries
- CLOSE_WORK_PERIOD for generating a Z report (checked again in the service)
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_permission
from ..errors import LedgerError
from ..services import receipt_service, report_service, settlement_service, work_period_service
from .common import error_response


reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


def _register_group() -> str:
    return request.args.get("register_group") or current_app.config["DEFAULT_REGISTER_GROUP"]


@reports_bp.get("/x/<int:period_id>")
@require_auth
@require_permission("VIEW_REPORTS")
def x_report_route(period_id: int):
    try:
        return jsonify(report_service.x_report(period_id)), 200
    except LedgerError as e:
        return error_response(e)


@reports_bp.get("/x")
@require_auth
@require_permission("VIEW_REPORTS")
def current_x_report_route():
    """X report for the current open period of a register group."""
    try:
        period = work_period_service.require_current_period(request.args.get("register_group"))
        return jsonify(report_service.x_report(period.id)), 200
    except LedgerError as e:
        return error_response(e)


@reports_bp.get("/z/<int:period_id>")
@require_auth
@require_permission("VIEW_REPORTS")
def get_z_report_route(period_id: int):
    try:
        report = report_service.get_z_report(period_id)
        return jsonify({"z_report": report.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)


@reports_bp.post("/z/<int:period_id>")
@require_auth
@require_permission("CLOSE_WORK_PERIOD")
def generate_z_report_route(period_id: int):
    try:
        report = report_service.generate_z_report(period_id, g.current_user.id)
        return jsonify({"z_report": report.to_dict()}), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to generate Z report")
        return jsonify({"error": "Internal server error"}), 500


@reports_bp.get("/z")
@require_auth
@require_permission("VIEW_REPORTS")
def list_z_reports_route():
    reports = report_service.list_z_reports(_register_group())
    return jsonify({"z_reports": [r.to_dict() for r in reports]}), 200


@reports_bp.get("/z/<int:report_id>/verify")
@require_auth
@require_permission("VIEW_REPORTS")
def verify_z_report_route(report_id: int):
    try:
        return jsonify(report_service.verify_z_report(report_id)), 200
    except LedgerError as e:
        return error_response(e)


@reports_bp.get("/z/gaps")
@require_auth
@require_permission("VIEW_REPORTS")
def z_report_gaps_route():
    group = _register_group()
    gaps = report_service.find_report_number_gaps(group)
    return jsonify({"register_group": group, "missing_report_numbers": gaps}), 200


@reports_bp.get("/tenders/<int:period_id>")
@require_auth
@require_permission("VIEW_REPORTS")
def tender_summary_route(period_id: int):
    try:
        work_period_service.get_period(period_id)
        return jsonify({
            "work_period_id": period_id,
            "tenders": settlement_service.get_tender_summary(period_id),
        }), 200
    except LedgerError as e:
        return error_response(e)


@reports_bp.get("/voids/<int:period_id>")
@require_auth
@require_permission("VIEW_REPORTS")
def voids_route(period_id: int):
    try:
        work_period_service.get_period(period_id)
        return jsonify(receipt_service.total_voided(period_id)), 200
    except LedgerError as e:
        return error_response(e)
