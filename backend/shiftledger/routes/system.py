# Overview: Flask API routes for health and the side-effect dispatch queue.

from flask import Blueprint, request, jsonify
from sqlalchemy import text

from ..decorators import require_auth, require_permission
from ..errors import LedgerError
from ..extensions import db
from ..services import dispatch_service
from .common import error_response


system_bp = Blueprint("system", __name__, url_prefix="/api")


@system_bp.get("/health")
def health():
    db.session.execute(text("SELECT 1"))
    return jsonify({"status": "ok"}), 200


@system_bp.get("/dispatch/jobs")
@require_auth
@require_permission("SYSTEM_ADMIN")
def list_jobs_route():
    jobs = dispatch_service.list_jobs(
        status=request.args.get("status"),
        receipt_id=request.args.get("receipt_id", type=int),
        limit=request.args.get("limit", 100, type=int),
    )
    return jsonify({"jobs": [j.to_dict() for j in jobs]}), 200


@system_bp.post("/dispatch/run")
@require_auth
@require_permission("SYSTEM_ADMIN")
def run_jobs_route():
    """Drain due jobs now (useful when the background worker is disabled)."""
    summary = dispatch_service.process_due_jobs(limit=request.args.get("limit", 50, type=int))
    return jsonify(summary), 200


@system_bp.post("/dispatch/jobs/<int:job_id>/requeue")
@require_auth
@require_permission("SYSTEM_ADMIN")
def requeue_job_route(job_id: int):
    try:
        job = dispatch_service.requeue_job(job_id)
        return jsonify({"job": job.to_dict()}), 200
    except LedgerError as e:
        return error_response(e)
