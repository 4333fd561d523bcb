# Overview: Flask API route for reading the append-only audit log.

from flask import Blueprint, request, jsonify

from ..decorators import require_auth, require_permission
from ..services import audit_service


audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit")


@audit_bp.get("")
@require_auth
@require_permission("VIEW_AUDIT_LOG")
def list_audit_entries_route():
    """
    List audit entries, oldest first.

    Query params: entity_type, entity_id, work_period_id, action, actor_user_id, limit, offset
    """
    entries = audit_service.list_entries(
        entity_type=request.args.get("entity_type"),
        entity_id=request.args.get("entity_id", type=int),
        work_period_id=request.args.get("work_period_id", type=int),
        action=request.args.get("action"),
        actor_user_id=request.args.get("actor_user_id", type=int),
        limit=request.args.get("limit", 100, type=int),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"entries": [e.to_dict() for e in entries]}), 200
