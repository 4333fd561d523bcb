# Overview: Flask API routes for auth operations; login, logout, current user.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth
from ..services import auth_service, permission_service, session_service
from ..services import audit_service
from ..time_utils import to_utc_z


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Request body:
    {
        "username": "alice",
        "password": "Password123!"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        username = data.get("username")
        password = data.get("password")

        if not all([username, password]):
            return jsonify({"error": "username and password required"}), 400

        user = auth_service.authenticate(username, password)
        if not user:
            audit_service.record_committed(
                action="auth.login_failed",
                entity_type="user",
                entity_id=None,
                actor_user_id=None,
                after={"username": username, "ip_address": request.remote_addr},
                reason="Invalid credentials",
            )
            return jsonify({"error": "Invalid credentials"}), 401

        session, token = session_service.create_session(
            user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )

        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "expires_at": to_utc_z(session.expires_at),
            "roles": permission_service.get_user_role_names(user.id),
            "permissions": sorted(permission_service.get_user_permissions(user.id)),
        }), 200

    except Exception:
        current_app.logger.exception("Login failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    session_service.revoke_session(g.session_token, reason="User logout")
    return jsonify({"message": "Logged out"}), 200


@auth_bp.get("/me")
@require_auth
def me_route():
    user = g.current_user
    return jsonify({
        "user": user.to_dict(),
        "roles": permission_service.get_user_role_names(user.id),
        "permissions": sorted(permission_service.get_user_permissions(user.id)),
    }), 200
