# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

# backend/pharmapos/routes/admin.py
"""
Admin routes for staff account management.

Provides endpoints for:
- User management (list, get, create, update, deactivate, delete)
- The role -> permission table (read-only)

All endpoints require authentication and MANAGE_USERS (super_admin).
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import auth_service, permission_service
from ..decorators import require_auth, require_permission
from ..errors import PosError
from ..models.auth import ROLES
from ..permissions import DEFAULT_ROLE_PERMISSIONS, get_permission_definition

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _audit(event_type: str, action: str, reason: str | None = None) -> None:
    permission_service.log_security_event(
        user_id=g.current_user.id,
        event_type=event_type,
        success=True,
        resource=request.path,
        action=action,
        reason=reason,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )


# =============================================================================
# USER MANAGEMENT
# =============================================================================

@admin_bp.get("/users")
@require_auth
@require_permission("MANAGE_USERS")
def list_users():
    """
    List staff accounts.

    Query params:
    - include_inactive: bool (default true) - include deactivated users
    - role: str - filter by role
    """
    include_inactive = request.args.get("include_inactive", "true").lower() == "true"
    role = request.args.get("role") or None

    try:
        users = auth_service.list_users(include_inactive=include_inactive, role=role)
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status

    return jsonify({"users": [u.to_dict() for u in users], "count": len(users)})


@admin_bp.get("/users/<int:user_id>")
@require_auth
@require_permission("MANAGE_USERS")
def get_user(user_id: int):
    """Get a specific user by ID, with effective permissions."""
    try:
        user = auth_service.get_user(user_id)
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status

    user_dict = user.to_dict()
    user_dict["permissions"] = sorted(permission_service.get_user_permissions(user))
    return jsonify({"user": user_dict})


@admin_bp.post("/users")
@require_auth
@require_permission("MANAGE_USERS")
def create_user():
    """
    Create a new staff account.

    Request body:
    - email: str (required)
    - full_name: str (required)
    - password: str (required)
    - role: str (optional, default cashier)
    - phone: str (optional)
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        full_name = data.get("full_name")
        password = data.get("password")

        if not all([email, full_name, password]):
            return jsonify({"error": "email, full_name, and password required"}), 400

        user = auth_service.create_user(
            email=email,
            full_name=full_name,
            password=password,
            role=data.get("role") or "cashier",
            phone=data.get("phone") or "",
            actor=g.current_user,
        )

        _audit("USER_CREATED", f"Created user: {user.email} ({user.role})")

        return jsonify({"user": user.to_dict(), "message": "User created successfully"}), 201

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create user")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.patch("/users/<int:user_id>")
@require_auth
@require_permission("MANAGE_USERS")
def update_user(user_id: int):
    """
    Update user details.

    Request body (all optional):
    - email, full_name, phone, role, is_active, password
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data:
            return jsonify({"error": "Request body must be a non-empty JSON object"}), 400

        user = auth_service.update_user(user_id, data, actor=g.current_user)

        _audit("USER_UPDATED", f"Updated user: {user.email}", reason=", ".join(sorted(data)))

        return jsonify({"user": user.to_dict(), "message": "User updated successfully"})

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update user")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/users/<int:user_id>/deactivate")
@require_auth
@require_permission("MANAGE_USERS")
def deactivate_user(user_id: int):
    """
    Deactivate a user account.

    This will:
    1. Set is_active=False
    2. Revoke all active sessions for the user (and drop their carts)

    The user will be immediately logged out and unable to log back in.
    """
    try:
        user = auth_service.deactivate_user(user_id, actor=g.current_user)
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status

    _audit("USER_DEACTIVATED", f"Deactivated user: {user.email}")

    return jsonify({"user": user.to_dict(), "message": "User deactivated successfully"})


@admin_bp.post("/users/<int:user_id>/reactivate")
@require_auth
@require_permission("MANAGE_USERS")
def reactivate_user(user_id: int):
    try:
        user = auth_service.update_user(user_id, {"is_active": True}, actor=g.current_user)
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status

    _audit("USER_REACTIVATED", f"Reactivated user: {user.email}")

    return jsonify({"user": user.to_dict(), "message": "User reactivated successfully"})


@admin_bp.delete("/users/<int:user_id>")
@require_auth
@require_permission("MANAGE_USERS")
def delete_user(user_id: int):
    """Delete an account with no sales or audit history."""
    try:
        auth_service.delete_user(user_id, actor=g.current_user)
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status

    return jsonify({"message": "User deleted successfully"})


# =============================================================================
# ROLES
# =============================================================================

@admin_bp.get("/roles")
@require_auth
@require_permission("MANAGE_USERS")
def list_roles():
    """The fixed role -> permission table."""
    roles = []
    for role in ROLES:
        roles.append({
            "name": role,
            "permissions": [get_permission_definition(code) for code in DEFAULT_ROLE_PERMISSIONS[role]],
        })
    return jsonify({"roles": roles})
