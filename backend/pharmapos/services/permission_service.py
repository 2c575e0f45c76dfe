# Overview: Service-layer operations for permission; encapsulates business logic and database work.

"""
Permission Checking and Security Event Logging

WHY: Enforce role-based access control and create audit trail.
Denials are logged for security monitoring.

DESIGN PRINCIPLES:
- Fail closed: Deny by default, require explicit permission grant
- Log denials only: Permission grants are not logged
- One policy: decisions come from permissions.is_allowed, whether the
  caller is a route decorator or a service re-checking at its boundary
"""

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import User, SecurityEvent
from ..permissions import is_allowed, permissions_for_role
from ..errors import AuthorizationError
from pharmapos.time_utils import utcnow


def log_security_event(
    user_id: int | None,
    event_type: str,
    success: bool,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SecurityEvent | None:
    """
    Log security event to audit trail.

    Commits immediately. Callers log denials before any write of their own.

    event_type examples:
    - PERMISSION_DENIED
    - LOGIN_FAILED
    - LOGIN_SUCCESS
    - LOGOUT
    - USER_CREATED
    - USER_DEACTIVATED
    """
    event = SecurityEvent(
        user_id=user_id,
        event_type=event_type,
        resource=resource,
        action=action,
        success=success,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow()
    )

    db.session.add(event)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to write security event %s", event_type)
        return None

    return event


def get_user_permissions(user: User) -> set[str]:
    """Permission codes granted to an active user (empty when inactive)."""
    if not user.is_active:
        return set()
    return set(permissions_for_role(user.role))


def require_permission(
    user: User | None,
    permission_code: str,
    resource: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    """
    Require user to hold a permission. Raises AuthorizationError if not.

    WHY: Used at every workflow boundary (checkout, catalog writes, user
    administration), not only by the route decorators.
    """
    if user is None:
        raise AuthorizationError("Authentication required")

    if not user.is_active:
        reason = "User account is inactive"
    elif not is_allowed(user.role, permission_code):
        reason = f"Role '{user.role}' lacks permission: {permission_code}"
    else:
        return

    log_security_event(
        user_id=user.id,
        event_type="PERMISSION_DENIED",
        success=False,
        resource=resource,
        action=permission_code,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    raise AuthorizationError(
        "Permission denied",
        details={"required_permission": permission_code, "reason": reason},
    )
