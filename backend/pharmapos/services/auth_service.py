# Overview: Service-layer operations for auth; encapsulates business logic and database work.

"""
Authentication and staff account service.

WHY: Every sale must be attributable. Uses bcrypt for secure password
hashing and validates password strength.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from Config.BCRYPT_ROUNDS, 12 by default)
- Minimum 8 characters required
- Must contain uppercase, lowercase, digit, and special char
- Session tokens managed separately (see session_service.py)
- Inactive users cannot authenticate
"""

import bcrypt
import re
from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import User, Sale, SecurityEvent
from ..models.auth import ROLES
from ..errors import ConflictError, NotFoundError, PosError, ValidationError
from .permission_service import require_permission
from pharmapos.time_utils import utcnow


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""
    pass


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

USER_MUTABLE_FIELDS = {"full_name", "phone", "role", "is_active", "email"}


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character (!@#$%^&*(),.'":{}|<>)

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    WHY timing-safe: bcrypt.checkpw() prevents timing attacks automatically.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed hash in the database
        return False


def _normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationError("A valid email is required")
    return email


def _require_manage_users(actor: User | None, resource: str) -> None:
    if actor is not None:
        require_permission(actor, "MANAGE_USERS", resource=resource)


def _validate_role(role: str) -> str:
    if role not in ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ROLES)}")
    return role


def create_user(
    email: str,
    full_name: str,
    password: str,
    role: str = "cashier",
    phone: str = "",
    is_active: bool = True,
    actor: User | None = None,
) -> User:
    """
    Create new staff account with bcrypt password hashing.

    Raises:
        ValidationError: bad email, blank name or unknown role
        PasswordValidationError: password doesn't meet requirements
        ConflictError: email already in use
    """
    _require_manage_users(actor, "users")

    email = _normalize_email(email)
    full_name = (full_name or "").strip()
    if not full_name:
        raise ValidationError("full_name is required")
    _validate_role(role)

    existing = db.session.query(User).filter_by(email=email).first()
    if existing:
        raise ConflictError("Email already in use")

    # Hash password with bcrypt (validates strength automatically)
    password_hash = hash_password(password)

    user = User(
        email=email,
        full_name=full_name,
        phone=(phone or "").strip(),
        role=role,
        is_active=is_active,
        password_hash=password_hash,
    )

    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Email already in use")
    return user


def get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def list_users(include_inactive: bool = True, role: str | None = None) -> list[User]:
    query = db.session.query(User)
    if not include_inactive:
        query = query.filter(User.is_active.is_(True))
    if role:
        query = query.filter(User.role == _validate_role(role))
    return query.order_by(User.full_name.asc(), User.id.asc()).all()


def update_user(user_id: int, patch: dict, *, actor: User | None = None) -> User:
    """
    Apply an admin edit (name, phone, role, active flag, email).

    Admins cannot demote or deactivate themselves; that would leave the
    pharmacy without anyone able to manage accounts.
    Deactivation revokes all of the user's sessions.
    """
    from . import session_service

    _require_manage_users(actor, f"users/{user_id}")
    user = get_user(user_id)
    acting_user_id = actor.id if actor is not None else None

    unknown = set(patch) - USER_MUTABLE_FIELDS - {"password"}
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(sorted(unknown))}")

    if acting_user_id == user.id:
        if "role" in patch and patch["role"] != user.role:
            raise ValidationError("You cannot change your own role")
        if patch.get("is_active") is False:
            raise ValidationError("You cannot deactivate your own account")

    try:
        deactivated = _apply_user_patch(user, patch)
    except PosError:
        db.session.rollback()
        raise

    db.session.commit()

    if deactivated or "password" in patch:
        session_service.revoke_all_user_sessions(user.id, reason="Account updated by administrator")

    return user


def _apply_user_patch(user: User, patch: dict) -> bool:
    """Mutates `user` in place; returns True when the account was deactivated."""
    if "email" in patch:
        email = _normalize_email(patch["email"])
        clash = db.session.query(User).filter(User.email == email, User.id != user.id).first()
        if clash:
            raise ConflictError("Email already in use")
        user.email = email
    if "full_name" in patch:
        full_name = str(patch["full_name"] or "").strip()
        if not full_name:
            raise ValidationError("full_name cannot be blank")
        user.full_name = full_name
    if "phone" in patch:
        user.phone = str(patch["phone"] or "").strip()
    if "role" in patch:
        user.role = _validate_role(patch["role"])
    if "password" in patch:
        user.password_hash = hash_password(patch["password"])

    deactivated = False
    if "is_active" in patch:
        if not isinstance(patch["is_active"], bool):
            raise ValidationError("is_active must be a boolean")
        deactivated = user.is_active and not patch["is_active"]
        user.is_active = patch["is_active"]
    return deactivated


def deactivate_user(user_id: int, *, actor: User | None = None) -> User:
    """Deactivate an account and revoke its sessions."""
    user = get_user(user_id)
    if not user.is_active:
        raise ValidationError("User is already deactivated")
    return update_user(user_id, {"is_active": False}, actor=actor)


def delete_user(user_id: int, *, actor: User | None = None) -> None:
    """
    Delete a staff account that never recorded a sale.

    Accounts with sales or audit history stay for attribution;
    deactivate those instead.
    """
    from . import session_service

    _require_manage_users(actor, f"users/{user_id}")
    user = get_user(user_id)
    if actor is not None and actor.id == user.id:
        raise ValidationError("You cannot delete your own account")

    has_sales = db.session.query(Sale.id).filter_by(staff_id=user.id).first() is not None
    if has_sales:
        raise ConflictError("User has recorded sales; deactivate the account instead")
    has_audit = db.session.query(SecurityEvent.id).filter_by(user_id=user.id).first() is not None
    if has_audit:
        raise ConflictError("User has audit history; deactivate the account instead")

    session_service.revoke_all_user_sessions(user.id, reason="Account deleted")
    for token in list(user.session_tokens):
        db.session.delete(token)
    db.session.delete(user)
    db.session.commit()


def authenticate(email: str, password: str) -> User | None:
    """
    Authenticate user with email and password.

    Returns User if credentials valid, None otherwise.
    Updates last_login_at timestamp on successful authentication.

    WHY: Central authentication function. All login flows go through here.
    Uses timing-safe comparison via bcrypt.
    """
    email = (email or "").strip().lower()
    user = db.session.query(User).filter(
        User.email == email,
        User.is_active.is_(True),
    ).first()

    if not user:
        return None

    # Verify password
    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None
