# Overview: Service-layer operations for maintenance; retention cleanup of audit and session rows.

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SecurityEvent
from . import session_service
from pharmapos.time_utils import utcnow


def cleanup_security_events(*, retention_days: int = 90) -> int:
    """
    Delete security events older than retention_days.

    Sales are never touched; they are the permanent record.
    """
    if retention_days < 1:
        raise ValueError("retention_days must be >= 1")
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SecurityEvent).filter(
        SecurityEvent.occurred_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    current_app.logger.info("Deleted %d security events older than %s", deleted, cutoff)
    return deleted


def cleanup_sessions(*, older_than_days: int = 30) -> int:
    """Delete expired or revoked session tokens older than older_than_days."""
    if older_than_days < 1:
        raise ValueError("older_than_days must be >= 1")
    deleted = session_service.cleanup_expired_sessions(older_than_days=older_than_days)
    current_app.logger.info("Deleted %d stale session tokens", deleted)
    return deleted
