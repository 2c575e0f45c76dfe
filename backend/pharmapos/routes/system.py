# backend/pharmapos/routes/system.py
"""
System health and version endpoints.

/health probes the catalog tables and the session store; /version reports
build and pricing configuration for deployment debugging.
"""

import sys
import time
from flask import Blueprint, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db, carts
from ..models import Product, User, SessionToken
from pharmapos.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def _timed_check(label: str, probe) -> dict:
    """Run probe() and wrap its details with status and latency."""
    started = time.perf_counter()
    try:
        details = probe()
        status = {"status": "healthy", "details": details}
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("%s health check failed", label)
        status = {"status": "unhealthy", "error": f"{label} error"}
    status["latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
    return status


def _database_probe() -> dict:
    return {
        "products": db.session.query(Product).count(),
        "out_of_stock": db.session.query(Product).filter(Product.stock_level <= 0).count(),
        "users": db.session.query(User).count(),
    }


def _session_probe() -> dict:
    live = db.session.query(SessionToken).filter(SessionToken.is_revoked.is_(False))
    return {
        "active_sessions": live.count(),
        "expired_pending_cleanup": live.filter(SessionToken.expires_at < utcnow()).count(),
        "open_carts": len(carts),
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: All systems healthy
    - 503: One or more systems unhealthy
    """
    started = time.perf_counter()
    checks = {
        "database": _timed_check("Database", _database_probe),
        "session_service": _timed_check("Session service", _session_probe),
    }
    unhealthy = any(c["status"] == "unhealthy" for c in checks.values())

    response = {
        "status": "unhealthy" if unhealthy else "healthy",
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.perf_counter() - started) * 1000, 2),
        "checks": checks,
    }
    return response, (503 if unhealthy else 200)


@system_bp.get("/version")
def version():
    """
    Version endpoint for deployment debugging.

    Does NOT expose secret keys, database credentials or internal paths.
    """
    env = "production" if not current_app.debug else "development"

    return {
        "api_version": current_app.config.get("VERSION", "1.0.0"),
        "environment": env,
        "python_version": sys.version.split()[0],
        "currency": current_app.config.get("CURRENCY"),
        "tax_rate": str(current_app.config.get("TAX_RATE")),
        "server_time": to_utc_z(utcnow()),
    }
