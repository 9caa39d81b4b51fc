# backend/cinepos/routes/system.py
"""
System health endpoint.

Checks database connectivity and reports latency for deployment debugging.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Theater, CartReservation
from cinepos.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """
    Check database connectivity with cheap counts.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        theater_count = db.session.query(Theater).count()
        active_reservations = db.session.query(CartReservation).filter_by(status="ACTIVE").count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "theaters": theater_count,
                "active_reservations": active_reservations,
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    body = {
        "status": "ok" if healthy else "degraded",
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database},
    }
    return body, 200 if healthy else 503
