# backend/biggbuzz/routes/system.py
"""
System health endpoint.

Reports database connectivity and the configured SMS provider for
deployment debugging.
"""

import time
from flask import Blueprint, current_app, jsonify
from ..extensions import db
from ..models import Subscriber, PendingRegistration, OtpEntry
from biggbuzz.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        subscriber_count = db.session.query(Subscriber).count()
        pending_count = db.session.query(PendingRegistration).count()
        live_otp_count = db.session.query(OtpEntry).filter(OtpEntry.expires_at > utcnow()).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "subscribers": subscriber_count,
                "pending_registrations": pending_count,
                "live_otp_entries": live_otp_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    return jsonify({
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "checks": {
            "database": database,
            "sms": {"provider": current_app.config.get("SMS_PROVIDER", "console")},
        },
    }), 200 if healthy else 503
