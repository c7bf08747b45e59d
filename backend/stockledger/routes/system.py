# backend/stockledger/routes/system.py
"""
System health endpoint.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..models import OutboxMessage, WebhookEvent
from ..models.integrations import WEBHOOK_STATUS_ERROR, WEBHOOK_STATUS_RECEIVED, WEBHOOK_STATUS_UNMAPPED
from ..models.outbox import OUTBOX_STATUS_FAILED, OUTBOX_STATUS_PENDING
from stockledger.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_backlog_health() -> dict:
    """
    Webhook events waiting for an operator and undelivered notifications.
    A backlog is reported as degraded, never unhealthy.
    """
    try:
        waiting = {
            status: db.session.query(WebhookEvent).filter_by(status=status).count()
            for status in (WEBHOOK_STATUS_RECEIVED, WEBHOOK_STATUS_UNMAPPED, WEBHOOK_STATUS_ERROR)
        }
        outbox_pending = db.session.query(OutboxMessage).filter_by(status=OUTBOX_STATUS_PENDING).count()
        outbox_failed = db.session.query(OutboxMessage).filter_by(status=OUTBOX_STATUS_FAILED).count()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Backlog health check failed")
        return {"status": "unhealthy", "error": "Database error"}

    details = {
        "webhook_events": waiting,
        "outbox_pending": outbox_pending,
        "outbox_failed": outbox_failed,
    }
    degraded = waiting[WEBHOOK_STATUS_ERROR] > 0 or outbox_failed > 0
    return {"status": "degraded" if degraded else "healthy", "details": details}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (operational, with a backlog)
    - 503: database unreachable
    """
    database_health = check_database_health()
    if database_health["status"] == "unhealthy":
        backlog_health = {"status": "unknown"}
    else:
        backlog_health = check_backlog_health()

    statuses = {database_health["status"], backlog_health["status"]}
    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "checks": {
            "database": database_health,
            "backlog": backlog_health,
        },
    }
    return response, http_status
