# Overview: Transactional outbox for notifications (order created, stock low, webhook failed...).

"""
Outbox semantics

- emit() only adds a row to the caller's session. It commits (or rolls
  back) together with the stock change that caused it; nothing is sent.
- drain_outbox() is the separate consumer. It hands each PENDING message to
  a `deliver(topic, payload)` callable and commits the outcome per message.
  A delivery failure is recorded on the message (attempts, last_error) and
  never touches inventory rows.
- After OUTBOX_MAX_ATTEMPTS failures a message becomes FAILED and is no
  longer picked up.
"""

from __future__ import annotations

import json
from typing import Callable

from flask import current_app

from ..extensions import db
from ..models import OutboxMessage
from ..models.outbox import OUTBOX_STATUS_DELIVERED, OUTBOX_STATUS_FAILED, OUTBOX_STATUS_PENDING
from stockledger.time_utils import utcnow


def emit(topic: str, payload: dict) -> OutboxMessage:
    message = OutboxMessage(
        topic=topic,
        payload=json.dumps(payload, sort_keys=True, default=str),
        status=OUTBOX_STATUS_PENDING,
        attempts=0,
    )
    db.session.add(message)
    return message


def log_delivery(topic: str, payload: dict) -> None:
    """Default consumer: write the notification to the application log."""
    current_app.logger.info("Notification %s %s", topic, json.dumps(payload, sort_keys=True))


def drain_outbox(deliver: Callable[[str, dict], None] | None = None, *, limit: int = 100) -> dict:
    """
    Deliver up to `limit` pending messages, oldest first.

    Returns counts: {"delivered": n, "failed": n, "pending": n_still_pending}.
    """
    if deliver is None:
        deliver = log_delivery
    max_attempts = int(current_app.config.get("OUTBOX_MAX_ATTEMPTS", 5))

    messages = (
        db.session.query(OutboxMessage)
        .filter(OutboxMessage.status == OUTBOX_STATUS_PENDING)
        .order_by(OutboxMessage.created_at.asc(), OutboxMessage.id.asc())
        .limit(limit)
        .all()
    )

    delivered = failed = 0
    for message in messages:
        message.attempts = (message.attempts or 0) + 1
        try:
            deliver(message.topic, message.payload_json())
        except Exception as exc:
            message.last_error = str(exc)[:1000]
            if message.attempts >= max_attempts:
                message.status = OUTBOX_STATUS_FAILED
                failed += 1
            current_app.logger.warning(
                "Outbox delivery failed id=%s topic=%s attempt=%s: %s",
                message.id, message.topic, message.attempts, exc,
            )
        else:
            message.status = OUTBOX_STATUS_DELIVERED
            message.delivered_at = utcnow()
            message.last_error = None
            delivered += 1
        db.session.commit()

    pending = db.session.query(OutboxMessage).filter(OutboxMessage.status == OUTBOX_STATUS_PENDING).count()
    return {"delivered": delivered, "failed": failed, "pending": pending}
