from __future__ import annotations

import json

from ..extensions import db
from stockledger.time_utils import to_utc_z


OUTBOX_STATUS_PENDING = "PENDING"
OUTBOX_STATUS_DELIVERED = "DELIVERED"
OUTBOX_STATUS_FAILED = "FAILED"


class OutboxMessage(db.Model):
    """
    Notification waiting for delivery.

    Written in the same transaction as the stock change that caused it and
    delivered later by a separate consumer, so a delivery failure can never
    roll back inventory.
    """
    __tablename__ = "outbox_messages"
    __table_args__ = (
        db.Index("ix_outbox_messages_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    topic = db.Column(db.String(64), nullable=False, index=True)
    payload = db.Column(db.Text, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=OUTBOX_STATUS_PENDING)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def payload_json(self) -> dict:
        return json.loads(self.payload)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "topic": self.topic,
            "payload": self.payload_json(),
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "delivered_at": to_utc_z(self.delivered_at),
        }
