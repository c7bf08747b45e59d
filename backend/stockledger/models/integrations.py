from __future__ import annotations

import json

from ..extensions import db
from stockledger.time_utils import to_utc_z


WEBHOOK_STATUS_RECEIVED = "RECEIVED"
WEBHOOK_STATUS_UNMAPPED = "UNMAPPED"
WEBHOOK_STATUS_ERROR = "ERROR"
WEBHOOK_STATUS_IGNORED = "IGNORED"
WEBHOOK_STATUS_PROCESSED = "PROCESSED"

WEBHOOK_TERMINAL_STATUSES = (WEBHOOK_STATUS_PROCESSED, WEBHOOK_STATUS_IGNORED)
WEBHOOK_RETRYABLE_STATUSES = (WEBHOOK_STATUS_RECEIVED, WEBHOOK_STATUS_UNMAPPED, WEBHOOK_STATUS_ERROR)


class ChannelSkuMap(db.Model):
    """
    External marketplace SKU -> internal variant.

    One external SKU maps to exactly one variant per channel; a variant may
    have many external SKUs (bundles listed twice, relisted items).
    """
    __tablename__ = "channel_sku_maps"
    __table_args__ = (
        db.UniqueConstraint("channel", "external_sku_id", name="uq_channel_sku_maps_channel_sku"),
        db.Index("ix_channel_sku_maps_variant", "variant_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel = db.Column(db.String(32), nullable=False)
    external_sku_id = db.Column(db.String(128), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    variant = db.relationship("ProductVariant")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel": self.channel,
            "external_sku_id": self.external_sku_id,
            "variant_id": self.variant_id,
            "sku": self.variant.sku if self.variant is not None else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class WebhookEvent(db.Model):
    """
    One received marketplace webhook delivery.

    The raw body is kept verbatim so processing can be re-run from storage.
    idempotency_key = sha256("<channel>:<raw body>") rejects byte-identical
    re-deliveries at insert time.

    STATUS:
    RECEIVED -> IGNORED | UNMAPPED | ERROR | PROCESSED
    UNMAPPED/ERROR -> (retry) PROCESSED | UNMAPPED | ERROR
    """
    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("idempotency_key", name="uq_webhook_events_idempotency_key"),
        db.Index("ix_webhook_events_channel_status", "channel", "status"),
        db.Index("ix_webhook_events_external_order", "channel", "external_order_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel = db.Column(db.String(32), nullable=False)
    idempotency_key = db.Column(db.String(64), nullable=False)

    external_order_id = db.Column(db.String(128), nullable=True)
    external_event_id = db.Column(db.String(128), nullable=True)

    payload = db.Column(db.Text, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=WEBHOOK_STATUS_RECEIVED)
    error_message = db.Column(db.Text, nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)

    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in WEBHOOK_TERMINAL_STATUSES

    def payload_json(self):
        return json.loads(self.payload)

    def to_dict(self, include_payload: bool = False) -> dict:
        data = {
            "id": self.id,
            "channel": self.channel,
            "idempotency_key": self.idempotency_key,
            "external_order_id": self.external_order_id,
            "external_event_id": self.external_event_id,
            "status": self.status,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "received_at": to_utc_z(self.received_at),
            "processed_at": to_utc_z(self.processed_at),
        }
        if include_payload:
            data["payload"] = self.payload
        return data
