# backend/stockledger/services/webhook_service.py
"""
Marketplace webhook ingestion.

PIPELINE:
1. idempotency_key = sha256("<CHANNEL>:" + raw body). Known key -> duplicate,
   nothing written, no stock touched.
2. Store the raw event as RECEIVED and commit before any processing, so a
   crash mid-processing leaves a retryable record.
3. Extract order id + items (payload_extractors). Missing order id or no
   usable items -> IGNORED.
4. Resolve every SKU. Any miss -> UNMAPPED, missing SKUs in error_message.
5. classify_action(status text) -> OUT (sale) or IN (cancel/return).
6. OUT: every line checked before any mutation; shortfall -> ERROR.
7. Upsert the order by (channel, external_order_id), replace its items, and
   apply movements only for variants that have none under the order yet.
8. PROCESSED, processed_at set, error_message cleared.

STATUS:
    RECEIVED -> IGNORED | UNMAPPED | ERROR | PROCESSED
    UNMAPPED -> (retry) PROCESSED | UNMAPPED | ERROR
    ERROR    -> (retry) PROCESSED | ERROR
PROCESSED and IGNORED are terminal; processing them again is a no-op.

Retries always re-run steps 3-8 from the STORED payload.

Business failures are recorded on the event. Infrastructure failures
(database down, lock timeouts after retries) propagate untouched and leave
the event in its previous status, RECEIVED for a fresh event.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import DomainError, InsufficientStock, InsufficientStockBatch, NotFound, ValidationError
from ..models import WebhookEvent
from ..models.integrations import (
    WEBHOOK_STATUS_ERROR,
    WEBHOOK_STATUS_IGNORED,
    WEBHOOK_STATUS_PROCESSED,
    WEBHOOK_STATUS_RECEIVED,
    WEBHOOK_STATUS_UNMAPPED,
)
from ..models.sales import MARKETPLACE_CHANNELS, ORDER_STATUS_PAID
from stockledger.time_utils import utcnow
from .catalog_service import require_sellable_variants, require_variants
from .concurrency import RETRYABLE_ERRORS, lock_for_update, run_with_retry
from .notification_service import emit
from .order_service import (
    OrderLine,
    apply_sale_movements,
    compensate_order,
    needs_by_variant,
    upsert_external_order,
)
from .outlet_service import get_or_create_warehouse_outlet
from .payload_extractors import ACTION_OUT, classify_action, extract_payload
from .sku_service import resolve_skus


MAX_EVENTS_TAKE = 200
DEFAULT_EVENTS_TAKE = 50

SECRET_CONFIG_KEYS = {
    "SHOPEE": "WEBHOOK_SECRET_SHOPEE",
    "TIKTOK": "WEBHOOK_SECRET_TIKTOK",
}
SIGNING_KEY_CONFIG_KEYS = {
    "SHOPEE": "SHOPEE_PARTNER_KEY",
    "TIKTOK": "TIKTOK_APP_SECRET",
}
SIGNATURE_HEADERS = {
    "SHOPEE": ("X-Shopee-Signature", "X-Webhook-Signature"),
    "TIKTOK": ("X-Tiktok-Signature", "X-Webhook-Signature"),
}


@dataclass
class IngestResult:
    status: str
    event_id: int | None = None
    duplicate: bool = False
    order_id: int | None = None
    message: str | None = None
    missing_skus: list[str] = field(default_factory=list)
    insufficient: list[dict] = field(default_factory=list)

    @property
    def http_status(self) -> int:
        if self.duplicate:
            return 200
        if self.status == WEBHOOK_STATUS_UNMAPPED:
            return 202
        if self.status == WEBHOOK_STATUS_ERROR:
            return 409
        return 200

    def to_dict(self) -> dict:
        body = {
            "ok": self.status != WEBHOOK_STATUS_ERROR,
            "status": self.status,
            "event_id": self.event_id,
        }
        if self.duplicate:
            body["duplicate"] = True
        if self.order_id is not None:
            body["order_id"] = self.order_id
        if self.message:
            body["message"] = self.message
        if self.missing_skus:
            body["missing"] = self.missing_skus
        if self.insufficient:
            body["insufficient"] = self.insufficient
        return body


def normalize_webhook_channel(channel: str) -> str:
    value = (channel or "").strip().upper()
    if value not in MARKETPLACE_CHANNELS:
        raise ValidationError(f"Unsupported channel {channel}")
    return value


def compute_idempotency_key(channel: str, raw_body: bytes) -> str:
    return hashlib.sha256(channel.encode("utf-8") + b":" + raw_body).hexdigest()


def verify_webhook_request(channel: str, headers, raw_body: bytes) -> bool:
    """
    Accept either the channel's shared secret in X-Webhook-Secret or a hex
    HMAC-SHA256 of the raw body keyed with the channel's signing key.
    Nothing configured means nothing is accepted.
    """
    channel = normalize_webhook_channel(channel)
    config = current_app.config

    secret = config.get(SECRET_CONFIG_KEYS[channel]) or ""
    provided = headers.get("X-Webhook-Secret") or ""
    if secret and provided and hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        return True

    signing_key = config.get(SIGNING_KEY_CONFIG_KEYS[channel]) or ""
    if not signing_key:
        return False
    expected = hmac.new(signing_key.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    for header in SIGNATURE_HEADERS[channel]:
        signature = (headers.get(header) or "").strip().lower()
        if signature and hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
            return True
    return False


def ingest_webhook(channel: str, raw_body: bytes) -> IngestResult:
    """
    Steps 1-2, then process_event.

    Raises ValidationError for an unsupported channel or a body that is not
    JSON; no event is stored in that case.
    """
    channel = normalize_webhook_channel(channel)
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    try:
        payload = json.loads(raw_body.decode("utf-8")) if raw_body else None
    except (UnicodeDecodeError, json.JSONDecodeError):
        payload = None
    if payload is None:
        raise ValidationError("Invalid JSON")

    key = compute_idempotency_key(channel, raw_body)
    existing = db.session.query(WebhookEvent).filter_by(idempotency_key=key).first()
    if existing is not None:
        current_app.logger.info("Duplicate %s webhook ignored (event %s)", channel, existing.id)
        return IngestResult(status=existing.status, event_id=existing.id, duplicate=True)

    try:
        extracted = extract_payload(channel, payload)
        external_order_id = extracted.external_order_id
        external_event_id = extracted.external_event_id
    except ValueError:
        external_order_id = external_event_id = None

    def _store():
        event = WebhookEvent(
            channel=channel,
            idempotency_key=key,
            external_order_id=external_order_id,
            external_event_id=external_event_id,
            payload=raw_body.decode("utf-8"),
            status=WEBHOOK_STATUS_RECEIVED,
            attempts=0,
        )
        db.session.add(event)
        db.session.commit()
        return event.id

    try:
        event_id = run_with_retry(_store)
    except IntegrityError:
        # Same bytes delivered concurrently; the other request stored it
        existing = db.session.query(WebhookEvent).filter_by(idempotency_key=key).first()
        if existing is None:
            raise
        current_app.logger.info("Duplicate %s webhook ignored (event %s)", channel, existing.id)
        return IngestResult(status=existing.status, event_id=existing.id, duplicate=True)

    current_app.logger.info("Webhook %s event %s RECEIVED order=%s", channel, event_id, external_order_id)
    return process_event(event_id)


def _finish(event: WebhookEvent, status: str, message: str | None = None) -> None:
    event.status = status
    event.error_message = message
    if status in (WEBHOOK_STATUS_PROCESSED, WEBHOOK_STATUS_IGNORED):
        event.processed_at = utcnow()
    current_app.logger.info("Webhook %s event %s -> %s%s", event.channel, event.id, status, f" ({message})" if message else "")


def _process(event_id: int) -> IngestResult:
    event = lock_for_update(db.session.query(WebhookEvent).filter_by(id=event_id)).populate_existing().first()
    if event is None:
        raise NotFound("WebhookEvent", event_id)
    if event.is_terminal:
        return IngestResult(status=event.status, event_id=event.id, message="Already final")

    event.attempts = (event.attempts or 0) + 1

    try:
        extracted = extract_payload(event.channel, json.loads(event.payload))
    except ValueError:
        _finish(event, WEBHOOK_STATUS_IGNORED, "Payload is not an object")
        db.session.commit()
        return IngestResult(status=WEBHOOK_STATUS_IGNORED, event_id=event.id, message=event.error_message)

    if not extracted.external_order_id:
        _finish(event, WEBHOOK_STATUS_IGNORED, "Missing externalOrderId")
        db.session.commit()
        return IngestResult(status=WEBHOOK_STATUS_IGNORED, event_id=event.id, message=event.error_message)
    event.external_order_id = extracted.external_order_id

    if not extracted.items:
        _finish(event, WEBHOOK_STATUS_IGNORED, "No items")
        db.session.commit()
        return IngestResult(status=WEBHOOK_STATUS_IGNORED, event_id=event.id, message=event.error_message)

    resolution = resolve_skus(event.channel, [it.external_sku_id for it in extracted.items])
    if resolution.missing:
        _finish(event, WEBHOOK_STATUS_UNMAPPED, f"Unmapped SKU: {', '.join(resolution.missing)}")
        emit("webhook.unmapped", {
            "event_id": event.id,
            "channel": event.channel,
            "external_order_id": extracted.external_order_id,
            "missing_skus": resolution.missing,
        })
        db.session.commit()
        return IngestResult(
            status=WEBHOOK_STATUS_UNMAPPED,
            event_id=event.id,
            message=event.error_message,
            missing_skus=list(resolution.missing),
        )

    action, order_status = classify_action(extracted.status_text)
    lines = [
        OrderLine(variant_id=resolution.mapped[it.external_sku_id], qty=it.qty, price=it.price)
        for it in extracted.items
    ]
    needs = needs_by_variant(lines)

    if action == ACTION_OUT:
        variants = require_sellable_variants(needs.keys())
    else:
        variants = require_variants(needs.keys())

    outlet = get_or_create_warehouse_outlet()
    order, created = upsert_external_order(
        channel=event.channel,
        external_order_id=extracted.external_order_id,
        source="API",
        code_prefix="API",
        outlet_id=outlet.id,
        status=order_status,
        lines=lines,
        variants=variants,
        note=extracted.note,
    )

    if order.is_terminal and not created:
        # Already cancelled/returned: stock was put back, nothing to apply
        message = f"Order already {order.status}"
    elif action == ACTION_OUT:
        if order.status != ORDER_STATUS_PAID:
            order.status = ORDER_STATUS_PAID
        apply_sale_movements(order, needs)
        message = None
        if created:
            emit("order.created", {
                "order_id": order.id,
                "order_code": order.order_code,
                "channel": order.channel,
                "total_amount": order.total_amount,
            })
    else:
        order.status = order_status
        restocked = compensate_order(order)
        message = None
        emit(f"order.{order_status.lower()}", {
            "order_id": order.id,
            "order_code": order.order_code,
            "restocked_units": sum(m.qty for m in restocked),
        })

    _finish(event, WEBHOOK_STATUS_PROCESSED, None)
    db.session.commit()
    return IngestResult(status=WEBHOOK_STATUS_PROCESSED, event_id=event.id, order_id=order.id, message=message)


def _record_failure(event_id: int, exc: DomainError) -> IngestResult:
    event = db.session.query(WebhookEvent).filter_by(id=event_id).populate_existing().first()
    event.attempts = (event.attempts or 0) + 1

    insufficient = []
    if isinstance(exc, (InsufficientStock, InsufficientStockBatch)):
        shortfalls = exc.shortfalls if isinstance(exc, InsufficientStockBatch) else [exc]
        insufficient = [s.shortfall() for s in shortfalls]
        skus = _skus_for_variants(event, [s.variant_id for s in shortfalls])
        message = f"Insufficient stock for {', '.join(skus)}"
    else:
        message = exc.message

    _finish(event, WEBHOOK_STATUS_ERROR, message)
    emit("webhook.error", {"event_id": event.id, "channel": event.channel, "error": message})
    db.session.commit()
    return IngestResult(status=WEBHOOK_STATUS_ERROR, event_id=event.id, message=message, insufficient=insufficient)


def _skus_for_variants(event: WebhookEvent, variant_ids: list[int]) -> list[str]:
    """External SKUs of the event that map to `variant_ids` (falls back to ids)."""
    try:
        extracted = extract_payload(event.channel, json.loads(event.payload))
    except ValueError:
        return [str(v) for v in variant_ids]
    resolution = resolve_skus(event.channel, [it.external_sku_id for it in extracted.items])
    by_variant: dict[int, list[str]] = {}
    for sku, variant_id in resolution.mapped.items():
        by_variant.setdefault(variant_id, []).append(sku)
    skus = []
    for variant_id in variant_ids:
        skus.extend(by_variant.get(variant_id, [str(variant_id)]))
    return skus


def process_event(event_id: int) -> IngestResult:
    """
    Steps 3-8 against the stored payload.

    Terminal events return their status unchanged. Domain failures roll back
    everything the attempt wrote, then mark the event ERROR in a fresh
    transaction. Unique-key collisions with a concurrent processor of the
    same order are retried; the second pass sees the committed movements
    and applies nothing twice.
    """
    def _op():
        try:
            return _process(event_id)
        except NotFound as exc:
            if exc.entity == "WebhookEvent":
                raise
            db.session.rollback()
            return _record_failure(event_id, exc)
        except DomainError as exc:
            db.session.rollback()
            return _record_failure(event_id, exc)

    result = run_with_retry(_op, retry_on=RETRYABLE_ERRORS + (IntegrityError,))
    if result.status == WEBHOOK_STATUS_ERROR:
        current_app.logger.warning("Webhook event %s failed: %s", event_id, result.message)
    return result


def retry_event(event_id: int) -> IngestResult:
    """Administrator entry point: re-run processing from the stored payload."""
    current_app.logger.info("Retry requested for webhook event %s", event_id)
    return process_event(event_id)


def retry_events(*, status: str, channel: str | None = None, limit: int = 100) -> dict[str, int]:
    """Retry every event currently in `status` (RECEIVED, UNMAPPED or ERROR)."""
    query = db.session.query(WebhookEvent.id).filter(WebhookEvent.status == status.upper())
    if channel:
        query = query.filter(WebhookEvent.channel == channel.upper())
    ids = [row.id for row in query.order_by(WebhookEvent.id.asc()).limit(limit).all()]

    outcome: dict[str, int] = {}
    for event_id in ids:
        result = retry_event(event_id)
        outcome[result.status] = outcome.get(result.status, 0) + 1
    return outcome


def list_events(*, channel: str | None = None, status: str | None = None, take: int = DEFAULT_EVENTS_TAKE) -> list[WebhookEvent]:
    take = max(1, min(int(take or DEFAULT_EVENTS_TAKE), MAX_EVENTS_TAKE))
    query = db.session.query(WebhookEvent)
    if channel:
        query = query.filter(WebhookEvent.channel == channel.upper())
    if status:
        query = query.filter(WebhookEvent.status == status.upper())
    return query.order_by(WebhookEvent.received_at.desc(), WebhookEvent.id.desc()).limit(take).all()


def get_event(event_id: int) -> WebhookEvent:
    event = db.session.get(WebhookEvent, event_id)
    if event is None:
        raise NotFound("WebhookEvent", event_id)
    return event
