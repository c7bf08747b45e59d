# backend/stockledger/routes/integrations.py
"""
Marketplace integration endpoints.

- POST /api/integrations/<channel>/webhook is called by the marketplace; it
  authenticates with the channel secret or signature, not a bearer token.
- Everything else is operator tooling: webhook event inspection and retry,
  SKU mapping administration, and the unmapped-SKU worklist.
"""
from flask import Blueprint, request, jsonify, current_app

from stockledger.extensions import db
from stockledger.decorators import require_auth, require_role
from stockledger.errors import DomainError
from stockledger.models.auth import ADMIN_ROLES
from stockledger.models.integrations import WEBHOOK_RETRYABLE_STATUSES
from stockledger.services import sku_service, webhook_service
from stockledger.time_utils import to_utc_z
from stockledger.validation import optional_int, pick, require_int


integrations_bp = Blueprint("integrations", __name__, url_prefix="/api/integrations")


@integrations_bp.post("/<channel>/webhook")
def receive_webhook(channel: str):
    """
    Marketplace order webhook (SHOPEE / TIKTOK).

    The raw body is stored and hashed byte-for-byte; re-delivery of the same
    bytes is a duplicate.

    Returns:
        200: PROCESSED, IGNORED or duplicate
        202: UNMAPPED (stored; retried after the SKU is mapped)
        400: Unsupported channel or invalid JSON
        401: Secret/signature missing or wrong
        409: ERROR (business failure recorded on the event)
    """
    raw_body = request.get_data(cache=False)
    try:
        channel = webhook_service.normalize_webhook_channel(channel)
        if not webhook_service.verify_webhook_request(channel, request.headers, raw_body):
            current_app.logger.warning("Rejected %s webhook from %s: bad secret/signature", channel, request.remote_addr)
            return jsonify({"ok": False, "error": "Unauthorized"}), 401

        result = webhook_service.ingest_webhook(channel, raw_body)
        return jsonify(result.to_dict()), result.http_status
    except DomainError as e:
        return jsonify({"ok": False, **e.to_dict()}), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to ingest %s webhook", channel)
        return jsonify({"ok": False, "error": "Internal server error"}), 500


# =============================================================================
# WEBHOOK EVENTS
# =============================================================================

@integrations_bp.get("/webhook-events")
@require_auth
def list_webhook_events():
    """Query: channel, status, take (1..200, default 50)."""
    try:
        take = optional_int(request.args.get("take"), "take", minimum=1) or webhook_service.DEFAULT_EVENTS_TAKE
        events = webhook_service.list_events(
            channel=request.args.get("channel"),
            status=request.args.get("status"),
            take=take,
        )
        return jsonify({"items": [e.to_dict() for e in events]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@integrations_bp.get("/webhook-events/<int:event_id>")
@require_auth
def get_webhook_event(event_id: int):
    try:
        return jsonify(webhook_service.get_event(event_id).to_dict(include_payload=True)), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


def _retry(event_id: int):
    try:
        event = webhook_service.get_event(event_id)
        if event.status not in WEBHOOK_RETRYABLE_STATUSES:
            return jsonify({"ok": True, "status": event.status, "event_id": event.id, "message": "Already final"}), 200
        result = webhook_service.retry_event(event_id)
        return jsonify(result.to_dict()), result.http_status
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to retry webhook event %s", event_id)
        return jsonify({"error": "Internal server error"}), 500


@integrations_bp.post("/webhook-events/<int:event_id>/retry")
@require_auth
@require_role(*ADMIN_ROLES)
def retry_webhook_event(event_id: int):
    """Re-run processing from the stored payload. Same status codes as the webhook."""
    return _retry(event_id)


@integrations_bp.post("/webhook-events")
@require_auth
@require_role(*ADMIN_ROLES)
def retry_webhook_event_by_body():
    """Request body: {"id": int}"""
    data = request.get_json(silent=True) or {}
    try:
        event_id = require_int(pick(data, "id", "eventId", "event_id"), "id", minimum=1)
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    return _retry(event_id)


# =============================================================================
# SKU MAPPING
# =============================================================================

@integrations_bp.get("/sku-map")
@require_auth
def list_sku_map():
    try:
        mappings = sku_service.list_mappings(
            channel=request.args.get("channel"),
            variant_id=optional_int(pick(request.args, "variantId", "variant_id"), "variant_id", minimum=1),
        )
        return jsonify({"items": [m.to_dict() for m in mappings]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@integrations_bp.post("/sku-map")
@require_auth
@require_role(*ADMIN_ROLES)
def upsert_sku_map():
    """
    Create or repoint a mapping.

    Request body: {"channel": str, "externalSkuId": str, "variantId": int}

    Returns:
        201: Created
        200: Existing mapping repointed
    """
    data = request.get_json(silent=True) or {}
    try:
        mapping, created = sku_service.upsert_mapping(
            channel=data.get("channel"),
            external_sku_id=pick(data, "externalSkuId", "external_sku_id"),
            variant_id=require_int(pick(data, "variantId", "variant_id"), "variant_id", minimum=1),
        )
        return jsonify({"ok": True, "mapping": mapping.to_dict(), "created": created}), 201 if created else 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to save SKU mapping")
        return jsonify({"error": "Internal server error"}), 500


@integrations_bp.delete("/sku-map/<int:mapping_id>")
@require_auth
@require_role(*ADMIN_ROLES)
def delete_sku_map(mapping_id: int):
    try:
        sku_service.delete_mapping(mapping_id)
        return jsonify({"ok": True}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to delete SKU mapping")
        return jsonify({"error": "Internal server error"}), 500


@integrations_bp.get("/unmapped-skus")
@require_auth
def unmapped_skus():
    """External SKUs seen in UNMAPPED webhook events that are still unmapped."""
    try:
        take = optional_int(request.args.get("take"), "take", minimum=1) or 200
        rows = sku_service.list_unmapped_skus(channel=request.args.get("channel"), take=min(take, 500))
        items = [{**row, "last_seen_at": to_utc_z(row["last_seen_at"])} for row in rows]
        return jsonify({"items": items}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
