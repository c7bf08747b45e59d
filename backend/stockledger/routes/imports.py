# backend/stockledger/routes/imports.py
"""
Marketplace order CSV import.

One endpoint, three modes:
- preview:  parse + resolve + stock check, nothing written (200)
- submit:   batch and rows persisted; imported right away when clean (201)
- finalize: re-run a stored batch after mappings/stock were fixed
            (200 when imported, 409 when still blocked)
"""
from flask import Blueprint, request, jsonify, g, current_app

from stockledger.extensions import db
from stockledger.decorators import require_auth
from stockledger.errors import DomainError
from stockledger.models.imports import BATCH_STATUS_IMPORTED
from stockledger.services import csv_import_service
from stockledger.validation import optional_int, pick


imports_bp = Blueprint("imports", __name__, url_prefix="/api/import")


@imports_bp.post("/csv-orders")
@require_auth
def import_csv_orders():
    """
    Request body:
    {
        "channel": "SHOPEE" | "TIKTOK",
        "mode": "preview" | "submit" | "finalize",
        "csvText": str,
        "mapping": {"orderId": col, "sku": col, "qty": col, "date": col?, "price": col?},
        "fileName": str (optional),
        "outletId": int (optional, default warehouse),
        "batchId": int (finalize only)
    }
    """
    data = request.get_json(silent=True) or {}
    mode = (data.get("mode") or "preview").strip().lower()
    try:
        result = csv_import_service.run_csv_import(
            channel=data.get("channel"),
            csv_text=pick(data, "csvText", "csv_text"),
            mode=mode,
            mapping=data.get("mapping"),
            actor_user_id=g.actor.user_id,
            batch_id=optional_int(pick(data, "batchId", "batch_id"), "batch_id", minimum=1),
            source_file_name=pick(data, "fileName", "file_name"),
            outlet_id=optional_int(pick(data, "outletId", "outlet_id"), "outlet_id", minimum=1),
        )
    except DomainError as e:
        return jsonify({"ok": False, **e.to_dict()}), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("CSV import failed (mode=%s)", mode)
        return jsonify({"ok": False, "error": "Internal server error"}), 500

    if mode == "preview":
        return jsonify({"ok": True, **result}), 200
    imported = result["status"] == BATCH_STATUS_IMPORTED
    if mode == "submit":
        return jsonify({"ok": imported, **result}), 201
    return jsonify({"ok": imported, **result}), 200 if imported else 409


@imports_bp.get("/batches")
@require_auth
def list_batches():
    try:
        limit = optional_int(request.args.get("limit"), "limit", minimum=1) or 50
        batches = csv_import_service.list_batches(
            status=request.args.get("status"),
            channel=request.args.get("channel"),
            limit=min(limit, 200),
        )
        return jsonify({"items": [b.to_dict() for b in batches]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@imports_bp.get("/batches/<int:batch_id>")
@require_auth
def get_batch(batch_id: int):
    try:
        return jsonify(csv_import_service.get_batch(batch_id).to_dict(include_rows=True)), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
