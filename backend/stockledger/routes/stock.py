# backend/stockledger/routes/stock.py
"""
Stock mutators (stock-in, transfer, adjustment, opname) and stock reads.

Every mutator passes the authenticated user explicitly as actor_user_id.
"""
from flask import Blueprint, request, jsonify, g, current_app

from stockledger.extensions import db
from stockledger.decorators import require_auth, require_role
from stockledger.errors import DomainError
from stockledger.models.auth import ADMIN_ROLES
from stockledger.services import (
    inventory_service,
    ledger_service,
    opname_service,
    receive_service,
    transfer_service,
)
from stockledger.time_utils import parse_iso_datetime
from stockledger.validation import optional_int, pick, require_int


stock_bp = Blueprint("stock", __name__, url_prefix="/api")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _failure(message: str):
    db.session.rollback()
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/stock/in")
@require_auth
def stock_in():
    """
    Receive goods into an outlet (default warehouse when outletId is omitted).

    Request body:
    {
        "outletId": int (optional),
        "supplier": str (optional),
        "note": str (optional),
        "occurredAt": ISO datetime (optional),
        "items": [{"variantId": int, "qty": int}, ...]
    }

    Returns:
        201: Stock-in document with items
        400: Validation error / inactive product / unavailable outlet
        404: Unknown variant or outlet
    """
    data = _body()
    try:
        doc = receive_service.receive_stock(
            items=data.get("items"),
            actor_user_id=g.actor.user_id,
            outlet_id=optional_int(pick(data, "outletId", "outlet_id"), "outlet_id", minimum=1),
            supplier=data.get("supplier"),
            note=data.get("note"),
            occurred_at=pick(data, "occurredAt", "occurred_at"),
        )
        return jsonify({"ok": True, "stock_in": doc.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        return _failure("Failed to receive stock")


@stock_bp.post("/stock/transfer")
@require_auth
def stock_transfer():
    """
    Move stock between two outlets. Every line is checked at the source
    before anything moves.

    Returns:
        201: Transfer document
        400: Same outlet / validation error
        409: Insufficient stock at the source (all shortfalls listed)
    """
    data = _body()
    try:
        transfer = transfer_service.transfer_stock(
            from_outlet_id=optional_int(pick(data, "fromOutletId", "from_outlet_id"), "from_outlet_id", minimum=1),
            to_outlet_id=optional_int(pick(data, "toOutletId", "to_outlet_id"), "to_outlet_id", minimum=1),
            items=data.get("items"),
            actor_user_id=g.actor.user_id,
            note=data.get("note"),
            occurred_at=pick(data, "occurredAt", "occurred_at"),
        )
        return jsonify({"ok": True, "transfer": transfer.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        return _failure("Failed to transfer stock")


@stock_bp.post("/stock/adjust")
@require_auth
@require_role(*ADMIN_ROLES)
def stock_adjust():
    """
    Signed correction with a mandatory reason.

    Request body: {"variantId": int, "deltaQty": int, "reason": str, "outletId": int (optional)}

    Returns:
        201: Adjustment record
        400: deltaQty 0, reason too short
        409: Adjustment would make stock negative
    """
    data = _body()
    try:
        adjustment = inventory_service.adjust_stock(
            variant_id=require_int(pick(data, "variantId", "variant_id"), "variant_id", minimum=1),
            delta_qty=require_int(pick(data, "deltaQty", "delta_qty"), "delta_qty"),
            reason=data.get("reason"),
            actor_user_id=g.actor.user_id,
            outlet_id=optional_int(pick(data, "outletId", "outlet_id"), "outlet_id", minimum=1),
            occurred_at=pick(data, "occurredAt", "occurred_at"),
        )
        return jsonify({"ok": True, "adjustment": adjustment.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        return _failure("Failed to adjust stock")


@stock_bp.post("/stock/opname")
@require_auth
@require_role(*ADMIN_ROLES)
def stock_opname():
    """
    Physical count. Items: [{"variantId": int, "countedQty": int}]; lines
    whose count matches the system quantity are recorded without a movement.
    """
    data = _body()
    try:
        opname = opname_service.record_opname(
            items=data.get("items"),
            actor_user_id=g.actor.user_id,
            outlet_id=optional_int(pick(data, "outletId", "outlet_id"), "outlet_id", minimum=1),
            note=data.get("note"),
            occurred_at=pick(data, "occurredAt", "occurred_at"),
        )
        return jsonify({"ok": True, "opname": opname.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        return _failure("Failed to record opname")


@stock_bp.get("/stocks")
@require_auth
def list_stocks():
    """Current quantities. Query: outletId, variantId, productId, q, low=1."""
    args = request.args
    try:
        rows = inventory_service.list_stock(
            outlet_id=optional_int(pick(args, "outletId", "outlet_id"), "outlet_id", minimum=1),
            variant_id=optional_int(pick(args, "variantId", "variant_id"), "variant_id", minimum=1),
            product_id=optional_int(pick(args, "productId", "product_id"), "product_id", minimum=1),
            q=args.get("q"),
            low_only=args.get("low") in ("1", "true", "yes"),
        )
        return jsonify({"items": [r.to_dict() for r in rows], "count": len(rows)}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@stock_bp.get("/stock/movements")
@require_auth
def list_movements():
    """
    Movement history, newest first.

    Query: outletId, variantId, refType, refId, type, from, to (ISO),
    limit (default 100, max 500), offset.
    """
    args = request.args
    try:
        limit = optional_int(args.get("limit"), "limit", minimum=1) or 100
        rows, total = ledger_service.list_movements(
            outlet_id=optional_int(pick(args, "outletId", "outlet_id"), "outlet_id", minimum=1),
            variant_id=optional_int(pick(args, "variantId", "variant_id"), "variant_id", minimum=1),
            ref_type=(pick(args, "refType", "ref_type") or "").upper() or None,
            ref_id=pick(args, "refId", "ref_id"),
            movement_type=(args.get("type") or "").upper() or None,
            start=parse_iso_datetime(args.get("from")),
            end=parse_iso_datetime(args.get("to")),
            limit=min(limit, 500),
            offset=optional_int(args.get("offset"), "offset", minimum=0) or 0,
        )
        return jsonify({"items": [m.to_dict() for m in rows], "total": total}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400


@stock_bp.get("/stock/verify")
@require_auth
@require_role(*ADMIN_ROLES)
def verify_ledger():
    """Compare every stock row with the sum of its movements."""
    try:
        divergences = ledger_service.verify_ledger()
        return jsonify({"ok": not divergences, "divergences": divergences}), 200
    except Exception:
        return _failure("Failed to verify ledger")
