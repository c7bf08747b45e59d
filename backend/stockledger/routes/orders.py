# backend/stockledger/routes/orders.py
"""
Internal orders (POS / manual entry) and cancellation.
"""
from flask import Blueprint, request, jsonify, g, current_app

from stockledger.extensions import db
from stockledger.decorators import require_auth
from stockledger.errors import DomainError
from stockledger.services import order_service
from stockledger.validation import optional_int, pick


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@require_auth
def create_order():
    """
    Create an order and take its stock in one transaction.

    Request body:
    {
        "channel": "OFFLINE_STORE" | "RESELLER" | "WEBSITE" | ...,
        "source": "POS" | "MANUAL" (default MANUAL),
        "outletId": int (optional, default warehouse),
        "status": "PAID" | "NEW" (default PAID),
        "paymentMethod": str, "customerName": str, "note": str,
        "items": [{"variantId": int, "qty": int, "price": int (optional)}]
    }

    Returns:
        201: Order with items
        400: Validation error / inactive product
        409: Insufficient stock (every short line listed)
    """
    data = request.get_json(silent=True) or {}
    try:
        order = order_service.create_order(
            items=data.get("items"),
            actor_user_id=g.actor.user_id,
            channel=data.get("channel") or "OFFLINE_STORE",
            source=data.get("source") or "MANUAL",
            outlet_id=optional_int(pick(data, "outletId", "outlet_id"), "outlet_id", minimum=1),
            status=data.get("status") or "PAID",
            payment_method=pick(data, "paymentMethod", "payment_method"),
            customer_name=pick(data, "customerName", "customer_name"),
            note=data.get("note"),
            ordered_at=pick(data, "orderedAt", "ordered_at"),
        )
        return jsonify({"ok": True, "order": order.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_auth
def list_orders():
    args = request.args
    try:
        limit = optional_int(args.get("limit"), "limit", minimum=1) or 50
        rows, total = order_service.list_orders(
            channel=args.get("channel"),
            status=args.get("status"),
            source=args.get("source"),
            outlet_id=optional_int(pick(args, "outletId", "outlet_id"), "outlet_id", minimum=1),
            limit=min(limit, 200),
            offset=optional_int(args.get("offset"), "offset", minimum=0) or 0,
        )
        return jsonify({"items": [o.to_dict(include_items=False) for o in rows], "total": total}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order(order_id: int):
    try:
        return jsonify(order_service.get_order(order_id).to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@orders_bp.post("/<int:order_id>/cancel")
@require_auth
def cancel_order(order_id: int):
    """
    Cancel (or mark returned) and restock what the order took.

    Request body: {"status": "CANCELLED" | "RETURNED" (default CANCELLED), "note": str}

    Returns:
        200: Updated order
        404: Unknown order
        409: Order already cancelled/returned
    """
    data = request.get_json(silent=True) or {}
    try:
        order = order_service.cancel_order(
            order_id,
            actor_user_id=g.actor.user_id,
            status=data.get("status") or "CANCELLED",
            note=data.get("note"),
        )
        return jsonify({"ok": True, "order": order.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500
