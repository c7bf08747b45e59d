# backend/stockledger/services/order_service.py
"""
Orders: stock-out by sale and compensation on cancel/return.

WHY: An order is the only thing that takes stock out for a sale, whatever
its source (POS, manual entry, marketplace webhook, CSV export).

RULES:
- Every line is validated (variant exists, variant AND product ACTIVE,
  enough stock) before any line is applied. One bad line rejects the order.
- Sale movements are OUT with ref_type=ORDER (CSV imports use CSV_IMPORT)
  and ref_id=<order.id>; one movement per variant per order.
- CANCELLED / RETURNED are terminal. Entering them appends one compensating
  IN (ref_type=ORDER_RETURN) per variant that has a sale OUT under the order
  and no compensation yet, for the OUT's magnitude.
- Orders are not edited in place otherwise; corrections go through
  adjustments or opname.
- External orders are keyed by (channel, external_order_id); see
  upsert_external_order.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..errors import InvalidTransition, NotFound, ValidationError
from ..models import Order, OrderItem, StockMovement
from ..models.inventory import MOVEMENT_IN, MOVEMENT_OUT, REF_CSV_IMPORT, REF_ORDER, REF_ORDER_RETURN
from ..models.sales import (
    CHANNELS,
    ORDER_SOURCES,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_NEW,
    ORDER_STATUS_PAID,
    ORDER_STATUS_RETURNED,
    TERMINAL_ORDER_STATUSES,
)
from ..validation import MAX_LINE_QTY, MAX_PRICE, optional_int, pick, require_int, require_items
from stockledger.time_utils import coerce_occurred_at, utcnow
from .catalog_service import require_sellable_variants
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import apply_stock_delta, emit_low_stock, find_shortfalls, raise_for_shortfalls
from .ledger_service import movement_exists
from .notification_service import emit
from .outlet_service import resolve_outlet


SALE_REF_TYPES = (REF_ORDER, REF_CSV_IMPORT)


@dataclass(frozen=True)
class OrderLine:
    variant_id: int
    qty: int
    price: int | None = None


def parse_order_lines(items) -> list[OrderLine]:
    lines = []
    for idx, item in enumerate(require_items(items)):
        lines.append(OrderLine(
            variant_id=require_int(pick(item, "variant_id", "variantId"), f"items[{idx}].variant_id", minimum=1),
            qty=require_int(pick(item, "qty", "quantity"), f"items[{idx}].qty", minimum=1, maximum=MAX_LINE_QTY),
            price=optional_int(pick(item, "price"), f"items[{idx}].price", minimum=0),
        ))
    return lines


def needs_by_variant(lines: list[OrderLine]) -> dict[int, int]:
    needs: dict[int, int] = {}
    for line in lines:
        needs[line.variant_id] = needs.get(line.variant_id, 0) + line.qty
    return needs


def _code_taken(code: str) -> bool:
    return db.session.query(Order.id).filter(Order.order_code == code).first() is not None


def manual_order_code(now: datetime | None = None) -> str:
    """ORD-YYMMDD-XXXX with a random 4-char suffix."""
    now = now or utcnow()
    for _ in range(10):
        code = f"ORD-{now:%y%m%d}-{secrets.token_hex(2).upper()}"
        if not _code_taken(code):
            return code
    return f"ORD-{now:%y%m%d}-{secrets.token_hex(4).upper()}"


def external_order_code(prefix: str, channel: str, external_order_id: str) -> str:
    """<prefix>-<CHANNEL>-<last 12 chars of the external id>, suffixed on collision."""
    base = f"{prefix}-{channel}-{external_order_id[-12:]}"
    code = base
    n = 2
    while _code_taken(code):
        code = f"{base}-{n}"
        n += 1
    return code


def _write_items(order: Order, lines: list[OrderLine], variants: dict) -> int:
    total = 0
    for line in lines:
        variant = variants[line.variant_id]
        price = line.price if line.price is not None else (variant.price or 0)
        if price > MAX_PRICE:
            raise ValidationError(f"price must be <= {MAX_PRICE}")
        subtotal = price * line.qty
        order.items.append(OrderItem(
            product_id=variant.product_id,
            variant_id=variant.id,
            qty=line.qty,
            price=price,
            subtotal=subtotal,
        ))
        total += subtotal
    return total


def replace_order_items(order: Order, lines: list[OrderLine], variants: dict) -> None:
    order.items.clear()
    db.session.flush()
    order.total_amount = _write_items(order, lines, variants)


def apply_sale_movements(
    order: Order,
    needs: dict[int, int],
    *,
    ref_type: str = REF_ORDER,
    actor_user_id: int | None = None,
) -> list[StockMovement]:
    """
    OUT movements for every variant that does not have a sale movement under
    this order yet. Checks the whole set first; raises on any shortfall.
    """
    pending = {
        variant_id: qty
        for variant_id, qty in needs.items()
        if not any(
            movement_exists(ref_type=rt, ref_id=order.id, variant_id=variant_id, movement_type=MOVEMENT_OUT)
            for rt in SALE_REF_TYPES
        )
    }
    if not pending:
        return []
    raise_for_shortfalls(find_shortfalls(order.outlet_id, pending))

    movements = []
    for variant_id, qty in pending.items():
        movements.append(apply_stock_delta(
            outlet_id=order.outlet_id,
            variant_id=variant_id,
            movement_type=MOVEMENT_OUT,
            qty=qty,
            ref_type=ref_type,
            ref_id=order.id,
            actor_user_id=actor_user_id,
            note=order.order_code,
            occurred_at=order.ordered_at,
        ))
    emit_low_stock(order.outlet_id, pending.keys())
    return movements


def compensate_order(order: Order, *, actor_user_id: int | None = None) -> list[StockMovement]:
    """Compensating IN for each sale OUT under the order that is not yet compensated."""
    outs = (
        db.session.query(StockMovement)
        .filter(
            StockMovement.ref_type.in_(SALE_REF_TYPES),
            StockMovement.ref_id == str(order.id),
            StockMovement.type == MOVEMENT_OUT,
        )
        .order_by(StockMovement.id.asc())
        .all()
    )
    movements = []
    for out in outs:
        if movement_exists(
            ref_type=REF_ORDER_RETURN,
            ref_id=order.id,
            variant_id=out.variant_id,
            outlet_id=out.outlet_id,
            movement_type=MOVEMENT_IN,
        ):
            continue
        movements.append(apply_stock_delta(
            outlet_id=out.outlet_id,
            variant_id=out.variant_id,
            movement_type=MOVEMENT_IN,
            qty=out.qty,
            ref_type=REF_ORDER_RETURN,
            ref_id=order.id,
            actor_user_id=actor_user_id,
            note=f"{order.order_code} {order.status.lower()}",
        ))
    return movements


def create_order(
    *,
    items,
    actor_user_id: int | None,
    channel: str = "OFFLINE_STORE",
    source: str = "MANUAL",
    outlet_id: int | None = None,
    status: str = ORDER_STATUS_PAID,
    payment_method: str | None = None,
    customer_name: str | None = None,
    note: str | None = None,
    ordered_at=None,
) -> Order:
    """
    Internal order (POS or manual entry): creates the order and its OUT
    movements in one transaction.

    Raises:
        ValidationError, NotFound, ProductInactive,
        InsufficientStock / InsufficientStockBatch
    """
    channel = (channel or "").strip().upper()
    if channel not in CHANNELS:
        raise ValidationError(f"channel must be one of {', '.join(CHANNELS)}")
    source = (source or "").strip().upper()
    if source not in ORDER_SOURCES:
        raise ValidationError(f"source must be one of {', '.join(ORDER_SOURCES)}")
    status = (status or "").strip().upper()
    if status not in (ORDER_STATUS_NEW, ORDER_STATUS_PAID):
        raise ValidationError("status must be NEW or PAID")
    lines = parse_order_lines(items)
    needs = needs_by_variant(lines)
    ordered = coerce_occurred_at(ordered_at)

    def _op():
        outlet = resolve_outlet(outlet_id)
        variants = require_sellable_variants(needs.keys())
        raise_for_shortfalls(find_shortfalls(outlet.id, needs))

        order = Order(
            order_code=manual_order_code(ordered),
            channel=channel,
            source=source,
            outlet_id=outlet.id,
            status=status,
            payment_method=payment_method,
            customer_name=customer_name,
            note=note,
            created_by_user_id=actor_user_id,
            ordered_at=ordered,
        )
        db.session.add(order)
        order.total_amount = _write_items(order, lines, variants)
        db.session.flush()

        apply_sale_movements(order, needs, actor_user_id=actor_user_id)
        emit("order.created", {
            "order_id": order.id,
            "order_code": order.order_code,
            "channel": order.channel,
            "total_amount": order.total_amount,
        })
        db.session.commit()
        current_app.logger.info(
            "Order %s created channel=%s outlet=%s total=%s by user=%s",
            order.order_code, order.channel, order.outlet_id, order.total_amount, actor_user_id,
        )
        return order

    return run_with_retry(_op)


def cancel_order(
    order_id: int,
    *,
    actor_user_id: int | None,
    status: str = ORDER_STATUS_CANCELLED,
    note: str | None = None,
) -> Order:
    """Move an order to CANCELLED or RETURNED and put its stock back."""
    status = (status or "").strip().upper()
    if status not in TERMINAL_ORDER_STATUSES:
        raise ValidationError("status must be CANCELLED or RETURNED")

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFound("Order", order_id)
        if order.is_terminal:
            raise InvalidTransition(f"Order {order.order_code} is already {order.status}")

        order.status = status
        if note:
            order.note = f"{order.note}\n{note}" if order.note else note
        movements = compensate_order(order, actor_user_id=actor_user_id)

        emit(f"order.{status.lower()}", {
            "order_id": order.id,
            "order_code": order.order_code,
            "restocked_units": sum(m.qty for m in movements),
        })
        db.session.commit()
        current_app.logger.info(
            "Order %s -> %s restocked=%s by user=%s",
            order.order_code, status, len(movements), actor_user_id,
        )
        return order

    return run_with_retry(_op)


def upsert_external_order(
    *,
    channel: str,
    external_order_id: str,
    source: str,
    code_prefix: str,
    outlet_id: int,
    status: str,
    lines: list[OrderLine],
    variants: dict,
    ordered_at: datetime | None = None,
    note: str | None = None,
    actor_user_id: int | None = None,
) -> tuple[Order, bool]:
    """
    Find-or-create the order for (channel, external_order_id) and replace its
    items; terminal orders come back untouched. Runs inside the caller's
    transaction; movements are the caller's job. Returns (order, created).
    """
    order = lock_for_update(
        db.session.query(Order).filter_by(channel=channel, external_order_id=external_order_id)
    ).first()
    created = order is None
    if created:
        order = Order(
            order_code=external_order_code(code_prefix, channel, external_order_id),
            channel=channel,
            source=source,
            outlet_id=outlet_id,
            external_order_id=external_order_id,
            status=status,
            note=note,
            created_by_user_id=actor_user_id,
            ordered_at=ordered_at or utcnow(),
        )
        db.session.add(order)
        order.total_amount = _write_items(order, lines, variants)
        db.session.flush()
        return order, True

    # Cancelled/returned orders are frozen; items must keep matching their movements
    if order.is_terminal:
        return order, False
    if lines:
        replace_order_items(order, lines, variants)
    if note:
        order.note = note
    return order, False


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound("Order", order_id)
    return order


def list_orders(
    *,
    channel: str | None = None,
    status: str | None = None,
    source: str | None = None,
    outlet_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    query = db.session.query(Order)
    if channel:
        query = query.filter(Order.channel == channel.upper())
    if status:
        query = query.filter(Order.status == status.upper())
    if source:
        query = query.filter(Order.source == source.upper())
    if outlet_id is not None:
        query = query.filter(Order.outlet_id == outlet_id)
    total = query.count()
    rows = query.order_by(Order.ordered_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
    return rows, total
