# Overview: Stock cache primitives (row get-or-create, locking, guarded deltas) and stock adjustments.

# backend/stockledger/services/inventory_service.py

from datetime import datetime

from flask import current_app
from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import InsufficientStock, InsufficientStockBatch, InvalidDelta
from ..models import Product, ProductVariant, Stock, StockAdjustment, StockMovement
from ..models.inventory import MOVEMENT_ADJUSTMENT, REF_STOCK_ADJUSTMENT
from ..validation import require_text
from stockledger.time_utils import coerce_occurred_at
from .catalog_service import require_variants
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_movement, signed_delta
from .notification_service import emit
from .outlet_service import resolve_outlet
"""
Inventory invariants (authoritative)

Stock model:
- stocks.qty is the on-hand quantity per (outlet, variant), a cache of the
  movement log. It is never negative (CHECK constraint + guarded UPDATE).
- apply_stock_delta is the only code path that changes stocks.qty during
  normal operation, and it always appends the matching movement.

Concurrency:
- Rows are created with INSERT ... ON CONFLICT DO NOTHING so two writers
  touching a new pair never collide.
- Rows are locked in variant_id order (SELECT ... FOR UPDATE where the
  database supports it) before multi-line checks.
- The delta itself is a conditional UPDATE (qty + delta >= 0). Zero rows
  affected means insufficient stock, whatever any earlier read said, so a
  stale read can never oversell.

Time:
- All internal datetimes are UTC-naive; occurred_at is business time.
"""


def _ensure_stock_rows(outlet_id: int, variant_ids) -> None:
    ids = sorted(set(variant_ids))
    if not ids:
        return
    existing = {
        row.variant_id
        for row in db.session.query(Stock.variant_id).filter(
            Stock.outlet_id == outlet_id, Stock.variant_id.in_(ids)
        )
    }
    missing = [v for v in ids if v not in existing]
    if not missing:
        return

    values = [{"outlet_id": outlet_id, "variant_id": v, "qty": 0} for v in missing]
    dialect = db.session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(Stock).values(values).on_conflict_do_nothing(index_elements=["outlet_id", "variant_id"])
        db.session.execute(stmt)
    elif dialect == "sqlite":
        stmt = sqlite_insert(Stock).values(values).on_conflict_do_nothing(index_elements=["outlet_id", "variant_id"])
        db.session.execute(stmt)
    else:
        for row in values:
            try:
                with db.session.begin_nested():
                    db.session.add(Stock(**row))
            except IntegrityError:
                # Another writer created it first
                pass


def _expire_cached_stock(outlet_id: int, variant_id: int) -> None:
    for obj in list(db.session.identity_map.values()):
        if isinstance(obj, Stock) and obj.outlet_id == outlet_id and obj.variant_id == variant_id:
            db.session.expire(obj)


def lock_stock_rows(outlet_id: int, variant_ids) -> dict[int, Stock]:
    """Get-or-create and lock the Stock rows for one outlet. Returns {variant_id: Stock}."""
    ids = sorted(set(variant_ids))
    _ensure_stock_rows(outlet_id, ids)
    rows = (
        lock_for_update(
            db.session.query(Stock)
            .filter(Stock.outlet_id == outlet_id, Stock.variant_id.in_(ids))
            .order_by(Stock.variant_id.asc())
        )
        .populate_existing()
        .all()
    )
    return {row.variant_id: row for row in rows}


def get_quantity(outlet_id: int, variant_id: int) -> int:
    """Current on-hand quantity read straight from the database (0 when no row)."""
    qty = db.session.execute(
        select(Stock.qty).where(Stock.outlet_id == outlet_id, Stock.variant_id == variant_id)
    ).scalar()
    return int(qty or 0)


def find_shortfalls(outlet_id: int, needs: dict[int, int]) -> list[InsufficientStock]:
    """
    Check every line before anything is applied.

    `needs` maps variant_id -> total units to remove. Rows are locked so the
    answer holds until commit on databases that honour FOR UPDATE.
    """
    if not needs:
        return []
    rows = lock_stock_rows(outlet_id, needs.keys())
    shortfalls = []
    for variant_id in sorted(needs):
        have = rows[variant_id].qty if variant_id in rows else 0
        need = needs[variant_id]
        if have < need:
            shortfalls.append(InsufficientStock(variant_id, need, have, outlet_id))
    return shortfalls


def raise_for_shortfalls(shortfalls: list[InsufficientStock]) -> None:
    if not shortfalls:
        return
    if len(shortfalls) == 1:
        raise shortfalls[0]
    raise InsufficientStockBatch(shortfalls)


def apply_stock_delta(
    *,
    outlet_id: int,
    variant_id: int,
    movement_type: str,
    qty: int,
    ref_type: str,
    ref_id,
    actor_user_id: int | None = None,
    note: str | None = None,
    occurred_at: datetime | None = None,
) -> StockMovement:
    """
    Change one Stock row and append its movement, atomically with the
    caller's transaction.

    `qty` is a magnitude for IN/OUT/TRANSFER_* and a signed delta for
    ADJUSTMENT. Raises InsufficientStock when the result would be negative.
    """
    delta = signed_delta(movement_type, qty)
    if delta == 0:
        raise InvalidDelta("quantity cannot be 0")

    _ensure_stock_rows(outlet_id, [variant_id])
    result = db.session.execute(
        update(Stock)
        .where(
            Stock.outlet_id == outlet_id,
            Stock.variant_id == variant_id,
            Stock.qty + delta >= 0,
        )
        .values(qty=Stock.qty + delta)
        .execution_options(synchronize_session=False)
    )
    _expire_cached_stock(outlet_id, variant_id)
    if result.rowcount == 0:
        raise InsufficientStock(variant_id, abs(delta), get_quantity(outlet_id, variant_id), outlet_id)

    return append_movement(
        movement_type=movement_type,
        outlet_id=outlet_id,
        variant_id=variant_id,
        quantity_delta=delta,
        ref_type=ref_type,
        ref_id=ref_id,
        actor_user_id=actor_user_id,
        note=note,
        occurred_at=occurred_at,
    )


def emit_low_stock(outlet_id: int, variant_ids) -> None:
    """Queue a stock.low notification for each variant now at or below min_qty."""
    ids = sorted(set(variant_ids))
    if not ids:
        return
    rows = (
        db.session.query(Stock.variant_id, Stock.qty, ProductVariant.min_qty, ProductVariant.sku)
        .join(ProductVariant, ProductVariant.id == Stock.variant_id)
        .filter(Stock.outlet_id == outlet_id, Stock.variant_id.in_(ids))
        .all()
    )
    for row in rows:
        if row.min_qty and row.qty <= row.min_qty:
            emit("stock.low", {
                "outlet_id": outlet_id,
                "variant_id": row.variant_id,
                "sku": row.sku,
                "qty": row.qty,
                "min_qty": row.min_qty,
            })


def list_stock(
    *,
    outlet_id: int | None = None,
    variant_id: int | None = None,
    product_id: int | None = None,
    q: str | None = None,
    low_only: bool = False,
) -> list[Stock]:
    query = (
        db.session.query(Stock)
        .join(ProductVariant, ProductVariant.id == Stock.variant_id)
        .join(Product, Product.id == ProductVariant.product_id)
    )
    if outlet_id is not None:
        query = query.filter(Stock.outlet_id == outlet_id)
    if variant_id is not None:
        query = query.filter(Stock.variant_id == variant_id)
    if product_id is not None:
        query = query.filter(ProductVariant.product_id == product_id)
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(or_(ProductVariant.sku.ilike(like), Product.name.ilike(like)))
    if low_only:
        query = query.filter(Stock.qty <= ProductVariant.min_qty)
    return query.order_by(Product.name.asc(), ProductVariant.sku.asc(), Stock.outlet_id.asc()).all()


def adjust_stock(
    *,
    variant_id: int,
    delta_qty: int,
    reason: str,
    actor_user_id: int | None,
    outlet_id: int | None = None,
    occurred_at=None,
) -> StockAdjustment:
    """
    Signed correction of one variant at one outlet.

    Raises InvalidDelta for 0 and ValidationError for a missing/short reason,
    both before the transaction opens.
    """
    if delta_qty == 0:
        raise InvalidDelta()
    min_length = int(current_app.config.get("ADJUSTMENT_REASON_MIN_LENGTH", 3))
    reason = require_text(reason, "reason", min_length=min_length)
    occurred = coerce_occurred_at(occurred_at)

    def _op():
        outlet = resolve_outlet(outlet_id)
        require_variants([variant_id])
        lock_stock_rows(outlet.id, [variant_id])

        adjustment = StockAdjustment(
            outlet_id=outlet.id,
            variant_id=variant_id,
            delta_qty=delta_qty,
            reason=reason,
            occurred_at=occurred,
            created_by_user_id=actor_user_id,
        )
        db.session.add(adjustment)
        db.session.flush()

        apply_stock_delta(
            outlet_id=outlet.id,
            variant_id=variant_id,
            movement_type=MOVEMENT_ADJUSTMENT,
            qty=delta_qty,
            ref_type=REF_STOCK_ADJUSTMENT,
            ref_id=adjustment.id,
            actor_user_id=actor_user_id,
            note=reason,
            occurred_at=occurred,
        )
        if delta_qty < 0:
            emit_low_stock(outlet.id, [variant_id])

        db.session.commit()
        current_app.logger.info(
            "Stock adjusted outlet=%s variant=%s delta=%s by user=%s",
            outlet.id, variant_id, delta_qty, actor_user_id,
        )
        return adjustment

    return run_with_retry(_op)
